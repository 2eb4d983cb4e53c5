"""Chat-completions client (OpenAI or Azure OpenAI) used by the insight
extractor and the decision engine."""

import logging
from typing import Optional

import httpx

from app.core.config import settings
from app.core.exceptions import LLMError, LLMUnavailableError

logger = logging.getLogger(__name__)


class LLMClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        azure_api_key: Optional[str] = None,
        azure_endpoint: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self.base_url = (base_url or settings.OPENAI_BASE_URL).rstrip("/")
        self.model = model or settings.LLM_MODEL
        self.azure_api_key = azure_api_key if azure_api_key is not None else settings.AZURE_OPENAI_API_KEY
        self.azure_endpoint = (
            azure_endpoint if azure_endpoint is not None else settings.AZURE_OPENAI_ENDPOINT
        ).rstrip("/")
        self.api_version = settings.AZURE_OPENAI_API_VERSION
        self.chat_deployment = settings.AZURE_OPENAI_CHAT_DEPLOYMENT
        self.timeout = timeout or settings.LLM_TIMEOUT_SECONDS

    @property
    def is_configured(self) -> bool:
        return bool((self.azure_api_key and self.azure_endpoint) or self.api_key)

    def _request(self) -> tuple[str, dict]:
        if self.azure_api_key and self.azure_endpoint:
            url = (
                f"{self.azure_endpoint}/openai/deployments/{self.chat_deployment}"
                f"/chat/completions?api-version={self.api_version}"
            )
            return url, {"api-key": self.azure_api_key, "Content-Type": "application/json"}
        return f"{self.base_url}/chat/completions", {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def complete(
        self,
        system: str,
        user: str,
        temperature: float = 0.1,
        max_tokens: int = 1500,
        json_mode: bool = True,
    ) -> str:
        """Return the assistant message text.

        Raises LLMUnavailableError when no endpoint is configured, LLMError on
        transport or API failure.
        """
        if not self.is_configured:
            raise LLMUnavailableError("No LLM configured (set OPENAI_API_KEY or AZURE_OPENAI_*)")

        url, headers = self._request()
        payload = {
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if "api-key" not in headers:
            payload["model"] = self.model
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            raise LLMError(f"LLM request failed: {e}") from e

        if response.status_code != 200:
            raise LLMError(f"LLM API error: {response.status_code} - {response.text[:200]}")

        try:
            return response.json()["choices"][0]["message"]["content"].strip()
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise LLMError(f"Unexpected LLM response shape: {e}") from e
