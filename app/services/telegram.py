"""Thin async client for the Telegram Bot API."""

import asyncio
import logging
from typing import Any, Optional

import httpx

from app.core.config import settings
from app.core.exceptions import TelegramAPIError, TelegramConflictError

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3


class TelegramClient:
    def __init__(
        self,
        token: Optional[str] = None,
        api_base: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        backoff_seconds: float = 1.0,
    ):
        self.token = token if token is not None else settings.TELEGRAM_BOT_TOKEN
        self.api_base = (api_base or settings.TELEGRAM_API_BASE).rstrip("/")
        self.backoff_seconds = backoff_seconds
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0))

    @property
    def is_configured(self) -> bool:
        return bool(self.token)

    async def close(self) -> None:
        await self._client.aclose()

    async def call(self, method: str, params: Optional[dict[str, Any]] = None, timeout: float = 30.0) -> Any:
        """POST a Bot API method and return its "result".

        Transport errors and non-ok answers are retried with exponential
        backoff; a 409 conflict is raised immediately.
        """
        if not self.token:
            raise TelegramAPIError("TELEGRAM_BOT_TOKEN is not configured")
        url = f"{self.api_base}/bot{self.token}/{method}"

        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                response = await self._client.post(url, json=params or {}, timeout=timeout)
                body = response.json()
            except (httpx.HTTPError, ValueError) as e:
                if attempt == MAX_ATTEMPTS:
                    raise TelegramAPIError(f"{method} failed: {e}") from e
                logger.warning("Telegram %s attempt %d failed: %s", method, attempt, e)
                await asyncio.sleep(self.backoff_seconds * 2 ** (attempt - 1))
                continue

            if body.get("ok"):
                return body.get("result")

            code = body.get("error_code") or response.status_code
            description = body.get("description") or "Telegram API error"
            if code == 409 or "Conflict" in description:
                raise TelegramConflictError(description, 409)
            if code == 400 or attempt == MAX_ATTEMPTS:
                raise TelegramAPIError(description, code)
            retry_after = (body.get("parameters") or {}).get("retry_after")
            logger.warning("Telegram %s attempt %d: %s", method, attempt, description)
            await asyncio.sleep(retry_after or self.backoff_seconds * 2 ** (attempt - 1))

    async def send_message(
        self,
        chat_id: str | int,
        text: str,
        reply_markup: Optional[dict[str, Any]] = None,
        reply_to_message_id: Optional[int] = None,
        parse_mode: str = "HTML",
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"chat_id": chat_id, "text": text, "parse_mode": parse_mode}
        if reply_markup:
            params["reply_markup"] = reply_markup
        if reply_to_message_id:
            params["reply_to_message_id"] = reply_to_message_id
        return await self.call("sendMessage", params)

    async def edit_message_text(
        self,
        chat_id: str | int,
        message_id: int,
        text: str,
        reply_markup: Optional[dict[str, Any]] = None,
        parse_mode: str = "HTML",
    ) -> Any:
        params: dict[str, Any] = {
            "chat_id": chat_id, "message_id": message_id, "text": text, "parse_mode": parse_mode,
        }
        if reply_markup is not None:
            params["reply_markup"] = reply_markup
        return await self.call("editMessageText", params)

    async def answer_callback_query(self, callback_query_id: str, text: Optional[str] = None) -> Any:
        params: dict[str, Any] = {"callback_query_id": callback_query_id}
        if text:
            params["text"] = text[:200]
        return await self.call("answerCallbackQuery", params)

    async def get_updates(self, offset: Optional[int] = None, timeout: int = 25) -> list[dict[str, Any]]:
        params: dict[str, Any] = {
            "timeout": timeout,
            "allowed_updates": ["message", "callback_query"],
        }
        if offset is not None:
            params["offset"] = offset
        return await self.call("getUpdates", params, timeout=timeout + 10) or []

    async def get_file(self, file_id: str) -> dict[str, Any]:
        return await self.call("getFile", {"file_id": file_id})

    async def download_file(self, file_id: str) -> bytes:
        info = await self.get_file(file_id)
        file_path = info.get("file_path")
        if not file_path:
            raise TelegramAPIError(f"No file_path for file {file_id}")
        response = await self._client.get(f"{self.api_base}/file/bot{self.token}/{file_path}", timeout=60.0)
        if response.status_code != 200:
            raise TelegramAPIError(f"File download failed for {file_id}", response.status_code)
        return response.content

    async def set_webhook(self, url: str, secret_token: Optional[str] = None) -> Any:
        params: dict[str, Any] = {"url": url, "allowed_updates": ["message", "callback_query"]}
        if secret_token:
            params["secret_token"] = secret_token
        return await self.call("setWebhook", params)

    async def delete_webhook(self, drop_pending_updates: bool = False) -> Any:
        return await self.call("deleteWebhook", {"drop_pending_updates": drop_pending_updates})

    async def get_webhook_info(self) -> dict[str, Any]:
        return await self.call("getWebhookInfo")
