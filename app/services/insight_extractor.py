"""Turn a transcript into structured insights with one LLM call.

No local fallback: a malformed answer raises
InsightParseError so the worker records the failure and retries the job.
"""

import json
import logging
import re
from typing import Any, Optional

from pydantic import ValidationError

from app.core.exceptions import InsightParseError
from app.schemas.insights import InsightResult
from app.services.llm import LLMClient

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You analyse voice notes recorded by real-estate agents about their clients.
Respond with ONLY a JSON object, no prose and no markdown."""

INSIGHT_TEMPLATE = """Analyse this voice-note transcript.
{client_block}
Transcript:
\"\"\"{transcript}\"\"\"

Return a JSON object with exactly these fields:
{{
  "summary": "2-3 sentence summary of what was said",
  "key_points": ["important facts"],
  "action_items": ["things the agent must do"],
  "sentiment": "positive | negative | neutral",
  "entities": {{
    "people": ["names"],
    "locations": ["places, localities, project names"],
    "dates": ["dates or relative dates as spoken, e.g. 'tomorrow', 'next Friday'"],
    "amounts": ["money amounts as spoken, e.g. '50 lakh', '1.2 crore'"],
    "property_types": ["apartment, villa, plot, ..."],
    "requirements": ["what the client is looking for"]
  }},
  "subject": "short title, max 50 characters",
  "category": "viewing | follow_up | negotiation | new_inquiry | general",
  "urgency": "low | medium | high | urgent"
}}"""

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text.strip()).strip()


def parse_json_object(text: str) -> dict[str, Any]:
    """Parse a JSON object out of a model answer, tolerating markdown fences."""
    cleaned = strip_code_fences(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise InsightParseError(f"LLM returned non-JSON output: {e}") from e
    if not isinstance(data, dict):
        raise InsightParseError(f"LLM returned {type(data).__name__}, expected an object")
    return data


def format_client_context(client_context: Optional[dict[str, Any]]) -> str:
    if not client_context:
        return ""
    lines = ["Known client:"]
    for key in ("name", "phone", "status", "budget_min", "budget_max", "preferences", "notes"):
        value = client_context.get(key)
        if value not in (None, "", {}, []):
            lines.append(f"- {key}: {value}")
    return "\n".join(lines) + "\n"


class InsightExtractor:
    def __init__(self, llm: LLMClient):
        self.llm = llm

    async def extract(self, transcript: str, client_context: Optional[dict[str, Any]] = None) -> InsightResult:
        """Raises LLMUnavailableError / LLMError / InsightParseError."""
        if not transcript or not transcript.strip():
            raise ValueError("transcript must not be empty")

        prompt = INSIGHT_TEMPLATE.format(
            transcript=transcript.strip()[:8000],
            client_block=format_client_context(client_context),
        )
        raw = await self.llm.complete(SYSTEM_PROMPT, prompt)
        data = parse_json_object(raw)

        if not data.get("summary"):
            raise InsightParseError("LLM response is missing 'summary'")
        try:
            insights = InsightResult.model_validate(data)
        except ValidationError as e:
            raise InsightParseError(f"LLM response failed validation: {e}") from e

        logger.info(
            "Extracted insights: subject=%r sentiment=%s urgency=%s (%d action items)",
            insights.subject, insights.sentiment, insights.urgency, len(insights.action_items),
        )
        return insights
