"""Structured insights extracted from a transcript."""

from typing import Any, Optional
from pydantic import BaseModel, field_validator

SENTIMENTS = ("positive", "negative", "neutral")
URGENCIES = ("low", "medium", "high", "urgent")
ENTITY_KEYS = ("people", "locations", "dates", "amounts", "property_types", "requirements")


class InsightResult(BaseModel):
    summary: str
    key_points: list[str] = []
    action_items: list[str] = []
    sentiment: str = "neutral"
    entities: dict[str, list[Any]] = {}
    subject: Optional[str] = None
    category: Optional[str] = None
    urgency: str = "medium"

    @field_validator("sentiment", mode="before")
    @classmethod
    def known_sentiment(cls, v: Any) -> str:
        v = str(v or "").lower()
        return v if v in SENTIMENTS else "neutral"

    @field_validator("urgency", mode="before")
    @classmethod
    def known_urgency(cls, v: Any) -> str:
        v = str(v or "").lower()
        return v if v in URGENCIES else "medium"

    @field_validator("subject")
    @classmethod
    def short_subject(cls, v: Optional[str]) -> Optional[str]:
        return v[:50] if v else v

    @field_validator("key_points", "action_items", mode="before")
    @classmethod
    def list_of_strings(cls, v: Any) -> list[str]:
        if not v:
            return []
        if isinstance(v, str):
            return [v]
        return [str(item) for item in v if item]

    @field_validator("entities", mode="before")
    @classmethod
    def entity_lists(cls, v: Any) -> dict[str, list[Any]]:
        v = v if isinstance(v, dict) else {}
        out = {}
        for key in ENTITY_KEYS:
            value = v.get(key) or []
            out[key] = value if isinstance(value, list) else [value]
        return out
