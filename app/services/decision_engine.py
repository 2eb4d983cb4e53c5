"""Decision engine: turn transcript + insights into typed CRM decisions.

Two strategies:
- LLM: one prompt enumerating every decision type and its parameters.
- Rules: keyword families, used when no LLM is configured or its answer is
  unusable. Always produces at least the audit note.

Persistence applies the auto-approval rules; everything else stays pending
for the approval gate.
"""

import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

from pydantic import ValidationError
from sqlalchemy import select, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import utcnow
from app.core.exceptions import LLMResponseError
from app.models.communication import Communication
from app.models.decision import (
    AutoApprovalRule,
    Decision,
    DecisionPriority,
    DecisionStatus,
    DecisionType,
    DECISION_ROUTING,
)
from app.schemas.decision import DecisionContext, DecisionSuggestion, normalize_parameters
from app.services.insight_extractor import strip_code_fences
from app.services.llm import LLMClient
from app.utils.parsing import (
    default_when,
    detect_property_type,
    extract_amounts,
    extract_phone,
    parse_amount,
    parse_when,
)

logger = logging.getLogger(__name__)

AUTO_APPROVAL_ACTOR = "auto_approval"
# Model-claimed approval flags only count above this confidence
MODEL_TRUST_THRESHOLD = 0.8

SCHEDULING_KEYWORDS = ("meeting", "viewing", "appointment", "visit", "show", "see the")
FOLLOW_UP_KEYWORDS = ("follow up", "follow-up", "call back", "callback", "remind", "check with", "get back to")
NEW_LEAD_KEYWORDS = ("new client", "interested", "looking for", "wants to buy", "wants to rent", "new lead")

_PRIORITY_ALIASES = {"normal": "medium", "critical": "urgent"}
_PROPERTY_NAME_RE = re.compile(r"\bsee (?:the )?((?:[A-Z][\w'-]*)(?:\s+[A-Z][\w'-]*)*)")

SYSTEM_PROMPT = """You are the decision engine of a real-estate CRM. From an agent's voice
note you propose concrete CRM actions. Respond with ONLY a JSON object."""

DECISION_TEMPLATE = """Current local time: {now}
{client_block}
Transcript:
\"\"\"{transcript}\"\"\"

Summary: {summary}
Key points: {key_points}
Action items: {action_items}
Urgency: {urgency}
Entities: {entities}

Propose CRM decisions. Allowed decision_type values and their parameters:
- create_lead: name, phone?, email?, interested_in?, budget_min?, budget_max?, notes?, priority (low|normal|high|urgent)
- update_client: client_id, updates {{name|email|phone|status|client_type|budget_min|budget_max|assigned_agent_id|preferences|notes}}
- schedule_appointment: title, start_time (ISO 8601 with offset), duration_minutes?, client_id?, lead_id?, property_id?, location?, description?
- create_task: title, description?, due_date (ISO 8601)?, priority (low|normal|high|urgent), task_type?
- update_property: property_id, updates {{title|status|price|property_type|location|description}}
- send_message: content, client_id?, channel?
- change_status: client_id, status
- assign_agent: client_id, agent_id
- update_budget: client_id, budget_min, budget_max (numbers in rupees)
- add_note: note_content, entity_type?, entity_id?

Return:
{{"decisions": [{{
  "decision_type": "...",
  "parameters": {{...}},
  "reasoning": "why, quoting the transcript",
  "confidence_score": 0.0-1.0,
  "requires_approval": true,
  "auto_approve_eligible": false
}}]}}
Only propose what the transcript supports. Always include one add_note with the gist."""


def _priority_for(decision_type: DecisionType, parameters: dict[str, Any], confidence: float) -> str:
    raw = str(parameters.get("priority") or "").lower()
    raw = _PRIORITY_ALIASES.get(raw, raw)
    if raw in {p.value for p in DecisionPriority}:
        return raw
    if confidence > 0.9:
        return DecisionPriority.HIGH
    if confidence > 0.7:
        return DecisionPriority.MEDIUM
    return DecisionPriority.LOW


def _due_offset(urgency: Optional[str]) -> timedelta:
    if urgency in ("high", "urgent"):
        return timedelta(days=1)
    if urgency == "medium":
        return timedelta(days=3)
    return timedelta(days=7)


def _to_utc(dt: datetime) -> datetime:
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def _hhmm(value: str):
    hours, minutes = str(value).split(":", 1)
    return int(hours), int(minutes)


class DecisionEngine:
    def __init__(
        self,
        llm: Optional[LLMClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
        decision_ttl_hours: Optional[int] = None,
    ):
        self.llm = llm
        self._tz = ZoneInfo(settings.BUSINESS_TIMEZONE)
        self._clock = clock or (lambda: datetime.now(self._tz))
        self.decision_ttl = timedelta(hours=decision_ttl_hours or settings.DECISION_TTL_HOURS)

    def now(self) -> datetime:
        """Current business-local time (timezone aware)."""
        return self._clock()

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    async def analyze(self, context: DecisionContext) -> list[DecisionSuggestion]:
        suggestions: list[DecisionSuggestion] = []
        if self.llm is not None and self.llm.is_configured:
            try:
                suggestions = await self._analyze_with_llm(context)
            except Exception as e:
                logger.error("LLM decision analysis failed, using rules: %s", e)
                suggestions = []
            if not suggestions:
                logger.warning("No usable LLM decisions; falling back to rule-based analysis")

        if not suggestions:
            suggestions = self._analyze_with_rules(context)

        if not any(s.decision_type == DecisionType.ADD_NOTE for s in suggestions):
            suggestions.append(self._audit_note(context))

        logger.info(
            "Decision analysis produced %d suggestions: %s",
            len(suggestions), ", ".join(s.decision_type.value for s in suggestions),
        )
        return suggestions

    async def _analyze_with_llm(self, context: DecisionContext) -> list[DecisionSuggestion]:
        client_block = ""
        if context.client_context:
            client_block = f"Known client (client_id={context.client_id}): {json.dumps(context.client_context, default=str)}\n"
        prompt = DECISION_TEMPLATE.format(
            now=self.now().isoformat(timespec="minutes"),
            client_block=client_block,
            transcript=context.transcript[:6000],
            summary=context.summary or "",
            key_points="; ".join(context.key_points),
            action_items="; ".join(context.action_items),
            urgency=context.urgency or "medium",
            entities=json.dumps(context.entities, default=str),
        )
        raw = await self.llm.complete(SYSTEM_PROMPT, prompt, max_tokens=2000)
        return self.parse_llm_decisions(raw, context)

    def parse_llm_decisions(self, raw: str, context: DecisionContext) -> list[DecisionSuggestion]:
        """Validate a model answer into suggestions. Raises LLMResponseError on
        anything that is not JSON; silently drops individual bad items."""
        try:
            data = json.loads(strip_code_fences(raw))
        except json.JSONDecodeError as e:
            raise LLMResponseError(f"decision response is not JSON: {e}") from e

        if isinstance(data, dict):
            items = data.get("decisions")
        else:
            items = data
        if not isinstance(items, list):
            raise LLMResponseError("decision response has no 'decisions' list")

        suggestions = []
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                decision_type = DecisionType(item.get("decision_type") or item.get("type"))
            except ValueError:
                logger.warning("Dropping decision with unknown type %r", item.get("decision_type"))
                continue

            params = item.get("parameters") if isinstance(item.get("parameters"), dict) else {}
            params = self._prepare_parameters(decision_type, dict(params), context)
            try:
                params = normalize_parameters(decision_type, params)
            except ValidationError as e:
                logger.warning("Dropping %s decision with invalid parameters: %s", decision_type.value, e)
                continue

            suggestion = DecisionSuggestion(
                decision_type=decision_type,
                parameters=params,
                reasoning=str(item.get("reasoning") or ""),
                confidence_score=item.get("confidence_score", item.get("confidence", 0.5)),
            )
            trusted = suggestion.confidence_score > MODEL_TRUST_THRESHOLD
            suggestion.requires_approval = not (item.get("requires_approval") is False and trusted)
            suggestion.auto_approve_eligible = item.get("auto_approve_eligible") is True and trusted
            suggestions.append(suggestion)
        return suggestions

    def _prepare_parameters(
        self, decision_type: DecisionType, params: dict[str, Any], context: DecisionContext,
    ) -> dict[str, Any]:
        """Fill gaps the model commonly leaves, before validation."""
        now = self.now()
        if decision_type == DecisionType.SCHEDULE_APPOINTMENT:
            params["start_time"] = self._resolve_datetime(params.get("start_time"), now) or _to_utc(default_when(now))
            if not params.get("client_id") and context.client_id:
                params["client_id"] = str(context.client_id)
            params.setdefault("title", "Property viewing")
        elif decision_type == DecisionType.CREATE_TASK:
            due = self._resolve_datetime(params.get("due_date"), now)
            params["due_date"] = due or _to_utc(now + _due_offset(context.urgency))
            if not params.get("priority"):
                params["priority"] = "high" if context.urgency in ("high", "urgent") else "normal"
            if context.client_id and not params.get("related_entity_id"):
                params["related_entity_type"] = "client"
                params["related_entity_id"] = str(context.client_id)
        elif decision_type == DecisionType.UPDATE_BUDGET:
            for key in ("budget_min", "budget_max"):
                if isinstance(params.get(key), str):
                    params[key] = parse_amount(params[key])
            if not params.get("client_id") and context.client_id:
                params["client_id"] = str(context.client_id)
        elif decision_type in (DecisionType.UPDATE_CLIENT, DecisionType.CHANGE_STATUS, DecisionType.ASSIGN_AGENT):
            if not params.get("client_id") and context.client_id:
                params["client_id"] = str(context.client_id)
        elif decision_type == DecisionType.ADD_NOTE:
            if context.client_id and not params.get("entity_id"):
                params.setdefault("entity_type", "client")
                params["entity_id"] = str(context.client_id)
        return params

    def _resolve_datetime(self, value: Any, now: datetime) -> Optional[datetime]:
        """ISO strings (naive = business local) or spoken phrases -> naive UTC."""
        if not value:
            return None
        if isinstance(value, datetime):
            parsed = value
        else:
            try:
                parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
            except ValueError:
                parsed = parse_when(str(value), now)
                if parsed is None:
                    return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=self._tz)
        return _to_utc(parsed)

    def _analyze_with_rules(self, context: DecisionContext) -> list[DecisionSuggestion]:
        transcript = context.transcript or ""
        text = transcript.lower()
        entities = context.entities or {}
        now = self.now()
        suggestions: list[DecisionSuggestion] = []

        if any(k in text for k in SCHEDULING_KEYWORDS):
            when = None
            for phrase in entities.get("dates") or []:
                when = parse_when(str(phrase), now)
                if when:
                    break
            when = when or parse_when(transcript, now) or default_when(now)

            title = "Property viewing"
            locations = entities.get("locations") or []
            name_match = _PROPERTY_NAME_RE.search(transcript)
            if locations:
                title = f"Property viewing: {locations[0]}"
            elif name_match:
                title = f"Property viewing: {name_match.group(1)}"

            params = {
                "title": title,
                "appointment_type": "property_viewing",
                "start_time": _to_utc(when),
                "duration_minutes": 60,
                "description": context.summary or transcript[:500],
            }
            if context.client_id:
                params["client_id"] = str(context.client_id)
            if locations:
                params["location"] = str(locations[0])
            suggestions.append(self._rule_suggestion(
                DecisionType.SCHEDULE_APPOINTMENT, params, 0.8,
                "Scheduling language detected in the voice note",
            ))

        if any(k in text for k in FOLLOW_UP_KEYWORDS):
            params = {
                "title": (context.action_items[0] if context.action_items else "Follow up with client")[:255],
                "description": context.summary or transcript[:500],
                "task_type": "follow_up",
                "priority": "high" if context.urgency in ("high", "urgent") else "normal",
                "due_date": _to_utc(now + _due_offset(context.urgency)),
            }
            if context.client_id:
                params["related_entity_type"] = "client"
                params["related_entity_id"] = str(context.client_id)
            suggestions.append(self._rule_suggestion(
                DecisionType.CREATE_TASK, params, 0.75, "Follow-up language detected in the voice note",
            ))

        amounts = [a for a in (parse_amount(str(x)) for x in entities.get("amounts") or []) if a]
        if len(amounts) < 2:
            amounts = extract_amounts(transcript)
        if len(amounts) >= 2 and context.client_id:
            params = {
                "client_id": str(context.client_id),
                "budget_min": min(amounts),
                "budget_max": max(amounts),
            }
            suggestions.append(self._rule_suggestion(
                DecisionType.UPDATE_BUDGET, params, 0.7, "Budget range mentioned in the voice note",
            ))

        people = entities.get("people") or []
        phone = extract_phone(transcript)
        if any(k in text for k in NEW_LEAD_KEYWORDS) and not context.client_id and (people or phone):
            params = {
                "name": str(people[0]) if people else "Voice note lead",
                "phone": phone,
                "source": "voice_note",
                "interested_in": detect_property_type(transcript),
                "notes": context.summary or transcript[:500],
            }
            if amounts:
                params["budget_min"] = min(amounts)
                params["budget_max"] = max(amounts)
            suggestions.append(self._rule_suggestion(
                DecisionType.CREATE_LEAD, params, 0.65, "New prospect mentioned in the voice note",
            ))

        suggestions.append(self._audit_note(context))
        return suggestions

    def _rule_suggestion(
        self, decision_type: DecisionType, params: dict[str, Any], confidence: float, reasoning: str,
    ) -> DecisionSuggestion:
        return DecisionSuggestion(
            decision_type=decision_type,
            parameters=normalize_parameters(decision_type, params),
            reasoning=reasoning,
            confidence_score=confidence,
            requires_approval=True,
            auto_approve_eligible=False,
        )

    def _audit_note(self, context: DecisionContext) -> DecisionSuggestion:
        """Every processed voice note leaves a note behind."""
        content = context.summary or context.transcript[:1000] or "Voice note processed"
        params: dict[str, Any] = {"note_content": content, "entity_type": "general"}
        if context.client_id:
            params["entity_type"] = "client"
            params["entity_id"] = str(context.client_id)
        return DecisionSuggestion(
            decision_type=DecisionType.ADD_NOTE,
            parameters=normalize_parameters(DecisionType.ADD_NOTE, params),
            reasoning="Record of the voice note",
            confidence_score=0.95,
            requires_approval=False,
            auto_approve_eligible=True,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def create_decisions(
        self,
        db: AsyncSession,
        suggestions: list[DecisionSuggestion],
        communication: Communication,
    ) -> list[Decision]:
        """Persist suggestions; auto-approve the ones an active rule allows."""
        decisions = []
        now = utcnow()
        for suggestion in suggestions:
            action_type, _, _ = DECISION_ROUTING[suggestion.decision_type]
            decision = Decision(
                communication_id=communication.id,
                organization_id=communication.organization_id,
                decision_type=suggestion.decision_type.value,
                action_type=action_type.value,
                parameters=suggestion.parameters,
                reasoning=suggestion.reasoning,
                confidence_score=suggestion.confidence_score,
                priority=_priority_for(suggestion.decision_type, suggestion.parameters, suggestion.confidence_score),
                requires_approval=suggestion.requires_approval,
                auto_approve_eligible=suggestion.auto_approve_eligible,
                status=DecisionStatus.PENDING,
                suggested_at=now,
                expires_at=now + self.decision_ttl,
            )

            if suggestion.auto_approve_eligible:
                rule = await self.matching_auto_approval_rule(db, suggestion, communication.organization_id)
                if rule is not None:
                    decision.status = DecisionStatus.APPROVED
                    decision.approved_by = AUTO_APPROVAL_ACTOR
                    decision.approved_at = now
                    logger.info("Decision %s auto-approved by rule '%s'", decision.short_id, rule.rule_name)

            db.add(decision)
            # Flush so the next suggestion's daily-cap count sees this one
            await db.flush()
            decisions.append(decision)

        await db.commit()
        return decisions

    async def matching_auto_approval_rule(
        self,
        db: AsyncSession,
        suggestion: DecisionSuggestion,
        organization_id: Optional[str],
    ) -> Optional[AutoApprovalRule]:
        """First active rule that permits auto-approval, or None.

        Any error evaluating rules counts as "not auto-approved".
        """
        try:
            result = await db.execute(
                select(AutoApprovalRule)
                .where(
                    and_(
                        AutoApprovalRule.decision_type == suggestion.decision_type.value,
                        AutoApprovalRule.is_active.is_(True),
                        or_(
                            AutoApprovalRule.organization_id == organization_id,
                            AutoApprovalRule.organization_id.is_(None),
                        ),
                    )
                )
                .order_by(AutoApprovalRule.priority.desc(), AutoApprovalRule.created_at)
            )
            for rule in result.scalars().all():
                if await self._rule_permits(db, rule, suggestion, organization_id):
                    return rule
            return None
        except Exception as e:
            logger.error("Auto-approval rule check failed, leaving decision pending: %s", e)
            return None

    async def _rule_permits(
        self,
        db: AsyncSession,
        rule: AutoApprovalRule,
        suggestion: DecisionSuggestion,
        organization_id: Optional[str],
    ) -> bool:
        conditions = rule.conditions or {}

        min_confidence = float(conditions.get("min_confidence", 0.8))
        if suggestion.confidence_score < min_confidence:
            return False

        local_now = self.now()
        window = conditions.get("time_window")
        if window:
            start, end = _hhmm(window["start"]), _hhmm(window["end"])
            current = (local_now.hour, local_now.minute)
            if start <= end:
                inside = start <= current <= end
            else:  # overnight window, e.g. 22:00-06:00
                inside = current >= start or current <= end
            if not inside:
                return False

        max_daily = conditions.get("max_daily_approvals")
        if max_daily is not None:
            local_midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
            today_start = _to_utc(local_midnight)
            count_query = await db.execute(
                select(func.count(Decision.id)).where(
                    and_(
                        Decision.decision_type == suggestion.decision_type.value,
                        Decision.organization_id == organization_id,
                        Decision.approved_by == AUTO_APPROVAL_ACTOR,
                        Decision.approved_at >= today_start,
                    )
                )
            )
            approved_today = count_query.scalar() or 0
            if approved_today >= int(max_daily):
                logger.info(
                    "Auto-approval cap reached for %s: %d/%d today",
                    suggestion.decision_type.value, approved_today, int(max_daily),
                )
                return False

        return True
