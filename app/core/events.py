"""In-process event bus.

Used as the change-notification channel between services that must not
import each other (the approval gate publishes, the chat bridge and the
dashboard websocket subscribe).
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

EventHandler = Callable[[str, dict[str, Any]], Awaitable[None]]

APPROVAL_REQUEST_CREATED = "approval_request.created"
APPROVAL_REQUEST_RESOLVED = "approval_request.resolved"
DECISION_CREATED = "decision.created"
ACTION_COMPLETED = "crm_action.completed"
ACTION_FAILED = "crm_action.failed"
COMMUNICATION_STATUS = "communication.status"


class EventBus:
    """Publish/subscribe with per-event and wildcard ('*') handlers.

    Handler errors are logged and never propagate to the publisher.
    """

    def __init__(self):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        if handler not in self._handlers[event_type]:
            self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    async def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        handlers = list(self._handlers.get(event_type, [])) + list(self._handlers.get("*", []))
        if not handlers:
            return
        results = await asyncio.gather(
            *(h(event_type, payload) for h in handlers), return_exceptions=True
        )
        for handler, result in zip(handlers, results):
            if isinstance(result, Exception):
                logger.error(
                    "Event handler %s failed for %s: %s",
                    getattr(handler, "__qualname__", handler), event_type, result,
                )
