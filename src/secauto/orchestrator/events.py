"""
Outbound Events

In-process publish/subscribe for lifecycle notifications. Subscribers
(audit logging, UI feeds, notification delivery) never affect the
component that emitted the event.
"""

import inspect
from collections import defaultdict
from typing import Any, Awaitable, Callable, Union

import structlog

logger = structlog.get_logger(__name__)

EXECUTION_COMPLETED = "execution.completed"
EXECUTION_FAILED = "execution.failed"
EXECUTION_CANCELLED = "execution.cancelled"
POLICY_VIOLATION_DETECTED = "policy.violation_detected"
COMPLIANCE_STATUS_CHANGED = "compliance.status_changed"
RESPONSE_DISPATCHED = "response.dispatched"
ASSESSMENT_COMPLETED = "assessment.completed"

ALL_TOPICS = (
    EXECUTION_COMPLETED,
    EXECUTION_FAILED,
    EXECUTION_CANCELLED,
    POLICY_VIOLATION_DETECTED,
    COMPLIANCE_STATUS_CHANGED,
    RESPONSE_DISPATCHED,
    ASSESSMENT_COMPLETED,
)

Handler = Callable[[str, dict[str, Any]], Union[None, Awaitable[None]]]


class EventBus:
    """Topic-keyed subscriber lists; ``"*"`` receives every topic."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> None:
        self._handlers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        if handler in self._handlers.get(topic, []):
            self._handlers[topic].remove(handler)

    async def emit(self, topic: str, payload: dict[str, Any]) -> None:
        """Deliver to every subscriber; handler errors are logged and dropped."""
        for handler in [*self._handlers.get(topic, []), *self._handlers.get("*", [])]:
            try:
                result = handler(topic, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event handler failed", topic=topic)
