"""
Trigger Router

Matches incoming events against enabled playbook triggers and automated
response triggers. Matching playbooks are enqueued as new executions;
matching responses are offered to the response dispatcher. Manual and
scheduled playbook triggers are not routed here.
"""

from dataclasses import dataclass, field
from typing import Any

import structlog

from secauto.orchestrator.conditions import evaluate_all
from secauto.orchestrator.engine import ExecutionEngine
from secauto.orchestrator.errors import BackpressureError, ValidationError
from secauto.orchestrator.playbooks import event_variables
from secauto.orchestrator.queue import ExecutionQueue
from secauto.orchestrator.responses import ResponseDispatcher
from secauto.store.database import DefinitionStore
from secauto.store.models import (
    AutomatedResponse,
    Playbook,
    PlaybookExecution,
    RecordKind,
    ResponseTriggerType,
    TriggerType,
)

logger = structlog.get_logger(__name__)


@dataclass
class RoutingResult:
    """What one routed event caused."""
    event_type: str
    executions: list[PlaybookExecution] = field(default_factory=list)
    responses: list[dict[str, Any]] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)  # playbook ids with unusable variables
    rejected: list[str] = field(default_factory=list)  # playbook ids refused by a full queue


def event_context(event_type: str, event_data: dict[str, Any]) -> dict[str, Any]:
    return {"event_type": event_type, **event_data}


def playbook_matches(playbook: Playbook, event_type: str, context: dict[str, Any]) -> bool:
    trigger = playbook.trigger
    trigger_type = TriggerType(trigger.type)
    if trigger_type == TriggerType.EVENT:
        if event_type not in trigger.events:
            return False
    elif trigger_type == TriggerType.ALERT:
        if event_type != "alert" and event_type not in trigger.events:
            return False
    elif trigger_type == TriggerType.CONDITION:
        if not trigger.conditions:
            return False
    else:
        return False
    return evaluate_all(trigger.conditions, context)


def response_listens_to(response: AutomatedResponse, event_type: str) -> bool:
    return any(ResponseTriggerType(t.type).value == event_type for t in response.triggers)


class TriggerRouter:
    """Fans events out to playbooks and automated responses."""

    def __init__(
        self,
        store: DefinitionStore,
        engine: ExecutionEngine,
        queue: ExecutionQueue,
        dispatcher: ResponseDispatcher,
    ):
        self.store = store
        self.engine = engine
        self.queue = queue
        self.dispatcher = dispatcher

    async def route(self, event_type: str, event_data: dict[str, Any]) -> RoutingResult:
        """
        Route one event.

        Raises:
            BackpressureError: After routing, when any matching playbook
                could not be enqueued.
        """
        context = event_context(event_type, event_data)
        result = RoutingResult(event_type=event_type)
        log = logger.bind(event_type=event_type)

        for playbook in self.store.list(RecordKind.PLAYBOOK, {"enabled": True}):
            if not playbook_matches(playbook, event_type, context):
                continue
            try:
                execution = self.engine.new_execution(
                    playbook,
                    triggered_by=f"event:{event_type}",
                    trigger_type=TriggerType(playbook.trigger.type).value,
                    supplied=event_variables(playbook, event_data),
                    metadata={"event_type": event_type},
                )
            except ValidationError as e:
                log.warning("Playbook skipped", playbook_id=playbook.id, problems=e.problems)
                result.skipped.append(playbook.id)
                continue
            try:
                self.queue.enqueue(execution)
            except BackpressureError:
                result.rejected.append(playbook.id)
                continue
            result.executions.append(execution)

        responses = [
            r for r in self.store.list(RecordKind.AUTOMATED_RESPONSE, {"enabled": True})
            if response_listens_to(r, event_type)
        ]
        for response in sorted(responses, key=lambda r: -r.priority):
            summary = await self.dispatcher.offer(response.id, event_type, context)
            if summary is not None:
                result.responses.append(summary)

        log.info(
            "Event routed",
            executions=len(result.executions),
            responses=len(result.responses),
            skipped=len(result.skipped),
            rejected=len(result.rejected),
        )
        if result.rejected:
            raise BackpressureError(self.queue.max_size)
        return result
