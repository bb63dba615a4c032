"""
Response Dispatcher

Gates and runs automated responses. Eligibility and the counter update
happen atomically under the response's entity lock, so two events racing
through the router can never both pass the cooldown or exceed the cap.
Actions run after the lock is released.
"""

from collections import defaultdict, deque
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import structlog

from secauto.config.settings import Settings
from secauto.orchestrator import events
from secauto.orchestrator.capabilities import CapabilityRegistry
from secauto.orchestrator.conditions import (
    MISSING,
    evaluate_all,
    evaluate_response_conditions,
    resolve_field,
)
from secauto.orchestrator.errors import CapabilityError, ValidationError
from secauto.orchestrator.events import EventBus
from secauto.store.database import DefinitionStore
from secauto.store.models import (
    Aggregation,
    AutomatedResponse,
    ConditionOperator,
    RecordKind,
    ResponseAction,
    ResponseActionType,
    ResponseTrigger,
    ResponseTriggerType,
    TriggerCondition,
    utcnow,
)

logger = structlog.get_logger(__name__)


def aggregate(aggregation: Aggregation, values: list[float]) -> float:
    if not values:
        return 0.0
    if aggregation == Aggregation.COUNT:
        return float(len(values))
    if aggregation == Aggregation.SUM:
        return float(sum(values))
    if aggregation == Aggregation.AVG:
        return sum(values) / len(values)
    if aggregation == Aggregation.MAX:
        return float(max(values))
    return float(min(values))


def validate_response(response: AutomatedResponse, registry: Optional[CapabilityRegistry] = None) -> None:
    """
    Raises:
        ValidationError: Missing triggers or actions, bad limits, or
            incomplete threshold triggers.
    """
    problems = []
    if not response.name:
        problems.append("name is required")
    if not response.triggers:
        problems.append("at least one trigger is required")
    if not response.actions:
        problems.append("at least one action is required")
    if response.cooldown < 0:
        problems.append("cooldown must be >= 0")
    if response.max_executions < 1:
        problems.append("max_executions must be >= 1")
    for index, trigger in enumerate(response.triggers):
        if (trigger.aggregation is None) != (trigger.threshold is None):
            problems.append(f"trigger {index}: aggregation and threshold go together")
        if trigger.time_window is not None and trigger.time_window <= 0:
            problems.append(f"trigger {index}: time_window must be positive")
        if trigger.is_threshold and trigger.time_window is None:
            problems.append(f"trigger {index}: threshold triggers need a time_window")
    action_ids = [action.id for action in response.actions]
    for action_id in sorted({a for a in action_ids if action_ids.count(a) > 1}):
        problems.append(f"duplicate action id '{action_id}'")
    for action in response.actions:
        if action.retries < 0 or action.timeout <= 0:
            problems.append(f"action '{action.id}': retries must be >= 0 and timeout positive")
        if registry is not None and not registry.has_action(action.type):
            problems.append(f"action '{action.id}': no capability registered for '{ResponseActionType(action.type).value}'")
    if problems:
        raise ValidationError(f"Invalid automated response '{response.name}'", problems)


class ResponseDispatcher:
    """Cooldown, cap and threshold gating in front of response actions."""

    def __init__(
        self,
        store: DefinitionStore,
        registry: CapabilityRegistry,
        bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utcnow,
        max_window_samples: int = 10_000,
    ):
        self.store = store
        self.registry = registry
        self.bus = bus or EventBus()
        self.clock = clock
        # (response_id, trigger index) -> newest samples (timestamp, value)
        self._windows: dict[tuple[str, int], deque] = defaultdict(lambda: deque(maxlen=max_window_samples))

    # === Eligibility ===

    def should_dispatch(
        self,
        response: AutomatedResponse,
        event_data: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> bool:
        """Enabled, under the cap, out of cooldown, and every condition holds."""
        now = now or self.clock()
        if not response.enabled:
            return False
        if response.execution_count >= response.max_executions:
            return False
        if response.last_executed is not None:
            if (now - response.last_executed).total_seconds() < response.cooldown:
                return False
        return evaluate_response_conditions(response.conditions, event_data)

    def triggered_by(
        self,
        response: AutomatedResponse,
        event_type: str,
        context: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Whether any trigger of ``response`` fires for this event.

        Threshold triggers record a sample for every matching event and
        fire once the aggregate over their window reaches the threshold.
        """
        now = now or self.clock()
        fired = False
        for index, trigger in enumerate(response.triggers):
            if ResponseTriggerType(trigger.type).value != event_type:
                continue
            if not evaluate_all(trigger.conditions, context):
                continue
            if not trigger.is_threshold:
                fired = True
            elif self._record_sample(response.id, index, trigger, context, now):
                fired = True
        return fired

    def _record_sample(
        self,
        response_id: str,
        index: int,
        trigger: ResponseTrigger,
        context: dict[str, Any],
        now: datetime,
    ) -> bool:
        aggregation = Aggregation(trigger.aggregation)
        if aggregation == Aggregation.COUNT:
            value = 1.0
        else:
            raw = resolve_field(context, trigger.aggregate_field or "value")
            if raw is MISSING or isinstance(raw, bool) or not isinstance(raw, (int, float)):
                return False
            value = float(raw)

        window = self._windows[(response_id, index)]
        window.append((now, value))
        if trigger.time_window:
            horizon = now - timedelta(minutes=trigger.time_window)
            while window and window[0][0] < horizon:
                window.popleft()
        total = aggregate(aggregation, [sample for _, sample in window])
        return total >= float(trigger.threshold)

    def _reset_windows(self, response_id: str) -> None:
        for key in [key for key in self._windows if key[0] == response_id]:
            del self._windows[key]

    # === Dispatch ===

    async def offer(self, response_id: str, event_type: str, context: dict[str, Any]) -> Optional[dict[str, Any]]:
        """
        Offer an event to one response; dispatches when it fires and is eligible.

        Returns:
            The dispatch summary, or None when nothing ran.
        """
        now = self.clock()
        async with self.store.lock(RecordKind.AUTOMATED_RESPONSE, response_id):
            response = self.store.get(RecordKind.AUTOMATED_RESPONSE, response_id)
            if response is None:
                return None
            if not response.enabled or response.execution_count >= response.max_executions:
                self._reset_windows(response_id)
                return None
            if not self.triggered_by(response, event_type, context, now):
                return None
            if not self.should_dispatch(response, context, now):
                logger.debug("Response not eligible", response_id=response_id, event_type=event_type)
                return None
            response.execution_count += 1
            response.last_executed = now
            response.updated_at = now
            self.store.upsert(RecordKind.AUTOMATED_RESPONSE, response)
            self._reset_windows(response_id)

        return await self.dispatch(response, context)

    async def dispatch(self, response: AutomatedResponse, event_data: dict[str, Any]) -> dict[str, Any]:
        """Run every action in order and fold the outcome into the statistics."""
        log = logger.bind(response_id=response.id, response=response.name)
        log.info("Dispatching automated response", actions=len(response.actions))

        results = [await self._run_action(action, event_data) for action in response.actions]
        succeeded = all(result["status"] == "completed" for result in results)

        async with self.store.lock(RecordKind.AUTOMATED_RESPONSE, response.id):
            current = self.store.get(RecordKind.AUTOMATED_RESPONSE, response.id) or response
            if succeeded:
                current.success_count += 1
            if current.execution_count:
                current.success_rate = current.success_count / current.execution_count
            current.last_result = results
            current.updated_at = self.clock()
            self.store.upsert(RecordKind.AUTOMATED_RESPONSE, current)

        summary = {
            "response_id": response.id,
            "response_name": response.name,
            "success": succeeded,
            "actions": results,
        }
        if not succeeded:
            log.warning("Automated response had failing actions")
        await self.bus.emit(events.RESPONSE_DISPATCHED, summary)
        return summary

    async def _run_action(self, action: ResponseAction, event_data: dict[str, Any]) -> dict[str, Any]:
        attempts = 0
        error: Optional[CapabilityError] = None
        while attempts <= action.retries:
            attempts += 1
            try:
                output = await self.registry.invoke_action(
                    action.type,
                    dict(action.parameters),
                    event_data,
                    timeout=action.timeout,
                )
                return {
                    "action_id": action.id,
                    "type": ResponseActionType(action.type).value,
                    "status": "completed",
                    "attempts": attempts,
                    "output": output,
                }
            except CapabilityError as e:
                error = e
                logger.warning(
                    "Response action failed",
                    action_id=action.id,
                    attempt=attempts,
                    error=str(e),
                    timed_out=e.timed_out,
                )

        result: dict[str, Any] = {
            "action_id": action.id,
            "type": ResponseActionType(action.type).value,
            "status": "failed",
            "attempts": attempts,
            "error": str(error),
            "timed_out": error.timed_out if error else False,
        }
        if action.rollback is not None:
            result["rollback"] = await self._rollback(action.rollback, event_data)
        return result

    async def _rollback(self, rollback: ResponseAction, event_data: dict[str, Any]) -> str:
        try:
            await self.registry.invoke_action(
                rollback.type,
                dict(rollback.parameters),
                event_data,
                timeout=rollback.timeout,
            )
        except CapabilityError as e:
            logger.error("Rollback failed", action_id=rollback.id, error=str(e))
            return "failed"
        return "completed"


# ============================================================================
# Standard Responses
# ============================================================================

def default_responses(settings: Settings) -> list[AutomatedResponse]:
    """Fresh copies of the automated responses seeded at startup."""
    return [
        AutomatedResponse(
            id="resp_brute_force",
            name="Brute Force Response",
            description="Automated response to brute force attacks",
            triggers=[
                ResponseTrigger(
                    type=ResponseTriggerType.SECURITY_EVENT,
                    conditions=[TriggerCondition("event_type", ConditionOperator.EQUALS, "brute_force_attack")],
                    aggregation=Aggregation.COUNT,
                    time_window=5,
                    threshold=5,
                ),
            ],
            actions=[
                ResponseAction(
                    id="action-001",
                    type=ResponseActionType.BLOCK_IP,
                    parameters={"duration": 3600},
                    timeout=30,
                    retries=3,
                ),
                ResponseAction(
                    id="action-002",
                    type=ResponseActionType.NOTIFY,
                    parameters={
                        "type": "email",
                        "recipients": ["security@company.com"],
                        "message": "Brute force attack detected and blocked",
                    },
                    timeout=10,
                    retries=2,
                ),
            ],
            cooldown=settings.default_response_cooldown,
            max_executions=settings.default_response_max_executions,
        ),
        AutomatedResponse(
            id="resp_malware_detection",
            name="Malware Detection Response",
            description="Automated response to malware detection",
            triggers=[
                ResponseTrigger(
                    type=ResponseTriggerType.SECURITY_EVENT,
                    conditions=[TriggerCondition("event_type", ConditionOperator.EQUALS, "malware_detected")],
                ),
            ],
            actions=[
                ResponseAction(
                    id="action-001",
                    type=ResponseActionType.QUARANTINE_USER,
                    parameters={"duration": 1800},
                    timeout=30,
                    retries=3,
                ),
                ResponseAction(
                    id="action-002",
                    type=ResponseActionType.ISOLATE_SYSTEM,
                    parameters={"isolation_level": "network", "duration": 3600},
                    timeout=60,
                    retries=2,
                ),
                ResponseAction(
                    id="action-003",
                    type=ResponseActionType.COLLECT_EVIDENCE,
                    parameters={"evidence_types": ["memory_dump", "network_logs", "file_hashes"]},
                    timeout=300,
                    retries=1,
                ),
            ],
            cooldown=settings.default_response_cooldown,
            max_executions=settings.default_response_max_executions,
        ),
    ]
