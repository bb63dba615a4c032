"""
Periodic Schedulers

Three independent timers share the ``PeriodicJob`` loop:

- ``PlaybookScheduler`` enqueues playbooks whose cron schedule is due.
- ``PolicyEnforcementScheduler`` re-checks policy rules against the
  target state returned by an evaluator capability.
- ``ComplianceScheduler`` re-runs compliance checks per their frequency.

Each tick skips entities whose ``next_*`` timestamp is still in the
future and writes nothing for them. ``next_*`` is recomputed before the
evaluator runs, so a slow or crashing check cannot cause re-triggering.
A failing item is recorded on the item and the tick moves on.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

import structlog

from secauto.config.settings import Settings
from secauto.orchestrator import events
from secauto.orchestrator.capabilities import CapabilityRegistry
from secauto.orchestrator.conditions import compile_expression, evaluate_expression
from secauto.orchestrator.engine import ExecutionEngine
from secauto.orchestrator.errors import (
    BackpressureError,
    CapabilityError,
    OrchestrationError,
    ValidationError,
)
from secauto.orchestrator.events import EventBus
from secauto.orchestrator.playbooks import next_scheduled_run
from secauto.orchestrator.queue import ExecutionQueue
from secauto.store.database import DefinitionStore
from secauto.store.models import (
    CheckFrequency,
    CheckStatus,
    ComplianceCheck,
    ComplianceCheckType,
    ComplianceIssue,
    ComplianceStatus,
    IssueStatus,
    PolicyEnforcement,
    PolicyRule,
    PolicyStatus,
    PolicyType,
    PolicyViolation,
    RecordKind,
    RuleAction,
    Severity,
    TriggerType,
    utcnow,
)

logger = structlog.get_logger(__name__)

EventPoster = Callable[[str, dict[str, Any]], Awaitable[Any]]

FREQUENCY_INTERVALS: dict[CheckFrequency, timedelta] = {
    CheckFrequency.CONTINUOUS: timedelta(minutes=1),
    CheckFrequency.DAILY: timedelta(hours=24),
    CheckFrequency.WEEKLY: timedelta(days=7),
    CheckFrequency.MONTHLY: timedelta(days=30),
    CheckFrequency.QUARTERLY: timedelta(days=90),
}


def next_compliance_check(frequency: CheckFrequency, after: datetime) -> datetime:
    return after + FREQUENCY_INTERVALS[CheckFrequency(frequency)]


class PeriodicJob:
    """A tick function driven by a cancellable asyncio task."""

    name = "periodic-job"

    def __init__(self, interval: float, clock: Callable[[], datetime] = utcnow):
        self.interval = interval
        self.clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> int:
        """Process every due entity once; returns how many were processed."""
        raise NotImplementedError

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name=self.name)
        logger.info("Scheduler started", job=self.name, interval=self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("Scheduler stopped", job=self.name)

    async def _run(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception:
                # Fatal for this tick only; the next tick starts from the stored next_* values.
                logger.exception("Scheduler tick failed", job=self.name)
            await asyncio.sleep(self.interval)


async def _post(post_event: Optional[EventPoster], event_type: str, data: dict[str, Any]) -> None:
    if post_event is None:
        return
    try:
        await post_event(event_type, data)
    except BackpressureError as e:
        logger.warning("Synthetic event hit backpressure", event_type=event_type, error=str(e))


# ============================================================================
# Playbooks
# ============================================================================

class PlaybookScheduler(PeriodicJob):
    """Enqueues enabled playbooks whose cron schedule has come due."""

    name = "playbook-scheduler"

    def __init__(
        self,
        store: DefinitionStore,
        engine: ExecutionEngine,
        queue: ExecutionQueue,
        interval: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(interval, clock)
        self.store = store
        self.engine = engine
        self.queue = queue

    async def tick(self) -> int:
        now = self.clock()
        enqueued = 0
        for playbook in self.store.list(RecordKind.PLAYBOOK, {"enabled": True}):
            trigger = playbook.trigger
            if TriggerType(trigger.type) != TriggerType.SCHEDULED or not trigger.schedule:
                continue
            if playbook.next_run is not None and playbook.next_run > now:
                continue
            if await self._fire(playbook.id, now):
                enqueued += 1
        return enqueued

    async def _fire(self, playbook_id: str, now: datetime) -> bool:
        async with self.store.lock(RecordKind.PLAYBOOK, playbook_id):
            playbook = self.store.get(RecordKind.PLAYBOOK, playbook_id)
            if playbook is None or not playbook.enabled:
                return False
            first_sight = playbook.next_run is None
            if not first_sight and playbook.next_run > now:
                return False
            playbook.next_run = next_scheduled_run(playbook.trigger.schedule, now)
            self.store.upsert(RecordKind.PLAYBOOK, playbook)
        if first_sight:
            return False

        try:
            execution = self.engine.new_execution(playbook, triggered_by="scheduler", trigger_type="scheduled")
            self.queue.enqueue(execution)
        except (ValidationError, BackpressureError) as e:
            logger.warning("Scheduled playbook not enqueued", playbook_id=playbook_id, error=str(e))
            return False
        return True


# ============================================================================
# Policy Enforcement
# ============================================================================

def validate_policy(enforcement: PolicyEnforcement) -> None:
    """
    Raises:
        ValidationError: Invalid frequency, duplicate rules or rule expressions.
    """
    problems = []
    if not enforcement.target:
        problems.append("target is required")
    if enforcement.check_frequency < 1:
        problems.append("check_frequency must be at least 1 minute")
    if not enforcement.evaluator:
        problems.append("evaluator is required")
    seen = set()
    for rule in enforcement.rules:
        if rule.id in seen:
            problems.append(f"duplicate rule id '{rule.id}'")
        seen.add(rule.id)
        try:
            compile_expression(rule.condition)
        except ValidationError as e:
            problems.append(f"rule '{rule.id}': {e}")
    if problems:
        raise ValidationError(f"Invalid policy '{enforcement.policy_id}'", problems)


class PolicyEnforcementScheduler(PeriodicJob):
    """
    Re-checks due policy enforcements.

    The evaluator capability returns the target's current state as a
    dict; each enabled rule's condition holds when the state violates it.
    A violation still open for the same rule is updated in place instead
    of being duplicated.
    """

    name = "policy-scheduler"

    def __init__(
        self,
        store: DefinitionStore,
        registry: CapabilityRegistry,
        bus: Optional[EventBus] = None,
        post_event: Optional[EventPoster] = None,
        interval: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(interval, clock)
        self.store = store
        self.registry = registry
        self.bus = bus or EventBus()
        self.post_event = post_event

    async def tick(self) -> int:
        now = self.clock()
        checked = 0
        for enforcement in self.store.list(RecordKind.POLICY_ENFORCEMENT, {"enabled": True}):
            if PolicyStatus(enforcement.status) != PolicyStatus.ACTIVE or enforcement.next_check > now:
                continue
            try:
                await self.check(enforcement.id, now)
                checked += 1
            except OrchestrationError as e:
                logger.error("Policy check failed", enforcement_id=enforcement.id, error=str(e))
        return checked

    async def check(self, enforcement_id: str, now: Optional[datetime] = None) -> list[PolicyViolation]:
        """Check one enforcement now; returns the newly opened violations."""
        now = now or self.clock()
        log = logger.bind(enforcement_id=enforcement_id)
        async with self.store.lock(RecordKind.POLICY_ENFORCEMENT, enforcement_id):
            enforcement = self.store.get(RecordKind.POLICY_ENFORCEMENT, enforcement_id)
            if enforcement is None:
                return []
            enforcement.last_check = now
            enforcement.next_check = now + timedelta(minutes=enforcement.check_frequency)
            enforcement.updated_at = now
            self.store.upsert(RecordKind.POLICY_ENFORCEMENT, enforcement)

            try:
                state = await self.registry.invoke_evaluator(enforcement.evaluator, {
                    "target": enforcement.target,
                    "policy_id": enforcement.policy_id,
                    **enforcement.parameters,
                })
                if not isinstance(state, dict):
                    raise CapabilityError(
                        f"{enforcement.evaluator} returned {type(state).__name__}, expected a mapping",
                        capability=enforcement.evaluator,
                    )
            except CapabilityError as e:
                enforcement.check_status = CheckStatus.ERROR
                enforcement.last_error = str(e)
                self.store.upsert(RecordKind.POLICY_ENFORCEMENT, enforcement)
                log.warning("Policy evaluator failed", error=str(e))
                return []

            opened = self._apply_rules(enforcement, state, now)
            enforcement.check_status = CheckStatus.OK
            enforcement.last_error = None
            self.store.upsert(RecordKind.POLICY_ENFORCEMENT, enforcement)

        for violation in opened:
            log.warning("Policy violation detected", rule_id=violation.rule_id, severity=violation.severity.value)
            payload = violation.to_dict()
            await self.bus.emit(events.POLICY_VIOLATION_DETECTED, payload)
            await _post(self.post_event, "policy_violation", payload)
        return opened

    def _apply_rules(self, enforcement: PolicyEnforcement, state: dict[str, Any], now: datetime) -> list[PolicyViolation]:
        opened = []
        for rule in enforcement.rules:
            if not rule.enabled or not evaluate_expression(rule.condition, state):
                continue
            existing = next(
                (v for v in enforcement.violations if v.rule_id == rule.id and v.is_open),
                None,
            )
            if existing is not None:
                existing.occurrences += 1
                existing.last_seen = now
                continue
            violation = PolicyViolation(
                policy_id=enforcement.policy_id,
                rule_id=rule.id,
                severity=rule.severity,
                rule_action=rule.action,
                description=f"Policy rule violation: {rule.name}",
                target=enforcement.target,
                timestamp=now,
                last_seen=now,
                details={"rule": rule.name, "condition": rule.condition},
            )
            enforcement.violations.append(violation)
            opened.append(violation)
        return opened


def default_policies() -> list[PolicyEnforcement]:
    return [
        PolicyEnforcement(
            id="pol_security_policy_001",
            policy_id="security-policy-001",
            type=PolicyType.PREVENTIVE,
            target="all_systems",
            rules=[
                PolicyRule(
                    id="rule-001",
                    name="Password Policy",
                    description="Enforce strong password requirements",
                    condition="password.length < 8 OR password.complexity < 3",
                    action=RuleAction.DENY,
                    severity=Severity.MEDIUM,
                ),
                PolicyRule(
                    id="rule-002",
                    name="MFA Required",
                    description="Require multi-factor authentication",
                    condition="authentication.mfa_enabled === false",
                    action=RuleAction.ALERT,
                    severity=Severity.HIGH,
                ),
            ],
        ),
    ]


# ============================================================================
# Compliance
# ============================================================================

def compare_result(expected: Any, actual: Any) -> bool:
    """
    Compliant when ``actual`` equals ``expected`` or contains it as a subset.

    Without an expectation the evaluator's own ``compliant`` flag decides.
    """
    if expected is None:
        if isinstance(actual, dict):
            return bool(actual.get("compliant"))
        return actual is True
    if actual == expected:
        return True
    if isinstance(expected, dict) and isinstance(actual, dict):
        return all(key in actual and actual[key] == value for key, value in expected.items())
    return False


def validate_compliance_check(check: ComplianceCheck) -> None:
    problems = []
    if not check.standard_id or not check.requirement_id:
        problems.append("standard_id and requirement_id are required")
    if ComplianceCheckType(check.check_type) != ComplianceCheckType.MANUAL and not check.evaluator:
        problems.append(f"{check.check_type.value} checks need an evaluator")
    if problems:
        raise ValidationError(f"Invalid compliance check '{check.standard_id}/{check.requirement_id}'", problems)


class ComplianceScheduler(PeriodicJob):
    """Re-runs due compliance checks and tracks their issues."""

    name = "compliance-scheduler"

    def __init__(
        self,
        store: DefinitionStore,
        registry: CapabilityRegistry,
        settings: Settings,
        bus: Optional[EventBus] = None,
        post_event: Optional[EventPoster] = None,
        interval: float = 900.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(interval, clock)
        self.store = store
        self.registry = registry
        self.settings = settings
        self.bus = bus or EventBus()
        self.post_event = post_event

    async def tick(self) -> int:
        now = self.clock()
        checked = 0
        for check in self.store.list(RecordKind.COMPLIANCE_CHECK, {"enabled": True}):
            if check.next_check > now:
                continue
            try:
                await self.run_check(check.id, now)
                checked += 1
            except OrchestrationError as e:
                logger.error("Compliance check failed", check_id=check.id, error=str(e))
        return checked

    async def run_check(self, check_id: str, now: Optional[datetime] = None) -> Optional[ComplianceCheck]:
        """Run one check now; manual checks without an evaluator stay as they are."""
        now = now or self.clock()
        log = logger.bind(check_id=check_id)
        async with self.store.lock(RecordKind.COMPLIANCE_CHECK, check_id):
            check = self.store.get(RecordKind.COMPLIANCE_CHECK, check_id)
            if check is None:
                return None
            previous = ComplianceStatus(check.status)
            check.last_check = now
            check.next_check = next_compliance_check(check.frequency, now)
            self.store.upsert(RecordKind.COMPLIANCE_CHECK, check)
            if not check.evaluator:
                return check

            opened: Optional[ComplianceIssue] = None
            try:
                result = await self.registry.invoke_evaluator(check.evaluator, dict(check.parameters))
            except CapabilityError as e:
                check.status = ComplianceStatus.ERROR
                check.last_error = str(e)
                log.warning("Compliance evaluator failed", error=str(e))
            else:
                check.actual_result = result
                check.last_error = None
                self._add_evidence(check, result, now)
                if compare_result(check.expected_result, result):
                    check.status = ComplianceStatus.COMPLIANT
                    self._resolve_issues(check, now)
                else:
                    check.status = ComplianceStatus.NON_COMPLIANT
                    opened = self._open_issue(check, now)
            self.store.upsert(RecordKind.COMPLIANCE_CHECK, check)

        if check.status != previous:
            log.info("Compliance status changed", previous=previous.value, status=check.status.value)
            await self.bus.emit(events.COMPLIANCE_STATUS_CHANGED, {
                "check_id": check.id,
                "standard_id": check.standard_id,
                "requirement_id": check.requirement_id,
                "previous_status": previous.value,
                "status": check.status.value,
            })
        if opened is not None:
            await _post(self.post_event, "compliance_failure", {
                "check_id": check.id,
                "standard_id": check.standard_id,
                "requirement_id": check.requirement_id,
                "severity": check.severity.value,
                "issue": opened.to_dict(),
            })
        return check

    def _add_evidence(self, check: ComplianceCheck, result: Any, now: datetime) -> None:
        entries = result.get("evidence") if isinstance(result, dict) else None
        if entries is None:
            return
        if not isinstance(entries, list):
            entries = [entries]
        stamp = now.isoformat()
        check.evidence.extend(f"{stamp} {entry}" for entry in entries)
        limit = self.settings.max_evidence_entries
        if len(check.evidence) > limit:
            check.evidence = check.evidence[-limit:]

    def _open_issue(self, check: ComplianceCheck, now: datetime) -> Optional[ComplianceIssue]:
        if any(issue.is_open for issue in check.issues):
            return None
        recommendation = ""
        if isinstance(check.actual_result, dict):
            recommendation = str(check.actual_result.get("recommendation", ""))
        issue = ComplianceIssue(
            check_id=check.id,
            severity=check.severity,
            description=f"{check.standard_id} {check.requirement_id} is not compliant",
            recommendation=recommendation,
            created_at=now,
        )
        check.issues.append(issue)
        return issue

    def _resolve_issues(self, check: ComplianceCheck, now: datetime) -> None:
        for issue in check.issues:
            if issue.is_open:
                issue.status = IssueStatus.RESOLVED
                issue.resolved_at = now


def default_compliance_checks() -> list[ComplianceCheck]:
    return [
        ComplianceCheck(
            id="chk_soc2_cc6_1",
            standard_id="soc2-2017",
            requirement_id="cc6-1",
            check_type=ComplianceCheckType.AUTOMATED,
            frequency=CheckFrequency.DAILY,
            evaluator="compliance_script",
            parameters={"script": "check_access_controls.py", "check_type": "access_review"},
            severity=Severity.HIGH,
        ),
        ComplianceCheck(
            id="chk_gdpr_art_32",
            standard_id="gdpr-2018",
            requirement_id="art-32",
            check_type=ComplianceCheckType.AUTOMATED,
            frequency=CheckFrequency.CONTINUOUS,
            evaluator="compliance_script",
            parameters={"script": "check_encryption.py", "check_type": "data_encryption"},
            severity=Severity.HIGH,
        ),
    ]
