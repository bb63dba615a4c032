"""
Orchestration System

Wires the store, capability registry, engine, queue, router, dispatcher
and schedulers into one object per process, and exposes the operator
surface used by the CLI and by hosting applications.
"""

from datetime import datetime
from typing import Any, Callable, Optional, Union

import httpx
import structlog

from secauto.config.settings import Settings
from secauto.orchestrator.assessments import AssessmentRunner
from secauto.orchestrator.capabilities import CapabilityRegistry, register_builtin_capabilities
from secauto.orchestrator.engine import ExecutionEngine
from secauto.orchestrator.errors import InvalidStateError, NotFoundError, ValidationError
from secauto.orchestrator.events import EventBus
from secauto.orchestrator.playbooks import (
    bump_version,
    default_playbooks,
    next_scheduled_run,
    validate_playbook,
)
from secauto.orchestrator.queue import ExecutionQueue, ExecutionWorker
from secauto.orchestrator.responses import ResponseDispatcher, default_responses, validate_response
from secauto.orchestrator.router import RoutingResult, TriggerRouter
from secauto.orchestrator.schedulers import (
    ComplianceScheduler,
    PlaybookScheduler,
    PolicyEnforcementScheduler,
    default_compliance_checks,
    default_policies,
    validate_compliance_check,
    validate_policy,
)
from secauto.orchestrator.steps import HumanTaskBoard, StepExecutor
from secauto.store.database import DefinitionStore, get_store
from secauto.store.models import (
    AssessmentType,
    AutomatedResponse,
    ComplianceCheck,
    ComplianceStatus,
    ExecutionStatus,
    Playbook,
    PlaybookExecution,
    PolicyEnforcement,
    PolicyViolation,
    RecordKind,
    Severity,
    TriggerType,
    VulnerabilityAssessment,
    utcnow,
)

logger = structlog.get_logger(__name__)

# Fields an edit may not overwrite.
_PLAYBOOK_READ_ONLY = {
    "id", "version", "created_at", "created_by", "execution_count",
    "success_count", "success_rate", "last_executed", "next_run",
}


class OrchestrationSystem:
    """
    The orchestration core of one process.

    Construct, register capabilities on ``registry``, then ``await
    start()``. Nothing here is a process-wide singleton; tests build as
    many systems as they need.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[DefinitionStore] = None,
        registry: Optional[CapabilityRegistry] = None,
        bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        if settings is None:
            from secauto.config import settings as default_settings
            settings = default_settings
        self.settings = settings
        self.store = store or get_store(settings)
        self.registry = registry or CapabilityRegistry()
        self.bus = bus or EventBus()
        self.clock = clock
        self._http_client: Optional[httpx.AsyncClient] = None

        self.human_tasks = HumanTaskBoard()
        self.executor = StepExecutor(self.registry, settings, self.human_tasks)
        self.engine = ExecutionEngine(self.store, self.executor, settings, self.bus, clock)
        self.queue = ExecutionQueue(self.store, settings.queue_max_size)
        self.worker = ExecutionWorker(self.queue, self.engine)
        self.dispatcher = ResponseDispatcher(
            self.store, self.registry, self.bus, clock, settings.max_window_samples,
        )
        self.router = TriggerRouter(self.store, self.engine, self.queue, self.dispatcher)

        self.playbook_scheduler = PlaybookScheduler(
            self.store, self.engine, self.queue, settings.playbook_tick_seconds, clock,
        )
        self.policy_scheduler = PolicyEnforcementScheduler(
            self.store, self.registry, self.bus, self.submit_event, settings.policy_tick_seconds, clock,
        )
        self.compliance_scheduler = ComplianceScheduler(
            self.store, self.registry, settings, self.bus, self.submit_event,
            settings.compliance_tick_seconds, clock,
        )
        self.assessments = AssessmentRunner(self.store, self.registry, self.bus, self.submit_event, clock)

    # === Lifecycle ===

    def use_builtin_capabilities(self, client: Optional[httpx.AsyncClient] = None) -> None:
        """Register the HTTP, script and notification capabilities."""
        self._http_client = register_builtin_capabilities(self.registry, self.settings, client)

    async def start(self) -> None:
        """Recover interrupted runs, seed defaults, start the worker and timers."""
        self.engine.recover_interrupted()
        if self.settings.load_defaults:
            self.load_defaults()
        self.worker.start()
        self.playbook_scheduler.start()
        self.policy_scheduler.start()
        self.compliance_scheduler.start()
        logger.info("Orchestration system started")

    async def stop(self) -> None:
        await self.playbook_scheduler.stop()
        await self.policy_scheduler.stop()
        await self.compliance_scheduler.stop()
        await self.worker.stop()
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        self.store.close()
        logger.info("Orchestration system stopped")

    def load_defaults(self) -> dict[str, int]:
        """Seed the standard definitions that are not stored yet."""
        seeded = {"playbooks": 0, "policies": 0, "responses": 0, "checks": 0}
        seeders = (
            ("playbooks", RecordKind.PLAYBOOK, default_playbooks(), self.create_playbook),
            ("policies", RecordKind.POLICY_ENFORCEMENT, default_policies(), self.create_policy),
            ("responses", RecordKind.AUTOMATED_RESPONSE, default_responses(self.settings), self.create_response),
            ("checks", RecordKind.COMPLIANCE_CHECK, default_compliance_checks(), self.create_compliance_check),
        )
        for label, kind, records, create in seeders:
            for record in records:
                if self.store.get(kind, record.id) is not None:
                    continue
                try:
                    create(record)
                    seeded[label] += 1
                except ValidationError as e:
                    logger.warning("Default definition skipped", kind=kind.value, id=record.id, problems=e.problems)
        logger.info("Default definitions loaded", **seeded)
        return seeded

    # === Shared helpers ===

    def _require(self, kind: RecordKind, record_id: str) -> Any:
        record = self.store.get(kind, record_id)
        if record is None:
            raise NotFoundError(kind.value, record_id)
        return record

    async def _set_enabled(self, kind: RecordKind, record_id: str, enabled: bool) -> Any:
        async with self.store.lock(kind, record_id):
            record = self._require(kind, record_id)
            record.enabled = enabled
            if hasattr(record, "updated_at"):
                record.updated_at = self.clock()
            if kind == RecordKind.PLAYBOOK:
                record.next_run = self._initial_next_run(record) if enabled else None
            self.store.upsert(kind, record)
        logger.info("Definition toggled", kind=kind.value, id=record_id, enabled=enabled)
        return record

    def _initial_next_run(self, playbook: Playbook) -> Optional[datetime]:
        trigger = playbook.trigger
        if TriggerType(trigger.type) == TriggerType.SCHEDULED and trigger.schedule:
            return next_scheduled_run(trigger.schedule, self.clock())
        return None

    # === Playbooks ===

    def create_playbook(self, playbook: Union[Playbook, dict[str, Any]]) -> Playbook:
        """
        Validate and store a new playbook.

        Raises:
            ValidationError: The step graph, trigger or variables are invalid.
        """
        if isinstance(playbook, dict):
            playbook = Playbook.from_dict(playbook)
        validate_playbook(playbook, self.registry, self.settings.max_parameter_depth)
        now = self.clock()
        playbook.created_at = now
        playbook.updated_at = now
        playbook.next_run = self._initial_next_run(playbook) if playbook.enabled else None
        self.store.upsert(RecordKind.PLAYBOOK, playbook)
        logger.info("Playbook created", playbook_id=playbook.id, name=playbook.name)
        return playbook

    async def update_playbook(self, playbook_id: str, changes: dict[str, Any]) -> Playbook:
        """
        Apply an edit, producing a new minor version.

        Running executions keep the snapshot they started with.
        """
        async with self.store.lock(RecordKind.PLAYBOOK, playbook_id):
            current = self._require(RecordKind.PLAYBOOK, playbook_id)
            data = current.to_dict()
            data.update({k: v for k, v in changes.items() if k not in _PLAYBOOK_READ_ONLY})
            updated = Playbook.from_dict(data)
            validate_playbook(updated, self.registry, self.settings.max_parameter_depth)
            updated.version = bump_version(current.version)
            updated.updated_at = self.clock()
            updated.next_run = self._initial_next_run(updated) if updated.enabled else None
            self.store.upsert(RecordKind.PLAYBOOK, updated)
        logger.info("Playbook updated", playbook_id=playbook_id, version=updated.version)
        return updated

    def get_playbook(self, playbook_id: str) -> Playbook:
        return self._require(RecordKind.PLAYBOOK, playbook_id)

    def list_playbooks(self, enabled: Optional[bool] = None) -> list[Playbook]:
        filters = {"enabled": enabled} if enabled is not None else None
        return self.store.list(RecordKind.PLAYBOOK, filters)

    async def enable_playbook(self, playbook_id: str) -> Playbook:
        return await self._set_enabled(RecordKind.PLAYBOOK, playbook_id, True)

    async def disable_playbook(self, playbook_id: str) -> Playbook:
        return await self._set_enabled(RecordKind.PLAYBOOK, playbook_id, False)

    # === Executions ===

    def trigger_playbook(
        self,
        playbook_id: str,
        variables: Optional[dict[str, Any]] = None,
        triggered_by: str = "operator",
    ) -> PlaybookExecution:
        """
        Manually queue an execution.

        Raises:
            NotFoundError: Unknown playbook.
            InvalidStateError: The playbook is disabled.
            ValidationError: Required variables are missing.
            BackpressureError: The execution queue is full.
        """
        playbook = self.get_playbook(playbook_id)
        if not playbook.enabled:
            raise InvalidStateError(f"Playbook {playbook_id} is disabled")
        execution = self.engine.new_execution(
            playbook,
            triggered_by=triggered_by,
            trigger_type=TriggerType.MANUAL.value,
            supplied=variables,
        )
        return self.queue.enqueue(execution)

    def get_execution(self, execution_id: str) -> PlaybookExecution:
        return self.engine.get(execution_id)

    def list_executions(
        self,
        playbook_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> list[PlaybookExecution]:
        filters: dict[str, Any] = {}
        if playbook_id:
            filters["playbook_id"] = playbook_id
        if status:
            filters["status"] = status
        executions = self.store.list(RecordKind.PLAYBOOK_EXECUTION, filters)
        return sorted(executions, key=lambda e: e.start_time, reverse=True)

    async def cancel_execution(self, execution_id: str) -> PlaybookExecution:
        return await self.engine.cancel(execution_id)

    def pause_execution(self, execution_id: str) -> PlaybookExecution:
        return self.engine.pause(execution_id)

    def resume_execution(self, execution_id: str) -> PlaybookExecution:
        return self.engine.resume(execution_id)

    def complete_human_task(
        self,
        execution_id: str,
        step_id: str,
        approved: bool = True,
        output: Optional[dict[str, Any]] = None,
        completed_by: Optional[str] = None,
    ) -> PlaybookExecution:
        return self.engine.complete_human_task(execution_id, step_id, approved, output, completed_by)

    # === Events ===

    async def submit_event(self, event_type: str, event_data: Optional[dict[str, Any]] = None) -> RoutingResult:
        """The ingestion point for alerts, scanner findings and user actions."""
        return await self.router.route(event_type, dict(event_data or {}))

    # === Policies ===

    def create_policy(self, enforcement: Union[PolicyEnforcement, dict[str, Any]]) -> PolicyEnforcement:
        if isinstance(enforcement, dict):
            enforcement = PolicyEnforcement.from_dict(enforcement)
        validate_policy(enforcement)
        now = self.clock()
        enforcement.created_at = now
        enforcement.updated_at = now
        enforcement.next_check = now
        self.store.upsert(RecordKind.POLICY_ENFORCEMENT, enforcement)
        logger.info("Policy enforcement created", enforcement_id=enforcement.id, policy_id=enforcement.policy_id)
        return enforcement

    def get_policy(self, enforcement_id: str) -> PolicyEnforcement:
        return self._require(RecordKind.POLICY_ENFORCEMENT, enforcement_id)

    def list_policies(self, enabled: Optional[bool] = None) -> list[PolicyEnforcement]:
        filters = {"enabled": enabled} if enabled is not None else None
        return self.store.list(RecordKind.POLICY_ENFORCEMENT, filters)

    async def enable_policy(self, enforcement_id: str) -> PolicyEnforcement:
        return await self._set_enabled(RecordKind.POLICY_ENFORCEMENT, enforcement_id, True)

    async def disable_policy(self, enforcement_id: str) -> PolicyEnforcement:
        return await self._set_enabled(RecordKind.POLICY_ENFORCEMENT, enforcement_id, False)

    async def check_policy(self, enforcement_id: str) -> list[PolicyViolation]:
        """Run one enforcement now, outside its schedule."""
        self.get_policy(enforcement_id)
        return await self.policy_scheduler.check(enforcement_id)

    def get_policy_violations(
        self,
        policy_id: Optional[str] = None,
        open_only: bool = False,
        min_severity: Optional[Severity] = None,
    ) -> list[PolicyViolation]:
        filters = {"policy_id": policy_id} if policy_id else None
        violations = [
            violation
            for enforcement in self.store.list(RecordKind.POLICY_ENFORCEMENT, filters)
            for violation in enforcement.violations
        ]
        if open_only:
            violations = [v for v in violations if v.is_open]
        if min_severity is not None:
            floor = Severity(min_severity).rank
            violations = [v for v in violations if Severity(v.severity).rank >= floor]
        return sorted(violations, key=lambda v: v.timestamp, reverse=True)

    # === Automated responses ===

    def create_response(self, response: Union[AutomatedResponse, dict[str, Any]]) -> AutomatedResponse:
        if isinstance(response, dict):
            response = AutomatedResponse.from_dict(response)
        validate_response(response, self.registry)
        now = self.clock()
        response.created_at = now
        response.updated_at = now
        self.store.upsert(RecordKind.AUTOMATED_RESPONSE, response)
        logger.info("Automated response created", response_id=response.id, name=response.name)
        return response

    def get_response(self, response_id: str) -> AutomatedResponse:
        return self._require(RecordKind.AUTOMATED_RESPONSE, response_id)

    def list_responses(self, enabled: Optional[bool] = None) -> list[AutomatedResponse]:
        filters = {"enabled": enabled} if enabled is not None else None
        return self.store.list(RecordKind.AUTOMATED_RESPONSE, filters)

    async def enable_response(self, response_id: str) -> AutomatedResponse:
        return await self._set_enabled(RecordKind.AUTOMATED_RESPONSE, response_id, True)

    async def disable_response(self, response_id: str) -> AutomatedResponse:
        return await self._set_enabled(RecordKind.AUTOMATED_RESPONSE, response_id, False)

    # === Compliance ===

    def create_compliance_check(self, check: Union[ComplianceCheck, dict[str, Any]]) -> ComplianceCheck:
        if isinstance(check, dict):
            check = ComplianceCheck.from_dict(check)
        validate_compliance_check(check)
        check.next_check = self.clock()
        self.store.upsert(RecordKind.COMPLIANCE_CHECK, check)
        logger.info("Compliance check created", check_id=check.id, standard_id=check.standard_id)
        return check

    def get_compliance_check(self, check_id: str) -> ComplianceCheck:
        return self._require(RecordKind.COMPLIANCE_CHECK, check_id)

    def list_compliance_checks(self, enabled: Optional[bool] = None) -> list[ComplianceCheck]:
        filters = {"enabled": enabled} if enabled is not None else None
        return self.store.list(RecordKind.COMPLIANCE_CHECK, filters)

    async def enable_compliance_check(self, check_id: str) -> ComplianceCheck:
        return await self._set_enabled(RecordKind.COMPLIANCE_CHECK, check_id, True)

    async def disable_compliance_check(self, check_id: str) -> ComplianceCheck:
        return await self._set_enabled(RecordKind.COMPLIANCE_CHECK, check_id, False)

    async def run_compliance_check(self, check_id: str) -> ComplianceCheck:
        """Run one check now, outside its schedule."""
        self.get_compliance_check(check_id)
        return await self.compliance_scheduler.run_check(check_id)

    def get_compliance_results(
        self,
        standard_id: Optional[str] = None,
        status: Optional[ComplianceStatus] = None,
    ) -> list[ComplianceCheck]:
        filters: dict[str, Any] = {}
        if standard_id:
            filters["standard_id"] = standard_id
        if status:
            filters["status"] = status
        return self.store.list(RecordKind.COMPLIANCE_CHECK, filters)

    # === Vulnerability assessments ===

    async def start_vulnerability_assessment(
        self,
        type: Union[AssessmentType, str],
        target: str,
        scan_profile: str = "default",
        configuration: Optional[dict[str, Any]] = None,
        executed_by: str = "operator",
    ) -> VulnerabilityAssessment:
        return await self.assessments.start(
            AssessmentType(type), target, scan_profile, configuration, executed_by,
        )

    def get_assessment(self, assessment_id: str) -> VulnerabilityAssessment:
        return self._require(RecordKind.VULNERABILITY_ASSESSMENT, assessment_id)

    def list_assessments(self, target: Optional[str] = None) -> list[VulnerabilityAssessment]:
        filters = {"target": target} if target else None
        return self.store.list(RecordKind.VULNERABILITY_ASSESSMENT, filters)
