"""
Execution Engine

Owns the state machine of a playbook execution:

    running -> {completed, failed, cancelled, paused}
    paused  -> running (resume) | cancelled

Steps are walked by ``order``; ``on_success``/``on_failure`` edges and
condition branches override the default sequence. Cancellation and
pause requests are honored at step boundaries only. Every transition is
persisted, and the owning playbook's statistics are updated under its
entity lock once the execution is terminal.
"""

import asyncio
from datetime import datetime
from typing import Any, Callable, Optional

import structlog

from secauto.config.settings import Settings
from secauto.orchestrator import events
from secauto.orchestrator.errors import InvalidStateError, NotFoundError
from secauto.orchestrator.events import EventBus
from secauto.orchestrator.playbooks import build_variables, child_step_ids, mask_sensitive
from secauto.orchestrator.steps import (
    ExecutionContext,
    ExecutionHalted,
    HumanDecision,
    StepExecutor,
    StepResult,
)
from secauto.store.database import DefinitionStore
from secauto.store.models import (
    ExecutionStatus,
    LogLevel,
    Playbook,
    PlaybookExecution,
    PlaybookStep,
    RecordKind,
    StepExecution,
    StepStatus,
    utcnow,
)

logger = structlog.get_logger(__name__)

_OUTCOME_TOPICS = {
    ExecutionStatus.COMPLETED: events.EXECUTION_COMPLETED,
    ExecutionStatus.FAILED: events.EXECUTION_FAILED,
    ExecutionStatus.CANCELLED: events.EXECUTION_CANCELLED,
}


def _elapsed_ms(start: Optional[datetime], end: datetime) -> Optional[float]:
    if start is None:
        return None
    return (end - start).total_seconds() * 1000


def _ordered_steps(playbook: Playbook) -> list[PlaybookStep]:
    """Steps by ``order``, ties kept in definition order."""
    indexed = sorted(enumerate(playbook.steps), key=lambda pair: (pair[1].order, pair[0]))
    return [step for _, step in indexed]


class ExecutionEngine:
    """
    Runs playbook executions.

    Executions being run are held live in ``_active``; operator calls
    (cancel, pause, resume, human task completion) flag the live record
    and the run loop reacts at the next step boundary.
    """

    def __init__(
        self,
        store: DefinitionStore,
        executor: StepExecutor,
        settings: Settings,
        bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.executor = executor
        self.settings = settings
        self.bus = bus or EventBus()
        self.clock = clock
        self._active: dict[str, PlaybookExecution] = {}
        self._resume_events: dict[str, asyncio.Event] = {}
        self._background: set[asyncio.Task] = set()

    # === Creation ===

    def new_execution(
        self,
        playbook: Playbook,
        triggered_by: str,
        trigger_type: str = "manual",
        supplied: Optional[dict[str, Any]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> PlaybookExecution:
        """
        Build a queued execution bound to a snapshot of ``playbook``.

        Raises:
            ValidationError: Variables are missing or of the wrong type.
        """
        variables = build_variables(playbook, supplied, self.settings.max_parameter_depth)
        now = self.clock()
        execution = PlaybookExecution(
            playbook_id=playbook.id,
            playbook_name=playbook.name,
            playbook_version=playbook.version,
            playbook_snapshot=playbook.to_dict(),
            triggered_by=triggered_by,
            trigger_type=trigger_type,
            start_time=now,
            variables=variables,
            steps=[StepExecution(step_id=step.id, name=step.name) for step in _ordered_steps(playbook)],
            metadata={**(metadata or {}), "queued": True},
        )
        execution.log(
            f"Execution queued by {triggered_by}",
            timestamp=now,
            variables=mask_sensitive(playbook, variables),
        )
        return execution

    # === Running ===

    async def run(self, execution: PlaybookExecution) -> PlaybookExecution:
        """Run an admitted execution to a terminal state."""
        stored = self.store.get(RecordKind.PLAYBOOK_EXECUTION, execution.id)
        if stored is not None:
            execution = stored
        if execution.is_terminal:
            logger.info("Skipping execution", execution_id=execution.id, status=execution.status.value)
            return execution

        playbook = Playbook.from_dict(execution.playbook_snapshot)
        log = logger.bind(execution_id=execution.id, playbook_id=playbook.id)

        execution.metadata.pop("queued", None)
        execution.status = ExecutionStatus.RUNNING
        execution.start_time = self.clock()
        execution.log("Execution started", timestamp=execution.start_time)
        self._active[execution.id] = execution
        self._persist(execution)
        log.info("Execution started", playbook=playbook.name)

        ctx = ExecutionContext(
            execution=execution,
            playbook=playbook,
            clock=self.clock,
            run_nested=self._run_nested,
            persist=lambda: self._persist(execution),
            background=self._background,
        )
        try:
            status, error = await self._walk(playbook, ctx)
        except ExecutionHalted:
            status, error = ExecutionStatus.CANCELLED, None
        except Exception as e:
            log.exception("Execution crashed")
            status, error = ExecutionStatus.FAILED, f"Engine error: {e}"
        finally:
            self._active.pop(execution.id, None)
            self._resume_events.pop(execution.id, None)
            self.executor.human_tasks.cancel_execution(execution.id)

        await self._finish(execution, status, error)
        log.info("Execution finished", status=status.value, error=error)
        return execution

    async def _walk(self, playbook: Playbook, ctx: ExecutionContext) -> tuple[ExecutionStatus, Optional[str]]:
        execution = ctx.execution
        nested = child_step_ids(playbook)
        sequence = [step for step in _ordered_steps(playbook) if step.id not in nested]
        position_of = {step.id: position for position, step in enumerate(sequence)}

        position = 0
        transitions = 0
        while position < len(sequence):
            if not await self._checkpoint(execution):
                return ExecutionStatus.CANCELLED, None

            transitions += 1
            if transitions > self.settings.max_step_transitions:
                return ExecutionStatus.FAILED, (
                    f"Exceeded {self.settings.max_step_transitions} step transitions"
                )

            step = sequence[position]
            if not step.enabled:
                self._skip(execution, step)
                position += 1
                continue

            result = await self.run_step(step, ctx)
            if result.succeeded:
                target = result.next_step or step.on_success
            elif step.on_failure:
                target = step.on_failure
                execution.log(
                    f"Following failure edge to '{target}'",
                    LogLevel.WARN,
                    step_id=step.id,
                    timestamp=self.clock(),
                )
            else:
                return ExecutionStatus.FAILED, f"Step '{step.name}' failed: {result.error}"

            position = position_of[target] if target else position + 1
        return ExecutionStatus.COMPLETED, None

    async def _checkpoint(self, execution: PlaybookExecution) -> bool:
        """Honor cancel and pause requests; False when the run must stop."""
        if execution.cancel_requested:
            return False
        if not execution.pause_requested:
            return True

        resume = self._resume_events.setdefault(execution.id, asyncio.Event())
        execution.status = ExecutionStatus.PAUSED
        execution.log("Execution paused", timestamp=self.clock())
        self._persist(execution)
        logger.info("Execution paused", execution_id=execution.id)

        await resume.wait()
        resume.clear()
        if execution.cancel_requested:
            return False
        execution.status = ExecutionStatus.RUNNING
        execution.pause_requested = False
        execution.log("Execution resumed", timestamp=self.clock())
        self._persist(execution)
        return True

    async def run_step(self, step: PlaybookStep, ctx: ExecutionContext) -> StepResult:
        """Run one step with its retry policy, recording its ``StepExecution``."""
        execution = ctx.execution
        if execution.is_terminal or execution.cancel_requested:
            raise ExecutionHalted(execution.id)

        record = execution.get_step(step.id)
        if record is None:
            record = StepExecution(step_id=step.id, name=step.name)
            execution.steps.append(record)
        record.status = StepStatus.RUNNING
        record.start_time = self.clock()
        record.end_time = None
        record.retry_count = 0
        record.error = None
        record.output = None
        record.timed_out = False
        record.input = step.payload.to_dict() if step.payload is not None else None
        execution.log(f"Starting step '{step.name}'", step_id=step.id, timestamp=record.start_time)
        self._persist(execution)

        while True:
            result = await self.executor.execute(step, ctx)
            if result.succeeded or record.retry_count >= step.retries:
                break
            record.retry_count += 1
            execution.log(
                f"Step '{step.name}' failed, retrying ({record.retry_count}/{step.retries})",
                LogLevel.WARN,
                step_id=step.id,
                timestamp=self.clock(),
                error=result.error,
            )
            record.status = StepStatus.RUNNING

        record.end_time = self.clock()
        record.duration_ms = _elapsed_ms(record.start_time, record.end_time)
        record.output = result.output
        record.error = result.error
        record.timed_out = result.timed_out
        record.status = result.status
        if result.succeeded:
            execution.log(f"Step '{step.name}' completed", step_id=step.id, timestamp=record.end_time)
        else:
            execution.log(
                f"Step '{step.name}' failed: {result.error}",
                LogLevel.ERROR,
                step_id=step.id,
                timestamp=record.end_time,
            )
        self._persist(execution)
        return result

    async def _run_nested(self, step_id: str, ctx: ExecutionContext) -> StepResult:
        step = ctx.playbook.get_step(step_id)
        if step is None:
            return StepResult.failed(f"Unknown step '{step_id}'")
        if not step.enabled:
            self._skip(ctx.execution, step)
            return StepResult.ok()
        return await self.run_step(step, ctx)

    def _skip(self, execution: PlaybookExecution, step: PlaybookStep) -> None:
        record = execution.get_step(step.id)
        if record is None:
            record = StepExecution(step_id=step.id, name=step.name)
            execution.steps.append(record)
        record.status = StepStatus.SKIPPED
        execution.log(f"Step '{step.name}' disabled, skipped", step_id=step.id, timestamp=self.clock())

    async def _finish(
        self,
        execution: PlaybookExecution,
        status: ExecutionStatus,
        error: Optional[str],
    ) -> None:
        now = self.clock()
        execution.status = status
        execution.error = error
        execution.end_time = now
        execution.duration_ms = _elapsed_ms(execution.start_time, now)
        execution.pause_requested = False
        if status == ExecutionStatus.CANCELLED:
            execution.log("Execution cancelled", LogLevel.WARN, timestamp=now)
        elif error:
            execution.log(error, LogLevel.ERROR, timestamp=now)
        else:
            execution.log("Execution completed", timestamp=now)
        self._persist(execution)

        await self._update_playbook_stats(execution.playbook_id, status == ExecutionStatus.COMPLETED, now)
        await self.bus.emit(_OUTCOME_TOPICS[status], {
            "execution_id": execution.id,
            "playbook_id": execution.playbook_id,
            "playbook_name": execution.playbook_name,
            "status": status.value,
            "error": error,
            "duration_ms": execution.duration_ms,
        })

    async def _update_playbook_stats(self, playbook_id: str, succeeded: bool, now: datetime) -> None:
        async with self.store.lock(RecordKind.PLAYBOOK, playbook_id):
            playbook = self.store.get(RecordKind.PLAYBOOK, playbook_id)
            if playbook is None:
                return
            playbook.execution_count += 1
            if succeeded:
                playbook.success_count += 1
            playbook.success_rate = playbook.success_count / playbook.execution_count
            playbook.last_executed = now
            self.store.upsert(RecordKind.PLAYBOOK, playbook)

    def _persist(self, execution: PlaybookExecution) -> None:
        self.store.upsert(RecordKind.PLAYBOOK_EXECUTION, execution)

    # === Operator control ===

    def _load(self, execution_id: str) -> PlaybookExecution:
        execution = self._active.get(execution_id) or self.store.get(RecordKind.PLAYBOOK_EXECUTION, execution_id)
        if execution is None:
            raise NotFoundError("execution", execution_id)
        return execution

    def get(self, execution_id: str) -> PlaybookExecution:
        return self._load(execution_id)

    def is_active(self, execution_id: str) -> bool:
        return execution_id in self._active

    async def cancel(self, execution_id: str, reason: str = "operator") -> PlaybookExecution:
        """
        Request cancellation.

        A running execution stops at its next step boundary; a queued one
        is cancelled immediately.

        Raises:
            NotFoundError: Unknown execution.
            InvalidStateError: The execution already ended.
        """
        execution = self._load(execution_id)
        if execution.is_terminal:
            raise InvalidStateError(f"Execution {execution_id} is already {execution.status.value}")

        execution.cancel_requested = True
        execution.log(f"Cancellation requested by {reason}", LogLevel.WARN, timestamp=self.clock())

        if execution_id in self._active:
            self.executor.human_tasks.cancel_execution(execution_id)
            resume = self._resume_events.get(execution_id)
            if resume is not None:
                resume.set()
            self._persist(execution)
            return execution

        await self._finish(execution, ExecutionStatus.CANCELLED, None)
        return execution

    def pause(self, execution_id: str) -> PlaybookExecution:
        execution = self._load(execution_id)
        if execution_id not in self._active or execution.status != ExecutionStatus.RUNNING:
            raise InvalidStateError(f"Execution {execution_id} is not running")
        execution.pause_requested = True
        execution.log("Pause requested", timestamp=self.clock())
        self._persist(execution)
        return execution

    def resume(self, execution_id: str) -> PlaybookExecution:
        execution = self._load(execution_id)
        if execution_id not in self._active or not execution.pause_requested:
            raise InvalidStateError(f"Execution {execution_id} is not paused")
        resume = self._resume_events.get(execution_id)
        if resume is not None:
            resume.set()
        else:
            # Pause was requested but the boundary has not been reached yet.
            execution.pause_requested = False
            execution.log("Pause request withdrawn", timestamp=self.clock())
            self._persist(execution)
        return execution

    def complete_human_task(
        self,
        execution_id: str,
        step_id: str,
        approved: bool = True,
        output: Optional[dict[str, Any]] = None,
        completed_by: Optional[str] = None,
    ) -> PlaybookExecution:
        """
        Deliver the completion signal for a waiting human task.

        Raises:
            NotFoundError: Unknown execution or step.
            InvalidStateError: The step is not awaiting input.
        """
        execution = self._load(execution_id)
        record = execution.get_step(step_id)
        if record is None:
            raise NotFoundError("step", step_id)
        decision = HumanDecision(approved=approved, output=dict(output or {}), completed_by=completed_by)
        if record.status != StepStatus.WAITING or not self.executor.human_tasks.resolve(execution_id, step_id, decision):
            raise InvalidStateError(f"Step {step_id} of {execution_id} is not awaiting input")
        execution.log(
            f"Human task {'approved' if approved else 'rejected'}",
            step_id=step_id,
            timestamp=self.clock(),
            completed_by=completed_by,
        )
        return execution

    # === Startup ===

    def recover_interrupted(self) -> list[str]:
        """Fail executions a previous process left running or paused."""
        recovered = []
        for status in (ExecutionStatus.RUNNING, ExecutionStatus.PAUSED):
            for execution in self.store.list(RecordKind.PLAYBOOK_EXECUTION, {"status": status}):
                if execution.id in self._active:
                    continue
                now = self.clock()
                execution.status = ExecutionStatus.FAILED
                execution.error = "Execution interrupted by process restart"
                execution.end_time = now
                execution.log(execution.error, LogLevel.ERROR, timestamp=now)
                self._persist(execution)
                recovered.append(execution.id)
        if recovered:
            logger.warning("Recovered interrupted executions", count=len(recovered))
        return recovered
