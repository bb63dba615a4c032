"""
Step Executor

Runs one playbook step against an execution context and reports a
``StepResult``. The executor never follows edges itself: condition steps
report the branch to take and the engine performs the jump. Loop and
parallel steps run their children through the engine's ``run_nested``
callback so every child gets its own retries and ``StepExecution``.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import structlog

from secauto.config.settings import Settings
from secauto.orchestrator.capabilities import CapabilityRegistry
from secauto.orchestrator.conditions import evaluate_expression
from secauto.orchestrator.errors import CapabilityError
from secauto.store.models import (
    LogLevel,
    Playbook,
    PlaybookExecution,
    PlaybookStep,
    StepExecution,
    StepStatus,
    StepType,
)

logger = structlog.get_logger(__name__)


class ExecutionHalted(Exception):
    """Raised inside a run when the execution was cancelled or already ended."""


@dataclass
class StepResult:
    """Outcome of one step attempt."""
    status: StepStatus
    output: Any = None
    error: Optional[str] = None
    next_step: Optional[str] = None  # branch chosen by a condition step
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == StepStatus.COMPLETED

    @classmethod
    def ok(cls, output: Any = None, next_step: Optional[str] = None) -> "StepResult":
        return cls(status=StepStatus.COMPLETED, output=output, next_step=next_step)

    @classmethod
    def failed(cls, error: str, output: Any = None, timed_out: bool = False) -> "StepResult":
        return cls(status=StepStatus.FAILED, output=output, error=error, timed_out=timed_out)


@dataclass
class HumanDecision:
    approved: bool
    output: dict[str, Any] = field(default_factory=dict)
    completed_by: Optional[str] = None
    cancelled: bool = False


class HumanTaskBoard:
    """Pending human tasks keyed by ``(execution_id, step_id)``."""

    def __init__(self) -> None:
        self._pending: dict[tuple[str, str], asyncio.Future] = {}

    def open(self, execution_id: str, step_id: str) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        self._pending[(execution_id, step_id)] = future
        return future

    def close(self, execution_id: str, step_id: str) -> None:
        self._pending.pop((execution_id, step_id), None)

    def resolve(self, execution_id: str, step_id: str, decision: HumanDecision) -> bool:
        future = self._pending.get((execution_id, step_id))
        if future is None or future.done():
            return False
        future.set_result(decision)
        return True

    def cancel_execution(self, execution_id: str) -> int:
        """Release every task of an execution; returns how many were waiting."""
        released = 0
        for (exec_id, step_id), future in list(self._pending.items()):
            if exec_id == execution_id and not future.done():
                future.set_result(HumanDecision(approved=False, cancelled=True))
                released += 1
        return released


@dataclass
class ExecutionContext:
    """Everything a step needs from the run it belongs to."""
    execution: PlaybookExecution
    playbook: Playbook
    clock: Callable[[], datetime]
    run_nested: Callable[[str, "ExecutionContext"], Awaitable[StepResult]]
    persist: Callable[[], None]
    background: set[asyncio.Task] = field(default_factory=set)

    @property
    def variables(self) -> dict[str, Any]:
        return self.execution.variables

    def step_record(self, step_id: str) -> Optional[StepExecution]:
        return self.execution.get_step(step_id)

    def expression_context(self) -> dict[str, Any]:
        """Variables plus completed step outputs under ``steps.<id>``."""
        outputs = {
            record.step_id: record.output
            for record in self.execution.steps
            if record.status == StepStatus.COMPLETED
        }
        return {**self.execution.variables, "steps": outputs}

    def capability_context(self, step: PlaybookStep) -> dict[str, Any]:
        return {
            "execution_id": self.execution.id,
            "playbook_id": self.execution.playbook_id,
            "step_id": step.id,
            "variables": dict(self.execution.variables),
        }


class StepExecutor:
    """Dispatches a step to the handler for its type."""

    def __init__(
        self,
        registry: CapabilityRegistry,
        settings: Settings,
        human_tasks: Optional[HumanTaskBoard] = None,
    ):
        self.registry = registry
        self.settings = settings
        self.human_tasks = human_tasks or HumanTaskBoard()
        self._handlers: dict[StepType, Callable[[PlaybookStep, ExecutionContext], Awaitable[StepResult]]] = {
            StepType.ACTION: self._handle_action,
            StepType.CONDITION: self._handle_condition,
            StepType.LOOP: self._handle_loop,
            StepType.PARALLEL: self._handle_parallel,
            StepType.WAIT: self._handle_wait,
            StepType.HUMAN_TASK: self._handle_human_task,
        }

    async def execute(self, step: PlaybookStep, ctx: ExecutionContext) -> StepResult:
        """
        Run one attempt of a step.

        ``step.timeout`` bounds the attempt for every type except human
        tasks, which apply their own timeout and escalation.
        """
        handler = self._handlers[StepType(step.type)]
        if step.timeout and step.type != StepType.HUMAN_TASK:
            try:
                return await asyncio.wait_for(handler(step, ctx), timeout=step.timeout)
            except asyncio.TimeoutError:
                return StepResult.failed(f"Step timed out after {step.timeout:g}s", timed_out=True)
        return await handler(step, ctx)

    # === Handlers ===

    async def _handle_action(self, step: PlaybookStep, ctx: ExecutionContext) -> StepResult:
        action = step.action
        try:
            output = await self.registry.invoke_action(
                action.action_type,
                dict(action.parameters),
                ctx.capability_context(step),
            )
        except CapabilityError as e:
            return StepResult.failed(str(e), timed_out=e.timed_out)

        if action.expected_output:
            check_context = {**ctx.expression_context(), "output": output}
            if not evaluate_expression(action.expected_output, check_context):
                return StepResult.failed(
                    f"Output did not satisfy '{action.expected_output}'",
                    output=output,
                )
        if action.output_variable:
            ctx.variables[action.output_variable] = output
        return StepResult.ok(output)

    async def _handle_condition(self, step: PlaybookStep, ctx: ExecutionContext) -> StepResult:
        condition = step.condition
        outcome = evaluate_expression(condition.expression, ctx.expression_context())
        branch = condition.true_step if outcome else condition.false_step
        return StepResult.ok({"result": outcome, "branch": branch}, next_step=branch)

    async def _handle_loop(self, step: PlaybookStep, ctx: ExecutionContext) -> StepResult:
        loop = step.loop
        items: Optional[list[Any]] = None
        if loop.items:
            value = ctx.variables.get(loop.items)
            if not isinstance(value, list):
                return StepResult.failed(f"Loop items variable '{loop.items}' is not a list")
            items = value
        limit = loop.max_iterations if items is None else min(len(items), loop.max_iterations)

        iterations = 0
        stopped_by_condition = False
        for index in range(limit):
            if loop.break_condition and evaluate_expression(loop.break_condition, ctx.expression_context()):
                stopped_by_condition = True
                break
            ctx.variables[loop.iterator] = items[index] if items is not None else index
            for child_id in loop.steps:
                result = await ctx.run_nested(child_id, ctx)
                if not result.succeeded:
                    return StepResult.failed(
                        f"Iteration {index} failed at step '{child_id}': {result.error}",
                        output={"iterations": iterations},
                    )
            iterations += 1
        return StepResult.ok({"iterations": iterations, "stopped_by_condition": stopped_by_condition})

    async def _handle_parallel(self, step: PlaybookStep, ctx: ExecutionContext) -> StepResult:
        parallel = step.parallel
        semaphore = asyncio.Semaphore(parallel.max_concurrency)

        async def branch(child_id: str) -> StepResult:
            async with semaphore:
                return await ctx.run_nested(child_id, ctx)

        tasks = {asyncio.create_task(branch(child_id)): child_id for child_id in parallel.steps}
        try:
            if parallel.wait_for_all:
                return await self._join_all(tasks)
            return await self._join_first(tasks, ctx)
        except BaseException:
            for task in tasks:
                if not task.done():
                    task.cancel()
            raise

    async def _join_all(self, tasks: dict[asyncio.Task, str]) -> StepResult:
        await asyncio.wait(tasks)
        outputs: dict[str, Any] = {}
        failures: list[str] = []
        for task, child_id in tasks.items():
            error = task.exception()
            if isinstance(error, ExecutionHalted):
                raise error
            if error is not None:
                failures.append(f"{child_id}: {error}")
                continue
            result = task.result()
            outputs[child_id] = result.output
            if not result.succeeded:
                failures.append(f"{child_id}: {result.error}")
        if failures:
            return StepResult.failed("Parallel branches failed: " + "; ".join(failures), output=outputs)
        return StepResult.ok(outputs)

    async def _join_first(self, tasks: dict[asyncio.Task, str], ctx: ExecutionContext) -> StepResult:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        first = next(task for task in tasks if task in done)
        for task in done:
            if isinstance(task.exception(), ExecutionHalted):
                raise task.exception()
        for straggler in [*pending, *(task for task in done if task is not first)]:
            self._detach(straggler, tasks[straggler], ctx)

        child_id = tasks[first]
        error = first.exception()
        if error is not None:
            return StepResult.failed(f"First parallel branch failed: {child_id}: {error}")
        result = first.result()
        if not result.succeeded:
            return StepResult.failed(
                f"First parallel branch failed: {child_id}: {result.error}",
                output={"first_completed": child_id, "output": result.output},
            )
        return StepResult.ok({"first_completed": child_id, "output": result.output})

    def _detach(self, task: asyncio.Task, child_id: str, ctx: ExecutionContext) -> None:
        execution_id = ctx.execution.id
        ctx.background.add(task)

        def report(finished: asyncio.Task) -> None:
            ctx.background.discard(finished)
            if finished.cancelled():
                return
            error = finished.exception()
            if isinstance(error, ExecutionHalted):
                return
            if error is not None:
                logger.warning("Detached branch raised", execution_id=execution_id, step_id=child_id, error=str(error))
            elif not finished.result().succeeded:
                logger.warning(
                    "Detached branch failed",
                    execution_id=execution_id,
                    step_id=child_id,
                    error=finished.result().error,
                )

        task.add_done_callback(report)

    async def _handle_wait(self, step: PlaybookStep, ctx: ExecutionContext) -> StepResult:
        wait = step.wait
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait.duration
        if not wait.condition:
            await asyncio.sleep(wait.duration)
            return StepResult.ok({"waited": wait.duration, "condition_met": None})

        while True:
            if evaluate_expression(wait.condition, ctx.expression_context()):
                return StepResult.ok({"condition_met": True})
            remaining = deadline - loop.time()
            if remaining <= 0:
                return StepResult.ok({"waited": wait.duration, "condition_met": False})
            await asyncio.sleep(min(self.settings.wait_poll_interval, remaining))

    async def _handle_human_task(self, step: PlaybookStep, ctx: ExecutionContext) -> StepResult:
        task = step.human_task
        timeout = task.timeout or step.timeout or self.settings.human_task_default_timeout
        execution = ctx.execution

        record = ctx.step_record(step.id)
        if record is not None:
            record.status = StepStatus.WAITING
            record.assignee = task.assignee
        execution.log(
            f"Awaiting human task '{step.name}'",
            step_id=step.id,
            timestamp=ctx.clock(),
            assignee=task.assignee,
            instructions=task.instructions,
        )
        ctx.persist()

        future = self.human_tasks.open(execution.id, step.id)
        try:
            decision: HumanDecision = await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            await self._escalate(step, ctx, timeout)
            return StepResult.failed(f"Human task timed out after {timeout:g}s", timed_out=True)
        finally:
            self.human_tasks.close(execution.id, step.id)

        if decision.cancelled:
            raise ExecutionHalted(execution.id)
        output = {"approved": decision.approved, "completed_by": decision.completed_by, **decision.output}
        if not decision.approved:
            return StepResult.failed(f"Rejected by {decision.completed_by or task.assignee}", output=output)
        return StepResult.ok(output)

    async def _escalate(self, step: PlaybookStep, ctx: ExecutionContext, timeout: float) -> None:
        target = step.human_task.escalation
        if not target:
            return
        try:
            await self.registry.notify({
                "kind": "human_task_escalation",
                "escalate_to": target,
                "assignee": step.human_task.assignee,
                "execution_id": ctx.execution.id,
                "playbook_id": ctx.execution.playbook_id,
                "step_id": step.id,
                "step_name": step.name,
                "timeout": timeout,
            })
            ctx.execution.log(f"Escalated to {target}", LogLevel.WARN, step_id=step.id, timestamp=ctx.clock())
        except CapabilityError as e:
            ctx.execution.log(
                f"Escalation to {target} failed: {e}",
                LogLevel.ERROR,
                step_id=step.id,
                timestamp=ctx.clock(),
            )
