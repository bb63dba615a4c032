"""
Execution Queue & Worker

A bounded FIFO of pending executions and the single worker that admits
them into the engine. Admission is serialized; once admitted, each
execution runs as its own task so a parked wait or human task does not
hold up the executions queued behind it.
"""

import asyncio
from typing import Optional

import structlog

from secauto.orchestrator.engine import ExecutionEngine
from secauto.orchestrator.errors import BackpressureError
from secauto.store.database import DefinitionStore
from secauto.store.models import PlaybookExecution, RecordKind

logger = structlog.get_logger(__name__)


class ExecutionQueue:
    """Non-blocking enqueue; a full queue raises ``BackpressureError``."""

    def __init__(self, store: DefinitionStore, max_size: int = 100):
        self.store = store
        self.max_size = max_size
        self._queue: asyncio.Queue[PlaybookExecution] = asyncio.Queue(maxsize=max_size)

    def enqueue(self, execution: PlaybookExecution) -> PlaybookExecution:
        try:
            self._queue.put_nowait(execution)
        except asyncio.QueueFull:
            logger.warning("Execution queue full", playbook_id=execution.playbook_id, max_size=self.max_size)
            raise BackpressureError(self.max_size) from None
        self.store.upsert(RecordKind.PLAYBOOK_EXECUTION, execution)
        logger.info(
            "Execution enqueued",
            execution_id=execution.id,
            playbook_id=execution.playbook_id,
            triggered_by=execution.triggered_by,
        )
        return execution

    async def get(self) -> PlaybookExecution:
        return await self._queue.get()

    def get_nowait(self) -> Optional[PlaybookExecution]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def task_done(self) -> None:
        self._queue.task_done()

    def __len__(self) -> int:
        return self._queue.qsize()


class ExecutionWorker:
    """Single consumer feeding the execution engine."""

    def __init__(self, queue: ExecutionQueue, engine: ExecutionEngine):
        self.queue = queue
        self.engine = engine
        self._loop_task: Optional[asyncio.Task] = None
        self._running: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._loop_task = asyncio.create_task(self._consume(), name="execution-worker")
        logger.info("Execution worker started")

    async def stop(self) -> None:
        """Stop admitting and cancel in-flight runs."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        for task in list(self._running):
            task.cancel()
        await asyncio.gather(*self._running, return_exceptions=True)
        self._running.clear()
        logger.info("Execution worker stopped")

    async def _consume(self) -> None:
        while True:
            execution = await self.queue.get()
            try:
                self._admit(execution)
            finally:
                self.queue.task_done()

    def _admit(self, execution: PlaybookExecution) -> asyncio.Task:
        task = asyncio.create_task(self._run(execution), name=f"execution-{execution.id}")
        self._running.add(task)
        task.add_done_callback(self._running.discard)
        return task

    async def _run(self, execution: PlaybookExecution) -> Optional[PlaybookExecution]:
        try:
            return await self.engine.run(execution)
        except Exception:
            logger.exception("Execution task failed", execution_id=execution.id)
            return None

    async def process_next(self) -> Optional[PlaybookExecution]:
        """Admit the next queued execution and wait for it to finish."""
        execution = self.queue.get_nowait()
        if execution is None:
            return None
        try:
            return await self.engine.run(execution)
        finally:
            self.queue.task_done()

    async def drain(self) -> list[PlaybookExecution]:
        """Run every queued execution in FIFO order, one after another."""
        finished = []
        while True:
            execution = await self.process_next()
            if execution is None:
                return finished
            finished.append(execution)
