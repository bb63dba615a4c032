"""
Orchestration Errors

Exception taxonomy shared by the engine, schedulers and operator calls.
"""

from typing import Optional


class OrchestrationError(Exception):
    """Base exception for orchestration errors."""


class ValidationError(OrchestrationError):
    """A definition was rejected at create time."""

    def __init__(self, message: str, problems: Optional[list[str]] = None):
        self.problems = problems or [message]
        super().__init__(message if not problems else f"{message}: {'; '.join(problems)}")


class NotFoundError(OrchestrationError):
    """An operator call referenced an unknown id."""

    def __init__(self, kind: str, record_id: str):
        super().__init__(f"{kind} not found: {record_id}")
        self.kind = kind
        self.record_id = record_id


class InvalidStateError(OrchestrationError):
    """An operator call is not allowed in the record's current state."""


class CapabilityError(OrchestrationError):
    """An injected capability failed or is not registered."""

    def __init__(
        self,
        message: str,
        capability: str,
        timed_out: bool = False,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.capability = capability
        self.timed_out = timed_out
        self.original_error = original_error


class StepTimeoutError(CapabilityError):
    """A step or capability exceeded its configured timeout."""

    def __init__(self, capability: str, timeout: float):
        super().__init__(
            f"{capability} timed out after {timeout:g}s",
            capability=capability,
            timed_out=True,
        )
        self.timeout = timeout


class BackpressureError(OrchestrationError):
    """The execution queue is full."""

    def __init__(self, max_size: int):
        super().__init__(f"Execution queue is full ({max_size} pending)")
        self.max_size = max_size
