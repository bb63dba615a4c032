"""
Orchestration Module

Playbook execution, event routing, automated responses and the periodic
policy, compliance and playbook schedulers:
- Condition and expression evaluation
- Step executor and execution engine
- Execution queue and worker
- Trigger router and response dispatcher
"""

from secauto.orchestrator.capabilities import CapabilityRegistry, register_builtin_capabilities
from secauto.orchestrator.conditions import evaluate, evaluate_all, evaluate_expression
from secauto.orchestrator.engine import ExecutionEngine
from secauto.orchestrator.errors import (
    BackpressureError,
    CapabilityError,
    InvalidStateError,
    NotFoundError,
    OrchestrationError,
    StepTimeoutError,
    ValidationError,
)
from secauto.orchestrator.events import EventBus
from secauto.orchestrator.queue import ExecutionQueue, ExecutionWorker
from secauto.orchestrator.responses import ResponseDispatcher
from secauto.orchestrator.router import RoutingResult, TriggerRouter
from secauto.orchestrator.steps import StepExecutor, StepResult
from secauto.orchestrator.system import OrchestrationSystem

__all__ = [
    # System
    "OrchestrationSystem",
    # Components
    "CapabilityRegistry",
    "register_builtin_capabilities",
    "EventBus",
    "ExecutionEngine",
    "ExecutionQueue",
    "ExecutionWorker",
    "ResponseDispatcher",
    "RoutingResult",
    "StepExecutor",
    "StepResult",
    "TriggerRouter",
    # Conditions
    "evaluate",
    "evaluate_all",
    "evaluate_expression",
    # Errors
    "OrchestrationError",
    "ValidationError",
    "NotFoundError",
    "InvalidStateError",
    "CapabilityError",
    "StepTimeoutError",
    "BackpressureError",
]
