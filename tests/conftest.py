"""
SecAuto Test Configuration and Fixtures
"""

import asyncio
import os
from datetime import datetime, timedelta, timezone

import pytest

# Set test environment variables before importing modules
os.environ["SECAUTO_STORE_BACKEND"] = "memory"
os.environ["SECAUTO_LOAD_DEFAULTS"] = "false"
os.environ["SECAUTO_LOG_LEVEL"] = "WARNING"


class FakeClock:
    """Controllable clock injected wherever the code reads the time."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class FakeCapabilities:
    """
    Records every capability call.

    ``fail(name, times)`` makes the named action raise for its next
    ``times`` calls; ``outputs[name]`` overrides what it returns.
    """

    def __init__(self):
        self.calls = []
        self.failures = {}
        self.outputs = {}
        self.notifications = []
        self.policy_state = {}
        self.compliance_results = {}
        self.findings = []
        self.evaluator_calls = []

    def fail(self, name, times=1):
        self.failures[name] = times

    def names(self):
        return [name for name, _, _ in self.calls]

    def action(self, name):
        def handler(parameters, context):
            self.calls.append((name, parameters, context))
            if self.failures.get(name, 0) > 0:
                self.failures[name] -= 1
                raise RuntimeError(f"{name} unavailable")
            return self.outputs.get(name, {"ok": True})
        return handler

    def notify(self, payload):
        self.notifications.append(payload)
        return True

    def evaluate_policy(self, parameters):
        self.evaluator_calls.append(("policy_state", parameters))
        if isinstance(self.policy_state, Exception):
            raise self.policy_state
        return self.policy_state

    def evaluate_compliance(self, parameters):
        self.evaluator_calls.append(("compliance_script", parameters))
        result = self.compliance_results.get(parameters.get("script"), {"compliant": True})
        if isinstance(result, Exception):
            raise result
        return result

    def scan(self, parameters):
        self.evaluator_calls.append(("vulnerability_scanner", parameters))
        if isinstance(self.findings, Exception):
            raise self.findings
        return {"findings": list(self.findings)}

    def register(self, registry):
        from secauto.store.models import ActionType, ResponseActionType

        for action_type in ActionType:
            registry.register_action(action_type, self.action(action_type.value))
        for action_type in ResponseActionType:
            registry.register_action(action_type, self.action(action_type.value))
        registry.register_evaluator("policy_state", self.evaluate_policy)
        registry.register_evaluator("compliance_script", self.evaluate_compliance)
        registry.register_evaluator("vulnerability_scanner", self.scan)
        registry.set_notifier(self.notify)


@pytest.fixture
def clock():
    """Clock starting at 2024-01-01 12:00 UTC."""
    return FakeClock()


@pytest.fixture
def capabilities():
    return FakeCapabilities()


@pytest.fixture
def test_settings():
    """Settings tuned for fast tests."""
    from secauto.config.settings import Settings

    return Settings(
        store_backend="memory",
        load_defaults=False,
        wait_poll_interval=0.01,
        human_task_default_timeout=5.0,
        queue_max_size=10,
    )


@pytest.fixture
def store():
    from secauto.store.database import MemoryStore
    return MemoryStore()


@pytest.fixture
def system(test_settings, store, clock, capabilities):
    """Fully wired system with fake capabilities and no seeded definitions."""
    from secauto.orchestrator.system import OrchestrationSystem

    orchestration = OrchestrationSystem(settings=test_settings, store=store, clock=clock)
    capabilities.register(orchestration.registry)
    return orchestration


@pytest.fixture
def make_playbook():
    """Factory for playbooks built from sequential action steps."""
    from secauto.store.models import (
        ActionDefinition,
        ActionType,
        Playbook,
        PlaybookStep,
        PlaybookTrigger,
        PlaybookType,
        StepType,
    )

    def factory(steps=None, action_types=None, **kwargs):
        if steps is None:
            action_types = action_types or [ActionType.HTTP_REQUEST]
            steps = [
                PlaybookStep(
                    id=f"step-{index}",
                    name=f"Step {index}",
                    type=StepType.ACTION,
                    order=index,
                    action=ActionDefinition(action_type, {"index": index}),
                )
                for index, action_type in enumerate(action_types, start=1)
            ]
        kwargs.setdefault("name", "Test Playbook")
        kwargs.setdefault("type", PlaybookType.INCIDENT_RESPONSE)
        kwargs.setdefault("trigger", PlaybookTrigger())
        return Playbook(steps=steps, **kwargs)

    return factory


@pytest.fixture
def wait_until():
    """Poll a predicate until it holds, failing after ``timeout`` seconds."""

    async def poll(predicate, timeout=2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(0.005)

    return poll
