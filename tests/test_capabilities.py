"""
Tests for the Capability Registry, built-in capabilities and the Event Bus
"""

import asyncio
import json
import os
import time

import httpx
import pytest


def _write_script(path, body):
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(0o755)
    return path


@pytest.fixture
def builtin_registry(tmp_path):
    """Registry with built-ins backed by a mock HTTP transport."""
    from secauto.config.settings import Settings
    from secauto.orchestrator.capabilities import CapabilityRegistry, register_builtin_capabilities

    requests = []

    def handler(request):
        requests.append(request)
        if request.url.path == "/missing":
            return httpx.Response(404, json={"error": "not found"})
        return httpx.Response(200, json={"path": request.url.path, "method": request.method})

    settings = Settings(
        store_backend="memory",
        api_base_url="http://api.test/",
        notify_webhook_url="http://hooks.test/notify",
        scripts_dir=str(tmp_path),
    )
    registry = CapabilityRegistry()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    register_builtin_capabilities(registry, settings, client)
    registry.requests = requests
    return registry


class TestCapabilityRegistry:
    """Tests for invocation and error mapping."""

    @pytest.mark.asyncio
    async def test_sync_and_async_capabilities(self):
        from secauto.orchestrator.capabilities import CapabilityRegistry

        async def async_action(parameters, context):
            return {"async": parameters["n"]}

        registry = CapabilityRegistry()
        registry.register_action("sync_action", lambda parameters, context: {"sync": context["who"]})
        registry.register_action("async_action", async_action)

        assert await registry.invoke_action("sync_action", {}, {"who": "soc"}) == {"sync": "soc"}
        assert await registry.invoke_action("async_action", {"n": 2}, {}) == {"async": 2}

    @pytest.mark.asyncio
    async def test_unknown_capability(self):
        from secauto.orchestrator.capabilities import CapabilityRegistry
        from secauto.orchestrator.errors import CapabilityError

        registry = CapabilityRegistry()
        with pytest.raises(CapabilityError, match="No capability registered for action 'block_ip'"):
            await registry.invoke_action("block_ip", {}, {})
        with pytest.raises(CapabilityError, match="No notify capability"):
            await registry.notify({"kind": "test"})

    @pytest.mark.asyncio
    async def test_failure_is_wrapped(self):
        from secauto.orchestrator.capabilities import CapabilityRegistry
        from secauto.orchestrator.errors import CapabilityError

        def broken(parameters):
            raise KeyError("target")

        registry = CapabilityRegistry()
        registry.register_evaluator("policy_state", broken)

        with pytest.raises(CapabilityError) as exc:
            await registry.invoke_evaluator("policy_state", {})
        assert exc.value.capability == "policy_state"
        assert isinstance(exc.value.original_error, KeyError)
        assert exc.value.timed_out is False

    @pytest.mark.asyncio
    async def test_timeout(self):
        from secauto.orchestrator.capabilities import CapabilityRegistry
        from secauto.orchestrator.errors import StepTimeoutError

        async def slow(parameters, context):
            await asyncio.sleep(1)

        registry = CapabilityRegistry()
        registry.register_action("isolate_system", slow)

        with pytest.raises(StepTimeoutError) as exc:
            await registry.invoke_action("isolate_system", {}, {}, timeout=0.01)
        assert exc.value.timed_out is True

    @pytest.mark.asyncio
    async def test_sync_capability_runs_off_the_loop(self):
        from secauto.orchestrator.capabilities import CapabilityRegistry
        from secauto.orchestrator.errors import StepTimeoutError

        finished = []

        def blocking(parameters, context):
            time.sleep(0.2)
            finished.append("blocking")
            return "done"

        async def ticker():
            for _ in range(5):
                await asyncio.sleep(0.01)
            finished.append("ticker")

        registry = CapabilityRegistry()
        registry.register_action("collect_evidence", blocking)

        result, _ = await asyncio.gather(registry.invoke_action("collect_evidence", {}, {}), ticker())
        assert result == "done"
        assert finished == ["ticker", "blocking"]

        with pytest.raises(StepTimeoutError):
            await registry.invoke_action("collect_evidence", {}, {}, timeout=0.05)


class TestBuiltinCapabilities:
    """Tests for the HTTP, notification and script capabilities."""

    @pytest.mark.asyncio
    async def test_http_request(self, builtin_registry):
        output = await builtin_registry.invoke_action("http_request", {"url": "http://siem.test/health"}, {})

        assert output == {"status_code": 200, "body": {"path": "/health", "method": "GET"}}

    @pytest.mark.asyncio
    async def test_http_request_error_status(self, builtin_registry):
        from secauto.orchestrator.errors import CapabilityError

        with pytest.raises(CapabilityError, match="404"):
            await builtin_registry.invoke_action("http_request", {"url": "http://siem.test/missing"}, {})
        with pytest.raises(CapabilityError, match="Expected HTTP 201"):
            await builtin_registry.invoke_action(
                "http_request", {"url": "http://siem.test/health", "expected_status": 201}, {},
            )

    @pytest.mark.asyncio
    async def test_api_call_joins_base_url(self, builtin_registry):
        output = await builtin_registry.invoke_action(
            "api_call", {"endpoint": "/api/alerts/acknowledge", "payload": {"alert_id": "a1"}}, {},
        )

        request = builtin_registry.requests[-1]
        assert str(request.url) == "http://api.test/api/alerts/acknowledge"
        assert json.loads(request.content) == {"alert_id": "a1"}
        assert output["body"]["method"] == "POST"

    @pytest.mark.asyncio
    async def test_notifications_go_to_webhook(self, builtin_registry):
        await builtin_registry.invoke_action("notification", {"subject": "Incident"}, {})
        await builtin_registry.invoke_action("escalate", {"to": "ciso"}, {"event_type": "alert"})

        payloads = [json.loads(r.content) for r in builtin_registry.requests]
        assert payloads[0] == {"kind": "notification", "subject": "Incident"}
        assert payloads[1] == {"kind": "escalation", "event": {"event_type": "alert"}, "to": "ciso"}
        assert all(str(r.url) == "http://hooks.test/notify" for r in builtin_registry.requests)

    @pytest.mark.asyncio
    async def test_script_runs_inside_scripts_dir(self, builtin_registry, tmp_path):
        _write_script(tmp_path / "isolate.sh", 'echo "isolating $1"\n')

        output = await builtin_registry.invoke_action("script", {"script": "isolate.sh", "args": ["web-01"]}, {})

        assert output["returncode"] == 0
        assert output["stdout"].strip() == "isolating web-01"

    @pytest.mark.asyncio
    async def test_script_failures(self, builtin_registry, tmp_path):
        from secauto.orchestrator.errors import CapabilityError

        _write_script(tmp_path / "broken.sh", "echo nope >&2\nexit 3\n")

        with pytest.raises(CapabilityError, match="exited with 3"):
            await builtin_registry.invoke_action("script", {"script": "broken.sh"}, {})
        with pytest.raises(CapabilityError, match="outside"):
            await builtin_registry.invoke_action("script", {"script": "../escape.sh"}, {})
        with pytest.raises(CapabilityError, match="not found"):
            await builtin_registry.invoke_action("script", {"script": "absent.sh"}, {})

    @pytest.mark.asyncio
    async def test_script_killed_on_timeout_is_reaped(self, builtin_registry, tmp_path):
        from secauto.orchestrator.errors import StepTimeoutError

        _write_script(tmp_path / "hang.sh", 'echo $$ > "$(dirname "$0")/hang.pid"\nexec sleep 5\n')

        with pytest.raises(StepTimeoutError):
            await builtin_registry.invoke_action("script", {"script": "hang.sh"}, {}, timeout=0.5)

        pid = int((tmp_path / "hang.pid").read_text())
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)

    @pytest.mark.asyncio
    async def test_compliance_script_results(self, builtin_registry, tmp_path):
        _write_script(tmp_path / "json_check.sh", "echo '{\"compliant\": false, \"recommendation\": \"Rotate keys\"}'\n")
        _write_script(tmp_path / "plain_check.sh", "echo 'all users reviewed'\nexit 0\n")

        assert await builtin_registry.invoke_evaluator("compliance_script", {"script": "json_check.sh"}) == {
            "compliant": False, "recommendation": "Rotate keys",
        }
        assert await builtin_registry.invoke_evaluator("compliance_script", {"script": "plain_check.sh"}) == {
            "compliant": True, "evidence": ["all users reviewed"],
        }


class TestEventBus:
    """Tests for outbound lifecycle events."""

    @pytest.mark.asyncio
    async def test_sync_async_and_wildcard_handlers(self):
        from secauto.orchestrator.events import EXECUTION_COMPLETED, EventBus

        received = []

        async def async_handler(topic, payload):
            received.append(("async", topic))

        bus = EventBus()
        bus.subscribe(EXECUTION_COMPLETED, lambda topic, payload: received.append(("sync", payload["id"])))
        bus.subscribe(EXECUTION_COMPLETED, async_handler)
        bus.subscribe("*", lambda topic, payload: received.append(("all", topic)))

        await bus.emit(EXECUTION_COMPLETED, {"id": "exec_1"})

        assert received == [("sync", "exec_1"), ("async", EXECUTION_COMPLETED), ("all", EXECUTION_COMPLETED)]

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self):
        from secauto.orchestrator.events import RESPONSE_DISPATCHED, EventBus

        received = []

        def broken(topic, payload):
            raise RuntimeError("subscriber down")

        bus = EventBus()
        bus.subscribe(RESPONSE_DISPATCHED, broken)
        bus.subscribe(RESPONSE_DISPATCHED, lambda topic, payload: received.append(payload))

        await bus.emit(RESPONSE_DISPATCHED, {"success": True})
        assert received == [{"success": True}]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        from secauto.orchestrator.events import ASSESSMENT_COMPLETED, EventBus

        received = []
        handler = lambda topic, payload: received.append(payload)  # noqa: E731

        bus = EventBus()
        bus.subscribe(ASSESSMENT_COMPLETED, handler)
        bus.unsubscribe(ASSESSMENT_COMPLETED, handler)
        bus.unsubscribe(ASSESSMENT_COMPLETED, handler)

        await bus.emit(ASSESSMENT_COMPLETED, {})
        assert received == []
