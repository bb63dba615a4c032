"""
Tests for Automated Responses

Cooldown, caps, threshold windows, retries and rollback.
"""

import asyncio

import pytest


def _response(**kwargs):
    from secauto.store.models import (
        AutomatedResponse,
        ResponseAction,
        ResponseActionType,
        ResponseTrigger,
        ResponseTriggerType,
    )

    kwargs.setdefault("name", "Block attacker")
    kwargs.setdefault("triggers", [ResponseTrigger(ResponseTriggerType.SECURITY_EVENT)])
    kwargs.setdefault("actions", [ResponseAction("block", ResponseActionType.BLOCK_IP, {"duration": 60})])
    return AutomatedResponse(**kwargs)


class TestCooldownAndCap:
    """Tests for dispatch gating."""

    @pytest.mark.asyncio
    async def test_cooldown_and_cap_scenario(self, system, clock, capabilities):
        """Events at t=0, 100 and 400 with cooldown 300 and cap 2."""
        response = system.create_response(_response(cooldown=300, max_executions=2))

        dispatched = []
        for offset in (0, 100, 300):
            clock.advance(seconds=offset)
            result = await system.submit_event("security_event", {"source_ip": "10.0.0.9"})
            dispatched.append(len(result.responses))

        assert dispatched == [1, 0, 1]
        assert system.get_response(response.id).execution_count == 2
        assert capabilities.names() == ["block_ip", "block_ip"]

    @pytest.mark.asyncio
    async def test_cap_reached(self, system, clock):
        response = system.create_response(_response(cooldown=0, max_executions=2))

        counts = []
        for _ in range(3):
            result = await system.submit_event("security_event", {})
            counts.append(len(result.responses))
            clock.advance(seconds=1)

        assert counts == [1, 1, 0]
        assert system.get_response(response.id).execution_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_events_dispatch_once(self, system):
        response = system.create_response(_response(cooldown=300))

        results = await asyncio.gather(*[
            system.submit_event("security_event", {"attempt": n}) for n in range(5)
        ])

        assert sum(len(r.responses) for r in results) == 1
        assert system.get_response(response.id).execution_count == 1

    @pytest.mark.asyncio
    async def test_trigger_type_must_match_event(self, system, capabilities):
        system.create_response(_response())

        result = await system.submit_event("alert", {})
        assert result.responses == []
        assert capabilities.calls == []

    @pytest.mark.asyncio
    async def test_disabled_response_not_dispatched(self, system):
        response = system.create_response(_response())
        await system.disable_response(response.id)

        result = await system.submit_event("security_event", {})
        assert result.responses == []

    @pytest.mark.asyncio
    async def test_response_conditions(self, system):
        from secauto.store.models import ConditionOperator, ResponseCondition

        system.create_response(_response(
            cooldown=0,
            conditions=[ResponseCondition("source_ip", ConditionOperator.EXISTS)],
        ))

        assert (await system.submit_event("security_event", {})).responses == []
        assert len((await system.submit_event("security_event", {"source_ip": "1.2.3.4"})).responses) == 1

    @pytest.mark.asyncio
    async def test_priority_order(self, system, capabilities):
        from secauto.store.models import ResponseAction, ResponseActionType

        system.create_response(_response(
            name="low", priority=1,
            actions=[ResponseAction("a", ResponseActionType.NOTIFY)],
        ))
        system.create_response(_response(
            name="high", priority=5,
            actions=[ResponseAction("a", ResponseActionType.ESCALATE)],
        ))

        result = await system.submit_event("security_event", {})

        assert [r["response_name"] for r in result.responses] == ["high", "low"]
        assert capabilities.names() == ["escalate", "notify"]


class TestThresholdTriggers:
    """Tests for aggregated triggers."""

    @pytest.mark.asyncio
    async def test_brute_force_count_threshold(self, system, clock, capabilities):
        from secauto.orchestrator.responses import default_responses

        system.create_response(default_responses(system.settings)[0])
        event = {"event_type": "brute_force_attack", "source_ip": "203.0.113.7"}

        counts = []
        for _ in range(5):
            result = await system.submit_event("security_event", event)
            counts.append(len(result.responses))
            clock.advance(seconds=10)

        assert counts == [0, 0, 0, 0, 1]
        assert capabilities.names() == ["block_ip", "notify"]

    @pytest.mark.asyncio
    async def test_samples_expire_outside_window(self, system, clock):
        from secauto.orchestrator.responses import default_responses

        system.create_response(default_responses(system.settings)[0])
        event = {"event_type": "brute_force_attack"}

        for _ in range(4):
            await system.submit_event("security_event", event)
        clock.advance(minutes=6)
        result = await system.submit_event("security_event", event)

        assert result.responses == []

    @pytest.mark.asyncio
    async def test_other_event_types_not_counted(self, system):
        from secauto.orchestrator.responses import default_responses

        system.create_response(default_responses(system.settings)[0])

        for _ in range(5):
            result = await system.submit_event("security_event", {"event_type": "port_scan"})
        assert result.responses == []

    @pytest.mark.asyncio
    async def test_sum_aggregation(self, system):
        from secauto.store.models import Aggregation, ResponseTrigger, ResponseTriggerType

        system.create_response(_response(triggers=[
            ResponseTrigger(
                ResponseTriggerType.THRESHOLD,
                aggregation=Aggregation.SUM,
                aggregate_field="bytes",
                time_window=1,
                threshold=100,
            ),
        ]))

        assert (await system.submit_event("threshold", {"bytes": 60})).responses == []
        assert (await system.submit_event("threshold", {"bytes": "n/a"})).responses == []
        assert len((await system.submit_event("threshold", {"bytes": 50})).responses) == 1

    @pytest.mark.asyncio
    async def test_capped_response_stops_sampling(self, system, clock):
        from secauto.store.models import Aggregation, ResponseTrigger, ResponseTriggerType

        response = system.create_response(_response(
            cooldown=0,
            max_executions=1,
            triggers=[ResponseTrigger(
                ResponseTriggerType.THRESHOLD, aggregation=Aggregation.COUNT, time_window=60, threshold=3,
            )],
        ))

        counts = []
        for _ in range(50):
            result = await system.submit_event("threshold", {})
            counts.append(len(result.responses))
            clock.advance(seconds=1)

        assert counts[:3] == [0, 0, 1]
        assert sum(counts) == 1
        assert system.get_response(response.id).execution_count == 1
        assert not [key for key in system.dispatcher._windows if key[0] == response.id]

    @pytest.mark.asyncio
    async def test_window_keeps_newest_samples(self, store, capabilities, clock):
        from secauto.orchestrator.capabilities import CapabilityRegistry
        from secauto.orchestrator.responses import ResponseDispatcher
        from secauto.store.models import Aggregation, RecordKind, ResponseTrigger, ResponseTriggerType

        registry = CapabilityRegistry()
        capabilities.register(registry)
        dispatcher = ResponseDispatcher(store, registry, clock=clock, max_window_samples=3)
        response = _response(triggers=[ResponseTrigger(
            ResponseTriggerType.THRESHOLD, aggregation=Aggregation.COUNT, time_window=60, threshold=10,
        )])
        store.upsert(RecordKind.AUTOMATED_RESPONSE, response)

        for _ in range(20):
            assert await dispatcher.offer(response.id, "threshold", {"event_type": "threshold"}) is None

        assert len(dispatcher._windows[(response.id, 0)]) == 3

    def test_aggregate_functions(self):
        from secauto.orchestrator.responses import aggregate
        from secauto.store.models import Aggregation

        values = [2.0, 4.0, 9.0]
        assert aggregate(Aggregation.COUNT, values) == 3
        assert aggregate(Aggregation.SUM, values) == 15
        assert aggregate(Aggregation.AVG, values) == 5
        assert aggregate(Aggregation.MAX, values) == 9
        assert aggregate(Aggregation.MIN, values) == 2
        assert aggregate(Aggregation.AVG, []) == 0


class TestDispatch:
    """Tests for action execution and statistics."""

    @pytest.mark.asyncio
    async def test_action_retries_then_rollback(self, system, capabilities):
        from secauto.store.models import ResponseAction, ResponseActionType

        capabilities.fail("isolate_system", times=5)
        response = system.create_response(_response(actions=[
            ResponseAction(
                "isolate", ResponseActionType.ISOLATE_SYSTEM, retries=1,
                rollback=ResponseAction("undo", ResponseActionType.NOTIFY, {"message": "isolation failed"}),
            ),
        ]))

        result = await system.submit_event("security_event", {})
        summary = result.responses[0]

        assert summary["success"] is False
        action = summary["actions"][0]
        assert action["status"] == "failed"
        assert action["attempts"] == 2
        assert action["rollback"] == "completed"
        assert capabilities.names() == ["isolate_system", "isolate_system", "notify"]

        stored = system.get_response(response.id)
        assert stored.execution_count == 1
        assert stored.success_count == 0
        assert stored.success_rate == 0.0
        assert stored.last_result[0]["action_id"] == "isolate"

    @pytest.mark.asyncio
    async def test_failing_action_does_not_stop_the_rest(self, system, capabilities):
        from secauto.store.models import ResponseAction, ResponseActionType

        capabilities.fail("block_ip")
        system.create_response(_response(actions=[
            ResponseAction("block", ResponseActionType.BLOCK_IP),
            ResponseAction("tell", ResponseActionType.NOTIFY),
        ]))

        summary = (await system.submit_event("security_event", {})).responses[0]

        assert [a["status"] for a in summary["actions"]] == ["failed", "completed"]

    @pytest.mark.asyncio
    async def test_success_statistics_and_event(self, system, clock):
        from secauto.orchestrator import events

        received = []
        system.bus.subscribe(events.RESPONSE_DISPATCHED, lambda topic, payload: received.append(payload))
        response = system.create_response(_response(cooldown=0))

        await system.submit_event("security_event", {"source_ip": "1.1.1.1"})
        clock.advance(seconds=1)
        await system.submit_event("security_event", {"source_ip": "1.1.1.1"})

        stored = system.get_response(response.id)
        assert stored.success_count == 2
        assert stored.success_rate == 1.0
        assert stored.last_executed == clock.now
        assert len(received) == 2 and received[0]["success"] is True

    @pytest.mark.asyncio
    async def test_actions_receive_event_context(self, system, capabilities):
        system.create_response(_response())

        await system.submit_event("security_event", {"source_ip": "198.51.100.4"})

        name, parameters, context = capabilities.calls[0]
        assert parameters == {"duration": 60}
        assert context == {"event_type": "security_event", "source_ip": "198.51.100.4"}


class TestValidateResponse:
    """Tests for create-time validation."""

    def test_requires_triggers_and_actions(self):
        from secauto.orchestrator.errors import ValidationError
        from secauto.orchestrator.responses import validate_response

        with pytest.raises(ValidationError) as exc:
            validate_response(_response(triggers=[], actions=[]))
        assert len(exc.value.problems) == 2

    def test_threshold_needs_aggregation(self):
        from secauto.orchestrator.errors import ValidationError
        from secauto.orchestrator.responses import validate_response
        from secauto.store.models import ResponseTrigger, ResponseTriggerType

        with pytest.raises(ValidationError, match="aggregation and threshold"):
            validate_response(_response(triggers=[ResponseTrigger(ResponseTriggerType.THRESHOLD, threshold=3)]))

    def test_threshold_needs_window(self):
        from secauto.orchestrator.errors import ValidationError
        from secauto.orchestrator.responses import validate_response
        from secauto.store.models import Aggregation, ResponseTrigger, ResponseTriggerType

        with pytest.raises(ValidationError, match="need a time_window"):
            validate_response(_response(triggers=[
                ResponseTrigger(ResponseTriggerType.THRESHOLD, aggregation=Aggregation.COUNT, threshold=3),
            ]))

    def test_unregistered_action(self):
        from secauto.orchestrator.capabilities import CapabilityRegistry
        from secauto.orchestrator.errors import ValidationError
        from secauto.orchestrator.responses import validate_response

        with pytest.raises(ValidationError, match="block_ip"):
            validate_response(_response(), CapabilityRegistry())

    def test_bad_limits(self):
        from secauto.orchestrator.errors import ValidationError
        from secauto.orchestrator.responses import validate_response

        with pytest.raises(ValidationError, match="max_executions"):
            validate_response(_response(max_executions=0))
