"""
Tests for Playbook Definitions

Step graph validation, variable binding, versions and schedules.
"""

from datetime import datetime, timezone

import pytest


def _step(step_id, step_type="action", **kwargs):
    from secauto.store.models import ActionDefinition, ActionType, PlaybookStep, StepType

    step_type = StepType(step_type)
    if step_type == StepType.ACTION and "action" not in kwargs:
        kwargs["action"] = ActionDefinition(ActionType.HTTP_REQUEST, {"url": "http://example.test"})
    return PlaybookStep(id=step_id, name=step_id.title(), type=step_type, **kwargs)


class TestValidatePlaybook:
    """Tests for create-time validation."""

    def test_default_playbooks_are_valid(self, system):
        from secauto.orchestrator.playbooks import default_playbooks, validate_playbook

        for playbook in default_playbooks():
            validate_playbook(playbook, system.registry)

    def test_unknown_edge_rejected(self, make_playbook):
        from secauto.orchestrator.errors import ValidationError
        from secauto.orchestrator.playbooks import validate_playbook

        playbook = make_playbook(steps=[_step("first", on_success="missing")])
        with pytest.raises(ValidationError) as exc:
            validate_playbook(playbook)
        assert any("unknown step 'missing'" in p for p in exc.value.problems)

    def test_payload_must_match_type(self, make_playbook):
        from secauto.orchestrator.errors import ValidationError
        from secauto.orchestrator.playbooks import validate_playbook
        from secauto.store.models import WaitDefinition

        playbook = make_playbook(steps=[_step("first", wait=WaitDefinition(duration=1))])
        with pytest.raises(ValidationError) as exc:
            validate_playbook(playbook)
        assert any("unexpected 'wait'" in p for p in exc.value.problems)

        playbook = make_playbook(steps=[_step("pause", "wait")])
        with pytest.raises(ValidationError) as exc:
            validate_playbook(playbook)
        assert any("missing 'wait'" in p for p in exc.value.problems)

    def test_unregistered_action_type_rejected(self, make_playbook):
        from secauto.orchestrator.capabilities import CapabilityRegistry
        from secauto.orchestrator.errors import ValidationError
        from secauto.orchestrator.playbooks import validate_playbook
        from secauto.store.models import ActionType

        playbook = make_playbook(action_types=[ActionType.DATABASE_QUERY])
        with pytest.raises(ValidationError) as exc:
            validate_playbook(playbook, CapabilityRegistry())
        assert "database_query" in str(exc.value)

    def test_duplicate_step_ids(self, make_playbook):
        from secauto.orchestrator.errors import ValidationError
        from secauto.orchestrator.playbooks import validate_playbook

        with pytest.raises(ValidationError, match="duplicate step id"):
            validate_playbook(make_playbook(steps=[_step("a"), _step("a")]))

    def test_bad_condition_expression(self, make_playbook):
        from secauto.orchestrator.errors import ValidationError
        from secauto.orchestrator.playbooks import validate_playbook
        from secauto.store.models import ConditionDefinition

        playbook = make_playbook(steps=[
            _step("check", "condition", condition=ConditionDefinition("severity ==", "a")),
            _step("a"),
        ])
        with pytest.raises(ValidationError):
            validate_playbook(playbook)

    def test_containment_cycle_rejected(self, make_playbook):
        from secauto.orchestrator.errors import ValidationError
        from secauto.orchestrator.playbooks import validate_playbook
        from secauto.store.models import LoopDefinition, ParallelDefinition

        playbook = make_playbook(steps=[
            _step("outer", "loop", loop=LoopDefinition(iterator="i", steps=["inner"])),
            _step("inner", "parallel", parallel=ParallelDefinition(steps=["outer"])),
        ])
        with pytest.raises(ValidationError, match="contain each other"):
            validate_playbook(playbook)

    def test_cannot_jump_into_nested_step(self, make_playbook):
        from secauto.orchestrator.errors import ValidationError
        from secauto.orchestrator.playbooks import validate_playbook
        from secauto.store.models import LoopDefinition

        playbook = make_playbook(steps=[
            _step("start", on_success="child"),
            _step("each", "loop", loop=LoopDefinition(iterator="i", steps=["child"])),
            _step("child"),
        ])
        with pytest.raises(ValidationError, match="cannot jump into nested step"):
            validate_playbook(playbook)

    def test_invalid_cron_schedule(self, make_playbook):
        from secauto.orchestrator.errors import ValidationError
        from secauto.orchestrator.playbooks import validate_playbook
        from secauto.store.models import PlaybookTrigger, TriggerType

        playbook = make_playbook(trigger=PlaybookTrigger(type=TriggerType.SCHEDULED, schedule="every tuesday"))
        with pytest.raises(ValidationError, match="invalid schedule"):
            validate_playbook(playbook)

    def test_event_trigger_needs_events(self, make_playbook):
        from secauto.orchestrator.errors import ValidationError
        from secauto.orchestrator.playbooks import validate_playbook
        from secauto.store.models import PlaybookTrigger, TriggerType

        with pytest.raises(ValidationError, match="at least one event type"):
            validate_playbook(make_playbook(trigger=PlaybookTrigger(type=TriggerType.EVENT)))

    def test_bad_variable_default(self, make_playbook):
        from secauto.orchestrator.errors import ValidationError
        from secauto.orchestrator.playbooks import validate_playbook
        from secauto.store.models import PlaybookVariable, VariableType

        playbook = make_playbook(variables=[PlaybookVariable("limit", VariableType.NUMBER, default_value="lots")])
        with pytest.raises(ValidationError, match="variable 'limit'"):
            validate_playbook(playbook)


class TestVariables:
    """Tests for variable coercion and binding."""

    def test_coerce_variable(self):
        from secauto.orchestrator.playbooks import coerce_variable
        from secauto.store.models import PlaybookVariable, VariableType

        assert coerce_variable(PlaybookVariable("n", VariableType.NUMBER), "5") == 5
        assert coerce_variable(PlaybookVariable("n", VariableType.NUMBER), "2.5") == 2.5
        assert coerce_variable(PlaybookVariable("b", VariableType.BOOLEAN), "TRUE") is True
        assert coerce_variable(PlaybookVariable("s", VariableType.STRING), 42) == "42"
        assert coerce_variable(PlaybookVariable("a", VariableType.ARRAY), ("x",)) == ["x"]

    @pytest.mark.parametrize("var_type,value", [
        ("number", True),
        ("boolean", "yes"),
        ("string", {"a": 1}),
        ("object", [1]),
    ])
    def test_lossy_coercion_rejected(self, var_type, value):
        from secauto.orchestrator.playbooks import coerce_variable
        from secauto.store.models import PlaybookVariable, VariableType

        with pytest.raises(ValueError):
            coerce_variable(PlaybookVariable("v", VariableType(var_type)), value)

    def test_build_variables_layers(self, make_playbook):
        """Trigger parameters, then defaults, then supplied values."""
        from secauto.orchestrator.playbooks import build_variables
        from secauto.store.models import PlaybookTrigger, PlaybookVariable, VariableType

        playbook = make_playbook(
            trigger=PlaybookTrigger(parameters={"region": "eu", "limits": {"cpu": 1, "mem": 2}}),
            variables=[
                PlaybookVariable("region", VariableType.STRING, default_value="us"),
                PlaybookVariable("retries", VariableType.NUMBER, default_value=1),
            ],
        )
        variables = build_variables(playbook, {"retries": "3", "limits": {"mem": 4}})

        assert variables["region"] == "us"
        assert variables["retries"] == 3
        assert variables["limits"] == {"cpu": 1, "mem": 4}

    def test_required_variable_missing(self, make_playbook):
        from secauto.orchestrator.errors import ValidationError
        from secauto.orchestrator.playbooks import build_variables
        from secauto.store.models import PlaybookVariable, VariableType

        playbook = make_playbook(variables=[PlaybookVariable("target", VariableType.STRING, required=True)])
        with pytest.raises(ValidationError, match="required variable 'target'"):
            build_variables(playbook, {})
        assert build_variables(playbook, {"target": "web-01"})["target"] == "web-01"

    def test_parameter_depth_bounded(self):
        from secauto.orchestrator.errors import ValidationError
        from secauto.orchestrator.playbooks import merge_parameters

        deep = {"level": {}}
        cursor = deep["level"]
        for _ in range(10):
            cursor["level"] = {}
            cursor = cursor["level"]

        with pytest.raises(ValidationError, match="nested deeper"):
            merge_parameters({}, deep, max_depth=4)

    def test_mask_sensitive(self, make_playbook):
        from secauto.orchestrator.playbooks import SENSITIVE_MASK, mask_sensitive
        from secauto.store.models import PlaybookVariable

        playbook = make_playbook(variables=[PlaybookVariable("api_key", sensitive=True), PlaybookVariable("host")])
        masked = mask_sensitive(playbook, {"api_key": "s3cret", "host": "web-01"})

        assert masked == {"api_key": SENSITIVE_MASK, "host": "web-01"}

    def test_event_variables_only_declared(self, make_playbook):
        from secauto.orchestrator.playbooks import event_variables
        from secauto.store.models import PlaybookVariable

        playbook = make_playbook(variables=[PlaybookVariable("target")])
        assert event_variables(playbook, {"target": "db-1", "noise": True}) == {"target": "db-1"}


class TestVersionsAndSchedules:
    """Tests for version bumps and cron schedules."""

    def test_bump_version(self):
        from secauto.orchestrator.playbooks import bump_version

        assert bump_version("1.0.0") == "1.1.0"
        assert bump_version("2.3.7") == "2.4.0"
        assert bump_version("3") == "3.1.0"

    def test_next_scheduled_run(self):
        from secauto.orchestrator.playbooks import next_scheduled_run

        after = datetime(2024, 1, 1, 10, 30, tzinfo=timezone.utc)
        assert next_scheduled_run("0 * * * *", after) == datetime(2024, 1, 1, 11, 0, tzinfo=timezone.utc)
