"""
Playbook Definitions

Validation of playbook step graphs and triggers, variable binding,
schedule handling, and the standard playbooks seeded at startup.
"""

from datetime import datetime
from typing import Any, Optional

from croniter import croniter

from secauto.orchestrator.capabilities import CapabilityRegistry
from secauto.orchestrator.conditions import compile_expression
from secauto.orchestrator.errors import ValidationError
from secauto.store.models import (
    ActionDefinition,
    ActionType,
    ConditionDefinition,
    ConditionOperator,
    Playbook,
    PlaybookStep,
    PlaybookTrigger,
    PlaybookType,
    PlaybookVariable,
    StepType,
    TriggerCondition,
    TriggerType,
    VariableType,
)

SENSITIVE_MASK = "***"

_PAYLOAD_ATTRS = ("action", "condition", "loop", "parallel", "wait", "human_task")


# ============================================================================
# Validation
# ============================================================================

def child_step_ids(playbook: Playbook) -> set[str]:
    """Ids of steps that only run inside a loop or parallel step."""
    children: set[str] = set()
    for step in playbook.steps:
        if step.type == StepType.LOOP and step.loop:
            children.update(step.loop.steps)
        elif step.type == StepType.PARALLEL and step.parallel:
            children.update(step.parallel.steps)
    return children


def _check_expression(expression: Optional[str], where: str, problems: list[str]) -> None:
    if expression is None:
        return
    try:
        compile_expression(expression)
    except ValidationError as e:
        problems.append(f"{where}: {e}")


def _check_step(step: PlaybookStep, ids: set[str], registry: Optional[CapabilityRegistry], problems: list[str]) -> None:
    where = f"step '{step.id}'"
    expected_attr = StepType(step.type).value
    for attr in _PAYLOAD_ATTRS:
        value = getattr(step, attr)
        if attr == expected_attr and value is None:
            problems.append(f"{where}: missing '{attr}' definition for step type {expected_attr}")
        elif attr != expected_attr and value is not None:
            problems.append(f"{where}: unexpected '{attr}' definition on a {expected_attr} step")

    for edge_name in ("on_success", "on_failure"):
        target = getattr(step, edge_name)
        if target is not None and target not in ids:
            problems.append(f"{where}: {edge_name} references unknown step '{target}'")

    if step.retries < 0:
        problems.append(f"{where}: retries must be >= 0")
    if step.timeout is not None and step.timeout <= 0:
        problems.append(f"{where}: timeout must be positive")

    payload = step.payload
    if payload is None:
        return

    if step.type == StepType.ACTION:
        if registry is not None and not registry.has_action(payload.action_type):
            problems.append(f"{where}: no capability registered for action type '{ActionType(payload.action_type).value}'")

    elif step.type == StepType.CONDITION:
        _check_expression(payload.expression, where, problems)
        for branch in (payload.true_step, payload.false_step):
            if branch is not None and branch not in ids:
                problems.append(f"{where}: branch references unknown step '{branch}'")

    elif step.type in (StepType.LOOP, StepType.PARALLEL):
        if not payload.steps:
            problems.append(f"{where}: needs at least one child step")
        for child in payload.steps:
            if child == step.id:
                problems.append(f"{where}: cannot contain itself")
            elif child not in ids:
                problems.append(f"{where}: child references unknown step '{child}'")
        if step.type == StepType.LOOP:
            if not payload.iterator:
                problems.append(f"{where}: loop iterator name is required")
            if payload.max_iterations < 1:
                problems.append(f"{where}: max_iterations must be >= 1")
            _check_expression(payload.break_condition, where, problems)
        elif payload.max_concurrency < 1:
            problems.append(f"{where}: max_concurrency must be >= 1")

    elif step.type == StepType.WAIT:
        if payload.duration < 0:
            problems.append(f"{where}: wait duration must be >= 0")
        _check_expression(payload.condition, where, problems)

    elif step.type == StepType.HUMAN_TASK:
        if not payload.assignee:
            problems.append(f"{where}: human task needs an assignee")
        if payload.timeout is not None and payload.timeout <= 0:
            problems.append(f"{where}: human task timeout must be positive")


def _check_containment_cycles(playbook: Playbook, problems: list[str]) -> None:
    children = {
        step.id: list(step.payload.steps)
        for step in playbook.steps
        if step.type in (StepType.LOOP, StepType.PARALLEL) and step.payload is not None
    }
    visiting: set[str] = set()
    done: set[str] = set()

    def visit(step_id: str) -> bool:
        if step_id in done:
            return False
        if step_id in visiting:
            return True
        visiting.add(step_id)
        cyclic = any(visit(child) for child in children.get(step_id, []))
        visiting.discard(step_id)
        done.add(step_id)
        return cyclic

    for step_id in children:
        if visit(step_id):
            problems.append(f"step '{step_id}': loop/parallel steps contain each other")
            return


def _check_trigger(trigger: PlaybookTrigger, max_depth: int, problems: list[str]) -> None:
    trigger_type = TriggerType(trigger.type)
    if trigger_type == TriggerType.SCHEDULED:
        if not trigger.schedule or not croniter.is_valid(trigger.schedule):
            problems.append(f"trigger: invalid schedule expression {trigger.schedule!r}")
    elif trigger_type == TriggerType.EVENT and not trigger.events:
        problems.append("trigger: event triggers need at least one event type")
    elif trigger_type == TriggerType.CONDITION and not trigger.conditions:
        problems.append("trigger: condition triggers need at least one condition")
    try:
        check_parameter_depth(trigger.parameters, max_depth)
    except ValidationError as e:
        problems.append(f"trigger: {e}")


def validate_playbook(
    playbook: Playbook,
    registry: Optional[CapabilityRegistry] = None,
    max_depth: int = 8,
) -> None:
    """
    Validate a playbook's step graph, trigger and variables.

    Raises:
        ValidationError: Listing every problem found.
    """
    problems: list[str] = []
    if not playbook.name:
        problems.append("playbook name is required")
    if not playbook.steps:
        problems.append("playbook needs at least one step")

    ids = [step.id for step in playbook.steps]
    duplicates = {step_id for step_id in ids if ids.count(step_id) > 1}
    for step_id in sorted(duplicates):
        problems.append(f"duplicate step id '{step_id}'")

    id_set = set(ids)
    for step in playbook.steps:
        _check_step(step, id_set, registry, problems)
    _check_containment_cycles(playbook, problems)

    nested = child_step_ids(playbook)
    for step in playbook.steps:
        targets = [step.on_success, step.on_failure]
        if step.type == StepType.CONDITION and step.condition is not None:
            targets += [step.condition.true_step, step.condition.false_step]
        for target in targets:
            if target in nested and step.id not in nested:
                problems.append(f"step '{step.id}': cannot jump into nested step '{target}'")

    _check_trigger(playbook.trigger, max_depth, problems)

    names = [v.name for v in playbook.variables]
    for name in sorted({n for n in names if names.count(n) > 1}):
        problems.append(f"duplicate variable '{name}'")
    for variable in playbook.variables:
        if variable.default_value is not None:
            try:
                coerce_variable(variable, variable.default_value)
            except ValueError as e:
                problems.append(f"variable '{variable.name}': {e}")

    if problems:
        raise ValidationError(f"Invalid playbook '{playbook.name}'", problems)


# ============================================================================
# Variables
# ============================================================================

def coerce_variable(variable: PlaybookVariable, value: Any) -> Any:
    """Coerce a value to the variable's declared type where lossless."""
    var_type = VariableType(variable.type)
    if value is None:
        return None
    if var_type == VariableType.STRING:
        if isinstance(value, (dict, list)):
            raise ValueError(f"expected string, got {type(value).__name__}")
        return str(value)
    if var_type == VariableType.NUMBER:
        if isinstance(value, bool):
            raise ValueError("expected number, got boolean")
        if isinstance(value, (int, float)):
            return value
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ValueError(f"expected number, got {value!r}") from None
        return int(number) if number.is_integer() else number
    if var_type == VariableType.BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ("true", "false"):
            return value.lower() == "true"
        raise ValueError(f"expected boolean, got {value!r}")
    if var_type == VariableType.ARRAY:
        if isinstance(value, (list, tuple)):
            return list(value)
        raise ValueError(f"expected array, got {type(value).__name__}")
    if not isinstance(value, dict):
        raise ValueError(f"expected object, got {type(value).__name__}")
    return value


def check_parameter_depth(value: Any, max_depth: int, _depth: int = 0) -> None:
    """Reject parameter structures nested deeper than ``max_depth``."""
    if _depth > max_depth:
        raise ValidationError(f"parameters nested deeper than {max_depth} levels")
    if isinstance(value, dict):
        for item in value.values():
            check_parameter_depth(item, max_depth, _depth + 1)
    elif isinstance(value, list):
        for item in value:
            check_parameter_depth(item, max_depth, _depth + 1)


def merge_parameters(base: dict[str, Any], override: dict[str, Any], max_depth: int = 8, _depth: int = 0) -> dict[str, Any]:
    """
    Merge ``override`` into a copy of ``base``; nested dicts merge key by key.

    Raises:
        ValidationError: When either side nests deeper than ``max_depth``.
    """
    if _depth > max_depth:
        raise ValidationError(f"parameters nested deeper than {max_depth} levels")
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_parameters(merged[key], value, max_depth, _depth + 1)
        else:
            check_parameter_depth(value, max_depth - _depth)
            merged[key] = value
    return merged


def build_variables(
    playbook: Playbook,
    supplied: Optional[dict[str, Any]] = None,
    max_depth: int = 8,
) -> dict[str, Any]:
    """
    Bind an execution's variables.

    Trigger parameters form the base, declared defaults are merged over
    them and supplied values over those. Declared variables are coerced
    to their type.

    Raises:
        ValidationError: A required variable has no value or a value has
            the wrong type.
    """
    defaults = {
        v.name: v.default_value
        for v in playbook.variables
        if v.default_value is not None
    }
    merged = merge_parameters(dict(playbook.trigger.parameters), defaults, max_depth)
    merged = merge_parameters(merged, dict(supplied or {}), max_depth)

    problems = []
    for variable in playbook.variables:
        value = merged.get(variable.name)
        if value is None:
            if variable.required:
                problems.append(f"required variable '{variable.name}' has no value")
            continue
        try:
            merged[variable.name] = coerce_variable(variable, value)
        except ValueError as e:
            problems.append(f"variable '{variable.name}': {e}")
    if problems:
        raise ValidationError(f"Cannot start playbook '{playbook.name}'", problems)
    return merged


def event_variables(playbook: Playbook, event_data: dict[str, Any]) -> dict[str, Any]:
    """Fields of an event that match declared variable names."""
    declared = {v.name for v in playbook.variables}
    return {key: value for key, value in event_data.items() if key in declared}


def mask_sensitive(playbook: Playbook, variables: dict[str, Any]) -> dict[str, Any]:
    """Copy of ``variables`` with sensitive values masked for logs and display."""
    sensitive = {v.name for v in playbook.variables if v.sensitive}
    return {
        key: SENSITIVE_MASK if key in sensitive and value is not None else value
        for key, value in variables.items()
    }


# ============================================================================
# Versions and schedules
# ============================================================================

def bump_version(version: str) -> str:
    """Bump the minor part of a MAJOR.MINOR.PATCH version."""
    parts = (version or "1.0.0").split(".")
    while len(parts) < 3:
        parts.append("0")
    try:
        major, minor = int(parts[0]), int(parts[1])
    except ValueError:
        return "1.1.0"
    return f"{major}.{minor + 1}.0"


def next_scheduled_run(schedule: str, after: datetime) -> datetime:
    """Next fire time of a cron expression strictly after ``after``."""
    return croniter(schedule, after).get_next(datetime)


# ============================================================================
# Standard Playbooks
# ============================================================================

def default_playbooks() -> list[Playbook]:
    """Fresh copies of the playbooks seeded at startup."""
    return [
        Playbook(
            id="pb_incident_response",
            name="Incident Response",
            description="Automated incident response workflow",
            type=PlaybookType.INCIDENT_RESPONSE,
            trigger=PlaybookTrigger(
                type=TriggerType.ALERT,
                conditions=[TriggerCondition("severity", ConditionOperator.EQUALS, "critical")],
            ),
            variables=[
                PlaybookVariable("severity", VariableType.STRING, default_value="critical"),
                PlaybookVariable("system_id", VariableType.STRING, description="Affected system"),
            ],
            steps=[
                PlaybookStep(
                    id="step-1", name="Acknowledge Alert", type=StepType.ACTION, order=1,
                    description="Acknowledge the security alert",
                    action=ActionDefinition(ActionType.API_CALL, {"endpoint": "/api/alerts/acknowledge"}),
                    retries=2,
                ),
                PlaybookStep(
                    id="step-2", name="Isolate System", type=StepType.ACTION, order=2,
                    description="Isolate affected system",
                    action=ActionDefinition(ActionType.SCRIPT, {"script": "isolate_system.sh"}),
                    timeout=300,
                ),
                PlaybookStep(
                    id="step-3", name="Collect Evidence", type=StepType.ACTION, order=3,
                    description="Collect forensic evidence",
                    action=ActionDefinition(ActionType.SCRIPT, {"script": "collect_evidence.sh"}),
                    timeout=600,
                ),
                PlaybookStep(
                    id="step-4", name="Notify Security Team", type=StepType.ACTION, order=4,
                    description="Notify security team members",
                    action=ActionDefinition(ActionType.NOTIFICATION, {
                        "type": "email",
                        "recipients": ["security@company.com"],
                        "subject": "Security Incident Alert",
                    }),
                    retries=1,
                ),
            ],
        ),
        Playbook(
            id="pb_vulnerability_remediation",
            name="Vulnerability Remediation",
            description="Automated vulnerability remediation workflow",
            type=PlaybookType.VULNERABILITY_MANAGEMENT,
            trigger=PlaybookTrigger(
                type=TriggerType.EVENT,
                conditions=[TriggerCondition("event_type", ConditionOperator.EQUALS, "vulnerability_found")],
                events=["vulnerability_found"],
            ),
            variables=[
                PlaybookVariable("vulnerability", VariableType.OBJECT, required=True),
                PlaybookVariable("target", VariableType.STRING),
            ],
            steps=[
                PlaybookStep(
                    id="step-1", name="Assess Vulnerability", type=StepType.ACTION, order=1,
                    description="Assess vulnerability severity and impact",
                    action=ActionDefinition(ActionType.SCRIPT, {"script": "assess_vulnerability.py"}),
                ),
                PlaybookStep(
                    id="step-2", name="Check Exploitability", type=StepType.CONDITION, order=2,
                    description="Check if vulnerability is exploitable",
                    condition=ConditionDefinition(
                        expression="vulnerability.exploitable === true",
                        true_step="step-3",
                        false_step="step-5",
                    ),
                ),
                PlaybookStep(
                    id="step-3", name="Apply Emergency Patch", type=StepType.ACTION, order=3,
                    description="Apply emergency security patch",
                    action=ActionDefinition(ActionType.SCRIPT, {"script": "apply_patch.sh"}),
                    retries=1,
                ),
                PlaybookStep(
                    id="step-4", name="Verify Fix", type=StepType.ACTION, order=4,
                    description="Verify that vulnerability is fixed",
                    action=ActionDefinition(ActionType.SCRIPT, {"script": "verify_fix.py"}),
                ),
                PlaybookStep(
                    id="step-5", name="Schedule Maintenance", type=StepType.ACTION, order=5,
                    description="Schedule maintenance window for patching",
                    action=ActionDefinition(ActionType.API_CALL, {"endpoint": "/api/maintenance/schedule"}),
                ),
            ],
        ),
    ]
