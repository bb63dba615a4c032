"""
Data Models for the Definition Store

Defines the records owned by the orchestration core: playbooks and their
executions, policy enforcements, automated responses, compliance checks
and vulnerability assessments.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
import uuid


class RecordKind(str, Enum):
    """Kinds of records held by the durable store."""
    PLAYBOOK = "playbook"
    PLAYBOOK_EXECUTION = "playbook_execution"
    POLICY_ENFORCEMENT = "policy_enforcement"
    AUTOMATED_RESPONSE = "automated_response"
    COMPLIANCE_CHECK = "compliance_check"
    VULNERABILITY_ASSESSMENT = "vulnerability_assessment"


class Severity(str, Enum):
    """Severity levels for violations, issues and findings."""
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return SEVERITY_ORDER.index(self)


SEVERITY_ORDER = [Severity.INFO, Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


class PlaybookType(str, Enum):
    INCIDENT_RESPONSE = "incident_response"
    VULNERABILITY_MANAGEMENT = "vulnerability_management"
    THREAT_HUNTING = "threat_hunting"
    COMPLIANCE = "compliance"
    FORENSICS = "forensics"


class TriggerType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    EVENT = "event"
    ALERT = "alert"
    CONDITION = "condition"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    EXISTS = "exists"


class LogicalOperator(str, Enum):
    AND = "and"
    OR = "or"


class StepType(str, Enum):
    ACTION = "action"
    CONDITION = "condition"
    LOOP = "loop"
    PARALLEL = "parallel"
    WAIT = "wait"
    HUMAN_TASK = "human_task"


class ActionType(str, Enum):
    """Capabilities an action step may dispatch to."""
    HTTP_REQUEST = "http_request"
    DATABASE_QUERY = "database_query"
    FILE_OPERATION = "file_operation"
    NOTIFICATION = "notification"
    SCRIPT = "script"
    API_CALL = "api_call"


class VariableType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"


TERMINAL_STATUSES = {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"  # human task awaiting external input
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class PolicyType(str, Enum):
    PREVENTIVE = "preventive"
    DETECTIVE = "detective"
    CORRECTIVE = "corrective"


class PolicyStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class RuleAction(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    LOG = "log"
    ALERT = "alert"
    QUARANTINE = "quarantine"


class ViolationStatus(str, Enum):
    NEW = "new"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    FALSE_POSITIVE = "false_positive"


class CheckStatus(str, Enum):
    """Outcome of the most recent scheduled check of an entity."""
    PENDING = "pending"
    OK = "ok"
    ERROR = "error"


class ResponseTriggerType(str, Enum):
    SECURITY_EVENT = "security_event"
    ALERT = "alert"
    THRESHOLD = "threshold"
    ANOMALY = "anomaly"
    POLICY_VIOLATION = "policy_violation"


class Aggregation(str, Enum):
    COUNT = "count"
    SUM = "sum"
    AVG = "avg"
    MAX = "max"
    MIN = "min"


class ResponseActionType(str, Enum):
    BLOCK_IP = "block_ip"
    QUARANTINE_USER = "quarantine_user"
    ISOLATE_SYSTEM = "isolate_system"
    COLLECT_EVIDENCE = "collect_evidence"
    NOTIFY = "notify"
    ESCALATE = "escalate"


class ComplianceCheckType(str, Enum):
    AUTOMATED = "automated"
    MANUAL = "manual"
    HYBRID = "hybrid"


class CheckFrequency(str, Enum):
    CONTINUOUS = "continuous"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"


class ComplianceStatus(str, Enum):
    COMPLIANT = "compliant"
    NON_COMPLIANT = "non_compliant"
    ERROR = "error"
    PENDING = "pending"


class IssueStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    ACCEPTED = "accepted"


class AssessmentType(str, Enum):
    NETWORK = "network"
    WEB_APPLICATION = "web_application"
    INFRASTRUCTURE = "infrastructure"
    DATABASE = "database"
    CODE = "code"


class AssessmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class FindingStatus(str, Enum):
    NEW = "new"
    CONFIRMED = "confirmed"
    FALSE_POSITIVE = "false_positive"
    MITIGATED = "mitigated"
    ACCEPTED = "accepted"


def generate_id(prefix: str = "") -> str:
    """Generate a unique ID with optional prefix."""
    uid = uuid.uuid4().hex[:12]
    return f"{prefix}_{uid}" if prefix else uid


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


# ============================================================================
# Conditions
# ============================================================================

@dataclass
class TriggerCondition:
    """A (field, operator, value) predicate with an optional join to the next one."""
    field: str
    operator: ConditionOperator
    value: Any = None
    logical_operator: Optional[LogicalOperator] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "operator": _enum_value(self.operator),
            "value": self.value,
            "logical_operator": _enum_value(self.logical_operator),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TriggerCondition":
        logical = data.get("logical_operator") or data.get("logicalOperator")
        return cls(
            field=data["field"],
            operator=ConditionOperator(data["operator"]),
            value=data.get("value"),
            logical_operator=LogicalOperator(logical) if logical else None,
        )


# ============================================================================
# Playbooks
# ============================================================================

@dataclass
class PlaybookTrigger:
    """What causes a playbook to run."""
    type: TriggerType = TriggerType.MANUAL
    conditions: list[TriggerCondition] = field(default_factory=list)
    schedule: Optional[str] = None  # cron expression
    events: list[str] = field(default_factory=list)
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": _enum_value(self.type),
            "conditions": [c.to_dict() for c in self.conditions],
            "schedule": self.schedule,
            "events": list(self.events),
            "parameters": self.parameters,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlaybookTrigger":
        return cls(
            type=TriggerType(data.get("type", "manual")),
            conditions=[TriggerCondition.from_dict(c) for c in data.get("conditions", [])],
            schedule=data.get("schedule"),
            events=list(data.get("events") or []),
            parameters=dict(data.get("parameters") or {}),
        )


@dataclass
class ActionDefinition:
    action_type: ActionType
    parameters: dict[str, Any] = field(default_factory=dict)
    expected_output: Optional[str] = None
    output_variable: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_type": _enum_value(self.action_type),
            "parameters": self.parameters,
            "expected_output": self.expected_output,
            "output_variable": self.output_variable,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ActionDefinition":
        return cls(
            action_type=ActionType(data.get("action_type") or data.get("actionType")),
            parameters=dict(data.get("parameters") or {}),
            expected_output=data.get("expected_output"),
            output_variable=data.get("output_variable"),
        )


@dataclass
class ConditionDefinition:
    expression: str
    true_step: Optional[str] = None
    false_step: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "expression": self.expression,
            "true_step": self.true_step,
            "false_step": self.false_step,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConditionDefinition":
        return cls(
            expression=data["expression"],
            true_step=data.get("true_step") or data.get("trueStep"),
            false_step=data.get("false_step") or data.get("falseStep"),
        )


@dataclass
class LoopDefinition:
    iterator: str
    steps: list[str] = field(default_factory=list)
    max_iterations: int = 10
    break_condition: Optional[str] = None
    items: Optional[str] = None  # variable holding a list to iterate over

    def to_dict(self) -> dict[str, Any]:
        return {
            "iterator": self.iterator,
            "steps": list(self.steps),
            "max_iterations": self.max_iterations,
            "break_condition": self.break_condition,
            "items": self.items,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LoopDefinition":
        return cls(
            iterator=data["iterator"],
            steps=list(data.get("steps") or []),
            max_iterations=int(data.get("max_iterations", data.get("maxIterations", 10))),
            break_condition=data.get("break_condition") or data.get("breakCondition"),
            items=data.get("items"),
        )


@dataclass
class ParallelDefinition:
    steps: list[str] = field(default_factory=list)
    wait_for_all: bool = True
    max_concurrency: int = 5

    def to_dict(self) -> dict[str, Any]:
        return {
            "steps": list(self.steps),
            "wait_for_all": self.wait_for_all,
            "max_concurrency": self.max_concurrency,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ParallelDefinition":
        return cls(
            steps=list(data.get("steps") or []),
            wait_for_all=bool(data.get("wait_for_all", data.get("waitForAll", True))),
            max_concurrency=int(data.get("max_concurrency", data.get("maxConcurrency", 5))),
        )


@dataclass
class WaitDefinition:
    duration: float  # seconds
    condition: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"duration": self.duration, "condition": self.condition}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WaitDefinition":
        return cls(duration=float(data.get("duration", 0)), condition=data.get("condition"))


@dataclass
class HumanTaskDefinition:
    assignee: str
    instructions: str = ""
    timeout: Optional[float] = None  # seconds
    escalation: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "assignee": self.assignee,
            "instructions": self.instructions,
            "timeout": self.timeout,
            "escalation": self.escalation,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HumanTaskDefinition":
        timeout = data.get("timeout")
        return cls(
            assignee=data["assignee"],
            instructions=data.get("instructions", ""),
            timeout=float(timeout) if timeout is not None else None,
            escalation=data.get("escalation"),
        )


_STEP_PAYLOADS: dict[StepType, tuple[str, type]] = {
    StepType.ACTION: ("action", ActionDefinition),
    StepType.CONDITION: ("condition", ConditionDefinition),
    StepType.LOOP: ("loop", LoopDefinition),
    StepType.PARALLEL: ("parallel", ParallelDefinition),
    StepType.WAIT: ("wait", WaitDefinition),
    StepType.HUMAN_TASK: ("human_task", HumanTaskDefinition),
}


@dataclass
class PlaybookStep:
    """
    One node of a playbook's step graph.

    Exactly one of the payload attributes is set, the one named by ``type``.
    """
    id: str
    name: str
    type: StepType
    description: str = ""
    action: Optional[ActionDefinition] = None
    condition: Optional[ConditionDefinition] = None
    loop: Optional[LoopDefinition] = None
    parallel: Optional[ParallelDefinition] = None
    wait: Optional[WaitDefinition] = None
    human_task: Optional[HumanTaskDefinition] = None
    on_success: Optional[str] = None
    on_failure: Optional[str] = None
    timeout: Optional[float] = None  # seconds
    retries: int = 0
    enabled: bool = True
    order: int = 0

    @property
    def payload(self) -> Any:
        attr, _ = _STEP_PAYLOADS[StepType(self.type)]
        return getattr(self, attr)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "type": _enum_value(self.type),
            "description": self.description,
            "on_success": self.on_success,
            "on_failure": self.on_failure,
            "timeout": self.timeout,
            "retries": self.retries,
            "enabled": self.enabled,
            "order": self.order,
        }
        for attr, _ in _STEP_PAYLOADS.values():
            value = getattr(self, attr)
            data[attr] = value.to_dict() if value is not None else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlaybookStep":
        payloads = {}
        for attr, payload_cls in _STEP_PAYLOADS.values():
            raw = data.get(attr)
            if raw is None and attr == "human_task":
                raw = data.get("humanTask")
            payloads[attr] = payload_cls.from_dict(raw) if raw else None
        timeout = data.get("timeout")
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            type=StepType(data["type"]),
            description=data.get("description", ""),
            on_success=data.get("on_success") or data.get("onSuccess"),
            on_failure=data.get("on_failure") or data.get("onFailure"),
            timeout=float(timeout) if timeout is not None else None,
            retries=int(data.get("retries") or 0),
            enabled=bool(data.get("enabled", True)),
            order=int(data.get("order", 0)),
            **payloads,
        )


@dataclass
class PlaybookVariable:
    name: str
    type: VariableType = VariableType.STRING
    default_value: Any = None
    required: bool = False
    description: str = ""
    sensitive: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": _enum_value(self.type),
            "default_value": self.default_value,
            "required": self.required,
            "description": self.description,
            "sensitive": self.sensitive,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlaybookVariable":
        return cls(
            name=data["name"],
            type=VariableType(data.get("type", "string")),
            default_value=data.get("default_value", data.get("defaultValue")),
            required=bool(data.get("required", False)),
            description=data.get("description", ""),
            sensitive=bool(data.get("sensitive", False)),
        )


@dataclass
class Playbook:
    """Security playbook definition."""
    name: str
    type: PlaybookType
    trigger: PlaybookTrigger = field(default_factory=PlaybookTrigger)
    steps: list[PlaybookStep] = field(default_factory=list)
    variables: list[PlaybookVariable] = field(default_factory=list)
    id: str = field(default_factory=lambda: generate_id("pb"))
    description: str = ""
    enabled: bool = True
    version: str = "1.0.0"
    created_by: str = "system"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    execution_count: int = 0
    success_count: int = 0
    success_rate: float = 0.0
    last_executed: Optional[datetime] = None
    next_run: Optional[datetime] = None  # scheduled triggers only

    def get_step(self, step_id: str) -> Optional[PlaybookStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "type": _enum_value(self.type),
            "trigger": self.trigger.to_dict(),
            "steps": [s.to_dict() for s in self.steps],
            "variables": [v.to_dict() for v in self.variables],
            "enabled": self.enabled,
            "version": self.version,
            "created_by": self.created_by,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "execution_count": self.execution_count,
            "success_count": self.success_count,
            "success_rate": self.success_rate,
            "last_executed": to_iso(self.last_executed),
            "next_run": to_iso(self.next_run),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Playbook":
        return cls(
            id=data.get("id") or generate_id("pb"),
            name=data["name"],
            description=data.get("description", ""),
            type=PlaybookType(data["type"]),
            trigger=PlaybookTrigger.from_dict(data.get("trigger") or {}),
            steps=[PlaybookStep.from_dict(s) for s in data.get("steps", [])],
            variables=[PlaybookVariable.from_dict(v) for v in data.get("variables", [])],
            enabled=bool(data.get("enabled", True)),
            version=data.get("version", "1.0.0"),
            created_by=data.get("created_by", "system"),
            created_at=from_iso(data.get("created_at")) or utcnow(),
            updated_at=from_iso(data.get("updated_at")) or utcnow(),
            execution_count=int(data.get("execution_count", 0)),
            success_count=int(data.get("success_count", 0)),
            success_rate=float(data.get("success_rate", 0.0)),
            last_executed=from_iso(data.get("last_executed")),
            next_run=from_iso(data.get("next_run")),
        )


# ============================================================================
# Executions
# ============================================================================

@dataclass
class StepExecution:
    step_id: str
    name: str
    status: StepStatus = StepStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_ms: Optional[float] = None
    input: Any = None
    output: Any = None
    error: Optional[str] = None
    retry_count: int = 0
    timed_out: bool = False
    assignee: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "name": self.name,
            "status": _enum_value(self.status),
            "start_time": to_iso(self.start_time),
            "end_time": to_iso(self.end_time),
            "duration_ms": self.duration_ms,
            "input": self.input,
            "output": self.output,
            "error": self.error,
            "retry_count": self.retry_count,
            "timed_out": self.timed_out,
            "assignee": self.assignee,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepExecution":
        return cls(
            step_id=data["step_id"],
            name=data.get("name", data["step_id"]),
            status=StepStatus(data.get("status", "pending")),
            start_time=from_iso(data.get("start_time")),
            end_time=from_iso(data.get("end_time")),
            duration_ms=data.get("duration_ms"),
            input=data.get("input"),
            output=data.get("output"),
            error=data.get("error"),
            retry_count=int(data.get("retry_count", 0)),
            timed_out=bool(data.get("timed_out", False)),
            assignee=data.get("assignee"),
        )


@dataclass
class ExecutionLog:
    message: str
    level: LogLevel = LogLevel.INFO
    timestamp: datetime = field(default_factory=utcnow)
    step_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": to_iso(self.timestamp),
            "level": _enum_value(self.level),
            "message": self.message,
            "step_id": self.step_id,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionLog":
        return cls(
            message=data["message"],
            level=LogLevel(data.get("level", "info")),
            timestamp=from_iso(data.get("timestamp")) or utcnow(),
            step_id=data.get("step_id"),
            details=dict(data.get("details") or {}),
        )


@dataclass
class PlaybookExecution:
    """One run of a playbook."""
    playbook_id: str
    triggered_by: str
    trigger_type: str = "manual"
    id: str = field(default_factory=lambda: generate_id("exec"))
    playbook_name: str = ""
    playbook_version: str = "1.0.0"
    playbook_snapshot: dict[str, Any] = field(default_factory=dict)
    status: ExecutionStatus = ExecutionStatus.RUNNING
    start_time: datetime = field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    duration_ms: Optional[float] = None
    steps: list[StepExecution] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    logs: list[ExecutionLog] = field(default_factory=list)
    error: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    cancel_requested: bool = False
    pause_requested: bool = False

    @property
    def is_terminal(self) -> bool:
        return ExecutionStatus(self.status) in TERMINAL_STATUSES

    def get_step(self, step_id: str) -> Optional[StepExecution]:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None

    def log(
        self,
        message: str,
        level: LogLevel = LogLevel.INFO,
        step_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        **details: Any,
    ) -> None:
        """Append an entry to the execution's audit log."""
        self.logs.append(ExecutionLog(
            message=message,
            level=level,
            timestamp=timestamp or utcnow(),
            step_id=step_id,
            details=details,
        ))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "playbook_id": self.playbook_id,
            "playbook_name": self.playbook_name,
            "playbook_version": self.playbook_version,
            "playbook_snapshot": self.playbook_snapshot,
            "triggered_by": self.triggered_by,
            "trigger_type": self.trigger_type,
            "status": _enum_value(self.status),
            "start_time": to_iso(self.start_time),
            "end_time": to_iso(self.end_time),
            "duration_ms": self.duration_ms,
            "steps": [s.to_dict() for s in self.steps],
            "variables": self.variables,
            "logs": [entry.to_dict() for entry in self.logs],
            "error": self.error,
            "metadata": self.metadata,
            "cancel_requested": self.cancel_requested,
            "pause_requested": self.pause_requested,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlaybookExecution":
        return cls(
            id=data["id"],
            playbook_id=data["playbook_id"],
            playbook_name=data.get("playbook_name", ""),
            playbook_version=data.get("playbook_version", "1.0.0"),
            playbook_snapshot=dict(data.get("playbook_snapshot") or {}),
            triggered_by=data.get("triggered_by", ""),
            trigger_type=data.get("trigger_type", "manual"),
            status=ExecutionStatus(data.get("status", "running")),
            start_time=from_iso(data.get("start_time")) or utcnow(),
            end_time=from_iso(data.get("end_time")),
            duration_ms=data.get("duration_ms"),
            steps=[StepExecution.from_dict(s) for s in data.get("steps", [])],
            variables=dict(data.get("variables") or {}),
            logs=[ExecutionLog.from_dict(entry) for entry in data.get("logs", [])],
            error=data.get("error"),
            metadata=dict(data.get("metadata") or {}),
            cancel_requested=bool(data.get("cancel_requested", False)),
            pause_requested=bool(data.get("pause_requested", False)),
        )


# ============================================================================
# Policy Enforcement
# ============================================================================

@dataclass
class PolicyRule:
    id: str
    name: str
    condition: str  # expression that holds when the target violates the rule
    action: RuleAction = RuleAction.LOG
    severity: Severity = Severity.MEDIUM
    description: str = ""
    enabled: bool = True
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "condition": self.condition,
            "action": _enum_value(self.action),
            "severity": _enum_value(self.severity),
            "enabled": self.enabled,
            "parameters": self.parameters,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PolicyRule":
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            description=data.get("description", ""),
            condition=data["condition"],
            action=RuleAction(data.get("action", "log")),
            severity=Severity(data.get("severity", "medium")),
            enabled=bool(data.get("enabled", True)),
            parameters=dict(data.get("parameters") or {}),
        )


@dataclass
class PolicyViolation:
    policy_id: str
    rule_id: str
    severity: Severity
    description: str
    target: str
    id: str = field(default_factory=lambda: generate_id("viol"))
    violation_type: str = "policy_violation"
    rule_action: RuleAction = RuleAction.LOG
    timestamp: datetime = field(default_factory=utcnow)
    last_seen: Optional[datetime] = None
    occurrences: int = 1
    details: dict[str, Any] = field(default_factory=dict)
    status: ViolationStatus = ViolationStatus.NEW
    assigned_to: Optional[str] = None
    remediation: Optional[str] = None
    resolved_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return ViolationStatus(self.status) in (ViolationStatus.NEW, ViolationStatus.INVESTIGATING)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "policy_id": self.policy_id,
            "rule_id": self.rule_id,
            "violation_type": self.violation_type,
            "rule_action": _enum_value(self.rule_action),
            "severity": _enum_value(self.severity),
            "description": self.description,
            "target": self.target,
            "timestamp": to_iso(self.timestamp),
            "last_seen": to_iso(self.last_seen),
            "occurrences": self.occurrences,
            "details": self.details,
            "status": _enum_value(self.status),
            "assigned_to": self.assigned_to,
            "remediation": self.remediation,
            "resolved_at": to_iso(self.resolved_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PolicyViolation":
        return cls(
            id=data["id"],
            policy_id=data["policy_id"],
            rule_id=data["rule_id"],
            violation_type=data.get("violation_type", "policy_violation"),
            rule_action=RuleAction(data.get("rule_action", "log")),
            severity=Severity(data["severity"]),
            description=data.get("description", ""),
            target=data.get("target", ""),
            timestamp=from_iso(data.get("timestamp")) or utcnow(),
            last_seen=from_iso(data.get("last_seen")),
            occurrences=int(data.get("occurrences", 1)),
            details=dict(data.get("details") or {}),
            status=ViolationStatus(data.get("status", "new")),
            assigned_to=data.get("assigned_to"),
            remediation=data.get("remediation"),
            resolved_at=from_iso(data.get("resolved_at")),
        )


@dataclass
class PolicyEnforcement:
    policy_id: str
    type: PolicyType
    target: str
    rules: list[PolicyRule] = field(default_factory=list)
    id: str = field(default_factory=lambda: generate_id("pol"))
    status: PolicyStatus = PolicyStatus.ACTIVE
    violations: list[PolicyViolation] = field(default_factory=list)
    check_frequency: int = 60  # minutes
    last_check: Optional[datetime] = None
    next_check: datetime = field(default_factory=utcnow)
    evaluator: str = "policy_state"
    parameters: dict[str, Any] = field(default_factory=dict)
    check_status: CheckStatus = CheckStatus.PENDING
    last_error: Optional[str] = None
    enabled: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "policy_id": self.policy_id,
            "type": _enum_value(self.type),
            "target": self.target,
            "status": _enum_value(self.status),
            "rules": [r.to_dict() for r in self.rules],
            "violations": [v.to_dict() for v in self.violations],
            "check_frequency": self.check_frequency,
            "last_check": to_iso(self.last_check),
            "next_check": to_iso(self.next_check),
            "evaluator": self.evaluator,
            "parameters": self.parameters,
            "check_status": _enum_value(self.check_status),
            "last_error": self.last_error,
            "enabled": self.enabled,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PolicyEnforcement":
        return cls(
            id=data.get("id") or generate_id("pol"),
            policy_id=data["policy_id"],
            type=PolicyType(data["type"]),
            target=data["target"],
            status=PolicyStatus(data.get("status", "active")),
            rules=[PolicyRule.from_dict(r) for r in data.get("rules", [])],
            violations=[PolicyViolation.from_dict(v) for v in data.get("violations", [])],
            check_frequency=int(data.get("check_frequency", 60)),
            last_check=from_iso(data.get("last_check")),
            next_check=from_iso(data.get("next_check")) or utcnow(),
            evaluator=data.get("evaluator", "policy_state"),
            parameters=dict(data.get("parameters") or {}),
            check_status=CheckStatus(data.get("check_status", "pending")),
            last_error=data.get("last_error"),
            enabled=bool(data.get("enabled", True)),
            created_at=from_iso(data.get("created_at")) or utcnow(),
            updated_at=from_iso(data.get("updated_at")) or utcnow(),
        )


# ============================================================================
# Automated Responses
# ============================================================================

@dataclass
class ResponseTrigger:
    type: ResponseTriggerType
    conditions: list[TriggerCondition] = field(default_factory=list)
    aggregation: Optional[Aggregation] = None
    time_window: Optional[float] = None  # minutes
    threshold: Optional[float] = None
    aggregate_field: Optional[str] = None  # numeric field for sum/avg/max/min

    @property
    def is_threshold(self) -> bool:
        return self.aggregation is not None and self.threshold is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": _enum_value(self.type),
            "conditions": [c.to_dict() for c in self.conditions],
            "aggregation": _enum_value(self.aggregation),
            "time_window": self.time_window,
            "threshold": self.threshold,
            "aggregate_field": self.aggregate_field,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResponseTrigger":
        aggregation = data.get("aggregation")
        time_window = data.get("time_window", data.get("timeWindow"))
        return cls(
            type=ResponseTriggerType(data["type"]),
            conditions=[TriggerCondition.from_dict(c) for c in data.get("conditions", [])],
            aggregation=Aggregation(aggregation) if aggregation else None,
            time_window=float(time_window) if time_window is not None else None,
            threshold=data.get("threshold"),
            aggregate_field=data.get("aggregate_field"),
        )


@dataclass
class ResponseAction:
    id: str
    type: ResponseActionType
    parameters: dict[str, Any] = field(default_factory=dict)
    timeout: float = 30.0  # seconds
    retries: int = 0
    rollback: Optional["ResponseAction"] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": _enum_value(self.type),
            "parameters": self.parameters,
            "timeout": self.timeout,
            "retries": self.retries,
            "rollback": self.rollback.to_dict() if self.rollback else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResponseAction":
        rollback = data.get("rollback")
        return cls(
            id=data["id"],
            type=ResponseActionType(data["type"]),
            parameters=dict(data.get("parameters") or {}),
            timeout=float(data.get("timeout", 30.0)),
            retries=int(data.get("retries", 0)),
            rollback=cls.from_dict(rollback) if rollback else None,
        )


@dataclass
class ResponseCondition:
    field: str
    operator: ConditionOperator
    value: Any = None
    required: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "operator": _enum_value(self.operator),
            "value": self.value,
            "required": self.required,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResponseCondition":
        return cls(
            field=data["field"],
            operator=ConditionOperator(data["operator"]),
            value=data.get("value"),
            required=bool(data.get("required", True)),
        )


@dataclass
class AutomatedResponse:
    """A rate-limited, capped set of actions dispatched on matching events."""
    name: str
    triggers: list[ResponseTrigger] = field(default_factory=list)
    actions: list[ResponseAction] = field(default_factory=list)
    conditions: list[ResponseCondition] = field(default_factory=list)
    id: str = field(default_factory=lambda: generate_id("resp"))
    description: str = ""
    enabled: bool = True
    priority: int = 1
    cooldown: float = 300  # seconds
    max_executions: int = 100
    execution_count: int = 0
    success_count: int = 0
    success_rate: float = 0.0
    last_executed: Optional[datetime] = None
    last_result: list[dict[str, Any]] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "triggers": [t.to_dict() for t in self.triggers],
            "actions": [a.to_dict() for a in self.actions],
            "conditions": [c.to_dict() for c in self.conditions],
            "enabled": self.enabled,
            "priority": self.priority,
            "cooldown": self.cooldown,
            "max_executions": self.max_executions,
            "execution_count": self.execution_count,
            "success_count": self.success_count,
            "success_rate": self.success_rate,
            "last_executed": to_iso(self.last_executed),
            "last_result": self.last_result,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AutomatedResponse":
        return cls(
            id=data.get("id") or generate_id("resp"),
            name=data["name"],
            description=data.get("description", ""),
            triggers=[ResponseTrigger.from_dict(t) for t in data.get("triggers", [])],
            actions=[ResponseAction.from_dict(a) for a in data.get("actions", [])],
            conditions=[ResponseCondition.from_dict(c) for c in data.get("conditions", [])],
            enabled=bool(data.get("enabled", True)),
            priority=int(data.get("priority", 1)),
            cooldown=float(data.get("cooldown", 300)),
            max_executions=int(data.get("max_executions", 100)),
            execution_count=int(data.get("execution_count", 0)),
            success_count=int(data.get("success_count", 0)),
            success_rate=float(data.get("success_rate", 0.0)),
            last_executed=from_iso(data.get("last_executed")),
            last_result=list(data.get("last_result") or []),
            created_at=from_iso(data.get("created_at")) or utcnow(),
            updated_at=from_iso(data.get("updated_at")) or utcnow(),
        )


# ============================================================================
# Compliance
# ============================================================================

@dataclass
class ComplianceIssue:
    check_id: str
    severity: Severity
    description: str
    recommendation: str = ""
    id: str = field(default_factory=lambda: generate_id("issue"))
    status: IssueStatus = IssueStatus.OPEN
    assigned_to: Optional[str] = None
    due_date: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return IssueStatus(self.status) in (IssueStatus.OPEN, IssueStatus.IN_PROGRESS)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "check_id": self.check_id,
            "severity": _enum_value(self.severity),
            "description": self.description,
            "recommendation": self.recommendation,
            "status": _enum_value(self.status),
            "assigned_to": self.assigned_to,
            "due_date": to_iso(self.due_date),
            "created_at": to_iso(self.created_at),
            "resolved_at": to_iso(self.resolved_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ComplianceIssue":
        return cls(
            id=data["id"],
            check_id=data["check_id"],
            severity=Severity(data["severity"]),
            description=data.get("description", ""),
            recommendation=data.get("recommendation", ""),
            status=IssueStatus(data.get("status", "open")),
            assigned_to=data.get("assigned_to"),
            due_date=from_iso(data.get("due_date")),
            created_at=from_iso(data.get("created_at")) or utcnow(),
            resolved_at=from_iso(data.get("resolved_at")),
        )


@dataclass
class ComplianceCheck:
    standard_id: str
    requirement_id: str
    check_type: ComplianceCheckType = ComplianceCheckType.AUTOMATED
    frequency: CheckFrequency = CheckFrequency.DAILY
    id: str = field(default_factory=lambda: generate_id("chk"))
    evaluator: Optional[str] = None
    parameters: dict[str, Any] = field(default_factory=dict)
    expected_result: Any = None
    actual_result: Any = None
    status: ComplianceStatus = ComplianceStatus.PENDING
    severity: Severity = Severity.MEDIUM
    last_check: Optional[datetime] = None
    next_check: datetime = field(default_factory=utcnow)
    evidence: list[str] = field(default_factory=list)
    issues: list[ComplianceIssue] = field(default_factory=list)
    last_error: Optional[str] = None
    enabled: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "standard_id": self.standard_id,
            "requirement_id": self.requirement_id,
            "check_type": _enum_value(self.check_type),
            "frequency": _enum_value(self.frequency),
            "evaluator": self.evaluator,
            "parameters": self.parameters,
            "expected_result": self.expected_result,
            "actual_result": self.actual_result,
            "status": _enum_value(self.status),
            "severity": _enum_value(self.severity),
            "last_check": to_iso(self.last_check),
            "next_check": to_iso(self.next_check),
            "evidence": list(self.evidence),
            "issues": [i.to_dict() for i in self.issues],
            "last_error": self.last_error,
            "enabled": self.enabled,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ComplianceCheck":
        return cls(
            id=data.get("id") or generate_id("chk"),
            standard_id=data["standard_id"],
            requirement_id=data["requirement_id"],
            check_type=ComplianceCheckType(data.get("check_type", "automated")),
            frequency=CheckFrequency(data.get("frequency", "daily")),
            evaluator=data.get("evaluator"),
            parameters=dict(data.get("parameters") or {}),
            expected_result=data.get("expected_result"),
            actual_result=data.get("actual_result"),
            status=ComplianceStatus(data.get("status", "pending")),
            severity=Severity(data.get("severity", "medium")),
            last_check=from_iso(data.get("last_check")),
            next_check=from_iso(data.get("next_check")) or utcnow(),
            evidence=list(data.get("evidence") or []),
            issues=[ComplianceIssue.from_dict(i) for i in data.get("issues", [])],
            last_error=data.get("last_error"),
            enabled=bool(data.get("enabled", True)),
        )


# ============================================================================
# Vulnerability Assessments
# ============================================================================

@dataclass
class VulnerabilityFinding:
    assessment_id: str
    severity: Severity
    title: str
    id: str = field(default_factory=lambda: generate_id("vuln"))
    description: str = ""
    impact: str = ""
    solution: str = ""
    references: list[str] = field(default_factory=list)
    cvss: Optional[float] = None
    cve: Optional[str] = None
    location: str = ""
    evidence: list[str] = field(default_factory=list)
    exploitable: bool = False
    status: FindingStatus = FindingStatus.NEW

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "assessment_id": self.assessment_id,
            "severity": _enum_value(self.severity),
            "title": self.title,
            "description": self.description,
            "impact": self.impact,
            "solution": self.solution,
            "references": list(self.references),
            "cvss": self.cvss,
            "cve": self.cve,
            "location": self.location,
            "evidence": list(self.evidence),
            "exploitable": self.exploitable,
            "status": _enum_value(self.status),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VulnerabilityFinding":
        return cls(
            id=data.get("id") or generate_id("vuln"),
            assessment_id=data.get("assessment_id", ""),
            severity=Severity(data.get("severity", "info")),
            title=data.get("title", "Untitled finding"),
            description=data.get("description", ""),
            impact=data.get("impact", ""),
            solution=data.get("solution", ""),
            references=list(data.get("references") or []),
            cvss=data.get("cvss"),
            cve=data.get("cve"),
            location=data.get("location", ""),
            evidence=list(data.get("evidence") or []),
            exploitable=bool(data.get("exploitable", False)),
            status=FindingStatus(data.get("status", "new")),
        )


@dataclass
class VulnerabilityAssessment:
    type: AssessmentType
    target: str
    scan_profile: str = "default"
    id: str = field(default_factory=lambda: generate_id("scan"))
    status: AssessmentStatus = AssessmentStatus.SCHEDULED
    start_time: datetime = field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    findings: list[VulnerabilityFinding] = field(default_factory=list)
    configuration: dict[str, Any] = field(default_factory=dict)
    executed_by: str = "system"
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": _enum_value(self.type),
            "target": self.target,
            "scan_profile": self.scan_profile,
            "status": _enum_value(self.status),
            "start_time": to_iso(self.start_time),
            "end_time": to_iso(self.end_time),
            "findings": [f.to_dict() for f in self.findings],
            "configuration": self.configuration,
            "executed_by": self.executed_by,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VulnerabilityAssessment":
        return cls(
            id=data["id"],
            type=AssessmentType(data["type"]),
            target=data["target"],
            scan_profile=data.get("scan_profile", "default"),
            status=AssessmentStatus(data.get("status", "scheduled")),
            start_time=from_iso(data.get("start_time")) or utcnow(),
            end_time=from_iso(data.get("end_time")),
            findings=[VulnerabilityFinding.from_dict(f) for f in data.get("findings", [])],
            configuration=dict(data.get("configuration") or {}),
            executed_by=data.get("executed_by", "system"),
            error=data.get("error"),
        )


RECORD_TYPES: dict[RecordKind, type] = {
    RecordKind.PLAYBOOK: Playbook,
    RecordKind.PLAYBOOK_EXECUTION: PlaybookExecution,
    RecordKind.POLICY_ENFORCEMENT: PolicyEnforcement,
    RecordKind.AUTOMATED_RESPONSE: AutomatedResponse,
    RecordKind.COMPLIANCE_CHECK: ComplianceCheck,
    RecordKind.VULNERABILITY_ASSESSMENT: VulnerabilityAssessment,
}
