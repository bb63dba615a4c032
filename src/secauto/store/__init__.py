"""
Definition Store Module

Provides persistence for orchestration definitions and their run records.
"""

from secauto.store.database import DefinitionStore, MemoryStore, SQLiteStore, get_store
from secauto.store.models import (
    AutomatedResponse,
    ComplianceCheck,
    ExecutionStatus,
    Playbook,
    PlaybookExecution,
    PolicyEnforcement,
    RecordKind,
    Severity,
    VulnerabilityAssessment,
)

__all__ = [
    # Database
    "DefinitionStore",
    "MemoryStore",
    "SQLiteStore",
    "get_store",
    # Models
    "RecordKind",
    "Severity",
    "Playbook",
    "PlaybookExecution",
    "ExecutionStatus",
    "PolicyEnforcement",
    "AutomatedResponse",
    "ComplianceCheck",
    "VulnerabilityAssessment",
]
