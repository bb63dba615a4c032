"""
SecAuto Configuration Settings

Centralized configuration management using Pydantic Settings.
Supports environment variables and .env files.
"""

import os
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StoreBackend(str, Enum):
    """Durable store implementation."""
    SQLITE = "sqlite"
    MEMORY = "memory"


class LogFormat(str, Enum):
    JSON = "json"
    CONSOLE = "console"


class Settings(BaseSettings):
    """
    SecAuto Configuration.

    All settings can be configured via environment variables with the SECAUTO_ prefix.
    Example: SECAUTO_STORE_BACKEND=memory, SECAUTO_POLICY_TICK_SECONDS=10
    """

    model_config = SettingsConfigDict(
        env_prefix="SECAUTO_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Store
    store_backend: StoreBackend = Field(
        default=StoreBackend.SQLITE,
        description="Durable store backend: sqlite or memory"
    )
    db_path: str = Field(
        default=os.environ.get("SECAUTO_DB_PATH", str(Path.home() / ".secauto" / "orchestration.db")),
        description="SQLite database path"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: LogFormat = Field(default=LogFormat.JSON, description="json or console")

    # Scheduler ticks (seconds)
    playbook_tick_seconds: float = Field(default=60.0, description="Playbook scheduler tick")
    policy_tick_seconds: float = Field(default=30.0, description="Policy enforcement tick")
    compliance_tick_seconds: float = Field(default=900.0, description="Compliance scheduler tick")

    # Execution engine
    queue_max_size: int = Field(default=100, description="Pending executions before backpressure")
    max_step_transitions: int = Field(
        default=500,
        description="Upper bound on step transitions per execution (edge cycles)"
    )
    wait_poll_interval: float = Field(default=1.0, description="Wait-step condition poll interval")
    human_task_default_timeout: float = Field(
        default=3600.0,
        description="Human task timeout when the step declares none"
    )
    max_parameter_depth: int = Field(default=8, description="Nesting limit for trigger parameters")

    # Automated responses
    default_response_cooldown: float = Field(default=300.0, description="Cooldown in seconds")
    default_response_max_executions: int = Field(default=100, description="Lifetime dispatch cap")
    max_window_samples: int = Field(default=10_000, description="Samples kept per threshold trigger window")

    # Compliance
    max_evidence_entries: int = Field(default=50, description="Evidence entries kept per check")

    # Built-in capabilities
    http_timeout: float = Field(default=30.0, description="HTTP capability timeout in seconds")
    api_base_url: Optional[str] = Field(default=None, description="Base URL for api_call actions")
    notify_webhook_url: Optional[str] = Field(default=None, description="Webhook for notifications")
    scripts_dir: str = Field(default="./scripts", description="Directory holding remediation scripts")

    load_defaults: bool = Field(default=True, description="Seed the default definitions at startup")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper

    @field_validator("queue_max_size", "max_step_transitions", "max_parameter_depth", "max_window_samples")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v


# Global settings instance
settings = Settings()
