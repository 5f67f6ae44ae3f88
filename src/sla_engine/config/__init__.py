"""
Configuration Module
====================

Application settings and tracking constants using Pydantic.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="sla-timer-engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="",
        description="SQLAlchemy async URL; empty keeps all records in memory"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== Policy Catalog ==========
    policy_catalog_path: Path = Field(
        default=Path("tracking_policies.yaml"),
        description="Path to the tracking policy catalog YAML file"
    )
    policy_watch: bool = Field(
        default=True,
        description="Reload the policy catalog when the file changes"
    )

    # ========== Sweep ==========
    sweep_interval_seconds: int = Field(
        default=60,
        description="Seconds between recompute sweeps (0 disables the scheduler)",
        ge=0
    )

    # ========== Escalation Delivery ==========
    escalation_webhook_url: Optional[str] = Field(
        default=None,
        description="Webhook receiving escalation commands"
    )
    escalation_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for escalation webhook calls",
        ge=0.1,
        le=30
    )
    delivery_max_retries: int = Field(
        default=5,
        description="Attempts per outbound write/dispatch before dead-lettering",
        ge=1
    )
    delivery_backoff_seconds: float = Field(
        default=1.0,
        description="Base delay of the exponential retry backoff",
        ge=0.0
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production", "test"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# ========== Constants ==========

class MetricType(str, Enum):
    """Commitment metrics a policy can track."""
    RESPONSE_TIME = "response_time"       # Time to first response
    RESOLUTION_TIME = "resolution_time"   # Time to resolution
    UPDATE_TIME = "update_time"           # Time until the next agent update
    IDLE_TIME = "idle_time"               # Time without interaction


class TimerStatus(str, Enum):
    """Timer instance lifecycle states."""
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    VIOLATED = "violated"


class TimerEventType(str, Enum):
    """Audit log entry types."""
    STARTED = "started"
    PAUSED = "paused"
    RESUMED = "resumed"
    COMPLETED = "completed"
    VIOLATED = "violated"
    ESCALATED = "escalated"


class TriggerSource(str, Enum):
    """What caused a timer transition."""
    CASE_EVENT = "case_event"
    SYSTEM_TICK = "system_tick"
    RULE_MATCH = "rule_match"
    EXTERNAL_ACTION = "external_action"


class CaseEventType(str, Enum):
    """Case lifecycle events consumed by the engine."""
    CREATED = "created"
    ASSIGNED = "assigned"
    STATUS_CHANGED = "status_changed"
    PRIORITY_CHANGED = "priority_changed"
    CATEGORY_CHANGED = "category_changed"
    COMMENTED = "commented"
    AGENT_RESPONSE = "agent_response"
    CUSTOMER_RESPONSE = "customer_response"
    RESOLVED = "resolved"
    CLOSED = "closed"
    DELETED = "deleted"


class AgreementType(str, Enum):
    """Kind of commitment a policy describes."""
    SLA = "SLA"     # Service Level Agreement (client-facing)
    OLA = "OLA"     # Operational Level Agreement (internal)
    UC = "UC"       # Underpinning Contract (supplier)


class Severity(str, Enum):
    """Violation severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SYSTEM_ACTOR = "system"

TERMINAL_STATUSES: FrozenSet[TimerStatus] = frozenset(
    {TimerStatus.COMPLETED, TimerStatus.VIOLATED}
)

AGENT_ACTIVITY_EVENTS: FrozenSet[CaseEventType] = frozenset({
    CaseEventType.AGENT_RESPONSE,
    CaseEventType.STATUS_CHANGED,
    CaseEventType.ASSIGNED,
})
CUSTOMER_ACTIVITY_EVENTS: FrozenSet[CaseEventType] = frozenset({
    CaseEventType.CUSTOMER_RESPONSE,
})
CLOSING_EVENTS: FrozenSet[CaseEventType] = frozenset({
    CaseEventType.RESOLVED,
    CaseEventType.CLOSED,
})

# Case events that end a metric's measurement on their own, without rules
NATURAL_END_EVENTS: Dict[MetricType, FrozenSet[CaseEventType]] = {
    MetricType.RESPONSE_TIME: CLOSING_EVENTS | {CaseEventType.AGENT_RESPONSE},
    MetricType.RESOLUTION_TIME: CLOSING_EVENTS,
    MetricType.UPDATE_TIME: CLOSING_EVENTS | AGENT_ACTIVITY_EVENTS,
    MetricType.IDLE_TIME: (
        CLOSING_EVENTS | AGENT_ACTIVITY_EVENTS | CUSTOMER_ACTIVITY_EVENTS
        | {CaseEventType.COMMENTED}
    ),
}

# Upper bounds (exclusive) of violation percentage per severity
SEVERITY_THRESHOLDS = [
    (25.0, Severity.LOW),
    (75.0, Severity.MEDIUM),
    (150.0, Severity.HIGH),
]
