"""
Tracking Infrastructure Models
==============================

SQLAlchemy ORM models for the tracking module.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from sla_engine.config import MetricType, Severity, TimerEventType, TimerStatus
from sla_engine.infrastructure.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimerInstanceModel(Base):
    """
    Database model for TimerInstance snapshots.

    Maps to the 'timer_instances' table. One row per (case, metric).
    """
    __tablename__ = "timer_instances"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    case_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    metric: Mapped[MetricType] = mapped_column(String(50), nullable=False)

    # Policy reference
    policy_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    policy_version: Mapped[int] = mapped_column(Integer, nullable=False)

    # State
    status: Mapped[TimerStatus] = mapped_column(String(50), nullable=False, index=True)
    target_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    elapsed_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    paused_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    accrued_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Transition timestamps
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    paused_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resumed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    violated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completion_reason: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Escalation
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    escalated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Activity
    last_activity_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_agent_activity_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_customer_activity_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("case_id", "metric", name="uq_timer_instances_case_metric"),
    )


class TimerEventModel(Base):
    """
    Database model for the append-only timer audit log.

    Maps to the 'timer_events' table.
    """
    __tablename__ = "timer_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    timer_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    case_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    metric: Mapped[MetricType] = mapped_column(String(50), nullable=False)

    event_type: Mapped[TimerEventType] = mapped_column(String(50), nullable=False)
    previous_status: Mapped[Optional[TimerStatus]] = mapped_column(String(50), nullable=True)
    new_status: Mapped[TimerStatus] = mapped_column(String(50), nullable=False)
    elapsed_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    remaining_minutes: Mapped[int] = mapped_column(Integer, nullable=False)

    trigger: Mapped[str] = mapped_column(String(50), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    triggered_by: Mapped[str] = mapped_column(String(255), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)


class ViolationModel(Base):
    """
    Database model for ViolationRecord.

    Maps to the 'sla_violations' table. At most one row per timer.
    """
    __tablename__ = "sla_violations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    timer_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    case_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    policy_id: Mapped[str] = mapped_column(String(255), nullable=False)
    policy_version: Mapped[int] = mapped_column(Integer, nullable=False)
    metric: Mapped[MetricType] = mapped_column(String(50), nullable=False)

    # Measurement
    target_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    actual_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    violation_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    violation_percentage: Mapped[float] = mapped_column(Float, nullable=False)
    severity: Mapped[Severity] = mapped_column(String(50), nullable=False, index=True)
    violated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Review workflow
    acknowledged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    acknowledged_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    root_cause: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    preventive_actions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    business_impact: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
