"""
Tracking Application DTOs
=========================

Data Transfer Objects for the tracking API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from sla_engine.tracking.domain import (
    CaseEvent,
    TimerEvent,
    TimerInstance,
    ViolationRecord,
)


# ========== Type Aliases for Literals ==========
CaseEventTypeStr = Literal[
    "created", "assigned", "status_changed", "priority_changed", "category_changed",
    "commented", "agent_response", "customer_response", "resolved", "closed", "deleted",
]
MetricStr = Literal["response_time", "resolution_time", "update_time", "idle_time"]
TimerStatusStr = Literal["running", "paused", "completed", "violated"]
SeverityStr = Literal["low", "medium", "high", "critical"]


# ========== Request DTOs ==========

class CaseEventDTO(BaseModel):
    """DTO for one case lifecycle event."""
    case_id: str = Field(..., min_length=1, description="Case identifier")
    tenant_id: str = Field(default="default", description="Tenant owning the case")
    event_type: CaseEventTypeStr = Field(..., description="Lifecycle event type")
    timestamp: datetime = Field(..., description="When the event happened")
    snapshot: Dict[str, Any] = Field(
        default_factory=dict,
        description="Flat field map of the case after the event"
    )
    actor_id: Optional[str] = Field(None, description="User that caused the event")

    def to_domain(self) -> CaseEvent:
        """Convert to domain value object."""
        return CaseEvent(
            case_id=self.case_id,
            tenant_id=self.tenant_id,
            event_type=self.event_type,
            timestamp=self.timestamp,
            snapshot=dict(self.snapshot),
            actor_id=self.actor_id,
        )


class EventIngestRequest(BaseModel):
    """Request model for case event ingestion."""
    events: List[CaseEventDTO] = Field(..., description="Case events, applied in order")


class ViolationAnnotationRequest(BaseModel):
    """Review workflow annotation of a violation."""
    reviewer: str = Field(..., min_length=1, description="User annotating the violation")
    acknowledged: Optional[bool] = None
    resolved: Optional[bool] = None
    resolution_notes: Optional[str] = None
    root_cause: Optional[str] = None
    preventive_actions: Optional[str] = None
    business_impact: Optional[str] = None


class CancelRequest(BaseModel):
    """Actor requesting a cancellation."""
    triggered_by: Optional[str] = Field(None, description="User id; defaults to system")


# ========== Response DTOs ==========

class EventOutcome(BaseModel):
    """Outcome of one ingested event."""
    case_id: str
    started: int = 0
    transitions: int = 0
    violations: int = 0
    escalations: int = 0
    failed: int = 0
    error: Optional[str] = None


class IngestResponse(BaseModel):
    """Response model for event ingestion."""
    processed: int = Field(..., description="Events applied")
    failed: int = Field(default=0, description="Events rejected or deferred")
    outcomes: List[EventOutcome] = Field(default_factory=list)


class TimerResponse(BaseModel):
    """Response model for one timer instance."""
    id: str
    case_id: str
    tenant_id: str
    metric: MetricStr
    policy_id: str
    policy_version: int
    status: TimerStatusStr
    target_minutes: int
    elapsed_minutes: int
    remaining_minutes: int
    paused_minutes: int
    progress_percent: float
    is_breached: bool
    breach_minutes: int
    breach_percentage: float
    escalation_level: int
    started_at: datetime
    paused_at: Optional[datetime] = None
    resumed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    violated_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None
    completion_reason: Optional[str] = None
    last_activity_at: Optional[datetime] = None
    due_at: Optional[datetime] = Field(None, description="Projected violation instant")

    @classmethod
    def from_domain(cls, timer: TimerInstance, due_at: Optional[datetime] = None) -> "TimerResponse":
        """Create from domain entity."""
        return cls(
            id=timer.id,
            case_id=timer.case_id,
            tenant_id=timer.tenant_id,
            metric=timer.metric.value,
            policy_id=timer.policy_id,
            policy_version=timer.policy_version,
            status=timer.status.value,
            target_minutes=timer.target_minutes,
            elapsed_minutes=timer.elapsed_minutes,
            remaining_minutes=timer.remaining_minutes,
            paused_minutes=timer.paused_minutes,
            progress_percent=round(timer.progress_percent, 2),
            is_breached=timer.is_breached,
            breach_minutes=timer.breach_minutes,
            breach_percentage=round(timer.breach_percentage, 2),
            escalation_level=timer.escalation_level,
            started_at=timer.started_at,
            paused_at=timer.paused_at,
            resumed_at=timer.resumed_at,
            completed_at=timer.completed_at,
            violated_at=timer.violated_at,
            escalated_at=timer.escalated_at,
            completion_reason=timer.completion_reason,
            last_activity_at=timer.last_activity_at,
            due_at=due_at,
        )


class TimerEventResponse(BaseModel):
    """Response model for one audit log entry."""
    id: str
    timer_id: str
    case_id: str
    metric: MetricStr
    event_type: str
    previous_status: Optional[TimerStatusStr] = None
    new_status: TimerStatusStr
    elapsed_minutes: int
    remaining_minutes: int
    trigger: str
    reason: Optional[str] = None
    triggered_by: str
    occurred_at: datetime
    data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_domain(cls, event: TimerEvent) -> "TimerEventResponse":
        return cls(
            id=event.id,
            timer_id=event.timer_id,
            case_id=event.case_id,
            metric=event.metric.value,
            event_type=event.event_type.value,
            previous_status=event.previous_status.value if event.previous_status else None,
            new_status=event.new_status.value,
            elapsed_minutes=event.elapsed_minutes,
            remaining_minutes=event.remaining_minutes,
            trigger=event.trigger.value,
            reason=event.reason,
            triggered_by=event.triggered_by,
            occurred_at=event.occurred_at,
            data=event.data,
        )


class ViolationResponse(BaseModel):
    """Response model for a violation record."""
    id: str
    timer_id: str
    case_id: str
    policy_id: str
    policy_version: int
    metric: MetricStr
    target_minutes: int
    actual_minutes: int
    violation_minutes: int
    violation_percentage: float
    severity: SeverityStr
    violated_at: datetime
    acknowledged: bool = False
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    resolved: bool = False
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    root_cause: Optional[str] = None
    preventive_actions: Optional[str] = None
    business_impact: Optional[str] = None

    @classmethod
    def from_domain(cls, record: ViolationRecord) -> "ViolationResponse":
        return cls(
            id=record.id,
            timer_id=record.timer_id,
            case_id=record.case_id,
            policy_id=record.policy_id,
            policy_version=record.policy_version,
            metric=record.metric.value,
            target_minutes=record.target_minutes,
            actual_minutes=record.actual_minutes,
            violation_minutes=record.violation_minutes,
            violation_percentage=record.violation_percentage,
            severity=record.severity.value,
            violated_at=record.violated_at,
            acknowledged=record.acknowledged,
            acknowledged_by=record.acknowledged_by,
            acknowledged_at=record.acknowledged_at,
            resolved=record.resolved,
            resolved_by=record.resolved_by,
            resolved_at=record.resolved_at,
            resolution_notes=record.resolution_notes,
            root_cause=record.root_cause,
            preventive_actions=record.preventive_actions,
            business_impact=record.business_impact,
        )


class SweepResponse(BaseModel):
    """Response model for a manual sweep."""
    at: datetime
    recomputed: int
    violated: int
    escalated: int
    failed: int


class CancelResponse(BaseModel):
    """Response model for case or policy cancellation."""
    cancelled: int = Field(..., description="Timers moved to completed/cancelled")


class ComplianceResponse(BaseModel):
    """Compliance summary."""
    total: int
    met: int
    violated: int
    running: int
    paused: int
    cancelled: int
    compliance_percentage: float
    average_elapsed_minutes: Dict[str, float] = Field(default_factory=dict)
    total_escalations: int
    escalation_rate: float
