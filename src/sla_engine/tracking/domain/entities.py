"""
Tracking Domain Entities
========================

Pure Python domain entities for commitment tracking.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns. TimerInstance owns
its state machine:

    running -> paused -> running
    running | paused -> completed
    running -> violated

completed and violated are terminal. Illegal moves raise InvalidTransition.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional, Tuple
from uuid import uuid4

from sla_engine.config import (
    AGENT_ACTIVITY_EVENTS,
    CUSTOMER_ACTIVITY_EVENTS,
    SEVERITY_THRESHOLDS,
    SYSTEM_ACTOR,
    TERMINAL_STATUSES,
    CaseEventType,
    MetricType,
    Severity,
    TimerEventType,
    TimerStatus,
    TriggerSource,
)
from sla_engine.core import InvalidTransition
from sla_engine.tracking.domain.calendar import BusinessCalendar, ensure_utc

_ZERO = timedelta(0)


def _new_id() -> str:
    return str(uuid4())


def _whole_minutes(duration: timedelta) -> int:
    return int(duration.total_seconds() // 60)


def classify_severity(violation_percentage: float) -> Severity:
    """Severity band of a violation percentage."""
    for upper_bound, severity in SEVERITY_THRESHOLDS:
        if violation_percentage < upper_bound:
            return severity
    return Severity.CRITICAL


@dataclass(frozen=True)
class CaseEvent:
    """
    A case lifecycle event as delivered by the case system.

    The snapshot is the flat field map of the case after the event; rules
    are evaluated against it.
    """
    case_id: str
    event_type: CaseEventType
    timestamp: datetime
    tenant_id: str = "default"
    snapshot: Mapping[str, Any] = field(default_factory=dict)
    actor_id: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "event_type", CaseEventType(self.event_type))
        object.__setattr__(self, "timestamp", ensure_utc(self.timestamp))

    @property
    def triggered_by(self) -> str:
        return self.actor_id or SYSTEM_ACTOR


@dataclass
class TimerInstance:
    """
    Live tracker of one metric on one case.

    Elapsed and paused time are kept as exact durations; the *_minutes
    properties expose whole minutes. remaining_minutes is derived, so
    elapsed_minutes + remaining_minutes == target_minutes always holds.
    """

    case_id: str
    metric: MetricType
    policy_id: str
    policy_version: int
    target_minutes: int
    started_at: datetime
    tenant_id: str = "default"
    id: str = field(default_factory=_new_id)
    status: TimerStatus = TimerStatus.RUNNING

    # Accrued durations
    elapsed: timedelta = _ZERO
    paused: timedelta = _ZERO
    accrued_until: Optional[datetime] = None

    # Transition timestamps
    paused_at: Optional[datetime] = None
    resumed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    violated_at: Optional[datetime] = None
    completion_reason: Optional[str] = None

    # Escalation
    escalation_level: int = 0
    escalated_at: Optional[datetime] = None

    # Activity
    last_activity_at: Optional[datetime] = None
    last_agent_activity_at: Optional[datetime] = None
    last_customer_activity_at: Optional[datetime] = None

    def __post_init__(self):
        self.metric = MetricType(self.metric)
        self.status = TimerStatus(self.status)
        self.started_at = ensure_utc(self.started_at)
        if self.accrued_until is None:
            self.accrued_until = self.started_at
        if self.target_minutes <= 0:
            raise ValueError("target_minutes must be positive")

    # ========== Derived values ==========

    @property
    def key(self) -> Tuple[str, MetricType]:
        return self.case_id, self.metric

    @property
    def elapsed_minutes(self) -> int:
        return _whole_minutes(self.elapsed)

    @property
    def paused_minutes(self) -> int:
        return _whole_minutes(self.paused)

    @property
    def remaining_minutes(self) -> int:
        return self.target_minutes - self.elapsed_minutes

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_breached(self) -> bool:
        return self.status == TimerStatus.VIOLATED

    @property
    def breach_minutes(self) -> int:
        if not self.is_breached:
            return 0
        return max(0, self.elapsed_minutes - self.target_minutes)

    @property
    def breach_percentage(self) -> float:
        return self.breach_minutes / self.target_minutes * 100

    @property
    def progress_percent(self) -> float:
        """Elapsed business time as a percentage of the target."""
        return self.elapsed.total_seconds() / (self.target_minutes * 60) * 100

    @property
    def target_reached(self) -> bool:
        return self.elapsed >= timedelta(minutes=self.target_minutes)

    # ========== State machine ==========

    def _require(self, action: str, *allowed: TimerStatus) -> None:
        if self.status not in allowed:
            raise InvalidTransition(self.id, self.status.value, action)

    def accrue(self, calendar: BusinessCalendar, until: datetime) -> None:
        """
        Advance the accrual point, adding business time while running.

        Terminal timers are frozen; paused timers move the accrual point
        without counting.
        """
        if self.is_terminal:
            return
        until = ensure_utc(until)
        if until <= self.accrued_until:
            return
        if self.status == TimerStatus.RUNNING:
            self.elapsed += calendar.business_time_between(self.accrued_until, until)
        self.accrued_until = until

    def pause(self, at: datetime) -> None:
        self._require("pause", TimerStatus.RUNNING)
        self.status = TimerStatus.PAUSED
        self.paused_at = ensure_utc(at)

    def resume(self, at: datetime) -> None:
        """Resume counting; the raw pause duration is added to paused time."""
        self._require("resume", TimerStatus.PAUSED)
        at = ensure_utc(at)
        self._close_pause(at)
        self.status = TimerStatus.RUNNING
        self.resumed_at = at
        self.accrued_until = max(self.accrued_until, at)

    def complete(self, at: datetime, reason: str) -> None:
        self._require("complete", TimerStatus.RUNNING, TimerStatus.PAUSED)
        at = ensure_utc(at)
        if self.status == TimerStatus.PAUSED:
            self._close_pause(at)
        self.status = TimerStatus.COMPLETED
        self.completed_at = at
        self.completion_reason = reason

    def violate(self, at: datetime) -> None:
        self._require("violate", TimerStatus.RUNNING)
        self.status = TimerStatus.VIOLATED
        self.violated_at = ensure_utc(at)

    def escalate(self, at: datetime) -> int:
        """Record that the next escalation action was issued."""
        self._require("escalate", TimerStatus.RUNNING)
        self.escalation_level += 1
        self.escalated_at = ensure_utc(at)
        return self.escalation_level

    def _close_pause(self, at: datetime) -> None:
        if self.paused_at is not None and at > self.paused_at:
            self.paused += at - self.paused_at

    # ========== Activity ==========

    def record_activity(self, event_type: CaseEventType, at: datetime) -> None:
        """Update activity timestamps from a case event."""
        at = ensure_utc(at)
        is_agent = event_type in AGENT_ACTIVITY_EVENTS
        is_customer = event_type in CUSTOMER_ACTIVITY_EVENTS
        if not (is_agent or is_customer or event_type == CaseEventType.COMMENTED):
            return

        self.last_activity_at = _latest(self.last_activity_at, at)
        if is_agent:
            self.last_agent_activity_at = _latest(self.last_agent_activity_at, at)
        if is_customer:
            self.last_customer_activity_at = _latest(self.last_customer_activity_at, at)

    def snapshot_fields(self, at: datetime) -> Dict[str, Any]:
        """Activity fields exposed to rule evaluation."""
        reference = self.last_activity_at or self.started_at
        return {
            "last_activity_at": self.last_activity_at,
            "last_agent_activity_at": self.last_agent_activity_at,
            "last_customer_activity_at": self.last_customer_activity_at,
            "idle_minutes": max(0, _whole_minutes(ensure_utc(at) - reference)),
        }


def _latest(current: Optional[datetime], candidate: datetime) -> datetime:
    if current is None or candidate > current:
        return candidate
    return current


@dataclass(frozen=True)
class TimerEvent:
    """Append-only audit entry for one timer transition."""

    tenant_id: str
    timer_id: str
    case_id: str
    metric: MetricType
    event_type: TimerEventType
    previous_status: Optional[TimerStatus]
    new_status: TimerStatus
    elapsed_minutes: int
    remaining_minutes: int
    trigger: TriggerSource
    occurred_at: datetime
    reason: Optional[str] = None
    triggered_by: str = SYSTEM_ACTOR
    data: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_new_id)

    @classmethod
    def for_transition(
        cls,
        timer: TimerInstance,
        event_type: TimerEventType,
        previous_status: Optional[TimerStatus],
        trigger: TriggerSource,
        at: datetime,
        reason: Optional[str] = None,
        triggered_by: str = SYSTEM_ACTOR,
        data: Optional[Dict[str, Any]] = None,
    ) -> "TimerEvent":
        """Snapshot the timer right after a transition."""
        return cls(
            tenant_id=timer.tenant_id,
            timer_id=timer.id,
            case_id=timer.case_id,
            metric=timer.metric,
            event_type=event_type,
            previous_status=previous_status,
            new_status=timer.status,
            elapsed_minutes=timer.elapsed_minutes,
            remaining_minutes=timer.remaining_minutes,
            trigger=trigger,
            occurred_at=ensure_utc(at),
            reason=reason,
            triggered_by=triggered_by,
            data=dict(data or {}),
        )


@dataclass
class ViolationRecord:
    """
    A breached commitment.

    Created once when the timer becomes violated. The annotation fields
    belong to the external review workflow; the engine never writes them.
    """

    tenant_id: str
    timer_id: str
    case_id: str
    policy_id: str
    policy_version: int
    metric: MetricType
    target_minutes: int
    actual_minutes: int
    violation_minutes: int
    violation_percentage: float
    severity: Severity
    violated_at: datetime
    id: str = field(default_factory=_new_id)

    # Review workflow
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
    def from_timer(cls, timer: TimerInstance) -> "ViolationRecord":
        """Build the record for a timer that just became violated."""
        violation_minutes = timer.breach_minutes
        percentage = violation_minutes / timer.target_minutes * 100
        return cls(
            tenant_id=timer.tenant_id,
            timer_id=timer.id,
            case_id=timer.case_id,
            policy_id=timer.policy_id,
            policy_version=timer.policy_version,
            metric=timer.metric,
            target_minutes=timer.target_minutes,
            actual_minutes=timer.elapsed_minutes,
            violation_minutes=violation_minutes,
            violation_percentage=round(percentage, 2),
            severity=classify_severity(percentage),
            violated_at=timer.violated_at,
        )

    def acknowledge(self, by: str, at: datetime) -> None:
        if not self.acknowledged:
            self.acknowledged = True
            self.acknowledged_by = by
            self.acknowledged_at = ensure_utc(at)

    def resolve(self, by: str, at: datetime, notes: Optional[str] = None) -> None:
        self.acknowledge(by, at)
        self.resolved = True
        self.resolved_by = by
        self.resolved_at = ensure_utc(at)
        if notes is not None:
            self.resolution_notes = notes


@dataclass(frozen=True)
class EscalationCommand:
    """Instruction for the workflow collaborator to run an escalation action."""

    tenant_id: str
    timer_id: str
    case_id: str
    metric: MetricType
    escalation_level: int
    action_payload: Dict[str, Any]
    issued_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for webhook delivery."""
        return {
            "tenant_id": self.tenant_id,
            "timer_id": self.timer_id,
            "case_id": self.case_id,
            "metric": self.metric.value,
            "escalation_level": self.escalation_level,
            "action_payload": self.action_payload,
            "issued_at": self.issued_at.isoformat(),
        }
