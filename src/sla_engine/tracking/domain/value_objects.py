"""
Tracking Value Objects
======================

Immutable value objects for the tracking domain.

A TrackingPolicy is read-only to the engine: editing a policy publishes a new
version and live timers keep evaluating against the version that started
them. Rule trees are parsed once, when the policy is built.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    field_validator,
    model_validator,
)

from sla_engine.config import AgreementType, MetricType
from sla_engine.tracking.domain.calendar import (
    BusinessCalendar,
    ensure_utc,
)
from sla_engine.tracking.domain.rules import RuleNode, parse_rule_tree


class WorkingHours(BaseModel):
    """Daily working window as wall-clock "HH:MM" strings."""
    model_config = ConfigDict(frozen=True)

    start: str = Field(default="08:00", description="Window opening time")
    end: str = Field(default="18:00", description="Window closing time")


class CalendarSettings(BaseModel):
    """
    Stored calendar of a policy.

    Working days are numbered 0=Sunday .. 6=Saturday; English day names are
    accepted too. Validation of the timezone and times is deferred to
    to_calendar() so that one bad calendar only skips its own policy.
    """
    model_config = ConfigDict(frozen=True)

    business_hours_only: bool = Field(default=True)
    working_days: Tuple[Union[int, str], ...] = Field(default=(1, 2, 3, 4, 5))
    working_hours: WorkingHours = Field(default_factory=WorkingHours)
    timezone: str = Field(default="America/Sao_Paulo")

    def to_calendar(self) -> BusinessCalendar:
        """
        Build the runtime calendar.

        Raises:
            InvalidCalendar: On an unknown timezone, unparsable times,
                an empty working window or missing working days
        """
        if not self.business_hours_only:
            return BusinessCalendar.always_open(self.timezone)
        return BusinessCalendar.build(
            self.timezone,
            self.working_days,
            self.working_hours.start,
            self.working_hours.end,
        )


class EscalationAction(BaseModel):
    """One escalation step: an opaque action for the workflow collaborator."""
    model_config = ConfigDict(frozen=True)

    type: str = Field(min_length=1, description="Action type, e.g. notify, reassign")
    config: Dict[str, Any] = Field(default_factory=dict)
    threshold_percent: Optional[float] = Field(
        default=None,
        gt=0,
        description="Overrides the policy threshold for this step"
    )

    def payload(self) -> Dict[str, Any]:
        return {"type": self.type, "config": dict(self.config)}


class TrackingPolicy(BaseModel):
    """
    Tenant-defined tracking policy.

    A metric is tracked iff its target is set; at least one target is
    required. Rule fields accept the stored query-builder shape and hold the
    parsed tree afterwards.
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    id: str = Field(min_length=1)
    version: int = Field(default=1, ge=1)
    tenant_id: str = Field(default="default")
    name: str = Field(default="")
    description: Optional[str] = None
    agreement_type: AgreementType = Field(default=AgreementType.SLA)
    priority: int = Field(default=0, description="Catalog ordering, higher first")
    is_active: bool = Field(default=True)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None

    # ========== Targets (minutes) ==========
    response_time_minutes: Optional[int] = Field(default=None, gt=0)
    resolution_time_minutes: Optional[int] = Field(default=None, gt=0)
    update_time_minutes: Optional[int] = Field(default=None, gt=0)
    idle_time_minutes: Optional[int] = Field(default=None, gt=0)

    calendar: CalendarSettings = Field(default_factory=CalendarSettings)

    # ========== Rules ==========
    application_rules: Optional[Any] = None
    pause_conditions: Optional[Any] = None
    resume_conditions: Optional[Any] = None
    stop_conditions: Optional[Any] = None

    # ========== Escalation ==========
    escalation_enabled: bool = Field(default=False)
    escalation_threshold_percent: float = Field(default=80.0, gt=0)
    escalation_actions: Tuple[EscalationAction, ...] = Field(default=())

    _calendar: Optional[BusinessCalendar] = PrivateAttr(default=None)

    @field_validator(
        "application_rules", "pause_conditions", "resume_conditions", "stop_conditions",
        mode="before"
    )
    @classmethod
    def parse_rules(cls, v: Any) -> Optional[RuleNode]:
        """Parse stored rule trees; InvalidRule propagates to the catalog."""
        return parse_rule_tree(v)

    @field_validator("valid_from", "valid_until")
    @classmethod
    def normalize_validity(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None

    @model_validator(mode="after")
    def validate_targets(self) -> "TrackingPolicy":
        """Require one target and a non-empty validity window."""
        if not self.tracked_metrics():
            raise ValueError("policy must set at least one target")
        if self.valid_from and self.valid_until and self.valid_until <= self.valid_from:
            raise ValueError("valid_until must be after valid_from")
        return self

    @property
    def key(self) -> Tuple[str, int]:
        return self.id, self.version

    @property
    def business_calendar(self) -> BusinessCalendar:
        """
        Runtime calendar, built on first use.

        Raises:
            InvalidCalendar: If the stored calendar is malformed
        """
        if self._calendar is None:
            self._calendar = self.calendar.to_calendar()
        return self._calendar

    def target_for(self, metric: MetricType) -> Optional[int]:
        return getattr(self, f"{MetricType(metric).value}_minutes")

    def tracked_metrics(self) -> List[MetricType]:
        """Metrics with a target, in declaration order."""
        return [m for m in MetricType if self.target_for(m) is not None]

    def is_effective(self, at: datetime) -> bool:
        """Active and inside its validity window at the given instant."""
        if not self.is_active:
            return False
        at = ensure_utc(at)
        if self.valid_from and at < self.valid_from:
            return False
        if self.valid_until and at >= self.valid_until:
            return False
        return True

    def escalation_threshold_for(self, level: int) -> float:
        """
        Threshold percentage for the action fired at the given level.

        Args:
            level: Current escalation level (index of the next action)
        """
        if 0 <= level < len(self.escalation_actions):
            override = self.escalation_actions[level].threshold_percent
            if override is not None:
                return override
        return self.escalation_threshold_percent
