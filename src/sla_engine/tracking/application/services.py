"""
Tracking Application Services
=============================

Application services orchestrate domain entities and coordinate with the
repository and collaborator interfaces.

- TimerInstanceManager: creates timers and drives their state machine
- EscalationDispatcher: threshold checks and violation records after every
  recompute
- ComplianceService / ViolationReviewService: reporting and the external
  review workflow

The manager and dispatcher are synchronous and in-memory; the engine
serializes access per timer and delivers their output.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from sla_engine.config import (
    CLOSING_EVENTS,
    NATURAL_END_EVENTS,
    SYSTEM_ACTOR,
    CaseEventType,
    MetricType,
    Severity,
    TimerEventType,
    TimerStatus,
    TriggerSource,
)
from sla_engine.core import InvalidCalendar, ResourceNotFoundException
from sla_engine.shared.infrastructure.logging import get_context_logger, get_logger
from sla_engine.tracking.domain import (
    CaseEvent,
    ConditionEvaluator,
    EscalationCommand,
    TimerEvent,
    TimerInstance,
    TrackingPolicy,
    ViolationRecord,
    ensure_utc,
)

logger = get_logger(__name__)

TimerKey = Tuple[str, MetricType]


# ========== Collaborator Interfaces (Dependency Inversion) ==========

class IClock(ABC):
    """Source of the current instant."""

    @abstractmethod
    def now(self) -> datetime:
        """Current time, timezone-aware UTC."""


class IPolicyCatalog(ABC):
    """Interface for tracking policy lookup."""

    @abstractmethod
    async def resolve_applicable_policies(
        self,
        snapshot: Mapping[str, Any],
        tenant_id: str,
        at: datetime
    ) -> List[TrackingPolicy]:
        """Effective policies whose application rules match, highest priority first."""

    @abstractmethod
    async def get_policy(
        self,
        policy_id: str,
        version: Optional[int] = None
    ) -> Optional[TrackingPolicy]:
        """Get a policy version (latest when version is None)."""

    @abstractmethod
    async def deactivate(self, policy_id: str) -> Optional[TrackingPolicy]:
        """Publish an inactive version of the policy."""


class ITimerRepository(ABC):
    """Interface for timer snapshot storage."""

    @abstractmethod
    async def save(self, timer: TimerInstance) -> None:
        """Insert or replace the snapshot of a timer."""

    @abstractmethod
    async def get(self, timer_id: str) -> Optional[TimerInstance]:
        """Get timer by ID."""

    @abstractmethod
    async def list_by_case(self, case_id: str) -> List[TimerInstance]:
        """All timers of a case."""

    @abstractmethod
    async def list_active(self) -> List[TimerInstance]:
        """Running and paused timers."""

    @abstractmethod
    async def list(
        self,
        tenant_id: Optional[str] = None,
        started_from: Optional[datetime] = None,
        started_to: Optional[datetime] = None
    ) -> List[TimerInstance]:
        """List timers with filters."""


class ITimerEventRepository(ABC):
    """Interface for the append-only timer audit log."""

    @abstractmethod
    async def append(self, event: TimerEvent) -> None:
        """Append an event; appending the same event twice is a no-op."""

    @abstractmethod
    async def list_by_timer(self, timer_id: str) -> List[TimerEvent]:
        """Events of a timer, oldest first."""

    @abstractmethod
    async def list_by_case(self, case_id: str) -> List[TimerEvent]:
        """Events of a case, oldest first."""


class IViolationRepository(ABC):
    """Interface for violation records."""

    @abstractmethod
    async def create(self, record: ViolationRecord) -> ViolationRecord:
        """Store a record; returns the existing one if the timer already has one."""

    @abstractmethod
    async def get(self, violation_id: str) -> Optional[ViolationRecord]:
        """Get violation by ID."""

    @abstractmethod
    async def get_by_timer(self, timer_id: str) -> Optional[ViolationRecord]:
        """Get the violation of a timer."""

    @abstractmethod
    async def list(
        self,
        case_id: Optional[str] = None,
        severity: Optional[Severity] = None,
        unresolved_only: bool = False
    ) -> List[ViolationRecord]:
        """List violations with filters."""

    @abstractmethod
    async def update(self, record: ViolationRecord) -> ViolationRecord:
        """Persist review workflow annotations."""


class IEscalationSink(ABC):
    """Workflow collaborator receiving escalation commands."""

    @abstractmethod
    async def dispatch(self, command: EscalationCommand) -> None:
        """
        Deliver a command.

        Raises:
            DispatchFailure: If the command could not be delivered
        """


# ========== Recompute Output ==========

@dataclass
class TimerUpdate:
    """What one recompute of one timer produced."""

    timer: TimerInstance
    events: List[TimerEvent] = field(default_factory=list)
    commands: List[EscalationCommand] = field(default_factory=list)
    violation: Optional[ViolationRecord] = None
    violated: bool = False
    accrued: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.events) or self.accrued


def _natural_end_reason(metric: MetricType, event_type: CaseEventType) -> str:
    if event_type in CLOSING_EVENTS:
        return f"case_{event_type.value}"
    if metric == MetricType.RESPONSE_TIME:
        return "first_response"
    if metric == MetricType.UPDATE_TIME:
        return "agent_update"
    return "activity"


# ========== Application Services ==========

class EscalationDispatcher:
    """
    Runs after every recompute.

    Fires at most one escalation action per recompute and builds the
    violation record when the recompute produced the transition into
    violated. Escalation and violation are independent of each other.
    """

    def after_recompute(
        self,
        timer: TimerInstance,
        policy: TrackingPolicy,
        update: TimerUpdate,
        at: datetime,
        trigger: TriggerSource = TriggerSource.SYSTEM_TICK
    ) -> None:
        if update.violated and update.violation is None:
            update.violation = ViolationRecord.from_timer(timer)

        command = self._next_escalation(timer, policy, at)
        if command is None:
            return

        update.commands.append(command)
        update.events.append(TimerEvent.for_transition(
            timer,
            TimerEventType.ESCALATED,
            TimerStatus.RUNNING,
            trigger,
            at,
            reason="threshold_reached",
            data={
                "escalation_level": command.escalation_level,
                "progress_percent": round(timer.progress_percent, 2),
                "action": command.action_payload,
            },
        ))
        get_context_logger(__name__, case_id=timer.case_id, timer_id=timer.id).info(
            "Escalation issued",
            extra={"metric": timer.metric.value, "escalation_level": command.escalation_level}
        )

    def _next_escalation(
        self,
        timer: TimerInstance,
        policy: TrackingPolicy,
        at: datetime
    ) -> Optional[EscalationCommand]:
        if not policy.escalation_enabled or timer.status != TimerStatus.RUNNING:
            return None

        level = timer.escalation_level
        if level >= len(policy.escalation_actions):
            return None
        if timer.progress_percent < policy.escalation_threshold_for(level):
            return None

        action = policy.escalation_actions[level]
        new_level = timer.escalate(at)
        return EscalationCommand(
            tenant_id=timer.tenant_id,
            timer_id=timer.id,
            case_id=timer.case_id,
            metric=timer.metric,
            escalation_level=new_level,
            action_payload=action.payload(),
            issued_at=ensure_utc(at),
        )


class TimerInstanceManager:
    """
    Owns the working set of timer instances.

    Holds live timers plus terminal ones not yet evicted. An evicted
    timer leaves its metric in the case's finished set, so a (case,
    metric) pair is tracked at most once for the life of a case.
    Policy versions are cached on first sight; timers recompute against
    the version that created them even when the catalog is unreachable.
    """

    def __init__(
        self,
        evaluator: Optional[ConditionEvaluator] = None,
        dispatcher: Optional[EscalationDispatcher] = None
    ):
        self._evaluator = evaluator or ConditionEvaluator()
        self._dispatcher = dispatcher or EscalationDispatcher()
        self._timers: Dict[TimerKey, TimerInstance] = {}
        self._policies: Dict[Tuple[str, int], TrackingPolicy] = {}
        self._finished: Dict[str, Set[MetricType]] = {}

    # ========== Registry ==========

    def remember_policy(self, policy: TrackingPolicy) -> None:
        self._policies.setdefault(policy.key, policy)

    def policy_for(self, timer: TimerInstance) -> Optional[TrackingPolicy]:
        return self._policies.get((timer.policy_id, timer.policy_version))

    def get(self, key: TimerKey) -> Optional[TimerInstance]:
        return self._timers.get(key)

    def restore(self, timer: TimerInstance) -> bool:
        """Register a timer loaded from storage unless one is already known."""
        if timer.key in self._timers:
            return False
        self._timers[timer.key] = timer
        return True

    def timers_for_case(self, case_id: str) -> List[TimerInstance]:
        return [t for t in self._timers.values() if t.case_id == case_id]

    def timers_for_policy(self, policy_id: str) -> List[TimerInstance]:
        return [t for t in self._timers.values() if t.policy_id == policy_id]

    def running_timers(self) -> List[TimerInstance]:
        return [t for t in self._timers.values() if t.status == TimerStatus.RUNNING]

    def active_timers(self) -> List[TimerInstance]:
        return [t for t in self._timers.values() if not t.is_terminal]

    def is_tracked(self, key: TimerKey) -> bool:
        case_id, metric = key
        return key in self._timers or metric in self._finished.get(case_id, ())

    def mark_finished(self, key: TimerKey) -> None:
        """Record a terminal timer that lives only in storage."""
        case_id, metric = key
        self._finished.setdefault(case_id, set()).add(metric)

    def evict(self, key: TimerKey) -> bool:
        """Drop a terminal timer from the working set."""
        timer = self._timers.get(key)
        if timer is None or not timer.is_terminal:
            return False
        del self._timers[key]
        self.mark_finished(key)
        return True

    def forget_case(self, case_id: str) -> bool:
        """
        Drop a case's finished set once none of its timers are held.

        The case must be reloaded from storage before it is tracked again.
        """
        if any(t.case_id == case_id for t in self._timers.values()):
            return False
        self._finished.pop(case_id, None)
        return True

    def __len__(self) -> int:
        return len(self._timers)

    # ========== Creation ==========

    def plan_creations(
        self,
        event: CaseEvent,
        policies: Iterable[TrackingPolicy]
    ) -> List[Tuple[MetricType, TrackingPolicy]]:
        """
        Decide which timers a case event starts.

        The first policy (catalog priority order) tracking a metric wins.
        Closing and deletion events never start timers. A policy whose
        calendar is malformed is skipped for this case.
        """
        if event.event_type in CLOSING_EVENTS or event.event_type == CaseEventType.DELETED:
            return []

        planned: Dict[MetricType, TrackingPolicy] = {}
        for policy in policies:
            metrics = [
                m for m in policy.tracked_metrics()
                if m not in planned and not self.is_tracked((event.case_id, m))
            ]
            if not metrics:
                continue
            try:
                policy.business_calendar
            except InvalidCalendar as e:
                logger.warning(
                    "Skipping policy with invalid calendar",
                    extra={
                        "case_id": event.case_id,
                        "policy_id": policy.id,
                        "policy_version": policy.version,
                        "error": e.message,
                    }
                )
                continue
            for metric in metrics:
                planned[metric] = policy
        return list(planned.items())

    def create(
        self,
        event: CaseEvent,
        policy: TrackingPolicy,
        metric: MetricType
    ) -> Optional[TimerUpdate]:
        """
        Start a timer for (case, metric) and evaluate the creating event's
        pause/stop rules against it.

        Returns an empty update when the pair is already tracked, and None
        when its timer has finished and been evicted.
        """
        key = (event.case_id, metric)
        existing = self._timers.get(key)
        if existing is not None:
            return TimerUpdate(existing)
        if self.is_tracked(key):
            return None

        self.remember_policy(policy)
        timer = TimerInstance(
            case_id=event.case_id,
            tenant_id=event.tenant_id,
            metric=metric,
            policy_id=policy.id,
            policy_version=policy.version,
            target_minutes=policy.target_for(metric),
            started_at=event.timestamp,
        )
        self._timers[key] = timer

        update = TimerUpdate(timer)
        update.events.append(TimerEvent.for_transition(
            timer,
            TimerEventType.STARTED,
            None,
            TriggerSource.CASE_EVENT,
            timer.started_at,
            reason="policy_applied",
            triggered_by=event.triggered_by,
            data={"policy_id": policy.id, "policy_version": policy.version,
                  "target_minutes": timer.target_minutes},
        ))
        get_context_logger(__name__, case_id=timer.case_id, timer_id=timer.id).info(
            "Timer started",
            extra={"metric": metric.value, "policy_id": policy.id,
                   "target_minutes": timer.target_minutes}
        )

        self._apply(timer, policy, event, update, natural_end=False)
        return update

    # ========== Recompute ==========

    def apply_event(self, key: TimerKey, event: CaseEvent) -> TimerUpdate:
        """
        Recompute a timer at the event time and apply the event.

        Order: accrue, violation check, natural end, stop rule, pause or
        resume rule, escalation check.
        """
        timer = self._timers[key]
        update = TimerUpdate(timer)
        if timer.is_terminal:
            return update

        policy = self._require_policy(timer)
        self._apply(timer, policy, event, update, natural_end=True)
        return update

    def recompute(self, key: TimerKey, at: datetime) -> TimerUpdate:
        """
        Periodic recompute of a running timer.

        Only accrues and checks the target; rules are evaluated on case
        events.
        """
        timer = self._timers[key]
        update = TimerUpdate(timer)
        if timer.status != TimerStatus.RUNNING:
            return update

        policy = self._require_policy(timer)
        at = self._clamp(timer, at)
        self._accrue(timer, policy, at, update)
        self._check_target(timer, at, update, TriggerSource.SYSTEM_TICK)
        self._dispatcher.after_recompute(timer, policy, update, at, TriggerSource.SYSTEM_TICK)
        return update

    def cancel(
        self,
        key: TimerKey,
        at: datetime,
        triggered_by: str = SYSTEM_ACTOR,
        reason: str = "cancelled"
    ) -> TimerUpdate:
        """
        Force a non-terminal timer to completed without a violation.

        Used for case deletion and policy deactivation.
        """
        timer = self._timers[key]
        update = TimerUpdate(timer)
        if timer.is_terminal:
            return update

        at = self._clamp(timer, at)
        policy = self.policy_for(timer)
        if policy is not None:
            self._accrue(timer, policy, at, update)

        previous = timer.status
        timer.complete(at, reason)
        update.events.append(TimerEvent.for_transition(
            timer, TimerEventType.COMPLETED, previous, TriggerSource.EXTERNAL_ACTION,
            at, reason=reason, triggered_by=triggered_by,
        ))
        self._log_transition(timer, "Timer cancelled", reason)
        return update

    # ========== Internals ==========

    def _require_policy(self, timer: TimerInstance) -> TrackingPolicy:
        policy = self.policy_for(timer)
        if policy is None:
            raise ResourceNotFoundException(
                "TrackingPolicy", f"{timer.policy_id}@v{timer.policy_version}"
            )
        return policy

    @staticmethod
    def _clamp(timer: TimerInstance, at: datetime) -> datetime:
        """Time never moves backwards for an instance."""
        at = ensure_utc(at)
        if timer.accrued_until is not None and at < timer.accrued_until:
            return timer.accrued_until
        return at

    @staticmethod
    def _accrue(
        timer: TimerInstance,
        policy: TrackingPolicy,
        at: datetime,
        update: TimerUpdate
    ) -> None:
        before = timer.elapsed
        timer.accrue(policy.business_calendar, at)
        if timer.elapsed != before:
            update.accrued = True

    def _check_target(
        self,
        timer: TimerInstance,
        at: datetime,
        update: TimerUpdate,
        trigger: TriggerSource
    ) -> None:
        if timer.status != TimerStatus.RUNNING or not timer.target_reached:
            return
        timer.violate(at)
        update.violated = True
        update.events.append(TimerEvent.for_transition(
            timer, TimerEventType.VIOLATED, TimerStatus.RUNNING, trigger,
            at, reason="target_reached",
            data={"breach_minutes": timer.breach_minutes},
        ))
        get_context_logger(__name__, case_id=timer.case_id, timer_id=timer.id).warning(
            "Timer violated",
            extra={"metric": timer.metric.value, "elapsed_minutes": timer.elapsed_minutes,
                   "target_minutes": timer.target_minutes}
        )

    def _rule_snapshot(
        self,
        timer: TimerInstance,
        snapshot: Mapping[str, Any],
        at: datetime
    ) -> Dict[str, Any]:
        merged = timer.snapshot_fields(at)
        merged.update(snapshot)
        return merged

    def _apply(
        self,
        timer: TimerInstance,
        policy: TrackingPolicy,
        event: CaseEvent,
        update: TimerUpdate,
        natural_end: bool
    ) -> None:
        at = self._clamp(timer, event.timestamp)
        self._accrue(timer, policy, at, update)
        timer.record_activity(event.event_type, at)
        self._check_target(timer, at, update, TriggerSource.CASE_EVENT)

        if not timer.is_terminal:
            self._transition(timer, policy, event, at, update, natural_end)

        self._dispatcher.after_recompute(timer, policy, update, at, TriggerSource.CASE_EVENT)

    def _transition(
        self,
        timer: TimerInstance,
        policy: TrackingPolicy,
        event: CaseEvent,
        at: datetime,
        update: TimerUpdate,
        natural_end: bool
    ) -> None:
        previous = timer.status
        actor = event.triggered_by

        if natural_end and event.event_type in NATURAL_END_EVENTS[timer.metric]:
            reason = _natural_end_reason(timer.metric, event.event_type)
            timer.complete(at, reason)
            update.events.append(TimerEvent.for_transition(
                timer, TimerEventType.COMPLETED, previous, TriggerSource.CASE_EVENT,
                at, reason=reason, triggered_by=actor,
                data={"case_event": event.event_type.value},
            ))
            self._log_transition(timer, "Timer completed", reason)
            return

        snapshot = self._rule_snapshot(timer, event.snapshot, at)

        if self._evaluator.evaluate(policy.stop_conditions, snapshot):
            timer.complete(at, "stop_condition")
            update.events.append(TimerEvent.for_transition(
                timer, TimerEventType.COMPLETED, previous, TriggerSource.RULE_MATCH,
                at, reason="stop_condition", triggered_by=actor,
            ))
            self._log_transition(timer, "Timer completed", "stop_condition")
            return

        pause_matches = self._evaluator.evaluate(policy.pause_conditions, snapshot)

        if timer.status == TimerStatus.RUNNING and pause_matches:
            timer.pause(at)
            update.events.append(TimerEvent.for_transition(
                timer, TimerEventType.PAUSED, previous, TriggerSource.RULE_MATCH,
                at, reason="pause_condition", triggered_by=actor,
            ))
            self._log_transition(timer, "Timer paused", "pause_condition")
            return

        if timer.status == TimerStatus.PAUSED:
            if policy.resume_conditions is not None:
                should_resume = self._evaluator.evaluate(policy.resume_conditions, snapshot)
                reason = "resume_condition"
            else:
                should_resume = not pause_matches
                reason = "pause_condition_cleared"
            if should_resume:
                paused_at = timer.paused_at
                timer.resume(at)
                update.events.append(TimerEvent.for_transition(
                    timer, TimerEventType.RESUMED, previous, TriggerSource.RULE_MATCH,
                    at, reason=reason, triggered_by=actor,
                    data={"paused_at": paused_at.isoformat() if paused_at else None},
                ))
                self._log_transition(timer, "Timer resumed", reason)

    @staticmethod
    def _log_transition(timer: TimerInstance, message: str, reason: str) -> None:
        get_context_logger(__name__, case_id=timer.case_id, timer_id=timer.id).info(
            message,
            extra={"metric": timer.metric.value, "reason": reason,
                   "status": timer.status.value, "elapsed_minutes": timer.elapsed_minutes}
        )


# ========== Reporting ==========

@dataclass
class ComplianceSummary:
    """Aggregate commitment compliance over a set of timers."""

    total: int = 0
    met: int = 0
    violated: int = 0
    running: int = 0
    paused: int = 0
    cancelled: int = 0
    compliance_percentage: float = 100.0
    average_elapsed_minutes: Dict[str, float] = field(default_factory=dict)
    total_escalations: int = 0
    escalation_rate: float = 0.0


class ComplianceService:
    """Compliance reporting over stored timers."""

    def __init__(self, timer_repository: ITimerRepository):
        self._timer_repo = timer_repository

    async def summarize(
        self,
        tenant_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> ComplianceSummary:
        """
        Summarize timers started in [start, end).

        Compliance is met / (met + violated); cancelled timers count in
        total but not in compliance.
        """
        timers = await self._timer_repo.list(
            tenant_id=tenant_id, started_from=start, started_to=end
        )
        summary = ComplianceSummary(total=len(timers))
        if not timers:
            return summary

        elapsed_by_metric: Dict[str, List[int]] = {}
        escalated = 0
        for timer in timers:
            if timer.status == TimerStatus.VIOLATED:
                summary.violated += 1
            elif timer.status == TimerStatus.RUNNING:
                summary.running += 1
            elif timer.status == TimerStatus.PAUSED:
                summary.paused += 1
            elif timer.completion_reason == "cancelled":
                summary.cancelled += 1
            else:
                summary.met += 1

            elapsed_by_metric.setdefault(timer.metric.value, []).append(timer.elapsed_minutes)
            summary.total_escalations += timer.escalation_level
            if timer.escalation_level > 0:
                escalated += 1

        finished = summary.met + summary.violated
        if finished:
            summary.compliance_percentage = round(summary.met / finished * 100, 2)
        summary.average_elapsed_minutes = {
            metric: round(sum(values) / len(values), 2)
            for metric, values in elapsed_by_metric.items()
        }
        summary.escalation_rate = round(escalated / summary.total * 100, 2)
        return summary


class ViolationReviewService:
    """
    External review workflow over violation records.

    The engine never calls this; it backs the annotation endpoint.
    """

    def __init__(self, violation_repository: IViolationRepository, clock: IClock):
        self._violation_repo = violation_repository
        self._clock = clock

    async def annotate(
        self,
        violation_id: str,
        reviewer: str,
        acknowledged: Optional[bool] = None,
        resolved: Optional[bool] = None,
        resolution_notes: Optional[str] = None,
        root_cause: Optional[str] = None,
        preventive_actions: Optional[str] = None,
        business_impact: Optional[str] = None,
    ) -> ViolationRecord:
        """
        Apply review annotations.

        Raises:
            ResourceNotFoundException: If the violation does not exist
        """
        record = await self._violation_repo.get(violation_id)
        if record is None:
            raise ResourceNotFoundException("Violation", violation_id)

        now = self._clock.now()
        if acknowledged:
            record.acknowledge(reviewer, now)
        if resolved:
            record.resolve(reviewer, now, resolution_notes)
        elif resolution_notes is not None:
            record.resolution_notes = resolution_notes
        if root_cause is not None:
            record.root_cause = root_cause
        if preventive_actions is not None:
            record.preventive_actions = preventive_actions
        if business_impact is not None:
            record.business_impact = business_impact

        logger.info(
            "Violation annotated",
            extra={"violation_id": violation_id, "case_id": record.case_id}
        )
        return await self._violation_repo.update(record)


class SystemClock(IClock):
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)
