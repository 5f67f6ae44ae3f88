"""
Tracking Infrastructure Repositories
====================================

Concrete implementations of the repository and catalog interfaces.

- SQLAlchemy repositories: timer snapshots, audit events, violations
- In-memory repositories: tests and database-less runs
- Policy catalogs: in-memory and YAML file backed

SQLAlchemy repositories open one session per call through a session
factory, since they are driven from the background delivery queue rather
than from a request scope.
"""

import copy
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import (
    Any,
    AsyncContextManager,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Set,
)

import yaml
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from sla_engine.config import (
    MetricType,
    Severity,
    TimerEventType,
    TimerStatus,
    TriggerSource,
)
from sla_engine.core import (
    InvalidRule,
    PersistenceFailure,
    PolicyCatalogUnavailable,
    ValidationException,
)
from sla_engine.infrastructure.database import get_session_context
from sla_engine.shared.infrastructure.logging import get_logger
from sla_engine.tracking.application.services import (
    IPolicyCatalog,
    ITimerEventRepository,
    ITimerRepository,
    IViolationRepository,
)
from sla_engine.tracking.domain import (
    ConditionEvaluator,
    TimerEvent,
    TimerInstance,
    TrackingPolicy,
    ViolationRecord,
    ensure_utc,
)
from sla_engine.tracking.infrastructure.models import (
    TimerEventModel,
    TimerInstanceModel,
    ViolationModel,
)

logger = get_logger(__name__)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # sqlite hands back naive datetimes
    return ensure_utc(value) if value is not None else None


# ========== SQLAlchemy Repositories ==========

class SQLAlchemyTimerRepository(ITimerRepository):
    """
    SQLAlchemy implementation of the timer repository.

    Stores the latest snapshot of every timer.
    """

    def __init__(self, session_factory: SessionFactory = get_session_context):
        self._session_factory = session_factory

    @staticmethod
    def _to_model(timer: TimerInstance) -> TimerInstanceModel:
        return TimerInstanceModel(
            id=timer.id,
            tenant_id=timer.tenant_id,
            case_id=timer.case_id,
            metric=timer.metric.value,
            policy_id=timer.policy_id,
            policy_version=timer.policy_version,
            status=timer.status.value,
            target_minutes=timer.target_minutes,
            elapsed_seconds=timer.elapsed.total_seconds(),
            paused_seconds=timer.paused.total_seconds(),
            accrued_until=timer.accrued_until,
            started_at=timer.started_at,
            paused_at=timer.paused_at,
            resumed_at=timer.resumed_at,
            completed_at=timer.completed_at,
            violated_at=timer.violated_at,
            completion_reason=timer.completion_reason,
            escalation_level=timer.escalation_level,
            escalated_at=timer.escalated_at,
            last_activity_at=timer.last_activity_at,
            last_agent_activity_at=timer.last_agent_activity_at,
            last_customer_activity_at=timer.last_customer_activity_at,
        )

    @staticmethod
    def _to_domain(model: TimerInstanceModel) -> TimerInstance:
        return TimerInstance(
            id=model.id,
            tenant_id=model.tenant_id,
            case_id=model.case_id,
            metric=MetricType(model.metric),
            policy_id=model.policy_id,
            policy_version=model.policy_version,
            status=TimerStatus(model.status),
            target_minutes=model.target_minutes,
            elapsed=timedelta(seconds=model.elapsed_seconds),
            paused=timedelta(seconds=model.paused_seconds),
            accrued_until=_utc(model.accrued_until),
            started_at=_utc(model.started_at),
            paused_at=_utc(model.paused_at),
            resumed_at=_utc(model.resumed_at),
            completed_at=_utc(model.completed_at),
            violated_at=_utc(model.violated_at),
            completion_reason=model.completion_reason,
            escalation_level=model.escalation_level,
            escalated_at=_utc(model.escalated_at),
            last_activity_at=_utc(model.last_activity_at),
            last_agent_activity_at=_utc(model.last_agent_activity_at),
            last_customer_activity_at=_utc(model.last_customer_activity_at),
        )

    async def save(self, timer: TimerInstance) -> None:
        """Insert or replace the timer snapshot."""
        try:
            async with self._session_factory() as session:
                await session.merge(self._to_model(timer))
        except SQLAlchemyError as e:
            raise PersistenceFailure(
                f"Failed to save timer {timer.id}", {"error": str(e)}
            ) from e

    async def get(self, timer_id: str) -> Optional[TimerInstance]:
        async with self._session_factory() as session:
            model = await session.get(TimerInstanceModel, timer_id)
            return self._to_domain(model) if model else None

    async def list_by_case(self, case_id: str) -> List[TimerInstance]:
        stmt = select(TimerInstanceModel).where(TimerInstanceModel.case_id == case_id)
        return await self._fetch(stmt)

    async def list_active(self) -> List[TimerInstance]:
        stmt = select(TimerInstanceModel).where(
            TimerInstanceModel.status.in_([TimerStatus.RUNNING.value, TimerStatus.PAUSED.value])
        )
        return await self._fetch(stmt)

    async def list(
        self,
        tenant_id: Optional[str] = None,
        started_from: Optional[datetime] = None,
        started_to: Optional[datetime] = None
    ) -> List[TimerInstance]:
        """List timers with filters."""
        stmt = select(TimerInstanceModel)
        if tenant_id:
            stmt = stmt.where(TimerInstanceModel.tenant_id == tenant_id)
        if started_from:
            stmt = stmt.where(TimerInstanceModel.started_at >= started_from)
        if started_to:
            stmt = stmt.where(TimerInstanceModel.started_at < started_to)
        return await self._fetch(stmt)

    async def _fetch(self, stmt) -> List[TimerInstance]:
        stmt = stmt.order_by(TimerInstanceModel.started_at.asc())
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [self._to_domain(m) for m in result.scalars().all()]


class SQLAlchemyTimerEventRepository(ITimerEventRepository):
    """SQLAlchemy implementation of the timer audit log."""

    def __init__(self, session_factory: SessionFactory = get_session_context):
        self._session_factory = session_factory

    @staticmethod
    def _to_domain(model: TimerEventModel) -> TimerEvent:
        return TimerEvent(
            id=model.id,
            tenant_id=model.tenant_id,
            timer_id=model.timer_id,
            case_id=model.case_id,
            metric=MetricType(model.metric),
            event_type=TimerEventType(model.event_type),
            previous_status=TimerStatus(model.previous_status) if model.previous_status else None,
            new_status=TimerStatus(model.new_status),
            elapsed_minutes=model.elapsed_minutes,
            remaining_minutes=model.remaining_minutes,
            trigger=TriggerSource(model.trigger),
            reason=model.reason,
            triggered_by=model.triggered_by,
            occurred_at=_utc(model.occurred_at),
            data=dict(model.data or {}),
        )

    async def append(self, event: TimerEvent) -> None:
        """Append an event; a redelivered event replaces its own row."""
        model = TimerEventModel(
            id=event.id,
            tenant_id=event.tenant_id,
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
        try:
            async with self._session_factory() as session:
                await session.merge(model)
        except SQLAlchemyError as e:
            raise PersistenceFailure(
                f"Failed to append timer event {event.id}", {"error": str(e)}
            ) from e

    async def list_by_timer(self, timer_id: str) -> List[TimerEvent]:
        stmt = select(TimerEventModel).where(TimerEventModel.timer_id == timer_id)
        return await self._fetch(stmt)

    async def list_by_case(self, case_id: str) -> List[TimerEvent]:
        stmt = select(TimerEventModel).where(TimerEventModel.case_id == case_id)
        return await self._fetch(stmt)

    async def _fetch(self, stmt) -> List[TimerEvent]:
        stmt = stmt.order_by(TimerEventModel.occurred_at.asc())
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [self._to_domain(m) for m in result.scalars().all()]


_VIOLATION_FIELDS = (
    "id", "tenant_id", "timer_id", "case_id", "policy_id", "policy_version",
    "target_minutes", "actual_minutes", "violation_minutes", "violation_percentage",
    "acknowledged", "acknowledged_by", "resolved", "resolved_by",
    "resolution_notes", "root_cause", "preventive_actions", "business_impact",
)
_VIOLATION_TIMESTAMPS = ("violated_at", "acknowledged_at", "resolved_at")


class SQLAlchemyViolationRepository(IViolationRepository):
    """SQLAlchemy implementation of the violation repository."""

    def __init__(self, session_factory: SessionFactory = get_session_context):
        self._session_factory = session_factory

    @staticmethod
    def _to_domain(model: ViolationModel) -> ViolationRecord:
        values: Dict[str, Any] = {name: getattr(model, name) for name in _VIOLATION_FIELDS}
        values.update({name: _utc(getattr(model, name)) for name in _VIOLATION_TIMESTAMPS})
        return ViolationRecord(
            metric=MetricType(model.metric),
            severity=Severity(model.severity),
            **values,
        )

    @staticmethod
    def _apply(model: ViolationModel, record: ViolationRecord) -> ViolationModel:
        for name in _VIOLATION_FIELDS + _VIOLATION_TIMESTAMPS:
            setattr(model, name, getattr(record, name))
        model.metric = record.metric.value
        model.severity = record.severity.value
        return model

    async def create(self, record: ViolationRecord) -> ViolationRecord:
        """Store a record unless the timer already has one."""
        try:
            async with self._session_factory() as session:
                stmt = select(ViolationModel).where(ViolationModel.timer_id == record.timer_id)
                existing = (await session.execute(stmt)).scalar_one_or_none()
                if existing is not None:
                    return self._to_domain(existing)
                session.add(self._apply(ViolationModel(), record))
        except SQLAlchemyError as e:
            raise PersistenceFailure(
                f"Failed to create violation for timer {record.timer_id}", {"error": str(e)}
            ) from e
        return record

    async def get(self, violation_id: str) -> Optional[ViolationRecord]:
        async with self._session_factory() as session:
            model = await session.get(ViolationModel, violation_id)
            return self._to_domain(model) if model else None

    async def get_by_timer(self, timer_id: str) -> Optional[ViolationRecord]:
        stmt = select(ViolationModel).where(ViolationModel.timer_id == timer_id)
        async with self._session_factory() as session:
            model = (await session.execute(stmt)).scalar_one_or_none()
            return self._to_domain(model) if model else None

    async def list(
        self,
        case_id: Optional[str] = None,
        severity: Optional[Severity] = None,
        unresolved_only: bool = False
    ) -> List[ViolationRecord]:
        """List violations with filters, newest first."""
        stmt = select(ViolationModel)
        if case_id:
            stmt = stmt.where(ViolationModel.case_id == case_id)
        if severity:
            stmt = stmt.where(ViolationModel.severity == Severity(severity).value)
        if unresolved_only:
            stmt = stmt.where(ViolationModel.resolved.is_(False))
        stmt = stmt.order_by(ViolationModel.violated_at.desc())

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [self._to_domain(m) for m in result.scalars().all()]

    async def update(self, record: ViolationRecord) -> ViolationRecord:
        try:
            async with self._session_factory() as session:
                model = await session.get(ViolationModel, record.id)
                if model is None:
                    raise PersistenceFailure(f"Violation {record.id} not found")
                self._apply(model, record)
        except SQLAlchemyError as e:
            raise PersistenceFailure(
                f"Failed to update violation {record.id}", {"error": str(e)}
            ) from e
        return record


# ========== In-Memory Repositories ==========

class InMemoryTimerRepository(ITimerRepository):
    """Dictionary-backed timer snapshots."""

    def __init__(self):
        self._timers: Dict[str, TimerInstance] = {}

    async def save(self, timer: TimerInstance) -> None:
        self._timers[timer.id] = copy.copy(timer)

    async def get(self, timer_id: str) -> Optional[TimerInstance]:
        timer = self._timers.get(timer_id)
        return copy.copy(timer) if timer else None

    async def list_by_case(self, case_id: str) -> List[TimerInstance]:
        return self._select(lambda t: t.case_id == case_id)

    async def list_active(self) -> List[TimerInstance]:
        return self._select(lambda t: not t.is_terminal)

    async def list(
        self,
        tenant_id: Optional[str] = None,
        started_from: Optional[datetime] = None,
        started_to: Optional[datetime] = None
    ) -> List[TimerInstance]:
        started_from = _utc(started_from)
        started_to = _utc(started_to)
        return self._select(
            lambda t: (tenant_id is None or t.tenant_id == tenant_id)
            and (started_from is None or t.started_at >= started_from)
            and (started_to is None or t.started_at < started_to)
        )

    def _select(self, predicate: Callable[[TimerInstance], bool]) -> List[TimerInstance]:
        matches = [copy.copy(t) for t in self._timers.values() if predicate(t)]
        return sorted(matches, key=lambda t: t.started_at)


class InMemoryTimerEventRepository(ITimerEventRepository):
    """List-backed audit log."""

    def __init__(self):
        self._events: List[TimerEvent] = []
        self._ids: Set[str] = set()

    async def append(self, event: TimerEvent) -> None:
        if event.id in self._ids:
            return
        self._ids.add(event.id)
        self._events.append(event)

    async def list_by_timer(self, timer_id: str) -> List[TimerEvent]:
        return [e for e in self._events if e.timer_id == timer_id]

    async def list_by_case(self, case_id: str) -> List[TimerEvent]:
        return [e for e in self._events if e.case_id == case_id]


class InMemoryViolationRepository(IViolationRepository):
    """Dictionary-backed violation records, one per timer."""

    def __init__(self):
        self._records: Dict[str, ViolationRecord] = {}
        self._by_timer: Dict[str, str] = {}

    async def create(self, record: ViolationRecord) -> ViolationRecord:
        existing_id = self._by_timer.get(record.timer_id)
        if existing_id is not None:
            return copy.copy(self._records[existing_id])
        self._records[record.id] = copy.copy(record)
        self._by_timer[record.timer_id] = record.id
        return record

    async def get(self, violation_id: str) -> Optional[ViolationRecord]:
        record = self._records.get(violation_id)
        return copy.copy(record) if record else None

    async def get_by_timer(self, timer_id: str) -> Optional[ViolationRecord]:
        violation_id = self._by_timer.get(timer_id)
        return await self.get(violation_id) if violation_id else None

    async def list(
        self,
        case_id: Optional[str] = None,
        severity: Optional[Severity] = None,
        unresolved_only: bool = False
    ) -> List[ViolationRecord]:
        severity = Severity(severity) if severity else None
        records = [
            copy.copy(r) for r in self._records.values()
            if (case_id is None or r.case_id == case_id)
            and (severity is None or r.severity == severity)
            and not (unresolved_only and r.resolved)
        ]
        return sorted(records, key=lambda r: r.violated_at, reverse=True)

    async def update(self, record: ViolationRecord) -> ViolationRecord:
        if record.id not in self._records:
            raise PersistenceFailure(f"Violation {record.id} not found")
        self._records[record.id] = copy.copy(record)
        return record


# ========== Policy Catalogs ==========

class InMemoryPolicyCatalog(IPolicyCatalog):
    """
    Versioned policy catalog held in memory.

    Every published version is kept so that timers started under an older
    version can still look it up. Resolution only considers the latest
    version of each listed policy.
    """

    def __init__(
        self,
        policies: Iterable[TrackingPolicy] = (),
        evaluator: Optional[ConditionEvaluator] = None
    ):
        self._versions: Dict[str, Dict[int, TrackingPolicy]] = {}
        self._listed: Set[str] = set()
        self._lock = threading.Lock()
        self._evaluator = evaluator or ConditionEvaluator()
        for policy in policies:
            self.publish(policy)

    def publish(self, policy: TrackingPolicy) -> TrackingPolicy:
        """
        Add a policy version.

        Raises:
            ValidationException: If the version exists with different content
        """
        with self._lock:
            versions = self._versions.setdefault(policy.id, {})
            existing = versions.get(policy.version)
            if existing is not None and existing.model_dump() != policy.model_dump():
                raise ValidationException(
                    f"Policy {policy.id} version {policy.version} already published; "
                    "publish a new version instead",
                    {"policy_id": policy.id, "version": policy.version}
                )
            versions.setdefault(policy.version, policy)
            self._listed.add(policy.id)
            return versions[policy.version]

    def latest(self, policy_id: str) -> Optional[TrackingPolicy]:
        with self._lock:
            return self._latest(policy_id)

    def _latest(self, policy_id: str) -> Optional[TrackingPolicy]:
        # Caller holds the lock
        versions = self._versions.get(policy_id)
        if not versions:
            return None
        return versions[max(versions)]

    def policies(self) -> List[TrackingPolicy]:
        """Latest version of every listed policy, highest priority first."""
        with self._lock:
            latest = [self._latest(pid) for pid in self._listed]
        return sorted(
            (p for p in latest if p is not None),
            key=lambda p: (-p.priority, p.id)
        )

    async def resolve_applicable_policies(
        self,
        snapshot: Mapping[str, Any],
        tenant_id: str,
        at: datetime
    ) -> List[TrackingPolicy]:
        return [
            policy for policy in self.policies()
            if policy.tenant_id == tenant_id
            and policy.is_effective(at)
            and self._evaluator.evaluate(policy.application_rules, snapshot, default=True)
        ]

    async def get_policy(
        self,
        policy_id: str,
        version: Optional[int] = None
    ) -> Optional[TrackingPolicy]:
        if version is None:
            return self.latest(policy_id)
        with self._lock:
            return self._versions.get(policy_id, {}).get(version)

    async def deactivate(self, policy_id: str) -> Optional[TrackingPolicy]:
        current = self.latest(policy_id)
        if current is None:
            return None
        if not current.is_active:
            return current
        retired = current.model_copy(
            update={"version": current.version + 1, "is_active": False}
        )
        logger.info(
            "Policy deactivated",
            extra={"policy_id": policy_id, "policy_version": retired.version}
        )
        return self.publish(retired)


class YAMLPolicyCatalog(InMemoryPolicyCatalog):
    """
    Policy catalog loaded from a YAML file.

    The file holds a top-level ``policies`` list. Invalid policies are
    skipped and logged; policies removed from the file stop applying to new
    cases but stay resolvable by version for running timers.
    """

    def __init__(self, path: Path, evaluator: Optional[ConditionEvaluator] = None):
        super().__init__(evaluator=evaluator)
        self._path = Path(path)
        self._loaded = False

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> int:
        """
        Load (or reload) the catalog file.

        Returns:
            Number of policies listed after the load

        Raises:
            PolicyCatalogUnavailable: If the file cannot be read or parsed
        """
        if not self._path.exists():
            logger.warning(f"Policy catalog file not found: {self._path}, no policies loaded")
            self._loaded = True
            return 0

        try:
            with open(self._path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise PolicyCatalogUnavailable(
                f"Cannot read policy catalog {self._path}", {"error": str(e)}
            ) from e

        entries = data.get("policies", []) if isinstance(data, dict) else data
        if not isinstance(entries, list):
            raise PolicyCatalogUnavailable(
                f"Policy catalog {self._path} must hold a list of policies"
            )

        listed: Set[str] = set()
        for index, entry in enumerate(entries):
            policy = self._parse(index, entry)
            if policy is None:
                continue
            try:
                self.publish(policy)
            except ValidationException as e:
                logger.warning(e.message, extra=e.details)
                continue
            listed.add(policy.id)

        with self._lock:
            self._listed = listed
        self._loaded = True
        logger.info(
            "Policy catalog loaded",
            extra={"path": str(self._path), "policies": len(listed)}
        )
        return len(listed)

    def reload(self) -> bool:
        """Reload from file, keeping the previous catalog on failure."""
        try:
            self.load()
            return True
        except PolicyCatalogUnavailable as e:
            logger.error(f"Failed to reload policy catalog: {e.message}", extra=e.details)
            return False

    def _parse(self, index: int, entry: Any) -> Optional[TrackingPolicy]:
        if not isinstance(entry, dict):
            logger.warning(
                "Skipping malformed policy entry",
                extra={"path": str(self._path), "index": index}
            )
            return None
        try:
            return TrackingPolicy(**entry)
        except (ValidationError, InvalidRule) as e:
            logger.warning(
                "Skipping invalid policy",
                extra={"path": str(self._path), "index": index,
                       "policy_id": entry.get("id"), "error": str(e)}
            )
            return None

    async def resolve_applicable_policies(
        self,
        snapshot: Mapping[str, Any],
        tenant_id: str,
        at: datetime
    ) -> List[TrackingPolicy]:
        if not self._loaded:
            raise PolicyCatalogUnavailable(f"Policy catalog {self._path} not loaded")
        return await super().resolve_applicable_policies(snapshot, tenant_id, at)

    async def get_policy(
        self,
        policy_id: str,
        version: Optional[int] = None
    ) -> Optional[TrackingPolicy]:
        if not self._loaded:
            raise PolicyCatalogUnavailable(f"Policy catalog {self._path} not loaded")
        return await super().get_policy(policy_id, version)
