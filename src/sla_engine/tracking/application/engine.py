"""
Tracking Engine
===============

Event intake, periodic sweep and delivery for the tracking module.

Concurrency model (asyncio):
- One lazily created lock per (case, metric) key; no global lock. A lock is
  held only while the manager computes the new state and is reaped once
  its timer is terminal and nobody holds or waits for it.
- Timer snapshots, audit events and violation records go through one
  outbound queue, escalation commands through another. Both deliver
  at-least-once with exponential backoff and keep a dead-letter list when
  the retry budget is spent. A failed delivery never rolls back the
  in-memory transition.
- The sweep recomputes all running timers concurrently, isolating failures
  per timer.
- A terminal timer leaves the working set once its final snapshot is saved.
  Its case keeps the finished metrics while a handler for the case runs,
  and reloads them from storage when next touched.
"""

import asyncio
import copy
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Hashable,
    List,
    Optional,
    Set,
)

from sla_engine.config import SYSTEM_ACTOR, CaseEventType, TimerStatus
from sla_engine.core import (
    InvalidCalendar,
    PolicyCatalogUnavailable,
    ResourceNotFoundException,
)
from sla_engine.shared.infrastructure.logging import (
    get_context_logger,
    get_logger,
    log_latency,
)
from sla_engine.tracking.application.services import (
    IClock,
    IEscalationSink,
    IPolicyCatalog,
    ITimerEventRepository,
    ITimerRepository,
    IViolationRepository,
    TimerInstanceManager,
    TimerKey,
    TimerUpdate,
)
from sla_engine.tracking.domain import (
    CaseEvent,
    TimerEvent,
    TimerInstance,
    TrackingPolicy,
)

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class KeyedLockRegistry:
    """
    Lazily created asyncio locks keyed by timer identity.

    A key's lock is dropped once the key has been marked terminal and has
    no holders or waiters left.
    """

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._holders: Dict[Hashable, int] = {}
        self._terminal: Set[Hashable] = set()

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                if key in self._terminal:
                    self._reap(key)

    def mark_terminal(self, key: Hashable) -> None:
        self._terminal.add(key)
        if key not in self._holders:
            self._reap(key)

    def _reap(self, key: Hashable) -> None:
        self._locks.pop(key, None)
        self._terminal.discard(key)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._locks

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class DeadLetter:
    """An outbound operation that exhausted its retries."""
    label: str
    error: str
    attempts: int
    failed_at: datetime


class OutboundQueue:
    """
    At-least-once delivery of awaitable operations with exponential backoff.

    Operations run one at a time in submission order, by a background
    worker once started, or on demand via flush().
    """

    def __init__(
        self,
        name: str,
        max_retries: int = 5,
        backoff_seconds: float = 1.0,
        sleep: Sleep = asyncio.sleep,
    ):
        self.name = name
        self.max_retries = max(1, max_retries)
        self.backoff_seconds = backoff_seconds
        self.dead_letters: List[DeadLetter] = []
        self._sleep = sleep
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

    def submit(self, label: str, operation: Callable[[], Awaitable[Any]]) -> None:
        self._queue.put_nowait((label, operation))

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def _deliver(self, label: str, operation: Callable[[], Awaitable[Any]]) -> bool:
        for attempt in range(self.max_retries):
            try:
                await operation()
                return True
            except Exception as e:
                if attempt == self.max_retries - 1:
                    self.dead_letters.append(DeadLetter(
                        label=label,
                        error=str(e),
                        attempts=attempt + 1,
                        failed_at=datetime.now(timezone.utc),
                    ))
                    logger.error(
                        "Outbound delivery dead-lettered",
                        extra={"queue": self.name, "operation": label,
                               "attempts": attempt + 1, "error": str(e)}
                    )
                    return False

                delay = self.backoff_seconds * 2 ** attempt
                logger.warning(
                    "Outbound delivery failed, retrying",
                    extra={"queue": self.name, "operation": label,
                           "attempt": attempt + 1, "delay_seconds": delay, "error": str(e)}
                )
                await self._sleep(delay)
        return False

    async def _run(self) -> None:
        while True:
            label, operation = await self._queue.get()
            try:
                await self._deliver(label, operation)
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Deliver everything queued right now, in the caller's task."""
        while not self._queue.empty():
            label, operation = self._queue.get_nowait()
            try:
                await self._deliver(label, operation)
            finally:
                self._queue.task_done()

    async def flush(self) -> None:
        """Wait until everything submitted so far has been delivered or dead-lettered."""
        if self._worker is not None and not self._worker.done():
            await self._queue.join()
        else:
            await self.drain()

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name=f"outbound-{self.name}")

    async def stop(self) -> None:
        """Stop the worker and deliver what is left."""
        if self._worker is not None:
            await self._queue.join()
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        await self.drain()


@dataclass
class IntakeResult:
    """Outcome of applying one case event (or a cancellation) to a case."""
    case_id: str
    started: int = 0
    transitions: int = 0
    violations: int = 0
    escalations: int = 0
    failed: int = 0
    timer_ids: List[str] = field(default_factory=list)

    def add(self, update: TimerUpdate) -> None:
        self.timer_ids.append(update.timer.id)
        for event in update.events:
            if event.previous_status is None:
                self.started += 1
            elif event.previous_status != event.new_status:
                self.transitions += 1
        self.escalations += len(update.commands)
        if update.violation is not None:
            self.violations += 1


@dataclass
class SweepResult:
    """Outcome of one periodic recompute."""
    at: datetime
    recomputed: int = 0
    violated: int = 0
    escalated: int = 0
    failed: int = 0


class TrackingEngine:
    """
    Entry point for case events, sweeps and cancellations.

    Owns the TimerInstanceManager, serializes access to each timer and
    hands every produced record and command to the outbound queues.
    """

    def __init__(
        self,
        catalog: IPolicyCatalog,
        clock: IClock,
        timer_repository: ITimerRepository,
        event_repository: ITimerEventRepository,
        violation_repository: IViolationRepository,
        escalation_sink: IEscalationSink,
        manager: Optional[TimerInstanceManager] = None,
        max_retries: int = 5,
        backoff_seconds: float = 1.0,
        sleep: Sleep = asyncio.sleep,
    ):
        self._catalog = catalog
        self._clock = clock
        self._timer_repo = timer_repository
        self._event_repo = event_repository
        self._violation_repo = violation_repository
        self._sink = escalation_sink
        self._manager = manager or TimerInstanceManager()
        self._max_retries = max(1, max_retries)
        self._backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._locks = KeyedLockRegistry()
        self._loaded_cases: Set[str] = set()
        self._inflight: Dict[str, int] = {}
        self.records = OutboundQueue("records", max_retries, backoff_seconds, sleep)
        self.dispatches = OutboundQueue("dispatches", max_retries, backoff_seconds, sleep)

    @property
    def manager(self) -> TimerInstanceManager:
        return self._manager

    @property
    def locks(self) -> KeyedLockRegistry:
        return self._locks

    # ========== Lifecycle ==========

    async def start(self) -> int:
        """Restore active timers and start the delivery workers."""
        restored = await self.restore()
        self.records.start()
        self.dispatches.start()
        logger.info("Tracking engine started", extra={"restored_timers": restored})
        return restored

    async def stop(self) -> None:
        await self.records.stop()
        await self.dispatches.stop()
        logger.info("Tracking engine stopped")

    async def flush(self) -> None:
        """Wait for all queued writes and dispatches."""
        await self.records.flush()
        await self.dispatches.flush()

    async def restore(self) -> int:
        """Load running and paused timers from storage into the working set."""
        restored = 0
        for timer in await self._timer_repo.list_active():
            if await self._adopt(timer):
                restored += 1
        return restored

    # ========== Intake ==========

    async def handle_event(self, event: CaseEvent) -> IntakeResult:
        """
        Apply a case event to the case's timers and start new ones.

        Existing timers are updated even when the catalog is unreachable,
        using cached policy versions; the outage is raised afterwards so the
        caller can redeliver the event for timer creation.

        Raises:
            PolicyCatalogUnavailable: If the catalog could not be queried
                within the retry budget
        """
        if event.event_type == CaseEventType.DELETED:
            return await self.cancel_case(
                event.case_id, triggered_by=event.triggered_by, at=event.timestamp
            )

        result = IntakeResult(case_id=event.case_id)
        outage: Optional[PolicyCatalogUnavailable] = None
        async with self._case_scope(event.case_id):
            try:
                policies = await self._resolve_policies(event)
            except PolicyCatalogUnavailable as e:
                outage = e
                policies = []

            for timer in self._manager.timers_for_case(event.case_id):
                if not timer.is_terminal:
                    await self._ensure_policy(timer)
                    await self._run(
                        timer.key,
                        partial(self._manager.apply_event, timer.key, event),
                        result,
                        timer=timer
                    )

            for metric, policy in self._manager.plan_creations(event, policies):
                key = (event.case_id, metric)
                await self._run(key, partial(self._start_or_apply, event, policy, key), result)

        if outage is not None:
            raise outage
        return result

    def _start_or_apply(
        self,
        event: CaseEvent,
        policy: TrackingPolicy,
        key: TimerKey
    ) -> Optional[TimerUpdate]:
        # A concurrent event for the same case may have created it meanwhile
        if self._manager.get(key) is not None:
            return self._manager.apply_event(key, event)
        return self._manager.create(event, policy, key[1])

    async def _resolve_policies(self, event: CaseEvent) -> List[TrackingPolicy]:
        last_error: Optional[PolicyCatalogUnavailable] = None
        for attempt in range(self._max_retries):
            try:
                policies = await self._catalog.resolve_applicable_policies(
                    event.snapshot, event.tenant_id, event.timestamp
                )
            except PolicyCatalogUnavailable as e:
                last_error = e
                if attempt < self._max_retries - 1:
                    delay = self._backoff_seconds * 2 ** attempt
                    logger.warning(
                        "Policy catalog unavailable, retrying",
                        extra={"case_id": event.case_id, "attempt": attempt + 1,
                               "delay_seconds": delay}
                    )
                    await self._sleep(delay)
            else:
                for policy in policies:
                    self._manager.remember_policy(policy)
                return policies

        logger.error(
            "Policy catalog unavailable",
            extra={"case_id": event.case_id, "attempts": self._max_retries}
        )
        raise last_error

    # ========== Sweep ==========

    async def sweep(self, at: Optional[datetime] = None) -> SweepResult:
        """Recompute every running timer at the given instant (default: now)."""
        at = at or self._clock.now()
        timers = self._manager.running_timers()
        result = SweepResult(at=at)

        with log_latency(logger, "sweep", timers=len(timers)):
            await asyncio.gather(*(
                self._ensure_policy(t) for t in timers
                if self._manager.policy_for(t) is None
            ))
            updates = await asyncio.gather(*(
                self._run(t.key, partial(self._manager.recompute, t.key, at), timer=t)
                for t in timers
            ))

        for update in updates:
            if update is None:
                result.failed += 1
                continue
            result.recomputed += 1
            if update.violated:
                result.violated += 1
            result.escalated += len(update.commands)
        return result

    # ========== Cancellation ==========

    async def cancel_case(
        self,
        case_id: str,
        triggered_by: str = SYSTEM_ACTOR,
        at: Optional[datetime] = None
    ) -> IntakeResult:
        """Complete every non-terminal timer of a deleted case as cancelled."""
        at = at or self._clock.now()
        result = IntakeResult(case_id=case_id)
        async with self._case_scope(case_id):
            for timer in self._manager.timers_for_case(case_id):
                if not timer.is_terminal:
                    await self._run(
                        timer.key,
                        partial(self._manager.cancel, timer.key, at, triggered_by),
                        result,
                        timer=timer
                    )
        logger.info(
            "Case timers cancelled",
            extra={"case_id": case_id, "cancelled": result.transitions}
        )
        return result

    async def deactivate_policy(
        self,
        policy_id: str,
        triggered_by: str = SYSTEM_ACTOR
    ) -> int:
        """
        Deactivate a policy in the catalog and cancel its live timers.

        Raises:
            ResourceNotFoundException: If the catalog does not know the policy
        """
        policy = await self._catalog.deactivate(policy_id)
        if policy is None:
            raise ResourceNotFoundException("TrackingPolicy", policy_id)

        at = self._clock.now()
        cancelled = 0
        for timer in self._manager.timers_for_policy(policy_id):
            if timer.is_terminal:
                continue
            update = await self._run(
                timer.key, partial(self._manager.cancel, timer.key, at, triggered_by), timer=timer
            )
            if update is not None and update.events:
                cancelled += 1

        logger.info(
            "Policy deactivated",
            extra={"policy_id": policy_id, "cancelled_timers": cancelled}
        )
        return cancelled

    # ========== Queries ==========

    def timers_for_case(self, case_id: str) -> List[TimerInstance]:
        """Copies of the case's timers from the working set."""
        return [copy.copy(t) for t in self._manager.timers_for_case(case_id)]

    async def case_timers(self, case_id: str) -> List[TimerInstance]:
        """Every timer of the case: stored snapshots overlaid with the working set."""
        async with self._case_scope(case_id):
            timers = {t.key: t for t in await self._timer_repo.list_by_case(case_id)}
            timers.update((t.key, t) for t in self.timers_for_case(case_id))
        return list(timers.values())

    async def events_for_case(self, case_id: str) -> List[TimerEvent]:
        return await self._event_repo.list_by_case(case_id)

    def due_at(self, timer: TimerInstance) -> Optional[datetime]:
        """
        Projected violation instant of a running timer.

        None for paused or terminal timers, or when the calendar cannot
        project the target.
        """
        if timer.status != TimerStatus.RUNNING:
            return None
        policy = self._manager.policy_for(timer)
        if policy is None:
            return None
        remaining = timedelta(minutes=timer.target_minutes) - timer.elapsed
        try:
            return policy.business_calendar.add_business_minutes(
                timer.accrued_until, remaining.total_seconds() / 60
            )
        except InvalidCalendar:
            return None

    # ========== Internals ==========

    @asynccontextmanager
    async def _case_scope(self, case_id: str):
        """Load the case and keep its finished timers known until the scope exits."""
        self._inflight[case_id] = self._inflight.get(case_id, 0) + 1
        try:
            await self._load_case(case_id)
            yield
        finally:
            self._inflight[case_id] -= 1
            if self._inflight[case_id] == 0:
                del self._inflight[case_id]
                self._forget_if_idle(case_id)

    async def _load_case(self, case_id: str) -> None:
        if case_id in self._loaded_cases:
            return
        for timer in await self._timer_repo.list_by_case(case_id):
            if timer.is_terminal:
                if self._manager.get(timer.key) is None:
                    self._manager.mark_finished(timer.key)
            else:
                await self._adopt(timer)
        self._loaded_cases.add(case_id)

    def _forget_if_idle(self, case_id: str) -> None:
        if case_id in self._inflight:
            return
        if self._manager.forget_case(case_id):
            self._loaded_cases.discard(case_id)

    async def _adopt(self, timer: TimerInstance) -> bool:
        if not await self._ensure_policy(timer):
            logger.warning(
                "Policy version unavailable for restored timer",
                extra={"case_id": timer.case_id, "timer_id": timer.id,
                       "policy_id": timer.policy_id, "policy_version": timer.policy_version}
            )
        return self._manager.restore(timer)

    async def _ensure_policy(self, timer: TimerInstance) -> bool:
        """Cache the timer's policy version, fetching it from the catalog if needed."""
        if self._manager.policy_for(timer) is not None:
            return True
        try:
            policy = await self._catalog.get_policy(timer.policy_id, timer.policy_version)
        except PolicyCatalogUnavailable:
            return False
        if policy is None:
            return False
        self._manager.remember_policy(policy)
        return True

    async def _save_terminal(self, snapshot: TimerInstance) -> None:
        await self._timer_repo.save(snapshot)
        if self._manager.evict(snapshot.key):
            self._forget_if_idle(snapshot.case_id)

    async def _run(
        self,
        key: TimerKey,
        operation: Callable[[], Optional[TimerUpdate]],
        result: Optional[IntakeResult] = None,
        timer: Optional[TimerInstance] = None
    ) -> Optional[TimerUpdate]:
        """
        Run one manager operation under the key's lock, then publish.

        When the caller picked `timer` from the working set before waiting
        for the lock and it has been evicted since, the operation is skipped
        and an empty update returned. Failures are logged and isolated to
        this timer.
        """
        try:
            async with self._locks.hold(key):
                if timer is not None and self._manager.get(key) is not timer:
                    return TimerUpdate(timer)
                update = operation()
                if update is None:
                    return None
                snapshot = copy.copy(update.timer)
                if snapshot.is_terminal:
                    self._locks.mark_terminal(key)
        except Exception:
            get_context_logger(__name__, case_id=key[0], metric=key[1].value).exception(
                "Timer recompute failed"
            )
            if result is not None:
                result.failed += 1
            return None

        self._publish(update, snapshot)
        if result is not None:
            result.add(update)
        return update

    def _publish(self, update: TimerUpdate, snapshot: TimerInstance) -> None:
        if not update.changed and update.violation is None:
            return

        save = self._save_terminal if snapshot.is_terminal else self._timer_repo.save
        self.records.submit(f"save timer {snapshot.id}", partial(save, snapshot))
        for event in update.events:
            self.records.submit(
                f"append {event.event_type.value} event {event.id}",
                partial(self._event_repo.append, event)
            )
        if update.violation is not None:
            self.records.submit(
                f"create violation for timer {snapshot.id}",
                partial(self._violation_repo.create, update.violation)
            )
        for command in update.commands:
            self.dispatches.submit(
                f"dispatch escalation {command.escalation_level} for timer {command.timer_id}",
                partial(self._sink.dispatch, command)
            )
