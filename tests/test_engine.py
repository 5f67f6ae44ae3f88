"""Tests for the TrackingEngine: intake, sweeps, cancellation and delivery."""

import asyncio
from datetime import timedelta
from typing import List

import pytest

from sla_engine.config import MetricType, TimerEventType, TimerStatus
from sla_engine.core import PolicyCatalogUnavailable, ResourceNotFoundException
from sla_engine.tracking.application import TimerInstanceManager, TrackingEngine
from sla_engine.tracking.domain import TimerInstance
from sla_engine.tracking.infrastructure import InMemoryPolicyCatalog, YAMLPolicyCatalog

from conftest import T0, RecordingSink, make_event, make_policy, no_sleep

KEY = ("CASE-1", MetricType.RESOLUTION_TIME)

WAITING = [{"field": "status", "operator": "equals", "value": "waiting_customer"}]

POLICY_YAML = """
policies:
  - id: policy-1
    resolution_time_minutes: 60
    calendar:
      business_hours_only: false
      timezone: UTC
"""


def minutes(n: int):
    return T0 + timedelta(minutes=n)


class FlakyCatalog(InMemoryPolicyCatalog):
    """Catalog whose resolution can be switched off."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.available = True
        self.calls = 0

    async def resolve_applicable_policies(self, snapshot, tenant_id, at):
        self.calls += 1
        if not self.available:
            raise PolicyCatalogUnavailable("catalog offline")
        return await super().resolve_applicable_policies(snapshot, tenant_id, at)


class ExplodingManager(TimerInstanceManager):
    """Manager that fails recomputes of one case."""

    def __init__(self, broken_case: str):
        super().__init__()
        self.broken_case = broken_case

    def recompute(self, key, at):
        if key[0] == self.broken_case:
            raise RuntimeError("corrupted timer state")
        return super().recompute(key, at)


def build_engine(catalog, clock, repositories, sink=None, manager=None, sleep=no_sleep,
                 max_retries=3) -> TrackingEngine:
    return TrackingEngine(
        catalog=catalog,
        clock=clock,
        escalation_sink=sink or RecordingSink(),
        manager=manager,
        max_retries=max_retries,
        backoff_seconds=0.5,
        sleep=sleep,
        **repositories,
    )


class TestIntake:

    @pytest.mark.asyncio
    async def test_created_event_starts_timers(self, engine, catalog, repositories):
        catalog.publish(make_policy(response_time_minutes=30))

        result = await engine.handle_event(make_event("created", T0, priority="high"))
        await engine.flush()

        assert result.started == 2
        assert result.failed == 0
        stored = await repositories["timer_repository"].list_by_case("CASE-1")
        assert {t.metric for t in stored} == {MetricType.RESPONSE_TIME, MetricType.RESOLUTION_TIME}
        events = await repositories["event_repository"].list_by_case("CASE-1")
        assert [e.event_type for e in events] == [TimerEventType.STARTED] * 2

    @pytest.mark.asyncio
    async def test_application_rules_select_policies(self, engine, catalog):
        catalog.publish(make_policy(
            id="vip-only",
            application_rules=[{"field": "tier", "operator": "equals", "value": "vip"}],
        ))

        result = await engine.handle_event(make_event("created", T0, tier="standard"))

        assert result.started == 0
        assert engine.timers_for_case("CASE-1") == []

    @pytest.mark.asyncio
    async def test_concurrent_events_create_one_timer(self, engine, catalog):
        catalog.publish(make_policy())

        await asyncio.gather(
            engine.handle_event(make_event("created", T0)),
            engine.handle_event(make_event("assigned", minutes(1))),
        )

        timers = engine.timers_for_case("CASE-1")
        assert len(timers) == 1

    @pytest.mark.asyncio
    async def test_returned_timers_are_copies(self, engine, catalog):
        catalog.publish(make_policy())
        await engine.handle_event(make_event("created", T0))

        engine.timers_for_case("CASE-1")[0].status = TimerStatus.VIOLATED

        assert engine.timers_for_case("CASE-1")[0].status == TimerStatus.RUNNING

    @pytest.mark.asyncio
    async def test_stored_timers_are_loaded_for_their_case(self, catalog, clock, repositories):
        policy = catalog.publish(make_policy())
        stored = TimerInstance(
            case_id="CASE-1",
            metric=MetricType.RESOLUTION_TIME,
            policy_id=policy.id,
            policy_version=policy.version,
            target_minutes=60,
            started_at=T0,
        )
        await repositories["timer_repository"].save(stored)
        engine = build_engine(catalog, clock, repositories)

        result = await engine.handle_event(make_event("resolved", minutes(30)))

        assert result.started == 0
        timers = engine.timers_for_case("CASE-1")
        assert [t.id for t in timers] == [stored.id]
        assert timers[0].completion_reason == "case_resolved"


class TestSweep:

    @pytest.mark.asyncio
    async def test_escalation_and_violation_are_delivered(self, engine, catalog, sink, repositories):
        catalog.publish(make_policy(
            resolution_time_minutes=100,
            escalation_enabled=True,
            escalation_actions=[{"type": "notify"}, {"type": "reassign"}],
        ))
        await engine.handle_event(make_event("created", T0))

        first = await engine.sweep(minutes(80))
        second = await engine.sweep(minutes(100))
        await engine.flush()

        assert first.escalated == 1
        assert second.violated == 1
        assert [c.escalation_level for c in sink.dispatched] == [1]
        violations = await repositories["violation_repository"].list(case_id="CASE-1")
        assert len(violations) == 1
        events = await engine.events_for_case("CASE-1")
        assert [e.event_type for e in events] == [
            TimerEventType.STARTED, TimerEventType.ESCALATED, TimerEventType.VIOLATED
        ]

    @pytest.mark.asyncio
    async def test_sweep_defaults_to_clock(self, engine, catalog, clock):
        catalog.publish(make_policy())
        await engine.handle_event(make_event("created", T0))
        clock.advance(minutes=61)

        result = await engine.sweep()

        assert result.at == clock.now()
        assert result.violated == 1

    @pytest.mark.asyncio
    async def test_failures_are_isolated_per_timer(self, catalog, clock, repositories):
        catalog.publish(make_policy())
        engine = build_engine(catalog, clock, repositories, manager=ExplodingManager("CASE-BAD"))
        await engine.handle_event(make_event("created", T0, case_id="CASE-BAD"))
        await engine.handle_event(make_event("created", T0, case_id="CASE-OK"))

        result = await engine.sweep(minutes(90))

        assert result.failed == 1
        assert result.recomputed == 1
        assert result.violated == 1
        assert engine.timers_for_case("CASE-OK")[0].status == TimerStatus.VIOLATED

    @pytest.mark.asyncio
    async def test_paused_timers_are_skipped(self, engine, catalog):
        catalog.publish(make_policy(pause_conditions=WAITING))
        await engine.handle_event(make_event("created", T0, status="waiting_customer"))

        result = await engine.sweep(minutes(500))

        assert result.recomputed == 0
        assert engine.timers_for_case("CASE-1")[0].status == TimerStatus.PAUSED


class TestCancellation:

    @pytest.mark.asyncio
    async def test_deleted_case_never_violates(self, engine, catalog, repositories):
        catalog.publish(make_policy())
        await engine.handle_event(make_event("created", T0))

        result = await engine.handle_event(make_event("deleted", minutes(30)))
        for later in (90, 600, 6000):
            await engine.sweep(minutes(later))
        await engine.flush()

        assert result.transitions == 1
        [timer] = await engine.case_timers("CASE-1")
        assert timer.status == TimerStatus.COMPLETED
        assert timer.completion_reason == "cancelled"
        assert await repositories["violation_repository"].list() == []

    @pytest.mark.asyncio
    async def test_deactivating_policy_cancels_live_timers(self, engine, catalog):
        catalog.publish(make_policy())
        await engine.handle_event(make_event("created", T0, case_id="A"))
        await engine.handle_event(make_event("created", T0, case_id="B"))
        await engine.handle_event(make_event("resolved", minutes(10), case_id="B"))

        cancelled = await engine.deactivate_policy("policy-1", triggered_by="admin")

        assert cancelled == 1
        assert engine.timers_for_case("B")[0].completion_reason == "case_resolved"
        assert catalog.latest("policy-1").is_active is False
        # The inactive version no longer applies to new cases
        result = await engine.handle_event(make_event("created", minutes(20), case_id="C"))
        assert result.started == 0

    @pytest.mark.asyncio
    async def test_deactivating_unknown_policy(self, engine):
        with pytest.raises(ResourceNotFoundException):
            await engine.deactivate_policy("nope")

    @pytest.mark.asyncio
    async def test_terminal_timer_locks_are_reaped(self, engine, catalog):
        catalog.publish(make_policy())
        await engine.handle_event(make_event("created", T0))

        assert KEY in engine.locks

        await engine.handle_event(make_event("closed", minutes(5)))

        assert KEY not in engine.locks
        assert len(engine.locks) == 0


class TestWorkingSet:

    @pytest.mark.asyncio
    async def test_finished_timers_leave_the_working_set(self, engine, catalog):
        catalog.publish(make_policy())
        for n in range(5):
            case_id = f"CASE-{n}"
            await engine.handle_event(make_event("created", T0, case_id=case_id))
            await engine.handle_event(make_event("resolved", minutes(10), case_id=case_id))

        assert len(engine.manager) == 5
        await engine.flush()

        assert len(engine.manager) == 0
        assert engine.timers_for_case("CASE-0") == []
        [timer] = await engine.case_timers("CASE-0")
        assert timer.completion_reason == "case_resolved"

    @pytest.mark.asyncio
    async def test_finished_case_is_not_tracked_again(self, engine, catalog, repositories):
        catalog.publish(make_policy())
        await engine.handle_event(make_event("created", T0))
        await engine.handle_event(make_event("closed", minutes(10)))
        await engine.flush()

        result = await engine.handle_event(make_event("created", minutes(20)))
        await engine.flush()

        assert result.started == 0
        assert len(engine.manager) == 0
        assert len(await repositories["timer_repository"].list_by_case("CASE-1")) == 1

    @pytest.mark.asyncio
    async def test_unsaved_finished_timer_stays_in_memory(self, catalog, clock, repositories):
        catalog.publish(make_policy())
        engine = build_engine(catalog, clock, repositories)
        await engine.handle_event(make_event("created", T0))
        await engine.flush()

        async def refuse(timer):
            raise ConnectionError("database unreachable")

        repositories["timer_repository"].save = refuse
        await engine.handle_event(make_event("closed", minutes(10)))
        await engine.flush()

        assert len(engine.records.dead_letters) == 1
        assert engine.timers_for_case("CASE-1")[0].status == TimerStatus.COMPLETED
        result = await engine.handle_event(make_event("created", minutes(20)))
        assert result.started == 0


class TestCatalogOutage:

    @pytest.mark.asyncio
    async def test_existing_timers_keep_working(self, clock, repositories):
        catalog = FlakyCatalog([make_policy(pause_conditions=WAITING)])
        delays: List[float] = []

        async def record_sleep(seconds):
            delays.append(seconds)

        engine = build_engine(catalog, clock, repositories, sleep=record_sleep)
        await engine.handle_event(make_event("created", T0, status="open"))
        catalog.available = False

        with pytest.raises(PolicyCatalogUnavailable):
            await engine.handle_event(
                make_event("status_changed", minutes(20), status="waiting_customer")
            )

        assert engine.timers_for_case("CASE-1")[0].status == TimerStatus.PAUSED
        assert delays == [0.5, 1.0]
        assert catalog.calls == 4

    @pytest.mark.asyncio
    async def test_no_timers_start_during_outage(self, clock, repositories):
        catalog = FlakyCatalog([make_policy()])
        catalog.available = False
        engine = build_engine(catalog, clock, repositories)

        with pytest.raises(PolicyCatalogUnavailable):
            await engine.handle_event(make_event("created", T0))

        assert engine.timers_for_case("CASE-1") == []

        # Redelivery after recovery starts the timer
        catalog.available = True
        result = await engine.handle_event(make_event("created", T0))
        assert result.started == 1


class TestDelivery:

    @pytest.mark.asyncio
    async def test_dispatch_is_retried(self, catalog, clock, repositories):
        sink = RecordingSink(failures=2)
        catalog.publish(make_policy(
            escalation_enabled=True, escalation_actions=[{"type": "notify"}]
        ))
        engine = build_engine(catalog, clock, repositories, sink=sink)
        await engine.handle_event(make_event("created", T0))

        await engine.sweep(minutes(50))
        await engine.flush()

        assert sink.attempts == 3
        assert len(sink.dispatched) == 1
        assert engine.dispatches.dead_letters == []

    @pytest.mark.asyncio
    async def test_exhausted_dispatch_is_dead_lettered(self, catalog, clock, repositories):
        sink = RecordingSink(failures=10)
        catalog.publish(make_policy(
            escalation_enabled=True, escalation_actions=[{"type": "notify"}]
        ))
        engine = build_engine(catalog, clock, repositories, sink=sink)
        await engine.handle_event(make_event("created", T0))

        await engine.sweep(minutes(50))
        await engine.flush()

        assert sink.attempts == 3
        assert len(engine.dispatches.dead_letters) == 1
        assert engine.dispatches.dead_letters[0].attempts == 3
        # The transition itself stands
        assert engine.timers_for_case("CASE-1")[0].escalation_level == 1

    @pytest.mark.asyncio
    async def test_background_workers_deliver(self, engine, catalog, repositories):
        catalog.publish(make_policy())
        await engine.start()
        try:
            await engine.handle_event(make_event("created", T0))
            await engine.flush()
        finally:
            await engine.stop()

        assert len(await repositories["timer_repository"].list_by_case("CASE-1")) == 1


class TestRestore:

    @pytest.mark.asyncio
    async def test_active_timers_are_restored(self, catalog, clock, repositories):
        catalog.publish(make_policy())
        first = build_engine(catalog, clock, repositories)
        await first.handle_event(make_event("created", T0))
        await first.sweep(minutes(30))
        await first.flush()

        second = build_engine(catalog, clock, repositories)
        restored = await second.start()
        try:
            result = await second.sweep(minutes(61))
        finally:
            await second.stop()

        assert restored == 1
        assert result.violated == 1

    @pytest.mark.asyncio
    async def test_timer_restored_during_outage_recovers_its_policy(
        self, clock, repositories, tmp_path
    ):
        path = tmp_path / "policies.yaml"
        path.write_text(POLICY_YAML)
        healthy = YAMLPolicyCatalog(path)
        healthy.load()
        first = build_engine(healthy, clock, repositories)
        await first.handle_event(make_event("created", T0))
        await first.flush()

        path.write_text("policies: [unclosed")
        catalog = YAMLPolicyCatalog(path)
        with pytest.raises(PolicyCatalogUnavailable):
            catalog.load()
        second = build_engine(catalog, clock, repositories)
        assert await second.restore() == 1
        during_outage = await second.sweep(minutes(30))

        path.write_text(POLICY_YAML)
        assert catalog.reload() is True
        result = await second.sweep(minutes(120))

        assert during_outage.failed == 1
        assert result.failed == 0
        assert result.violated == 1
        assert second.due_at(second.timers_for_case("CASE-1")[0]) is None

    @pytest.mark.asyncio
    async def test_due_at_projection(self, engine, catalog):
        catalog.publish(make_policy())
        await engine.handle_event(make_event("created", T0))
        await engine.sweep(minutes(20))

        timer = engine.timers_for_case("CASE-1")[0]

        assert engine.due_at(timer) == minutes(60)
