"""Tests for TimerInstanceManager transitions."""

from datetime import timedelta

import pytest

from sla_engine.config import MetricType, TimerEventType, TimerStatus, TriggerSource
from sla_engine.tracking.application import TimerInstanceManager
from sla_engine.tracking.domain import CalendarSettings

from conftest import T0, make_event, make_policy

KEY = ("CASE-1", MetricType.RESOLUTION_TIME)

WAITING = [{"field": "status", "operator": "equals", "value": "waiting_customer"}]
OPEN_AGAIN = [{"field": "status", "operator": "equals", "value": "open"}]


def minutes(n: int):
    return T0 + timedelta(minutes=n)


@pytest.fixture
def manager():
    return TimerInstanceManager()


def start(manager, policy, **snapshot):
    event = make_event("created", T0, **snapshot)
    updates = [manager.create(event, p, metric) for metric, p in manager.plan_creations(event, [policy])]
    return updates


class TestCreation:

    def test_one_timer_per_tracked_metric(self, manager):
        policy = make_policy(response_time_minutes=15, resolution_time_minutes=120)

        updates = start(manager, policy, status="open")

        assert {u.timer.metric for u in updates} == {
            MetricType.RESPONSE_TIME, MetricType.RESOLUTION_TIME
        }
        started = updates[0].events[0]
        assert started.event_type is TimerEventType.STARTED
        assert started.previous_status is None
        assert started.reason == "policy_applied"

    def test_first_policy_wins_per_metric(self, manager):
        first = make_policy(id="first", resolution_time_minutes=60)
        second = make_policy(id="second", resolution_time_minutes=30, response_time_minutes=10)
        event = make_event("created", T0)

        plan = dict(manager.plan_creations(event, [first, second]))

        assert plan[MetricType.RESOLUTION_TIME].id == "first"
        assert plan[MetricType.RESPONSE_TIME].id == "second"

    def test_pair_is_tracked_only_once(self, manager):
        policy = make_policy()
        start(manager, policy)

        assert manager.plan_creations(make_event("assigned", minutes(5)), [policy]) == []

    def test_closing_events_never_start_timers(self, manager):
        assert manager.plan_creations(make_event("closed", T0), [make_policy()]) == []

    def test_invalid_calendar_skips_only_that_policy(self, manager):
        broken = make_policy(id="broken", calendar=CalendarSettings(timezone="Not/AZone"))
        healthy = make_policy(id="healthy")

        plan = manager.plan_creations(make_event("created", T0), [broken, healthy])

        assert [(m, p.id) for m, p in plan] == [(MetricType.RESOLUTION_TIME, "healthy")]

    def test_creation_event_can_pause_immediately(self, manager):
        policy = make_policy(pause_conditions=WAITING)

        update = start(manager, policy, status="waiting_customer")[0]

        assert update.timer.status == TimerStatus.PAUSED
        assert [e.event_type for e in update.events] == [
            TimerEventType.STARTED, TimerEventType.PAUSED
        ]


class TestPauseResume:

    def test_paused_interval_is_not_counted(self, manager):
        policy = make_policy(pause_conditions=WAITING, resume_conditions=OPEN_AGAIN)
        start(manager, policy, status="open")

        paused = manager.apply_event(KEY, make_event("status_changed", minutes(30), status="waiting_customer"))
        resumed = manager.apply_event(KEY, make_event("status_changed", minutes(90), status="open"))
        final = manager.recompute(KEY, minutes(130))

        assert paused.events[0].event_type is TimerEventType.PAUSED
        assert paused.events[0].trigger is TriggerSource.RULE_MATCH
        assert resumed.events[0].event_type is TimerEventType.RESUMED
        assert resumed.events[0].reason == "resume_condition"

        timer = final.timer
        assert timer.elapsed_minutes == 70
        assert timer.remaining_minutes == -10
        assert timer.paused_minutes == 60
        assert timer.status == TimerStatus.VIOLATED
        assert final.violated

    def test_zero_length_pause(self, manager):
        policy = make_policy(pause_conditions=WAITING)
        start(manager, policy, status="open")

        manager.apply_event(KEY, make_event("status_changed", minutes(20), status="waiting_customer"))
        update = manager.apply_event(KEY, make_event("status_changed", minutes(20), status="open"))

        assert update.events[0].event_type is TimerEventType.RESUMED
        assert update.events[0].reason == "pause_condition_cleared"
        assert update.timer.paused_minutes == 0
        assert update.timer.elapsed_minutes == 20

    def test_paused_timer_stays_paused_while_rule_matches(self, manager):
        policy = make_policy(pause_conditions=WAITING)
        start(manager, policy, status="waiting_customer")

        update = manager.apply_event(
            KEY, make_event("commented", minutes(40), status="waiting_customer")
        )

        assert update.events == []
        assert update.timer.status == TimerStatus.PAUSED

    def test_ticks_do_not_touch_paused_timers(self, manager):
        policy = make_policy(pause_conditions=WAITING)
        start(manager, policy, status="waiting_customer")

        update = manager.recompute(KEY, minutes(500))

        assert not update.changed
        assert update.timer.status == TimerStatus.PAUSED


class TestCompletion:

    def test_resolution_ends_on_resolved(self, manager):
        start(manager, make_policy())

        update = manager.apply_event(KEY, make_event("resolved", minutes(45)))

        assert update.timer.status == TimerStatus.COMPLETED
        assert update.timer.completion_reason == "case_resolved"
        assert update.timer.elapsed_minutes == 45

    def test_first_response_ends_response_timer(self, manager):
        start(manager, make_policy(response_time_minutes=30))

        update = manager.apply_event(
            ("CASE-1", MetricType.RESPONSE_TIME), make_event("agent_response", minutes(12))
        )

        assert update.timer.completion_reason == "first_response"
        assert manager.get(KEY).status == TimerStatus.RUNNING

    def test_stop_condition(self, manager):
        policy = make_policy(stop_conditions=[
            {"field": "status", "operator": "equals", "value": "merged"},
        ])
        start(manager, policy, status="open")

        update = manager.apply_event(KEY, make_event("status_changed", minutes(5), status="merged"))

        assert update.timer.completion_reason == "stop_condition"
        assert update.events[0].trigger is TriggerSource.RULE_MATCH

    def test_late_completion_past_target_is_a_violation(self, manager):
        start(manager, make_policy())

        update = manager.apply_event(KEY, make_event("resolved", minutes(75)))

        assert update.timer.status == TimerStatus.VIOLATED
        assert update.violation is not None
        assert update.violation.violation_minutes == 15

    def test_terminal_timer_ignores_further_events(self, manager):
        start(manager, make_policy())
        manager.apply_event(KEY, make_event("resolved", minutes(10)))

        update = manager.apply_event(KEY, make_event("status_changed", minutes(20), status="open"))

        assert not update.changed
        assert update.timer.elapsed_minutes == 10

    def test_cancel_completes_without_violation(self, manager):
        start(manager, make_policy())

        update = manager.cancel(KEY, minutes(200), triggered_by="admin")

        assert update.timer.status == TimerStatus.COMPLETED
        assert update.timer.completion_reason == "cancelled"
        assert update.violation is None
        assert update.events[0].trigger is TriggerSource.EXTERNAL_ACTION
        assert update.events[0].triggered_by == "admin"


class TestOrdering:

    def test_late_event_is_clamped(self, manager):
        start(manager, make_policy(pause_conditions=WAITING))
        manager.recompute(KEY, minutes(30))

        update = manager.apply_event(
            KEY, make_event("status_changed", minutes(10), status="waiting_customer")
        )

        assert update.timer.paused_at == minutes(30)
        assert update.timer.elapsed_minutes == 30

    def test_idle_minutes_are_available_to_rules(self, manager):
        policy = make_policy(
            id="idle",
            resolution_time_minutes=None,
            idle_time_minutes=600,
            stop_conditions=[{"field": "idle_minutes", "operator": ">=", "value": 120}],
        )
        event = make_event("created", T0)
        manager.create(event, policy, MetricType.IDLE_TIME)
        key = ("CASE-1", MetricType.IDLE_TIME)

        manager.apply_event(key, make_event("priority_changed", minutes(60)))
        update = manager.apply_event(key, make_event("priority_changed", minutes(150)))

        assert update.timer.completion_reason == "stop_condition"
