"""Shared fixtures for tracking engine tests."""

from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from sla_engine.tracking.application import IClock, IEscalationSink, TrackingEngine
from sla_engine.tracking.domain import CaseEvent, EscalationCommand, TrackingPolicy
from sla_engine.tracking.infrastructure import (
    InMemoryPolicyCatalog,
    InMemoryTimerEventRepository,
    InMemoryTimerRepository,
    InMemoryViolationRepository,
)

T0 = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)  # a Monday

ALWAYS_OPEN = {"business_hours_only": False, "timezone": "UTC"}


class ManualClock(IClock):
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class RecordingSink(IEscalationSink):
    """Escalation sink that can be told to fail a number of times."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.attempts = 0
        self.dispatched: List[EscalationCommand] = []

    async def dispatch(self, command: EscalationCommand) -> None:
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("workflow service unreachable")
        self.dispatched.append(command)


async def no_sleep(_seconds: float) -> None:
    return None


def make_policy(**overrides) -> TrackingPolicy:
    """24/7 resolution policy unless overridden."""
    data = {
        "id": "policy-1",
        "name": "Test policy",
        "resolution_time_minutes": 60,
        "calendar": ALWAYS_OPEN,
    }
    data.update(overrides)
    return TrackingPolicy(**data)


def make_event(event_type: str, at: datetime, case_id: str = "CASE-1", **snapshot) -> CaseEvent:
    return CaseEvent(
        case_id=case_id,
        event_type=event_type,
        timestamp=at,
        snapshot=snapshot,
    )


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def catalog():
    return InMemoryPolicyCatalog()


@pytest.fixture
def repositories():
    return {
        "timer_repository": InMemoryTimerRepository(),
        "event_repository": InMemoryTimerEventRepository(),
        "violation_repository": InMemoryViolationRepository(),
    }


@pytest.fixture
def engine(catalog, clock, sink, repositories):
    """Engine over in-memory collaborators; queues are drained with flush()."""
    return TrackingEngine(
        catalog=catalog,
        clock=clock,
        escalation_sink=sink,
        max_retries=3,
        backoff_seconds=0.5,
        sleep=no_sleep,
        **repositories,
    )
