"""Tests for repositories and policy catalogs."""

import threading
from datetime import timedelta

import pytest

from sla_engine.config import MetricType, Settings, Severity, TimerEventType, TimerStatus, TriggerSource
from sla_engine.core import PolicyCatalogUnavailable, ValidationException
from sla_engine.infrastructure.database import close_database, create_tables, init_database
from sla_engine.tracking.domain import TimerEvent, TimerInstance, ViolationRecord
from sla_engine.tracking.infrastructure import (
    InMemoryPolicyCatalog,
    InMemoryTimerRepository,
    InMemoryViolationRepository,
    SQLAlchemyTimerEventRepository,
    SQLAlchemyTimerRepository,
    SQLAlchemyViolationRepository,
    YAMLPolicyCatalog,
)

from conftest import T0, make_policy

CATALOG_YAML = """
policies:
  - id: critical
    priority: 100
    response_time_minutes: 15
    calendar:
      business_hours_only: false
      timezone: UTC
    application_rules:
      - field: priority
        operator: equals
        value: critical
  - id: default
    priority: 1
    resolution_time_minutes: 480
  - id: broken-rule
    resolution_time_minutes: 60
    pause_conditions:
      - field: status
        operator: sounds_like
        value: open
  - id: no-target
    name: Missing every target
  - just a string
"""


def make_timer(**overrides) -> TimerInstance:
    data = {
        "case_id": "CASE-1",
        "metric": MetricType.RESOLUTION_TIME,
        "policy_id": "policy-1",
        "policy_version": 1,
        "target_minutes": 60,
        "started_at": T0,
    }
    data.update(overrides)
    return TimerInstance(**data)


def violated_timer(**overrides) -> TimerInstance:
    timer = make_timer(**overrides)
    timer.elapsed = timedelta(minutes=90)
    timer.accrued_until = T0 + timedelta(minutes=90)
    timer.violate(T0 + timedelta(minutes=90))
    return timer


class TestInMemoryPolicyCatalog:

    @pytest.mark.asyncio
    async def test_resolution_order_and_filters(self):
        catalog = InMemoryPolicyCatalog([
            make_policy(id="low", priority=1),
            make_policy(id="high", priority=50),
            make_policy(id="other-tenant", tenant_id="acme", priority=99),
        ])

        policies = await catalog.resolve_applicable_policies({}, "default", T0)

        assert [p.id for p in policies] == ["high", "low"]

    def test_republishing_a_version_with_new_content_is_rejected(self):
        catalog = InMemoryPolicyCatalog([make_policy()])

        catalog.publish(make_policy())
        with pytest.raises(ValidationException):
            catalog.publish(make_policy(resolution_time_minutes=5))

    @pytest.mark.asyncio
    async def test_old_versions_stay_resolvable(self):
        catalog = InMemoryPolicyCatalog([make_policy()])
        catalog.publish(make_policy(version=2, resolution_time_minutes=30))

        assert (await catalog.get_policy("policy-1", 1)).resolution_time_minutes == 60
        assert (await catalog.get_policy("policy-1")).version == 2

    @pytest.mark.asyncio
    async def test_deactivate_publishes_inactive_version(self):
        catalog = InMemoryPolicyCatalog([make_policy()])

        retired = await catalog.deactivate("policy-1")

        assert retired.version == 2
        assert not retired.is_active
        assert await catalog.resolve_applicable_policies({}, "default", T0) == []
        assert await catalog.deactivate("unknown") is None

    def test_listing_while_another_thread_publishes(self):
        catalog = InMemoryPolicyCatalog([make_policy()])

        def publish_many():
            for n in range(500):
                catalog.publish(make_policy(id=f"bulk-{n}"))

        publisher = threading.Thread(target=publish_many)
        publisher.start()
        try:
            while publisher.is_alive():
                catalog.policies()
                catalog.latest("policy-1")
        finally:
            publisher.join()

        assert len(catalog.policies()) == 501


class TestYAMLPolicyCatalog:

    @pytest.mark.asyncio
    async def test_invalid_entries_are_skipped(self, tmp_path):
        path = tmp_path / "policies.yaml"
        path.write_text(CATALOG_YAML)
        catalog = YAMLPolicyCatalog(path)

        assert catalog.load() == 2

        critical = await catalog.resolve_applicable_policies({"priority": "critical"}, "default", T0)
        normal = await catalog.resolve_applicable_policies({"priority": "low"}, "default", T0)
        assert [p.id for p in critical] == ["critical", "default"]
        assert [p.id for p in normal] == ["default"]
        assert normal[0].calendar.timezone == "America/Sao_Paulo"

    @pytest.mark.asyncio
    async def test_unloaded_catalog_is_unavailable(self, tmp_path):
        catalog = YAMLPolicyCatalog(tmp_path / "policies.yaml")

        with pytest.raises(PolicyCatalogUnavailable):
            await catalog.resolve_applicable_policies({}, "default", T0)
        with pytest.raises(PolicyCatalogUnavailable):
            await catalog.get_policy("default", 1)

    @pytest.mark.asyncio
    async def test_missing_file_means_no_policies(self, tmp_path):
        catalog = YAMLPolicyCatalog(tmp_path / "absent.yaml")

        assert catalog.load() == 0
        assert await catalog.resolve_applicable_policies({}, "default", T0) == []

    def test_unparsable_file(self, tmp_path):
        path = tmp_path / "policies.yaml"
        path.write_text("policies: [unclosed")

        with pytest.raises(PolicyCatalogUnavailable):
            YAMLPolicyCatalog(path).load()

    @pytest.mark.asyncio
    async def test_reload_keeps_catalog_on_failure(self, tmp_path):
        path = tmp_path / "policies.yaml"
        path.write_text(CATALOG_YAML)
        catalog = YAMLPolicyCatalog(path)
        catalog.load()

        path.write_text("policies: {{{")

        assert catalog.reload() is False
        assert len(catalog.policies()) == 2

    @pytest.mark.asyncio
    async def test_removed_policy_stops_applying_but_stays_resolvable(self, tmp_path):
        path = tmp_path / "policies.yaml"
        path.write_text(CATALOG_YAML)
        catalog = YAMLPolicyCatalog(path)
        catalog.load()

        path.write_text("policies:\n  - id: default\n    priority: 1\n    resolution_time_minutes: 480\n")

        assert catalog.reload() is True
        applicable = await catalog.resolve_applicable_policies({"priority": "critical"}, "default", T0)
        assert [p.id for p in applicable] == ["default"]
        assert await catalog.get_policy("critical", 1) is not None


class TestInMemoryRepositories:

    @pytest.mark.asyncio
    async def test_timer_copies_are_isolated(self):
        repo = InMemoryTimerRepository()
        timer = make_timer()
        await repo.save(timer)

        timer.status = TimerStatus.PAUSED
        stored = await repo.get(timer.id)

        assert stored.status == TimerStatus.RUNNING

    @pytest.mark.asyncio
    async def test_violation_create_is_idempotent_per_timer(self):
        repo = InMemoryViolationRepository()
        timer = violated_timer()

        first = await repo.create(ViolationRecord.from_timer(timer))
        second = await repo.create(ViolationRecord.from_timer(timer))

        assert second.id == first.id
        assert len(await repo.list()) == 1


@pytest.fixture
async def database(tmp_path):
    """File-backed sqlite database with the tracking tables."""
    settings = Settings(database_url=f"sqlite+aiosqlite:///{tmp_path / 'tracking.db'}")
    init_database(settings=settings)
    await create_tables()
    yield
    await close_database()


class TestSQLAlchemyRepositories:

    @pytest.mark.asyncio
    async def test_timer_round_trip(self, database):
        repo = SQLAlchemyTimerRepository()
        timer = make_timer()
        timer.elapsed = timedelta(minutes=12, seconds=30)
        timer.accrued_until = T0 + timedelta(minutes=12, seconds=30)
        timer.pause(T0 + timedelta(minutes=12, seconds=30))
        await repo.save(timer)

        stored = await repo.get(timer.id)

        assert stored.status == TimerStatus.PAUSED
        assert stored.elapsed == timedelta(minutes=12, seconds=30)
        assert stored.paused_at == T0 + timedelta(minutes=12, seconds=30)
        assert stored.started_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_save_replaces_snapshot(self, database):
        repo = SQLAlchemyTimerRepository()
        timer = make_timer()
        await repo.save(timer)
        timer.complete(T0 + timedelta(minutes=5), "case_resolved")
        await repo.save(timer)

        assert await repo.list_active() == []
        stored = await repo.list_by_case("CASE-1")
        assert len(stored) == 1
        assert stored[0].completion_reason == "case_resolved"

    @pytest.mark.asyncio
    async def test_list_filters(self, database):
        repo = SQLAlchemyTimerRepository()
        await repo.save(make_timer(case_id="A"))
        await repo.save(make_timer(case_id="B", tenant_id="acme", started_at=T0 + timedelta(days=2)))

        assert [t.case_id for t in await repo.list(tenant_id="acme")] == ["B"]
        assert [t.case_id for t in await repo.list(started_to=T0 + timedelta(days=1))] == ["A"]

    @pytest.mark.asyncio
    async def test_event_log(self, database):
        repo = SQLAlchemyTimerEventRepository()
        timer = make_timer()
        event = TimerEvent.for_transition(
            timer, TimerEventType.STARTED, None, TriggerSource.CASE_EVENT, T0,
            reason="policy_applied", data={"policy_version": 1},
        )
        await repo.append(event)
        await repo.append(event)

        stored = await repo.list_by_timer(timer.id)

        assert len(stored) == 1
        assert stored[0].previous_status is None
        assert stored[0].data == {"policy_version": 1}
        assert stored[0].occurred_at == T0

    @pytest.mark.asyncio
    async def test_violation_lifecycle(self, database):
        repo = SQLAlchemyViolationRepository()
        timer = violated_timer()
        record = ViolationRecord.from_timer(timer)

        await repo.create(record)
        duplicate = await repo.create(ViolationRecord.from_timer(timer))
        record.resolve("lead-1", T0 + timedelta(days=1), "Added weekend shift")
        await repo.update(record)

        assert duplicate.id == record.id
        assert (await repo.list(severity=Severity.HIGH)) == []
        assert [v.id for v in await repo.list(severity=Severity.MEDIUM)] == [record.id]
        assert await repo.list(unresolved_only=True) == []
        stored = await repo.get_by_timer(timer.id)
        assert stored.resolved_by == "lead-1"
        assert stored.resolved_at == T0 + timedelta(days=1)
