"""Tests for the incident engine state machine."""

import asyncio
import random
from datetime import timedelta

import pytest

from upwatch.server.core.incident_engine import IncidentEngine, IncidentPolicy, MonitorHealth
from upwatch.server.core.notifier import NotifierDispatcher
from upwatch.server.core.retry import RetryPolicy
from upwatch.server.core.types import PROBER_INTERNAL_ERROR, CheckCycle, MonitorSnapshot, ProbeOutcome

from tests.conftest import (
    FakeClock,
    FakeIncidentStore,
    FakeMonitorStore,
    FakeResultStore,
    RecordingNotifier,
)


def _outcome(monitor: MonitorSnapshot, clock: FakeClock, up: bool, region: str = "us-east-1") -> ProbeOutcome:
    return ProbeOutcome(
        monitor_id=monitor.id,
        region=region,
        checked_at=clock(),
        is_up=up,
        status_code=200 if up else 503,
        response_time_ms=42,
        error_message=None if up else "unexpected_status: expected 200, got 503",
    )


@pytest.fixture
def engine(
    monitor_store: FakeMonitorStore,
    result_store: FakeResultStore,
    incident_store: FakeIncidentStore,
    notifier: RecordingNotifier,
    clock: FakeClock,
) -> IncidentEngine:
    return IncidentEngine(
        monitor_store,
        result_store,
        incident_store,
        NotifierDispatcher(notifier),
        retry_policy=RetryPolicy(attempts=2, delay=0),
        clock=clock,
    )


@pytest.fixture
def monitor(monitor_store: FakeMonitorStore) -> MonitorSnapshot:
    created = monitor_store.add_monitor(name="Shop")
    monitor_store.add_recipient(created.id, "ops@example.com")
    return created


class TestIncidentPolicy:
    """Tests for IncidentPolicy validation."""

    def test_defaults(self) -> None:
        policy = IncidentPolicy()
        assert policy.failure_threshold == 2
        assert policy.recovery_threshold == 1
        assert policy.renotify_interval == timedelta(minutes=15)

    def test_validation(self) -> None:
        with pytest.raises(ValueError, match="failure_threshold must be positive"):
            IncidentPolicy(failure_threshold=0)
        with pytest.raises(ValueError, match="recovery_threshold must be positive"):
            IncidentPolicy(recovery_threshold=0)


class TestMonitorHealth:
    """Tests for per-monitor aggregation."""

    def test_majority_vote(self) -> None:
        health = MonitorHealth(region_up={"a": False, "b": True, "c": True})
        assert health.aggregate_down(("a", "b", "c")) is False
        health.region_up["b"] = False
        assert health.aggregate_down(("a", "b", "c")) is True

    def test_unreported_regions_do_not_count_as_down(self) -> None:
        health = MonitorHealth(region_up={"a": False})
        assert health.aggregate_down(("a", "b", "c")) is False

    def test_even_split_is_up(self) -> None:
        health = MonitorHealth(region_up={"a": False, "b": True})
        assert health.aggregate_down(("a", "b")) is False

    def test_cycle_completes_when_all_regions_report(self) -> None:
        health = MonitorHealth()
        cycle = CheckCycle(number=1, regions=("a", "b"))
        assert health.cycle_complete("a", cycle) is False
        assert health.cycle_complete("b", cycle) is True
        # Late duplicate of an evaluated cycle
        assert health.cycle_complete("a", cycle) is False


class TestOpeningIncidents:
    """Tests for the UP -> DOWN transition."""

    async def test_two_failures_open_exactly_one_incident(
        self,
        engine: IncidentEngine,
        monitor: MonitorSnapshot,
        monitor_store: FakeMonitorStore,
        incident_store: FakeIncidentStore,
        notifier: RecordingNotifier,
        clock: FakeClock,
    ) -> None:
        first = await engine.process(_outcome(monitor, clock, up=False))
        assert first.event is None
        assert incident_store.incidents == {}
        assert monitor_store.monitors[monitor.id].status == "UP"

        second = await engine.process(_outcome(monitor, clock, up=False))
        assert second.event == "opened"
        assert len(incident_store.incidents) == 1
        assert monitor_store.monitors[monitor.id].status == "DOWN"
        assert notifier.subjects() == ["[Upwatch] DOWN: Shop"]

        third = await engine.process(_outcome(monitor, clock, up=False))
        assert third.event is None
        assert len(incident_store.incidents) == 1
        assert len(notifier.sent) == 1

    async def test_success_resets_failure_streak(
        self,
        engine: IncidentEngine,
        monitor: MonitorSnapshot,
        incident_store: FakeIncidentStore,
        clock: FakeClock,
    ) -> None:
        await engine.process(_outcome(monitor, clock, up=False))
        await engine.process(_outcome(monitor, clock, up=True))
        await engine.process(_outcome(monitor, clock, up=False))

        assert incident_store.incidents == {}

    async def test_every_outcome_is_recorded(
        self,
        engine: IncidentEngine,
        monitor: MonitorSnapshot,
        monitor_store: FakeMonitorStore,
        result_store: FakeResultStore,
        clock: FakeClock,
    ) -> None:
        await engine.process(_outcome(monitor, clock, up=True))
        clock.advance(minutes=5)
        await engine.process(_outcome(monitor, clock, up=True))

        assert len(result_store.results) == 2
        assert monitor_store.monitors[monitor.id].last_checked_at == clock()

    async def test_opened_incident_is_logged(
        self,
        engine: IncidentEngine,
        monitor: MonitorSnapshot,
        result_store: FakeResultStore,
        clock: FakeClock,
    ) -> None:
        await engine.process(_outcome(monitor, clock, up=False))
        await engine.process(_outcome(monitor, clock, up=False))

        assert [log["message"] for log in result_store.logs] == ["Incident opened"]


class TestRenotification:
    """Tests for repeat notices while an incident stays open."""

    async def _open(self, engine: IncidentEngine, monitor: MonitorSnapshot, clock: FakeClock) -> None:
        await engine.process(_outcome(monitor, clock, up=False))
        await engine.process(_outcome(monitor, clock, up=False))

    async def test_throttled_to_interval(
        self,
        engine: IncidentEngine,
        monitor: MonitorSnapshot,
        incident_store: FakeIncidentStore,
        notifier: RecordingNotifier,
        clock: FakeClock,
    ) -> None:
        await self._open(engine, monitor, clock)

        clock.advance(minutes=10)
        await engine.process(_outcome(monitor, clock, up=False))
        assert len(notifier.sent) == 1

        clock.advance(minutes=6)
        result = await engine.process(_outcome(monitor, clock, up=False))
        assert result.event == "renotify"
        assert notifier.subjects()[-1] == "[Upwatch] STILL DOWN: Shop"
        (incident,) = incident_store.incidents.values()
        assert incident.last_notified_at == clock()

        clock.advance(minutes=1)
        await engine.process(_outcome(monitor, clock, up=False))
        assert len(notifier.sent) == 2

    async def test_acknowledged_incident_is_not_renotified(
        self,
        engine: IncidentEngine,
        monitor: MonitorSnapshot,
        incident_store: FakeIncidentStore,
        notifier: RecordingNotifier,
        clock: FakeClock,
    ) -> None:
        await self._open(engine, monitor, clock)
        (incident,) = incident_store.incidents.values()

        acknowledged = await engine.acknowledge(incident.id)
        assert acknowledged is not None and acknowledged.status == "ACKNOWLEDGED"

        clock.advance(minutes=30)
        result = await engine.process(_outcome(monitor, clock, up=False))
        assert result.event is None
        assert len(notifier.sent) == 1
        assert len(incident_store.incidents) == 1

    async def test_acknowledged_incident_still_resolves(
        self,
        engine: IncidentEngine,
        monitor: MonitorSnapshot,
        incident_store: FakeIncidentStore,
        clock: FakeClock,
    ) -> None:
        await self._open(engine, monitor, clock)
        (incident,) = incident_store.incidents.values()
        await engine.acknowledge(incident.id)

        result = await engine.process(_outcome(monitor, clock, up=True))

        assert result.event == "resolved"
        assert incident_store.incidents[incident.id].status == "RESOLVED"

    async def test_acknowledge_unknown_incident(self, engine: IncidentEngine) -> None:
        assert await engine.acknowledge("missing") is None


class TestResolution:
    """Tests for the DOWN -> UP transition."""

    async def test_single_success_resolves_with_default_policy(
        self,
        engine: IncidentEngine,
        monitor: MonitorSnapshot,
        monitor_store: FakeMonitorStore,
        incident_store: FakeIncidentStore,
        notifier: RecordingNotifier,
        clock: FakeClock,
    ) -> None:
        await engine.process(_outcome(monitor, clock, up=False))
        await engine.process(_outcome(monitor, clock, up=False))
        clock.advance(minutes=5)

        result = await engine.process(_outcome(monitor, clock, up=True))

        assert result.event == "resolved"
        (incident,) = incident_store.incidents.values()
        assert incident.status == "RESOLVED"
        assert incident.resolved_at == clock()
        assert monitor_store.monitors[monitor.id].status == "UP"
        assert notifier.subjects()[-1] == "[Upwatch] RESOLVED: Shop is back up"

    async def test_single_success_mid_streak_does_not_resolve(
        self,
        monitor_store: FakeMonitorStore,
        result_store: FakeResultStore,
        incident_store: FakeIncidentStore,
        notifier: RecordingNotifier,
        monitor: MonitorSnapshot,
        clock: FakeClock,
    ) -> None:
        engine = IncidentEngine(
            monitor_store,
            result_store,
            incident_store,
            NotifierDispatcher(notifier),
            IncidentPolicy(recovery_threshold=2),
            clock=clock,
        )
        await engine.process(_outcome(monitor, clock, up=False))
        await engine.process(_outcome(monitor, clock, up=False))

        await engine.process(_outcome(monitor, clock, up=True))
        await engine.process(_outcome(monitor, clock, up=False))
        await engine.process(_outcome(monitor, clock, up=True))
        assert monitor_store.monitors[monitor.id].status == "DOWN"
        assert len(incident_store.unresolved(monitor.id)) == 1

        await engine.process(_outcome(monitor, clock, up=True))
        assert monitor_store.monitors[monitor.id].status == "UP"
        assert incident_store.unresolved(monitor.id) == []

    async def test_never_produces_paused(
        self,
        engine: IncidentEngine,
        monitor: MonitorSnapshot,
        monitor_store: FakeMonitorStore,
        clock: FakeClock,
    ) -> None:
        for up in (False, False, True, False):
            result = await engine.process(_outcome(monitor, clock, up=up))
            assert result.status in ("UP", "DOWN")
        assert monitor_store.monitors[monitor.id].status in ("UP", "DOWN")


class TestMultiRegion:
    """Tests for aggregation over check cycles."""

    async def test_minority_failure_is_not_down(
        self,
        engine: IncidentEngine,
        monitor_store: FakeMonitorStore,
        incident_store: FakeIncidentStore,
        clock: FakeClock,
    ) -> None:
        regions = ("us-east-1", "eu-west-1", "ap-south-1")
        monitor = monitor_store.add_monitor(regions=regions)

        for number in (1, 2, 3):
            cycle = CheckCycle(number=number, regions=regions)
            await engine.process(_outcome(monitor, clock, False, "us-east-1"), cycle)
            await engine.process(_outcome(monitor, clock, True, "eu-west-1"), cycle)
            await engine.process(_outcome(monitor, clock, True, "ap-south-1"), cycle)

        assert incident_store.incidents == {}

    async def test_majority_failure_counts_once_per_cycle(
        self,
        engine: IncidentEngine,
        monitor_store: FakeMonitorStore,
        incident_store: FakeIncidentStore,
        clock: FakeClock,
    ) -> None:
        regions = ("us-east-1", "eu-west-1", "ap-south-1")
        monitor = monitor_store.add_monitor(regions=regions)

        cycle = CheckCycle(number=1, regions=regions)
        await engine.process(_outcome(monitor, clock, False, "us-east-1"), cycle)
        await engine.process(_outcome(monitor, clock, False, "eu-west-1"), cycle)
        result = await engine.process(_outcome(monitor, clock, True, "ap-south-1"), cycle)
        assert result.evaluated and result.aggregate_down
        # Two failed regions in one cycle are one failed observation
        assert incident_store.incidents == {}

        cycle = CheckCycle(number=2, regions=regions)
        await engine.process(_outcome(monitor, clock, False, "us-east-1"), cycle)
        partial = await engine.process(_outcome(monitor, clock, False, "eu-west-1"), cycle)
        assert partial.evaluated is False
        await engine.process(_outcome(monitor, clock, True, "ap-south-1"), cycle)

        assert len(incident_store.incidents) == 1

    async def test_stale_cycle_does_not_evaluate(
        self,
        engine: IncidentEngine,
        monitor_store: FakeMonitorStore,
        result_store: FakeResultStore,
        clock: FakeClock,
    ) -> None:
        monitor = monitor_store.add_monitor(regions=("us-east-1",))
        await engine.process(_outcome(monitor, clock, True), CheckCycle(number=5, regions=("us-east-1",)))

        late = await engine.process(
            _outcome(monitor, clock, False), CheckCycle(number=4, regions=("us-east-1",))
        )

        assert late.accepted is True
        assert late.evaluated is False
        assert len(result_store.results) == 2


class TestDiscardAndFailures:
    """Tests for discarded outcomes and collaborator failures."""

    @pytest.mark.parametrize("changes", [{"is_paused": True}, {"is_deleted": True}])
    async def test_outcome_for_inactive_monitor_is_discarded(
        self,
        engine: IncidentEngine,
        monitor: MonitorSnapshot,
        monitor_store: FakeMonitorStore,
        result_store: FakeResultStore,
        clock: FakeClock,
        changes: dict,
    ) -> None:
        monitor_store.replace(monitor.id, **changes)

        result = await engine.process(_outcome(monitor, clock, up=False))

        assert result.accepted is False
        assert result_store.results == []

    async def test_outcome_for_unknown_monitor_is_discarded(
        self, engine: IncidentEngine, monitor: MonitorSnapshot, monitor_store: FakeMonitorStore, clock: FakeClock
    ) -> None:
        del monitor_store.monitors[monitor.id]
        result = await engine.process(_outcome(monitor, clock, up=False))
        assert result.accepted is False

    async def test_notifier_failure_keeps_incident(
        self,
        engine: IncidentEngine,
        monitor: MonitorSnapshot,
        monitor_store: FakeMonitorStore,
        incident_store: FakeIncidentStore,
        notifier: RecordingNotifier,
        clock: FakeClock,
    ) -> None:
        monitor_store.add_recipient(monitor.id, "cto@example.com")
        notifier.raise_for.add("ops@example.com")
        notifier.fail_for.add("cto@example.com")

        await engine.process(_outcome(monitor, clock, up=False))
        result = await engine.process(_outcome(monitor, clock, up=False))

        assert result.event == "opened"
        assert len(incident_store.unresolved(monitor.id)) == 1
        assert monitor_store.monitors[monitor.id].status == "DOWN"

    async def test_store_outage_skips_job(
        self,
        engine: IncidentEngine,
        monitor: MonitorSnapshot,
        incident_store: FakeIncidentStore,
        clock: FakeClock,
    ) -> None:
        incident_store.fail_create = True
        await engine.process(_outcome(monitor, clock, up=False))

        result = await engine.process(_outcome(monitor, clock, up=False))

        assert result.accepted is False
        assert result.reason == "store_unavailable"
        assert incident_store.incidents == {}

    async def test_internal_prober_error_is_logged(
        self,
        engine: IncidentEngine,
        monitor: MonitorSnapshot,
        result_store: FakeResultStore,
        clock: FakeClock,
    ) -> None:
        outcome = ProbeOutcome(
            monitor_id=monitor.id,
            region="us-east-1",
            checked_at=clock(),
            is_up=False,
            error_message=PROBER_INTERNAL_ERROR,
        )

        await engine.process(outcome)

        assert result_store.logs[0]["level"] == "error"


class TestAtMostOneOpenIncident:
    """Randomized sequences never leave two unresolved incidents."""

    @pytest.mark.parametrize("seed", range(10))
    async def test_random_outcome_sequences(
        self,
        engine: IncidentEngine,
        monitor_store: FakeMonitorStore,
        incident_store: FakeIncidentStore,
        clock: FakeClock,
        seed: int,
    ) -> None:
        rng = random.Random(seed)
        regions = ("us-east-1", "eu-west-1", "ap-south-1")
        monitor = monitor_store.add_monitor(regions=regions)

        for number in range(1, 60):
            clock.advance(minutes=rng.choice([1, 5, 20]))
            cycle = CheckCycle(number=number, regions=regions)
            outcomes = [_outcome(monitor, clock, rng.random() < 0.5, region) for region in regions]
            # Regions report concurrently
            await asyncio.gather(*(engine.process(o, cycle) for o in outcomes))
            if rng.random() < 0.1 and incident_store.unresolved(monitor.id):
                await engine.acknowledge(incident_store.unresolved(monitor.id)[0].id)

            assert len(incident_store.unresolved(monitor.id)) <= 1
            assert incident_store.violations == 0
            status = monitor_store.monitors[monitor.id].status
            assert (status == "DOWN") == bool(incident_store.unresolved(monitor.id))


class TestPartialStoreFailures:
    """A store write failing part-way through a transition loses no notice."""

    async def test_opening_notice_sent_after_failed_status_write(
        self,
        engine: IncidentEngine,
        monitor: MonitorSnapshot,
        monitor_store: FakeMonitorStore,
        incident_store: FakeIncidentStore,
        notifier: RecordingNotifier,
        clock: FakeClock,
    ) -> None:
        await engine.process(_outcome(monitor, clock, up=False))
        monitor_store.update_status_failures = 2

        failed = await engine.process(_outcome(monitor, clock, up=False))

        assert failed.reason == "store_unavailable"
        assert len(incident_store.unresolved(monitor.id)) == 1
        assert notifier.sent == []

        clock.advance(minutes=1)
        retried = await engine.process(_outcome(monitor, clock, up=False))

        assert retried.event == "opened"
        assert notifier.subjects() == ["[Upwatch] DOWN: Shop"]
        assert monitor_store.monitors[monitor.id].status == "DOWN"

        clock.advance(minutes=1)
        await engine.process(_outcome(monitor, clock, up=False))

        assert len(notifier.sent) == 1
        assert len(incident_store.unresolved(monitor.id)) == 1
        assert incident_store.violations == 0

    async def test_recovery_after_failed_opening_resolves(
        self,
        engine: IncidentEngine,
        monitor: MonitorSnapshot,
        monitor_store: FakeMonitorStore,
        incident_store: FakeIncidentStore,
        clock: FakeClock,
    ) -> None:
        await engine.process(_outcome(monitor, clock, up=False))
        monitor_store.update_status_failures = 2
        await engine.process(_outcome(monitor, clock, up=False))
        assert monitor_store.monitors[monitor.id].status == "UP"

        result = await engine.process(_outcome(monitor, clock, up=True))

        assert result.event == "resolved"
        assert incident_store.unresolved(monitor.id) == []
        assert monitor_store.monitors[monitor.id].status == "UP"

    async def test_failed_renotify_write_is_retried_next_cycle(
        self,
        engine: IncidentEngine,
        monitor: MonitorSnapshot,
        incident_store: FakeIncidentStore,
        notifier: RecordingNotifier,
        clock: FakeClock,
    ) -> None:
        await engine.process(_outcome(monitor, clock, up=False))
        await engine.process(_outcome(monitor, clock, up=False))
        clock.advance(minutes=16)
        incident_store.update_failures = 2

        failed = await engine.process(_outcome(monitor, clock, up=False))
        assert failed.reason == "store_unavailable"
        assert len(notifier.sent) == 1

        clock.advance(minutes=1)
        result = await engine.process(_outcome(monitor, clock, up=False))

        assert result.event == "renotify"
        assert notifier.subjects()[-1] == "[Upwatch] STILL DOWN: Shop"

    async def test_resolution_notice_sent_after_failed_status_write(
        self,
        engine: IncidentEngine,
        monitor: MonitorSnapshot,
        monitor_store: FakeMonitorStore,
        incident_store: FakeIncidentStore,
        notifier: RecordingNotifier,
        clock: FakeClock,
    ) -> None:
        await engine.process(_outcome(monitor, clock, up=False))
        await engine.process(_outcome(monitor, clock, up=False))
        monitor_store.update_status_failures = 2

        failed = await engine.process(_outcome(monitor, clock, up=True))

        assert failed.reason == "store_unavailable"
        assert incident_store.unresolved(monitor.id) == []
        assert monitor_store.monitors[monitor.id].status == "DOWN"
        assert len(notifier.sent) == 1

        result = await engine.process(_outcome(monitor, clock, up=True))

        assert result.event == "resolved"
        assert notifier.subjects()[-1] == "[Upwatch] RESOLVED: Shop is back up"
        assert monitor_store.monitors[monitor.id].status == "UP"

    async def test_failed_creation_leaves_counters_untouched(
        self,
        engine: IncidentEngine,
        monitor: MonitorSnapshot,
        incident_store: FakeIncidentStore,
        notifier: RecordingNotifier,
        clock: FakeClock,
    ) -> None:
        await engine.process(_outcome(monitor, clock, up=False))
        incident_store.fail_create = True
        await engine.process(_outcome(monitor, clock, up=False))
        assert engine.health(monitor.id).consecutive_failures == 1

        incident_store.fail_create = False
        result = await engine.process(_outcome(monitor, clock, up=False))

        assert result.event == "opened"
        assert len(notifier.sent) == 1


class TestPauseDuringProcessing:
    """A pause that lands while an outcome is in flight wins."""

    async def test_pause_before_incident_opens_nothing(
        self,
        engine: IncidentEngine,
        monitor: MonitorSnapshot,
        monitor_store: FakeMonitorStore,
        result_store: FakeResultStore,
        incident_store: FakeIncidentStore,
        notifier: RecordingNotifier,
        clock: FakeClock,
    ) -> None:
        await engine.process(_outcome(monitor, clock, up=False))

        async def pause(outcome: ProbeOutcome) -> None:
            await monitor_store.set_paused(outcome.monitor_id, True)

        result_store.on_append = pause
        result = await engine.process(_outcome(monitor, clock, up=False))

        assert result.accepted is False
        assert result.reason == "inactive"
        assert incident_store.incidents == {}
        assert monitor_store.monitors[monitor.id].status == "PAUSED"
        assert notifier.sent == []

    async def test_pause_after_evaluation_keeps_paused_status(
        self,
        engine: IncidentEngine,
        monitor: MonitorSnapshot,
        monitor_store: FakeMonitorStore,
        result_store: FakeResultStore,
        clock: FakeClock,
    ) -> None:
        async def pause(outcome: ProbeOutcome) -> None:
            await monitor_store.set_paused(outcome.monitor_id, True)

        result_store.on_append = pause
        result = await engine.process(_outcome(monitor, clock, up=True))

        assert result.accepted is False
        assert monitor_store.monitors[monitor.id].status == "PAUSED"


class TestForget:
    """Tests for dropping per-monitor state."""

    async def test_forget_when_idle(
        self, engine: IncidentEngine, monitor: MonitorSnapshot, clock: FakeClock
    ) -> None:
        await engine.process(_outcome(monitor, clock, up=False))
        assert engine.health(monitor.id) is not None

        engine.forget(monitor.id)

        assert engine.health(monitor.id) is None

    async def test_forget_while_processing_drops_state_afterwards(
        self,
        engine: IncidentEngine,
        monitor: MonitorSnapshot,
        result_store: FakeResultStore,
        clock: FakeClock,
    ) -> None:
        async def unschedule(outcome: ProbeOutcome) -> None:
            engine.forget(outcome.monitor_id)

        result_store.on_append = unschedule
        result = await engine.process(_outcome(monitor, clock, up=False))

        assert result.accepted is True
        assert engine.health(monitor.id) is None

    async def test_inactive_monitor_state_is_dropped(
        self,
        engine: IncidentEngine,
        monitor: MonitorSnapshot,
        monitor_store: FakeMonitorStore,
        clock: FakeClock,
    ) -> None:
        await engine.process(_outcome(monitor, clock, up=False))
        monitor_store.replace(monitor.id, is_deleted=True)

        await engine.process(_outcome(monitor, clock, up=False))

        assert engine.health(monitor.id) is None
