import asyncio
import datetime as dt

import pytest
import pytz

from fleet_guardian.alerts import AlertLog, AlertSink, AlertType
from fleet_guardian.config import ConfigStore, MonitorConfig
from fleet_guardian.scheduler import MonitorScheduler
from fleet_guardian.sources import TransportError
from fleet_guardian.store import LOCAL_ALERTS_KEY, SNAPSHOT_KEY

from conftest import FakeSource, RecordingNotifier, sample

T0 = 1_760_000_000.0


class BlockingSource(FakeSource):
    """fetch() waits until `release` is set."""

    def __init__(self, *batches):
        super().__init__(*batches)
        self.release = asyncio.Event()

    async def fetch(self, config):
        self.calls += 1
        await self.release.wait()
        return self.batches.pop(0) if self.batches else []


class TripSource(FakeSource):
    async def fetch_trips(self, vehicle_id, start, end, config):
        return []


class FakeRollup:
    def __init__(self):
        self.days = []

    async def run(self, samples, config, day):
        self.days.append(day)
        return {"date": day.isoformat(), "vehicles": [], "total_distance": 0.0}


def _scheduler(source, store, configs, clock=None, **kw):
    sink = AlertSink(AlertLog(store, LOCAL_ALERTS_KEY, 50), RecordingNotifier())
    return MonitorScheduler(
        source, sink, store, configs,
        initial_delay=kw.pop("initial_delay", 3600), period=kw.pop("period", 3600),
        clock=clock or (lambda: T0), **kw,
    )


# ---------- Lifecycle ----------
@pytest.mark.asyncio
async def test_stop_is_idempotent(store, configs):
    scheduler = _scheduler(FakeSource(), store, configs)

    scheduler.stop()
    assert scheduler.start()
    scheduler.stop()
    scheduler.stop()

    assert not scheduler.monitoring


@pytest.mark.asyncio
async def test_start_without_config_stays_idle(store):
    scheduler = _scheduler(FakeSource(), store, ConfigStore())

    assert scheduler.start() is False
    assert not scheduler.monitoring


@pytest.mark.asyncio
async def test_start_twice_replaces_the_timer(store, configs):
    scheduler = _scheduler(FakeSource(), store, configs)

    scheduler.start()
    first = scheduler._timer
    scheduler.start()
    await asyncio.gather(first, return_exceptions=True)

    assert first.cancelled()
    assert scheduler.monitoring
    scheduler.stop()


@pytest.mark.asyncio
async def test_timer_runs_cycles_periodically(store, configs):
    source = FakeSource()
    scheduler = _scheduler(source, store, configs, initial_delay=0, period=0.01)

    scheduler.start()
    await asyncio.sleep(0.1)
    scheduler.stop()
    await scheduler.drain()

    assert source.calls >= 2


@pytest.mark.asyncio
async def test_tick_is_skipped_while_previous_cycle_runs(store, configs):
    source = BlockingSource([sample("KA01", 90, T0)])
    scheduler = _scheduler(source, store, configs)

    scheduler._spawn_cycle()
    await asyncio.sleep(0)
    scheduler._spawn_cycle()
    await asyncio.sleep(0)
    assert source.calls == 1

    source.release.set()
    await scheduler.drain()
    assert source.calls == 1
    assert await scheduler.sink.log.count() == 1


@pytest.mark.asyncio
async def test_cycle_in_flight_finishes_after_stop(store, configs):
    source = BlockingSource([sample("KA01", 95, T0)])
    scheduler = _scheduler(source, store, configs)
    scheduler.start()

    scheduler._spawn_cycle()
    await asyncio.sleep(0)
    scheduler.stop()
    source.release.set()
    await scheduler.drain()

    alerts = await scheduler.sink.log.recent()
    assert [a["type"] for a in alerts] == ["speeding"]


# ---------- One cycle ----------
@pytest.mark.asyncio
async def test_expired_token_stops_without_fetching(store):
    config = MonitorConfig("http://fleet.test/webhook", ("KA01",), token_expiry=int(T0 * 1000) - 1)
    source = FakeSource([sample("KA01", 100, T0)])
    scheduler = _scheduler(source, store, ConfigStore(config))
    scheduler.start()

    assert await scheduler.on_tick() == []
    assert source.calls == 0
    assert not scheduler.monitoring


@pytest.mark.asyncio
async def test_transport_error_skips_only_that_cycle(store, configs):
    source = FakeSource(TransportError("upstream down"), [sample("KA01", 120, T0)])
    scheduler = _scheduler(source, store, configs)

    assert await scheduler.on_tick() == []
    alerts = await scheduler.on_tick()

    assert [a.type for a in alerts] == [AlertType.SPEEDING]
    assert alerts[0].message == "Speeding at 120 km/h (limit: 80 km/h)"


@pytest.mark.asyncio
async def test_cycle_persists_last_known_snapshot(store, configs):
    source = FakeSource([sample("KA01", 90, T0, name="Truck 1"), sample("KA02", 2, T0 - 3600)])
    scheduler = _scheduler(source, store, configs)

    await scheduler.on_tick()

    snapshot = await store.get_all(SNAPSHOT_KEY)
    assert snapshot["KA01"]["status"] == "Speeding!"
    assert snapshot["KA01"]["name"] == "Truck 1"
    assert snapshot["KA02"]["status"] == "Stagnant"


@pytest.mark.asyncio
async def test_config_swap_keeps_stagnation_state(store, configs, monitor_config):
    now = [T0]
    source = FakeSource([sample("KA01", 0)], [sample("KA01", 0)])
    scheduler = _scheduler(source, store, configs, clock=lambda: now[0])

    assert await scheduler.on_tick() == []
    scheduler.update_config(MonitorConfig(monitor_config.webhook_url, ("KA01",), stagnation_minutes=10))
    now[0] = T0 + 11 * 60
    alerts = await scheduler.on_tick()

    assert [a.message for a in alerts] == ["Stagnant for 11 minutes"]


# ---------- Daily rollup ----------
def _at(hour, minute):
    return dt.datetime(2026, 10, 18, hour, minute, 10, tzinfo=dt.timezone.utc).timestamp()


@pytest.mark.asyncio
async def test_rollup_runs_once_at_2359(store, configs):
    rollup = FakeRollup()
    source = TripSource([sample("KA01", 40, T0)], [sample("KA01", 40, T0)])
    scheduler = _scheduler(source, store, configs, clock=lambda: _at(23, 59), rollup=rollup, tz=pytz.utc)

    await scheduler.on_tick()
    await scheduler.on_tick()
    await scheduler.drain()

    assert rollup.days == [dt.date(2026, 10, 18)]


@pytest.mark.asyncio
async def test_rollup_not_due_before_2359(store, configs):
    rollup = FakeRollup()
    scheduler = _scheduler(TripSource([sample("KA01", 40, T0)]), store, configs,
                           clock=lambda: _at(23, 58), rollup=rollup, tz=pytz.utc)

    await scheduler.on_tick()
    await scheduler.drain()

    assert rollup.days == []
    assert scheduler.rollup_due(_at(23, 59)) == dt.date(2026, 10, 18)


@pytest.mark.asyncio
async def test_rollup_needs_trip_capable_source(store, configs):
    scheduler = _scheduler(FakeSource(), store, configs, rollup=FakeRollup(), tz=pytz.utc)

    assert scheduler.rollup_due(_at(23, 59)) is None
