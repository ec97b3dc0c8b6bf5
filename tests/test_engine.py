import dataclasses

from fleet_guardian.alerts import AlertType, Priority
from fleet_guardian.monitor import AlertEngine, cap_batch, display_status, fmt_number, select_monitored
from fleet_guardian.tracker import ReferenceClock, StagnationTracker

from conftest import sample

T0 = 1_760_000_000.0


def _engine(reference=ReferenceClock.WALL_CLOCK):
    return AlertEngine(StagnationTracker(reference))


def test_speeding_alert_message(monitor_config):
    alerts = _engine().analyze([sample("KA01", 90, T0, latitude=12.9, longitude=77.6)], monitor_config, now=T0)

    assert len(alerts) == 1
    alert = alerts[0]
    assert alert.type is AlertType.SPEEDING
    assert alert.message == "Speeding at 90 km/h (limit: 80 km/h)"
    assert alert.vehicle_id == "KA01"
    assert alert.vehicle_name == "KA01"
    assert alert.timestamp == int(T0 * 1000)
    assert alert.location == {"latitude": 12.9, "longitude": 77.6}
    assert alert.priority is Priority.HIGH


def test_speed_equal_to_limit_is_not_speeding(monitor_config):
    assert _engine().analyze([sample("KA01", 80, T0)], monitor_config, now=T0) == []


def test_speed_just_over_limit_is_speeding(monitor_config):
    alerts = _engine().analyze([sample("KA01", 80.001, T0)], monitor_config, now=T0)

    assert [a.message for a in alerts] == ["Speeding at 80.001 km/h (limit: 80 km/h)"]


def test_speeding_fires_on_every_sample(monitor_config):
    # Current behaviour: speeding has no per-episode suppression, unlike stagnation.
    engine = _engine()

    fired = [engine.analyze([sample("KA01", 95, T0 + i * 60)], monitor_config, now=T0 + i * 60)
             for i in range(3)]

    assert [len(a) for a in fired] == [1, 1, 1]


def test_unmonitored_vehicles_are_ignored(monitor_config):
    engine = _engine()

    alerts = engine.analyze([sample("XX99", 150, T0)], monitor_config, now=T0)

    assert alerts == []
    assert engine.tracker.state("XX99") is None


def test_stagnation_alerts_once_per_episode(monitor_config):
    engine = _engine()
    fired = []
    for minute in range(0, 61):
        now = T0 + minute * 60
        for a in engine.analyze([sample("KA01", 2, now)], monitor_config, now=now):
            fired.append((minute, a.type, a.message))

    assert fired == [(31, AlertType.STAGNATION, "Stagnant for 31 minutes")]


def test_stagnation_alert_is_normal_priority(monitor_config):
    engine = _engine(ReferenceClock.SAMPLE_TIME)

    alerts = engine.analyze([sample("KA02", 0, T0)], monitor_config, now=T0 + 45 * 60)

    assert [a.type for a in alerts] == [AlertType.STAGNATION]
    assert alerts[0].message == "Stagnant for 45 minutes"
    assert alerts[0].priority is Priority.NORMAL


def test_config_swap_keeps_tracked_state(monitor_config):
    engine = _engine()
    engine.analyze([sample("KA01", 0, T0)], monitor_config, now=T0)

    shorter = dataclasses.replace(monitor_config, stagnation_minutes=10)
    alerts = engine.analyze([sample("KA01", 0, T0 + 11 * 60)], shorter, now=T0 + 11 * 60)

    assert [a.type for a in alerts] == [AlertType.STAGNATION]


def test_samples_processed_in_source_order(monitor_config):
    batch = [sample("KA02", 100, T0), sample("KA01", 100, T0)]

    alerts = _engine().analyze(batch, monitor_config, now=T0)

    assert [a.vehicle_id for a in alerts] == ["KA02", "KA01"]


def test_cap_batch_keeps_first_four_in_order():
    assert cap_batch(list(range(10))) == [0, 1, 2, 3]
    assert cap_batch([1, 2]) == [1, 2]


def test_select_monitored_keeps_first_four_entries():
    ids = [f"V{i}" for i in range(10)]
    batch = [sample("ZZ", 10, T0)] + [sample(v, 10, T0) for v in ids] + [sample("V0", 20, T0)]

    selected = select_monitored(batch, ids)

    assert [s.vehicle_id for s in selected] == ["V0", "V1", "V2", "V3"]


def test_repeated_samples_count_towards_the_cap(monitor_config):
    batch = [sample("KA01", 100 + i, T0) for i in range(10)]

    alerts = _engine().analyze(batch, monitor_config, now=T0)

    assert [a.message for a in alerts] == [
        f"Speeding at {100 + i} km/h (limit: 80 km/h)" for i in range(4)
    ]


def test_select_monitored_skips_missing_entries():
    assert select_monitored([None, sample("KA01")], ["KA01"]) == [sample("KA01")]


def test_fmt_number():
    assert fmt_number(90.0) == "90"
    assert fmt_number(80.5) == "80.5"


def test_display_status(monitor_config):
    now = T0 + 3600
    assert display_status(None, monitor_config, now) == "No data"
    assert display_status(sample("KA01", 0, None), monitor_config, now) == "No data"
    assert display_status(sample("KA01", 120, now), monitor_config, now) == "Speeding!"
    assert display_status(sample("KA01", 0, T0), monitor_config, now) == "Stagnant"
    assert display_status(sample("KA01", 40, now), monitor_config, now) == "Moving"
    assert display_status(sample("KA01", 0, now - 60), monitor_config, now) == "Idle"
