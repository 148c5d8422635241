"""Alert engine deduplication/resolution and the device offline watchdog."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId

from alert_engine import AlertEngine
from health_monitor import THRESHOLD_RULES, check_rule
from offline_watchdog import OfflineWatchdog


def reading(**fields):
    return {"timestamp": datetime.now(timezone.utc).isoformat(), **fields,
            "validation": {"status": "PASS", "failed_parameters": []}}


# ── Rule table ────────────────────────────────────────────────────────────────

def test_rule_outcome_is_ternary():
    ph_rule = next(r for r in THRESHOLD_RULES if r["sensor"] == "ph")
    assert check_rule(ph_rule, {"ph": 9.1}) is True
    assert check_rule(ph_rule, {"ph": 6.4}) is True
    assert check_rule(ph_rule, {"ph": 6.5}) is False
    assert check_rule(ph_rule, {"ph": None}) is None
    assert check_rule(ph_rule, {}) is None


def test_rule_messages_include_value():
    messages = {r["sensor"]: r["message"] for r in THRESHOLD_RULES}
    assert messages["ph"](5.8) == "pH at 5.80 is outside safe range (6.5 - 8.5)"
    assert "5500 ppm" in messages["tds"](5500)


# ── fire() ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_fire_twice_creates_one_alert_and_one_broadcast(engine, store, broadcaster):
    assert await engine.fire("ph", "warning", "pH high", 9.0, "6.5 - 8.5") is True
    assert await engine.fire("ph", "warning", "pH high", 9.1, "6.5 - 8.5") is False

    assert len(store.alerts) == 1
    assert len(broadcaster.named("system_alert")) == 1


@pytest.mark.asyncio
async def test_concurrent_first_fires_do_not_duplicate(engine, store, broadcaster):
    results = await asyncio.gather(
        engine.fire("tds", "warning", "TDS high", 6000, "<= 5000 ppm"),
        engine.fire("tds", "warning", "TDS high", 6100, "<= 5000 ppm"),
    )
    assert sorted(results) == [False, True]
    assert len(store.alerts) == 1
    assert len(broadcaster.named("system_alert")) == 1


@pytest.mark.asyncio
async def test_broadcast_payload_is_formatted(engine, broadcaster):
    await engine.fire("temperature", "warning", "Too hot", 43.0, "10 - 40 °C")
    payload = broadcaster.named("system_alert")[0]

    assert isinstance(payload["id"], str)
    assert payload["sensor"] == "temperature"
    assert payload["severity"] == "warning"
    assert payload["value"] == 43.0
    assert payload["status"] == "active"
    assert datetime.fromisoformat(payload["timestamp"])
    assert "resolvedAt" not in payload


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["active", "acknowledged"])
async def test_fire_adopts_stored_alert_after_restart(store, broadcaster, status):
    store.alerts.append({
        "_id": ObjectId(), "sensor": "ph", "severity": "warning", "message": "old",
        "timestamp": datetime.now(timezone.utc), "status": status,
    })
    fresh = AlertEngine(store=store, broadcaster=broadcaster)

    assert await fresh.fire("ph", "warning", "pH low", 6.0, "6.5 - 8.5") is False
    assert ("ph", "warning") in fresh.active_keys
    assert len(store.alerts) == 1
    assert broadcaster.events == []


@pytest.mark.asyncio
async def test_failed_create_releases_key(engine, store):
    store.fail_create = True
    with pytest.raises(ConnectionError):
        await engine.fire("ph", "warning", "pH low", 6.0, "6.5 - 8.5")
    assert ("ph", "warning") not in engine.active_keys

    store.fail_create = False
    assert await engine.fire("ph", "warning", "pH low", 6.0, "6.5 - 8.5") is True


@pytest.mark.asyncio
async def test_independent_engines_have_independent_indexes(store, broadcaster):
    first = AlertEngine(store=store, broadcaster=broadcaster)
    second = AlertEngine(store=store, broadcaster=broadcaster)
    await first.fire("ph", "warning", "pH low", 6.0, "6.5 - 8.5")
    assert second.active_keys == set()


# ── clear() ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_fire_then_clear_round_trip(engine, store, broadcaster):
    await engine.fire("ph", "warning", "pH low", 6.0, "6.5 - 8.5")
    await engine.fire("ph", "critical", "pH very low", 3.0, "6.5 - 8.5")
    await engine.fire("tds", "warning", "TDS high", 6000, "<= 5000 ppm")

    assert await engine.clear("ph") == 2
    assert engine.active_keys == {("tds", "warning")}
    assert store.open_alerts("ph") == []
    assert all(a["resolvedAt"] for a in store.alerts if a["sensor"] == "ph")
    assert broadcaster.named("alert_resolved") == [{"sensor": "ph"}]


@pytest.mark.asyncio
async def test_clear_of_clear_sensor_is_silent(engine, store, broadcaster):
    assert await engine.clear("flow_rate") == 0
    assert broadcaster.events == []


@pytest.mark.asyncio
async def test_clear_resolves_stored_alert_unknown_to_index(engine, store, broadcaster):
    store.alerts.append({
        "_id": ObjectId(), "sensor": "tds", "severity": "warning", "message": "old",
        "timestamp": datetime.now(timezone.utc), "status": "acknowledged",
    })
    assert await engine.clear("tds") == 1
    assert broadcaster.named("alert_resolved") == [{"sensor": "tds"}]


# ── evaluate() ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_evaluate_fires_and_clears_per_rule(engine, store, broadcaster):
    await engine.evaluate(reading(ph=9.0, tds=1200, temperature=25, flow_rate=1.5))

    assert [a["sensor"] for a in store.open_alerts()] == ["ph"]
    assert store.resolve_calls == ["tds", "temperature", "flow_rate"]

    await engine.evaluate(reading(ph=7.0, tds=1200, temperature=25, flow_rate=1.5))
    assert store.open_alerts() == []
    assert broadcaster.named("alert_resolved") == [{"sensor": "ph"}]


@pytest.mark.asyncio
async def test_evaluate_skips_absent_sensors(engine, store):
    await engine.fire("temperature", "warning", "Too hot", 43.0, "10 - 40 °C")

    await engine.evaluate(reading(ph=7.0))

    assert store.resolve_calls == ["ph"]
    assert [a["sensor"] for a in store.open_alerts()] == ["temperature"]


@pytest.mark.asyncio
async def test_evaluate_never_raises_and_continues(engine, store):
    store.fail_create = True
    await engine.evaluate(reading(ph=9.0, tds=100))
    assert store.alerts == []
    assert "tds" in store.resolve_calls


# ── Offline watchdog ──────────────────────────────────────────────────────────

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_watchdog_ignores_empty_history(engine, store, broadcaster):
    watchdog = OfflineWatchdog(engine, store, interval=30, threshold=60)
    await watchdog.tick(now=NOW)
    assert store.alerts == []
    assert store.resolve_calls == []
    assert broadcaster.events == []


@pytest.mark.asyncio
async def test_watchdog_fires_once_then_clears_on_fresh_reading(engine, store, broadcaster):
    watchdog = OfflineWatchdog(engine, store, interval=30, threshold=60)
    store.latest = NOW - timedelta(seconds=61)

    await watchdog.tick(now=NOW)
    await watchdog.tick(now=NOW + timedelta(seconds=30))

    device_alerts = [a for a in store.alerts if a["sensor"] == "device"]
    assert len(device_alerts) == 1
    assert device_alerts[0]["severity"] == "critical"
    assert device_alerts[0]["value"] is None
    assert "61 s" in device_alerts[0]["message"]
    assert len(broadcaster.named("system_alert")) == 1

    store.latest = NOW + timedelta(seconds=55)
    await watchdog.tick(now=NOW + timedelta(seconds=60))

    assert store.open_alerts("device") == []
    assert broadcaster.named("alert_resolved") == [{"sensor": "device"}]


@pytest.mark.asyncio
async def test_watchdog_threshold_is_exclusive(engine, store):
    watchdog = OfflineWatchdog(engine, store, interval=30, threshold=60)
    store.latest = NOW - timedelta(seconds=60)
    await watchdog.tick(now=NOW)
    assert store.alerts == []
    assert store.resolve_calls == ["device"]


@pytest.mark.asyncio
async def test_watchdog_survives_storage_errors(engine, store):
    store.fail_latest = True
    watchdog = OfflineWatchdog(engine, store, interval=30, threshold=60)
    await watchdog.tick(now=NOW)
    assert store.alerts == []


@pytest.mark.asyncio
async def test_watchdog_run_keeps_ticking(engine, store, monkeypatch):
    watchdog = OfflineWatchdog(engine, store, interval=0, threshold=60)
    store.fail_latest = True
    ticks = []
    original_tick = watchdog.tick

    async def counting_tick(now=None):
        ticks.append(1)
        await original_tick(now)
        if len(ticks) == 3:
            raise asyncio.CancelledError

    monkeypatch.setattr(watchdog, "tick", counting_tick)
    with pytest.raises(asyncio.CancelledError):
        await watchdog.run()
    assert len(ticks) == 3
