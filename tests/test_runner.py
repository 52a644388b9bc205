from __future__ import annotations

import asyncio
import json

import pytest

from elmtrend.history import PREDICTIONS_KEY, SNAPSHOTS_KEY, MemoryStorage, SnapshotHistory
from elmtrend.link.collector import SnapshotCollector
from elmtrend.link.runner import TelemetryHost
from elmtrend.link.sampler import build_sampler
from elmtrend.link.session import AdapterSession
from elmtrend.predictive import Severity


def _host(transport, config, profiles):
    session = AdapterSession(config, transport_factory=lambda link, kind: transport)
    return TelemetryHost(config, session=session, storage=MemoryStorage(), profiles=profiles)


def test_declining_battery_yields_one_warning(transport, config):
    transport.responses["0142"] = ["41 42 31 38", "41 42 30 D4", "41 42 30 70", "41 42 30 0C", "41 42 2F A8"]
    host = _host(transport, config, ["battery"])

    async def scenario():
        await host.start()
        for _ in range(5):
            await host.samplers["battery"].tick()
            host.collector.collect()
        await host.stop()

    asyncio.run(scenario())
    assert host.history.series("battery_voltage") == pytest.approx([12.6, 12.5, 12.4, 12.3, 12.2])
    assert host.battery_status() == "Normal"

    predictions = host.run_analysis()
    assert len(predictions) == 1
    pred = predictions[0]
    assert pred.component == "Battery"
    assert pred.severity is Severity.WARNING
    assert pred.timeframe == "1-2 weeks"

    assert len(json.loads(host.storage.get(SNAPSHOTS_KEY))) == 5
    assert json.loads(host.storage.get(PREDICTIONS_KEY))[0]["severity"] == "warning"


def test_collector_skips_when_disconnected(transport, config):
    host = _host(transport, config, ["battery"])
    assert host.collector.collect() is None
    assert len(host.history) == 0


def test_collector_uses_catalyst_test_result(transport, config):
    transport.responses["0601"] = "46 01 00 00 00 01 F4 00 C8"
    transport.responses["0142"] = "41 42 31 38"
    host = _host(transport, config, ["battery"])

    async def scenario():
        await host.start()
        await host.samplers["battery"].tick()
        snapshot = host.collector.collect(timestamp=1234.0)
        await host.stop()
        return snapshot

    snapshot = asyncio.run(scenario())
    assert snapshot.values["battery_voltage"] == pytest.approx(12.6)
    assert snapshot.values["catalyst_ratio"] == pytest.approx(0.2)
    assert snapshot.values["catalyst_percent"] == pytest.approx(40.0)


def test_collector_falls_back_to_other_samplers():
    async def send(payload, timeout_ms=None):
        return "41 42 30 D4" if payload == "0142" else "NO DATA"

    dashboard = build_sampler("dashboard", send)
    asyncio.run(dashboard.update())
    collector = SnapshotCollector(SnapshotHistory(), {"dashboard": dashboard})
    assert collector.gather() == {"battery_voltage": pytest.approx(12.5)}


def test_inactive_view_is_not_polled(transport, config):
    transport.responses["0142"] = "41 42 31 38"
    host = _host(transport, config, ["battery"])
    host.set_active("battery", False)

    async def scenario():
        await host.start()
        ran = await host.samplers["battery"].tick()
        await host.stop()
        return ran

    assert asyncio.run(scenario()) is False
    assert "0142" not in transport.writes


def test_unknown_profile_rejected(config):
    with pytest.raises(ValueError):
        TelemetryHost(config, storage=MemoryStorage(), profiles=["turbo"])
