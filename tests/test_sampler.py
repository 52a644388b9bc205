from __future__ import annotations

import asyncio

import pytest

from elmtrend.link.errors import CommandTimeout
from elmtrend.link.sampler import (
    SAMPLER_PROFILES,
    CircuitBreaker,
    ParameterPhase,
    PeriodicTicker,
    build_sampler,
    profile_interval,
)

DASHBOARD_REPLIES = {
    "010C": "41 0C 1A F8",
    "010D": "41 0D 3C",
    "0105": "41 05 7D",
    "012F": "NO DATA",
    "0111": "41 11 80",
    "0142": "41 42 31 38",
}


class FakeSender:
    def __init__(self, replies):
        self.replies = dict(replies)
        self.calls = []

    async def __call__(self, payload, timeout_ms=None):
        self.calls.append(payload)
        reply = self.replies.get(payload, "NO DATA")
        if isinstance(reply, BaseException):
            raise reply
        return reply


def test_profiles_defined():
    assert set(SAMPLER_PROFILES) == {"dashboard", "engine", "timing", "emissions", "battery"}
    assert profile_interval("battery") == pytest.approx(5.0)
    assert profile_interval("dashboard") == pytest.approx(0.1)
    with pytest.raises(ValueError):
        build_sampler("turbo", FakeSender({}))


def test_unsupported_parameter_never_requested_again():
    sender = FakeSender(DASHBOARD_REPLIES)
    sampler = build_sampler("dashboard", sender)

    async def scenario():
        for _ in range(3):
            assert await sampler.tick()

    asyncio.run(scenario())
    assert sender.calls.count("012F") == 1
    assert sender.calls.count("010C") == 3
    assert sampler.states["FUEL_LEVEL"].phase is ParameterPhase.DISABLED
    assert "FUEL_LEVEL" not in sampler.supported_parameters()
    assert not sampler.disabled
    assert sampler.latest_value("RPM") == pytest.approx(1726.0)
    assert sampler.latest_value("coolant") == pytest.approx(85.0)


def test_breaker_trips_and_stops_requests():
    sender = FakeSender({"0142": CommandTimeout("0142", 100)})
    sampler = build_sampler("battery", sender, max_errors=3)

    async def scenario():
        ran = [await sampler.tick() for _ in range(5)]
        return ran

    ran = asyncio.run(scenario())
    assert ran == [True, True, True, False, False]
    assert sampler.disabled
    assert len(sender.calls) == 3

    sampler.reset_breaker()
    sender.replies["0142"] = "41 42 31 38"
    assert asyncio.run(sampler.tick())
    assert not sampler.disabled
    assert sampler.latest_value("BATTERY") == pytest.approx(12.6)


def test_success_resets_failure_count():
    sender = FakeSender({"0142": CommandTimeout("0142", 100)})
    sampler = build_sampler("battery", sender, max_errors=3)

    async def scenario():
        await sampler.tick()
        await sampler.tick()
        sender.replies["0142"] = "41 42 31 38"
        await sampler.tick()
        sender.replies["0142"] = CommandTimeout("0142", 100)
        await sampler.tick()
        await sampler.tick()

    asyncio.run(scenario())
    assert not sampler.disabled
    assert sampler.breaker.consecutive_failures == 2


def test_timeout_ends_cycle_early():
    sender = FakeSender({"0106": CommandTimeout("0106", 100)})
    sampler = build_sampler("emissions", sender)
    asyncio.run(sampler.tick())
    assert sender.calls == ["0106"]


@pytest.mark.parametrize("counts,tripped", [(False, False), (True, True)])
def test_malformed_policy(counts, tripped):
    sender = FakeSender({"0142": "41 42 31"})
    sampler = build_sampler("battery", sender, malformed_counts_as_failure=counts)

    async def scenario():
        for _ in range(3):
            await sampler.tick()

    asyncio.run(scenario())
    assert sampler.disabled is tripped
    assert sampler.latest_value("BATTERY") is None


def test_overlapping_tick_is_skipped():
    release = None

    async def slow_sender(payload, timeout_ms=None):
        await release.wait()
        return "41 42 31 38"

    sampler = build_sampler("battery", slow_sender)

    async def scenario():
        nonlocal release
        release = asyncio.Event()
        first = asyncio.ensure_future(sampler.tick())
        await asyncio.sleep(0)
        assert sampler.busy
        second = await sampler.tick()
        release.set()
        return await first, second

    first, second = asyncio.run(scenario())
    assert first is True
    assert second is False
    assert sampler.stats()["skipped_busy"] == 1


def test_inactive_or_disconnected_sampler_does_nothing():
    sender = FakeSender(DASHBOARD_REPLIES)
    inactive = build_sampler("battery", sender, is_active=lambda: False)
    offline = build_sampler("battery", sender, is_connected=lambda: False)

    async def scenario():
        return await inactive.tick(), await offline.tick()

    assert asyncio.run(scenario()) == (False, False)
    assert sender.calls == []


def test_history_and_callbacks():
    sender = FakeSender({"0142": "41 42 31 38"})
    sampler = build_sampler("battery", sender)
    seen = []
    sampler.register_callback(seen.append)

    async def scenario():
        for _ in range(25):
            await sampler.tick()

    asyncio.run(scenario())
    assert len(sampler.history["BATTERY"]) == 20
    assert len(seen) == 25
    assert seen[0][0].unit == "V"

    sampler.reset()
    assert sampler.latest_value("BATTERY") is None
    assert len(sampler.history["BATTERY"]) == 0


def test_circuit_breaker_states():
    breaker = CircuitBreaker(max_errors=2)
    assert breaker.record_failure() is False
    assert breaker.record_failure() is True
    assert breaker.tripped
    assert breaker.record_failure() is False
    breaker.reset()
    assert not breaker.tripped
    with pytest.raises(ValueError):
        CircuitBreaker(0)


def test_periodic_ticker_fires_without_waiting():
    started = []

    async def slow_callback():
        started.append(asyncio.get_running_loop().time())
        await asyncio.sleep(0.05)

    async def scenario():
        ticker = PeriodicTicker("test", 0.01, slow_callback)
        ticker.start()
        await asyncio.sleep(0.08)
        await ticker.stop()
        return ticker

    ticker = asyncio.run(scenario())
    # fires keep coming while earlier callbacks are still sleeping
    assert len(started) >= 3
    assert not ticker.running
