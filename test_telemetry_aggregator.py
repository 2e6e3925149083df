"""Tests for concurrent telemetry polling and partial-failure merging."""

import asyncio
import threading
import time
from collections import defaultdict

import pytest
import requests

from backend_client import VehicleBackendClient
from conftest import FakeBackend, source_down
from operator_console import (
    ConsoleState,
    TelemetryAggregator,
    TelemetrySource,
    TelemetrySourceFailure,
    parse_battery,
    parse_heading,
    parse_mission_progress,
    parse_position,
)


def _aggregator(backend: FakeBackend, state: ConsoleState = None, **kwargs) -> TelemetryAggregator:
    kwargs.setdefault("poll_interval", 0.05)
    kwargs.setdefault("request_timeout", 0.04)
    return TelemetryAggregator(backend, state or ConsoleState(), **kwargs)


def test_tick_fills_every_group() -> None:
    backend = FakeBackend()
    state = ConsoleState()

    report = asyncio.run(_aggregator(backend, state).run_tick())

    assert report.failures == {}
    assert set(report.updated) == set(TelemetrySource)
    t = state.snapshot.to_dict()
    assert (t["latitude"], t["longitude"]) == (47.397742, 8.545594)
    assert (t["current"], t["total"]) == (1, 4)
    assert t["remaining_percent"] == 87.5
    assert t["relative_altitude_m"] == 12.0
    assert t["heading_deg"] == 90.0


def test_one_failed_source_keeps_last_known_value() -> None:
    backend = FakeBackend()
    state = ConsoleState()
    aggregator = _aggregator(backend, state)

    async def scenario():
        await aggregator.run_tick()
        backend.payloads[TelemetrySource.BATTERY] = source_down(TelemetrySource.BATTERY)
        backend.payloads[TelemetrySource.HEADING] = {"heading_deg": 180.0}
        backend.payloads[TelemetrySource.POSITION] = {"latitude": 47.4, "longitude": 8.6}
        return await aggregator.run_tick()

    report = asyncio.run(scenario())

    assert list(report.failures) == [TelemetrySource.BATTERY]
    assert len(report.updated) == 4
    t = state.snapshot.to_dict()
    assert t["remaining_percent"] == 87.5  # not reset to zero
    assert state.snapshot.battery.tick == 1
    assert t["heading_deg"] == 180.0
    assert (t["latitude"], t["longitude"]) == (47.4, 8.6)


def test_battery_timeout_leaves_battery_while_heading_updates() -> None:
    backend = FakeBackend()
    state = ConsoleState()
    aggregator = _aggregator(backend, state)

    async def scenario():
        await aggregator.run_tick()
        backend.gates[TelemetrySource.BATTERY] = asyncio.Event()  # never set
        backend.payloads[TelemetrySource.BATTERY] = {"remaining_percent": 10.0}
        backend.payloads[TelemetrySource.HEADING] = {"heading_deg": 270.0}
        return await aggregator.run_tick()

    report = asyncio.run(scenario())

    assert TelemetrySource.BATTERY in report.failures
    assert "timed out" in report.failures[TelemetrySource.BATTERY]
    assert state.snapshot.to_dict()["remaining_percent"] == 87.5
    assert state.snapshot.to_dict()["heading_deg"] == 270.0


def test_first_tick_failure_leaves_group_unset() -> None:
    backend = FakeBackend({TelemetrySource.POSITION: source_down(TelemetrySource.POSITION)})
    state = ConsoleState()

    asyncio.run(_aggregator(backend, state).run_tick())

    assert state.snapshot.position is None
    assert state.snapshot.heading is not None


def test_all_sources_fetched_concurrently() -> None:
    backend = FakeBackend()

    async def scenario():
        release = asyncio.Event()
        for source in TelemetrySource:
            backend.gates[source] = release
        aggregator = _aggregator(backend, request_timeout=1.0, poll_interval=2.0)
        tick = asyncio.ensure_future(aggregator.run_tick())
        await asyncio.sleep(0.01)
        in_flight = list(backend.fetches)
        release.set()
        await tick
        return in_flight

    in_flight = asyncio.run(scenario())

    # Every request was issued before any of them resolved
    assert set(in_flight) == set(TelemetrySource)


def test_late_tick_does_not_overwrite_newer_values() -> None:
    backend = FakeBackend()
    state = ConsoleState()
    aggregator = _aggregator(backend, state, request_timeout=1.0, poll_interval=2.0)

    async def scenario():
        slow_position = asyncio.Event()
        backend.gates[TelemetrySource.POSITION] = slow_position
        backend.payloads[TelemetrySource.HEADING] = {"heading_deg": 10.0}

        tick1 = asyncio.ensure_future(aggregator.run_tick())
        await asyncio.sleep(0.01)

        backend.payloads[TelemetrySource.HEADING] = {"heading_deg": 20.0}
        report2 = await aggregator.run_tick()

        slow_position.set()
        report1 = await tick1
        return report1, report2

    report1, report2 = asyncio.run(scenario())

    assert (report1.tick, report2.tick) == (1, 2)
    # Tick 2 skipped position because tick 1 still had it in flight
    assert report2.skipped == [TelemetrySource.POSITION]
    heading = state.snapshot.heading
    assert heading.value.heading_deg == 20.0
    assert heading.tick == 2
    # Position only ever came from tick 1 and is still applied
    assert state.snapshot.position.tick == 1


def test_bad_payloads_count_as_source_failures() -> None:
    backend = FakeBackend({
        TelemetrySource.BATTERY: {"remaining_percent": 140.0},
        TelemetrySource.MISSION_PROGRESS: {"current": 5, "total": 3},
        TelemetrySource.POSITION: ["not", "an", "object"],
        TelemetrySource.ALTITUDE: {"relative_altitude_m": "high"},
    })
    state = ConsoleState()

    report = asyncio.run(_aggregator(backend, state).run_tick())

    assert set(report.failures) == {
        TelemetrySource.BATTERY,
        TelemetrySource.MISSION_PROGRESS,
        TelemetrySource.POSITION,
        TelemetrySource.ALTITUDE,
    }
    assert report.updated == [TelemetrySource.HEADING]


def test_unexpected_client_error_is_isolated() -> None:
    backend = FakeBackend({TelemetrySource.ALTITUDE: RuntimeError("boom")})
    state = ConsoleState()

    report = asyncio.run(_aggregator(backend, state).run_tick())

    assert TelemetrySource.ALTITUDE in report.failures
    assert state.snapshot.battery is not None


def test_failing_sources_tracked_until_recovery() -> None:
    backend = FakeBackend({TelemetrySource.HEADING: source_down(TelemetrySource.HEADING)})
    aggregator = _aggregator(backend)

    async def scenario():
        await aggregator.run_tick()
        failing = aggregator.failing_sources
        backend.payloads[TelemetrySource.HEADING] = {"heading_deg": 5.0}
        await aggregator.run_tick()
        return failing, aggregator.failing_sources

    during, after = asyncio.run(scenario())

    assert during == [TelemetrySource.HEADING]
    assert after == []


def test_poll_loop_runs_until_stopped() -> None:
    backend = FakeBackend()
    state = ConsoleState()
    aggregator = _aggregator(backend, state)

    async def scenario():
        handle = aggregator.start()
        assert handle.running
        await asyncio.sleep(0.18)
        await handle.stop()
        ticks = aggregator.ticks_started
        await asyncio.sleep(0.12)
        return handle, ticks

    handle, ticks = asyncio.run(scenario())

    assert ticks >= 2
    assert aggregator.ticks_started == ticks
    assert not handle.running
    assert state.snapshot.heading is not None


def test_in_flight_tick_not_applied_after_stop() -> None:
    backend = FakeBackend()
    state = ConsoleState()
    aggregator = _aggregator(backend, state, poll_interval=5.0, request_timeout=1.0)

    async def scenario():
        release = asyncio.Event()
        for source in TelemetrySource:
            backend.gates[source] = release
        aggregator.start()
        await asyncio.sleep(0.01)

        stopping = asyncio.ensure_future(aggregator.stop())
        await asyncio.sleep(0)
        release.set()
        await stopping

    asyncio.run(scenario())

    assert backend.fetches  # requests were in flight and allowed to finish
    assert state.snapshot.position is None
    assert state.snapshot.heading is None


def test_start_twice_is_an_error() -> None:
    aggregator = _aggregator(FakeBackend())

    async def scenario():
        aggregator.start()
        try:
            with pytest.raises(RuntimeError):
                aggregator.start()
        finally:
            await aggregator.stop()

    asyncio.run(scenario())


def test_heading_is_normalized() -> None:
    assert parse_heading({"heading_deg": 370.0}).heading_deg == pytest.approx(10.0)
    assert parse_heading({"heading_deg": -90.0}).heading_deg == pytest.approx(270.0)


def test_parsers_enforce_invariants() -> None:
    assert parse_mission_progress({"current": 0, "total": 0}).total == 0
    assert parse_mission_progress({"current": 3, "total": 3}).current == 3
    assert parse_battery({"remaining_percent": 55}).voltage_v is None

    with pytest.raises(TelemetrySourceFailure):
        parse_mission_progress({"current": -1, "total": 3})
    with pytest.raises(TelemetrySourceFailure):
        parse_mission_progress({"current": 1.5, "total": 3})
    with pytest.raises(TelemetrySourceFailure):
        parse_position({"latitude": 95.0, "longitude": 8.0})
    with pytest.raises(TelemetrySourceFailure):
        parse_battery({"remaining_percent": True})
    with pytest.raises(TelemetrySourceFailure):
        parse_heading({})


class BlockingSession:
    """requests-style session whose calls outlast the aggregator's timeout"""

    def __init__(self, delay: float):
        self.delay = delay
        self.lock = threading.Lock()
        self.active = defaultdict(int)
        self.max_active = defaultdict(int)
        self.calls = defaultdict(int)

    def get(self, url, **kwargs):
        with self.lock:
            self.calls[url] += 1
            self.active[url] += 1
            self.max_active[url] = max(self.max_active[url], self.active[url])
        try:
            time.sleep(self.delay)
        finally:
            with self.lock:
                self.active[url] -= 1
        raise requests.Timeout("read timed out")


def test_timed_out_request_blocks_source_until_it_returns() -> None:
    session = BlockingSession(delay=0.2)
    client = VehicleBackendClient("http://vehicle.local", request_timeout=0.05, session=session)
    aggregator = _aggregator(client, poll_interval=0.1, request_timeout=0.05)

    async def scenario():
        first = await aggregator.run_tick()
        second = await aggregator.run_tick()
        await asyncio.sleep(0.35)
        third = await aggregator.run_tick()
        await asyncio.sleep(0.3)
        return first, second, third

    first, second, third = asyncio.run(scenario())

    assert all("timed out" in reason for reason in first.failures.values())
    # Worker threads from the first tick are still on the wire
    assert set(second.skipped) == set(TelemetrySource)
    assert second.failures == {}
    assert third.skipped == []
    assert all(count == 2 for count in session.calls.values())
    assert all(peak == 1 for peak in session.max_active.values())
