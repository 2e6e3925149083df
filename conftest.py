"""Shared fakes for the operator console tests."""

import asyncio
from typing import Dict, Any, List, Optional

import pytest

from operator_console import (
    CommandIntent,
    ConsoleConfig,
    ConsoleEngine,
    DispatchTransportFailure,
    TelemetrySource,
    TelemetrySourceFailure,
)

GOOD_PAYLOADS = {
    TelemetrySource.POSITION: {"latitude": 47.397742, "longitude": 8.545594},
    TelemetrySource.MISSION_PROGRESS: {"current": 1, "total": 4},
    TelemetrySource.BATTERY: {"remaining_percent": 87.5, "voltage_v": 15.9},
    TelemetrySource.ALTITUDE: {"relative_altitude_m": 12.0, "sea_level_altitude_m": 500.0},
    TelemetrySource.HEADING: {"heading_deg": 90.0},
}


class FakeBackend:
    """In-memory stand-in for VehicleBackendClient.

    `payloads` maps a source to a dict (returned), an exception (raised) or
    an asyncio.Event (awaited, then the source's current payload is returned).
    """

    def __init__(self, payloads: Optional[Dict[TelemetrySource, Any]] = None):
        self.payloads: Dict[TelemetrySource, Any] = dict(GOOD_PAYLOADS)
        if payloads:
            self.payloads.update(payloads)
        self.gates: Dict[TelemetrySource, asyncio.Event] = {}
        self.fetches: List[TelemetrySource] = []
        self.started_routes: List[str] = []
        self.commands: List[CommandIntent] = []
        self.command_error: Optional[DispatchTransportFailure] = None
        self.closed = False

    async def fetch(self, source: TelemetrySource) -> Dict[str, Any]:
        self.fetches.append(source)
        gate = self.gates.get(source)
        if gate is not None:
            await gate.wait()
        payload = self.payloads[source]
        if isinstance(payload, Exception):
            raise payload
        return payload

    async def start_mission(self, route_text: str):
        self.started_routes.append(route_text)
        if self.command_error:
            raise self.command_error

    async def send_command(self, intent: CommandIntent):
        self.commands.append(CommandIntent(intent))
        if self.command_error:
            raise self.command_error

    def close(self):
        self.closed = True


def source_down(source: TelemetrySource, reason: str = "connection refused") -> TelemetrySourceFailure:
    return TelemetrySourceFailure(source, reason)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def config() -> ConsoleConfig:
    return ConsoleConfig(poll_interval=0.05, request_timeout=0.04, stale_after=3.0)


@pytest.fixture
def engine(backend: FakeBackend, config: ConsoleConfig) -> ConsoleEngine:
    return ConsoleEngine(config, client=backend)
