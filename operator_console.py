# Operator Console - Console Synchronization & Command Dispatch
# File: operator_console.py

"""
Installation Requirements:
pip install fastapi uvicorn pydantic requests psutil

Run interactively with: python operator_console.py
One-shot commands:      python operator_console.py route load mission.txt
"""

import asyncio
import logging
import math
import os
import sys
import time
from collections import deque
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from typing import List, Dict, Optional, Any, Callable, Tuple

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ============================================================================
# PART 1: CONFIGURATION
# ============================================================================

@dataclass
class ConsoleConfig:
    """Configuration for the operator console and its vehicle backend"""
    backend_url: str = "http://localhost:8080"
    poll_interval: float = 1.0  # seconds between telemetry waves
    request_timeout: float = 0.8  # per telemetry request, < poll_interval
    command_timeout: float = 5.0  # per command request
    stale_after: float = 3.0  # seconds before a field group is reported stale
    home_latitude: float = 47.397742
    home_longitude: float = 8.545594
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    title: str = "Freefly Foam Dispenser"

    def __post_init__(self):
        self.backend_url = self.backend_url.rstrip('/')
        if self.poll_interval <= 0:
            raise ValueError(f"poll_interval must be positive, got {self.poll_interval}")
        if not 0 < self.request_timeout < self.poll_interval:
            raise ValueError(
                f"request_timeout ({self.request_timeout}s) must be positive and "
                f"shorter than poll_interval ({self.poll_interval}s)"
            )
        if self.command_timeout <= 0:
            raise ValueError(f"command_timeout must be positive, got {self.command_timeout}")
        if self.stale_after <= 0:
            raise ValueError(f"stale_after must be positive, got {self.stale_after}")

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> 'ConsoleConfig':
        """Build config with CONSOLE_* environment overrides"""
        environ = os.environ if environ is None else environ
        overrides = {}

        for config_field in fields(cls):
            key = f"CONSOLE_{config_field.name.upper()}"
            if key not in environ:
                continue
            caster = type(config_field.default)
            try:
                overrides[config_field.name] = caster(environ[key])
            except ValueError:
                raise ValueError(
                    f"Invalid value for {key}: {environ[key]!r} "
                    f"(expected {caster.__name__})"
                ) from None

        return cls(**overrides)

# ============================================================================
# PART 2: CORE DATA MODELS
# ============================================================================

class CommandIntent(str, Enum):
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    ABORT = "abort"

class TelemetrySource(str, Enum):
    """Independent status endpoints; each owns exactly one field group"""
    POSITION = "position"
    MISSION_PROGRESS = "mission_progress"
    BATTERY = "battery"
    ALTITUDE = "altitude"
    HEADING = "heading"

SOURCE_PATHS = {
    TelemetrySource.POSITION: "/telemetry",
    TelemetrySource.MISSION_PROGRESS: "/mission_progress",
    TelemetrySource.BATTERY: "/battery",
    TelemetrySource.ALTITUDE: "/altitude",
    TelemetrySource.HEADING: "/heading",
}

@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float

    def __post_init__(self):
        if not (math.isfinite(self.latitude) and math.isfinite(self.longitude)):
            raise ValueError(f"non-finite coordinate ({self.latitude}, {self.longitude})")
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"latitude {self.latitude} outside [-90, 90]")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"longitude {self.longitude} outside [-180, 180]")

    def as_pair(self) -> Tuple[float, float]:
        return (self.latitude, self.longitude)

# Insertion order is flight order
Route = Tuple[Coordinate, ...]

@dataclass(frozen=True)
class MissionProgress:
    current: int
    total: int

@dataclass(frozen=True)
class BatteryStatus:
    remaining_percent: float
    voltage_v: Optional[float] = None

@dataclass(frozen=True)
class AltitudeReading:
    relative_altitude_m: float
    sea_level_altitude_m: Optional[float] = None

@dataclass(frozen=True)
class HeadingReading:
    heading_deg: float

@dataclass(frozen=True)
class FieldReading:
    """Latest value of one field group and the tick that produced it"""
    value: Any
    tick: int
    updated_at: datetime

    def age(self, now: Optional[datetime] = None) -> float:
        return ((now or datetime.now()) - self.updated_at).total_seconds()

@dataclass(frozen=True)
class TelemetrySnapshot:
    """
    Best-effort merge of the five field groups.

    Attribute names match TelemetrySource values. A group that has never been
    received is None; a group whose source failed keeps its last good reading.
    """
    position: Optional[FieldReading] = None
    mission_progress: Optional[FieldReading] = None
    battery: Optional[FieldReading] = None
    altitude: Optional[FieldReading] = None
    heading: Optional[FieldReading] = None

    def reading(self, source: TelemetrySource) -> Optional[FieldReading]:
        return getattr(self, TelemetrySource(source).value)

    def value(self, source: TelemetrySource) -> Any:
        reading = self.reading(source)
        return reading.value if reading else None

    def merged(self, tick: int, values: Dict[TelemetrySource, Any],
               now: Optional[datetime] = None) -> 'TelemetrySnapshot':
        """Return a new snapshot with every group that is newer than what we hold"""
        now = now or datetime.now()
        updates = {}

        for source, value in values.items():
            current = self.reading(source)
            # An older tick finishing late must not overwrite newer data
            if current is not None and current.tick >= tick:
                continue
            updates[TelemetrySource(source).value] = FieldReading(value, tick, now)

        return replace(self, **updates) if updates else self

    def to_dict(self) -> Dict[str, Any]:
        position = self.value(TelemetrySource.POSITION)
        progress = self.value(TelemetrySource.MISSION_PROGRESS)
        battery = self.value(TelemetrySource.BATTERY)
        altitude = self.value(TelemetrySource.ALTITUDE)
        heading = self.value(TelemetrySource.HEADING)

        return {
            'latitude': position.latitude if position else None,
            'longitude': position.longitude if position else None,
            'relative_altitude_m': altitude.relative_altitude_m if altitude else None,
            'sea_level_altitude_m': altitude.sea_level_altitude_m if altitude else None,
            'heading_deg': heading.heading_deg if heading else None,
            'remaining_percent': battery.remaining_percent if battery else None,
            'voltage_v': battery.voltage_v if battery else None,
            'current': progress.current if progress else None,
            'total': progress.total if progress else None,
            'updated_at': {
                source.value: (
                    self.reading(source).updated_at.isoformat()
                    if self.reading(source) else None
                )
                for source in TelemetrySource
            }
        }

@dataclass(frozen=True)
class DispatchOutcome:
    """Result of transmitting one command; not persisted"""
    intent: CommandIntent
    success: bool
    error: Optional[str] = None  # failure class name
    message: str = ""
    status_code: Optional[int] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'intent': self.intent.value,
            'success': self.success,
            'error': self.error,
            'message': self.message,
            'status_code': self.status_code,
            'timestamp': self.timestamp.isoformat()
        }

# ============================================================================
# PART 3: ERROR TAXONOMY
# ============================================================================

class ConsoleError(Exception):
    """Base class for operator console failures"""

class MalformedRoute(ConsoleError, ValueError):
    """Route text rejected in full; the previously held route is untouched"""

    def __init__(self, reason: str, line_number: Optional[int] = None,
                 line: Optional[str] = None):
        self.reason = reason
        self.line_number = line_number
        self.line = line
        if line_number is not None:
            super().__init__(f"line {line_number}: {reason} ({line!r})")
        else:
            super().__init__(reason)

class NoRouteLoaded(ConsoleError):
    """Start refused locally because no non-empty route is held"""

class DispatchTransportFailure(ConsoleError):
    """A command request could not be sent or the backend rejected it"""

    def __init__(self, intent: CommandIntent, message: str,
                 status_code: Optional[int] = None):
        self.intent = CommandIntent(intent)
        self.status_code = status_code
        super().__init__(message)

class TelemetrySourceFailure(ConsoleError):
    """One status endpoint failed for one tick"""

    def __init__(self, source: TelemetrySource, message: str):
        self.source = TelemetrySource(source)
        super().__init__(f"{self.source.value}: {message}")

# ============================================================================
# PART 4: WAYPOINT INGESTOR
# ============================================================================

class WaypointIngestor:
    """Parse operator route files (one 'latitude,longitude' per line)"""

    @staticmethod
    def parse(text: str) -> Route:
        """
        Parse route text into a Route.

        Blank and whitespace-only lines are skipped. Any other line must hold
        exactly two comma-separated numbers forming a valid coordinate, or the
        whole text is rejected with MalformedRoute.
        """
        coordinates: List[Coordinate] = []

        # Editors on Windows often save UTF-8 with a byte order mark
        if text.startswith('\ufeff'):
            text = text[1:]

        for line_number, raw_line in enumerate(text.splitlines(), start=1):
            line = raw_line.strip()
            if not line:
                continue

            tokens = line.split(',')
            if len(tokens) != 2:
                raise MalformedRoute(
                    f"expected 'latitude,longitude', got {len(tokens)} field(s)",
                    line_number, raw_line
                )

            try:
                latitude = float(tokens[0])
                longitude = float(tokens[1])
            except ValueError:
                raise MalformedRoute("non-numeric coordinate", line_number, raw_line) from None

            try:
                coordinates.append(Coordinate(latitude, longitude))
            except ValueError as e:
                raise MalformedRoute(str(e), line_number, raw_line) from None

        return tuple(coordinates)

# ============================================================================
# PART 5: CONSOLE STATE
# ============================================================================

StateListener = Callable[[str, 'ConsoleState'], None]

class ConsoleState:
    """
    Single source of truth for presentation collaborators.

    Every write replaces a whole immutable value (route, snapshot, outcome),
    so readers never observe a half-applied update. Listeners are notified
    with the kind of change: 'route', 'telemetry' or 'outcome'.
    """

    def __init__(self, home: Optional[Coordinate] = None, history_size: int = 100):
        self.home = home
        self._route: Route = ()
        self._route_text: Optional[str] = None
        self._snapshot = TelemetrySnapshot()
        self._last_outcome: Optional[DispatchOutcome] = None
        self.outcome_history: deque = deque(maxlen=history_size)
        self._listeners: List[StateListener] = []

    @property
    def route(self) -> Route:
        return self._route

    @property
    def route_text(self) -> Optional[str]:
        """Exact text the current route was ingested from"""
        return self._route_text

    @property
    def snapshot(self) -> TelemetrySnapshot:
        return self._snapshot

    @property
    def last_outcome(self) -> Optional[DispatchOutcome]:
        return self._last_outcome

    def subscribe(self, listener: StateListener):
        self._listeners.append(listener)

    def load_route(self, text: str) -> Route:
        """Ingest route text; on MalformedRoute the held route is unchanged"""
        try:
            route = WaypointIngestor.parse(text)
        except MalformedRoute as e:
            logger.warning(f"Route rejected: {e}")
            raise

        self._route, self._route_text = route, text
        logger.info(f"Route loaded: {len(route)} waypoints")
        self._notify('route')
        return route

    def apply_tick(self, tick: int, values: Dict[TelemetrySource, Any],
                   now: Optional[datetime] = None) -> TelemetrySnapshot:
        """Merge one tick's resolved field groups in a single replacement"""
        merged = self._snapshot.merged(tick, values, now)
        if merged is not self._snapshot:
            self._snapshot = merged
            self._notify('telemetry')
        return self._snapshot

    def record_outcome(self, outcome: DispatchOutcome):
        self._last_outcome = outcome
        self.outcome_history.append(outcome)
        self._notify('outcome')

    def stale_groups(self, stale_after: float,
                     now: Optional[datetime] = None) -> List[TelemetrySource]:
        """Field groups never received or not refreshed within stale_after seconds"""
        now = now or datetime.now()
        stale = []
        for source in TelemetrySource:
            reading = self._snapshot.reading(source)
            if reading is None or reading.age(now) > stale_after:
                stale.append(source)
        return stale

    def map_center(self) -> Optional[Coordinate]:
        """Latest vehicle position, or home before the first fix"""
        position = self._snapshot.value(TelemetrySource.POSITION)
        return position if position is not None else self.home

    def view(self, stale_after: float) -> Dict[str, Any]:
        """Plain-dict view consumed by the map, readouts and controls"""
        center = self.map_center()
        return {
            'telemetry': self._snapshot.to_dict(),
            'route': [list(c.as_pair()) for c in self._route],
            'route_loaded': bool(self._route),
            'last_outcome': self._last_outcome.to_dict() if self._last_outcome else None,
            'stale': [s.value for s in self.stale_groups(stale_after)],
            'map_center': list(center.as_pair()) if center else None,
        }

    def _notify(self, kind: str):
        for listener in self._listeners:
            try:
                listener(kind, self)
            except Exception as e:
                logger.error(f"State listener error on {kind}: {e}")

# ============================================================================
# PART 6: COMMAND DISPATCHER
# ============================================================================

class CommandDispatcher:
    """
    Turn one command intent into exactly one backend request.

    Reports whether the request was transmitted, not whether the vehicle
    complied; compliance only shows up later in mission progress. Dispatches
    are independent of each other and of the telemetry poll loop.
    """

    def __init__(self, client, state: ConsoleState):
        self.client = client
        self.state = state

    async def dispatch(self, intent) -> DispatchOutcome:
        intent = CommandIntent(intent)

        try:
            if intent is CommandIntent.START:
                # Read both together so a concurrent re-upload cannot split them
                route, route_text = self.state.route, self.state.route_text
                if not route:
                    raise NoRouteLoaded("Please select a waypoint file first!")
                await self.client.start_mission(route_text)
            else:
                await self.client.send_command(intent)
        except NoRouteLoaded as e:
            logger.warning(f"Command refused: {intent.value} - {e}")
            outcome = DispatchOutcome(intent, False, error='NoRouteLoaded', message=str(e))
        except DispatchTransportFailure as e:
            logger.warning(f"Error sending command: {intent.value} - {e}")
            outcome = DispatchOutcome(
                intent, False,
                error='DispatchTransportFailure',
                message=str(e),
                status_code=e.status_code
            )
        else:
            logger.info(f"Command sent: {intent.value}")
            outcome = DispatchOutcome(intent, True, message=f"Command sent: {intent.value}")

        self.state.record_outcome(outcome)
        return outcome

# ============================================================================
# PART 7: TELEMETRY AGGREGATOR
# ============================================================================

def _require_mapping(source: TelemetrySource, payload: Any) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise TelemetrySourceFailure(source, f"expected JSON object, got {type(payload).__name__}")
    return payload

def _number(source: TelemetrySource, payload: Dict[str, Any], key: str) -> float:
    raw = payload.get(key)
    if isinstance(raw, bool):
        raise TelemetrySourceFailure(source, f"'{key}' is not numeric")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise TelemetrySourceFailure(source, f"missing or non-numeric '{key}'") from None
    if not math.isfinite(value):
        raise TelemetrySourceFailure(source, f"'{key}' is not finite")
    return value

def _optional_number(source: TelemetrySource, payload: Dict[str, Any],
                     key: str) -> Optional[float]:
    if payload.get(key) is None:
        return None
    return _number(source, payload, key)

def _count(source: TelemetrySource, payload: Dict[str, Any], key: str) -> int:
    value = _number(source, payload, key)
    if value < 0 or not value.is_integer():
        raise TelemetrySourceFailure(source, f"'{key}' must be a non-negative integer, got {value}")
    return int(value)

def parse_position(payload: Dict[str, Any]) -> Coordinate:
    source = TelemetrySource.POSITION
    latitude = _number(source, payload, 'latitude')
    longitude = _number(source, payload, 'longitude')
    try:
        return Coordinate(latitude, longitude)
    except ValueError as e:
        raise TelemetrySourceFailure(source, str(e)) from None

def parse_mission_progress(payload: Dict[str, Any]) -> MissionProgress:
    source = TelemetrySource.MISSION_PROGRESS
    current = _count(source, payload, 'current')
    total = _count(source, payload, 'total')
    if total > 0 and current > total:
        raise TelemetrySourceFailure(source, f"current {current} exceeds total {total}")
    return MissionProgress(current, total)

def parse_battery(payload: Dict[str, Any]) -> BatteryStatus:
    source = TelemetrySource.BATTERY
    remaining = _number(source, payload, 'remaining_percent')
    if not 0.0 <= remaining <= 100.0:
        raise TelemetrySourceFailure(source, f"remaining_percent {remaining} outside [0, 100]")
    return BatteryStatus(remaining, _optional_number(source, payload, 'voltage_v'))

def parse_altitude(payload: Dict[str, Any]) -> AltitudeReading:
    source = TelemetrySource.ALTITUDE
    return AltitudeReading(
        _number(source, payload, 'relative_altitude_m'),
        _optional_number(source, payload, 'sea_level_altitude_m')
    )

def parse_heading(payload: Dict[str, Any]) -> HeadingReading:
    heading = _number(TelemetrySource.HEADING, payload, 'heading_deg')
    return HeadingReading(heading % 360.0)

READING_PARSERS: Dict[TelemetrySource, Callable[[Dict[str, Any]], Any]] = {
    TelemetrySource.POSITION: parse_position,
    TelemetrySource.MISSION_PROGRESS: parse_mission_progress,
    TelemetrySource.BATTERY: parse_battery,
    TelemetrySource.ALTITUDE: parse_altitude,
    TelemetrySource.HEADING: parse_heading,
}

@dataclass
class TickReport:
    """What happened during one poll tick"""
    tick: int
    updated: List[TelemetrySource]
    failures: Dict[TelemetrySource, str]
    skipped: List[TelemetrySource]
    duration_ms: float
    applied: bool

class PollHandle:
    """Handle returned by TelemetryAggregator.start(); await stop() before teardown"""

    def __init__(self, aggregator: 'TelemetryAggregator'):
        self._aggregator = aggregator

    @property
    def running(self) -> bool:
        return self._aggregator.running

    async def stop(self):
        await self._aggregator.stop()

class TelemetryAggregator:
    """
    Periodic fan-out to the five status endpoints.

    Each tick fetches all sources concurrently and merges whatever resolved
    into ConsoleState in one step. A failed source only leaves its own group
    at the last good value. Ticks are free-running: a new tick starts every
    poll_interval even if an earlier one is still waiting, but a source whose
    previous request is still in flight is skipped for that tick.
    """

    def __init__(self, client, state: ConsoleState, poll_interval: float = 1.0,
                 request_timeout: float = 0.8):
        self.client = client
        self.state = state
        self.poll_interval = poll_interval
        self.request_timeout = request_timeout
        self.tick_listeners: List[Callable[[TickReport], None]] = []

        self._tick_seq = 0
        self._generation = 0
        self._in_flight = set()
        self._failing = set()
        self._tick_tasks = set()
        self._loop_task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def ticks_started(self) -> int:
        return self._tick_seq

    @property
    def failing_sources(self) -> List[TelemetrySource]:
        return [s for s in TelemetrySource if s in self._failing]

    def start(self) -> PollHandle:
        """Start the poll loop on the running event loop"""
        if self._running:
            raise RuntimeError("Telemetry poll loop already running")

        self._running = True
        self._loop_task = asyncio.get_running_loop().create_task(self._poll_loop())
        logger.info(f"Telemetry polling started (every {self.poll_interval}s)")
        return PollHandle(self)

    async def stop(self):
        """Stop polling; ticks still in flight finish but are not applied"""
        if not self._running:
            return

        self._running = False
        self._generation += 1

        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        if self._tick_tasks:
            await asyncio.gather(*self._tick_tasks, return_exceptions=True)

        logger.info("Telemetry polling stopped")

    async def _poll_loop(self):
        loop = asyncio.get_running_loop()
        next_tick = loop.time()

        while self._running:
            task = loop.create_task(self._run_tick(self._generation))
            self._tick_tasks.add(task)
            task.add_done_callback(self._tick_tasks.discard)

            next_tick += self.poll_interval
            delay = next_tick - loop.time()
            if delay < 0:
                next_tick = loop.time()
                delay = 0
            await asyncio.sleep(delay)

    async def run_tick(self) -> TickReport:
        """Run one fetch-and-merge wave"""
        return await self._run_tick(self._generation)

    async def _run_tick(self, generation: int) -> TickReport:
        # generation is fixed when the tick is scheduled; a stop() in between
        # bumps it and the tick's results are dropped
        self._tick_seq += 1
        tick = self._tick_seq
        started = time.monotonic()

        sources = [s for s in TelemetrySource if s not in self._in_flight]
        skipped = [s for s in TelemetrySource if s in self._in_flight]
        self._in_flight.update(sources)

        results = await asyncio.gather(
            *(self._fetch(source) for source in sources),
            return_exceptions=True
        )

        values = {}
        failures = {}
        for source, result in zip(sources, results):
            if isinstance(result, TelemetrySourceFailure):
                failures[source] = str(result)
            elif isinstance(result, Exception):
                logger.error(f"Unexpected error fetching {source.value}: {result!r}")
                failures[source] = f"{source.value}: {result!r}"
            elif isinstance(result, BaseException):
                raise result
            else:
                values[source] = result

        applied = generation == self._generation
        if applied:
            self.state.apply_tick(tick, values)
        else:
            logger.debug(f"Discarding tick {tick} completed after stop")

        self._track_source_health(values, failures)

        report = TickReport(
            tick=tick,
            updated=list(values),
            failures=failures,
            skipped=skipped,
            duration_ms=(time.monotonic() - started) * 1000,
            applied=applied
        )
        for listener in self.tick_listeners:
            try:
                listener(report)
            except Exception as e:
                logger.error(f"Tick listener error: {e}")
        return report

    async def _fetch(self, source: TelemetrySource) -> Any:
        # The request outlives a timeout when the client blocks in a worker
        # thread, so the source stays in flight until the request itself ends
        request = asyncio.ensure_future(self.client.fetch(source))
        request.add_done_callback(lambda task: self._request_done(source, task))

        try:
            payload = await asyncio.wait_for(
                asyncio.shield(request),
                timeout=self.request_timeout
            )
        except asyncio.TimeoutError:
            raise TelemetrySourceFailure(
                source, f"timed out after {self.request_timeout}s"
            ) from None
        return READING_PARSERS[source](_require_mapping(source, payload))

    def _request_done(self, source: TelemetrySource, task: asyncio.Future):
        self._in_flight.discard(source)
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Request for {source.value} ended with {task.exception()!r}")

    def _track_source_health(self, values: Dict, failures: Dict):
        for source, reason in failures.items():
            logger.debug(f"Telemetry source failed: {reason}")
            if source not in self._failing:
                self._failing.add(source)
                logger.warning(f"Telemetry source degraded: {reason}")

        for source in values:
            if source in self._failing:
                self._failing.discard(source)
                logger.info(f"Telemetry source recovered: {source.value}")

# ============================================================================
# PART 8: CONSOLE ENGINE
# ============================================================================

class ConsoleEngine:
    """Wires the backend client, state, dispatcher and poll loop together"""

    def __init__(self, config: Optional[ConsoleConfig] = None, client=None):
        self.config = config or ConsoleConfig()

        if client is None:
            # Import here to avoid circular imports
            from backend_client import VehicleBackendClient
            client = VehicleBackendClient(
                self.config.backend_url,
                request_timeout=self.config.request_timeout,
                command_timeout=self.config.command_timeout
            )

        self.client = client
        self.state = ConsoleState(
            home=Coordinate(self.config.home_latitude, self.config.home_longitude)
        )
        self.dispatcher = CommandDispatcher(self.client, self.state)
        self.aggregator = TelemetryAggregator(
            self.client,
            self.state,
            poll_interval=self.config.poll_interval,
            request_timeout=self.config.request_timeout
        )
        self.status = "stopped"
        self.start_time: Optional[datetime] = None
        self._poll_handle: Optional[PollHandle] = None

    def start(self) -> PollHandle:
        """Start telemetry polling; must be called from a running event loop"""
        self._poll_handle = self.aggregator.start()
        self.status = "running"
        self.start_time = datetime.now()
        logger.info(f"🚀 {self.config.title} console started ({self.config.backend_url})")
        return self._poll_handle

    async def stop(self):
        if self._poll_handle:
            await self._poll_handle.stop()
            self._poll_handle = None
        self.status = "stopped"
        logger.info("🛑 Console stopped")

    async def close(self):
        await self.stop()
        close = getattr(self.client, 'close', None)
        if close:
            close()

    def load_route(self, text: str) -> Route:
        return self.state.load_route(text)

    def load_route_file(self, path: str) -> Route:
        # newline='' keeps CRLF so start forwards the file as written
        with open(path, 'r', encoding='utf-8', newline='') as f:
            text = f.read()
        return self.load_route(text)

    async def dispatch(self, intent) -> DispatchOutcome:
        return await self.dispatcher.dispatch(intent)

    async def refresh(self) -> TickReport:
        """Run a single telemetry tick outside the poll loop"""
        return await self.aggregator.run_tick()

    def state_view(self) -> Dict[str, Any]:
        return self.state.view(self.config.stale_after)

    def get_status(self) -> Dict[str, Any]:
        uptime = (datetime.now() - self.start_time).total_seconds() if self.start_time else 0

        return {
            'status': self.status,
            'title': self.config.title,
            'backend_url': self.config.backend_url,
            'uptime': f"{int(uptime // 3600)}h {int((uptime % 3600) // 60)}m",
            'uptime_seconds': uptime,
            'polling': self.aggregator.running,
            'ticks': self.aggregator.ticks_started,
            'failing_sources': [s.value for s in self.aggregator.failing_sources],
            'stale': [s.value for s in self.state.stale_groups(self.config.stale_after)],
            'waypoints': len(self.state.route),
            'last_outcome': self.state.last_outcome.to_dict() if self.state.last_outcome else None
        }

# ============================================================================
# PART 9: CLI INTERFACE
# ============================================================================

class CLI:
    """Command Line Interface"""

    def __init__(self, engine: ConsoleEngine):
        self.engine = engine
        self.commands = {
            'route': self._route_cmd,
            'start': self._command_cmd(CommandIntent.START),
            'pause': self._command_cmd(CommandIntent.PAUSE),
            'resume': self._command_cmd(CommandIntent.RESUME),
            'abort': self._command_cmd(CommandIntent.ABORT),
            'telemetry': self._telemetry_cmd,
            'status': self._status_cmd,
            'help': self._help_cmd
        }

    async def run(self, args: List[str]):
        """Run CLI command"""
        if not args:
            self._help_cmd([])
            return

        command = args[0]
        if command not in self.commands:
            print(f"❌ Unknown command: {command}")
            self._help_cmd([])
            return

        result = self.commands[command](args[1:])
        if asyncio.iscoroutine(result):
            await result

    def _route_cmd(self, args: List[str]):
        """Route commands"""
        if not args:
            print("Usage: route [load <file>|show]")
            return

        action = args[0]

        if action == 'load':
            if len(args) < 2:
                print("Usage: route load <file>")
                return
            try:
                route = self.engine.load_route_file(args[1])
            except FileNotFoundError:
                print(f"❌ File not found: {args[1]}")
                return
            except MalformedRoute as e:
                print(f"❌ Invalid route file: {e}")
                return
            print(f"✅ Route loaded: {len(route)} waypoints")

        elif action == 'show':
            route = self.engine.state.route
            if not route:
                print("No route loaded")
                return
            print(f"\n{'='*40}")
            print(f"{'#':<5} {'Latitude':<15} {'Longitude'}")
            print(f"{'='*40}")
            for i, c in enumerate(route, start=1):
                print(f"{i:<5} {c.latitude:<15.6f} {c.longitude:.6f}")
            print(f"{'='*40}\n")

    def _command_cmd(self, intent: CommandIntent):
        async def handler(args: List[str]):
            outcome = await self.engine.dispatch(intent)
            if outcome.success:
                print(f"✅ {outcome.message}")
            else:
                print(f"❌ {intent.value} failed ({outcome.error}): {outcome.message}")
        return handler

    async def _telemetry_cmd(self, args: List[str]):
        """Show telemetry readouts"""
        if args and args[0] == 'refresh':
            await self.engine.refresh()

        t = self.engine.state.snapshot.to_dict()
        stale = {s.value for s in self.engine.state.stale_groups(self.engine.config.stale_after)}

        def fmt(value, unit=""):
            return "--" if value is None else f"{value}{unit}"

        def mark(source: TelemetrySource):
            return " (stale)" if source.value in stale else ""

        print(f"\n{'='*60}")
        print("TELEMETRY")
        print(f"{'='*60}")
        print(f"Latitude: {fmt(t['latitude'])}{mark(TelemetrySource.POSITION)}")
        print(f"Longitude: {fmt(t['longitude'])}{mark(TelemetrySource.POSITION)}")
        print(f"Altitude: {fmt(t['relative_altitude_m'], 'm')}{mark(TelemetrySource.ALTITUDE)}")
        print(f"Heading: {fmt(t['heading_deg'], '°')}{mark(TelemetrySource.HEADING)}")
        print(f"Battery: {fmt(t['remaining_percent'], '%')}{mark(TelemetrySource.BATTERY)}")
        print(f"Mission Progress: {fmt(t['current'])} / {fmt(t['total'])}"
              f"{mark(TelemetrySource.MISSION_PROGRESS)}")
        print(f"{'='*60}\n")

    def _status_cmd(self, args: List[str]):
        """Overall console status"""
        status = self.engine.get_status()
        outcome = status['last_outcome']

        print(f"\n{'='*60}")
        print(status['title'].upper())
        print(f"{'='*60}")
        print(f"Console: {status['status'].upper()}")
        print(f"Backend: {status['backend_url']}")
        print(f"Uptime: {status['uptime']}")
        print(f"Telemetry ticks: {status['ticks']}")
        print(f"Failing sources: {', '.join(status['failing_sources']) or 'none'}")
        print(f"Stale groups: {', '.join(status['stale']) or 'none'}")
        print(f"Route: {status['waypoints']} waypoints")
        if outcome:
            result = 'ok' if outcome['success'] else outcome['error']
            print(f"Last command: {outcome['intent']} ({result})")
        print(f"{'='*60}\n")

    def _help_cmd(self, args: List[str]):
        """Show help"""
        print("\n" + "="*70)
        print(f"{self.engine.config.title} - Operator Console CLI")
        print("="*70)
        print("\nCommands:")
        print("  route      - Manage route (load <file>|show)")
        print("  start      - Start mission with the loaded route")
        print("  pause      - Pause mission")
        print("  resume     - Resume mission")
        print("  abort      - Abort mission")
        print("  telemetry  - Show telemetry readouts (refresh)")
        print("  status     - Show console status")
        print("  help       - Show this help")
        print("="*70 + "\n")

# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

async def _run_once(engine: ConsoleEngine, cli: CLI, args: List[str]):
    try:
        await cli.run(args)
    finally:
        await engine.close()

async def _run_interactive(engine: ConsoleEngine, cli: CLI):
    engine.start()
    print("\n📋 Type 'help' for commands, 'exit' to quit\n")

    try:
        while True:
            try:
                command = (await asyncio.to_thread(input, "GCS> ")).strip()
            except EOFError:
                break

            if command.lower() in ['exit', 'quit']:
                break

            if command:
                try:
                    await cli.run(command.split())
                except Exception as e:
                    print(f"❌ Error: {e}")
    finally:
        await engine.close()
        print("👋 Goodbye!")

def main(argv: Optional[List[str]] = None):
    argv = sys.argv[1:] if argv is None else argv

    engine = ConsoleEngine(ConsoleConfig.from_env())
    cli = CLI(engine)

    try:
        if argv:
            asyncio.run(_run_once(engine, cli, argv))
        else:
            asyncio.run(_run_interactive(engine, cli))
    except KeyboardInterrupt:
        print("\n👋 Goodbye!")

if __name__ == "__main__":
    main()
