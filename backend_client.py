# Vehicle Backend Client - REST transport for the operator console
# File: backend_client.py

"""
Thin client for the vehicle backend REST surface.

Requests are made with `requests` in worker threads so the console's event
loop keeps polling while a call is blocked on the network.

Usage:
    client = VehicleBackendClient("http://localhost:8080")
    payload = await client.fetch(TelemetrySource.BATTERY)
"""

import asyncio
import logging
import threading
from typing import Dict, Any

import requests

from operator_console import (
    CommandIntent,
    DispatchTransportFailure,
    SOURCE_PATHS,
    TelemetrySource,
    TelemetrySourceFailure,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# API Configuration
BASE_URL = "http://localhost:8080"
TEXT_HEADERS = {"Content-Type": "text/plain"}

class VehicleBackendClient:
    """Blocking HTTP calls to the vehicle backend, exposed as coroutines"""

    def __init__(self, base_url: str = BASE_URL, request_timeout: float = 0.8,
                 command_timeout: float = 5.0, session=None):
        """
        Initialize backend client

        Args:
            base_url: Backend root URL
            request_timeout: Timeout in seconds for telemetry requests
            command_timeout: Timeout in seconds for command requests
            session: Object with requests-style get/post (defaults to the
                requests module, one connection per call)
        """
        self.base_url = base_url.rstrip('/')
        self.request_timeout = request_timeout
        self.command_timeout = command_timeout
        self.http = session if session is not None else requests
        self.stats = {
            'commands': {'success': 0, 'failed': 0},
            'telemetry': {'success': 0, 'failed': 0}
        }
        self.stats_lock = threading.Lock()

    def check_server(self) -> bool:
        """Check if the vehicle backend answers"""
        try:
            response = self.http.get(
                f"{self.base_url}{SOURCE_PATHS[TelemetrySource.POSITION]}",
                timeout=2
            )
            return response.status_code == 200
        except requests.RequestException:
            return False

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def post_start(self, route_text: str):
        """POST the operator's route text verbatim to /start"""
        return self._command(
            CommandIntent.START,
            lambda: self.http.post(
                f"{self.base_url}/start",
                data=route_text.encode('utf-8'),
                headers=TEXT_HEADERS,
                timeout=self.command_timeout
            )
        )

    def get_command(self, intent: CommandIntent):
        """GET /pause, /resume or /abort"""
        intent = CommandIntent(intent)
        if intent is CommandIntent.START:
            raise ValueError("start carries a route; use post_start()")

        return self._command(
            intent,
            lambda: self.http.get(
                f"{self.base_url}/{intent.value}",
                timeout=self.command_timeout
            )
        )

    async def start_mission(self, route_text: str):
        return await asyncio.to_thread(self.post_start, route_text)

    async def send_command(self, intent: CommandIntent):
        return await asyncio.to_thread(self.get_command, intent)

    def _command(self, intent: CommandIntent, send):
        try:
            response = send()
            response.raise_for_status()
        except requests.HTTPError as e:
            self._count('commands', 'failed')
            status = e.response.status_code if e.response is not None else None
            raise DispatchTransportFailure(
                intent, f"backend returned HTTP {status}", status_code=status
            ) from e
        except requests.RequestException as e:
            self._count('commands', 'failed')
            raise DispatchTransportFailure(intent, f"request failed: {e}") from e

        self._count('commands', 'success')
        logger.debug(f"Command {intent.value} accepted (HTTP {response.status_code})")
        return response

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------

    def get_telemetry(self, source: TelemetrySource) -> Dict[str, Any]:
        """GET one status endpoint and return its decoded JSON body"""
        source = TelemetrySource(source)
        url = f"{self.base_url}{SOURCE_PATHS[source]}"

        try:
            response = self.http.get(url, timeout=self.request_timeout)
            response.raise_for_status()
            payload = response.json()
        except requests.HTTPError as e:
            self._count('telemetry', 'failed')
            status = e.response.status_code if e.response is not None else None
            raise TelemetrySourceFailure(source, f"HTTP {status}") from e
        except requests.RequestException as e:
            self._count('telemetry', 'failed')
            raise TelemetrySourceFailure(source, f"request failed: {e}") from e
        except ValueError as e:
            self._count('telemetry', 'failed')
            raise TelemetrySourceFailure(source, f"invalid JSON body: {e}") from e

        self._count('telemetry', 'success')
        return payload

    async def fetch(self, source: TelemetrySource) -> Dict[str, Any]:
        return await asyncio.to_thread(self.get_telemetry, source)

    def close(self):
        if isinstance(self.http, requests.Session):
            self.http.close()

    def _count(self, kind: str, result: str):
        # Called from worker threads, up to one per telemetry source at once
        with self.stats_lock:
            self.stats[kind][result] += 1

    def get_stats(self) -> Dict[str, Dict[str, int]]:
        with self.stats_lock:
            return {name: dict(counts) for name, counts in self.stats.items()}
