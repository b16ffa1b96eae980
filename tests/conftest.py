"""
Shared test doubles: a controllable clock, a scripted GPS provider and a fake
collector served through httpx.MockTransport.
"""
import asyncio
import json

import httpx
import pytest

from src.agent.config import AgentConfig
from src.agent.models import GpsFix
from src.agent.sampler import GpsProvider, GpsUnavailable
from src.agent.scheduler import build_scheduler
from src.agent.store import MemoryStore, SESSION_END_KEY, SESSION_ID_KEY

BASE_URL = "http://collector.test"
START_MILLIS = 1_700_000_000_000

# Somewhere in Delhi, ~60 km from the geofence center
OUTSIDE_LAT, OUTSIDE_LNG = 28.6139, 77.2090


class FakeClock:
    """Epoch-millis clock advanced explicitly by tests."""

    def __init__(self, start: int = START_MILLIS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> int:
        self.now += int(seconds * 1000)
        return self.now


class ScriptedGps(GpsProvider):
    """GPS provider whose tiers succeed, fail or hang as configured."""

    def __init__(self, fix=None, low_fix=None, last_known=None, hang_seconds=0.0):
        self.fix = fix
        self.low_fix = low_fix
        self.last_known = last_known
        self.hang_seconds = hang_seconds
        self.calls = []

    async def current_position(self, high_accuracy: bool) -> GpsFix:
        tier = "high" if high_accuracy else "low"
        self.calls.append(tier)
        if self.hang_seconds:
            await asyncio.sleep(self.hang_seconds)
        fix = self.fix if high_accuracy else self.low_fix
        if fix is None:
            raise GpsUnavailable(f"no {tier} fix")
        return fix

    async def last_known_position(self):
        self.calls.append("lastKnown")
        return self.last_known


class FakeCollector:
    """
    In-memory collector behind httpx.MockTransport.

    ``online`` False makes every request fail with ConnectError; the
    ``*_status`` attributes control the HTTP status of accepted requests.
    """

    def __init__(self):
        self.online = True
        self.location_status = 200
        self.alert_status = 200
        self.logs_status = 200
        self.location_batches = []
        self.alerts = []
        self.log_payloads = []
        self.order = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if not self.online:
            raise httpx.ConnectError("network unreachable", request=request)

        path = request.url.path
        if path == "/api/health":
            return httpx.Response(200, json={"status": "ok"})

        body = json.loads(request.content)
        if path == "/api/location":
            self.order.append("locations")
            if self.location_status == 200:
                self.location_batches.append(body)
            return httpx.Response(self.location_status, json={"message": "ok"})
        if path == "/api/alert":
            self.order.append("alert")
            if self.alert_status == 200:
                self.alerts.append(body)
            return httpx.Response(self.alert_status, json={"message": "ok"})
        if path == "/api/logs":
            if self.logs_status == 200:
                self.log_payloads.append(body)
            return httpx.Response(self.logs_status, json={"message": "ok"})
        return httpx.Response(404)

    @property
    def sent_locations(self):
        return [loc for batch in self.location_batches for loc in batch]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def outside_fix(speed=None) -> GpsFix:
    return GpsFix(latitude=OUTSIDE_LAT, longitude=OUTSIDE_LNG, accuracy=5.0, speed=speed)


def start_session(store: MemoryStore, clock: FakeClock, session_id="session-1", hours=2):
    store.data[SESSION_ID_KEY] = session_id
    store.data[SESSION_END_KEY] = str(clock() + hours * 3600 * 1000)


def make_agent(store=None, gps=None, collector=None, clock=None, **config_overrides):
    store = store if store is not None else MemoryStore()
    collector = collector or FakeCollector()
    clock = clock or FakeClock()
    config = AgentConfig(collector_url=BASE_URL, **config_overrides)
    scheduler = build_scheduler(
        config,
        collector.client(),
        store=store,
        gps=gps or ScriptedGps(fix=outside_fix()),
        clock=clock,
    )
    return scheduler, store, collector, clock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def collector():
    return FakeCollector()
