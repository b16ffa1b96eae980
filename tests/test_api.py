"""
Integration tests for the agent's FastAPI host surface.

The lifespan is not run; each test installs a scheduler wired against
in-memory collaborators on ``app.state``.
"""
import pytest
from fastapi.testclient import TestClient

from src.agent.main import app
from src.agent.store import LAST_SUCCESSFUL_SEND_KEY, MemoryStore

from conftest import make_agent, start_session


class DownStore(MemoryStore):
    async def ping(self):
        return False


@pytest.fixture
def agent():
    scheduler, store, collector, clock = make_agent()
    app.state.scheduler = scheduler
    yield scheduler, store, collector, clock
    del app.state.scheduler


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    return TestClient(app)


@pytest.mark.unit
class TestHealthEndpoint:
    """Test suite for /health endpoint."""

    def test_health_without_session(self, client, agent):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["store"] == "connected"
        assert data["session"] == "NO_SESSION"
        assert data["queues"] == {"locations": 0, "alerts": 0}

    def test_health_reports_active_session(self, client, agent):
        _, store, _, clock = agent
        start_session(store, clock)

        data = client.get("/health").json()

        assert data["session"] == "ACTIVE"

    def test_health_store_down(self, client):
        scheduler, _, _, _ = make_agent(store=DownStore())
        app.state.scheduler = scheduler
        try:
            data = client.get("/health").json()
        finally:
            del app.state.scheduler

        assert data["status"] == "degraded"
        assert data["store"] == "disconnected"

    def test_not_initialized(self, client):
        response = client.get("/health")
        assert response.status_code == 503


@pytest.mark.unit
class TestCycleEndpoints:
    """Test suite for the on-demand cycle triggers."""

    def test_trigger_cycle(self, client, agent):
        _, store, collector, clock = agent
        start_session(store, clock)

        response = client.post("/v1/cycle")

        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "ACTIVE"
        assert data["connected"] is True
        assert data["method"] == "high"
        assert data["reading"]["sessionId"] == "session-1"
        assert data["flush"]["locations_sent"] == 1
        assert len(collector.sent_locations) == 1

    def test_trigger_cycle_without_session(self, client, agent):
        data = client.post("/v1/cycle").json()
        assert data["state"] == "NO_SESSION"
        assert data["reading"] is None

    def test_trigger_watchdog_fresh(self, client, agent):
        _, store, _, clock = agent
        start_session(store, clock)
        store.data[LAST_SUCCESSFUL_SEND_KEY] = str(clock() - 10_000)

        data = client.post("/v1/watchdog").json()

        assert data["action"] == "fresh"
        assert data["staleness_ms"] == 10_000

    def test_stop_then_cycle_is_skipped(self, client, agent):
        response = client.post("/v1/stop")
        assert response.status_code == 200

        data = client.post("/v1/cycle").json()
        assert data["skipped"] is True


@pytest.mark.unit
class TestMetricsEndpoint:
    def test_metrics_exposed(self, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "agent_cycles_total" in response.text
