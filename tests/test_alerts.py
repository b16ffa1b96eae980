"""
Unit tests for cooldown-gated alert emission.
"""
import asyncio

import pytest

from src.agent.alerts import AlertEmitter, CONNECTIVITY_LOST_MESSAGE
from src.agent.config import ALERT_COOLDOWN_MS, GEOFENCE_LAT, GEOFENCE_LNG
from src.agent.geo import Geofence
from src.agent.models import AlertRecord, AlertType
from src.agent.queues import PersistentQueue
from src.agent.store import (
    ALERT_QUEUE_KEY,
    LAST_CONNECTIVITY_ALERT_KEY,
    LAST_GEOFENCE_ALERT_KEY,
    MemoryStore,
)

NOW = 1_700_000_000_000


def make_emitter(store=None, capacity=50):
    store = store or MemoryStore()
    queue = PersistentQueue(store, ALERT_QUEUE_KEY, capacity, AlertRecord, "alerts")
    emitter = AlertEmitter(store, queue, Geofence(GEOFENCE_LAT, GEOFENCE_LNG, 10.0))
    return emitter, queue, store


@pytest.mark.unit
class TestConnectivityAlert:
    """CONNECTIVITY_LOST cooldown behaviour."""

    def test_first_alert_is_emitted(self):
        async def scenario():
            emitter, queue, store = make_emitter()
            alert = await emitter.connectivity_lost("s1", NOW)
            return alert, await queue.records(), store

        alert, records, store = asyncio.run(scenario())
        assert alert.type is AlertType.CONNECTIVITY_LOST
        assert alert.message == CONNECTIVITY_LOST_MESSAGE
        assert records == [alert]
        assert store.data[LAST_CONNECTIVITY_ALERT_KEY] == str(NOW)

    def test_second_alert_within_cooldown_suppressed(self):
        """Two triggers inside the window produce exactly one alert."""
        async def scenario():
            emitter, queue, _ = make_emitter()
            first = await emitter.connectivity_lost("s1", NOW)
            second = await emitter.connectivity_lost("s1", NOW + 60_000)
            return first, second, await queue.size()

        first, second, size = asyncio.run(scenario())
        assert first is not None
        assert second is None
        assert size == 1

    def test_alert_at_exact_cooldown_boundary_suppressed(self):
        async def scenario():
            emitter, queue, _ = make_emitter()
            await emitter.connectivity_lost("s1", NOW)
            return await emitter.connectivity_lost("s1", NOW + ALERT_COOLDOWN_MS)

        assert asyncio.run(scenario()) is None

    def test_alert_after_cooldown_emitted_again(self):
        async def scenario():
            emitter, queue, _ = make_emitter()
            await emitter.connectivity_lost("s1", NOW)
            await emitter.connectivity_lost("s1", NOW + ALERT_COOLDOWN_MS + 1)
            return await queue.size()

        assert asyncio.run(scenario()) == 2

    def test_cooldowns_are_per_type(self):
        """A geofence alert is not suppressed by a recent connectivity alert."""
        async def scenario():
            emitter, queue, _ = make_emitter()
            await emitter.connectivity_lost("s1", NOW)
            geofence = await emitter.check_geofence("s1", GEOFENCE_LAT, GEOFENCE_LNG, NOW + 1000)
            return geofence, await queue.size()

        geofence, size = asyncio.run(scenario())
        assert geofence is not None
        assert size == 2


@pytest.mark.unit
class TestGeofenceAlert:
    """GEOFENCE_ENTERED emission."""

    def test_inside_emits_alert_with_position(self):
        async def scenario():
            emitter, queue, store = make_emitter()
            alert = await emitter.check_geofence("s1", GEOFENCE_LAT, GEOFENCE_LNG, NOW)
            return alert, store

        alert, store = asyncio.run(scenario())
        assert alert.type is AlertType.GEOFENCE_ENTERED
        assert alert.latitude == GEOFENCE_LAT
        assert alert.longitude == GEOFENCE_LNG
        assert alert.message == "Device entered restricted zone (0.00 km from center)"
        assert store.data[LAST_GEOFENCE_ALERT_KEY] == str(NOW)

    def test_outside_emits_nothing(self):
        async def scenario():
            emitter, queue, store = make_emitter()
            alert = await emitter.check_geofence("s1", 28.6139, 77.2090, NOW)
            return alert, await queue.size(), store

        alert, size, store = asyncio.run(scenario())
        assert alert is None
        assert size == 0
        assert LAST_GEOFENCE_ALERT_KEY not in store.data

    def test_marker_written_even_if_never_delivered(self):
        """The cooldown starts at emission, not at delivery."""
        async def scenario():
            emitter, queue, _ = make_emitter()
            await emitter.check_geofence("s1", GEOFENCE_LAT, GEOFENCE_LNG, NOW)
            # Alert still queued (undelivered); a new trigger is still suppressed
            return await emitter.check_geofence("s1", GEOFENCE_LAT, GEOFENCE_LNG, NOW + 20_000)

        assert asyncio.run(scenario()) is None


@pytest.mark.unit
class TestAlertQueueCapacity:
    def test_full_alert_queue_drops_oldest(self):
        async def scenario():
            emitter, queue, _ = make_emitter(capacity=2)
            for i in range(3):
                await emitter.connectivity_lost("s1", NOW + i * (ALERT_COOLDOWN_MS + 1))
            return await queue.records()

        records = asyncio.run(scenario())
        assert len(records) == 2
        assert records[0].occurred_at_millis == NOW + ALERT_COOLDOWN_MS + 1
