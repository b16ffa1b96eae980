"""
Cooldown-gated alert generation.

Two alert types are raised by the capture cycle:
- CONNECTIVITY_LOST when the connectivity probe fails
- GEOFENCE_ENTERED when a reading falls inside the geofence

Each type is emitted at most once per cooldown window (5 minutes). The
cooldown marker is written before the alert is enqueued, so a slow or
failing delivery can't cause the same alert to be raised again.
"""
import logging
from typing import Optional

from src.agent import logs
from src.agent import metrics
from src.agent.config import ALERT_COOLDOWN_MS
from src.agent.geo import Geofence
from src.agent.models import AlertRecord, AlertType
from src.agent.queues import PersistentQueue
from src.agent.store import (
    KeyValueStore,
    LAST_CONNECTIVITY_ALERT_KEY,
    LAST_GEOFENCE_ALERT_KEY,
)

logger = logging.getLogger(__name__)

COOLDOWN_KEYS = {
    AlertType.CONNECTIVITY_LOST: LAST_CONNECTIVITY_ALERT_KEY,
    AlertType.GEOFENCE_ENTERED: LAST_GEOFENCE_ALERT_KEY,
}

CONNECTIVITY_LOST_MESSAGE = "Internet connection has been disabled on the device"


class AlertEmitter:
    """
    Emits alerts into the alert queue, respecting per-type cooldowns.

    Args:
        store: Key-value store holding the cooldown markers
        alert_queue: Queue receiving emitted alerts
        geofence: Zone that triggers GEOFENCE_ENTERED
        cooldown_ms: Minimum time between two alerts of the same type
    """

    def __init__(
        self,
        store: KeyValueStore,
        alert_queue: PersistentQueue,
        geofence: Geofence,
        cooldown_ms: int = ALERT_COOLDOWN_MS,
    ):
        self.store = store
        self.alert_queue = alert_queue
        self.geofence = geofence
        self.cooldown_ms = cooldown_ms

    async def last_alert_millis(self, alert_type: AlertType) -> int:
        return await self.store.get_int(COOLDOWN_KEYS[alert_type], 0)

    async def _emit(self, alert: AlertRecord, now: int) -> Optional[AlertRecord]:
        last = await self.last_alert_millis(alert.type)
        if now - last <= self.cooldown_ms:
            logger.debug("%s suppressed by cooldown (%ds ago)", alert.type.value, (now - last) // 1000)
            return None

        # Marker first: delivery may take several cycles
        await self.store.set_int(COOLDOWN_KEYS[alert.type], now)
        await self.alert_queue.enqueue(alert)
        metrics.alerts_emitted_total.labels(type=alert.type.value).inc()
        return alert

    async def connectivity_lost(self, session_id: str, now: int) -> Optional[AlertRecord]:
        """
        Raise CONNECTIVITY_LOST unless one was raised within the cooldown.

        Returns:
            The enqueued alert, or None if suppressed
        """
        alert = AlertRecord(
            session_id=session_id,
            type=AlertType.CONNECTIVITY_LOST,
            message=CONNECTIVITY_LOST_MESSAGE,
            occurred_at_millis=now,
        )
        emitted = await self._emit(alert, now)
        if emitted:
            logs.event(logger, logging.WARNING, "CYCLE", "Internet connectivity lost")
        return emitted

    async def check_geofence(
        self, session_id: str, lat: float, lon: float, now: int
    ) -> Optional[AlertRecord]:
        """
        Raise GEOFENCE_ENTERED if (lat, lon) is inside the geofence.

        Returns:
            The enqueued alert, or None if outside or suppressed
        """
        if not self.geofence.contains(lat, lon):
            return None

        distance = self.geofence.distance_km(lat, lon)
        alert = AlertRecord(
            session_id=session_id,
            type=AlertType.GEOFENCE_ENTERED,
            message=f"Device entered restricted zone ({distance:.2f} km from center)",
            latitude=lat,
            longitude=lon,
            occurred_at_millis=now,
        )
        emitted = await self._emit(alert, now)
        if emitted:
            logs.event(logger, logging.WARNING, "GEOFENCE", "User entered geofence zone",
                       distance_km=round(distance, 2))
        return emitted
