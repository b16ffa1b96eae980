"""
Delivery of queued records to the collector.

Wire format (collector endpoints):
- POST /api/location  JSON array of location records
- POST /api/alert     one alert record per request
- POST /api/logs      {deviceId, deviceModel, logs: [...]}
Success is HTTP 200; anything else, a transport error or a missed deadline
is a failed delivery and leaves the queue as it was.

Flush order per cycle:
1. No connectivity -> nothing is sent
2. Alerts: the whole alert queue, all-or-nothing
3. Locations: one bounded batch from the head of the location queue
"""
import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from src.agent import logs
from src.agent import metrics
from src.agent.queues import PersistentQueue
from src.agent.time_utils import now_millis

logger = logging.getLogger(__name__)


class CollectorClient:
    """
    Thin client for the collector's HTTP API.

    Methods return True only on confirmed acceptance and never raise for
    network problems.
    """

    def __init__(self, client: httpx.AsyncClient, base_url: str):
        self.client = client
        self.base_url = base_url.rstrip("/")

    async def _post(self, path: str, payload: Any, kind: str) -> bool:
        url = f"{self.base_url}{path}"
        try:
            response = await self.client.post(url, json=payload)
        except httpx.ConnectError:
            logger.warning("Network unreachable - %s kept in queue", kind)
            metrics.upload_attempts_total.labels(kind=kind, status="network_error").inc()
            return False
        except httpx.TimeoutException:
            logger.warning("%s upload timed out", kind)
            metrics.upload_attempts_total.labels(kind=kind, status="timeout").inc()
            return False
        except httpx.HTTPError as e:
            logger.warning("%s upload failed: %s", kind, e)
            metrics.upload_attempts_total.labels(kind=kind, status="error").inc()
            return False

        if response.status_code == 200:
            metrics.upload_attempts_total.labels(kind=kind, status="success").inc()
            return True

        logger.warning("%s upload rejected: HTTP %d", kind, response.status_code)
        metrics.upload_attempts_total.labels(kind=kind, status="rejected").inc()
        return False

    async def send_locations(self, batch: List[Dict[str, Any]]) -> bool:
        return await self._post("/api/location", batch, "locations")

    async def send_alert(self, alert: Dict[str, Any]) -> bool:
        return await self._post("/api/alert", alert, "alert")

    async def send_logs(self, payload: Dict[str, Any]) -> bool:
        return await self._post("/api/logs", payload, "logs")


@dataclass
class FlushResult:
    """What a flush did; sizes are measured after the flush."""
    connected: bool = False
    alerts_attempted: int = 0
    alerts_sent: bool = False
    locations_attempted: int = 0
    locations_sent: int = 0
    location_queue_size: int = 0
    alert_queue_size: int = 0
    last_successful_send_millis: Optional[int] = None

    @property
    def delivered(self) -> bool:
        return self.last_successful_send_millis is not None


def _decode_entries(entries: List[str]) -> List[Dict[str, Any]]:
    decoded = []
    for raw in entries:
        try:
            decoded.append(json.loads(raw))
        except json.JSONDecodeError:
            # Still evicted with the batch so it can't wedge the head
            logger.error("Dropping corrupt queue entry: %.80s", raw)
    return decoded


class BatchUploader:
    """
    Drains the alert and location queues against the collector.

    Args:
        collector: CollectorClient
        clock: Returns current epoch millis
    """

    def __init__(self, collector: CollectorClient, clock=now_millis):
        self.collector = collector
        self.clock = clock

    async def _send_alerts(self, entries: List[str]) -> bool:
        # Per-item transport: the first failure stops the run and fails the batch
        for alert in _decode_entries(entries):
            if not await self.collector.send_alert(alert):
                return False
        return True

    async def flush_alerts(self, alert_queue: PersistentQueue, timeout: float) -> tuple:
        """
        Send every queued alert; clear them only if all were accepted.

        Returns:
            (attempted, sent) tuple
        """
        async def send(entries):
            return await asyncio.wait_for(self._send_alerts(entries), timeout=timeout)

        result = await alert_queue.drain(None, send)
        if result.attempted:
            if result.sent:
                logs.event(logger, logging.INFO, "SEND", "All alerts sent successfully",
                           count=result.attempted)
            else:
                logs.event(logger, logging.ERROR, "SEND", "Alert delivery failed, alerts kept",
                           count=result.attempted)
        return result.attempted, result.sent

    async def flush_locations(
        self,
        location_queue: PersistentQueue,
        batch_size: int,
        timeout: float,
    ) -> tuple:
        """
        Send one batch from the head of the location queue.

        Returns:
            (attempted, sent_count, sent_at_millis or None)
        """
        decoded_counts = []

        async def send(entries):
            batch = _decode_entries(entries)
            decoded_counts.append(len(batch))
            if not batch:
                # Nothing deliverable: evict the corrupt head without contacting the collector
                return True
            return await asyncio.wait_for(self.collector.send_locations(batch), timeout=timeout)

        started = time.monotonic()
        result = await location_queue.drain(batch_size, send)
        if not result.attempted:
            return 0, 0, None

        if result.sent and not any(decoded_counts):
            logs.event(logger, logging.WARNING, "QUEUE", "Evicted undecodable location batch",
                       count=result.attempted, remaining=result.remaining)
            return result.attempted, 0, None

        if not result.sent:
            logs.event(logger, logging.ERROR, "SEND", "Failed to send batch",
                       batchSize=result.attempted, totalQueued=result.remaining)
            return result.attempted, 0, None

        delivered = decoded_counts[0]
        sent_at = self.clock()
        metrics.last_successful_send_timestamp.set(sent_at / 1000)
        logs.event(logger, logging.INFO, "SEND", "Batch sent successfully",
                   count=delivered, remaining=result.remaining,
                   seconds=round(time.monotonic() - started, 2))
        return result.attempted, delivered, sent_at

    async def flush(
        self,
        connected: bool,
        location_queue: PersistentQueue,
        alert_queue: Optional[PersistentQueue],
        batch_size: int,
        timeout: float,
    ) -> FlushResult:
        """
        Flush queues in alert-then-location order.

        Args:
            connected: Result of this cycle's connectivity probe
            location_queue: Location queue
            alert_queue: Alert queue, or None for a location-only flush
            batch_size: Maximum locations sent in this flush
            timeout: Deadline in seconds for each send

        Returns:
            FlushResult
        """
        result = FlushResult(connected=connected)

        if connected:
            if alert_queue is not None:
                result.alerts_attempted, result.alerts_sent = await self.flush_alerts(
                    alert_queue, timeout
                )

            attempted, sent, sent_at = await self.flush_locations(
                location_queue, batch_size, timeout
            )
            result.locations_attempted = attempted
            result.locations_sent = sent
            result.last_successful_send_millis = sent_at
        else:
            logs.event(logger, logging.DEBUG, "SEND", "No internet, data queued")

        result.location_queue_size = await location_queue.size()
        if alert_queue is not None:
            result.alert_queue_size = await alert_queue.size()
        return result

    async def ship_logs(self, buffer: logs.LogBuffer, timeout: float) -> bool:
        """Send buffered log events; they are dropped locally only on success."""
        entries = buffer.snapshot()
        if not entries:
            return True
        try:
            shipped = await asyncio.wait_for(
                self.collector.send_logs(buffer.payload(entries)), timeout=timeout
            )
        except asyncio.TimeoutError:
            shipped = False
        if shipped:
            buffer.discard(entries)
            logger.debug("Shipped %d log events", len(entries))
        return shipped
