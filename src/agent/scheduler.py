"""
Cycle orchestration for the tracking agent.

Three independently timed cycles share one event loop:
- main cycle (every 20 s): heartbeat, connectivity check, location capture,
  alerts, enqueue, flush
- watchdog (every 40 s): if nothing has been delivered for over 2 minutes,
  push a small batch of locations on its own
- notification refresh (every 5 minutes): hands a status line to the host

The cycles are not mutually exclusive; they interleave at every await. Queue
consistency comes from the queues themselves (see ``queues``), which is why
both cycles must share the same PersistentQueue instances owned here.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import httpx

from src.agent import logs
from src.agent import metrics
from src.agent.alerts import AlertEmitter
from src.agent.config import (
    AgentConfig,
    CYCLE_PROBE_TIMEOUT_SECONDS,
    LOG_SHIP_TIMEOUT_SECONDS,
    MAIN_UPLOAD_TIMEOUT_SECONDS,
    WATCHDOG_PROBE_TIMEOUT_SECONDS,
    WATCHDOG_UPLOAD_TIMEOUT_SECONDS,
)
from src.agent.connectivity import ConnectivityProbe
from src.agent.geo import Geofence, infer_speed
from src.agent.models import (
    AlertRecord,
    AlertType,
    LastKnownLocation,
    LocationRecord,
    SessionState,
)
from src.agent.queues import PersistentQueue
from src.agent.sampler import GpsProvider, LocationSampler, TermuxGpsProvider
from src.agent.state import AgentState
from src.agent.store import (
    ALERT_QUEUE_KEY,
    KeyValueStore,
    LOCATION_QUEUE_KEY,
    MemoryStore,
    StoreError,
    get_redis_store,
)
from src.agent.time_utils import now_millis
from src.agent.uploader import BatchUploader, CollectorClient, FlushResult

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    """Summary of one main cycle."""
    cycle: int = 0
    state: SessionState = SessionState.NO_SESSION
    skipped: bool = False
    aborted: bool = False
    connected: Optional[bool] = None
    method: str = "none"
    reading: Optional[LocationRecord] = None
    alerts: List[AlertType] = field(default_factory=list)
    flush: Optional[FlushResult] = None
    error: Optional[str] = None


@dataclass
class WatchdogReport:
    """
    Summary of one watchdog run.

    ``action`` is one of: stopped, no_session, fresh, offline, empty,
    flushed, failed, error.
    """
    action: str
    staleness_ms: Optional[int] = None
    sent: int = 0
    error: Optional[str] = None


class CycleScheduler:
    """
    Owns the pipeline collaborators and runs the cycles.

    Args:
        store: Key-value store with all persisted state
        location_queue: Location queue (shared by the main cycle and watchdog)
        alert_queue: Alert queue
        sampler: LocationSampler
        probe: ConnectivityProbe
        uploader: BatchUploader
        alerts: AlertEmitter
        config: AgentConfig with intervals, batch sizes and thresholds
        clock: Returns current epoch millis
        log_buffer: Buffer of structured events shipped after a successful send
        on_notification: Called with a status line by the notification cycle
    """

    def __init__(
        self,
        store: KeyValueStore,
        location_queue: PersistentQueue,
        alert_queue: PersistentQueue,
        sampler: LocationSampler,
        probe: ConnectivityProbe,
        uploader: BatchUploader,
        alerts: AlertEmitter,
        config: Optional[AgentConfig] = None,
        clock: Callable[[], int] = now_millis,
        log_buffer: Optional[logs.LogBuffer] = None,
        on_notification: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.state = AgentState(store)
        self.location_queue = location_queue
        self.alert_queue = alert_queue
        self.sampler = sampler
        self.probe = probe
        self.uploader = uploader
        self.alerts = alerts
        self.config = config or AgentConfig()
        self.clock = clock
        self.log_buffer = log_buffer
        self.on_notification = on_notification
        self._stop = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    # ------------------------------------------------------------------
    # Main cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleReport:
        """
        Run one capture/flush cycle. Never raises.

        Returns:
            CycleReport describing what happened
        """
        if self.stopped:
            return CycleReport(skipped=True)

        started = time.monotonic()
        report = CycleReport()
        try:
            await self._cycle(report)
            outcome = report.state.value.lower()
        except StoreError as e:
            # Persistence layer unavailable: skip the rest, try again next cycle
            report.aborted = True
            report.error = str(e)
            outcome = "aborted"
            logs.event(logger, logging.ERROR, "CYCLE", "Key-value store unavailable, cycle aborted",
                       error=str(e))
        except Exception as e:
            report.error = str(e)
            outcome = "error"
            logger.exception("Error in tracking loop")

        metrics.cycles_total.labels(outcome=outcome).inc()
        metrics.cycle_duration_seconds.observe(time.monotonic() - started)
        return report

    async def _cycle(self, report: CycleReport) -> None:
        logs.event(logger, logging.DEBUG, "CYCLE", "Starting capture cycle")
        now = self.clock()

        # Heartbeat first: proves the agent is alive even without a session
        report.cycle = await self.state.beat(now)

        session = await self.state.session()
        if session is None:
            logs.event(logger, logging.WARNING, "CYCLE", "No active session")
            report.state = SessionState.NO_SESSION
            return

        report.state = session.state_at(now)
        if report.state is SessionState.EXPIRED:
            logs.event(logger, logging.INFO, "CYCLE", "Session expired",
                       sessionId=session.id, endAtMillis=session.end_at_millis)
            return

        connected = await self.probe.has_connectivity(CYCLE_PROBE_TIMEOUT_SECONDS)
        report.connected = connected
        logs.event(logger, logging.DEBUG, "CYCLE", "Connectivity check",
                   hasInternet=connected, timestamp=now)

        if not connected:
            alert = await self.alerts.connectivity_lost(session.id, now)
            self._note_alert(report, alert)

        previous = await self.state.last_known_location()
        sample = await self.sampler.sample()
        report.method = sample.method

        record = None
        if sample.has_fix:
            fix = sample.fix
            captured_at = self.clock()
            speed = infer_speed(fix.speed, fix.latitude, fix.longitude, captured_at, previous)
            record = LocationRecord(
                session_id=session.id,
                latitude=fix.latitude,
                longitude=fix.longitude,
                accuracy=fix.accuracy,
                speed=speed,
                captured_at_millis=captured_at,
            )
            report.reading = record

            alert = await self.alerts.check_geofence(session.id, fix.latitude, fix.longitude, now)
            self._note_alert(report, alert)

            await self.location_queue.enqueue(record)
            await self.state.save_last_known_location(
                LastKnownLocation(latitude=fix.latitude, longitude=fix.longitude, timestamp=captured_at)
            )

        await self.state.record_status(offline=not connected,
                                       accuracy=record.accuracy if record else None)
        logs.event(logger, logging.DEBUG, "QUEUE", "Queue status",
                   size=await self.location_queue.size(), hasNewLocation=record is not None)

        flush = await self.uploader.flush(
            connected,
            self.location_queue,
            self.alert_queue,
            batch_size=self.config.main_batch_size,
            timeout=MAIN_UPLOAD_TIMEOUT_SECONDS,
        )
        report.flush = flush

        if flush.delivered:
            await self.state.record_successful_send(flush.last_successful_send_millis)
            if self.log_buffer is not None:
                await self.uploader.ship_logs(self.log_buffer, LOG_SHIP_TIMEOUT_SECONDS)

    @staticmethod
    def _note_alert(report: CycleReport, alert: Optional[AlertRecord]) -> None:
        if alert is not None:
            report.alerts.append(alert.type)

    # ------------------------------------------------------------------
    # Watchdog
    # ------------------------------------------------------------------

    async def run_watchdog_cycle(self) -> WatchdogReport:
        """
        Recover stalled delivery with a small location-only flush.

        Best effort: every failure is logged and swallowed.
        """
        if self.stopped:
            return WatchdogReport(action="stopped")
        try:
            report = await self._watchdog()
        except Exception as e:
            logs.event(logger, logging.WARNING, "WATCHDOG", "Health check skipped", error=str(e))
            report = WatchdogReport(action="error", error=str(e))
        metrics.watchdog_runs_total.labels(outcome=report.action).inc()
        return report

    async def _watchdog(self) -> WatchdogReport:
        now = self.clock()
        session = await self.state.session()
        if session is None or session.state_at(now) is not SessionState.ACTIVE:
            return WatchdogReport(action="no_session")

        staleness = now - await self.state.last_successful_send()
        if staleness <= self.config.watchdog_stale_threshold_ms:
            return WatchdogReport(action="fresh", staleness_ms=staleness)

        logs.event(logger, logging.WARNING, "WATCHDOG", "No send recently",
                   seconds=round(staleness / 1000))

        if not await self.probe.has_connectivity(WATCHDOG_PROBE_TIMEOUT_SECONDS):
            return WatchdogReport(action="offline", staleness_ms=staleness)

        flush = await self.uploader.flush(
            True,
            self.location_queue,
            None,
            batch_size=self.config.watchdog_batch_size,
            timeout=WATCHDOG_UPLOAD_TIMEOUT_SECONDS,
        )
        if flush.locations_attempted == 0:
            return WatchdogReport(action="empty", staleness_ms=staleness)
        if not flush.delivered:
            return WatchdogReport(action="failed", staleness_ms=staleness)

        await self.state.record_successful_send(flush.last_successful_send_millis)
        logs.event(logger, logging.INFO, "WATCHDOG", "Sent stalled locations",
                   count=flush.locations_sent)
        return WatchdogReport(action="flushed", staleness_ms=staleness, sent=flush.locations_sent)

    # ------------------------------------------------------------------
    # Notification refresh
    # ------------------------------------------------------------------

    async def status_line(self) -> str:
        queued = await self.location_queue.size()
        last_send = await self.state.last_successful_send()
        if not last_send:
            return f"{queued} locations queued, nothing sent yet"
        ago = max(0, (self.clock() - last_send) // 1000)
        return f"{queued} locations queued, last send {ago}s ago"

    async def run_notification_cycle(self) -> Optional[str]:
        try:
            line = await self.status_line()
            if self.on_notification is not None:
                self.on_notification(line)
            else:
                logger.info("Status: %s", line)
            return line
        except Exception as e:
            logger.warning("Notification refresh failed: %s", e)
            return None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _every(self, interval: float, run, first_delay: float = 0.0) -> None:
        """Run ``run`` at a fixed rate until stopped; a slow run delays the next tick."""
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + first_delay
        while not self.stopped:
            delay = next_tick - loop.time()
            if delay > 0:
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=delay)
                    return
                except asyncio.TimeoutError:
                    pass
            await run()
            next_tick = max(next_tick + interval, loop.time())

    async def start(self) -> None:
        """Reset the cycle counter and start all cycle loops."""
        self._stop.clear()
        try:
            previous = await self.state.reset_cycles(self.clock())
            logs.event(logger, logging.INFO, "SERVICE", "Service initialized",
                       previousCycles=previous)
        except StoreError as e:
            logs.event(logger, logging.ERROR, "SERVICE", "Failed to init state", error=str(e))

        cfg = self.config
        self._tasks = [
            asyncio.create_task(
                self._every(cfg.cycle_interval_seconds, self.run_cycle, cfg.first_cycle_delay_seconds),
                name="agent-main-cycle",
            ),
            asyncio.create_task(
                self._every(cfg.watchdog_interval_seconds, self.run_watchdog_cycle,
                            cfg.watchdog_interval_seconds),
                name="agent-watchdog",
            ),
            asyncio.create_task(
                self._every(cfg.notification_interval_seconds, self.run_notification_cycle),
                name="agent-notification",
            ),
        ]

    async def stop(self) -> None:
        """
        Stop scheduling new cycles. In-flight cycles run to completion (or to
        their own deadlines); this waits for them.
        """
        logs.event(logger, logging.INFO, "SERVICE", "Stop signal received")
        self._stop.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []


def build_scheduler(
    config: AgentConfig,
    client: httpx.AsyncClient,
    store: Optional[KeyValueStore] = None,
    gps: Optional[GpsProvider] = None,
    clock: Callable[[], int] = now_millis,
    log_buffer: Optional[logs.LogBuffer] = None,
    on_notification: Optional[Callable[[str], None]] = None,
) -> CycleScheduler:
    """
    Wire an agent from configuration.

    Args:
        config: AgentConfig
        client: httpx.AsyncClient used for probing and uploads
        store: Key-value store (default: from config.store_backend)
        gps: GPS provider (default: Termux provider)
    """
    if store is None:
        if config.store_backend == "memory":
            store = MemoryStore()
        else:
            store = get_redis_store(config.redis_host, config.redis_port,
                                    config.redis_db, config.key_prefix)

    state = AgentState(store)
    location_queue = PersistentQueue(store, LOCATION_QUEUE_KEY, config.location_capacity,
                                     LocationRecord, "locations")
    alert_queue = PersistentQueue(store, ALERT_QUEUE_KEY, config.alert_capacity,
                                  AlertRecord, "alerts")
    geofence = Geofence(config.geofence_lat, config.geofence_lng, config.geofence_radius_km)

    return CycleScheduler(
        store=store,
        location_queue=location_queue,
        alert_queue=alert_queue,
        sampler=LocationSampler(gps or TermuxGpsProvider(config.gps_command),
                                state.last_known_location, clock),
        probe=ConnectivityProbe(client, config.probe_url),
        uploader=BatchUploader(CollectorClient(client, config.collector_url), clock),
        alerts=AlertEmitter(store, alert_queue, geofence, config.alert_cooldown_ms),
        config=config,
        clock=clock,
        log_buffer=log_buffer,
        on_notification=on_notification,
    )
