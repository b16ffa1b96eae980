"""
Multi-tier location acquisition.

Tiers are tried in order until one yields a reading:
1. high   - high-accuracy fix, time-boxed to 8 s
2. low    - low-accuracy fix, time-boxed to 4 s
3. lastKnown      - the receiver's cached last position (instant)
4. storedFallback - our own persisted last location, if under 5 minutes
   old, reported with degraded accuracy (999 m)

A tier miss is logged and the next tier runs. Running out of tiers means
"no reading this cycle", which is not an error.
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from src.agent import logs
from src.agent import metrics
from src.agent.config import (
    HIGH_ACCURACY_TIMEOUT_SECONDS,
    LOW_ACCURACY_TIMEOUT_SECONDS,
    LAST_KNOWN_MAX_AGE_MS,
)
from src.agent.models import DEGRADED_ACCURACY_METERS, GpsFix, LastKnownLocation

logger = logging.getLogger(__name__)

# Aggregate budget for the timed tiers; keeps a cycle well inside its interval
DEFAULT_TIME_BUDGET_SECONDS = HIGH_ACCURACY_TIMEOUT_SECONDS + LOW_ACCURACY_TIMEOUT_SECONDS
# A timed tier with less budget than this left is skipped
MIN_TIER_SECONDS = 0.1


class GpsUnavailable(Exception):
    """A GPS tier could not produce a reading."""


class GpsProvider:
    """Source of raw positions. Implementations raise GpsUnavailable on a miss."""

    async def current_position(self, high_accuracy: bool) -> GpsFix:
        raise NotImplementedError

    async def last_known_position(self) -> Optional[GpsFix]:
        raise NotImplementedError


class TermuxGpsProvider(GpsProvider):
    """
    Reads positions through the Termux:API ``termux-location`` command.

    High accuracy uses the GPS provider, low accuracy the network provider,
    and the last-known query asks the OS for its cached fix.
    """

    def __init__(self, command: str = "termux-location"):
        self.command = command

    async def _run(self, *args: str) -> Optional[dict]:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.command, *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise GpsUnavailable(f"{self.command} not runnable: {e}") from e

        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            # Deadline hit; don't leave the helper running
            try:
                if proc.returncode is None:
                    proc.kill()
            finally:
                await proc.wait()
            raise

        if proc.returncode != 0:
            raise GpsUnavailable(
                f"{self.command} exited {proc.returncode}: {stderr.decode(errors='replace').strip()}"
            )
        if not stdout.strip():
            return None
        try:
            return json.loads(stdout)
        except json.JSONDecodeError as e:
            raise GpsUnavailable(f"Unreadable {self.command} output") from e

    @staticmethod
    def _to_fix(data: dict) -> GpsFix:
        if data.get("latitude") is None or data.get("longitude") is None:
            raise GpsUnavailable("Reading without coordinates")
        return GpsFix(
            latitude=data["latitude"],
            longitude=data["longitude"],
            accuracy=data.get("accuracy", DEGRADED_ACCURACY_METERS),
            speed=data.get("speed"),
        )

    async def current_position(self, high_accuracy: bool) -> GpsFix:
        provider = "gps" if high_accuracy else "network"
        data = await self._run("-p", provider, "-r", "once")
        if data is None:
            raise GpsUnavailable(f"No {provider} fix")
        return self._to_fix(data)

    async def last_known_position(self) -> Optional[GpsFix]:
        data = await self._run("-p", "passive", "-r", "last")
        if data is None:
            return None
        return self._to_fix(data)


@dataclass
class GpsTier:
    """One acquisition strategy; ``timeout`` None means untimed."""
    method: str
    acquire: Callable[[], Awaitable[Optional[GpsFix]]]
    timeout: Optional[float] = None


@dataclass
class SampleResult:
    fix: Optional[GpsFix] = None
    method: str = "none"
    errors: List[str] = field(default_factory=list)

    @property
    def has_fix(self) -> bool:
        return self.fix is not None


class LocationSampler:
    """
    Runs the acquisition tiers for one cycle.

    Args:
        provider: GPS provider
        load_last_known: Coroutine returning the persisted LastKnownLocation
        clock: Returns current epoch millis
    """

    def __init__(
        self,
        provider: GpsProvider,
        load_last_known: Callable[[], Awaitable[Optional[LastKnownLocation]]],
        clock: Callable[[], int],
        high_timeout: float = HIGH_ACCURACY_TIMEOUT_SECONDS,
        low_timeout: float = LOW_ACCURACY_TIMEOUT_SECONDS,
        max_fallback_age_ms: int = LAST_KNOWN_MAX_AGE_MS,
    ):
        self.provider = provider
        self.load_last_known = load_last_known
        self.clock = clock
        self.max_fallback_age_ms = max_fallback_age_ms
        self.tiers = [
            GpsTier("high", lambda: provider.current_position(high_accuracy=True), high_timeout),
            GpsTier("low", lambda: provider.current_position(high_accuracy=False), low_timeout),
            GpsTier("lastKnown", provider.last_known_position),
            GpsTier("storedFallback", self._stored_fallback),
        ]

    async def _stored_fallback(self) -> Optional[GpsFix]:
        last = await self.load_last_known()
        if last is None:
            return None
        age_ms = self.clock() - last.timestamp
        if age_ms >= self.max_fallback_age_ms:
            return None
        logs.event(logger, logging.INFO, "GPS", "Using stored location fallback",
                   age_seconds=age_ms / 1000)
        return GpsFix(
            latitude=last.latitude,
            longitude=last.longitude,
            accuracy=DEGRADED_ACCURACY_METERS,
            speed=0.0,
        )

    async def sample(self, time_budget: float = DEFAULT_TIME_BUDGET_SECONDS) -> SampleResult:
        """
        Acquire a reading, degrading through the tiers.

        Args:
            time_budget: Total seconds the timed tiers may consume together

        Returns:
            SampleResult with the reading and the tier that produced it, or
            no reading plus the per-tier errors
        """
        result = SampleResult()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + time_budget

        for tier in self.tiers:
            timeout = tier.timeout
            if timeout is not None:
                remaining = deadline - loop.time()
                if remaining < MIN_TIER_SECONDS:
                    result.errors.append(f"{tier.method}: time budget exhausted")
                    continue
                timeout = min(timeout, remaining)

            logs.event(logger, logging.DEBUG, "GPS", f"Attempting {tier.method}")
            fix = None
            error = "no position available"
            try:
                if timeout is None:
                    fix = await tier.acquire()
                else:
                    fix = await asyncio.wait_for(tier.acquire(), timeout=timeout)
            except asyncio.TimeoutError:
                error = f"timed out after {timeout:.1f}s"
            except (GpsUnavailable, OSError, ValueError) as e:
                error = str(e)

            if fix is not None:
                result.fix = fix
                result.method = tier.method
                metrics.gps_fixes_total.labels(method=tier.method).inc()
                logs.event(logger, logging.INFO, "GPS", "Got position", method=tier.method,
                           lat=fix.latitude, lng=fix.longitude, accuracy=fix.accuracy)
                return result

            result.errors.append(f"{tier.method}: {error}")
            logs.event(logger, logging.WARNING, "GPS", f"{tier.method} failed", error=error)

        metrics.gps_fixes_total.labels(method="none").inc()
        logs.event(logger, logging.ERROR, "GPS", "All GPS methods failed - no position this cycle")
        return result
