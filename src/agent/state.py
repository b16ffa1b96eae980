"""
Small persisted state shared by the cycles: the session written by the
foreground app (read-only here), the heartbeat, the last successful send and
the last known location.
"""
import logging
from typing import Optional

from pydantic import ValidationError

from src.agent.models import Heartbeat, LastKnownLocation, Session
from src.agent.store import (
    CYCLE_COUNT_KEY,
    HEARTBEAT_KEY,
    IS_OFFLINE_KEY,
    KeyValueStore,
    LAST_ACCURACY_KEY,
    LAST_LOCATION_KEY,
    LAST_SUCCESSFUL_SEND_KEY,
    SESSION_END_KEY,
    SESSION_ID_KEY,
)

logger = logging.getLogger(__name__)


class AgentState:
    def __init__(self, store: KeyValueStore):
        self.store = store

    async def session(self) -> Optional[Session]:
        """Current session, or None if the foreground app hasn't started one."""
        session_id = await self.store.get(SESSION_ID_KEY)
        end_raw = await self.store.get(SESSION_END_KEY)
        if not session_id or end_raw is None:
            return None
        try:
            return Session(id=session_id, end_at_millis=int(end_raw))
        except (ValueError, ValidationError):
            logger.error("Ignoring malformed session end time %r", end_raw)
            return None

    async def beat(self, now: int) -> int:
        """
        Record a heartbeat and bump the cycle counter.

        Returns:
            The new cycle count
        """
        await self.store.set_int(HEARTBEAT_KEY, now)
        count = await self.store.get_int(CYCLE_COUNT_KEY, 0) + 1
        await self.store.set_int(CYCLE_COUNT_KEY, count)
        return count

    async def reset_cycles(self, now: int) -> int:
        """Reset the cycle counter on service start; returns the previous count."""
        previous = await self.store.get_int(CYCLE_COUNT_KEY, 0)
        await self.store.set_int(CYCLE_COUNT_KEY, 0)
        await self.store.set_int(HEARTBEAT_KEY, now)
        return previous

    async def heartbeat(self) -> Heartbeat:
        return Heartbeat(
            last_heartbeat_millis=await self.store.get_int(HEARTBEAT_KEY, 0),
            cycle_count=await self.store.get_int(CYCLE_COUNT_KEY, 0),
            last_successful_send_millis=await self.last_successful_send(),
        )

    async def last_successful_send(self) -> int:
        return await self.store.get_int(LAST_SUCCESSFUL_SEND_KEY, 0)

    async def record_successful_send(self, sent_at: int) -> None:
        await self.store.set_int(LAST_SUCCESSFUL_SEND_KEY, sent_at)

    async def last_known_location(self) -> Optional[LastKnownLocation]:
        raw = await self.store.get(LAST_LOCATION_KEY)
        if not raw:
            return None
        try:
            return LastKnownLocation.model_validate_json(raw)
        except ValidationError as e:
            logger.error("Error parsing stored location: %s", e)
            return None

    async def save_last_known_location(self, location: LastKnownLocation) -> None:
        await self.store.set(LAST_LOCATION_KEY, location.model_dump_json())

    async def record_status(self, offline: bool, accuracy: Optional[float]) -> None:
        """Status values displayed by the foreground app."""
        if accuracy is not None:
            await self.store.set(LAST_ACCURACY_KEY, str(accuracy))
        await self.store.set(IS_OFFLINE_KEY, "true" if offline else "false")
