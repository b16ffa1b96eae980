"""
Persisted key-value state for the agent.

All pipeline state (both queues, heartbeat, cooldown markers, last known
location, the session written by the foreground app) lives under plain
string keys. Redis is the production backend; ``MemoryStore`` keeps the same
contract in-process for tests and for running without a Redis server.

Every access is a suspension point, so callers that read-modify-write a key
must serialize themselves (see ``queues.PersistentQueue``).
"""
import json
from typing import Dict, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

# Key names (prefixed per agent instance)
LOCATION_QUEUE_KEY = "offline_location_queue"
ALERT_QUEUE_KEY = "offline_alert_queue"
LAST_LOCATION_KEY = "last_location_data"
LAST_SUCCESSFUL_SEND_KEY = "last_successful_send"
HEARTBEAT_KEY = "service_last_heartbeat"
CYCLE_COUNT_KEY = "service_cycle_count"
LAST_GEOFENCE_ALERT_KEY = "last_geofence_alert"
LAST_CONNECTIVITY_ALERT_KEY = "last_connectivity_alert"
SESSION_ID_KEY = "current_session_id"
SESSION_END_KEY = "session_end_time"
LAST_ACCURACY_KEY = "last_accuracy"
IS_OFFLINE_KEY = "is_offline"


class StoreError(Exception):
    """The key-value store could not be read or written."""


class KeyValueStore:
    """Async string store. Subclasses implement ``get``/``set``/``delete``/``ping``."""

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def ping(self) -> bool:
        raise NotImplementedError

    async def close(self) -> None:
        return None

    async def get_int(self, key: str, default: int = 0) -> int:
        raw = await self.get(key)
        if raw is None:
            return default
        try:
            return int(raw)
        except ValueError as e:
            raise StoreError(f"Key {key!r} does not hold an integer: {raw!r}") from e

    async def set_int(self, key: str, value: int) -> None:
        await self.set(key, str(int(value)))

    async def get_list(self, key: str) -> List[str]:
        """Read a list of strings stored as a JSON array (missing key = empty list)."""
        raw = await self.get(key)
        if not raw:
            return []
        try:
            items = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StoreError(f"Key {key!r} does not hold a JSON list") from e
        if not isinstance(items, list):
            raise StoreError(f"Key {key!r} does not hold a JSON list")
        return [str(item) for item in items]

    async def set_list(self, key: str, items: List[str]) -> None:
        await self.set(key, json.dumps(list(items)))


class RedisStore(KeyValueStore):
    """Store backed by a Redis server via the asyncio client."""

    def __init__(self, client: aioredis.Redis, prefix: str = ""):
        self.client = client
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.client.get(self._key(key))
        except RedisError as e:
            raise StoreError(f"GET {key} failed: {e}") from e

    async def set(self, key: str, value: str) -> None:
        try:
            await self.client.set(self._key(key), value)
        except RedisError as e:
            raise StoreError(f"SET {key} failed: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(self._key(key))
        except RedisError as e:
            raise StoreError(f"DEL {key} failed: {e}") from e

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        await self.client.aclose()


class MemoryStore(KeyValueStore):
    """In-process store with the same semantics as ``RedisStore``."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)

    async def ping(self) -> bool:
        return True


def get_redis_store(host: str, port: int, db: int = 0, prefix: str = "") -> RedisStore:
    client = aioredis.Redis(
        host=host,
        port=port,
        db=db,
        decode_responses=True,
    )
    return RedisStore(client, prefix=prefix)
