"""
Bounded, durable FIFO queues stored in the key-value store.

Each queue is a JSON array of serialized records under a single key, oldest
first. The capture cycle appends at the tail while the capture cycle and the
watchdog both evict from the head, and every store access yields to the event
loop. To keep those read-modify-write sequences from losing updates, all
mutations of a queue go through one ``PersistentQueue`` instance and run
under its lock.

Draining is split in two so a slow upload never holds the mutation lock:
1. ``drain`` snapshots the head batch (under the mutation lock)
2. the batch is sent with the lock released, so enqueues keep flowing
3. on success the sent entries are removed (under the mutation lock again)

Only one drain per queue runs at a time. Because overflow eviction may drop
some of the in-flight entries while they are being sent, step 3 removes the
sent entries that are still at the head instead of blindly removing N items.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ValidationError

from src.agent import metrics
from src.agent.store import KeyValueStore

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


@dataclass
class DrainResult:
    """Outcome of one drain attempt."""
    attempted: int = 0
    sent: bool = False
    evicted: int = 0
    remaining: int = 0


class PersistentQueue(Generic[T]):
    """
    Ordered, capacity-bounded queue of records persisted under one key.

    Args:
        store: Key-value store holding the queue
        key: Store key for this queue
        capacity: Maximum number of entries kept
        record_type: Pydantic model used to decode entries
        name: Short name used in logs and metrics ("locations", "alerts")
    """

    def __init__(
        self,
        store: KeyValueStore,
        key: str,
        capacity: int,
        record_type: type,
        name: str,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.store = store
        self.key = key
        self.capacity = capacity
        self.record_type = record_type
        self.name = name
        self._lock = asyncio.Lock()
        self._drain_lock = asyncio.Lock()

    async def enqueue(self, record: T) -> int:
        """
        Append a record, evicting the oldest entries if the queue is full.

        Returns:
            Number of entries evicted to make room (0 when under capacity)
        """
        payload = record.to_wire()
        async with self._lock:
            entries = await self.store.get_list(self.key)
            evicted = 0
            if len(entries) >= self.capacity:
                evicted = len(entries) - self.capacity + 1
                entries = entries[evicted:]
            entries.append(payload)
            await self.store.set_list(self.key, entries)

        metrics.queue_length.labels(queue=self.name).set(len(entries))
        if evicted:
            metrics.queue_evictions_total.labels(queue=self.name).inc(evicted)
            logger.warning(
                "Queue %s full, removed %d oldest entries", self.name, evicted
            )
        return evicted

    async def size(self) -> int:
        async with self._lock:
            return len(await self.store.get_list(self.key))

    async def entries(self) -> List[str]:
        """Raw serialized entries, oldest first."""
        async with self._lock:
            return await self.store.get_list(self.key)

    async def records(self) -> List[T]:
        """Decoded records, oldest first. Undecodable entries are skipped."""
        return self.decode(await self.entries())

    async def peek(self, limit: Optional[int] = None) -> List[str]:
        async with self._lock:
            entries = await self.store.get_list(self.key)
        return entries if limit is None else entries[:limit]

    async def remove_sent(self, sent: List[str]) -> int:
        """
        Remove entries that were delivered, if they are still at the head.

        Overflow eviction only ever removes from the head, so whatever is
        left of ``sent`` is a suffix of it sitting at the front of the queue.

        Returns:
            Number of entries removed
        """
        if not sent:
            return 0
        async with self._lock:
            entries = await self.store.get_list(self.key)
            removed = 0
            for start in range(len(sent)):
                survivors = sent[start:]
                if entries[:len(survivors)] == survivors:
                    removed = len(survivors)
                    break
            if removed:
                entries = entries[removed:]
                await self.store.set_list(self.key, entries)

        metrics.queue_length.labels(queue=self.name).set(len(entries))
        return removed

    async def drain(
        self,
        batch_size: Optional[int],
        send: Callable[[List[str]], Awaitable[bool]],
    ) -> DrainResult:
        """
        Send the head of the queue and evict it only if ``send`` succeeds.

        Args:
            batch_size: Maximum number of entries to send (None = whole queue)
            send: Coroutine function taking the raw entries, returning True on
                confirmed delivery. Exceptions are treated as failure.

        Returns:
            DrainResult describing what was attempted and evicted
        """
        async with self._drain_lock:
            batch = await self.peek(batch_size)
            if not batch:
                return DrainResult(remaining=0)

            try:
                sent = await send(batch)
            except Exception as e:
                logger.warning("Send from queue %s raised: %s", self.name, e)
                sent = False

            if not sent:
                return DrainResult(attempted=len(batch), remaining=await self.size())

            evicted = await self.remove_sent(batch)
            return DrainResult(
                attempted=len(batch),
                sent=True,
                evicted=evicted,
                remaining=await self.size(),
            )

    def decode(self, entries: List[str]) -> List[T]:
        records = []
        for raw in entries:
            try:
                records.append(self.record_type.model_validate_json(raw))
            except (ValidationError, json.JSONDecodeError, ValueError) as e:
                logger.error("Skipping corrupt %s entry: %s", self.name, e)
        return records
