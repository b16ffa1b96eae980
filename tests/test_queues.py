"""
Unit tests for the persistent bounded queue.
"""
import asyncio

import pytest

from src.agent.models import LocationRecord
from src.agent.queues import PersistentQueue
from src.agent.store import MemoryStore, LOCATION_QUEUE_KEY


def make_record(n: int) -> LocationRecord:
    return LocationRecord(
        session_id="s1",
        latitude=28.0 + n / 1000,
        longitude=77.0,
        accuracy=5.0,
        speed=0.0,
        captured_at_millis=1_700_000_000_000 + n,
    )


def make_queue(store=None, capacity=5) -> PersistentQueue:
    return PersistentQueue(store or MemoryStore(), LOCATION_QUEUE_KEY, capacity,
                           LocationRecord, "locations")


def timestamps(records):
    return [r.captured_at_millis - 1_700_000_000_000 for r in records]


async def fill(queue, numbers):
    for n in numbers:
        await queue.enqueue(make_record(n))


@pytest.mark.unit
class TestEnqueue:
    """Capacity and ordering of enqueue."""

    def test_enqueue_preserves_order(self):
        """Entries come back oldest first."""
        async def scenario():
            queue = make_queue()
            await fill(queue, [1, 2, 3])
            return await queue.records()

        assert timestamps(asyncio.run(scenario())) == [1, 2, 3]

    def test_length_never_exceeds_capacity(self):
        """Queue length is bounded by capacity after every enqueue."""
        async def scenario():
            queue = make_queue(capacity=5)
            sizes = []
            for n in range(12):
                await queue.enqueue(make_record(n))
                sizes.append(await queue.size())
            return sizes, await queue.records()

        sizes, records = asyncio.run(scenario())
        assert max(sizes) == 5
        assert sizes == [1, 2, 3, 4, 5, 5, 5, 5, 5, 5, 5, 5]
        # Survivors are the newest five, still in order
        assert timestamps(records) == [7, 8, 9, 10, 11]

    def test_enqueue_at_capacity_evicts_exactly_one(self):
        """A full queue drops just enough oldest entries for one new one."""
        async def scenario():
            queue = make_queue(capacity=3)
            await fill(queue, [1, 2, 3])
            evicted = await queue.enqueue(make_record(4))
            return evicted, await queue.records()

        evicted, records = asyncio.run(scenario())
        assert evicted == 1
        assert timestamps(records) == [2, 3, 4]

    def test_enqueue_over_capacity_trims_oversized_queue(self):
        """A queue persisted above capacity is trimmed to capacity."""
        async def scenario():
            store = MemoryStore()
            big = make_queue(store, capacity=10)
            await fill(big, range(8))
            small = make_queue(store, capacity=3)
            evicted = await small.enqueue(make_record(8))
            return evicted, await small.records()

        evicted, records = asyncio.run(scenario())
        assert evicted == 6
        assert timestamps(records) == [6, 7, 8]

    def test_concurrent_enqueues_are_not_lost(self):
        """Interleaved enqueues all land (no lost read-modify-write)."""
        async def scenario():
            queue = make_queue(capacity=100)
            await asyncio.gather(*(queue.enqueue(make_record(n)) for n in range(30)))
            return await queue.size()

        assert asyncio.run(scenario()) == 30

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            make_queue(capacity=0)


@pytest.mark.unit
class TestDrain:
    """Drain only evicts what was confirmed delivered."""

    def test_successful_drain_evicts_sent_prefix(self):
        """A successful send evicts exactly the batch, nothing else."""
        async def scenario():
            queue = make_queue(capacity=10)
            await fill(queue, range(6))
            sent = []

            async def send(batch):
                sent.extend(batch)
                return True

            result = await queue.drain(4, send)
            return result, sent, await queue.records()

        result, sent, records = asyncio.run(scenario())
        assert result.attempted == 4
        assert result.sent is True
        assert result.evicted == 4
        assert result.remaining == 2
        assert len(sent) == 4
        assert timestamps(records) == [4, 5]

    def test_failed_drain_leaves_queue_unchanged(self):
        """A failed send leaves the stored queue byte-for-byte identical."""
        async def scenario():
            store = MemoryStore()
            queue = make_queue(store, capacity=10)
            await fill(queue, range(6))
            before = store.data[LOCATION_QUEUE_KEY]

            async def send(batch):
                return False

            result = await queue.drain(4, send)
            return result, before, store.data[LOCATION_QUEUE_KEY]

        result, before, after = asyncio.run(scenario())
        assert result.sent is False
        assert result.evicted == 0
        assert before == after

    def test_send_exception_is_a_failure(self):
        """An exception in the sender is treated like a failed send."""
        async def scenario():
            queue = make_queue(capacity=10)
            await fill(queue, range(3))

            async def send(batch):
                raise asyncio.TimeoutError()

            result = await queue.drain(None, send)
            return result, await queue.size()

        result, size = asyncio.run(scenario())
        assert result.sent is False
        assert size == 3

    def test_drain_empty_queue_does_not_call_send(self):
        async def scenario():
            queue = make_queue()
            calls = []

            async def send(batch):
                calls.append(batch)
                return True

            result = await queue.drain(10, send)
            return result, calls

        result, calls = asyncio.run(scenario())
        assert result.attempted == 0
        assert calls == []

    def test_enqueue_during_send_is_kept(self):
        """Entries appended while a batch is in flight survive its eviction."""
        async def scenario():
            queue = make_queue(capacity=10)
            await fill(queue, [1, 2, 3])

            async def send(batch):
                await queue.enqueue(make_record(4))
                return True

            await queue.drain(3, send)
            return await queue.records()

        assert timestamps(asyncio.run(scenario())) == [4]

    def test_overflow_during_send_does_not_evict_unsent_entries(self):
        """If overflow already dropped part of the batch, only the rest is removed."""
        async def scenario():
            queue = make_queue(capacity=3)
            await fill(queue, [1, 2, 3])

            async def send(batch):
                # Two arrivals push 1 and 2 out while the batch is in flight
                await queue.enqueue(make_record(4))
                await queue.enqueue(make_record(5))
                return True

            result = await queue.drain(3, send)
            return result, await queue.records()

        result, records = asyncio.run(scenario())
        assert result.evicted == 1
        assert timestamps(records) == [4, 5]

    def test_concurrent_drains_do_not_double_evict(self):
        """Two drains racing on one queue never evict more than they sent."""
        async def scenario():
            queue = make_queue(capacity=10)
            await fill(queue, range(5))
            sent = []

            async def send(batch):
                await asyncio.sleep(0)
                sent.append(list(batch))
                return True

            await asyncio.gather(queue.drain(2, send), queue.drain(2, send))
            return sent, await queue.records()

        sent, records = asyncio.run(scenario())
        assert len(sent) == 2
        assert sent[0] != sent[1]
        assert timestamps(records) == [4]


@pytest.mark.unit
class TestDecode:
    def test_corrupt_entries_are_skipped(self):
        """Undecodable entries are skipped when reading records."""
        async def scenario():
            store = MemoryStore()
            queue = make_queue(store)
            await fill(queue, [1])
            entries = await store.get_list(LOCATION_QUEUE_KEY)
            await store.set_list(LOCATION_QUEUE_KEY, ["{not json"] + entries)
            return await queue.records(), await queue.size()

        records, size = asyncio.run(scenario())
        assert timestamps(records) == [1]
        assert size == 2
