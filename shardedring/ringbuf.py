"""A sharded ring buffer shared by asyncio tasks.

The buffer is split into shards, each a small ring buffer with its own
occupancy flag and job count. Producers and consumers claim one shard at a
time, so tasks working on different shards do not get in each other's way.
Enqueuing and dequeuing must happen inside tasks started with
:func:`shardedring.task_local.spawn_with_shard_index`.
"""

from __future__ import annotations

import asyncio
import copy
import math
import random
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Generic, List, Optional, TypeVar

from .task_local import get_shard_ind, set_shard_ind

__all__ = ["ShardedRingBuf"]

T = TypeVar("T")

_SPINS_BEFORE_YIELD = 10
_MAX_BACKOFF_EXPONENT = 5
_MAX_BACKOFF_MS = 20


class _Acquire(Enum):
    ENQUEUE = auto()
    DEQUEUE = auto()
    POISON = auto()


@dataclass
class _Shard:
    """One shard: its slots, ring indices, job count and occupancy flag."""

    items: List[Any]
    occupied: bool = False
    job_count: int = 0
    enqueue_index: int = 0
    dequeue_index: int = 0

    @classmethod
    def empty(cls, capacity: int) -> "_Shard":
        return cls(items=[None] * capacity)


@dataclass(eq=False)
class ShardedRingBuf(Generic[T]):
    """A ring buffer of fixed capacity spread over a number of shards.

    The capacity is rounded up to the next multiple of *shards*.
    """

    capacity: int
    shards: int
    max_capacity_per_shard: int = field(init=False)
    _shards: List[_Shard] = field(init=False, repr=False)

    def __init__(self, capacity: int, shards: int) -> None:
        if capacity <= 0:
            raise ValueError("Capacity must be positive")
        if shards <= 0:
            raise ValueError("Shards must be positive")
        per_shard = math.ceil(capacity / shards)
        self.capacity = per_shard * shards
        self.shards = shards
        self.max_capacity_per_shard = per_shard
        self._shards = [_Shard.empty(per_shard) for _ in range(shards)]

    # -- shard ownership -------------------------------------------------

    def _acquire_shard(self, shard_ind: int) -> bool:
        shard = self._shards[shard_ind]
        if shard.occupied:
            return False
        shard.occupied = True
        return True

    def _release_shard(self, shard_ind: int) -> None:
        self._shards[shard_ind].occupied = False

    async def _wait_for_shard(self, shard_ind: int) -> None:
        attempt = 0
        while not self._acquire_shard(shard_ind):
            if attempt < _SPINS_BEFORE_YIELD:
                attempt += 1
            else:
                await asyncio.sleep(0)
                attempt = 0

    async def _acquire_all(self) -> None:
        for shard_ind in range(self.shards):
            await self._wait_for_shard(shard_ind)

    def _release_all(self) -> None:
        for shard_ind in range(self.shards):
            self._release_shard(shard_ind)

    def _check_shard(self, shard_ind: int) -> None:
        if not 0 <= shard_ind < self.shards:
            raise IndexError("Invalid shard index")

    async def _try_acquire_shard(self, acquire: _Acquire) -> int:
        """Claim a shard that can take (or give) an item and return its index.

        The search walks the shards in ring order and backs off with random
        jitter, capped at 20 ms, after each full round without success.
        """
        if acquire is _Acquire.POISON:
            current = 0
        else:
            previous = get_shard_ind()
            if previous is None:
                current = random.randrange(self.shards)
            else:
                current = (previous + 1) % self.shards
            set_shard_ind(current)

        spins = 0
        attempt = 0
        while True:
            if self._acquire_shard(current):
                if acquire is _Acquire.DEQUEUE:
                    usable = not self.is_shard_empty(current)
                else:
                    usable = not self.is_shard_full(current)
                if usable:
                    if acquire is not _Acquire.POISON:
                        set_shard_ind((current + 1) % self.shards)
                    return current
                self._release_shard(current)

            current = (current + 1) % self.shards
            spins += 1
            if spins % self.shards == 0:
                backoff_ms = min(1 << min(attempt, _MAX_BACKOFF_EXPONENT), _MAX_BACKOFF_MS)
                jitter_ms = random.randint(0, backoff_ms)
                await asyncio.sleep(jitter_ms / 1000)
                attempt += 1

    # -- enqueue / dequeue -----------------------------------------------

    async def _enqueue_item(self, item: Optional[T]) -> None:
        acquire = _Acquire.POISON if item is None else _Acquire.ENQUEUE
        current = await self._try_acquire_shard(acquire)
        shard = self._shards[current]
        shard.items[shard.enqueue_index] = item
        shard.enqueue_index = (shard.enqueue_index + 1) % self.max_capacity_per_shard
        shard.job_count += 1
        shard.occupied = False

    async def enqueue(self, item: T) -> None:
        """Add *item*, waiting until some shard has room for it."""
        if item is None:
            raise ValueError("None is reserved for poisoning; use poison_deq()")
        await self._enqueue_item(item)

    async def dequeue(self) -> Optional[T]:
        """Take an item, waiting until some shard holds one.

        Returns ``None`` when the item taken is a poison marker.
        """
        current = await self._try_acquire_shard(_Acquire.DEQUEUE)
        shard = self._shards[current]
        item = shard.items[shard.dequeue_index]
        shard.items[shard.dequeue_index] = None
        shard.dequeue_index = (shard.dequeue_index + 1) % self.max_capacity_per_shard
        shard.job_count -= 1
        shard.occupied = False
        return item

    async def poison_deq(self) -> None:
        """Enqueue a poison marker so that one consumer sees ``None`` and stops."""
        await self._enqueue_item(None)

    async def clear(self) -> None:
        """Reset every shard to the empty state."""
        await self._acquire_all()
        for shard in self._shards:
            shard.items = [None] * self.max_capacity_per_shard
            shard.enqueue_index = 0
            shard.dequeue_index = 0
            shard.job_count = 0
        self._release_all()

    # -- state queries ---------------------------------------------------

    async def is_empty(self) -> bool:
        """Return whether no shard holds any item."""
        await self._acquire_all()
        result = all(shard.job_count == 0 for shard in self._shards)
        self._release_all()
        return result

    def is_shard_empty(self, shard_ind: int) -> bool:
        """Return whether the given shard holds no item."""
        return self._shards[shard_ind].job_count == 0

    async def is_full(self) -> bool:
        """Return whether every shard is at capacity."""
        await self._acquire_all()
        result = all(
            shard.job_count == self.max_capacity_per_shard for shard in self._shards
        )
        self._release_all()
        return result

    def is_shard_full(self, shard_ind: int) -> bool:
        """Return whether the given shard is at capacity."""
        return self._shards[shard_ind].job_count == self.max_capacity_per_shard

    async def next_enqueue_index_for_shard(self, shard_ind: int) -> int:
        """Return the slot the next item enqueued into the shard will use."""
        self._check_shard(shard_ind)
        await self._wait_for_shard(shard_ind)
        index = self._shards[shard_ind].enqueue_index
        self._release_shard(shard_ind)
        return index

    async def next_dequeue_index_for_shard(self, shard_ind: int) -> int:
        """Return the slot the next item dequeued from the shard will come from."""
        self._check_shard(shard_ind)
        await self._wait_for_shard(shard_ind)
        index = self._shards[shard_ind].dequeue_index
        self._release_shard(shard_ind)
        return index

    async def get_item_in_shard(self, item_index: int, shard_ind: int) -> Optional[T]:
        """Return a copy of the item in one slot of a shard, or ``None`` if empty."""
        self._check_shard(shard_ind)
        if not 0 <= item_index < self.max_capacity_per_shard:
            raise IndexError("Invalid item index")
        await self._wait_for_shard(shard_ind)
        item = copy.deepcopy(self._shards[shard_ind].items[item_index])
        self._release_shard(shard_ind)
        return item

    async def rb_items_at_shard(self, shard_ind: int) -> List[Optional[T]]:
        """Return a copy of every slot of one shard."""
        self._check_shard(shard_ind)
        await self._wait_for_shard(shard_ind)
        items = copy.deepcopy(self._shards[shard_ind].items)
        self._release_shard(shard_ind)
        return items

    async def rb_items(self) -> List[List[Optional[T]]]:
        """Return a copy of every slot of every shard."""
        await self._acquire_all()
        items = [copy.deepcopy(shard.items) for shard in self._shards]
        self._release_all()
        return items

    async def print_buffer(self) -> None:
        """Print the slots of each shard, one shard per line."""
        await self._acquire_all()
        for shard_ind, shard in enumerate(self._shards):
            body = "".join(f"{item!r}, " for item in shard.items)
            print(f"Shard {shard_ind}: [{body}]")
            self._release_shard(shard_ind)