# shardedring

A fixed-capacity ring buffer for asyncio programs that have many producer
tasks and many consumer tasks. The capacity is split across a number of
shards. Each shard is a small ring buffer with its own occupancy flag, so a
task that holds one shard does not block tasks that work on other shards.

## Installation

```
pip install shardedring
```

The package has no runtime dependencies.

## Usage

Tasks that call `enqueue` or `dequeue` must be started with
`shardedring.task_local.spawn_with_shard_index`. It schedules a coroutine
as a task on the running event loop and gives the task its own shard index
slot. If `enqueue` or `dequeue` is called from a task that has no slot, it
raises `RuntimeError`. `poison_deq` does not use the slot, so it can be
called from any coroutine.

```python
import asyncio

from shardedring.ringbuf import ShardedRingBuf
from shardedring.task_local import spawn_with_shard_index


async def main():
    rb = ShardedRingBuf(100, 10)

    async def consumer():
        count = 0
        while await rb.dequeue() is not None:
            count += 1
        return count

    async def producer():
        for i in range(200):
            await rb.enqueue(i)

    consumers = [spawn_with_shard_index(None, consumer()) for _ in range(5)]
    await spawn_with_shard_index(None, producer())

    # Each poison marker stops one consumer.
    for _ in consumers:
        await rb.poison_deq()

    print(sum(await asyncio.gather(*consumers)))  # 200


asyncio.run(main())
```

### Capacity

`ShardedRingBuf(capacity, shards)` gives each shard
`ceil(capacity / shards)` slots. The `capacity` attribute is therefore
rounded up to the next multiple of `shards`. The per-shard size is kept in
`max_capacity_per_shard`. If either argument is not positive, the
constructor raises `ValueError`.

### Operations

- `await rb.enqueue(item)` waits until some shard has room, then stores the
  item. `None` is reserved for poison markers, and `enqueue(None)` raises
  `ValueError`.
- `await rb.dequeue()` waits until some shard holds an item, then removes
  and returns it. When the item it takes is a poison marker, it returns
  `None`.
- `await rb.poison_deq()` stores one `None` marker. It tries the shards
  starting from shard 0.
- `await rb.clear()` resets every shard to empty.
- `await rb.is_empty()` and `await rb.is_full()` check the whole buffer.
  `rb.is_shard_empty(i)` and `rb.is_shard_full(i)` check one shard.

An enqueuing or dequeuing task walks the shards in ring order. It starts
from a shard chosen at random and claims the first free shard that can
serve it. After each full round with no success, it sleeps for a random
delay. The delay grows with each round and is capped at 20 ms.

### Inspection

- `await rb.next_enqueue_index_for_shard(i)` returns the slot that the next
  enqueue into shard `i` will use.
- `await rb.next_dequeue_index_for_shard(i)` returns the slot that the next
  dequeue from shard `i` will read.
- `await rb.get_item_in_shard(item_index, shard_ind)` returns a deep copy of
  one slot. An empty slot gives `None`.
- `await rb.rb_items_at_shard(i)` returns a list of deep copies of the slots
  of shard `i`.
- `await rb.rb_items()` returns one such list for every shard.
- `await rb.print_buffer()` prints each shard's slots on its own line, in
  the form `Shard 0: [1, None, ]`.

If a shard index or item index is out of range, these methods raise
`IndexError`.

### Shard index helpers

`shardedring.task_local` provides these helpers:

- `spawn_with_shard_index(initial_index, coro)` returns the `asyncio.Task`
  it creates. `initial_index` must be `None` or a non-negative `int`.
- `get_shard_ind()` checks that the caller runs inside such a task and
  returns `None`. If the caller does not, it raises `RuntimeError`.
- `set_shard_ind(val)` stores `val` in the current task's slot.

Because `get_shard_ind()` returns `None`, every search for a shard starts
at a random position, whatever `initial_index` was given.

## What it does not do

- The shard occupancy flags are plain attributes. They coordinate tasks on
  one asyncio event loop only. A buffer must not be shared between OS
  threads or between event loops.
- Nothing here runs as a command. This is a library only.

## Running the tests

```
pip install -e ".[test]"
pytest
```