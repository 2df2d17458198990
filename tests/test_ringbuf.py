import asyncio

import pytest

from shardedring.ringbuf import ShardedRingBuf
from shardedring.task_local import spawn_with_shard_index


async def in_task(coro):
    return await spawn_with_shard_index(None, coro)


async def fill(rb, items):
    for item in items:
        await rb.enqueue(item)


async def drain(rb, count):
    return [await rb.dequeue() for _ in range(count)]


@pytest.mark.asyncio
async def test_counter():
    max_items = 100
    max_shards = 10
    max_tasks = 5
    rb = ShardedRingBuf(max_items, max_shards)

    async def consumer():
        counter = 0
        while True:
            item = await rb.dequeue()
            if item is None:
                break
            counter += 1
        return counter

    async def producer():
        for _ in range(2 * max_items):
            await rb.enqueue(20)

    deq = [spawn_with_shard_index(None, consumer()) for _ in range(max_tasks)]
    await spawn_with_shard_index(None, producer())
    for _ in range(max_tasks):
        await rb.poison_deq()

    taken = sum(await asyncio.wait_for(asyncio.gather(*deq), timeout=30))
    assert taken == 200


@pytest.mark.asyncio
async def test_many_producers_many_consumers():
    max_shards = 100
    max_tasks = 8
    per_task = 2000
    rb = ShardedRingBuf(per_task, max_shards)
    start = asyncio.Event()

    async def consumer():
        await start.wait()
        counter = 0
        for _ in range(per_task):
            if await rb.dequeue() is None:
                break
            counter += 1
        return counter

    async def producer():
        await start.wait()
        for _ in range(per_task):
            await rb.enqueue(20)

    deq = [spawn_with_shard_index(None, consumer()) for _ in range(max_tasks)]
    enq = [spawn_with_shard_index(None, producer()) for _ in range(max_tasks)]
    start.set()
    await asyncio.wait_for(asyncio.gather(*enq), timeout=60)
    taken = sum(await asyncio.wait_for(asyncio.gather(*deq), timeout=60))
    assert taken == per_task * max_tasks


def test_capacity_rounded_up_to_multiple_of_shards():
    rb = ShardedRingBuf(10, 3)
    assert rb.capacity == 12
    assert rb.max_capacity_per_shard == 4
    assert rb.shards == 3


@pytest.mark.parametrize("capacity,shards", [(0, 1), (5, 0), (-1, 2)])
def test_non_positive_sizes_rejected(capacity, shards):
    with pytest.raises(ValueError):
        ShardedRingBuf(capacity, shards)


@pytest.mark.asyncio
async def test_enqueue_outside_spawned_task_raises():
    rb = ShardedRingBuf(4, 2)
    with pytest.raises(RuntimeError):
        await rb.enqueue(1)


@pytest.mark.asyncio
async def test_enqueue_none_rejected():
    rb = ShardedRingBuf(4, 1)
    with pytest.raises(ValueError):
        await in_task(rb.enqueue(None))


@pytest.mark.asyncio
async def test_single_shard_is_fifo_and_tracks_indices():
    rb = ShardedRingBuf(4, 1)
    await in_task(fill(rb, ["a", "b", "c"]))
    assert await rb.next_enqueue_index_for_shard(0) == 3
    assert await rb.next_dequeue_index_for_shard(0) == 0
    assert await in_task(drain(rb, 2)) == ["a", "b"]
    assert await rb.next_dequeue_index_for_shard(0) == 2
    assert await rb.rb_items_at_shard(0) == [None, None, "c", None]


@pytest.mark.asyncio
async def test_indices_wrap_around():
    rb = ShardedRingBuf(3, 1)
    await in_task(fill(rb, [1, 2, 3]))
    assert await in_task(drain(rb, 2)) == [1, 2]
    await in_task(fill(rb, [4, 5]))
    assert await rb.next_enqueue_index_for_shard(0) == 2
    assert await rb.rb_items_at_shard(0) == [4, 5, 3]
    assert await in_task(drain(rb, 3)) == [3, 4, 5]


@pytest.mark.asyncio
async def test_empty_and_full_states():
    rb = ShardedRingBuf(4, 2)
    assert await rb.is_empty() is True
    assert await rb.is_full() is False
    await in_task(fill(rb, range(4)))
    assert await rb.is_full() is True
    assert await rb.is_empty() is False
    assert all(rb.is_shard_full(i) for i in range(2))
    assert not any(rb.is_shard_empty(i) for i in range(2))


@pytest.mark.asyncio
async def test_enqueue_waits_when_full():
    rb = ShardedRingBuf(2, 2)
    await in_task(fill(rb, [1, 2]))
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(in_task(rb.enqueue(3)), timeout=0.1)
    assert sorted(await in_task(drain(rb, 2))) == [1, 2]


@pytest.mark.asyncio
async def test_dequeue_waits_when_empty():
    rb = ShardedRingBuf(2, 2)
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(in_task(rb.dequeue()), timeout=0.1)
    assert await rb.is_empty() is True


@pytest.mark.asyncio
async def test_all_items_come_back_across_shards():
    rb = ShardedRingBuf(20, 4)
    await in_task(fill(rb, range(20)))
    got = await in_task(drain(rb, 20))
    assert sorted(got) == list(range(20))
    assert await rb.is_empty() is True


@pytest.mark.asyncio
async def test_poison_goes_to_first_free_shard():
    rb = ShardedRingBuf(4, 2)
    await rb.poison_deq()
    assert rb.is_shard_empty(0) is False
    assert rb.is_shard_empty(1) is True
    assert await rb.next_enqueue_index_for_shard(0) == 1
    assert await in_task(rb.dequeue()) is None
    assert await rb.is_empty() is True


@pytest.mark.asyncio
async def test_clear_resets_everything():
    rb = ShardedRingBuf(6, 3)
    await in_task(fill(rb, range(5)))
    await rb.clear()
    assert await rb.is_empty() is True
    assert await rb.rb_items() == [[None, None]] * 3
    for shard in range(3):
        assert await rb.next_enqueue_index_for_shard(shard) == 0
        assert await rb.next_dequeue_index_for_shard(shard) == 0


@pytest.mark.asyncio
async def test_get_item_in_shard_returns_copy():
    rb = ShardedRingBuf(2, 1)
    await in_task(rb.enqueue([1, 2]))
    item = await rb.get_item_in_shard(0, 0)
    assert item == [1, 2]
    item.append(3)
    assert await rb.get_item_in_shard(0, 0) == [1, 2]
    assert await rb.get_item_in_shard(1, 0) is None


@pytest.mark.asyncio
async def test_rb_items_lists_every_shard():
    rb = ShardedRingBuf(2, 1)
    await in_task(fill(rb, ["x"]))
    assert await rb.rb_items() == [["x", None]]


@pytest.mark.asyncio
async def test_invalid_indices_raise():
    rb = ShardedRingBuf(4, 2)
    with pytest.raises(IndexError):
        await rb.next_enqueue_index_for_shard(2)
    with pytest.raises(IndexError):
        await rb.next_dequeue_index_for_shard(5)
    with pytest.raises(IndexError):
        await rb.rb_items_at_shard(2)
    with pytest.raises(IndexError):
        await rb.get_item_in_shard(0, 2)
    with pytest.raises(IndexError):
        await rb.get_item_in_shard(2, 0)


@pytest.mark.asyncio
async def test_print_buffer(capsys):
    rb = ShardedRingBuf(4, 2)
    await rb.poison_deq()
    await rb.print_buffer()
    out = capsys.readouterr().out
    assert out == "Shard 0: [None, None, ]\nShard 1: [None, None, ]\n"


@pytest.mark.asyncio
async def test_print_buffer_shows_items(capsys):
    rb = ShardedRingBuf(2, 1)
    await in_task(fill(rb, [7]))
    await rb.print_buffer()
    assert capsys.readouterr().out == "Shard 0: [7, None, ]\n"