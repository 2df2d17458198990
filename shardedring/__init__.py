"""A sharded ring buffer for asyncio producer and consumer tasks.

The ``ringbuf`` module holds the buffer. The ``task_local`` module holds the
per-task shard index helpers.
"""

__version__ = "0.1.0"
__all__ = ["ringbuf", "task_local"]