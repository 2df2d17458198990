"""Per-task shard index storage for tasks that share a sharded ring buffer.

Each task started through :func:`spawn_with_shard_index` gets its own slot
holding the shard index it last worked on. The slot lives in the task's
context, so tasks never see each other's value. Code that is not running
inside such a task has no slot. Asking it for the shard index raises
:class:`RuntimeError`.
"""

from __future__ import annotations

import asyncio
import contextvars
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any, Optional, TypeVar

__all__ = ["spawn_with_shard_index", "get_shard_ind", "set_shard_ind"]

T = TypeVar("T")

_NOT_INITIALIZED = "SHARD_INDEX is not initialized. Use `spawn_with_shard_index()`."


@dataclass
class _ShardSlot:
    """Mutable holder for a task's shard index."""

    value: Optional[int] = None


_SHARD_INDEX: contextvars.ContextVar[_ShardSlot] = contextvars.ContextVar("shard_index")


def _check_index(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"shard index must be an int, got {type(value).__name__}")
    if value < 0:
        raise ValueError(f"shard index must be non-negative, got {value}")
    return value


def _current_slot() -> _ShardSlot:
    try:
        return _SHARD_INDEX.get()
    except LookupError:
        raise RuntimeError(_NOT_INITIALIZED) from None


def spawn_with_shard_index(
    initial_index: Optional[int], coro: Coroutine[Any, Any, T]
) -> asyncio.Task[T]:
    """Schedule *coro* as a task whose shard index slot starts at *initial_index*.

    This must be called while an event loop is running.
    """
    if initial_index is not None:
        _check_index(initial_index)
    loop = asyncio.get_running_loop()
    context = contextvars.copy_context()
    context.run(_SHARD_INDEX.set, _ShardSlot(initial_index))
    # A task copies the context that is current when it is created.
    return context.run(loop.create_task, coro)


def get_shard_ind() -> Optional[int]:
    """Check that the shard index slot exists and return ``None``.

    The stored index is not returned. Every caller starts again from a
    fresh shard choice. Raises :class:`RuntimeError` if the caller is not
    inside a task started by :func:`spawn_with_shard_index`.
    """
    _current_slot()
    return None


def set_shard_ind(val: int) -> None:
    """Store *val* as the current task's shard index.

    Raises :class:`RuntimeError` if the caller is not inside a task started
    by :func:`spawn_with_shard_index`.
    """
    slot = _current_slot()
    slot.value = _check_index(val)