from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable

logger = logging.getLogger(__name__)

_pending: set[asyncio.Task[Any]] = set()


def _on_done(task: asyncio.Task[Any]) -> None:
    _pending.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Background task %s failed", task.get_name(), exc_info=exc)


def spawn_background(awaitable: Awaitable[Any], *, name: str | None = None) -> asyncio.Task[Any]:
    """Schedule ``awaitable`` without awaiting it; failures are only logged."""
    task = asyncio.ensure_future(awaitable)
    if name:
        task.set_name(name)
    _pending.add(task)
    task.add_done_callback(_on_done)
    return task


async def drain_background() -> None:
    while _pending:
        await asyncio.gather(*list(_pending), return_exceptions=True)
