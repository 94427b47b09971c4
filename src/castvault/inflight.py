"""Keyed coalescing of concurrent identical async operations."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Generic, TypeVar

T = TypeVar("T")


class InFlightRegistry(Generic[T]):
    """Table of pending attempts keyed by a string (a media URL in practice).

    The first caller for a key starts the attempt; callers arriving while it is
    pending await the same task. The entry is dropped inside the attempt task
    itself, before its result is published, so a caller arriving after
    settlement always starts a fresh attempt.
    """

    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Task[T]] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    async def run(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(self._attempt(key, factory))
            # No suspension between the lookup above and this insert.
            self._pending[key] = task
        # Shield so one cancelled waiter does not cancel the shared attempt.
        return await asyncio.shield(task)

    async def _attempt(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        try:
            return await factory()
        finally:
            if self._pending.get(key) is asyncio.current_task():
                del self._pending[key]
