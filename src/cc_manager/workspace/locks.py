"""Per-repository exclusion scopes for git operations."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class RepoLock:
    """Readers-writer lock guarding one mirror.

    Clone and fetch hold the lock exclusively. Worktree add/remove hold it
    shared, so they run in parallel with each other but never against a
    mirror that is mid-fetch. Waiting writers block new readers.
    """

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @property
    def locked(self) -> bool:
        return self._writer or self._readers > 0

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        async with self._cond:
            self._waiting_writers += 1
            try:
                await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            finally:
                self._waiting_writers -= 1
                # readers may have been held back only by this waiter
                self._cond.notify_all()
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()

    @asynccontextmanager
    async def shared(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._waiting_writers == 0)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                self._cond.notify_all()


class RepoLockTable:
    """Lazily created :class:`RepoLock` per mirror path."""

    def __init__(self) -> None:
        self._locks: dict[str, RepoLock] = {}

    def get(self, key: str) -> RepoLock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = RepoLock()
        return lock

    def __len__(self) -> int:
        return len(self._locks)


__all__ = ["RepoLock", "RepoLockTable"]
