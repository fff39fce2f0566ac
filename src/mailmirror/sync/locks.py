"""Per-user serialization of sync runs."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Set


logger = logging.getLogger(__name__)


class UserSyncLocks:
    """One ``asyncio.Lock`` per user plus bookkeeping for waiting requests.

    A *fresh* request is one that starts a new walk (no continuation token).
    While a user's lock is held, one fresh request may wait for it; any
    further fresh request is coalesced into the waiting one and rejected.
    Continuation requests always wait, since dropping one would lose pages.

    A user has an *active chain* between the emission of a history
    continuation and the terminal page (or failure) of that walk. Fresh
    history requests are skipped while a chain is active so the same cursor
    is never walked twice in parallel.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._fresh_waiting: Set[str] = set()
        self._chains: Set[str] = set()

    def _lock(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    def is_busy(self, user_id: str) -> bool:
        lock = self._locks.get(user_id)
        return lock is not None and lock.locked()

    async def acquire(self, user_id: str, *, fresh: bool) -> bool:
        """Wait for the user's lock.

        Returns False without acquiring when a fresh request is coalesced.
        """
        lock = self._lock(user_id)
        if not fresh or not lock.locked():
            await lock.acquire()
            return True
        if user_id in self._fresh_waiting:
            logger.debug(
                f"Coalescing fresh sync request for busy user {user_id}",
                extra={"user_id": user_id},
            )
            return False
        self._fresh_waiting.add(user_id)
        try:
            await lock.acquire()
        finally:
            self._fresh_waiting.discard(user_id)
        return True

    def release(self, user_id: str) -> None:
        self._locks[user_id].release()

    # -- continuation chains ----------------------------------------------

    def chain_active(self, user_id: str) -> bool:
        return user_id in self._chains

    def begin_chain(self, user_id: str) -> None:
        self._chains.add(user_id)

    def end_chain(self, user_id: str) -> None:
        self._chains.discard(user_id)

    def reset(self) -> None:
        self._chains.clear()


__all__ = ["UserSyncLocks"]
