"""Deletion reconciliation against the local store."""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from .exceptions import IncompleteListingError
from .store import LocalMailboxStore


logger = logging.getLogger(__name__)


class DeletionReconciler:
    """Remove local records the remote side no longer has.

    Two shapes are supported:

    * explicit: the remote history feed names deleted ids; delete exactly those.
    * diff: the caller holds the *complete* remote id set; delete every local id
      missing from it. A single page of a multi-page listing is not complete,
      and passing one would delete everything outside that page, so callers
      must assert completeness with ``complete=True``.
    """

    def __init__(self, store: LocalMailboxStore) -> None:
        self._store = store

    async def reconcile_explicit(self, user_id: str, deleted_ids: Iterable[str]) -> List[str]:
        targets = [mid for mid in dict.fromkeys(deleted_ids) if mid]
        if not targets:
            return []
        removed = await self._store.delete_by_ids(user_id, targets)
        if removed:
            logger.info(
                f"Deleted {len(removed)} messages for user {user_id}",
                extra={"user_id": user_id, "deleted": len(removed)},
            )
        return removed

    async def reconcile_diff(
        self,
        user_id: str,
        remote_ids: Iterable[str],
        *,
        complete: bool = False,
        local_ids: Optional[Iterable[str]] = None,
    ) -> List[str]:
        if not complete:
            raise IncompleteListingError(
                "Diff reconciliation requires the complete remote id set"
            )
        remote = set(remote_ids)
        local = set(local_ids) if local_ids is not None else await self._store.list_ids(user_id)
        stale = sorted(local - remote)
        if not stale:
            return []
        removed = await self._store.delete_by_ids(user_id, stale)
        logger.info(
            f"Diff reconciliation removed {len(removed)} stale messages for user {user_id}",
            extra={"user_id": user_id, "deleted": len(removed)},
        )
        return removed


__all__ = ["DeletionReconciler"]
