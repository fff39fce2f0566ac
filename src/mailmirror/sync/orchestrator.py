"""Sync orchestrator.

Consumes :class:`SyncRequested` events and runs exactly one page of work per
request. The mode is decided per run:

* cold start: history mode without a stored cursor. The cursor is seeded from
  the account profile and no changes are reported, since a history walk from
  nowhere would report every existing message as added.
* history page: one page of the history feed starting at the cursor. Adds go
  through the batch fetcher and deletes through explicit reconciliation. A
  continuation token re-emits the next page after a fixed delay and leaves
  the cursor alone; the terminal page writes the page's history id.
* legacy list page: one page of the full message listing, additions only,
  bounded by ``legacy_max_pages``. A single page is not authoritative for the
  whole mailbox, so this mode never computes deletions.

Every failure is contained at the request boundary: it is logged and counted.
A failed history page ends the user's continuation chain. No failure reaches
the emitter.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import List, Optional, Sequence, Tuple

from .events import AsyncEventBus, EmbeddingRequested, MailboxChanged, SyncRequested
from .exceptions import HistoryExpiredError
from .fetcher import BatchDetailFetcher
from .locks import UserSyncLocks
from .metrics import SyncMetricsCollector
from .models import SyncMode, SyncOutcome, SyncStatus
from .reconciler import DeletionReconciler
from .remote import DEFAULT_PAGE_SIZE, RemoteMailboxAPI
from .retry import RetryStrategy, SleepFn, call_with_retry
from .store import LocalMailboxStore


logger = logging.getLogger(__name__)

DEFAULT_LEGACY_MAX_PAGES = 10
DEFAULT_INTER_PAGE_DELAY = 1.0


class SyncOrchestrator:
    """Per-user sync state machine driven by :class:`SyncRequested` events."""

    def __init__(
        self,
        *,
        remote: RemoteMailboxAPI,
        store: LocalMailboxStore,
        bus: AsyncEventBus,
        fetcher: Optional[BatchDetailFetcher] = None,
        reconciler: Optional[DeletionReconciler] = None,
        locks: Optional[UserSyncLocks] = None,
        retry_strategy: Optional[RetryStrategy] = None,
        metrics: Optional[SyncMetricsCollector] = None,
        query: Optional[str] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        legacy_max_pages: int = DEFAULT_LEGACY_MAX_PAGES,
        inter_page_delay: float = DEFAULT_INTER_PAGE_DELAY,
        sleep: Optional[SleepFn] = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            remote: Typed remote mailbox operations
            store: Local store for records and cursors
            bus: Event bus used for continuations and fan-out
            fetcher: Batch detail fetcher (built from remote/store if omitted)
            reconciler: Deletion reconciler (built from store if omitted)
            locks: Per-user serialization primitive shared with other callers
            retry_strategy: Retry policy for page-level remote calls
            metrics: Optional metrics collector
            query: Optional remote search filter for list calls
            page_size: Messages per list page
            legacy_max_pages: Page bound for legacy list pagination
            inter_page_delay: Seconds to wait before emitting a continuation
            sleep: Awaitable sleep, replaceable in tests
        """
        self._remote = remote
        self._store = store
        self._bus = bus
        self._retry = retry_strategy or RetryStrategy()
        self._sleep = sleep or asyncio.sleep
        self._metrics = metrics
        self._fetcher = fetcher or BatchDetailFetcher(
            remote=remote,
            store=store,
            retry_strategy=self._retry,
            metrics=metrics,
            sleep=self._sleep,
        )
        self._reconciler = reconciler or DeletionReconciler(store)
        self._locks = locks or UserSyncLocks()
        self._query = query
        self._page_size = page_size
        self._legacy_max_pages = legacy_max_pages
        self._inter_page_delay = inter_page_delay

    @property
    def locks(self) -> UserSyncLocks:
        return self._locks

    async def run_sync(self, request: SyncRequested) -> SyncOutcome:
        """Run one page of sync work for ``request.user_id``."""
        started = time.monotonic()
        user_id = request.user_id
        fresh = not request.is_continuation

        if self._replays_active_chain(request):
            return self._finish(self._skipped(request, "continuation chain in progress"), started)

        if not await self._locks.acquire(user_id, fresh=fresh):
            return self._finish(self._skipped(request, "request coalesced"), started)

        continuation: Optional[SyncRequested] = None
        try:
            if self._replays_active_chain(request):
                outcome = self._skipped(request, "continuation chain in progress")
            else:
                try:
                    outcome, continuation = await self._run_locked(request)
                except HistoryExpiredError as exc:
                    outcome = await self._reseed(request, exc)
        except Exception as exc:  # noqa: BLE001
            outcome = self._failed(request, exc)
        finally:
            self._locks.release(user_id)

        if continuation is not None:
            try:
                await self._sleep(self._inter_page_delay)
            except asyncio.CancelledError:
                self._locks.end_chain(user_id)
                raise
            self._bus.emit(continuation)

        return self._finish(outcome, started)

    def _replays_active_chain(self, request: SyncRequested) -> bool:
        return (
            request.mode == SyncMode.HISTORY
            and not request.is_continuation
            and self._locks.chain_active(request.user_id)
        )

    async def _run_locked(
        self, request: SyncRequested
    ) -> Tuple[SyncOutcome, Optional[SyncRequested]]:
        if request.mode == SyncMode.LEGACY_LIST:
            return await self._run_legacy_page(request)

        cursor = await self._store.get_cursor(request.user_id)
        if cursor is None:
            self._locks.end_chain(request.user_id)
            return await self._cold_start(request, SyncStatus.COLD_START), None
        return await self._run_history_page(request, cursor)

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    async def _cold_start(self, request: SyncRequested, status: SyncStatus) -> SyncOutcome:
        user_id = request.user_id
        profile = await call_with_retry(
            lambda: self._remote.get_profile(user_id),
            self._retry,
            description=f"users.getProfile for {user_id}",
            sleep=self._sleep,
        )
        await self._store.set_cursor(user_id, profile.history_id)
        logger.info(
            f"Seeded sync cursor for user {user_id} at history id {profile.history_id}",
            extra={"user_id": user_id, "history_id": profile.history_id},
        )
        return SyncOutcome(
            user_id=user_id,
            mode=request.mode,
            status=status,
            page_counter=request.page_counter,
            cursor=profile.history_id,
        )

    async def _run_history_page(
        self, request: SyncRequested, cursor: str
    ) -> Tuple[SyncOutcome, Optional[SyncRequested]]:
        user_id = request.user_id
        page = await call_with_retry(
            lambda: self._remote.list_history(user_id, cursor, request.continuation_token),
            self._retry,
            description=f"history.list for {user_id}",
            sleep=self._sleep,
        )

        fetched = await self._fetcher.fetch_and_store(user_id, page.added_ids)
        deleted = await self._reconciler.reconcile_explicit(
            user_id, [*page.deleted_ids, *fetched.missing_ids]
        )
        if self._metrics:
            self._metrics.record_page(user_id, deleted=len(deleted))

        self._fan_out(
            user_id,
            fetched.stored_ids,
            [*fetched.stored_ids, *request.carried_deleted_ids, *deleted],
        )

        outcome = SyncOutcome(
            user_id=user_id,
            mode=SyncMode.HISTORY,
            status=SyncStatus.COMPLETED,
            page_counter=request.page_counter,
            new_ids=fetched.stored_ids,
            deleted_ids=deleted,
            cursor=cursor,
        )

        if page.next_page_token:
            self._locks.begin_chain(user_id)
            outcome.status = SyncStatus.PAGE_APPLIED
            outcome.continuation_token = page.next_page_token
            logger.info(
                f"Applied history page {request.page_counter} for user {user_id}: "
                f"{len(fetched.stored_ids)} new, {len(deleted)} deleted; more pages pending",
                extra={"user_id": user_id, "page_counter": request.page_counter},
            )
            continuation = SyncRequested(
                user_id=user_id,
                continuation_token=page.next_page_token,
                page_counter=request.page_counter + 1,
                carried_deleted_ids=(*request.carried_deleted_ids, *deleted),
                mode=SyncMode.HISTORY,
            )
            return outcome, continuation

        self._locks.end_chain(user_id)
        if page.history_id is None:
            logger.warning(
                f"Terminal history page for user {user_id} carried no history id; "
                f"cursor stays at {cursor}",
                extra={"user_id": user_id},
            )
        else:
            await self._store.set_cursor(user_id, page.history_id)
            outcome.cursor = page.history_id
        logger.info(
            f"History sync finished for user {user_id}: {len(fetched.stored_ids)} new, "
            f"{len(deleted)} deleted, cursor {outcome.cursor}",
            extra={"user_id": user_id, "page_counter": request.page_counter},
        )
        return outcome, None

    async def _run_legacy_page(
        self, request: SyncRequested
    ) -> Tuple[SyncOutcome, Optional[SyncRequested]]:
        user_id = request.user_id
        outcome = SyncOutcome(
            user_id=user_id,
            mode=SyncMode.LEGACY_LIST,
            status=SyncStatus.COMPLETED,
            page_counter=request.page_counter,
        )
        if request.page_counter > self._legacy_max_pages:
            logger.info(
                f"Legacy sync for user {user_id} reached the page bound at page "
                f"{request.page_counter}",
                extra={"user_id": user_id, "page_counter": request.page_counter},
            )
            return outcome, None

        page = await call_with_retry(
            lambda: self._remote.list_messages(
                user_id,
                page_token=request.continuation_token,
                query=self._query,
                max_results=self._page_size,
            ),
            self._retry,
            description=f"messages.list for {user_id}",
            sleep=self._sleep,
        )
        fetched = await self._fetcher.fetch_and_store(user_id, page.ids)
        if self._metrics:
            self._metrics.record_page(user_id)
        self._fan_out(
            user_id,
            fetched.stored_ids,
            [*fetched.stored_ids, *request.carried_deleted_ids],
        )
        outcome.new_ids = fetched.stored_ids

        logger.info(
            f"Applied legacy page {request.page_counter} for user {user_id}: "
            f"{len(fetched.stored_ids)} new",
            extra={"user_id": user_id, "page_counter": request.page_counter},
        )

        next_counter = request.page_counter + 1
        if page.next_page_token and next_counter <= self._legacy_max_pages:
            outcome.status = SyncStatus.PAGE_APPLIED
            outcome.continuation_token = page.next_page_token
            continuation = SyncRequested(
                user_id=user_id,
                continuation_token=page.next_page_token,
                page_counter=next_counter,
                carried_deleted_ids=request.carried_deleted_ids,
                mode=SyncMode.LEGACY_LIST,
            )
            return outcome, continuation
        return outcome, None

    # ------------------------------------------------------------------
    # Recovery and bookkeeping
    # ------------------------------------------------------------------

    async def _reseed(self, request: SyncRequested, exc: HistoryExpiredError) -> SyncOutcome:
        user_id = request.user_id
        logger.warning(
            f"History cursor for user {user_id} expired ({exc}); re-seeding from profile",
            extra={"user_id": user_id, "history_id": exc.start_history_id},
        )
        self._locks.end_chain(user_id)
        await self._store.clear_cursor(user_id)
        return await self._cold_start(request, SyncStatus.RESEEDED)

    def _fan_out(self, user_id: str, new_ids: Sequence[str], changed_ids: List[str]) -> None:
        if new_ids:
            self._bus.emit(
                EmbeddingRequested(user_id=user_id, email_ids=tuple(new_ids), batch_marker=1)
            )
        changed = list(dict.fromkeys(changed_ids))
        if changed:
            self._bus.emit(MailboxChanged(user_id=user_id, changed_email_ids=tuple(changed)))

    def _skipped(self, request: SyncRequested, reason: str) -> SyncOutcome:
        logger.debug(
            f"Skipping sync request for user {request.user_id}: {reason}",
            extra={"user_id": request.user_id, "page_counter": request.page_counter},
        )
        return SyncOutcome(
            user_id=request.user_id,
            mode=request.mode,
            status=SyncStatus.SKIPPED,
            page_counter=request.page_counter,
            error=reason,
        )

    def _failed(self, request: SyncRequested, exc: Exception) -> SyncOutcome:
        user_id = request.user_id
        # Legacy pages never own the history chain marker
        if request.mode == SyncMode.HISTORY:
            self._locks.end_chain(user_id)
        logger.error(
            f"Sync page {request.page_counter} failed for user {user_id}: {exc}",
            exc_info=exc,
            extra={"user_id": user_id, "page_counter": request.page_counter},
        )
        if self._metrics:
            self._metrics.record_failure(user_id, str(exc))
        return SyncOutcome(
            user_id=user_id,
            mode=request.mode,
            status=SyncStatus.FAILED,
            page_counter=request.page_counter,
            continuation_token=request.continuation_token,
            error=str(exc),
        )

    def _finish(self, outcome: SyncOutcome, started: float) -> SyncOutcome:
        if self._metrics:
            self._metrics.record_run(
                outcome.user_id, outcome.status.value, time.monotonic() - started
            )
        return outcome


__all__ = ["SyncOrchestrator"]
