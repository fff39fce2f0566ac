"""Batch detail fetcher.

Turns candidate message ids into stored :class:`EmailRecord` rows. Ids already
stored for the user are skipped before any remote call, so repeated delivery
of the same id is harmless.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from .exceptions import AuthError, MessageNotFoundError, RateLimitedError, TransientNetworkError
from .metrics import SyncMetricsCollector
from .models import EmailRecord, MessageMetadata
from .remote import RemoteMailboxAPI
from .retry import RetryStrategy, SleepFn, call_with_retry
from .store import LocalMailboxStore


logger = logging.getLogger(__name__)

# Failures that say nothing about the message itself. The page must not be
# treated as applied when any of these survive the retry policy.
PAGE_ABORTING_ERRORS = (AuthError, RateLimitedError, TransientNetworkError)


@dataclass
class FetchOutcome:
    """Result of one :meth:`BatchDetailFetcher.fetch_and_store` call."""

    stored_ids: List[str] = field(default_factory=list)
    missing_ids: List[str] = field(default_factory=list)
    failed_ids: List[str] = field(default_factory=list)


class BatchDetailFetcher:
    """Fetch metadata for unseen ids concurrently and persist them in one batch."""

    def __init__(
        self,
        *,
        remote: RemoteMailboxAPI,
        store: LocalMailboxStore,
        retry_strategy: Optional[RetryStrategy] = None,
        concurrency: int = 10,
        metrics: Optional[SyncMetricsCollector] = None,
        sleep: Optional[SleepFn] = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._remote = remote
        self._store = store
        self._retry = retry_strategy or RetryStrategy()
        self._concurrency = concurrency
        self._metrics = metrics
        self._sleep = sleep

    async def fetch_and_store(self, user_id: str, candidate_ids: Iterable[str]) -> FetchOutcome:
        candidates = [cid for cid in dict.fromkeys(candidate_ids) if cid]
        outcome = FetchOutcome()
        if not candidates:
            return outcome

        existing = await self._store.find_existing_ids(user_id, candidates)
        pending = [cid for cid in candidates if cid not in existing]
        if not pending:
            logger.debug(
                f"All {len(candidates)} candidate ids already stored for user {user_id}",
                extra={"user_id": user_id},
            )
            return outcome

        semaphore = asyncio.Semaphore(self._concurrency)

        async def fetch_one(message_id: str) -> Tuple[str, Optional[MessageMetadata], Optional[Exception]]:
            async with semaphore:
                try:
                    metadata = await call_with_retry(
                        lambda: self._remote.get_message_metadata(user_id, message_id),
                        self._retry,
                        description=f"messages.get {message_id}",
                        sleep=self._sleep,
                    )
                    return message_id, metadata, None
                except Exception as exc:  # noqa: BLE001
                    return message_id, None, exc

        results = await asyncio.gather(*(fetch_one(mid) for mid in pending))

        records: List[EmailRecord] = []
        abort: Optional[Exception] = None
        for message_id, metadata, error in results:
            if metadata is not None:
                records.append(EmailRecord.from_metadata(user_id, metadata))
            elif isinstance(error, MessageNotFoundError):
                outcome.missing_ids.append(message_id)
            elif isinstance(error, PAGE_ABORTING_ERRORS):
                abort = abort or error
            else:
                outcome.failed_ids.append(message_id)
                logger.warning(
                    f"Skipping message {message_id} for user {user_id}: {error}",
                    extra={"user_id": user_id, "message_id": message_id},
                )

        if abort is not None:
            # Nothing is saved, so every id on the page is fetched again on retry
            logger.warning(
                f"Aborting fetch of {len(pending)} messages for user {user_id}: {abort}",
                extra={"user_id": user_id},
            )
            raise abort

        if records:
            await self._store.save_batch(records)
            outcome.stored_ids = [record.id for record in records]

        if self._metrics:
            self._metrics.record_fetch(
                user_id,
                stored=len(outcome.stored_ids),
                missing=len(outcome.missing_ids),
                failed=len(outcome.failed_ids),
            )

        logger.debug(
            f"Fetched {len(pending)} messages for user {user_id}: "
            f"{len(outcome.stored_ids)} stored, {len(outcome.missing_ids)} missing, "
            f"{len(outcome.failed_ids)} failed",
            extra={"user_id": user_id},
        )
        return outcome


__all__ = ["BatchDetailFetcher", "FetchOutcome", "PAGE_ABORTING_ERRORS"]
