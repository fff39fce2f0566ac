"""Mailbox sync service.

Assembles the sync engine from settings and exposes the operations used by the
CLI and by embedding applications: triggering syncs, running a chain to
completion, full-listing reconciliation and cursor management.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from mailmirror.configuration.settings import SecretStore, Settings

from .credentials import CredentialProvider, KeyringCredentialProvider
from .embedding import BoundedEmbeddingQueue, Embedder, EmbeddingWorker
from .events import AsyncEventBus, MailboxChanged, SyncRequested
from .fetcher import BatchDetailFetcher
from .listeners import SyncEventListeners
from .locks import UserSyncLocks
from .metrics import SyncMetricsCollector
from .models import EmailRecord, SyncMode, SyncOutcome
from .notifications import ConnectionManager
from .orchestrator import SyncOrchestrator
from .poller import MailboxPoller
from .reconciler import DeletionReconciler
from .remote import RemoteMailboxAPI, RemoteMailboxGateway
from .retry import RetryStrategy, call_with_retry
from .store import SqliteMailboxStore


logger = logging.getLogger(__name__)

CREDENTIAL_INDEX_NAME = "users.json"
RECENT_EMAIL_LIMIT = 20


class MailboxSyncService:
    """Facade owning the bus, orchestrator, poller and embedding pipeline."""

    def __init__(
        self,
        *,
        settings: Settings,
        remote: RemoteMailboxAPI,
        store: SqliteMailboxStore,
        credentials: CredentialProvider,
        connections: Optional[ConnectionManager] = None,
        embedder: Optional[Embedder] = None,
        bus: Optional[AsyncEventBus] = None,
        metrics: Optional[SyncMetricsCollector] = None,
    ) -> None:
        sync = settings.sync
        self.settings = settings
        self.remote = remote
        self.store = store
        self.credentials = credentials
        self.connections = connections or ConnectionManager()
        self.bus = bus or AsyncEventBus()
        self.metrics = metrics or SyncMetricsCollector()
        self.locks = UserSyncLocks()
        self.retry_strategy = RetryStrategy(
            max_retries=sync.max_retries,
            rate_limit_max_retries=sync.rate_limit_max_retries,
            base_delay=sync.retry_base_delay_seconds,
            max_delay=sync.retry_max_delay_seconds,
        )
        self.reconciler = DeletionReconciler(store)
        self.fetcher = BatchDetailFetcher(
            remote=remote,
            store=store,
            retry_strategy=self.retry_strategy,
            concurrency=sync.fetch_concurrency,
            metrics=self.metrics,
        )
        self.orchestrator = SyncOrchestrator(
            remote=remote,
            store=store,
            bus=self.bus,
            fetcher=self.fetcher,
            reconciler=self.reconciler,
            locks=self.locks,
            retry_strategy=self.retry_strategy,
            metrics=self.metrics,
            query=sync.query,
            page_size=sync.page_size,
            legacy_max_pages=sync.legacy_max_pages,
            inter_page_delay=sync.inter_page_delay_seconds,
        )
        self.embedding_queue = BoundedEmbeddingQueue(sync.embedding_queue_size, metrics=self.metrics)
        self.embedding_worker: Optional[EmbeddingWorker] = None
        if embedder is not None:
            self.embedding_worker = EmbeddingWorker(
                queue=self.embedding_queue,
                store=store,
                embedder=embedder,
                batch_size=sync.embedding_batch_size,
                dimension=sync.embedding_dimension,
            )
        self.poller = MailboxPoller(
            credentials=credentials,
            sessions=self.connections,
            remote=remote,
            bus=self.bus,
            interval_seconds=sync.poll_interval_seconds,
            enabled=sync.poll_enabled,
            query=sync.query,
            page_size=sync.page_size,
        )
        SyncEventListeners(
            orchestrator=self.orchestrator,
            embedding_sink=self.embedding_queue,
            notifier=self.connections,
        ).register(self.bus)
        self._started = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        secret_store: Optional[SecretStore] = None,
        embedder: Optional[Embedder] = None,
        connections: Optional[ConnectionManager] = None,
    ) -> "MailboxSyncService":
        credentials = KeyringCredentialProvider(
            secret_store=secret_store or SecretStore(),
            index_path=credential_index_path(settings),
            api_base_url=settings.sync.api_base_url,
            request_timeout=settings.sync.request_timeout_seconds,
        )
        return cls(
            settings=settings,
            remote=RemoteMailboxGateway(credentials),
            store=SqliteMailboxStore(settings.storage.database_path),
            credentials=credentials,
            connections=connections,
            embedder=embedder,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        if self.embedding_worker is not None:
            await self.embedding_worker.start()
        await self.poller.start()
        self._started = True
        logger.info("Mailbox sync service started")

    async def stop(self) -> None:
        await self.poller.stop()
        await self.bus.drain()
        if self.embedding_worker is not None:
            await self.embedding_worker.stop()
        self.locks.reset()
        self._started = False
        logger.info("Mailbox sync service stopped")

    async def aclose(self) -> None:
        await self.stop()
        close_remote = getattr(self.remote, "aclose", None)
        if close_remote is not None:
            await close_remote()
        self.store.close()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def request_sync(self, user_id: str) -> None:
        """Fire-and-forget history sync for ``user_id``."""
        self.bus.emit(SyncRequested(user_id=user_id, page_counter=0, mode=SyncMode.HISTORY))

    async def sync_user(self, user_id: str) -> SyncOutcome:
        """Run a history sync and wait for its whole continuation chain."""
        outcome = await self.orchestrator.run_sync(
            SyncRequested(user_id=user_id, page_counter=0, mode=SyncMode.HISTORY)
        )
        await self.bus.drain()
        return outcome

    async def sync_first_batch(self, user_id: str) -> SyncOutcome:
        """List the newest messages page by page, up to the legacy page bound."""
        outcome = await self.orchestrator.run_sync(
            SyncRequested(user_id=user_id, page_counter=1, mode=SyncMode.LEGACY_LIST)
        )
        await self.bus.drain()
        return outcome

    async def reconcile_deletions(self, user_id: str) -> List[str]:
        """Walk the complete remote listing, then delete local ids absent from it."""
        await self.locks.acquire(user_id, fresh=False)
        try:
            remote_ids: Set[str] = set()
            page_token: Optional[str] = None
            pages = 0
            while True:
                token = page_token
                page = await call_with_retry(
                    lambda: self.remote.list_messages(
                        user_id, page_token=token, max_results=self.settings.sync.page_size
                    ),
                    self.retry_strategy,
                    description=f"messages.list for {user_id}",
                )
                remote_ids.update(page.ids)
                pages += 1
                if not page.next_page_token:
                    break
                page_token = page.next_page_token
            logger.info(
                f"Listed {len(remote_ids)} remote messages in {pages} pages for user {user_id}",
                extra={"user_id": user_id},
            )
            deleted = await self.reconciler.reconcile_diff(user_id, remote_ids, complete=True)
        finally:
            self.locks.release(user_id)
        if deleted:
            self.bus.emit(MailboxChanged(user_id=user_id, changed_email_ids=tuple(deleted)))
        return deleted

    async def reset_cursor(self, user_id: str) -> None:
        await self.store.clear_cursor(user_id)
        self.locks.end_chain(user_id)
        logger.info(f"Cleared sync cursor for user {user_id}", extra={"user_id": user_id})

    async def recent_emails(self, user_id: str, limit: int = RECENT_EMAIL_LIMIT) -> List[EmailRecord]:
        return await self.store.list_recent(user_id, limit)

    async def status(self, user_id: str) -> Dict[str, Any]:
        summary = self.metrics.generate_summary(user_id)
        return {
            "user_id": user_id,
            "cursor": await self.store.get_cursor(user_id),
            "cursor_updated_at": await self.store.cursor_updated_at(user_id),
            "stored_emails": await self.store.count(user_id),
            "chain_active": self.locks.chain_active(user_id),
            "runs": summary.total_runs,
            "failed_runs": summary.failed_runs,
            "last_error": summary.last_error,
        }


def credential_index_path(settings: Settings) -> Path:
    return settings.workspace_path / CREDENTIAL_INDEX_NAME


__all__ = ["MailboxSyncService", "credential_index_path"]
