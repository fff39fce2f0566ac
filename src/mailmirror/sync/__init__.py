"""Incremental mailbox synchronization engine."""

from .events import AsyncEventBus, EmbeddingRequested, MailboxChanged, SyncRequested
from .exceptions import (
    AuthError,
    HistoryExpiredError,
    IncompleteListingError,
    MailSyncError,
    MessageNotFoundError,
    RateLimitedError,
    RemoteAPIError,
    TransientNetworkError,
)
from .fetcher import BatchDetailFetcher, FetchOutcome
from .models import EmailRecord, SyncMode, SyncOutcome, SyncStatus
from .orchestrator import SyncOrchestrator
from .reconciler import DeletionReconciler
from .store import LocalMailboxStore, SqliteMailboxStore

__all__ = [
    "AsyncEventBus",
    "AuthError",
    "BatchDetailFetcher",
    "DeletionReconciler",
    "EmailRecord",
    "EmbeddingRequested",
    "FetchOutcome",
    "HistoryExpiredError",
    "IncompleteListingError",
    "LocalMailboxStore",
    "MailSyncError",
    "MailboxChanged",
    "MessageNotFoundError",
    "RateLimitedError",
    "RemoteAPIError",
    "SqliteMailboxStore",
    "SyncMode",
    "SyncOrchestrator",
    "SyncOutcome",
    "SyncRequested",
    "SyncStatus",
    "TransientNetworkError",
]
