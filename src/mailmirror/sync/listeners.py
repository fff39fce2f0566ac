"""Bus subscriptions wiring the orchestrator and its downstream consumers."""

from __future__ import annotations

import logging
from typing import Optional

from .embedding import EmbeddingSink
from .events import AsyncEventBus, EmbeddingRequested, MailboxChanged, SyncRequested
from .notifications import NotificationChannel
from .orchestrator import SyncOrchestrator


logger = logging.getLogger(__name__)


class SyncEventListeners:
    """Routes bus events to the orchestrator, embedding sink and notifier."""

    def __init__(
        self,
        *,
        orchestrator: SyncOrchestrator,
        embedding_sink: Optional[EmbeddingSink] = None,
        notifier: Optional[NotificationChannel] = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._embedding_sink = embedding_sink
        self._notifier = notifier

    def register(self, bus: AsyncEventBus) -> None:
        bus.subscribe(SyncRequested, self.on_sync_requested)
        bus.subscribe(EmbeddingRequested, self.on_embedding_requested)
        bus.subscribe(MailboxChanged, self.on_mailbox_changed)

    async def on_sync_requested(self, event: SyncRequested) -> None:
        logger.debug(
            f"Sync requested for user {event.user_id} (page {event.page_counter}, {event.mode.value})",
            extra={"user_id": event.user_id, "page_counter": event.page_counter},
        )
        await self._orchestrator.run_sync(event)

    async def on_embedding_requested(self, event: EmbeddingRequested) -> None:
        if self._embedding_sink is None:
            return
        self._embedding_sink.enqueue(event.user_id, event.email_ids, event.batch_marker)

    async def on_mailbox_changed(self, event: MailboxChanged) -> None:
        if self._notifier is None:
            return
        await self._notifier.notify(event.user_id, list(event.changed_email_ids))


__all__ = ["SyncEventListeners"]
