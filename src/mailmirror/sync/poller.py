"""Interval poller originating sync requests for connected users.

Each tick probes every registered user's mailbox with one bounded list call.
The probe only decides whether to start a history sync; the orchestrator does
its own pagination.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .credentials import CredentialProvider
from .events import AsyncEventBus, MailboxChanged, SyncRequested
from .models import SyncMode
from .notifications import SessionRegistry
from .remote import DEFAULT_PAGE_SIZE, RemoteMailboxAPI


logger = logging.getLogger(__name__)

POLL_JOB_ID = "mailbox-poll"
MIN_POLL_INTERVAL_SECONDS = 1


class MailboxPoller:
    """Poll registered users on a fixed interval."""

    def __init__(
        self,
        *,
        credentials: CredentialProvider,
        sessions: SessionRegistry,
        remote: RemoteMailboxAPI,
        bus: AsyncEventBus,
        interval_seconds: int = 60,
        enabled: bool = True,
        query: Optional[str] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        """Initialize poller.

        Args:
            credentials: Source of users with a stored credential
            sessions: Registry answering whether a user has a live client
            remote: Remote mailbox used for the liveliness probe
            bus: Bus receiving the originated events
            interval_seconds: Seconds between ticks (floored at one second)
            enabled: When False, ``start`` is a no-op
            query: Optional remote search filter for the probe
            page_size: Messages requested by the probe
        """
        self._credentials = credentials
        self._sessions = sessions
        self._remote = remote
        self._bus = bus
        self.interval_seconds = max(MIN_POLL_INTERVAL_SECONDS, int(interval_seconds))
        self.enabled = enabled
        self._query = query
        self._page_size = page_size
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    async def start(self) -> None:
        """Schedule the poll job on the running loop."""
        if not self.enabled:
            logger.info("Mailbox polling disabled by configuration")
            return
        if self.running:
            raise RuntimeError("Mailbox poller already running")

        self._scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        self._scheduler.add_job(
            self.poll_once,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=POLL_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(f"Mailbox poller started (interval {self.interval_seconds}s)")

    async def stop(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Mailbox poller stopped")

    async def poll_once(self) -> List[str]:
        """Run one tick; returns the users a sync was requested for."""
        triggered: List[str] = []
        try:
            user_ids = list(self._credentials.list_user_ids())
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Unable to list users for polling: {exc}", exc_info=exc)
            return triggered

        for user_id in user_ids:
            if not self._sessions.is_connected(user_id):
                logger.debug(f"Skipping offline user {user_id}", extra={"user_id": user_id})
                continue
            try:
                page = await self._remote.list_messages(
                    user_id, query=self._query, max_results=self._page_size
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    f"Poll probe failed for user {user_id}: {exc}",
                    extra={"user_id": user_id},
                )
                continue
            if not page.ids:
                continue

            self._bus.emit(
                SyncRequested(user_id=user_id, page_counter=0, mode=SyncMode.HISTORY)
            )
            self._bus.emit(MailboxChanged(user_id=user_id, changed_email_ids=()))
            triggered.append(user_id)

        if triggered:
            logger.debug(f"Poll tick requested sync for {len(triggered)} users")
        return triggered


__all__ = ["MailboxPoller"]
