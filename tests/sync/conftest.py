"""Shared fakes and fixtures for sync engine tests."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Type

import pytest

from mailmirror.sync.events import AsyncEventBus, EmbeddingRequested, MailboxChanged, SyncRequested
from mailmirror.sync.exceptions import MessageNotFoundError
from mailmirror.sync.models import (
    AccountProfile,
    EmailRecord,
    HistoryPage,
    MessageListPage,
    MessageMetadata,
)
from mailmirror.sync.retry import RetryStrategy
from mailmirror.sync.store import SqliteMailboxStore


# ============================================================================
# Fake remote mailbox
# ============================================================================


class FakeRemoteMailbox:
    """In-memory ``RemoteMailboxAPI``.

    History pages and list pages are keyed by the page token that requests
    them (``None`` for the first page). Queued failures are raised, in order,
    before any successful response.
    """

    def __init__(self) -> None:
        self.metadata: Dict[str, MessageMetadata] = {}
        self.history_pages: Dict[Optional[str], HistoryPage] = {}
        self.list_pages: Dict[Optional[str], MessageListPage] = {}
        self.profile_history_id = "1000"
        self.history_failures: List[Exception] = []
        self.list_failures: List[Exception] = []
        self.metadata_failures: Dict[str, List[Exception]] = {}
        self.history_gate: Optional[asyncio.Event] = None
        self.metadata_delay = 0.0
        self.calls: List[Tuple[Any, ...]] = []
        self.in_flight: Dict[str, int] = {"history": 0, "metadata": 0}
        self.max_in_flight: Dict[str, int] = {"history": 0, "metadata": 0}

    def add_message(
        self,
        message_id: str,
        *,
        subject: str = "",
        sender: str = "",
        internal_date: int = 0,
        snippet: str = "",
    ) -> MessageMetadata:
        metadata = MessageMetadata(
            id=message_id,
            thread_id=f"thread-{message_id}",
            snippet=snippet,
            internal_date=internal_date,
            subject=subject,
            sender=sender,
        )
        self.metadata[message_id] = metadata
        return metadata

    def calls_to(self, name: str) -> List[Tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == name]

    def _enter(self, kind: str) -> None:
        self.in_flight[kind] += 1
        self.max_in_flight[kind] = max(self.max_in_flight[kind], self.in_flight[kind])

    def _leave(self, kind: str) -> None:
        self.in_flight[kind] -= 1

    async def list_messages(
        self,
        user_id: str,
        page_token: Optional[str] = None,
        query: Optional[str] = None,
        max_results: int = 100,
    ) -> MessageListPage:
        self.calls.append(("list_messages", user_id, page_token, query, max_results))
        if self.list_failures:
            raise self.list_failures.pop(0)
        return self.list_pages.get(page_token, MessageListPage())

    async def get_message_metadata(self, user_id: str, message_id: str) -> MessageMetadata:
        self.calls.append(("get_message_metadata", user_id, message_id))
        self._enter("metadata")
        try:
            if self.metadata_delay:
                await asyncio.sleep(self.metadata_delay)
            failures = self.metadata_failures.get(message_id)
            if failures:
                raise failures.pop(0)
            if message_id not in self.metadata:
                raise MessageNotFoundError(message_id)
            return self.metadata[message_id]
        finally:
            self._leave("metadata")

    async def list_history(
        self, user_id: str, start_history_id: str, page_token: Optional[str] = None
    ) -> HistoryPage:
        self.calls.append(("list_history", user_id, start_history_id, page_token))
        self._enter("history")
        try:
            if self.history_gate is not None:
                await self.history_gate.wait()
            if self.history_failures:
                raise self.history_failures.pop(0)
            return self.history_pages.get(page_token, HistoryPage(history_id=start_history_id))
        finally:
            self._leave("history")

    async def get_profile(self, user_id: str) -> AccountProfile:
        self.calls.append(("get_profile", user_id))
        return AccountProfile(history_id=self.profile_history_id, email_address=f"{user_id}@example.com")


# ============================================================================
# Event recording
# ============================================================================


class EventRecorder:
    """Subscribes to every sync event type and keeps what it receives."""

    def __init__(self, bus: AsyncEventBus) -> None:
        self.events: List[Any] = []
        for event_type in (SyncRequested, EmbeddingRequested, MailboxChanged):
            bus.subscribe(event_type, self._record)

    async def _record(self, event: Any) -> None:
        self.events.append(event)

    def of_type(self, event_type: Type[Any]) -> List[Any]:
        return [event for event in self.events if isinstance(event, event_type)]


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeCredentials:
    def __init__(self, user_ids: Optional[List[str]] = None) -> None:
        self.user_ids = list(user_ids or [])

    def list_user_ids(self) -> List[str]:
        return list(self.user_ids)

    async def get_authenticated_client(self, user_id: str) -> Any:
        raise NotImplementedError


class FakeSessions:
    def __init__(self, connected: Optional[List[str]] = None) -> None:
        self.connected = set(connected or [])

    def is_connected(self, user_id: str) -> bool:
        return user_id in self.connected


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def remote() -> FakeRemoteMailbox:
    return FakeRemoteMailbox()


@pytest.fixture
def store(tmp_path: Path) -> Iterator[SqliteMailboxStore]:
    mailbox_store = SqliteMailboxStore(tmp_path / "mailbox.db")
    yield mailbox_store
    mailbox_store.close()


@pytest.fixture
def bus() -> AsyncEventBus:
    return AsyncEventBus()


@pytest.fixture
def recorder(bus: AsyncEventBus) -> EventRecorder:
    return EventRecorder(bus)


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fast_retry() -> RetryStrategy:
    return RetryStrategy(
        max_retries=3,
        rate_limit_max_retries=8,
        base_delay=0.01,
        max_delay=0.05,
        jitter=False,
    )


@pytest.fixture
def credentials() -> FakeCredentials:
    return FakeCredentials(["u1"])


@pytest.fixture
def sessions() -> FakeSessions:
    return FakeSessions(["u1"])


@pytest.fixture
def make_record() -> Callable[..., EmailRecord]:
    def factory(message_id: str, user_id: str = "u1", **fields: Any) -> EmailRecord:
        return EmailRecord(id=message_id, user_id=user_id, **fields)

    return factory
