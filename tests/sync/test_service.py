"""Tests for the mailbox sync service facade."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, List

import pytest

from mailmirror.configuration.settings import Settings, StorageSettings, SyncSettings
from mailmirror.sync.models import HistoryPage, MessageListPage, SyncStatus
from mailmirror.sync.remote import RemoteMailboxGateway
from mailmirror.sync.service import MailboxSyncService
from mailmirror.sync.store import SqliteMailboxStore


class FixedEmbedder:
    async def embed(self, text: str) -> List[float]:
        return [0.5, 0.5, 0.5, 0.5]


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        sync=SyncSettings(
            poll_enabled=False,
            legacy_max_pages=3,
            inter_page_delay_seconds=0.0,
            retry_base_delay_seconds=0.01,
            embedding_dimension=4,
        ),
        storage=StorageSettings(database_path=tmp_path / "workspace" / "mailbox.db"),
        workspace_path=tmp_path / "workspace",
    )


@pytest.fixture
def service(settings, remote, credentials) -> MailboxSyncService:
    return MailboxSyncService(
        settings=settings,
        remote=remote,
        store=SqliteMailboxStore(settings.storage.database_path),
        credentials=credentials,
        embedder=FixedEmbedder(),
    )


# ============================================================================
# Sync Operations
# ============================================================================


@pytest.mark.asyncio
async def test_sync_user_cold_start_then_full_chain(service, remote):
    """The first sync seeds the cursor; the next one walks every page."""
    first = await service.sync_user("u1")
    assert first.status == SyncStatus.COLD_START

    remote.add_message("m1")
    remote.add_message("m2")
    remote.history_pages[None] = HistoryPage(added_ids=["m1"], next_page_token="p2", history_id="1001")
    remote.history_pages["p2"] = HistoryPage(added_ids=["m2"], history_id="1009")

    second = await service.sync_user("u1")

    assert second.status == SyncStatus.PAGE_APPLIED
    assert await service.store.get_cursor("u1") == "1009"
    assert await service.store.list_ids("u1") == {"m1", "m2"}
    report = await service.status("u1")
    assert report["cursor"] == "1009"
    assert report["stored_emails"] == 2
    assert report["chain_active"] is False
    assert report["runs"] == 3
    assert report["failed_runs"] == 0
    await service.aclose()


@pytest.mark.asyncio
async def test_first_batch_respects_legacy_bound(service, remote):
    for index in range(6):
        token = None if index == 0 else f"t{index}"
        remote.add_message(f"m{index}", internal_date=index)
        remote.list_pages[token] = MessageListPage(ids=[f"m{index}"], next_page_token=f"t{index + 1}")

    await service.sync_first_batch("u1")

    assert len(remote.calls_to("list_messages")) == 3
    recent = await service.recent_emails("u1", limit=2)
    assert [record.id for record in recent] == ["m2", "m1"]
    await service.aclose()


@pytest.mark.asyncio
async def test_reconcile_deletions_uses_complete_listing(service, remote, make_record):
    """Only ids absent from every listed page are deleted and announced."""
    received: List[Dict[str, Any]] = []

    async def send(payload: Dict[str, Any]) -> None:
        received.append(payload)

    service.connections.connect("u1", send)
    await service.store.save_batch([make_record("m1"), make_record("m2"), make_record("stale")])
    remote.list_pages[None] = MessageListPage(ids=["m1"], next_page_token="t2")
    remote.list_pages["t2"] = MessageListPage(ids=["m2"])

    deleted = await service.reconcile_deletions("u1")
    await service.bus.drain()

    assert deleted == ["stale"]
    assert await service.store.list_ids("u1") == {"m1", "m2"}
    assert [call[2:4] for call in remote.calls_to("list_messages")] == [(None, None), ("t2", None)]
    assert received == [{"type": "new_emails", "email_ids": ["stale"]}]
    await service.aclose()


@pytest.mark.asyncio
async def test_reset_cursor_forces_cold_start(service, remote):
    await service.sync_user("u1")
    await service.reset_cursor("u1")

    assert await service.store.get_cursor("u1") is None
    outcome = await service.sync_user("u1")
    assert outcome.status == SyncStatus.COLD_START
    await service.aclose()


# ============================================================================
# Lifecycle
# ============================================================================


@pytest.mark.asyncio
async def test_started_service_embeds_new_mail(service, remote):
    """New mail flows through the bus into the embedding worker."""
    await service.start()
    await service.store.set_cursor("u1", "1000")
    remote.add_message("m1", subject="Report")
    remote.history_pages[None] = HistoryPage(added_ids=["m1"], history_id="1001")

    await service.sync_user("u1")
    await asyncio.wait_for(service.embedding_queue.join(), timeout=5)

    record = await service.store.get("u1", "m1")
    assert record.embedding == [0.5, 0.5, 0.5, 0.5]
    assert not service.poller.running
    await service.aclose()


@pytest.mark.asyncio
async def test_request_sync_is_fire_and_forget(service, remote):
    service.request_sync("u1")
    await service.bus.drain()

    assert await service.store.get_cursor("u1") == "1000"
    await service.aclose()


@pytest.mark.asyncio
async def test_from_settings_builds_keyring_backed_service(settings, secret_store):
    service = MailboxSyncService.from_settings(settings, secret_store=secret_store)

    assert isinstance(service.remote, RemoteMailboxGateway)
    assert service.store.path == settings.storage.database_path
    assert service.embedding_worker is None
    assert service.credentials.list_user_ids() == []
    await service.aclose()
