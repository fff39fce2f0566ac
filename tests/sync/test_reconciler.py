"""Tests for deletion reconciliation."""

from __future__ import annotations

import pytest

from mailmirror.sync.exceptions import IncompleteListingError
from mailmirror.sync.reconciler import DeletionReconciler


@pytest.fixture
def reconciler(store) -> DeletionReconciler:
    return DeletionReconciler(store)


@pytest.mark.asyncio
async def test_explicit_deletes_named_ids(reconciler, store, make_record):
    """Only the named ids that exist locally are removed and reported."""
    await store.save_batch([make_record("m1"), make_record("m2"), make_record("m3")])

    removed = await reconciler.reconcile_explicit("u1", ["m3", "m1", "m1", "unknown"])

    assert removed == ["m1", "m3"]
    assert await store.list_ids("u1") == {"m2"}


@pytest.mark.asyncio
async def test_explicit_with_nothing_to_delete(reconciler, store, make_record):
    """Empty input removes nothing."""
    await store.save_batch([make_record("m1")])

    assert await reconciler.reconcile_explicit("u1", []) == []
    assert await store.list_ids("u1") == {"m1"}


@pytest.mark.asyncio
async def test_diff_removes_local_ids_absent_remotely(reconciler, store, make_record):
    """With a complete remote listing, stale local ids are deleted."""
    await store.save_batch([make_record("m1"), make_record("m2"), make_record("m3")])

    removed = await reconciler.reconcile_diff("u1", {"m1", "m3", "m9"}, complete=True)

    assert removed == ["m2"]
    assert await store.list_ids("u1") == {"m1", "m3"}


@pytest.mark.asyncio
async def test_diff_accepts_explicit_local_set(reconciler, store, make_record):
    """A caller-provided local id set narrows what may be deleted."""
    await store.save_batch([make_record("m1"), make_record("m2")])

    removed = await reconciler.reconcile_diff(
        "u1", set(), complete=True, local_ids=["m2"]
    )

    assert removed == ["m2"]
    assert await store.list_ids("u1") == {"m1"}


@pytest.mark.asyncio
async def test_diff_refuses_partial_listing(reconciler, store, make_record):
    """A single page must never be diffed against the whole mailbox."""
    await store.save_batch([make_record("m1"), make_record("m2")])

    with pytest.raises(IncompleteListingError):
        await reconciler.reconcile_diff("u1", {"m1"})

    assert await store.list_ids("u1") == {"m1", "m2"}
