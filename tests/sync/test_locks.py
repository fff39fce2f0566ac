"""Tests for per-user sync serialization."""

from __future__ import annotations

import asyncio

import pytest

from mailmirror.sync.locks import UserSyncLocks


@pytest.mark.asyncio
async def test_free_lock_is_acquired_immediately():
    locks = UserSyncLocks()

    assert await locks.acquire("u1", fresh=True)
    assert locks.is_busy("u1")
    assert not locks.is_busy("u2")
    locks.release("u1")
    assert not locks.is_busy("u1")


@pytest.mark.asyncio
async def test_second_waiting_fresh_request_is_coalesced():
    """Only one fresh request may queue behind a busy user."""
    locks = UserSyncLocks()
    await locks.acquire("u1", fresh=True)

    waiter = asyncio.create_task(locks.acquire("u1", fresh=True))
    await asyncio.sleep(0)

    assert await locks.acquire("u1", fresh=True) is False

    locks.release("u1")
    assert await waiter is True
    locks.release("u1")


@pytest.mark.asyncio
async def test_continuations_always_wait():
    """Continuation requests queue even when a fresh one is already waiting."""
    locks = UserSyncLocks()
    await locks.acquire("u1", fresh=True)
    fresh_waiter = asyncio.create_task(locks.acquire("u1", fresh=True))
    await asyncio.sleep(0)
    continuation = asyncio.create_task(locks.acquire("u1", fresh=False))
    await asyncio.sleep(0)

    locks.release("u1")
    assert await fresh_waiter
    locks.release("u1")
    assert await continuation
    locks.release("u1")


def test_chain_markers():
    locks = UserSyncLocks()

    locks.begin_chain("u1")
    assert locks.chain_active("u1")
    locks.end_chain("u1")
    assert not locks.chain_active("u1")

    locks.begin_chain("u2")
    locks.reset()
    assert not locks.chain_active("u2")
