"""In-process event bus for sync fan-out.

Decouples the origin of a sync request from its execution, and the completion
of a page from embedding generation and client notification.

Architecture:
    MailboxPoller / MailboxSyncService
          |
    AsyncEventBus.emit(SyncRequested)
          |
    SyncOrchestrator.run_sync
          |
    AsyncEventBus.emit(EmbeddingRequested, MailboxChanged, SyncRequested)
          |
    EmbeddingSink.enqueue / NotificationChannel.notify

Example Usage:
    >>> bus = AsyncEventBus()
    >>> bus.subscribe(MailboxChanged, channel_handler)
    >>> bus.emit(MailboxChanged(user_id="u1", changed_email_ids=("m1",)))
    >>> await bus.drain()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Type

from .models import SyncMode


logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SyncRequested:
    """Request to run one sync page for a user."""

    user_id: str
    continuation_token: Optional[str] = None
    page_counter: int = 0
    carried_deleted_ids: Tuple[str, ...] = ()
    mode: SyncMode = SyncMode.HISTORY

    @property
    def is_continuation(self) -> bool:
        return self.continuation_token is not None


@dataclass(frozen=True)
class EmbeddingRequested:
    """Newly stored emails that need an embedding vector."""

    user_id: str
    email_ids: Tuple[str, ...]
    batch_marker: int = 1


@dataclass(frozen=True)
class MailboxChanged:
    """Client-facing hint that a user's mailbox changed."""

    user_id: str
    changed_email_ids: Tuple[str, ...] = ()


Handler = Callable[[Any], Awaitable[Any]]


# ---------------------------------------------------------------------------
# Bus
# ---------------------------------------------------------------------------


class AsyncEventBus:
    """Publish/subscribe keyed by event class.

    ``emit`` schedules one task per subscribed handler on the running loop and
    returns immediately. Handler errors are logged and counted, never raised
    to the emitter.
    """

    def __init__(self) -> None:
        self._handlers: Dict[Type[Any], List[Handler]] = {}
        self._tasks: Set[asyncio.Task[Any]] = set()
        self._emit_count = 0
        self._error_count = 0

    def subscribe(self, event_type: Type[Any], handler: Handler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: Type[Any], handler: Handler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event: Any) -> int:
        """Schedule delivery of ``event``; returns the number of handlers."""
        handlers = list(self._handlers.get(type(event), ()))
        self._emit_count += 1
        if not handlers:
            logger.debug(f"No handlers subscribed for {type(event).__name__}")
            return 0

        loop = asyncio.get_running_loop()
        for handler in handlers:
            task = loop.create_task(self._deliver(handler, event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return len(handlers)

    async def _deliver(self, handler: Handler, event: Any) -> None:
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._error_count += 1
            logger.error(
                f"Handler {getattr(handler, '__qualname__', handler)} failed for "
                f"{type(event).__name__}: {exc}",
                exc_info=True,
                extra={"user_id": getattr(event, "user_id", None)},
            )

    async def drain(self) -> None:
        """Wait until no handler task is in flight, including ones spawned meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    @property
    def emit_count(self) -> int:
        return self._emit_count

    @property
    def error_count(self) -> int:
        return self._error_count


__all__ = [
    "AsyncEventBus",
    "EmbeddingRequested",
    "MailboxChanged",
    "SyncRequested",
]
