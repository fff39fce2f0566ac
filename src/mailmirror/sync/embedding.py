"""Embedding hand-off for newly stored emails.

The sync path only ever calls :meth:`EmbeddingSink.enqueue`, which must not
block. :class:`BoundedEmbeddingQueue` enforces that by dropping batches once
full; :class:`EmbeddingWorker` drains it in the background, computing vectors
through an injected :class:`Embedder`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Protocol, Sequence

from .events import EmbeddingRequested
from .metrics import SyncMetricsCollector
from .models import EmailRecord


logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10
DEFAULT_DIMENSION = 1536


class EmbeddingSink(Protocol):
    def enqueue(self, user_id: str, email_ids: Sequence[str], batch_marker: int = 1) -> bool: ...


class Embedder(Protocol):
    async def embed(self, text: str) -> List[float]: ...


class EmbeddingStore(Protocol):
    async def find_missing_embeddings(
        self, user_id: str, ids: Sequence[str], limit: int
    ) -> List[EmailRecord]: ...

    async def attach_embedding(self, user_id: str, email_id: str, vector: List[float]) -> None: ...


def prepare_text_for_embedding(record: EmailRecord) -> str:
    return f"Subject: {record.subject}\nFrom: {record.sender}\nContent: {record.snippet}"


class BoundedEmbeddingQueue:
    """Best-effort embedding sink backed by a bounded ``asyncio.Queue``."""

    def __init__(self, maxsize: int = 100, *, metrics: Optional[SyncMetricsCollector] = None) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self._queue: asyncio.Queue[EmbeddingRequested] = asyncio.Queue(maxsize=maxsize)
        self._metrics = metrics
        self._dropped = 0

    def enqueue(self, user_id: str, email_ids: Sequence[str], batch_marker: int = 1) -> bool:
        if not email_ids:
            return True
        request = EmbeddingRequested(
            user_id=user_id, email_ids=tuple(email_ids), batch_marker=batch_marker
        )
        try:
            self._queue.put_nowait(request)
        except asyncio.QueueFull:
            self._dropped += 1
            if self._metrics:
                self._metrics.record_embedding_drop(user_id)
            logger.warning(
                f"Embedding queue full; dropping {len(email_ids)} ids for user {user_id}",
                extra={"user_id": user_id, "batch_marker": batch_marker},
            )
            return False
        return True

    async def get(self) -> EmbeddingRequested:
        return await self._queue.get()

    def get_nowait(self) -> EmbeddingRequested:
        return self._queue.get_nowait()

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        await self._queue.join()

    def qsize(self) -> int:
        return self._queue.qsize()

    @property
    def dropped(self) -> int:
        return self._dropped


class EmbeddingWorker:
    """Drains the embedding queue, attaching vectors batch by batch."""

    def __init__(
        self,
        *,
        queue: BoundedEmbeddingQueue,
        store: EmbeddingStore,
        embedder: Embedder,
        batch_size: int = DEFAULT_BATCH_SIZE,
        dimension: int = DEFAULT_DIMENSION,
    ) -> None:
        self._queue = queue
        self._store = store
        self._embedder = embedder
        self._batch_size = batch_size
        self._dimension = dimension
        self._task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        if self._task and not self._task.done():
            raise RuntimeError("Embedding worker already running")
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            request = await self._queue.get()
            try:
                await self.process(request)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    f"Embedding batch failed for user {request.user_id}: {exc}",
                    exc_info=exc,
                    extra={"user_id": request.user_id},
                )
            finally:
                self._queue.task_done()

    async def process(self, request: EmbeddingRequested) -> List[str]:
        """Embed one batch and re-enqueue whatever is left."""
        remaining = await self.generate_batch(request.user_id, request.email_ids)
        if remaining:
            self._queue.enqueue(request.user_id, remaining, request.batch_marker + 1)
        return remaining

    async def generate_batch(self, user_id: str, email_ids: Sequence[str]) -> List[str]:
        """Embed up to ``batch_size`` of ``email_ids`` and return the ids not yet visited."""
        records = await self._store.find_missing_embeddings(user_id, list(email_ids), self._batch_size)
        if not records:
            return []

        attached = 0
        for record in records:
            try:
                vector = await self._embedder.embed(prepare_text_for_embedding(record))
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    f"Failed to generate embedding for {record.id}: {exc}",
                    extra={"user_id": user_id},
                )
                continue
            if len(vector) != self._dimension:
                logger.warning(
                    f"Discarding embedding for {record.id}: expected {self._dimension} "
                    f"dimensions, got {len(vector)}",
                    extra={"user_id": user_id},
                )
                continue
            await self._store.attach_embedding(user_id, record.id, vector)
            attached += 1

        if attached:
            logger.info(
                f"Generated embeddings for {attached} emails (user {user_id})",
                extra={"user_id": user_id},
            )

        visited = {record.id for record in records}
        return [email_id for email_id in email_ids if email_id not in visited]


__all__ = [
    "BoundedEmbeddingQueue",
    "Embedder",
    "EmbeddingSink",
    "EmbeddingWorker",
    "prepare_text_for_embedding",
]
