"""Local mailbox persistence.

Holds the mirrored email records and the per-user sync cursor. The cursor is
kept in its own table so it can be advanced independently of record writes.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Protocol, Sequence, Set

from .models import EmailRecord


class LocalMailboxStore(Protocol):
    """Storage contract consumed by the sync engine."""

    async def find_existing_ids(self, user_id: str, ids: Iterable[str]) -> Set[str]: ...

    async def save_batch(self, records: Sequence[EmailRecord]) -> None: ...

    async def delete_by_ids(self, user_id: str, ids: Iterable[str]) -> List[str]: ...

    async def list_ids(self, user_id: str) -> Set[str]: ...

    async def get_cursor(self, user_id: str) -> Optional[str]: ...

    async def set_cursor(self, user_id: str, history_id: str) -> None: ...

    async def clear_cursor(self, user_id: str) -> None: ...

    async def list_recent(self, user_id: str, limit: int = 20) -> List[EmailRecord]: ...

    async def count(self, user_id: str) -> int: ...

    async def find_missing_embeddings(
        self, user_id: str, ids: Sequence[str], limit: int
    ) -> List[EmailRecord]: ...

    async def attach_embedding(self, user_id: str, email_id: str, vector: List[float]) -> None: ...


# ---------------------------------------------------------------------------
# SQLite implementation
# ---------------------------------------------------------------------------


SCHEMA = """
CREATE TABLE IF NOT EXISTS emails (
    user_id TEXT NOT NULL,
    id TEXT NOT NULL,
    thread_id TEXT NOT NULL DEFAULT '',
    snippet TEXT NOT NULL DEFAULT '',
    internal_date INTEGER NOT NULL DEFAULT 0,
    subject TEXT NOT NULL DEFAULT '',
    sender TEXT NOT NULL DEFAULT '',
    embedding TEXT,
    PRIMARY KEY (user_id, id)
);

CREATE INDEX IF NOT EXISTS idx_emails_user_date ON emails(user_id, internal_date);

CREATE TABLE IF NOT EXISTS sync_cursor (
    user_id TEXT PRIMARY KEY,
    last_history_id TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

_COLUMNS = "id, thread_id, snippet, internal_date, subject, sender, user_id, embedding"

# Ids bound per IN (...) clause; stays under SQLite's bound-parameter limit
_MAX_BOUND_IDS = 500


class SqliteMailboxStore:
    """SQLite-backed store for email records and sync cursors.

    Methods are coroutines to match the storage contract; each statement is a
    short local write, so they run inline on the event loop.
    """

    def __init__(self, path: Path) -> None:
        """Initialize store.

        Args:
            path: Path to SQLite database file
        """
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._path))
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)

    @property
    def path(self) -> Path:
        return self._path

    def close(self) -> None:
        """Close database connection."""
        self._conn.commit()
        self._conn.close()

    # -- records -----------------------------------------------------------

    async def find_existing_ids(self, user_id: str, ids: Iterable[str]) -> Set[str]:
        wanted = list(dict.fromkeys(ids))
        if not wanted:
            return set()
        found: Set[str] = set()
        for start in range(0, len(wanted), _MAX_BOUND_IDS):
            chunk = wanted[start : start + _MAX_BOUND_IDS]
            placeholders = ",".join("?" for _ in chunk)
            cur = self._conn.execute(
                f"SELECT id FROM emails WHERE user_id = ? AND id IN ({placeholders})",
                (user_id, *chunk),
            )
            found.update(row[0] for row in cur.fetchall())
        return found

    async def save_batch(self, records: Sequence[EmailRecord]) -> None:
        """Insert records, ignoring any ``(user_id, id)`` already stored."""
        if not records:
            return
        with self._conn:
            self._conn.executemany(
                """
                INSERT OR IGNORE INTO emails(
                    user_id, id, thread_id, snippet, internal_date, subject, sender, embedding
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        record.user_id,
                        record.id,
                        record.thread_id,
                        record.snippet,
                        record.internal_date,
                        record.subject,
                        record.sender,
                        json.dumps(record.embedding) if record.embedding is not None else None,
                    )
                    for record in records
                ],
            )

    async def delete_by_ids(self, user_id: str, ids: Iterable[str]) -> List[str]:
        """Delete records and return the ids that were actually present."""
        existing = await self.find_existing_ids(user_id, ids)
        if not existing:
            return []
        doomed = sorted(existing)
        with self._conn:
            self._conn.executemany(
                "DELETE FROM emails WHERE user_id = ? AND id = ?",
                [(user_id, email_id) for email_id in doomed],
            )
        return doomed

    async def list_ids(self, user_id: str) -> Set[str]:
        cur = self._conn.execute("SELECT id FROM emails WHERE user_id = ?", (user_id,))
        return {row[0] for row in cur.fetchall()}

    async def get(self, user_id: str, email_id: str) -> Optional[EmailRecord]:
        cur = self._conn.execute(
            f"SELECT {_COLUMNS} FROM emails WHERE user_id = ? AND id = ?",
            (user_id, email_id),
        )
        row = cur.fetchone()
        return _row_to_record(row) if row else None

    async def list_recent(self, user_id: str, limit: int = 20) -> List[EmailRecord]:
        cur = self._conn.execute(
            f"""
            SELECT {_COLUMNS} FROM emails
            WHERE user_id = ?
            ORDER BY internal_date DESC
            LIMIT ?
            """,
            (user_id, limit),
        )
        return [_row_to_record(row) for row in cur.fetchall()]

    async def count(self, user_id: str) -> int:
        cur = self._conn.execute("SELECT COUNT(*) FROM emails WHERE user_id = ?", (user_id,))
        return int(cur.fetchone()[0])

    # -- embeddings ----------------------------------------------------------

    async def find_missing_embeddings(
        self, user_id: str, ids: Sequence[str], limit: int
    ) -> List[EmailRecord]:
        """Return up to ``limit`` records among ``ids`` that lack an embedding."""
        wanted = list(dict.fromkeys(ids))
        records: List[EmailRecord] = []
        for start in range(0, len(wanted), _MAX_BOUND_IDS):
            if len(records) >= limit:
                break
            chunk = wanted[start : start + _MAX_BOUND_IDS]
            placeholders = ",".join("?" for _ in chunk)
            cur = self._conn.execute(
                f"""
                SELECT {_COLUMNS} FROM emails
                WHERE user_id = ? AND embedding IS NULL AND id IN ({placeholders})
                LIMIT ?
                """,
                (user_id, *chunk, limit - len(records)),
            )
            records.extend(_row_to_record(row) for row in cur.fetchall())
        return records

    async def attach_embedding(self, user_id: str, email_id: str, vector: List[float]) -> None:
        with self._conn:
            self._conn.execute(
                "UPDATE emails SET embedding = ? WHERE user_id = ? AND id = ?",
                (json.dumps(vector), user_id, email_id),
            )

    # -- cursor --------------------------------------------------------------

    async def get_cursor(self, user_id: str) -> Optional[str]:
        cur = self._conn.execute(
            "SELECT last_history_id FROM sync_cursor WHERE user_id = ?", (user_id,)
        )
        row = cur.fetchone()
        return row[0] if row else None

    async def set_cursor(self, user_id: str, history_id: str) -> None:
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO sync_cursor(user_id, last_history_id, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    last_history_id=excluded.last_history_id,
                    updated_at=excluded.updated_at
                """,
                (user_id, history_id, datetime.now(timezone.utc).isoformat()),
            )

    async def clear_cursor(self, user_id: str) -> None:
        with self._conn:
            self._conn.execute("DELETE FROM sync_cursor WHERE user_id = ?", (user_id,))

    async def cursor_updated_at(self, user_id: str) -> Optional[datetime]:
        cur = self._conn.execute(
            "SELECT updated_at FROM sync_cursor WHERE user_id = ?", (user_id,)
        )
        row = cur.fetchone()
        return datetime.fromisoformat(row[0]) if row else None


def _row_to_record(row: Sequence) -> EmailRecord:
    return EmailRecord(
        id=row[0],
        thread_id=row[1],
        snippet=row[2],
        internal_date=row[3],
        subject=row[4],
        sender=row[5],
        user_id=row[6],
        embedding=json.loads(row[7]) if row[7] is not None else None,
    )


__all__ = [
    "LocalMailboxStore",
    "SqliteMailboxStore",
]
