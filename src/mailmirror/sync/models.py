"""Data models for the mailbox mirror.

Remote payloads are parsed into these models at the client boundary so the
rest of the engine never touches raw Gmail response shapes.
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Local records
# ---------------------------------------------------------------------------


class EmailRecord(BaseModel):
    """One remote message mirrored locally."""

    id: str = Field(..., description="Remote message identifier")
    thread_id: str = Field(default="", description="Remote thread identifier")
    snippet: str = Field(default="", description="Text excerpt")
    internal_date: int = Field(
        default=0, ge=0, description="Remote timestamp in epoch milliseconds"
    )
    subject: str = Field(default="", description="Subject header")
    sender: str = Field(default="", description="From header")
    user_id: str = Field(..., description="Owning user")
    embedding: Optional[List[float]] = Field(
        default=None, description="Embedding vector, null until computed"
    )

    @classmethod
    def from_metadata(cls, user_id: str, metadata: "MessageMetadata") -> "EmailRecord":
        return cls(
            id=metadata.id,
            thread_id=metadata.thread_id,
            snippet=metadata.snippet,
            internal_date=metadata.internal_date,
            subject=metadata.subject,
            sender=metadata.sender,
            user_id=user_id,
        )


# ---------------------------------------------------------------------------
# Remote value types
# ---------------------------------------------------------------------------


class MessageListPage(BaseModel):
    """One page of a full message listing."""

    ids: List[str] = Field(default_factory=list)
    next_page_token: Optional[str] = None


class MessageMetadata(BaseModel):
    """Metadata of a single remote message."""

    id: str
    thread_id: str = ""
    snippet: str = ""
    internal_date: int = 0
    subject: str = ""
    sender: str = ""


class HistoryPage(BaseModel):
    """One page of the remote history feed."""

    added_ids: List[str] = Field(default_factory=list)
    deleted_ids: List[str] = Field(default_factory=list)
    next_page_token: Optional[str] = None
    history_id: Optional[str] = Field(
        default=None, description="Remote history id reported with this page"
    )


class AccountProfile(BaseModel):
    """Remote account profile."""

    history_id: str
    email_address: str = ""


# ---------------------------------------------------------------------------
# Sync results
# ---------------------------------------------------------------------------


class SyncMode(str, Enum):
    """Requested sync mode.

    Cold start is not requested explicitly; it is derived from a missing
    cursor when a HISTORY request runs.
    """

    HISTORY = "history"
    LEGACY_LIST = "legacy_list"


class SyncStatus(str, Enum):
    """Terminal status of one orchestrator run."""

    COLD_START = "cold_start"
    PAGE_APPLIED = "page_applied"  # continuation emitted, cursor untouched
    COMPLETED = "completed"
    RESEEDED = "reseeded"
    SKIPPED = "skipped"
    FAILED = "failed"


class SyncOutcome(BaseModel):
    """Result of a single ``run_sync`` call."""

    user_id: str
    mode: SyncMode
    status: SyncStatus
    page_counter: int = 0
    new_ids: List[str] = Field(default_factory=list)
    deleted_ids: List[str] = Field(default_factory=list)
    continuation_token: Optional[str] = None
    cursor: Optional[str] = None
    error: Optional[str] = None

    @property
    def has_changes(self) -> bool:
        return bool(self.new_ids or self.deleted_ids)


__all__ = [
    "AccountProfile",
    "EmailRecord",
    "HistoryPage",
    "MessageListPage",
    "MessageMetadata",
    "SyncMode",
    "SyncOutcome",
    "SyncStatus",
]
