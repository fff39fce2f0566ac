"""Exception taxonomy for mailbox synchronization.

Remote failures are classified at the client boundary so the orchestrator can
decide between retrying a page, re-seeding the cursor, or abandoning the
user's continuation chain.
"""

from __future__ import annotations

from typing import Optional


class MailSyncError(Exception):
    """Base class for all mailbox sync failures."""


class TransientNetworkError(MailSyncError):
    """Raised when a remote call fails due to connectivity or a 5xx response.

    Retried with exponential backoff before the page is abandoned.
    """

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(MailSyncError):
    """Raised when the remote service throttles the caller.

    Example:
        A 429 response with ``Retry-After: 5`` yields ``retry_after=5.0``.
    """

    def __init__(self, message: str, *, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class MessageNotFoundError(MailSyncError):
    """Raised when a message id no longer exists remotely.

    Treated as an implicit deletion signal, never as a hard failure.
    """

    def __init__(self, message_id: str) -> None:
        super().__init__(f"Message {message_id} not found")
        self.message_id = message_id


class HistoryExpiredError(MailSyncError):
    """Raised when the starting history id is too old to resume from.

    The incremental path cannot continue; the cursor must be cleared and
    re-seeded from the account profile.
    """

    def __init__(self, start_history_id: str, detail: str = "") -> None:
        message = f"History id {start_history_id} is no longer available"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.start_history_id = start_history_id


class AuthError(MailSyncError):
    """Raised when credentials are missing, invalid or expired."""


class RemoteAPIError(MailSyncError):
    """Raised for any other non-success remote response."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class IncompleteListingError(ValueError):
    """Raised when diff-mode reconciliation is requested on a partial listing.

    Diffing a single page against the full local set would delete every
    message outside that page.
    """


__all__ = [
    "AuthError",
    "HistoryExpiredError",
    "IncompleteListingError",
    "MailSyncError",
    "MessageNotFoundError",
    "RateLimitedError",
    "RemoteAPIError",
    "TransientNetworkError",
]
