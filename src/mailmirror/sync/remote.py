"""Remote mailbox access.

``RemoteMailboxAPI`` is the only remote surface the sync engine sees. The
Gmail REST implementation below owns every detail of the wire format: response
shapes are parsed into :mod:`mailmirror.sync.models` values and HTTP failures
are classified into :mod:`mailmirror.sync.exceptions` before leaving this
module.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol

import httpx

from .exceptions import (
    AuthError,
    HistoryExpiredError,
    MailSyncError,
    MessageNotFoundError,
    RateLimitedError,
    RemoteAPIError,
    TransientNetworkError,
)
from .models import AccountProfile, HistoryPage, MessageListPage, MessageMetadata

if TYPE_CHECKING:
    from .credentials import CredentialProvider


logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"
DEFAULT_PAGE_SIZE = 100

METADATA_HEADERS = ("Subject", "From", "Date")
HISTORY_TYPES = ("messageAdded", "messageDeleted")

# 403 reasons that signal throttling rather than a permission problem
RATE_LIMIT_REASONS = frozenset(
    {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded", "dailyLimitExceeded"}
)


class RemoteMailboxAPI(Protocol):
    """Typed remote operations consumed by the sync engine."""

    async def list_messages(
        self,
        user_id: str,
        page_token: Optional[str] = None,
        query: Optional[str] = None,
        max_results: int = DEFAULT_PAGE_SIZE,
    ) -> MessageListPage: ...

    async def get_message_metadata(self, user_id: str, message_id: str) -> MessageMetadata: ...

    async def list_history(
        self, user_id: str, start_history_id: str, page_token: Optional[str] = None
    ) -> HistoryPage: ...

    async def get_profile(self, user_id: str) -> AccountProfile: ...


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


def _google_error(response: httpx.Response) -> Dict[str, Any]:
    """Return the ``error`` object of a Google API error body, if any.

    Shape: ``{"error": {"code": 404, "message": "...", "status": "...",
    "errors": [{"reason": "..."}]}}``
    """
    try:
        payload = response.json()
    except ValueError:
        return {}
    if not isinstance(payload, dict):
        return {}
    nested = payload.get("error")
    return nested if isinstance(nested, dict) else {}


def _error_reason(error: Dict[str, Any]) -> Optional[str]:
    for item in error.get("errors") or []:
        if isinstance(item, dict) and item.get("reason"):
            return str(item["reason"])
    return None


def _parse_retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        # HTTP-date form is not used by Gmail; fall back to backoff
        return None


def _mentions_history_id(message: str) -> bool:
    lowered = message.lower()
    return "starthistoryid" in lowered or "history id" in lowered or "historyid" in lowered


def classify_response_error(
    response: httpx.Response,
    *,
    operation: str,
    start_history_id: Optional[str] = None,
    message_id: Optional[str] = None,
) -> MailSyncError:
    """Map a non-success Gmail response to the sync exception taxonomy.

    ``start_history_id`` is set only for ``history.list`` calls, where 404,
    410, and a 400 whose message names the start history id all mean the
    cursor has expired.
    """
    status = response.status_code
    error = _google_error(response)
    reason = _error_reason(error)
    message = str(error.get("message") or response.reason_phrase or "")
    summary = f"{operation} failed with HTTP {status}"
    if reason:
        summary = f"{summary} ({reason})"
    if message:
        summary = f"{summary}: {message}"

    if start_history_id is not None:
        if status in (404, 410) or (status == 400 and _mentions_history_id(message)):
            return HistoryExpiredError(start_history_id, message)

    if status == 429:
        return RateLimitedError(summary, retry_after=_parse_retry_after(response))
    if status == 403 and reason in RATE_LIMIT_REASONS:
        return RateLimitedError(summary, retry_after=_parse_retry_after(response))
    if status in (401, 403):
        return AuthError(summary)
    if status == 404 and message_id is not None:
        return MessageNotFoundError(message_id)
    if status >= 500:
        return TransientNetworkError(summary, status_code=status)
    return RemoteAPIError(summary, status_code=status)


# ---------------------------------------------------------------------------
# Gmail REST client
# ---------------------------------------------------------------------------


class GmailMailboxClient:
    """User-bound Gmail REST client over ``httpx.AsyncClient``."""

    def __init__(
        self,
        access_token: str,
        *,
        base_url: str = DEFAULT_API_BASE_URL,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._access_token = access_token
        self._base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _get(
        self,
        path: str,
        params: Any,
        *,
        operation: str,
        start_history_id: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        url = f"{self._base_url}/{path}"
        try:
            response = await self._http.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {self._access_token}"},
            )
        except httpx.TimeoutException as exc:
            raise TransientNetworkError(f"{operation} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"{operation} transport error: {exc}") from exc

        if response.is_error:
            error = classify_response_error(
                response,
                operation=operation,
                start_history_id=start_history_id,
                message_id=message_id,
            )
            logger.debug(f"Gmail {operation} error: {error}")
            raise error

        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteAPIError(
                f"{operation} returned a non-JSON body", status_code=response.status_code
            ) from exc
        if not isinstance(payload, dict):
            raise RemoteAPIError(
                f"{operation} returned an unexpected body", status_code=response.status_code
            )
        return payload

    async def list_messages(
        self,
        page_token: Optional[str] = None,
        query: Optional[str] = None,
        max_results: int = DEFAULT_PAGE_SIZE,
    ) -> MessageListPage:
        params: Dict[str, Any] = {"maxResults": max_results}
        if page_token:
            params["pageToken"] = page_token
        if query:
            params["q"] = query
        data = await self._get("messages", params, operation="messages.list")
        ids = [item["id"] for item in data.get("messages") or [] if item.get("id")]
        return MessageListPage(ids=ids, next_page_token=data.get("nextPageToken"))

    async def get_message_metadata(self, message_id: str) -> MessageMetadata:
        params = [("format", "metadata")]
        params.extend(("metadataHeaders", header) for header in METADATA_HEADERS)
        data = await self._get(
            f"messages/{message_id}",
            params,
            operation="messages.get",
            message_id=message_id,
        )
        return parse_message_metadata(data)

    async def list_history(
        self, start_history_id: str, page_token: Optional[str] = None
    ) -> HistoryPage:
        params: List[Any] = [("startHistoryId", start_history_id)]
        params.extend(("historyTypes", kind) for kind in HISTORY_TYPES)
        if page_token:
            params.append(("pageToken", page_token))
        data = await self._get(
            "history",
            params,
            operation="history.list",
            start_history_id=start_history_id,
        )
        return parse_history_page(data)

    async def get_profile(self) -> AccountProfile:
        data = await self._get("profile", None, operation="users.getProfile")
        history_id = data.get("historyId")
        if history_id is None:
            raise RemoteAPIError("users.getProfile response is missing historyId")
        return AccountProfile(
            history_id=str(history_id), email_address=data.get("emailAddress", "")
        )


def parse_message_metadata(data: Dict[str, Any]) -> MessageMetadata:
    headers: Dict[str, str] = {}
    for header in (data.get("payload") or {}).get("headers") or []:
        name = header.get("name")
        if name:
            headers[name.lower()] = header.get("value", "")
    try:
        internal_date = int(data.get("internalDate") or 0)
    except (TypeError, ValueError):
        internal_date = 0
    return MessageMetadata(
        id=data["id"],
        thread_id=data.get("threadId", ""),
        snippet=data.get("snippet", ""),
        internal_date=internal_date,
        subject=headers.get("subject", ""),
        sender=headers.get("from", ""),
    )


def parse_history_page(data: Dict[str, Any]) -> HistoryPage:
    added: Dict[str, None] = {}
    deleted: Dict[str, None] = {}
    for record in data.get("history") or []:
        for entry in record.get("messagesAdded") or []:
            message_id = (entry.get("message") or {}).get("id")
            if message_id:
                added[message_id] = None
        for entry in record.get("messagesDeleted") or []:
            message_id = (entry.get("message") or {}).get("id")
            if message_id:
                deleted[message_id] = None
    history_id = data.get("historyId")
    return HistoryPage(
        added_ids=list(added),
        deleted_ids=list(deleted),
        next_page_token=data.get("nextPageToken"),
        history_id=str(history_id) if history_id is not None else None,
    )


# ---------------------------------------------------------------------------
# Multi-user gateway
# ---------------------------------------------------------------------------


class RemoteMailboxGateway:
    """``RemoteMailboxAPI`` that resolves a user-bound client per call.

    Clients are cached per user until :meth:`forget` or :meth:`aclose`.
    """

    def __init__(self, credentials: "CredentialProvider") -> None:
        self._credentials = credentials
        self._clients: Dict[str, GmailMailboxClient] = {}

    async def _client(self, user_id: str) -> GmailMailboxClient:
        client = self._clients.get(user_id)
        if client is None:
            client = await self._credentials.get_authenticated_client(user_id)
            self._clients[user_id] = client
        return client

    async def forget(self, user_id: str) -> None:
        client = self._clients.pop(user_id, None)
        if client is not None:
            await client.aclose()

    async def aclose(self) -> None:
        for user_id in list(self._clients):
            await self.forget(user_id)

    async def list_messages(
        self,
        user_id: str,
        page_token: Optional[str] = None,
        query: Optional[str] = None,
        max_results: int = DEFAULT_PAGE_SIZE,
    ) -> MessageListPage:
        client = await self._client(user_id)
        return await self._call(
            user_id, client.list_messages(page_token=page_token, query=query, max_results=max_results)
        )

    async def get_message_metadata(self, user_id: str, message_id: str) -> MessageMetadata:
        client = await self._client(user_id)
        return await self._call(user_id, client.get_message_metadata(message_id))

    async def list_history(
        self, user_id: str, start_history_id: str, page_token: Optional[str] = None
    ) -> HistoryPage:
        client = await self._client(user_id)
        return await self._call(user_id, client.list_history(start_history_id, page_token))

    async def get_profile(self, user_id: str) -> AccountProfile:
        client = await self._client(user_id)
        return await self._call(user_id, client.get_profile())

    async def _call(self, user_id: str, awaitable: Any) -> Any:
        try:
            return await awaitable
        except AuthError:
            # Drop the cached client so a refreshed credential is picked up
            await self.forget(user_id)
            raise


__all__ = [
    "DEFAULT_API_BASE_URL",
    "GmailMailboxClient",
    "RemoteMailboxAPI",
    "RemoteMailboxGateway",
    "classify_response_error",
    "parse_history_page",
    "parse_message_metadata",
]
