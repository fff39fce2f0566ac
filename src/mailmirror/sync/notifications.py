"""Client notification channel.

Delivery is fire-and-forget: a session that fails to receive a message is
logged and skipped, and a user without sessions simply gets nothing.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Protocol, Sequence
from uuid import uuid4

logger = logging.getLogger(__name__)

SendFn = Callable[[Dict[str, Any]], Awaitable[None]]


class NotificationChannel(ABC):
    """Abstract base class for mailbox-change notification channels."""

    @abstractmethod
    async def notify(self, user_id: str, changed_ids: Sequence[str]) -> None:
        """Tell the user's clients that ``changed_ids`` changed.

        An empty sequence means "there may be new mail".
        """


class SessionRegistry(Protocol):
    def is_connected(self, user_id: str) -> bool: ...


@dataclass
class ClientSession:
    """One connected client.

    Attributes:
        session_id: Unique identifier
        user_id: Owning user
        send: Coroutine delivering a JSON-ready payload to the client
        connected_at: When the session was registered
    """

    user_id: str
    send: SendFn
    session_id: str = field(default_factory=lambda: str(uuid4()))
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ConnectionManager(NotificationChannel):
    """Tracks client sessions per user and pushes change notices to them."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Dict[str, ClientSession]] = {}

    def connect(self, user_id: str, send: SendFn) -> ClientSession:
        session = ClientSession(user_id=user_id, send=send)
        self._sessions.setdefault(user_id, {})[session.session_id] = session
        logger.info(
            f"Client session {session.session_id} connected for user {user_id}",
            extra={"user_id": user_id},
        )
        return session

    def disconnect(self, session: ClientSession) -> None:
        sessions = self._sessions.get(session.user_id)
        if not sessions:
            return
        sessions.pop(session.session_id, None)
        if not sessions:
            del self._sessions[session.user_id]
        logger.info(
            f"Client session {session.session_id} disconnected for user {session.user_id}",
            extra={"user_id": session.user_id},
        )

    def is_connected(self, user_id: str) -> bool:
        return bool(self._sessions.get(user_id))

    def sessions_for(self, user_id: str) -> List[ClientSession]:
        return list(self._sessions.get(user_id, {}).values())

    async def notify(self, user_id: str, changed_ids: Sequence[str]) -> None:
        sessions = self.sessions_for(user_id)
        if not sessions:
            logger.debug(f"No connected sessions for user {user_id}", extra={"user_id": user_id})
            return
        payload = {"type": "new_emails", "email_ids": list(changed_ids)}
        for session in sessions:
            try:
                await session.send(payload)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    f"Failed to notify session {session.session_id} for user {user_id}: {exc}",
                    extra={"user_id": user_id},
                )


__all__ = [
    "ClientSession",
    "ConnectionManager",
    "NotificationChannel",
    "SessionRegistry",
]
