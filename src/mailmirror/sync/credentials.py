"""Per-user credential resolution.

Access tokens live in the OS keyring under ``gmail:<user_id>``. Keyring
backends cannot enumerate entries, so the set of registered users is kept in
a small JSON index next to the workspace.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List, Protocol

from mailmirror.configuration.settings import GMAIL_SECRET_BACKEND, SecretStore, secret_key

from .exceptions import AuthError
from .remote import DEFAULT_API_BASE_URL, GmailMailboxClient


logger = logging.getLogger(__name__)


class CredentialProvider(Protocol):
    """Resolves authenticated remote clients for users."""

    def list_user_ids(self) -> List[str]: ...

    async def get_authenticated_client(self, user_id: str) -> GmailMailboxClient: ...


class KeyringCredentialProvider:
    """Keyring-backed credential provider with a JSON user index."""

    def __init__(
        self,
        *,
        secret_store: SecretStore,
        index_path: Path,
        api_base_url: str = DEFAULT_API_BASE_URL,
        request_timeout: float = 30.0,
    ) -> None:
        self._secret_store = secret_store
        self._index_path = index_path
        self._api_base_url = api_base_url
        self._request_timeout = request_timeout

    def _load_index(self) -> List[str]:
        if not self._index_path.exists():
            return []
        try:
            payload = json.loads(self._index_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning(f"Credential index at {self._index_path} is corrupt; ignoring it")
            return []
        return [str(user_id) for user_id in payload.get("users", [])]

    def _save_index(self, user_ids: List[str]) -> None:
        self._index_path.parent.mkdir(parents=True, exist_ok=True)
        self._index_path.write_text(
            json.dumps({"users": sorted(set(user_ids))}, indent=2), encoding="utf-8"
        )

    def add_user(self, user_id: str, access_token: str) -> None:
        """Store ``access_token`` for ``user_id`` and register the user."""
        if not access_token:
            raise ValueError("access_token must not be empty")
        self._secret_store.set_secret(secret_key(GMAIL_SECRET_BACKEND, user_id), access_token)
        user_ids = self._load_index()
        if user_id not in user_ids:
            user_ids.append(user_id)
            self._save_index(user_ids)
        logger.info(f"Stored credential for user {user_id}", extra={"user_id": user_id})

    def remove_user(self, user_id: str) -> bool:
        """Forget ``user_id``. Returns False when the user was not registered."""
        user_ids = self._load_index()
        self._secret_store.delete_secret(secret_key(GMAIL_SECRET_BACKEND, user_id))
        if user_id not in user_ids:
            return False
        user_ids.remove(user_id)
        self._save_index(user_ids)
        logger.info(f"Removed credential for user {user_id}", extra={"user_id": user_id})
        return True

    def list_user_ids(self) -> List[str]:
        return self._load_index()

    async def get_authenticated_client(self, user_id: str) -> GmailMailboxClient:
        token = self._secret_store.get_secret(secret_key(GMAIL_SECRET_BACKEND, user_id))
        if not token:
            raise AuthError(f"No stored credential for user {user_id}")
        return GmailMailboxClient(
            token,
            base_url=self._api_base_url,
            timeout=self._request_timeout,
        )


__all__ = ["CredentialProvider", "KeyringCredentialProvider"]
