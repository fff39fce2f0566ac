"""Shared test configuration."""

from __future__ import annotations

from typing import Dict, Optional

import pytest

from mailmirror.configuration.settings import SecretStore


class InMemorySecretStore(SecretStore):
    def __init__(self) -> None:
        super().__init__(service_name="test", keyring_module=None)
        self.storage: Dict[str, str] = {}

    def set_secret(self, key: str, value: str) -> None:  # type: ignore[override]
        self.storage[key] = value

    def get_secret(self, key: str) -> Optional[str]:  # type: ignore[override]
        return self.storage.get(key)

    def delete_secret(self, key: str) -> None:  # type: ignore[override]
        self.storage.pop(key, None)


@pytest.fixture
def secret_store() -> InMemorySecretStore:
    return InMemorySecretStore()


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer environment overrides out of the tests."""
    for name in (
        "MAILMIRROR_POLL_ENABLED",
        "MAILMIRROR_POLL_INTERVAL_SECONDS",
        "MAILMIRROR_QUERY",
        "MAILMIRROR_LEGACY_MAX_PAGES",
        "MAILMIRROR_DATABASE_PATH",
    ):
        monkeypatch.delenv(name, raising=False)
