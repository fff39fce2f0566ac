"""Tests for the keyring-backed credential provider."""

from __future__ import annotations

from pathlib import Path

import pytest

from mailmirror.sync.credentials import KeyringCredentialProvider
from mailmirror.sync.exceptions import AuthError
from mailmirror.sync.remote import GmailMailboxClient


@pytest.fixture
def provider(secret_store, tmp_path: Path) -> KeyringCredentialProvider:
    return KeyringCredentialProvider(
        secret_store=secret_store,
        index_path=tmp_path / "workspace" / "users.json",
        api_base_url="https://gmail.test/v1/users/me",
    )


def test_add_user_stores_token_and_indexes_user(provider, secret_store, tmp_path):
    """Tokens go to the secret store and user ids to the JSON index."""
    provider.add_user("u2", "tok-2")
    provider.add_user("u1", "tok-1")
    provider.add_user("u1", "tok-1b")

    assert provider.list_user_ids() == ["u1", "u2"]
    assert secret_store.storage["gmail:u1"] == "tok-1b"
    assert "tok" not in (tmp_path / "workspace" / "users.json").read_text()


def test_add_user_rejects_empty_token(provider):
    with pytest.raises(ValueError):
        provider.add_user("u1", "")


def test_remove_user(provider, secret_store):
    provider.add_user("u1", "tok-1")

    assert provider.remove_user("u1") is True
    assert provider.list_user_ids() == []
    assert "gmail:u1" not in secret_store.storage
    assert provider.remove_user("u1") is False


def test_corrupt_index_is_ignored(provider, tmp_path):
    index = tmp_path / "workspace" / "users.json"
    index.parent.mkdir(parents=True)
    index.write_text("{not json")

    assert provider.list_user_ids() == []


@pytest.mark.asyncio
async def test_authenticated_client_requires_token(provider):
    with pytest.raises(AuthError):
        await provider.get_authenticated_client("nobody")

    provider.add_user("u1", "tok-1")
    client = await provider.get_authenticated_client("u1")
    try:
        assert isinstance(client, GmailMailboxClient)
    finally:
        await client.aclose()
