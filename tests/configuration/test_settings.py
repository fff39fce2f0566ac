"""Tests for mailmirror configuration settings."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import Mock

import pytest
from keyring.errors import PasswordDeleteError

from mailmirror.configuration.settings import (
    SecretStore,
    Settings,
    SyncSettings,
    bootstrap_settings,
    load_settings,
    save_settings,
    secret_key,
)


def test_bootstrap_creates_default_config(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    settings = bootstrap_settings(
        path=config_path,
        overrides={"workspace_path": str(tmp_path / "ws"), "storage": {"database_path": str(tmp_path / "ws" / "m.db")}},
    )

    assert config_path.exists()
    data = json.loads(config_path.read_text())
    assert data["sync"]["poll_interval_seconds"] == 60
    assert data["sync"]["legacy_max_pages"] == 10
    assert settings.workspace_path == tmp_path / "ws"
    assert (tmp_path / "ws").is_dir()


def test_defaults_match_sync_constants() -> None:
    sync = SyncSettings()

    assert sync.poll_enabled is True
    assert sync.page_size == 100
    assert sync.inter_page_delay_seconds == 1.0
    assert sync.embedding_batch_size == 10
    assert sync.embedding_dimension == 1536
    assert sync.api_base_url == "https://gmail.googleapis.com/gmail/v1/users/me"


def test_load_settings_round_trip(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    settings = Settings.model_validate(
        {
            "sync": {"query": "in:inbox", "poll_interval_seconds": 15},
            "storage": {"database_path": str(tmp_path / "mailbox.db")},
            "workspace_path": str(tmp_path),
        }
    )
    save_settings(settings, config_path)

    loaded = load_settings(config_path)
    assert loaded.sync.query == "in:inbox"
    assert loaded.sync.poll_interval_seconds == 15
    assert loaded.storage.database_path == tmp_path / "mailbox.db"


def test_load_settings_errors(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_settings(tmp_path / "missing.json")

    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"sync": {"page_size": 0}}))
    with pytest.raises(ValueError):
        load_settings(bad)


def test_api_base_url_is_validated() -> None:
    assert SyncSettings(api_base_url="http://localhost:8080/").api_base_url == "http://localhost:8080"
    with pytest.raises(ValueError):
        SyncSettings(api_base_url="gmail.googleapis.com")


def test_env_overrides_apply_without_being_saved(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.json"
    monkeypatch.setenv("MAILMIRROR_QUERY", "label:work")
    monkeypatch.setenv("MAILMIRROR_LEGACY_MAX_PAGES", "3")
    monkeypatch.setenv("MAILMIRROR_DATABASE_PATH", str(tmp_path / "env.db"))

    settings = bootstrap_settings(path=config_path, overrides={"workspace_path": str(tmp_path)})

    assert settings.sync.query == "label:work"
    assert settings.sync.legacy_max_pages == 3
    assert settings.storage.database_path == tmp_path / "env.db"
    assert json.loads(config_path.read_text())["sync"]["query"] is None


def test_poll_interval_env_can_disable_polling(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MAILMIRROR_POLL_INTERVAL_SECONDS", "disabled")
    overrides = {"workspace_path": str(tmp_path), "storage": {"database_path": str(tmp_path / "m.db")}}

    settings = bootstrap_settings(path=tmp_path / "config.json", overrides=overrides)
    assert settings.sync.poll_enabled is False

    monkeypatch.setenv("MAILMIRROR_POLL_INTERVAL_SECONDS", "5")
    monkeypatch.setenv("MAILMIRROR_POLL_ENABLED", "true")
    settings = bootstrap_settings(path=tmp_path / "config.json", overrides=overrides)
    assert settings.sync.poll_enabled is True
    assert settings.sync.poll_interval_seconds == 5


def test_secret_store_uses_keyring_module() -> None:
    backend = Mock()
    backend.get_password.return_value = "tok"
    backend.delete_password.side_effect = PasswordDeleteError("missing")
    store = SecretStore(service_name="svc", keyring_module=backend)

    store.set_secret(secret_key("gmail", "u1"), "tok")
    assert store.get_secret("gmail:u1") == "tok"
    store.delete_secret("gmail:u1")

    backend.set_password.assert_called_once_with("svc", "gmail:u1", "tok")
    backend.delete_password.assert_called_once_with("svc", "gmail:u1")


def test_secret_store_without_backend() -> None:
    store = SecretStore(keyring_module=None)

    assert store.get_secret("gmail:u1") is None
    with pytest.raises(RuntimeError):
        store.set_secret("gmail:u1", "tok")
