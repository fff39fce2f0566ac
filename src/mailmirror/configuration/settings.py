"""Typed settings management for the mailmirror workspace.

This module wraps user configuration in Pydantic models so CLI commands and
the sync service can rely on validated settings. It also provides a
keyring-backed secret store for per-user mailbox access tokens, which are
never written to the JSON configuration file.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import keyring
from keyring.errors import PasswordDeleteError
from pydantic import BaseModel, Field, ValidationError, field_validator


DEFAULT_HOME = Path.home() / ".mailmirror"
DEFAULT_CONFIG_PATH = DEFAULT_HOME / "config.json"
DEFAULT_SECRETS_SERVICE = "mailmirror"
DEFAULT_API_BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"
GMAIL_SECRET_BACKEND = "gmail"


class SyncSettings(BaseModel):
    """Synchronization engine tuning."""

    poll_enabled: bool = Field(True, description="Run the periodic poller")
    poll_interval_seconds: int = Field(60, ge=1, description="Seconds between poll ticks")
    query: Optional[str] = Field(default=None, description="Optional remote search filter")
    legacy_max_pages: int = Field(10, ge=0, description="Page bound for legacy list pagination")
    page_size: int = Field(100, ge=1, le=500, description="Messages per list page")
    inter_page_delay_seconds: float = Field(
        1.0, ge=0.0, description="Delay before emitting a continuation page"
    )
    fetch_concurrency: int = Field(10, ge=1, description="Concurrent metadata fetches per page")
    max_retries: int = Field(3, ge=0, description="Retries for transient remote failures")
    rate_limit_max_retries: int = Field(8, ge=0, description="Retries for throttled calls")
    retry_base_delay_seconds: float = Field(1.0, gt=0.0)
    retry_max_delay_seconds: float = Field(60.0, gt=0.0)
    embedding_queue_size: int = Field(100, ge=1, description="Pending embedding batches")
    embedding_batch_size: int = Field(10, ge=1)
    embedding_dimension: int = Field(1536, ge=1)
    request_timeout_seconds: float = Field(30.0, gt=0.0)
    api_base_url: str = Field(DEFAULT_API_BASE_URL, description="Gmail REST base URL")

    @field_validator("api_base_url")
    def _validate_api_base_url(cls, value: str) -> str:
        if not value.startswith("http://") and not value.startswith("https://"):
            raise ValueError("api_base_url must start with http:// or https://")
        return value.rstrip("/")


class StorageSettings(BaseModel):
    """Configuration for local storage."""

    database_path: Path = Field(
        default=DEFAULT_HOME / "workspace" / "mailbox.db",
        description="SQLite database holding mirrored emails and cursors",
    )


class Settings(BaseModel):
    """Root configuration state."""

    sync: SyncSettings = Field(default_factory=SyncSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    workspace_path: Path = Field(default=DEFAULT_HOME / "workspace")


@dataclass
class SecretStore:
    """Keyring abstraction for storing credentials."""

    service_name: str = DEFAULT_SECRETS_SERVICE
    keyring_module: Any = field(default=keyring)

    def set_secret(self, key: str, value: str) -> None:
        if self.keyring_module is None:
            raise RuntimeError("Keyring module not configured")
        self.keyring_module.set_password(self.service_name, key, value)

    def get_secret(self, key: str) -> Optional[str]:
        if self.keyring_module is None:
            return None
        return self.keyring_module.get_password(self.service_name, key)

    def delete_secret(self, key: str) -> None:
        if self.keyring_module is None:
            return
        try:
            self.keyring_module.delete_password(self.service_name, key)
        except PasswordDeleteError:
            return


def load_settings(path: Path = DEFAULT_CONFIG_PATH) -> Settings:
    """Load settings from disk or raise if invalid."""

    if not path.exists():
        raise FileNotFoundError(f"Settings file not found at {path}")
    payload = json.loads(path.read_text())
    try:
        return Settings.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc


def save_settings(settings: Settings, path: Path = DEFAULT_CONFIG_PATH) -> None:
    """Persist settings to disk."""

    payload = settings.model_dump(mode="json")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2))


def bootstrap_settings(
    *,
    path: Path = DEFAULT_CONFIG_PATH,
    overrides: Optional[Dict[str, Any]] = None,
) -> Settings:
    """Create or load settings respecting environment overrides.

    Environment overrides apply to the returned settings only; the file on
    disk keeps the values the user wrote.
    """

    overrides = overrides or {}

    if path.exists():
        settings = load_settings(path)
    else:
        settings = Settings()
        save_settings(settings, path)

    merged = settings.model_dump(mode="python")
    merged = _apply_overrides(merged, overrides)
    merged = _apply_env_overrides(merged)

    resolved = Settings.model_validate(merged)
    _ensure_directories(resolved)
    return resolved


def _apply_overrides(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = base.copy()
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    sync = data.setdefault("sync", {})
    _set_env_override(sync, "poll_enabled", "MAILMIRROR_POLL_ENABLED", cast_bool=True)
    interval = os.getenv("MAILMIRROR_POLL_INTERVAL_SECONDS")
    if interval is not None and interval.strip().lower() == "disabled":
        sync["poll_enabled"] = False
    else:
        _set_env_override(
            sync, "poll_interval_seconds", "MAILMIRROR_POLL_INTERVAL_SECONDS", cast_int=True
        )
    _set_env_override(sync, "query", "MAILMIRROR_QUERY")
    _set_env_override(sync, "legacy_max_pages", "MAILMIRROR_LEGACY_MAX_PAGES", cast_int=True)

    storage = data.setdefault("storage", {})
    _set_env_override(storage, "database_path", "MAILMIRROR_DATABASE_PATH")
    return data


def _set_env_override(
    mapping: Dict[str, Any],
    key: str,
    env_name: str,
    *,
    cast_bool: bool = False,
    cast_int: bool = False,
) -> None:
    raw = os.getenv(env_name)
    if raw is None:
        return
    if cast_bool:
        mapping[key] = raw.lower() in {"1", "true", "yes"}
    elif cast_int:
        mapping[key] = int(raw)
    else:
        mapping[key] = raw


def _ensure_directories(settings: Settings) -> None:
    settings.workspace_path.mkdir(parents=True, exist_ok=True)
    settings.storage.database_path.parent.mkdir(parents=True, exist_ok=True)


def secret_key(backend: str, identifier: str) -> str:
    return f"{backend}:{identifier}"


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "GMAIL_SECRET_BACKEND",
    "SecretStore",
    "Settings",
    "StorageSettings",
    "SyncSettings",
    "bootstrap_settings",
    "load_settings",
    "save_settings",
    "secret_key",
]
