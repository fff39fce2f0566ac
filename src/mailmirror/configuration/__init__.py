"""Configuration loading utilities for mailmirror."""

from .settings import (
    DEFAULT_CONFIG_PATH,
    SecretStore,
    Settings,
    StorageSettings,
    SyncSettings,
    bootstrap_settings,
    load_settings,
    save_settings,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "SecretStore",
    "Settings",
    "StorageSettings",
    "SyncSettings",
    "bootstrap_settings",
    "load_settings",
    "save_settings",
]
