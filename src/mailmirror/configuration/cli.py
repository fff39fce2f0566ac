"""CLI commands for managing mailmirror settings."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer

from mailmirror.configuration.settings import (
    DEFAULT_CONFIG_PATH,
    Settings,
    bootstrap_settings,
    load_settings,
    save_settings,
)


config_app = typer.Typer(help="Manage mailmirror configuration")


@config_app.command("init")
def init_config(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to config file"),
    workspace_path: Optional[Path] = typer.Option(None, help="Override workspace directory"),
    database_path: Optional[Path] = typer.Option(None, help="Override SQLite database path"),
    poll_interval: Optional[int] = typer.Option(None, help="Override poll interval in seconds"),
    query: Optional[str] = typer.Option(None, help="Remote search filter for list calls"),
) -> None:
    """Initialize the mailmirror settings file."""

    overrides: dict = {}
    if workspace_path:
        overrides["workspace_path"] = str(workspace_path)
    if database_path:
        overrides.setdefault("storage", {})["database_path"] = str(database_path)
    if poll_interval is not None:
        overrides.setdefault("sync", {})["poll_interval_seconds"] = poll_interval
    if query:
        overrides.setdefault("sync", {})["query"] = query

    settings = bootstrap_settings(path=config_path, overrides=overrides)
    if overrides:
        save_settings(settings, config_path)
    typer.echo(f"Configuration initialized at {config_path}")
    typer.echo(_summarize_settings(settings))


@config_app.command("show")
def show_config(config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to config")) -> None:
    """Display the stored configuration."""

    settings = load_settings(config_path)
    typer.echo(_summarize_settings(settings))


@config_app.command("set")
def set_config(
    key: str = typer.Argument(..., help="Configuration key, e.g. sync.poll_interval_seconds"),
    value: str = typer.Argument(..., help="New value"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to config"),
) -> None:
    """Update a configuration value."""

    settings = load_settings(config_path)
    payload = settings.model_dump(mode="python")
    _assign(payload, key.split("."), value)
    try:
        updated = Settings.model_validate(payload)
    except ValueError as exc:
        typer.echo(f"Invalid value for {key}: {exc}", err=True)
        raise typer.Exit(code=1)
    save_settings(updated, config_path)
    typer.echo(f"Updated {key}")


@config_app.command("validate")
def validate_config(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, help="Path to config file"),
) -> None:
    """Validate configuration file for correctness."""

    try:
        settings = load_settings(config_path)
    except (FileNotFoundError, ValueError) as exc:
        typer.echo(f"Configuration invalid: {exc}", err=True)
        raise typer.Exit(code=1)
    polling = "disabled"
    if settings.sync.poll_enabled:
        polling = f"every {settings.sync.poll_interval_seconds}s"
    typer.echo(f"Configuration valid at {config_path}")
    typer.echo(f"   Database: {settings.storage.database_path}")
    typer.echo(f"   Polling: {polling}")


def _summarize_settings(settings: Settings) -> str:
    data = settings.model_dump(mode="json")
    return json.dumps(data, indent=2)


def _assign(payload: dict, keys: list[str], value: str) -> None:
    current = payload
    for key in keys[:-1]:
        current = current.setdefault(key, {})
    current[keys[-1]] = value


__all__ = ["config_app"]
