"""Typer CLI for the IMAP calendar-event ingest worker."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from imap_event_ingest.config.settings import AppSettings, load_settings
from imap_event_ingest.extract.base import ExtractionError, ExtractionRequest
from imap_event_ingest.extract.http import HttpExtractor
from imap_event_ingest.models.provider import Provider
from imap_event_ingest.models.types import EventStatus
from imap_event_ingest.pipeline.worker import build_extractor, run_worker
from imap_event_ingest.storage.events import EventStore
from imap_event_ingest.storage.providers import ProviderStore
from imap_event_ingest.storage.state_db import StateDb
from imap_event_ingest.utils.email import MessageParseError, parse_message
from imap_event_ingest.utils.logging import configure_logging

logger = logging.getLogger(__name__)

app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help="Watch provider mailboxes over IMAP and ingest calendar events into sqlite.",
)
providers_app = typer.Typer(no_args_is_help=True, help="Inspect and seed providers.")
app.add_typer(providers_app, name="providers")

console = Console()

_ENV_FILE_OPTION = typer.Option(
    default=None,
    exists=True,
    dir_okay=False,
    help="Optional path to a .env file (in addition to environment variables).",
)


def load_app_settings(*, env_file: Path | None) -> AppSettings:
    """Load application settings, exiting with code 2 on validation errors.

    Args:
        env_file: Optional path to a .env file to load in addition to environment variables.

    Returns:
        Validated application settings.

    Raises:
        typer.Exit: If the settings are invalid.
    """
    try:
        return load_settings(env_file=env_file)
    except ValidationError as exc:
        typer.echo(f"Invalid configuration:\n{exc}", err=True)
        raise typer.Exit(code=2) from None


def open_db(settings: AppSettings) -> StateDb:
    """Open the state database, creating its directory and schema if needed."""
    settings.storage.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    db = StateDb(sqlite_path=settings.storage.sqlite_path)
    db.init_schema()
    return db


@app.command("run")
def run_cmd(
    *,
    env_file: Path | None = _ENV_FILE_OPTION,
) -> None:
    """Run the worker until SIGINT/SIGTERM.

    Args:
        env_file: Optional path to a .env file to load configuration from.
    """
    settings = load_app_settings(env_file=env_file)
    open_db(settings).close()
    configure_logging(settings=settings.logging, sqlite_path=settings.storage.sqlite_path)

    if not settings.worker.use_fake_extractor and settings.extractor.endpoint is None:
        typer.echo(
            "Missing extractor settings. Set INGEST_EXTRACTOR__ENDPOINT "
            "or INGEST_WORKER__USE_FAKE_EXTRACTOR=true.",
            err=True,
        )
        raise typer.Exit(code=2)

    try:
        report = asyncio.run(run_worker(settings, console=console))
    except KeyboardInterrupt:
        raise typer.Exit(code=130) from None

    console.print(
        f"[green]✔[/green] Worker stopped (started={len(report.started)}, "
        f"crashed={len(report.crashed)}, misconfigured={len(report.misconfigured)}, "
        f"over_limit={len(report.over_limit)})",
    )
    raise typer.Exit(code=1 if report.crashed else 0)


@providers_app.command("list")
def providers_list_cmd(
    *,
    env_file: Path | None = _ENV_FILE_OPTION,
) -> None:
    """List providers with their status and cursor.

    Args:
        env_file: Optional path to a .env file to load configuration from.
    """
    settings = load_app_settings(env_file=env_file)
    db = open_db(settings)
    try:
        store = ProviderStore(db)
        table = Table(title="Providers")
        for column in ("id", "name", "status", "trusted", "host", "mailbox", "cursor"):
            table.add_column(column)
        for provider in store.list_all():
            imap = provider.config.imap
            cursor = store.get_cursor(provider.id)
            table.add_row(
                provider.id,
                provider.name,
                provider.status.value,
                "yes" if provider.trusted else "no",
                imap.host if imap else "[red]missing[/red]",
                provider.mailbox,
                "-" if cursor is None else str(cursor),
            )
    finally:
        db.close()
    console.print(table)


def _read_provider_payloads(path: Path) -> list[dict[str, Any]]:
    """Read one provider object or a list of them from a JSON file."""
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list) and all(isinstance(item, dict) for item in data):
        return data
    raise ValueError("Provider file must hold a JSON object or an array of objects")


@providers_app.command("import")
def providers_import_cmd(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON file of providers."),
    *,
    env_file: Path | None = _ENV_FILE_OPTION,
) -> None:
    """Insert or update providers from a JSON file; stored cursors are kept.

    Args:
        path: JSON file holding a provider object or an array of them.
        env_file: Optional path to a .env file to load configuration from.
    """
    settings = load_app_settings(env_file=env_file)
    try:
        providers = [Provider.model_validate(item) for item in _read_provider_payloads(path)]
    except (ValueError, ValidationError) as exc:
        typer.echo(f"Invalid provider file: {exc}", err=True)
        raise typer.Exit(code=2) from None

    db = open_db(settings)
    try:
        store = ProviderStore(db)
        for provider in providers:
            store.upsert(provider)
    finally:
        db.close()
    typer.echo(f"Imported {len(providers)} provider(s)")


@app.command("events")
def events_cmd(
    *,
    env_file: Path | None = _ENV_FILE_OPTION,
    provider_id: str | None = typer.Option(default=None, help="Only events of this provider."),
    status: EventStatus | None = typer.Option(default=None, help="Only events with this status."),
    limit: int = typer.Option(default=20, min=1, help="Maximum number of rows."),
) -> None:
    """Show stored events and status counts.

    Args:
        env_file: Optional path to a .env file to load configuration from.
        provider_id: Optional provider filter.
        status: Optional status filter.
        limit: Maximum number of rows.
    """
    settings = load_app_settings(env_file=env_file)
    db = open_db(settings)
    try:
        store = EventStore(db)
        table = Table(title="Events")
        for column in ("start", "title", "provider", "status", "external id", "slug"):
            table.add_column(column)
        for event in store.iter_events(provider_id=provider_id, status=status, limit=limit):
            table.add_row(
                event.start_at.isoformat(),
                event.title,
                event.provider_id,
                event.status.value,
                event.external_id,
                event.slug,
            )
        counts = store.counts_by_status(provider_id=provider_id)
    finally:
        db.close()

    console.print(table)
    for event_status, count in sorted(counts.items(), key=lambda kv: kv[0].value):
        typer.echo(f"{event_status.value}: {count}")


@app.command("try-extract")
def try_extract_cmd(
    eml_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Raw .eml file."),
    *,
    provider_id: str = typer.Option(default="local", help="Provider id passed to the extractor."),
    env_file: Path | None = _ENV_FILE_OPTION,
) -> None:
    """Run the configured extractor on one .eml file and print the candidate.

    Args:
        eml_path: Path to a raw RFC822 message.
        provider_id: Provider id passed to the extractor.
        env_file: Optional path to a .env file to load configuration from.
    """
    settings = load_app_settings(env_file=env_file)
    configure_logging(settings=settings.logging)

    try:
        parsed = parse_message(eml_path.read_bytes())
        extractor = build_extractor(settings)
    except (MessageParseError, ValueError) as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2) from None

    request = ExtractionRequest(
        provider_id=provider_id,
        text=parsed.readable_text,
        html=parsed.html,
        message_id=parsed.message_id,
        subject=parsed.subject,
    )

    async def _extract() -> Any:
        try:
            return await extractor.extract(request)
        finally:
            if isinstance(extractor, HttpExtractor):
                await extractor.aclose()

    try:
        candidate = asyncio.run(_extract())
    except ExtractionError as exc:
        logger.error("Extraction failed: %s", exc)
        typer.echo(f"Extraction failed: {exc}", err=True)
        raise typer.Exit(code=1) from None

    if candidate is None:
        typer.echo("Not an event.")
        return
    console.print_json(candidate.model_dump_json())
