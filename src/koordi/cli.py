"""CLI for koordi: provision storage, reconcile feeds, rebuild travel windows."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable, Coroutine
from pathlib import Path
from typing import Any, TypeVar
from uuid import UUID

import click
from pydantic import BaseModel

from koordi.config import ConfigError, KoordiConfig, load_config
from koordi.core.logging import configure_logging
from koordi.db import Database
from koordi.errors import KoordiError
from koordi.feed import FeedClient, validate_feed
from koordi.migrations import run_migrations
from koordi.models import FeedValidation
from koordi.service import CoordinationService

DEFAULT_CONFIG_DIR = Path(".")

T = TypeVar("T")


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_DIR,
    help="Directory containing koordi.toml",
)
@click.pass_context
def cli(ctx: click.Context, config_dir: Path) -> None:
    """Koordi: keep shared activity calendars, owners and travel time in sync."""
    try:
        config = load_config(config_dir)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=Path(config.logging.log_root) if config.logging.log_root else None,
        name=config.name,
    )
    ctx.obj = config


def _echo_model(model: BaseModel) -> None:
    click.echo(model.model_dump_json(indent=2))


async def _with_service(
    config: KoordiConfig, action: Callable[[CoordinationService], Awaitable[T]]
) -> T:
    db = Database.from_env(config.db_name, schema=config.db_schema)
    pool = await db.connect()
    service = CoordinationService.create(pool, config)
    try:
        return await action(service)
    finally:
        await service.aclose()
        await db.close()


def _run(coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except KoordiError as exc:
        click.echo(f"{exc.code}: {exc.message}", err=True)
        sys.exit(1)


@cli.command("init-db")
@click.pass_obj
def init_db(config: KoordiConfig) -> None:
    """Create the database if needed and migrate it to the latest revision."""

    async def _init() -> None:
        db = Database.from_env(config.db_name, schema=config.db_schema)
        await db.provision()
        await run_migrations(db.url, schema=db.schema)

    _run(_init())
    click.echo(f"Database {config.db_name} is ready")


@cli.command()
@click.option("--calendar", "calendar_id", type=click.UUID, required=True, help="Calendar id")
@click.pass_obj
def reconcile(config: KoordiConfig, calendar_id: UUID) -> None:
    """Reconcile one calendar against its feed."""
    result = _run(_with_service(config, lambda s: s.reconcile_calendar(calendar_id)))
    _echo_model(result)
    if result.errors:
        sys.exit(2)


@cli.command("reconcile-all")
@click.pass_obj
def reconcile_all(config: KoordiConfig) -> None:
    """Reconcile every sync-enabled calendar."""
    summary = _run(_with_service(config, lambda s: s.reconcile_all()))
    _echo_model(summary)
    if summary.failed:
        sys.exit(2)


@cli.command()
@click.option("--event", "event_id", type=click.UUID, required=True, help="Event id")
@click.pass_obj
def regenerate(config: KoordiConfig, event_id: UUID) -> None:
    """Rebuild the travel and early-arrival windows of one event."""
    created = _run(_with_service(config, lambda s: s.regenerate_supplemental(event_id)))
    if not created:
        click.echo(f"Event {event_id} has no supplemental events")
        return
    for item in created:
        click.echo(
            f"{item.kind:<16} {item.start_time.isoformat()}  {item.end_time.isoformat()}  "
            f"{item.title}"
        )


@cli.command("validate-feed")
@click.argument("url")
@click.pass_obj
def validate_feed_cmd(config: KoordiConfig, url: str) -> None:
    """Fetch and parse a feed URL without storing anything."""

    async def _validate() -> FeedValidation:
        client = FeedClient(config.feed)
        try:
            return await validate_feed(client, url, default_timezone=config.sync.default_timezone)
        finally:
            await client.aclose()

    result = _run(_validate())
    _echo_model(result)
    if not result.valid:
        sys.exit(1)
