"""calsync command line: schema bootstrap, one-off passes, conflict review, health, polling."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

import click

from calsync import __version__
from calsync.config import CalsyncConfig, ConfigError, default_config_path, load_config
from calsync.core.logging import configure_logging
from calsync.core.metrics import init_metrics
from calsync.core.telemetry import init_telemetry
from calsync.db import Database
from calsync.errors import CalendarSyncError
from calsync.models import (
    CalendarHealth,
    ConflictRecord,
    ConflictResolution,
    HealthStatus,
    SyncResult,
    SyncStatus,
)
from calsync.orchestrator import SyncDirection, SyncOrchestrator
from calsync.poller import SyncPoller
from calsync.providers import ProviderRegistry
from calsync.stores.base import CalendarStore
from calsync.stores.postgres import PostgresCalendarStore, PostgresCredentialStore

logger = logging.getLogger(__name__)

_RESOLUTIONS = {
    "local": ConflictResolution.LOCAL_WINS,
    "remote": ConflictResolution.REMOTE_WINS,
}

_direction_option = click.option(
    "--direction",
    type=click.Choice([str(d) for d in SyncDirection]),
    default=None,
    help="Override sync.direction for this run",
)


@dataclass
class Runtime:
    """Everything a command needs, wired from one configuration."""

    config: CalsyncConfig
    calendar_store: CalendarStore
    orchestrator: SyncOrchestrator


@asynccontextmanager
async def open_runtime(config: CalsyncConfig) -> AsyncIterator[Runtime]:
    """Connect to PostgreSQL and build the orchestrator; tear both down on exit."""
    db = Database.from_env(config.database.name, schema=config.database.schema)
    pool = await db.connect()
    providers = ProviderRegistry.from_settings(config.provider_settings())
    try:
        calendar_store = PostgresCalendarStore(pool)
        orchestrator = SyncOrchestrator.create(
            calendar_store,
            PostgresCredentialStore(pool),
            providers,
            settings=config.sync_settings(),
            retry_policy=config.retry_policy(),
            breakers=config.breaker_registry(),
            safety_margin=config.safety_margin(),
        )
        yield Runtime(config=config, calendar_store=calendar_store, orchestrator=orchestrator)
    finally:
        await providers.shutdown()
        await db.close()


def _install_signal_handlers(cancel: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _signal_handler() -> None:
        click.echo("\nCancelling...", err=True)
        cancel.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except (NotImplementedError, RuntimeError):
            # Not the main thread, or a platform without loop signal support.
            logger.debug("Signal handler for %s not installed", sig)


def _direction(value: str | None) -> SyncDirection | None:
    return SyncDirection(value) if value else None


def _echo_result(result: SyncResult) -> None:
    click.echo(json.dumps(result.summary(), sort_keys=True))
    for error in result.errors:
        target = f" event={error.event_id}" if error.event_id else ""
        click.echo(
            f"  error: {error.operation}{target} {error.error_class}: {error.message}", err=True
        )


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to calsync.toml (default: $CALSYNC_CONFIG or ./calsync.toml)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """calsync: two-way calendar synchronization engine."""
    path = config_path or default_config_path()
    try:
        if config_path is None and not path.exists():
            config = CalsyncConfig()
        else:
            config = load_config(path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(config.logging.level, config.logging.format, log_root)
    init_telemetry("calsync")
    init_metrics("calsync")
    ctx.obj = config


@cli.command("init-db")
@click.pass_obj
def init_db(config: CalsyncConfig) -> None:
    """Create the database and the calsync tables if missing."""

    async def _run() -> None:
        db = Database.from_env(config.database.name, schema=config.database.schema)
        await db.provision()
        await db.connect()
        try:
            await db.ensure_schema()
        finally:
            await db.close()

    asyncio.run(_run())
    click.echo(f"Database ready: {config.database.name}")


@cli.command()
@click.argument("calendar_id")
@_direction_option
@click.pass_obj
def sync(config: CalsyncConfig, calendar_id: str, direction: str | None) -> None:
    """Run one sync pass for CALENDAR_ID."""

    async def _run() -> SyncResult:
        cancel = asyncio.Event()
        _install_signal_handlers(cancel)
        async with open_runtime(config) as runtime:
            return await runtime.orchestrator.sync_calendar(
                calendar_id, cancel=cancel, direction=_direction(direction)
            )

    try:
        result = asyncio.run(_run())
    except CalendarSyncError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_result(result)
    if result.status is SyncStatus.FAILED:
        sys.exit(1)


@cli.command("sync-all")
@click.argument("user_id")
@_direction_option
@click.pass_obj
def sync_all(config: CalsyncConfig, user_id: str, direction: str | None) -> None:
    """Sync every enabled calendar of USER_ID."""

    async def _run() -> list[SyncResult]:
        cancel = asyncio.Event()
        _install_signal_handlers(cancel)
        async with open_runtime(config) as runtime:
            return await runtime.orchestrator.sync_all_calendars(
                user_id, cancel=cancel, direction=_direction(direction)
            )

    results = asyncio.run(_run())
    if not results:
        click.echo(f"No calendars synced for user {user_id}")
        return
    for result in results:
        _echo_result(result)
    if any(result.status is SyncStatus.FAILED for result in results):
        sys.exit(1)


@cli.command()
@click.argument("calendar_id")
@click.option("--all", "include_resolved", is_flag=True, help="Include resolved conflicts")
@click.pass_obj
def conflicts(config: CalsyncConfig, calendar_id: str, include_resolved: bool) -> None:
    """List conflicts recorded for CALENDAR_ID."""

    async def _run() -> list[ConflictRecord]:
        async with open_runtime(config) as runtime:
            return await runtime.calendar_store.list_conflicts(
                calendar_id, unresolved_only=not include_resolved
            )

    records = asyncio.run(_run())
    if not records:
        click.echo("No conflicts.")
        return

    click.echo(f"{'Conflict':<34} {'Event':<34} {'Kind':<34} {'Resolution'}")
    click.echo("-" * 120)
    for record in records:
        click.echo(
            f"{record.id:<34} {record.event_id:<34} {record.kind!s:<34} {record.resolution}"
        )


@cli.command()
@click.argument("conflict_id")
@click.option(
    "--resolution",
    type=click.Choice(sorted(_RESOLUTIONS)),
    required=True,
    help="Which side wins",
)
@click.pass_obj
def resolve(config: CalsyncConfig, conflict_id: str, resolution: str) -> None:
    """Resolve CONFLICT_ID in favour of the local or remote version."""

    async def _run() -> ConflictRecord:
        async with open_runtime(config) as runtime:
            return await runtime.orchestrator.resolve_conflict(
                conflict_id, _RESOLUTIONS[resolution]
            )

    try:
        record = asyncio.run(_run())
    except CalendarSyncError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Conflict {record.id} {record.resolution}")


@cli.command()
@click.argument("calendar_id")
@click.pass_obj
def health(config: CalsyncConfig, calendar_id: str) -> None:
    """Show the integration health of CALENDAR_ID; exits 1 when unhealthy."""

    async def _run() -> CalendarHealth:
        async with open_runtime(config) as runtime:
            return await runtime.orchestrator.calendar_health(
                calendar_id, interval=timedelta(minutes=config.sync.interval_minutes)
            )

    try:
        report = asyncio.run(_run())
    except CalendarSyncError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(report.summary(), sort_keys=True))
    for error in report.recent_errors:
        click.echo(f"  error: {error.operation} {error.error_class}: {error.message}", err=True)
    if report.status is HealthStatus.UNHEALTHY:
        sys.exit(1)


@cli.command()
@click.option(
    "--user", "users", multiple=True, help="User to poll (repeatable; default: sync.users)"
)
@click.option("--interval", type=float, default=None, help="Minutes between rounds")
@click.option("--once", is_flag=True, help="Run a single round and exit")
@click.pass_obj
def poll(config: CalsyncConfig, users: tuple[str, ...], interval: float | None, once: bool) -> None:
    """Sync every configured user's calendars periodically until interrupted."""
    user_ids = list(users) or config.sync.users
    if not user_ids:
        raise click.UsageError("No users to poll; pass --user or set sync.users")

    async def _run() -> None:
        async with open_runtime(config) as runtime:
            poller = SyncPoller(
                runtime.orchestrator,
                user_ids,
                interval_minutes=interval or config.sync.interval_minutes,
            )
            if once:
                results = await poller.run_once()
                for result in results:
                    _echo_result(result)
                return

            stop = asyncio.Event()
            _install_signal_handlers(stop)
            poller.start()
            await stop.wait()
            click.echo("Shutting down...")
            await poller.shutdown()

    asyncio.run(_run())
