"""CLI for tasksync: run syncs, inspect connections, serve the API."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click

from tasksync import __version__
from tasksync.config import AppConfig, ConfigError, load_config
from tasksync.core.logging import configure_logging
from tasksync.db import Database, ensure_schema
from tasksync.errors import TaskSyncError
from tasksync.models import SCHEDULING_PROVIDERS, Provider, PushTask
from tasksync.services import SyncServices, open_services

logger = logging.getLogger(__name__)

T = TypeVar("T")

_PROVIDER_CHOICE = click.Choice([p.value for p in Provider], case_sensitive=False)
_SCHEDULING_CHOICE = click.Choice([p.value for p in SCHEDULING_PROVIDERS], case_sensitive=False)


def _run_with_services(config: AppConfig, fn: Callable[[SyncServices], Awaitable[T]]) -> T:
    async def _main() -> T:
        async with open_services(config, init_schema=False) as services:
            return await fn(services)

    try:
        return asyncio.run(_main())
    except TaskSyncError as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to tasksync.toml (defaults to $TASKSYNC_CONFIG or ./tasksync.toml).",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """tasksync: calendar and meeting-provider task synchronization."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    configure_logging(config.logging.level, config.logging.format)
    ctx.obj = config


@cli.command("init-db")
@click.pass_obj
def init_db(config: AppConfig) -> None:
    """Create the connection, task and mapping tables if missing."""

    async def _main() -> None:
        database = Database(config.database)
        pool = await database.connect()
        try:
            await ensure_schema(pool)
        finally:
            await database.close()

    asyncio.run(_main())
    click.echo("Schema ready.")


@cli.command()
@click.option("--user", "user_id", required=True, help="Internal user id.")
@click.option("--provider", type=_SCHEDULING_CHOICE, required=True)
@click.option("--max", "max_count", type=int, default=None, help="Maximum events to reconcile.")
@click.option("--verbose", is_flag=True, help="Print per-event outcomes.")
@click.pass_obj
def sync(
    config: AppConfig, user_id: str, provider: str, max_count: int | None, verbose: bool
) -> None:
    """Reconcile a provider's upcoming bookings into tasks."""
    result = _run_with_services(
        config, lambda services: services.engine.sync_tasks(user_id, provider, max_count)
    )
    _echo_json(result.model_dump(mode="json", exclude=None if verbose else {"outcomes"}))


@cli.command()
@click.option("--user", "user_id", required=True)
@click.option("--provider", type=_PROVIDER_CHOICE, required=True)
@click.option("--show-token", is_flag=True, help="Print the raw access token.")
@click.pass_obj
def token(config: AppConfig, user_id: str, provider: str, show_token: bool) -> None:
    """Obtain a valid access token, refreshing it if needed."""
    access = _run_with_services(
        config, lambda services: services.tokens.get_valid_access_token(user_id, provider)
    )
    _echo_json(
        {
            "provider": access.provider.value,
            "provider_email": access.provider_email,
            "expires_at": access.expires_at,
            "access_token": access.access_token if show_token else "<REDACTED>",
        }
    )


@cli.command()
@click.option("--user", "user_id", required=True)
@click.option("--provider", type=_PROVIDER_CHOICE, required=True)
@click.pass_obj
def status(config: AppConfig, user_id: str, provider: str) -> None:
    """Show the stored connection status."""
    result = _run_with_services(
        config, lambda services: services.tokens.connection_status(user_id, provider)
    )
    _echo_json(result.model_dump(mode="json"))


@cli.command()
@click.option("--user", "user_id", required=True)
@click.option("--task-id", required=True)
@click.option("--title", default="")
@click.option("--due-at", required=True, help="ISO-8601 start time.")
@click.option("--description", default=None)
@click.option("--notes", default=None)
@click.option("--delete", "delete_event", is_flag=True, help="Delete the event instead.")
@click.option("--no-sync", is_flag=True, help="Treat the task as excluded from sync.")
@click.pass_obj
def push(
    config: AppConfig,
    user_id: str,
    task_id: str,
    title: str,
    due_at: str,
    description: str | None,
    notes: str | None,
    delete_event: bool,
    no_sync: bool,
) -> None:
    """Push one task into Google Calendar."""
    task = PushTask(
        id=task_id, title=title, due_at=due_at, description=description, notes=notes
    )
    try:
        result = _run_with_services(
            config,
            lambda services: services.pusher.push_task_event(
                user_id,
                task,
                should_sync=not no_sync,
                action="delete" if delete_event else "upsert",
            ),
        )
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--due-at") from exc
    _echo_json(result.model_dump(mode="json"))


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
@click.pass_obj
def serve(config: AppConfig, host: str, port: int) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from tasksync.api.app import create_app

    click.echo(f"Serving tasksync API on http://{host}:{port}")
    uvicorn.run(create_app(config), host=host, port=port, log_config=None)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
