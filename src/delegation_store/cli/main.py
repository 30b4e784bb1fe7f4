"""
Delegation Store CLI

Operational commands for a deployed store:
- init: Create collections and indexes
- purge: Run one expiry pass
- list: List delegation ids with a live credential
- show: Show credential metadata for a delegation id
- health: Check the backend
"""

import asyncio
import json
import logging
import sys
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import click
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from delegation_store.exceptions import (
    DelegationNotFoundError,
    DelegationStoreError,
    StoreUnavailableError,
)
from delegation_store.providers import create_store, list_backends
from delegation_store.storage import AbstractDelegationStore, StoreConfig

console = Console()


def _format_datetime(dt: Optional[datetime]) -> str:
    """Format a datetime for display, handling None."""
    if dt is None:
        return "N/A"
    return dt.strftime("%Y-%m-%d %H:%M:%S %Z")


def _output_json(data: object) -> None:
    """Print data as JSON to stdout."""
    click.echo(json.dumps(data, indent=2, default=str))


def _run(config: StoreConfig, action: Callable[[AbstractDelegationStore], Awaitable[Any]]) -> Any:
    """Connect a store, run ``action`` against it and disconnect."""

    async def _main() -> Any:
        store = create_store(config)
        async with store:
            return await action(store)

    try:
        return asyncio.run(_main())
    except DelegationNotFoundError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)
    except DelegationStoreError as e:
        console.print(f"[bold red]Store error:[/bold red] {escape(str(e))}")
        sys.exit(2)


@click.group()
@click.option("--backend", type=click.Choice(list_backends()), default=None,
              help="Storage backend (default: DELEGATION_STORE_BACKEND or memory).")
@click.option("--url", default=None, help="Connection string for the backend.")
@click.option("--log-level", default="WARNING",
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
              help="Logging level.")
@click.pass_context
def cli(ctx: click.Context, backend: Optional[str], url: Optional[str], log_level: str):
    """Manage the X.509 proxy delegation store."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = StoreConfig.from_env()
    overrides = {k: v for k, v in {"backend": backend, "url": url}.items() if v is not None}
    ctx.obj = config.model_copy(update=overrides)


@cli.command()
@click.pass_obj
def init(config: StoreConfig):
    """Create collections and indexes if they are missing."""
    _run(config, lambda store: store.initialize_schema())
    console.print(f"[green]Schema ready[/green] on {config.backend} backend")


@cli.command()
@click.pass_obj
def purge(config: StoreConfig):
    """Remove credentials past their expiry grace."""
    removed = _run(config, lambda store: store.purge_expired())
    console.print(f"Purged {removed} expired credential(s)")


@cli.command("list")
@click.option("--json", "json_flag", is_flag=True, help="Output as JSON.")
@click.pass_obj
def list_delegations(config: StoreConfig, json_flag: bool):
    """List delegation ids that hold a live credential."""
    ids = _run(config, lambda store: store.list_delegations())
    if json_flag:
        _output_json(ids)
        return

    table = Table(box=box.ROUNDED)
    table.add_column("Delegation ID", style="cyan", no_wrap=True)
    for delegation_id in ids:
        table.add_row(delegation_id)
    console.print(table)
    console.print(f"\n  Total: {len(ids)}\n")


@cli.command()
@click.argument("delegation_id")
@click.option("--json", "json_flag", is_flag=True, help="Output as JSON.")
@click.pass_obj
def show(config: StoreConfig, delegation_id: str, json_flag: bool):
    """Show credential metadata for DELEGATION_ID.

    The certificate chain itself is never printed.
    """
    credential = _run(config, lambda store: store.get_credential(delegation_id))
    data = {
        "delegation_id": credential.delegation_id,
        "user_dn": credential.user_dn,
        "not_after": credential.not_after.isoformat(),
    }
    if json_flag:
        _output_json(data)
        return

    table = Table(box=box.ROUNDED, show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Delegation ID", credential.delegation_id)
    table.add_row("User DN", credential.user_dn or "-")
    table.add_row("Not after", _format_datetime(credential.not_after))
    console.print(table)


@cli.command()
@click.pass_obj
def health(config: StoreConfig):
    """Exit with status 0 when the backend is healthy."""
    async def _check() -> bool:
        store = create_store(config)
        try:
            await store.connect()
        except StoreUnavailableError:
            await store.disconnect()
            return False
        try:
            return await store.health_check()
        finally:
            await store.disconnect()

    healthy = asyncio.run(_check())
    if healthy:
        console.print(f"[green]✓[/green] {config.backend} backend healthy")
        return
    console.print(f"[red]✗[/red] {config.backend} backend unhealthy")
    sys.exit(1)


def main():
    cli()


if __name__ == "__main__":
    main()
