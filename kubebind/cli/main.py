#!/usr/bin/env python3
"""
Main CLI entry point for kubebind.

Commands:
- run-controller: BoundEndpoint poller plus the Service reconciler
- run-forwarder: per-port listeners tunnelling to the ingress endpoint
- aggregate: offline view of how remote records group into BoundEndpoints
"""

import asyncio
import sys
from pathlib import Path

import click
import orjson
from loguru import logger
from rich.console import Console
from rich.table import Table

from kubebind.bindings.aggregator import aggregate_bound_endpoints
from kubebind.bindings.forwarder import ForwarderReconciler
from kubebind.bindings.identity import hash_uri
from kubebind.bindings.poller import BoundEndpointPoller
from kubebind.bindings.policy import AllowedURLPolicy
from kubebind.bindings.reconciler import BoundEndpointReconciler
from kubebind.bindings.services import COMMON_LABELS
from kubebind.core.config import BindingsSettings
from kubebind.core.errors import KubebindError
from kubebind.core.logging import configure_logging
from kubebind.remote.client import ApiRemoteEndpointSource
from kubebind.remote.models import RemoteEndpoint
from kubebind.store.kubernetes import KubernetesClusterStore, load_kube_config

console = Console()


def _settings(ctx: click.Context) -> BindingsSettings:
    settings = BindingsSettings()
    level = "DEBUG" if ctx.obj.get("verbose") else settings.log_level
    configure_logging(level, debug_scopes=settings.debug_scopes, colorize=sys.stderr.isatty())
    return settings


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx, verbose: bool):
    """
    kubebind: expose remote endpoint records as in-cluster Services.

    Settings are read from KUBEBIND_* environment variables or a .env file.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


@cli.command("run-controller")
@click.pass_context
def run_controller(ctx):
    """Run the BoundEndpoint poller and Service reconciler."""
    settings = _settings(ctx)

    async def _run():
        load_kube_config()
        store = KubernetesClusterStore(settings.namespace, COMMON_LABELS)
        async with ApiRemoteEndpointSource(
            settings.api_url, settings.api_key, timeout=settings.api_timeout
        ) as source:
            poller = BoundEndpointPoller(settings, store, source)
            reconciler = BoundEndpointReconciler(settings, store)
            await reconciler.start()
            poller.start()
            logger.info("Controller running in namespace {}", settings.namespace)
            try:
                await asyncio.Event().wait()
            finally:
                await poller.stop()
                await reconciler.stop()

    asyncio.run(_run())


@cli.command("run-forwarder")
@click.pass_context
def run_forwarder(ctx):
    """Run the bindings forwarder."""
    settings = _settings(ctx)

    async def _run():
        load_kube_config()
        store = KubernetesClusterStore(settings.namespace, COMMON_LABELS)
        forwarder = ForwarderReconciler(settings, store)
        await forwarder.start()
        logger.info(
            "Forwarder running in namespace {} on {}",
            settings.namespace,
            settings.forwarder_bind_host,
        )
        try:
            await asyncio.Event().wait()
        finally:
            await forwarder.stop()

    asyncio.run(_run())


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--allow", "allowed_urls", multiple=True, help="Allowed URL pattern (repeatable)")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table")
def aggregate(file: Path, allowed_urls: tuple[str, ...], as_json: bool):
    """Group the remote endpoint records in FILE (a JSON list) into BoundEndpoints."""
    try:
        raw = orjson.loads(file.read_bytes())
        if isinstance(raw, dict):
            raw = raw.get("endpoints", [])
        records = [RemoteEndpoint.model_validate(item) for item in raw]
        aggregated = aggregate_bound_endpoints(records)
        policy = AllowedURLPolicy(allowed_urls or ["*"])
    except (orjson.JSONDecodeError, ValueError, KubebindError) as e:
        console.print(f"[red]❌ {e}[/red]")
        sys.exit(1)

    rows = [
        {
            "endpoint_uri": uri,
            "name": hash_uri(uri),
            "allowed": policy.is_allowed(uri),
            "target": be.spec.target.to_dict(),
            "endpoints": [ref.ref.id for ref in be.status.endpoints],
        }
        for uri, be in sorted(aggregated.items())
    ]

    if as_json:
        console.print(
            orjson.dumps(rows, option=orjson.OPT_INDENT_2).decode(),
            highlight=False,
            markup=False,
            soft_wrap=True,
        )
        return

    table = Table(title=f"BoundEndpoints ({len(rows)})")
    table.add_column("Endpoint URI", style="cyan", no_wrap=True)
    table.add_column("Name", style="magenta", no_wrap=True)
    table.add_column("Allowed", justify="center")
    table.add_column("Endpoints", style="green")
    for row in rows:
        table.add_row(
            row["endpoint_uri"],
            row["name"],
            "[green]yes[/green]" if row["allowed"] else "[red]no[/red]",
            ", ".join(row["endpoints"]),
        )
    console.print(table)


def main():
    """Main CLI entry point."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(1)


if __name__ == "__main__":
    main()
