"""
Overwatch command line entry point.

    overwatch run --config overwatch.yaml
    overwatch health --url http://127.0.0.1:8765/health
    overwatch route --type search --content "weather in Oslo"
"""

import asyncio
import json
import signal
import sys
from typing import Optional, Tuple

import aiohttp
import click

from . import __version__
from .app import ControlPlane
from .utils.config import ConfigLoader, OverwatchConfig, load_config
from .utils.errors import OverwatchError
from .utils.logging import get_logger, setup_logging


logger = get_logger("overwatch.cli")


def _configure_logging(config: OverwatchConfig) -> None:
    setup_logging(
        config.app_name,
        log_level="DEBUG" if config.debug else config.logging.level,
        log_dir=config.logging.directory,
        enable_json=config.logging.format == "json",
        enable_console=config.logging.enable_console,
        enable_sentry=config.logging.enable_sentry,
        sentry_dsn=config.logging.sentry_dsn
    )


async def _run(config_paths: Tuple[str, ...]) -> None:
    loader = ConfigLoader()
    for i, path in enumerate(config_paths):
        loader.add_source(path, priority=20 + i)
    config = await loader.load()
    _configure_logging(config)

    plane = ControlPlane(config)
    loader.register_callback(plane.apply_config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, plane.request_stop)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass

    try:
        await plane.run_forever()
    finally:
        loader.shutdown()


async def _fetch_health(url: str, timeout: float) -> dict:
    async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
        async with session.get(url) as response:
            response.raise_for_status()
            return await response.json()


async def _route(config_paths: Tuple[str, ...], message: dict) -> dict:
    config = await load_config(list(config_paths), extra_config={"self_healing": {"enabled": False}})
    plane = ControlPlane(config)
    await plane.initialize()
    try:
        result = await plane.orchestrator.route_message(message)
        await plane.bus.drain()
        return result.to_dict()
    finally:
        await plane.stop()


@click.group()
@click.version_option(__version__, prog_name="overwatch")
def cli() -> None:
    """Overwatch - agent orchestration and self-healing supervision."""


@cli.command()
@click.option("--config", "config_paths", multiple=True, type=click.Path(dir_okay=False),
              help="Configuration file (JSON, YAML or TOML); repeatable")
def run(config_paths: Tuple[str, ...]) -> None:
    """Run the control plane until interrupted."""
    try:
        asyncio.run(_run(config_paths))
    except OverwatchError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option("--url", default="http://127.0.0.1:8765/health", show_default=True,
              help="Health endpoint of a running control plane")
@click.option("--timeout", default=5.0, show_default=True, help="Request timeout in seconds")
def health(url: str, timeout: float) -> None:
    """Print the health snapshot of a running control plane."""
    try:
        snapshot = asyncio.run(_fetch_health(url, timeout))
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        click.echo(f"Cannot reach {url}: {e or type(e).__name__}", err=True)
        sys.exit(1)
    click.echo(json.dumps(snapshot, indent=2))


@cli.command()
@click.option("--config", "config_paths", multiple=True, type=click.Path(dir_okay=False),
              help="Configuration file (JSON, YAML or TOML); repeatable")
@click.option("--type", "message_type", default="conversation", show_default=True,
              help="Message type, e.g. conversation, search, music, complex_query")
@click.option("--content", required=True, help="Message content")
@click.option("--priority", type=click.Choice(["low", "medium", "high", "critical"]), default=None)
def route(config_paths: Tuple[str, ...], message_type: str, content: str, priority: Optional[str]) -> None:
    """Route a single message and print where it went."""
    message = {"type": message_type, "content": content}
    if priority:
        message["priority"] = priority
    try:
        result = asyncio.run(_route(config_paths, message))
    except OverwatchError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(json.dumps(result, indent=2))


def main() -> None:
    """Console script entry point."""
    cli()


if __name__ == "__main__":
    main()
