"""
Defines the command-line interface for the application using Typer.
"""

import asyncio
import logging
import os
import time
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

from signage_cache import __version__
from signage_cache.core.orchestrator import Orchestrator, create_orchestrator
from signage_cache.exceptions import SignageCacheError
from signage_cache.models.config import CacheConfig
from signage_cache.storage.cache_store import CacheStore
from signage_cache.storage.config_manager import ConfigManager
from signage_cache.storage.eviction import EvictionManager
from signage_cache.utils.playlist import load_manifest
from signage_cache.utils.structured_logger import create_event_logger

from .formatters import (
    print_config,
    print_eviction_result,
    print_stats_table,
    print_sync_summary,
    print_validation_table,
)
from .progress_manager import ProgressManager, label_for

console = Console()

logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[
        RichHandler(
            console=console,
            rich_tracebacks=True,
            show_path=False,
            show_level=False,
            markup=True,
        )
    ],
)
log = logging.getLogger("signage_cache")

app = typer.Typer(
    name="signage-cache",
    help=(
        "Offline-first media cache for signage players. Use 'signage-cache"
        " <command> --help' for more info."
    ),
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)


def get_config_dir() -> Path:
    if os.name == "nt":
        base_dir = Path(os.getenv("APPDATA", "~\\AppData\\Roaming"))
    else:
        base_dir = Path(os.getenv("XDG_CONFIG_HOME", "~/.config"))
    return base_dir.expanduser() / "signage-cache"


CONFIG_DIR = get_config_dir()
CONFIG_FILE = CONFIG_DIR / "config.ini"


def _load_config(cli_options: dict | None = None) -> CacheConfig:
    return ConfigManager(CONFIG_FILE).load_config(cli_options)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase logging verbosity (-vv for debug).",
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version and exit.", is_eager=True
    ),
    show_config: bool = typer.Option(
        False, "--show-config", help="Display the current configuration."
    ),
):
    """Signage media cache CLI"""
    if version:
        console.print(f"[bold]signage-cache[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    log_level = "INFO"
    if verbose >= 2:
        log_level = "DEBUG"
    logging.getLogger("signage_cache").setLevel(log_level)

    if show_config:
        if not CONFIG_FILE.is_file():
            console.print(
                "[red]✗ Config file not found.[/] Run [cyan]signage-cache init[/cyan]"
                " first."
            )
            raise typer.Exit(code=1)
        print_config(CONFIG_FILE, ConfigManager(CONFIG_FILE).as_display_dict())
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@app.command()
def init(
    cache_dir: Path | None = typer.Option(
        None, "--cache-dir", "-d", help="Directory holding the cached media."
    ),
    max_cache_gb: float | None = typer.Option(
        None, "--max-cache-gb", help="Hard cache size limit in GB."
    ),
    concurrency: int | None = typer.Option(
        None, "--concurrency", "-c", help="Simultaneous downloads (1-16)."
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Overwrite an existing configuration."
    ),
):
    """Write a configuration file with default values."""
    if (
        CONFIG_FILE.exists()
        and not force
        and not typer.confirm("Configuration file already exists. Overwrite it?")
    ):
        raise typer.Abort()

    settings: dict = {}
    if cache_dir is not None:
        settings["cache_dir"] = str(cache_dir.expanduser().resolve())
    if max_cache_gb is not None:
        max_bytes = int(max_cache_gb * 1024**3)
        settings["max_cache_bytes"] = max_bytes
        settings["warning_cache_bytes"] = int(max_bytes * 0.75)
    if concurrency is not None:
        settings["max_concurrent"] = concurrency

    config_manager = ConfigManager(CONFIG_FILE)
    config_manager.save_new_config(settings)
    # Fail now rather than on the first sync if the values are unusable.
    config_manager.load_config()
    console.print(f"\n[bold green]✓ Configuration saved to '{CONFIG_FILE}'[/bold green]")
    console.print("Ready to cache! Try: [cyan]signage-cache sync manifest.json[/cyan]")


@app.command(name="sync")
def sync_command(
    manifest: Path = typer.Argument(  # noqa: B008
        ..., help="JSON manifest, playlist or list of content items.", exists=True
    ),
    concurrency: int | None = typer.Option(
        None, "--concurrency", "-c", help="Simultaneous downloads (1-16)."
    ),
    timeout: float | None = typer.Option(
        None, "--timeout", help="Hard limit per transfer, in seconds."
    ),
    max_wait: float | None = typer.Option(
        None,
        "--max-wait",
        help="Stop after this many seconds even if items are still pending.",
    ),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="No live progress display."),
):
    """Download everything in a manifest and keep retrying until it is cached."""
    cli_options = {
        key: value
        for key, value in {
            "max_concurrent": concurrency,
            "transfer_timeout_seconds": timeout,
        }.items()
        if value is not None
    }
    try:
        descriptors = load_manifest(manifest)
    except ValueError as e:
        # JSONDecodeError is a ValueError too.
        console.print(f"[red]✗ Could not read manifest: {e}[/red]")
        raise typer.Exit(code=1) from e

    if not descriptors:
        console.print("[yellow]⚠️  Manifest contains no usable items.[/yellow]")
        raise typer.Exit()

    async def _sync_async():
        config = _load_config(cli_options)
        event_logger = create_event_logger(
            Path(config.event_log_dir).expanduser() if config.event_log_dir else None
        )
        event_logger.logger.set_session_context(
            cache_dir=config.cache_dir, app_version=__version__
        )
        orchestrator = create_orchestrator(config, event_logger=event_logger)
        start_time = time.monotonic()
        peak = 0
        try:
            await orchestrator.initialize()
            orchestrator.sync(descriptors)
            await orchestrator.start_retry_loop()
            async with ProgressManager(console, enabled=not quiet) as progress_manager:
                while True:
                    summary = orchestrator.summary()
                    active = {
                        url: label_for(title, url)
                        for url, title in orchestrator.active_items().items()
                    }
                    progress_manager.update(summary, active, orchestrator.progress)
                    if summary.settled:
                        break
                    if max_wait is not None and time.monotonic() - start_time > max_wait:
                        log.warning("[yellow]Maximum wait reached; stopping sync.[/yellow]")
                        break
                    await asyncio.sleep(config.progress_interval_seconds)
                peak = progress_manager.peak_concurrent
        finally:
            await orchestrator.close()
            event_logger.close()

        summary = orchestrator.summary()
        print_sync_summary(
            summary,
            time.monotonic() - start_time,
            errors=orchestrator.errors,
            peak_concurrent=max(peak, orchestrator.scheduler.peak_concurrent),
        )
        return summary

    summary = asyncio.run(_sync_async())
    if summary.ready < summary.total:
        raise typer.Exit(code=1)


async def _open_store(config: CacheConfig) -> CacheStore:
    store = CacheStore(Path(config.cache_dir))
    await store.initialize()
    return store


@app.command()
def validate():
    """Validate the current configuration."""
    try:
        config = _load_config()
        print_validation_table(config)
    except SignageCacheError as e:
        console.print(f"[red]✗ Configuration is invalid: {e}[/red]")
        raise typer.Exit(code=1) from e


@app.command()
def stats():
    """Show statistics about the media cache."""
    config = _load_config()

    async def _get_stats():
        store = await _open_store(config)
        print_stats_table(store.stats(), config.max_cache_bytes)

    asyncio.run(_get_stats())


@app.command()
def verify():
    """Reconcile cache metadata with the files on disk."""
    config = _load_config()

    async def _verify():
        store = CacheStore(Path(config.cache_dir))
        dropped = await store.initialize()
        dropped += await store.verify()
        if dropped:
            console.print(
                f"[yellow]Dropped {len(dropped)} entries whose files were missing."
                "[/yellow]"
            )
        console.print(
            f"[green]✓ {len(store.entries())} cached files verified.[/green]"
        )

    asyncio.run(_verify())


@app.command()
def evict(
    target_bytes: int | None = typer.Option(
        None,
        "--bytes",
        "-b",
        help="Free at least this many bytes (default: shrink to the warning level).",
    ),
):
    """Evict the least recently cached files."""
    config = _load_config()

    async def _evict():
        store = await _open_store(config)
        eviction = EvictionManager(store, config)
        result = await eviction.evict(target_bytes=target_bytes)
        print_eviction_result(result)

    asyncio.run(_evict())


@app.command(name="clear-cache")
def clear_cache(
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Bypass the confirmation prompt.",
    ),
):
    """Delete every cached file and its metadata."""
    if not force and not typer.confirm(
        "Are you sure you want to clear the media cache? "
        "Every item will be downloaded again on the next sync."
    ):
        console.print("[yellow]Operation cancelled.[/yellow]")
        raise typer.Abort()

    config = _load_config()

    async def _clear_async():
        orchestrator: Orchestrator = create_orchestrator(config)
        try:
            await orchestrator.initialize()
            await orchestrator.clear_cache()
        finally:
            await orchestrator.close()
        console.print("[green]✓ Media cache cleared successfully.[/green]")

    asyncio.run(_clear_async())
