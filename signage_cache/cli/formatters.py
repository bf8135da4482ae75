"""
Functions for formatting and displaying data in the console using Rich.
"""

from pathlib import Path
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from signage_cache.models.config import CacheConfig
from signage_cache.models.stats import CacheStats, EvictionResult, SyncProgress
from signage_cache.utils.formatting import format_duration, format_size, shorten_url


def format_error_with_suggestions(
    error: Exception, context: dict | None = None
) -> Panel:
    """Formats an error with actionable suggestions into a Rich Panel."""
    error_type = type(error).__name__
    error_msg = str(error)

    suggestions_map = {
        "ConfigurationError": [
            "• Check the values in your configuration file.",
            "• Run `signage-cache validate` to see which setting is rejected.",
            "• Run `signage-cache init --force` to write a fresh default config.",
        ],
        "StorageExhaustedError": [
            "• The device holding the cache is full.",
            "• Lower `max_cache_bytes` or free space on the device.",
            "• Run `signage-cache evict` to reclaim space from old media.",
        ],
        "CacheError": [
            "• The cache directory may be read-only or on a failing disk.",
            "• Run `signage-cache verify` to reconcile metadata with the disk.",
        ],
        "MetadataCorruptError": [
            "• Both metadata copies are unreadable.",
            "• Run `signage-cache clear-cache` to start from an empty cache.",
        ],
        "ClientResponseError": [
            "• A network connection issue occurred.",
            "• The content server might be temporarily unavailable.",
        ],
        "JSONDecodeError": [
            "• The manifest file is not valid JSON.",
        ],
    }

    suggestions = suggestions_map.get(
        error_type, ["• Run the command with -vv for detailed logs."]
    )

    error_text = Text()
    error_text.append(f"{error_type}: ", style="bold red")
    error_text.append(error_msg)

    content = Table.grid(padding=(1, 0))
    content.add_row(error_text)
    content.add_row()
    content.add_row(Text("Suggestions", style="bold yellow"))
    content.add_row(Text("\n".join(suggestions)))

    if context:
        content.add_row()
        content.add_row(Text(f"Context: {context}", style="dim"))

    return Panel(
        content,
        title="[bold red]An Error Occurred[/bold red]",
        border_style="red",
        expand=False,
    )


def print_config(config_path: Path, config_data: dict[str, Any]):
    """Displays the raw configuration file contents."""
    console = Console()
    content = "\n".join(f"{key} = {value}" for key, value in sorted(config_data.items()))
    console.print(
        Panel(
            content or "[dim](empty)[/dim]",
            title=f"Configuration ([dim]{config_path}[/dim])",
            border_style="cyan",
        )
    )


def print_validation_table(config: CacheConfig):
    """Displays a summary of the effective settings."""
    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()

    table.add_row("Cache Directory:", f"[dim]{config.cache_dir}[/dim]")
    table.add_row("Max Cache Size:", format_size(config.max_cache_bytes))
    table.add_row("Evict Down To:", format_size(config.warning_cache_bytes))
    table.add_row("Min Free Space:", format_size(config.min_free_bytes))
    table.add_row("Concurrent Downloads:", str(config.max_concurrent))
    table.add_row("Transfer Timeout:", format_duration(config.transfer_timeout_seconds))
    table.add_row(
        "Retries:",
        f"{config.fast_retry_attempts} fast, then every "
        f"{format_duration(config.cooldown_seconds)} up to {config.hard_cap}",
    )
    table.add_row(
        "Event Log:",
        f"[dim]{config.event_log_dir}[/dim]" if config.event_log_dir else "✗ Disabled",
    )

    console.print(
        Panel(
            table,
            title="[bold green]✓ Validated Settings[/bold green]",
            border_style="green",
        )
    )


def print_stats_table(stats: CacheStats, max_cache_bytes: int | None = None):
    """Displays cache statistics."""
    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan", justify="right")
    table.add_column()

    table.add_row("Files:", f"[green]{stats.total_files}[/green]")
    table.add_row("Videos:", str(stats.video_count))
    table.add_row("Images:", str(stats.image_count))
    size = f"[cyan]{stats.total_size_formatted}[/cyan]"
    if max_cache_bytes:
        used = stats.total_size / max_cache_bytes * 100
        size += f" [dim]({used:.1f}% of {format_size(max_cache_bytes)})[/dim]"
    table.add_row("Total Size:", size)

    console.print(
        Panel(table, title="[bold]Media Cache[/bold]", border_style="cyan", expand=False)
    )


def print_eviction_result(result: EvictionResult):
    console = Console()
    if not result:
        console.print("[dim]Nothing to evict.[/dim]")
        return
    console.print(
        f"[green]✓ Evicted {len(result.evicted_urls)} files "
        f"({format_size(result.bytes_freed)} freed).[/green]"
    )
    for url in result.evicted_urls:
        console.print(f"  [dim]{shorten_url(url)}[/dim]")


def print_sync_summary(
    summary: SyncProgress,
    duration_s: float,
    errors: dict[str, str] | None = None,
    peak_concurrent: int = 0,
):
    """Displays the final summary of a sync run."""
    console = Console()

    stats_table = Table(show_header=False, box=None, padding=(0, 2))
    stats_table.add_column(style="bold cyan", justify="right", width=16)
    stats_table.add_column(style="white", justify="left")

    stats_table.add_row("✓ Ready:", f"[bold green]{summary.ready}[/bold green]")
    if summary.downloading:
        stats_table.add_row("⬇ Downloading:", f"[cyan]{summary.downloading}[/cyan]")
    if summary.failed:
        stats_table.add_row("✗ Failed:", f"[bold red]{summary.failed}[/bold red]")
    if summary.abandoned:
        stats_table.add_row("⚠ Abandoned:", f"[bold red]{summary.abandoned}[/bold red]")
    stats_table.add_row("", "")
    stats_table.add_row("Playable:", f"{summary.percentage:.0f}% of {summary.total}")
    stats_table.add_row("Time Elapsed:", f"[blue]{format_duration(duration_s)}[/blue]")
    if peak_concurrent:
        stats_table.add_row("Peak Concurrent:", f"[green]{peak_concurrent}[/green]")

    complete = summary.ready == summary.total
    console.print()
    console.print(
        Panel(
            stats_table,
            title=(
                "📺 [bold]Cache Ready![/bold]"
                if complete
                else "📺 [bold]Sync Incomplete[/bold]"
            ),
            border_style="green" if complete else "yellow",
            box=box.DOUBLE,
            expand=False,
            padding=(1, 2),
        )
    )

    if errors:
        table = Table(title="Items Not Cached", box=box.ROUNDED)
        table.add_column("URL", style="cyan")
        table.add_column("Last Error", style="red")
        for url, message in errors.items():
            table.add_row(shorten_url(url), message)
        console.print(table)
    console.print()
