"""
Manages a Rich Live display for a running sync: overall progress plus one bar
per active transfer.
"""

import asyncio
import logging

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
)

from signage_cache.models.stats import SyncProgress
from signage_cache.utils.formatting import shorten_url

log = logging.getLogger("signage_cache")


class ProgressManager:
    """Polled view of the orchestrator's status and progress maps."""

    def __init__(self, console: Console, enabled: bool = True):
        self.console = console
        self.enabled = enabled

        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}", justify="left"),
            BarColumn(bar_width=30),
            "[progress.percentage]{task.percentage:>3.0f}%",
            console=console,
        )
        self.overall_progress = Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(bar_width=40),
            "[progress.percentage]{task.percentage:>3.0f}%",
            TextColumn("{task.fields[counts]}"),
            console=console,
        )

        self._live: Live | None = None
        self._overall_task_id: TaskID | None = None
        self._url_tasks: dict[str, TaskID] = {}
        self.peak_concurrent = 0

    def _render(self) -> Panel:
        return Panel(
            Group(self.overall_progress, self.progress),
            title="[bold cyan]Media Cache Sync[/bold cyan]",
            border_style="cyan",
        )

    def update(
        self,
        summary: SyncProgress,
        active: dict[str, str],
        progress: dict[str, float],
    ) -> None:
        """
        Refreshes the display.

        Args:
            summary: Aggregated counters for the current manifest.
            active: URL -> label for transfers currently running.
            progress: URL -> percentage for every tracked item.
        """
        if not self.enabled:
            return

        counts = (
            f"[green]{summary.ready} ready[/green] "
            f"[cyan]{summary.downloading} downloading[/cyan] "
            f"[red]{summary.failed + summary.abandoned} failed[/red]"
        )
        if self._overall_task_id is None:
            self._overall_task_id = self.overall_progress.add_task(
                "Overall", total=100, counts=counts
            )
        self.overall_progress.update(
            self._overall_task_id, completed=summary.percentage, counts=counts
        )

        for url in [u for u in self._url_tasks if u not in active]:
            self.progress.remove_task(self._url_tasks.pop(url))
        for url, label in active.items():
            task_id = self._url_tasks.get(url)
            if task_id is None:
                task_id = self.progress.add_task(label, total=100)
                self._url_tasks[url] = task_id
            self.progress.update(task_id, completed=progress.get(url, 0.0))

        self.peak_concurrent = max(self.peak_concurrent, len(active))
        if self._live:
            self._live.update(self._render())

    async def __aenter__(self):
        if self.enabled:
            self._live = Live(
                self._render(), console=self.console, refresh_per_second=8
            )
            self._live.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._live:
            await asyncio.sleep(0.1)
            self._live.stop()
            self._live = None


def label_for(title: str, url: str) -> str:
    """Short description for a progress bar."""
    text = title or shorten_url(url)
    return text if len(text) <= 50 else text[:47] + "..."
