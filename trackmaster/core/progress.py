"""
Progress bar handling for trackmaster using Rich library.

Batch runs are cursor-paginated, so the number of jobs is usually unknown
up front. JobProgressBar then shows a pulsing bar with a running count;
when a --limit is set the limit is used as the total.

Usage:
    from trackmaster.core.progress import JobProgressBar

    with JobProgressBar(description="Process", total=None) as progress:
        for job in jobs:
            progress.update(success=run(job))
"""

import threading
from typing import Optional

from rich import get_console
from rich.progress import (
    BarColumn,
    Progress,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Column
from rich.theme import Theme


PROGRESS_THEME = Theme({
    "bar.back": "grey23",
    "bar.complete": "rgb(165,66,129)",
    "bar.finished": "rgb(114,156,31)",
    "bar.pulse": "rgb(165,66,129)",
    "progress.percentage": "white",
})

DESCRIPTION_WIDTH = 12
STATUS_WIDTH = 25


class JobProgressBar:
    """
    Progress bar for dispatcher-driven commands.

    Displays:
    - Description (e.g., "Process")
    - Status: ✓ succeeded, ✗ failed
    - Bar, count of finished jobs and elapsed time

    Example:
        Process     ✓ 45  ✗ 2         ━━━━━━━━━━━━━━━━━     47 0:12:31

    Workers report from pool threads, so update() is serialized with a lock.
    """

    def __init__(self, description: str, total: int | None = None):
        """
        Args:
            description: Label on the left (e.g., "Process").
            total: Number of jobs, or None when unknown (pulsing bar).
        """
        self.description = description
        self.total = total
        self.completed = 0
        self.succeeded = 0
        self.failed = 0
        self._lock = threading.Lock()

        self.console = get_console()
        self.progress = Progress(
            TextColumn(
                "[white]{task.description}",
                table_column=Column(width=DESCRIPTION_WIDTH, no_wrap=True, overflow="ellipsis"),
            ),
            TextColumn(
                "{task.fields[status]}",
                table_column=Column(width=STATUS_WIDTH, no_wrap=True, overflow="ellipsis"),
            ),
            BarColumn(bar_width=40, finished_style="green"),
            "[progress.percentage]{task.completed:>5.0f}",
            TimeElapsedColumn(),
            console=self.console,
            transient=False,
            refresh_per_second=10,
        )

        self.task_id: Optional[TaskID] = None
        self._started = False

    def __enter__(self) -> "JobProgressBar":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    def start(self) -> None:
        """Start the progress bar (can be called manually)."""
        if not self._started:
            self.console.push_theme(PROGRESS_THEME)
            self.progress.start()
            self.task_id = self.progress.add_task(
                description=self.description,
                total=self.total,
                status=self._status_text(),
            )
            self._started = True

    def stop(self) -> None:
        """Stop the progress bar."""
        if self._started:
            self.progress.stop()
            self.console.pop_theme()
            self._started = False

    def _status_text(self) -> str:
        return f"[green]✓ {self.succeeded}[/green]  [red]✗ {self.failed}[/red]"

    def update(self, success: bool) -> None:
        """
        Record one finished job.

        Args:
            success: Whether the job completed without error.
        """
        with self._lock:
            self.completed += 1
            if success:
                self.succeeded += 1
            else:
                self.failed += 1
            if self.task_id is not None:
                self.progress.update(
                    self.task_id,
                    completed=self.completed,
                    status=self._status_text(),
                )


__all__ = [
    "PROGRESS_THEME",
    "JobProgressBar",
]
