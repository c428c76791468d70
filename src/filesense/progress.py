"""Rich progress display for indexing and duplicate scans.

Falls back to plain stderr lines when stderr is not a terminal.
"""

from __future__ import annotations

import sys
from contextlib import contextmanager
from typing import TYPE_CHECKING

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Column, Table
from rich.text import Text

if TYPE_CHECKING:
    from collections.abc import Iterator

    from filesense.indexer import IndexerStats

# fixed widths keep the live panel from bouncing
DESC_WIDTH = 40
PANEL_WIDTH = 70


def format_bytes(n: float) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if abs(n) < 1024:
            return f"{n:.1f} {unit}"
        n /= 1024
    return f"{n:.1f} TB"


# stats under these keys are byte counts
_BYTE_KEYS = frozenset({"bytes"})


def _display_value(key: str, value: int | float | str) -> str:
    if key in _BYTE_KEYS and isinstance(value, (int, float)):
        return format_bytes(value)
    if isinstance(value, float):
        return f"{value:.1f}"
    return str(value)


class ScanProgress:
    """Progress display with named phases and a stats table.

    Phases are rich progress tasks; ``update`` takes absolute counts so
    it can be fed straight from indexer or scanner callbacks.
    """

    def __init__(
        self,
        use_rich: bool | None = None,
        console: Console | None = None,
    ) -> None:
        if use_rich is None:
            use_rich = sys.stderr.isatty()
        self._use_rich = use_rich
        self._console = console
        self._live: Live | None = None
        self._progress: Progress | None = None
        self._task_ids: dict[str, TaskID] = {}
        self._stats: dict[str, int | float | str] = {}
        self._current_phase = ""
        self._last_pct = -1

    @contextmanager
    def live_context(self) -> Iterator[ScanProgress]:
        if not self._use_rich:
            yield self
            return

        self._console = self._console or Console(stderr=True)
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn(
                "[bold blue]{task.description}",
                table_column=Column(width=DESC_WIDTH, no_wrap=True),
            ),
            BarColumn(bar_width=20),
            MofNCompleteColumn(),
            TextColumn("•"),
            TimeElapsedColumn(),
            console=self._console,
            transient=False,
            expand=False,
        )
        with Live(
            self._make_display(),
            console=self._console,
            refresh_per_second=10,
        ) as live:
            self._live = live
            try:
                yield self
            finally:
                self._live = None

    def _make_display(self) -> Panel:
        if not self._progress:
            return Panel(
                "Initializing...", width=PANEL_WIDTH, border_style="cyan"
            )

        stats_table = Table.grid(padding=(0, 2))
        stats_table.add_column(justify="left", width=20)
        stats_table.add_column(justify="right", width=15)
        for key, value in self._stats.items():
            stats_table.add_row(
                Text(key, style="dim"),
                Text(_display_value(key, value), style="bold"),
            )
        if not self._stats:
            stats_table.add_row(Text(" ", style="dim"), Text(" "))

        return Panel(
            Group(self._progress, stats_table),
            title=f"[bold cyan]{self._current_phase or 'Indexing'}[/]",
            border_style="cyan",
            width=PANEL_WIDTH,
        )

    def _truncate(self, text: str) -> str:
        max_len = DESC_WIDTH - 3
        if len(text) > max_len:
            return "…" + text[-(max_len - 1) :]
        return text

    def _refresh(self) -> None:
        if self._live:
            self._live.update(self._make_display())

    def start_phase(
        self, name: str, description: str, total: int | None = None
    ) -> None:
        self._current_phase = description
        self._last_pct = -1
        if self._use_rich and self._progress:
            self._task_ids[name] = self._progress.add_task(
                description, total=total or None
            )
            self._refresh()
        else:
            print(f"\n{description}...", file=sys.stderr, flush=True)

    def update(
        self,
        name: str,
        completed: int,
        total: int | None = None,
        current_item: str | None = None,
        **stats: int | float | str,
    ) -> None:
        self._stats.update(stats)
        if self._use_rich and self._progress:
            if name not in self._task_ids:
                return
            task_id = self._task_ids[name]
            self._progress.update(task_id, completed=completed)
            if total is not None:
                self._progress.update(task_id, total=total)
            if current_item:
                self._progress.update(
                    task_id, description=self._truncate(current_item)
                )
            self._refresh()
            return

        if total:
            pct = int(100 * completed / total)
            if pct >= self._last_pct + 5 or completed == total:
                self._last_pct = pct
                print(
                    f"[{pct:3d}%] {completed}/{total}",
                    file=sys.stderr,
                    flush=True,
                )

    def update_from_stats(self, name: str, stats: IndexerStats) -> None:
        """Feed an indexer progress snapshot into phase ``name``."""
        done = stats.files_indexed + stats.files_skipped
        self.update(
            name,
            completed=done,
            total=done + stats.files_pending,
            current_item=stats.current_path or None,
            indexed=stats.files_indexed,
            skipped=stats.files_skipped,
            failed=stats.files_failed,
            bytes=stats.total_bytes,
        )

    def complete_phase(self, name: str, message: str | None = None) -> None:
        if self._use_rich and self._progress and name in self._task_ids:
            task_id = self._task_ids[name]
            task = self._progress.tasks[task_id]
            self._progress.update(
                task_id,
                total=task.total or task.completed,
                completed=task.total or task.completed,
                description=self._current_phase,
            )
            self._refresh()
        elif message:
            print(f"✓ {message}", file=sys.stderr, flush=True)

    def set_stats(self, **stats: int | float | str) -> None:
        self._stats.update(stats)
        self._refresh()

    def log(self, message: str) -> None:
        if self._use_rich and self._console:
            self._console.print(f"[dim]{message}[/dim]")
        else:
            print(message, file=sys.stderr, flush=True)

    def print_summary(self, title: str, **stats: int | float | str) -> None:
        if not self._use_rich:
            print(f"\n{title}", file=sys.stderr)
            for key, value in stats.items():
                value = _display_value(key, value)
                print(f"  {key}: {value}", file=sys.stderr)
            return

        console = self._console or Console(stderr=True)
        table = Table.grid(padding=(0, 2))
        table.add_column(justify="left", style="dim")
        table.add_column(justify="right", style="bold green")
        for key, value in stats.items():
            table.add_row(key, _display_value(key, value))
        console.print(Panel(table, title=f"[bold green]{title}[/]"))
