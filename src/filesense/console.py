"""Rich console output helpers for the CLI."""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.markup import escape

if TYPE_CHECKING:
    from collections.abc import Iterator

# results go to stdout, diagnostics to stderr
out = Console(highlight=False)
err = Console(stderr=True, highlight=False)


def error(message: str) -> None:
    err.print(f"[bold red]error:[/] {escape(message)}")


def warning(message: str) -> None:
    err.print(f"[yellow]warning:[/] {escape(message)}")


def info(message: str) -> None:
    err.print(f"[cyan]{escape(message)}[/]")


def success(message: str) -> None:
    err.print(f"[green]✓[/] {escape(message)}")


def dim(message: str) -> None:
    err.print(f"[dim]{escape(message)}[/]")


def header(title: str) -> None:
    out.print(f"\n[bold cyan]{escape(title)}[/]")
    out.print(f"[cyan]{'─' * min(len(title), 70)}[/]")


def subheader(title: str) -> None:
    out.print(f"\n[bold]{escape(title)}[/]")


def key_value(key: str, value: Any, indent: int = 2) -> None:
    pad = " " * indent
    out.print(f"{pad}[dim]{escape(key)}:[/] {escape(str(value))}")


def score(value: float, label: str) -> None:
    if value >= 0.75:
        style = "bold green"
    elif value >= 0.5:
        style = "yellow"
    else:
        style = "dim"
    out.print(f"  [{style}]{value:.3f}[/]  {escape(label)}")


@contextmanager
def status(message: str) -> Iterator[None]:
    with err.status(escape(message)):
        yield
