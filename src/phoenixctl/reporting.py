"""Severity-tagged console output for operators."""
from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .backups import BackupArchive


class ProgressReporter(Protocol):
    """What the manager and provisioner need to narrate progress."""

    def info(self, message: str) -> None: ...

    def warn(self, message: str) -> None: ...


class Reporter:
    """Print ``[INFO]``/``[WARN]``/``[ERROR]`` lines through rich."""

    def __init__(self, console: Console | None = None, err_console: Console | None = None) -> None:
        """Create a reporter writing info/warn to stdout and errors to stderr."""
        self.console = console or Console(highlight=False, soft_wrap=True)
        self.err_console = err_console or Console(stderr=True, highlight=False, soft_wrap=True)

    def info(self, message: str) -> None:
        """Print an informational line."""
        self.console.print(f"[green]{escape('[INFO]')}[/green] {escape(message)}")

    def warn(self, message: str) -> None:
        """Print a warning line."""
        self.console.print(f"[yellow]{escape('[WARN]')}[/yellow] {escape(message)}")

    def error(self, message: str) -> None:
        """Print an error line to stderr."""
        self.err_console.print(f"[red]{escape('[ERROR]')}[/red] {escape(message)}")

    def backups_table(self, bucket: str, archives: Sequence[BackupArchive]) -> None:
        """Render the archive listing for *bucket*."""
        table = Table(
            title=f"Available backups in gs://{bucket}",
            show_header=True,
            header_style="bold magenta",
        )
        table.add_column("Name", style="bold", no_wrap=True)
        table.add_column("Created At")
        table.add_column("Size", justify="right")
        for archive in archives:
            table.add_row(
                archive.name,
                archive.created_at.strftime("%Y-%m-%d %H:%M:%S"),
                _format_size(archive.size_bytes),
            )
        self.console.print(table)


def _format_size(size: int | None) -> str:
    if size is None:
        return "-"
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GiB"  # pragma: no cover


__all__ = ["ProgressReporter", "Reporter"]
