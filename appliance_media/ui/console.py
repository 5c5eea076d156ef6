"""Operator-facing console output and prompts using rich."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional, Sequence

from rich.console import Console as RichConsole
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)
from rich.prompt import Confirm, Prompt
from rich.table import Table
from rich.text import Text

from appliance_media.domain import TargetDisk


class Console:
    """Pretty console output using rich."""

    def __init__(self, console: Optional[RichConsole] = None) -> None:
        self.console = console or RichConsole()

    def info(self, message: str) -> None:
        self.console.print(f"[blue][INFO][/blue] {message}")

    def success(self, message: str) -> None:
        self.console.print(f"[green][OK][/green] {message}")

    def warn(self, message: str) -> None:
        self.console.print(f"[yellow][WARN][/yellow] {message}")

    def error(self, message: str) -> None:
        self.console.print(f"[red][ERROR][/red] {message}")

    def banner(self, title: str) -> None:
        self.console.print(Panel(title, style="bold blue"))

    def ask(self, prompt: str) -> str:
        return Prompt.ask(prompt, default="", show_default=False, console=self.console)

    def confirm(self, message: str, default: bool = False) -> bool:
        return Confirm.ask(message, default=default, console=self.console)

    def heading(self, text: str) -> None:
        self.console.print(Text(text, style="bold"))

    def show_options(self, label: str, options: list[str]) -> None:
        self.heading(label)
        table = Table(show_header=False)
        table.add_column("#", justify="right", style="cyan")
        table.add_column("Option")
        for index, option in enumerate(options):
            table.add_row(str(index), option)
        self.console.print(table)

    def show_disks(self, disks: Sequence[TargetDisk]) -> None:
        self.heading("Removable disks")
        table = Table()
        for column in ("#", "Disk", "Name", "Size", "Bus", "Partition style"):
            table.add_column(column)
        for index, disk in enumerate(disks):
            table.add_row(
                str(index),
                str(disk.number),
                disk.friendly_name,
                f"{disk.size_gb:.1f} GB",
                disk.bus_type,
                disk.partition_style,
            )
        self.console.print(table)

    def summary(self, title: str, rows: Sequence[tuple[str, str]]) -> None:
        table = Table(show_header=False, box=None)
        table.add_column("Setting", style="bold")
        table.add_column("Value")
        for key, value in rows:
            table.add_row(key, value)
        self.console.print(Panel(table, title=title, style="bold blue"))

    def progress(self) -> Progress:
        return Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            console=self.console,
        )

    @contextmanager
    def download_progress(self, description: str) -> Iterator:
        """Yield a ``(received, total)`` callback that drives a progress bar."""
        with self.progress() as progress:
            task = progress.add_task(description, total=None)

            def update(received: int, total: Optional[int]) -> None:
                progress.update(task, completed=received, total=total)

            yield update
