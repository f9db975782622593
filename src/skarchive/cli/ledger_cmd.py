"""Ledger commands: show, status."""

from __future__ import annotations

import sys
from collections import Counter
from typing import Optional

import click
from rich.table import Table

from ._common import ARCHIVE_CONFIG, EXIT_FATAL, console, err_console, load_or_exit, stage_style
from ..errors import LedgerError
from ..models import Stage


def register_ledger_commands(main: click.Group) -> None:
    """Register the ledger command group."""

    @main.group()
    def ledger():
        """Inspect the pipeline ledger: where every artifact stands."""

    def _open(config_path: str):
        from ..ledger import PipelineLedger

        config = load_or_exit(config_path)
        try:
            return PipelineLedger(config.ledger_path)
        except LedgerError as exc:
            err_console.print(f"[bold red]{exc}[/]")
            sys.exit(EXIT_FATAL)

    @ledger.command("show")
    @click.option("--config", "-c", "config_path", default=ARCHIVE_CONFIG, type=click.Path(), help="Config file.")
    @click.option(
        "--stage", "stage_name", default=None,
        type=click.Choice([s.value for s in Stage]), help="Only this stage.",
    )
    def ledger_show(config_path: str, stage_name: Optional[str]):
        """List tracked artifacts and their stage.

        Examples:

            skarchive ledger show --stage encrypted
        """
        book = _open(config_path)
        entries = book.entries(Stage(stage_name) if stage_name else None)
        if not entries:
            console.print("\n[dim]No ledger entries.[/]\n")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Artifact", style="cyan", overflow="fold")
        table.add_column("Type")
        table.add_column("Stage")
        table.add_column("Since", style="dim")
        for entry in entries:
            since = entry.stage_time(entry.stage)
            table.add_row(
                entry.path,
                entry.artifact_type.value,
                stage_style(entry.stage),
                since.isoformat()[:19] if since else "",
            )
        console.print(table)

    @ledger.command("status")
    @click.option("--config", "-c", "config_path", default=ARCHIVE_CONFIG, type=click.Path(), help="Config file.")
    def ledger_status(config_path: str):
        """Count artifacts per stage."""
        book = _open(config_path)
        counts = Counter(entry.stage for entry in book.entries())
        console.print(f"\n[bold]{len(book)}[/] tracked artifact(s)")
        for stage in Stage:
            console.print(f"  {stage_style(stage)}: {counts.get(stage, 0)}")
        console.print()
