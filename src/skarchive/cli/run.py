"""Pipeline commands: run, config-test."""

from __future__ import annotations

import sys

import click
from rich.panel import Panel
from rich.table import Table

from ._common import (
    ARCHIVE_CONFIG,
    EXIT_CONFIG,
    EXIT_FATAL,
    EXIT_OK,
    console,
    err_console,
    load_or_exit,
)
from ..errors import ConfigError, LedgerError, LockError


def register_run_commands(main: click.Group) -> None:
    """Register the run and config-test commands."""

    @main.command("run")
    @click.option("--config", "-c", "config_path", default=ARCHIVE_CONFIG, type=click.Path(), help="Config file.")
    @click.option("--verbose", "-v", count=True, help="-v per-artifact transitions, -vv debug.")
    @click.option("--dry-run", is_flag=True, help="Show what would happen, change nothing.")
    def run_cmd(config_path: str, verbose: int, dry_run: bool):
        """Run one pass: encrypt due artifacts, sync, purge.

        Exit status: 0 all good, 1 configuration invalid, 2 some
        artifacts failed, 3 another run holds the lock or a fatal
        I/O error stopped the run.

        Examples:

            skarchive run

            skarchive run -v --dry-run
        """
        from ..logs import configure_logging
        from ..pipeline import Pipeline

        config = load_or_exit(config_path)
        try:
            configure_logging(config.logging, verbosity=verbose or None)
            pipeline = Pipeline(config)
            report = pipeline.run(dry_run=dry_run)
        except ConfigError as exc:
            err_console.print(f"[bold red]Configuration error:[/] {exc}")
            sys.exit(EXIT_CONFIG)
        except LockError as exc:
            err_console.print(f"[bold red]Locked:[/] {exc}")
            sys.exit(EXIT_FATAL)
        except (LedgerError, OSError) as exc:
            err_console.print(f"[bold red]Run aborted:[/] {exc}")
            sys.exit(EXIT_FATAL)

        if verbose or dry_run:
            title = "Dry Run" if dry_run else "Run Complete"
            console.print(Panel(
                f"Scanned: {report.scanned}\n"
                f"Encrypted: [cyan]{len(report.encrypted)}[/]\n"
                f"Synced: [green]{len(report.synced)}[/]\n"
                f"Purged: {len(report.purged)}\n"
                f"Failed: [red]{len(report.failures)}[/]",
                title=title,
                border_style="red" if report.exit_code else "green",
            ))
        for failure in report.failures:
            err_console.print(f"[red]{failure.path}[/] ({failure.stage.value}): {failure.error}")
        for type_name, error in report.type_errors.items():
            err_console.print(f"[red]{type_name}[/]: {error}")
        sys.exit(report.exit_code)

    @main.command("config-test")
    @click.option("--config", "-c", "config_path", default=ARCHIVE_CONFIG, type=click.Path(), help="Config file.")
    def config_test(config_path: str):
        """Check keys, recipients, destination and staging. Changes nothing.

        Examples:

            skarchive config-test -c /etc/skarchive/skarchive.yaml
        """
        from ..keystore import create_keystore
        from ..validator import ConfigValidator

        config = load_or_exit(config_path)
        try:
            keystore = create_keystore(config.keystore, timeout=config.operation_timeout_seconds)
        except ConfigError as exc:
            err_console.print(f"[bold red]Configuration error:[/] {exc}")
            sys.exit(EXIT_CONFIG)

        report = ConfigValidator(config, keystore).run()

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Check")
        table.add_column("Identifier", style="cyan")
        table.add_column("Result")
        table.add_column("Detail", style="dim")
        for check in report.checks:
            result = "[green]PASS[/]" if check.passed else "[bold red]FAIL[/]"
            table.add_row(check.category, check.identifier or "", result, check.detail)
        console.print(table)

        failure = report.first_failure
        if failure is not None:
            who = f" {failure.identifier}" if failure.identifier else ""
            console.print(f"\n[bold red]config-test failed[/] at {failure.category}{who}: {failure.detail}")
            sys.exit(EXIT_CONFIG)
        console.print("\n[bold green]config-test passed[/]")
        sys.exit(EXIT_OK)
