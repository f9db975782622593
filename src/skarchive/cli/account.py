"""Account validation command."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import click

from ._common import ARCHIVE_CONFIG, EXIT_CONFIG, console, err_console, load_or_exit
from ..errors import ConfigError
from ..models import AccountValidatorConfig


def register_account_commands(main: click.Group) -> None:
    """Register the account command group."""

    @main.group()
    def account():
        """Ask the account validator whether an account is still active."""

    @account.command("check")
    @click.argument("name")
    @click.option("--config", "-c", "config_path", default=ARCHIVE_CONFIG, type=click.Path(), help="Config file.")
    @click.option("--command", "command", default=None, help="Validator program (overrides config).")
    @click.option(
        "--deny-on-failure/--allow-on-failure", default=None,
        help="Whether a validator failure blocks access (overrides config).",
    )
    def account_check(name: str, config_path: str, command: Optional[str], deny_on_failure: Optional[bool]):
        """Validate one account. Exit 0 when access is allowed, 1 when denied.

        Examples:

            skarchive account check alice --command /usr/local/bin/check-ldap
        """
        from ..accounts import check_account

        timeout = None
        if Path(config_path).exists():
            config = load_or_exit(config_path)
            settings, timeout = config.accounts, config.operation_timeout_seconds
        else:
            settings = AccountValidatorConfig()
        command = command or settings.command
        if deny_on_failure is None:
            deny_on_failure = settings.deny_on_failure
        if not command:
            err_console.print("[bold red]No account validator configured.[/]")
            sys.exit(EXIT_CONFIG)

        try:
            result = check_account(command, name, deny_on_failure=deny_on_failure, timeout=timeout)
        except ConfigError as exc:
            err_console.print(f"[bold red]Configuration error:[/] {exc}")
            sys.exit(EXIT_CONFIG)

        verdict = "[green]allowed[/]" if result.allowed else "[red]denied[/]"
        detail = f": {result.detail}" if result.detail else ""
        console.print(f"{name}: {result.status.value}, {verdict}{detail}")
        sys.exit(0 if result.allowed else 1)
