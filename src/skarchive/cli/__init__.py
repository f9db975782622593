"""
SKArchive CLI — the audit archive command line.

Each command group lives in its own module and registers itself on
the main Click group.

Entry point: skarchive.cli:main
"""

from __future__ import annotations

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="skarchive")
def main():
    """SKArchive — audit artifact lifecycle.

    Sign. Seal in layers. Ship offsite. Forget locally.
    """


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .run import register_run_commands
from .ledger_cmd import register_ledger_commands
from .decrypt import register_decrypt_commands
from .account import register_account_commands

register_run_commands(main)
register_ledger_commands(main)
register_decrypt_commands(main)
register_account_commands(main)
