"""Shared utilities for all CLI command modules.

Provides the Rich console instance, exit codes, and config loading
with errors mapped to the documented exit statuses.
"""

from __future__ import annotations

import sys
from pathlib import Path

from rich.console import Console

from .. import ARCHIVE_CONFIG
from ..config import load_config
from ..errors import ConfigError
from ..models import ArchiveConfig, Stage

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_PARTIAL = 2
EXIT_FATAL = 3

console = Console()
err_console = Console(stderr=True)


def stage_style(stage: Stage) -> str:
    """Map a lifecycle stage to Rich markup.

    Args:
        stage: Artifact stage.

    Returns:
        str: Rich markup string for the stage.
    """
    return {
        Stage.PLAINTEXT: "[yellow]plaintext[/]",
        Stage.ENCRYPTED: "[cyan]encrypted[/]",
        Stage.SYNCED: "[green]synced[/]",
        Stage.PURGED: "[dim]purged[/]",
    }.get(stage, stage.value)


def load_or_exit(config_path: str) -> ArchiveConfig:
    """Load the config, exiting with EXIT_CONFIG when it is invalid."""
    try:
        return load_config(Path(config_path))
    except ConfigError as exc:
        err_console.print(f"[bold red]Configuration error:[/] {exc}")
        sys.exit(EXIT_CONFIG)

