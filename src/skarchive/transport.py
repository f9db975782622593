"""
SyncDispatcher -- moves sealed artifacts offsite.

The transport is an operator-supplied command template, rsync by
default. The pipeline only cares whether it exited zero. Placeholders:

    {path}          file to send, as <staging>/./<type>/<relative path>
                    so ``rsync --relative`` rebuilds the staging layout
    {destination}   configured destination URI
    {rsh}           remote shell for rsync's -e

No destination, no sync: the stage is skipped for every artifact.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Optional

from .errors import ConfigError, TransportError
from .ledger import PipelineLedger
from .models import LedgerEntry, Stage, SyncTarget

logger = logging.getLogger("skarchive.transport")


def render_command(template: str, **fields: str) -> list[str]:
    """Tokenise a command template and fill in each token.

    Substitution happens per token after splitting, so values with
    spaces stay a single argument and are never shell-interpreted.

    Raises:
        ConfigError: On bad quoting or an unknown placeholder.
    """
    try:
        tokens = shlex.split(template)
    except ValueError as exc:
        raise ConfigError(f"cannot parse command template {template!r}: {exc}") from exc
    if not tokens:
        raise ConfigError("empty command template")
    try:
        return [token.format(**fields) for token in tokens]
    except (KeyError, IndexError, ValueError) as exc:
        raise ConfigError(f"bad placeholder in command template {template!r}: {exc}") from exc


def run_command(argv: list[str], timeout: Optional[float] = None) -> subprocess.CompletedProcess:
    """Run a transport command, mapping every failure to TransportError."""
    try:
        result = subprocess.run(
            argv, capture_output=True, text=True, check=False, timeout=timeout
        )
    except FileNotFoundError as exc:
        raise TransportError(f"command not found: {argv[0]}") from exc
    except subprocess.TimeoutExpired as exc:
        raise TransportError(f"{argv[0]} timed out after {timeout}s") from exc
    except OSError as exc:
        raise TransportError(f"cannot run {argv[0]}: {exc}") from exc
    if result.returncode != 0:
        raise TransportError(
            f"{argv[0]} exited {result.returncode}: {result.stderr.strip()}"
        )
    return result


class SyncDispatcher:
    """Runs the transport command for Encrypted artifacts."""

    def __init__(
        self,
        target: SyncTarget,
        staging_dir: Path,
        ledger: Optional[PipelineLedger],
        timeout: Optional[float] = None,
    ):
        self.target = target
        self.staging_dir = staging_dir
        self.ledger = ledger
        self.timeout = timeout
        if self.enabled:
            self.command_for(staging_dir / "check")

    @property
    def enabled(self) -> bool:
        return self.target.enabled

    def transfer_path(self, path: Path) -> str:
        """Anchor ``path`` at the staging root for ``rsync --relative``."""
        try:
            rel = path.relative_to(self.staging_dir)
        except ValueError:
            return str(path)
        return f"{self.staging_dir}/./{rel.as_posix()}"

    def command_for(self, path: Path) -> list[str]:
        return render_command(
            self.target.command,
            path=self.transfer_path(path),
            destination=self.target.destination or "",
            rsh=self.target.rsh,
        )

    def pending(self) -> list[LedgerEntry]:
        """Encrypted entries awaiting transfer. Empty when sync is off."""
        if not self.enabled:
            return []
        return self.ledger.entries(Stage.ENCRYPTED)

    def sync(self, entry: LedgerEntry, now: datetime) -> LedgerEntry:
        """Transfer one artifact's ciphertext and signature.

        Raises:
            TransportError: If any transfer fails. The entry stays Encrypted.
        """
        if not self.enabled:
            raise TransportError("no destination configured")
        files = [Path(p) for p in (entry.encrypted_path, entry.signature_path) if p]
        if not files:
            raise TransportError(f"{entry.path}: ledger has no staged files")
        for path in files:
            if not path.exists():
                raise TransportError(f"{entry.path}: staged file {path} is missing")
            argv = self.command_for(path)
            logger.debug("Transport: %s", shlex.join(argv))
            run_command(argv, timeout=self.timeout)
        return self.ledger.advance(entry.path, Stage.SYNCED, now)

    def probe(self) -> None:
        """Lightweight reachability check of the destination.

        Raises:
            TransportError: If the probe command fails.
        """
        if not self.enabled:
            return
        argv = render_command(
            self.target.probe_command,
            destination=self.target.destination or "",
            rsh=self.target.rsh,
            path="",
        )
        run_command(argv, timeout=self.timeout)
