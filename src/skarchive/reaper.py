"""
RetentionReaper -- removes local copies once they are safe elsewhere.

Only Synced artifacts are eligible, and only after removal_delay_days
have passed since the sync. With no destination configured nothing
ever reaches Synced, and the reaper refuses to run at all.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path

from .errors import ArtifactIOError
from .ledger import PipelineLedger
from .models import LedgerEntry, Stage, SyncTarget
from .stages import sha256_file

logger = logging.getLogger("skarchive.reaper")


class RetentionReaper:
    """Purges Synced artifacts past the removal delay."""

    def __init__(self, target: SyncTarget, ledger: PipelineLedger):
        self.target = target
        self.ledger = ledger
        self.delay = timedelta(days=target.removal_delay_days)

    @property
    def enabled(self) -> bool:
        return self.target.enabled

    def is_due(self, entry: LedgerEntry, now: datetime) -> bool:
        if not self.enabled or entry.stage != Stage.SYNCED:
            return False
        synced_at = entry.stage_time(Stage.SYNCED)
        if synced_at is None:
            return False
        return now - synced_at >= self.delay

    def pending(self, now: datetime) -> list[LedgerEntry]:
        if not self.enabled:
            return []
        return [e for e in self.ledger.entries(Stage.SYNCED) if self.is_due(e, now)]

    def _is_synced_plaintext(self, entry: LedgerEntry, path: Path) -> bool:
        """Only the exact bytes that went offsite may be removed."""
        if not path.exists():
            return False
        try:
            same = entry.digest is not None and sha256_file(path) == entry.digest
        except OSError as exc:
            logger.warning("%s: cannot hash before purge, leaving it alone: %s", path, exc)
            return False
        if not same:
            logger.warning("%s: content differs from the synced copy, leaving it alone", path)
        return same

    def purge(self, entry: LedgerEntry, now: datetime) -> LedgerEntry:
        """Delete every local copy of one artifact and record Purged.

        Raises:
            ArtifactIOError: If a file exists but cannot be removed.
        """
        if not self.is_due(entry, now):
            raise ArtifactIOError(f"{entry.path}: not eligible for purge")
        for name in (entry.encrypted_path, entry.signature_path, entry.path):
            if not name:
                continue
            path = Path(name)
            if name == entry.path and not self._is_synced_plaintext(entry, path):
                continue
            try:
                path.unlink()
                logger.debug("%s: removed %s", entry.path, path)
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise ArtifactIOError(f"cannot remove {path}: {exc}") from exc
        return self.ledger.advance(entry.path, Stage.PURGED, now)
