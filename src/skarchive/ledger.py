"""
Pipeline ledger -- the source of truth for artifact stages.

A JSON map from artifact path to LedgerEntry. File mtimes decide when
an artifact may start its journey; from then on only the ledger says
where it is. Entries also carry the plaintext digest so a file that
was moved or renamed after encryption is recognised and not picked
up again.

Every update rewrites the whole file through a temp file and
``os.replace``, so a killed process leaves the previous ledger intact.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from pydantic import ValidationError

from .errors import LedgerError
from .models import ArtifactType, LedgerEntry, Stage

logger = logging.getLogger("skarchive.ledger")

LEDGER_VERSION = 1


class PipelineLedger:
    """Persisted per-artifact stage map, safe for concurrent updates."""

    def __init__(self, path: Path):
        """Load the ledger from disk, or start empty.

        Args:
            path: Location of ledger.json.

        Raises:
            LedgerError: If an existing ledger cannot be parsed.
        """
        self.path = path
        self._lock = threading.Lock()
        self._entries: dict[str, LedgerEntry] = {}
        self._by_digest: dict[str, str] = {}
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            entries = data.get("entries", {})
            for key, raw in entries.items():
                entry = LedgerEntry(**raw)
                self._entries[key] = entry
                if entry.digest:
                    self._by_digest[entry.digest] = key
        except (OSError, json.JSONDecodeError, ValidationError, AttributeError) as exc:
            raise LedgerError(f"cannot load ledger {self.path}: {exc}") from exc
        logger.debug("Loaded %d ledger entries from %s", len(self._entries), self.path)

    def _save(self) -> None:
        """Write the full ledger atomically. Caller holds the lock."""
        payload = {
            "version": LEDGER_VERSION,
            "entries": {
                key: entry.model_dump(mode="json")
                for key, entry in sorted(self._entries.items())
            },
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=".ledger-", suffix=".tmp", dir=str(self.path.parent)
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise LedgerError(f"cannot write ledger {self.path}: {exc}") from exc

    def get(self, path: str | Path) -> Optional[LedgerEntry]:
        with self._lock:
            entry = self._entries.get(str(path))
            return entry.model_copy(deep=True) if entry else None

    def find_by_digest(self, digest: str) -> Optional[LedgerEntry]:
        """Find an entry whose plaintext had this SHA-256 digest."""
        with self._lock:
            key = self._by_digest.get(digest)
            if key is None:
                return None
            return self._entries[key].model_copy(deep=True)

    def stage_of(self, path: str | Path) -> Stage:
        entry = self.get(path)
        return entry.stage if entry else Stage.PLAINTEXT

    def entries(self, stage: Optional[Stage] = None) -> list[LedgerEntry]:
        """Snapshot of entries, optionally filtered to one stage."""
        with self._lock:
            return [
                e.model_copy(deep=True)
                for _, e in sorted(self._entries.items())
                if stage is None or e.stage == stage
            ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[LedgerEntry]:
        return iter(self.entries())

    def advance(
        self,
        path: str | Path,
        stage: Stage,
        at: datetime,
        artifact_type: Optional[ArtifactType] = None,
        **fields: object,
    ) -> LedgerEntry:
        """Move an artifact forward to ``stage`` and persist.

        Args:
            path: Artifact identity (its original plaintext path).
            stage: The new stage. Must be later than the current one.
            at: Timestamp recorded for the new stage.
            artifact_type: Required when the artifact has no entry yet.
            **fields: Extra LedgerEntry fields to set (digest, encrypted_path...).

        Returns:
            The updated entry.

        Raises:
            ValueError: If the transition is not strictly forward.
            LedgerError: If the ledger cannot be persisted.
        """
        key = str(path)
        with self._lock:
            current = self._entries.get(key)
            if current is None:
                if artifact_type is None:
                    raise ValueError(f"no ledger entry for {key} and no artifact type given")
                current = LedgerEntry(path=key, artifact_type=artifact_type)
            if stage <= current.stage:
                raise ValueError(
                    f"{key}: stage transition {current.stage.value} -> {stage.value} is not forward"
                )

            updated = current.model_copy(deep=True)
            updated.stage = stage
            updated.stage_timestamps[stage] = at
            for name, value in fields.items():
                if name not in LedgerEntry.model_fields:
                    raise ValueError(f"unknown ledger field: {name}")
                setattr(updated, name, value)

            previous = self._entries.get(key)
            self._entries[key] = updated
            if updated.digest:
                self._by_digest[updated.digest] = key
            try:
                self._save()
            except LedgerError:
                if previous is None:
                    del self._entries[key]
                else:
                    self._entries[key] = previous
                raise
            return updated.model_copy(deep=True)
