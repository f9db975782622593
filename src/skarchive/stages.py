"""
StageAdvancer -- decides which artifacts are due for encryption.

Logs and user databases are still being written to during the month
they cover, so their delay can never go below LOG_DELAY_FLOOR_DAYS.
A configuration that tries is refused before anything is touched.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, Iterator, Optional

from .errors import ConfigError
from .ledger import PipelineLedger
from .models import (
    LOG_DELAY_FLOOR_DAYS,
    Artifact,
    ArtifactType,
    LedgerEntry,
    SourceConfig,
    Stage,
    WorkItem,
)

logger = logging.getLogger("skarchive.stages")

FLOORED_TYPES = (ArtifactType.USERLOG, ArtifactType.SQLITE)
EMPTY_DIGEST = hashlib.sha256(b"").hexdigest()


def sha256_file(path: Path) -> str:
    """Compute SHA-256 hex digest of a file."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def is_move(artifact: Artifact, known: Optional[LedgerEntry]) -> bool:
    """Whether ``artifact`` is an already-tracked file under a new name.

    Equal content alone is not enough: the tracked entry must be of the
    same type, past Plaintext, and its original path must be gone.
    Empty files never count.
    """
    if known is None or known.stage <= Stage.PLAINTEXT:
        return False
    if known.path == str(artifact.path) or known.artifact_type != artifact.artifact_type:
        return False
    if known.digest == EMPTY_DIGEST:
        return False
    return not Path(known.path).exists()


def check_thresholds(sources: dict[ArtifactType, SourceConfig]) -> None:
    """Refuse delays below the floor for logs and databases.

    Raises:
        ConfigError: On the first offending type.
    """
    for artifact_type, source in sources.items():
        if source.delay_days < 0:
            raise ConfigError(f"{artifact_type.value}: delay_days must be >= 0")
        if artifact_type in FLOORED_TYPES and source.delay_days < LOG_DELAY_FLOOR_DAYS:
            raise ConfigError(
                f"{artifact_type.value}: delay_days={source.delay_days} is below "
                f"the {LOG_DELAY_FLOOR_DAYS}-day minimum"
            )


class StageAdvancer:
    """Applies per-type age thresholds against the ledger."""

    def __init__(self, sources: dict[ArtifactType, SourceConfig]):
        check_thresholds(sources)
        self.delays = {t: timedelta(days=s.delay_days) for t, s in sources.items()}

    def is_due(self, artifact: Artifact, now: datetime) -> bool:
        """Inclusive: an artifact exactly delay_days old is due."""
        return artifact.age(now) >= self.delays[artifact.artifact_type]

    def plan(
        self,
        artifacts: Iterable[Artifact],
        ledger: PipelineLedger,
        now: datetime,
    ) -> Iterator[WorkItem]:
        """Yield a work item for every plaintext artifact that is due.

        Artifacts the ledger already tracks are skipped, whether found by
        path or, for files moved after encryption, by content digest.
        """
        for artifact in artifacts:
            stage = ledger.stage_of(artifact.path)
            if stage > Stage.PLAINTEXT:
                logger.debug("%s already %s, skipping", artifact.path, stage.value)
                continue
            if not self.is_due(artifact, now):
                logger.debug(
                    "%s not due yet (age %s)", artifact.path, artifact.age(now)
                )
                continue
            try:
                known = ledger.find_by_digest(sha256_file(artifact.path))
            except OSError as exc:
                logger.warning("cannot hash %s: %s", artifact.path, exc)
                known = None
            if is_move(artifact, known):
                logger.warning(
                    "%s has the same content as %s (%s), not re-encrypting",
                    artifact.path, known.path, known.stage.value,
                )
                continue
            yield WorkItem(artifact=artifact, target_stage=Stage.ENCRYPTED)
