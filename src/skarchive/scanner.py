"""
Scanner -- finds candidate artifacts on local disk.

Read-only. Each iteration walks the configured roots again, so a
Scanner can be iterated any number of times. A root that cannot be
read disables its own type for this run; other types carry on.
"""

from __future__ import annotations

import fnmatch
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from .errors import ConfigError
from .models import Artifact, ArtifactType, SourceConfig

logger = logging.getLogger("skarchive.scanner")

TEMP_PREFIX = ".skarchive-tmp-"


class Scanner:
    """Lazy, restartable enumeration of artifacts by type."""

    def __init__(self, sources: dict[ArtifactType, SourceConfig]):
        self.sources = sources
        self.errors: dict[ArtifactType, ConfigError] = {}

    def __iter__(self) -> Iterator[Artifact]:
        self.errors = {}
        for artifact_type, source in self.sources.items():
            if source.root is None:
                continue
            try:
                yield from self.scan_type(artifact_type, source)
            except ConfigError as exc:
                logger.error("%s: %s", artifact_type.value, exc)
                self.errors[artifact_type] = exc

    def scan_type(self, artifact_type: ArtifactType, source: SourceConfig) -> Iterator[Artifact]:
        """Yield artifacts of one type.

        Raises:
            ConfigError: If the type root is missing or unreadable.
        """
        root = Path(source.root).expanduser()
        if not root.is_dir() or not os.access(root, os.R_OK | os.X_OK):
            raise ConfigError(f"source directory {root} is not readable")

        def _walk_error(exc: OSError) -> None:
            logger.warning("%s: cannot read %s: %s", artifact_type.value, exc.filename, exc)

        for dirpath, dirnames, filenames in os.walk(root, onerror=_walk_error):
            dirnames.sort()
            for name in sorted(filenames):
                if name.startswith(TEMP_PREFIX):
                    continue
                if not classify(name, source.patterns):
                    continue
                path = Path(dirpath) / name
                try:
                    st = path.stat()
                except OSError as exc:
                    logger.warning("%s: cannot stat %s: %s", artifact_type.value, path, exc)
                    continue
                yield Artifact(
                    path=path,
                    artifact_type=artifact_type,
                    root=root,
                    created_at=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
                    size_bytes=st.st_size,
                )


def classify(name: str, patterns: list[str]) -> bool:
    """Whether a filename matches any of the type's patterns."""
    return any(fnmatch.fnmatchcase(name, pattern) for pattern in patterns)
