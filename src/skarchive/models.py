"""
Pydantic models for artifacts, configuration, and ledger state.

Every artifact moves forward through the same four stages and never
back. The ledger entry is the only record of where it is; file
timestamps only decide when it is old enough to start.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

LOG_DELAY_FLOOR_DAYS = 31


class ArtifactType(str, Enum):
    """Kinds of audit artifacts the pipeline handles."""

    TTYREC = "ttyrec"
    USERLOG = "userlog"
    SQLITE = "sqlite"


class Stage(str, Enum):
    """Lifecycle stage of an artifact. Ordered."""

    PLAINTEXT = "plaintext"
    ENCRYPTED = "encrypted"
    SYNCED = "synced"
    PURGED = "purged"

    @property
    def rank(self) -> int:
        return _STAGE_ORDER.index(self)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Stage):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Stage):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Stage):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Stage):
            return NotImplemented
        return self.rank >= other.rank


_STAGE_ORDER = [Stage.PLAINTEXT, Stage.ENCRYPTED, Stage.SYNCED, Stage.PURGED]

DEFAULT_PATTERNS: dict[ArtifactType, list[str]] = {
    ArtifactType.TTYREC: ["*.ttyrec", "*.ttyrec.gz", "*.ttyrec.zst"],
    ArtifactType.USERLOG: ["*-log-??????.log"],
    ArtifactType.SQLITE: ["*-log-??????.sqlite"],
}

DEFAULT_DELAYS: dict[ArtifactType, int] = {
    ArtifactType.TTYREC: 14,
    ArtifactType.USERLOG: LOG_DELAY_FLOOR_DAYS,
    ArtifactType.SQLITE: LOG_DELAY_FLOOR_DAYS,
}


class Artifact(BaseModel):
    """A file on local disk the pipeline is responsible for."""

    path: Path
    artifact_type: ArtifactType
    root: Path
    created_at: datetime
    size_bytes: int = 0
    current_stage: Stage = Stage.PLAINTEXT

    def age(self, now: datetime) -> timedelta:
        """Time elapsed since the file was last modified."""
        return now - self.created_at

    @property
    def relative_path(self) -> Path:
        """Path below the type root, used to lay out the staging tree."""
        return self.path.relative_to(self.root)


class SourceConfig(BaseModel):
    """Where one artifact type lives and how long it stays plaintext."""

    root: Optional[Path] = None
    patterns: list[str] = Field(default_factory=list)
    delay_days: int = 0


def _default_sources() -> dict[ArtifactType, SourceConfig]:
    return {
        t: SourceConfig(patterns=list(DEFAULT_PATTERNS[t]), delay_days=DEFAULT_DELAYS[t])
        for t in ArtifactType
    }


class SigningKey(BaseModel):
    """Key used for the detached signature over the plaintext."""

    key_id: str
    passphrase: str = ""
    passphrase_file: Optional[Path] = None


class KeyStoreConfig(BaseModel):
    """Which key store backend to use and where its keys live."""

    backend: str = "pgpy"
    keyring: Optional[Path] = None
    gnupg_home: Optional[Path] = None
    gpg_binary: str = "gpg"


class SyncTarget(BaseModel):
    """Offsite destination. Without a destination, sync and purge are off."""

    destination: Optional[str] = None
    command: str = "rsync -a --relative -e {rsh} {path} {destination}/"
    probe_command: str = "rsync --list-only -e {rsh} {destination}/"
    rsh: str = "ssh"
    removal_delay_days: int = 0

    @field_validator("removal_delay_days")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("removal_delay_days must be >= 0")
        return v

    @property
    def enabled(self) -> bool:
        return bool(self.destination)


class RetentionPolicy(BaseModel):
    """What happens to the plaintext once the ciphertext is committed.

    remove_plaintext=True deletes the original as soon as the artifact is
    Encrypted. False keeps it on disk until the artifact is Purged.
    """

    remove_plaintext: bool = True


class LoggingConfig(BaseModel):
    """Log destination: syslog facility or a file path."""

    syslog_facility: Optional[str] = "local7"
    syslog_address: str = "/dev/log"
    file: Optional[Path] = None
    verbosity: int = 0


class AccountValidatorConfig(BaseModel):
    """External program that tells whether an account is still active."""

    command: Optional[str] = None
    deny_on_failure: bool = True


class ArchiveConfig(BaseModel):
    """Complete pipeline configuration."""

    home: Path = Path("/var/lib/skarchive")
    staging_dir: Path = Path("/var/lib/skarchive/encrypted")
    sources: dict[ArtifactType, SourceConfig] = Field(default_factory=_default_sources)
    signing_key: Optional[SigningKey] = None
    recipients: list[list[str]] = Field(default_factory=list)
    keystore: KeyStoreConfig = Field(default_factory=KeyStoreConfig)
    sync: SyncTarget = Field(default_factory=SyncTarget)
    retention: RetentionPolicy = Field(default_factory=RetentionPolicy)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    accounts: AccountValidatorConfig = Field(default_factory=AccountValidatorConfig)
    workers: int = 1
    operation_timeout_seconds: float = 600

    @field_validator("sources", mode="before")
    @classmethod
    def _fill_source_defaults(cls, v: object) -> object:
        """Partial source blocks inherit the per-type default patterns and delays."""
        if not isinstance(v, dict):
            return v
        merged: dict = {}
        for t in ArtifactType:
            block = v.get(t.value)
            if block is None:
                merged[t] = SourceConfig(
                    patterns=list(DEFAULT_PATTERNS[t]), delay_days=DEFAULT_DELAYS[t]
                )
                continue
            if isinstance(block, SourceConfig):
                merged[t] = block
                continue
            block = dict(block)
            block.setdefault("patterns", list(DEFAULT_PATTERNS[t]))
            block.setdefault("delay_days", DEFAULT_DELAYS[t])
            merged[t] = block
        known = {t.value for t in ArtifactType}
        unknown = [str(k) for k in v if k not in known]
        if unknown:
            raise ValueError(f"unknown artifact types: {sorted(unknown)}")
        return merged

    @field_validator("workers")
    @classmethod
    def _positive_workers(cls, v: int) -> int:
        if v < 1:
            raise ValueError("workers must be >= 1")
        return v

    @property
    def ledger_path(self) -> Path:
        return self.home / "ledger.json"

    @property
    def lock_path(self) -> Path:
        return self.home / "skarchive.lock"


class LedgerEntry(BaseModel):
    """Persisted state of one artifact."""

    path: str
    artifact_type: ArtifactType
    stage: Stage = Stage.PLAINTEXT
    stage_timestamps: dict[Stage, datetime] = Field(default_factory=dict)
    digest: Optional[str] = None
    size_bytes: int = 0
    root: Optional[str] = None
    encrypted_path: Optional[str] = None
    signature_path: Optional[str] = None

    def stage_time(self, stage: Stage) -> Optional[datetime]:
        return self.stage_timestamps.get(stage)


class WorkItem(BaseModel):
    """A pending transition for one artifact."""

    artifact: Artifact
    target_stage: Stage


class CheckResult(BaseModel):
    """Outcome of one config-test check."""

    category: str
    passed: bool
    identifier: Optional[str] = None
    detail: str = ""


class ValidationReport(BaseModel):
    """Result of a config-test run."""

    checks: list[CheckResult] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(c.passed for c in self.checks)

    @property
    def first_failure(self) -> Optional[CheckResult]:
        for check in self.checks:
            if not check.passed:
                return check
        return None


class ArtifactFailure(BaseModel):
    """One recoverable failure recorded during a run."""

    path: str
    stage: Stage
    error: str


class RunReport(BaseModel):
    """Summary of one pipeline run."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    dry_run: bool = False
    scanned: int = 0
    encrypted: list[str] = Field(default_factory=list)
    synced: list[str] = Field(default_factory=list)
    purged: list[str] = Field(default_factory=list)
    failures: list[ArtifactFailure] = Field(default_factory=list)
    type_errors: dict[str, str] = Field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        if self.failures or self.type_errors:
            return 2
        return 0
