"""
Error taxonomy for the archive pipeline.

Fatal errors (ConfigError, LockError) stop a run before any artifact
is touched. Everything else is scoped to a single artifact or a single
artifact type: logged, left in its current stage, retried next run.
"""

from __future__ import annotations


class ArchiveError(Exception):
    """Base class for every pipeline error."""


class ConfigError(ArchiveError):
    """Invalid thresholds, unresolvable signing key, malformed recipients."""


class KeyStoreError(ArchiveError):
    """A key store operation failed for one artifact."""


class KeyNotFound(KeyStoreError):
    """A key id could not be resolved in the key store."""

    def __init__(self, key_id: str, detail: str = ""):
        self.key_id = key_id
        message = f"key not found: {key_id}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class PassphraseInvalid(KeyStoreError):
    """The passphrase does not unlock the secret key."""

    def __init__(self, key_id: str):
        self.key_id = key_id
        super().__init__(f"invalid passphrase for key {key_id}")


class ArtifactIOError(ArchiveError):
    """An artifact path could not be read or written."""


class TransportError(ArchiveError):
    """The transport command failed for one artifact."""


class LockError(ArchiveError):
    """Another pipeline run already holds the host lock."""


class LedgerError(ArchiveError):
    """The ledger could not be read or persisted."""
