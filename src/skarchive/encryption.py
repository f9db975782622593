"""
EncryptionEngine -- sign, then seal in layers.

Each artifact is signed over its plaintext first, then encrypted once
per recipient layer, every layer wrapping the previous ciphertext.
The first configured layer ends up innermost, so recovery peels the
last layer first.

Nothing half-built is ever visible: the signature and the full onion
are written to temporary files beside their final names and renamed
into place, and the ledger moves to Encrypted only after both renames.

    staging/<type>/<relative path>.gpg   layered ciphertext
    staging/<type>/<relative path>.sig   detached signature over the plaintext
"""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

from .errors import ArtifactIOError, ConfigError, KeyStoreError
from .keystore.base import KeyStore
from .ledger import PipelineLedger
from .models import Artifact, LedgerEntry, RetentionPolicy, SigningKey, Stage
from .scanner import TEMP_PREFIX

logger = logging.getLogger("skarchive.encryption")

CIPHER_SUFFIX = ".gpg"
SIGNATURE_SUFFIX = ".sig"


def check_layers(layers: list[list[str]]) -> None:
    """Refuse an empty layer list or a layer with no recipients.

    Raises:
        ConfigError: Naming the offending layer.
    """
    if not layers:
        raise ConfigError("no recipient layers configured")
    for index, layer in enumerate(layers, start=1):
        if not [r for r in layer if r and r.strip()]:
            raise ConfigError(f"recipient layer {index} has no recipients")


def _fsync_dir(directory: Path) -> None:
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _write_temp(directory: Path, data: bytes) -> Path:
    fd, name = tempfile.mkstemp(prefix=TEMP_PREFIX, dir=str(directory))
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
    except BaseException:
        Path(name).unlink(missing_ok=True)
        raise
    return Path(name)


class EncryptionEngine:
    """Produces signed, layered ciphertext for eligible artifacts."""

    def __init__(
        self,
        keystore: KeyStore,
        signing_key: SigningKey,
        layers: list[list[str]],
        staging_dir: Path,
        ledger: PipelineLedger,
        retention: Optional[RetentionPolicy] = None,
        timeout: Optional[float] = None,
    ):
        check_layers(layers)
        self.keystore = keystore
        self.signing_key = signing_key
        self.layers = [list(layer) for layer in layers]
        self.staging_dir = staging_dir
        self.ledger = ledger
        self.retention = retention or RetentionPolicy()
        self.timeout = timeout

    def output_paths(self, artifact: Artifact) -> tuple[Path, Path]:
        """Final ciphertext and signature paths for an artifact."""
        base = self.staging_dir / artifact.artifact_type.value / artifact.relative_path
        return (
            base.with_name(base.name + CIPHER_SUFFIX),
            base.with_name(base.name + SIGNATURE_SUFFIX),
        )

    def _check_deadline(self, started: float, step: str) -> None:
        if self.timeout is None:
            return
        elapsed = time.monotonic() - started
        if elapsed > self.timeout:
            raise KeyStoreError(
                f"sealing exceeded {self.timeout}s at {step} ({elapsed:.1f}s elapsed)"
            )

    def seal(self, data: bytes) -> tuple[bytes, bytes]:
        """Sign ``data`` then wrap it in every recipient layer.

        In-process key stores cannot be interrupted, so the time limit is
        checked after signing and after every layer.

        Returns:
            (ciphertext, signature)

        Raises:
            KeyStoreError: On any signing or layer failure, or when sealing
                takes longer than ``timeout`` seconds.
        """
        started = time.monotonic()
        signature = self.keystore.sign(
            data, self.signing_key.key_id, self.signing_key.passphrase
        )
        self._check_deadline(started, "signing")
        ciphertext = data
        for index, layer in enumerate(self.layers, start=1):
            try:
                ciphertext = self.keystore.encrypt(ciphertext, layer)
            except KeyStoreError as exc:
                logger.debug("Layer %d/%d (%s) failed: %s", index, len(self.layers), ",".join(layer), exc)
                raise
            self._check_deadline(started, f"layer {index}")
            logger.debug("Layer %d/%d applied (%s)", index, len(self.layers), ",".join(layer))
        return ciphertext, signature

    def encrypt(self, artifact: Artifact, now: datetime) -> LedgerEntry:
        """Take one artifact from Plaintext to Encrypted.

        Args:
            artifact: The plaintext artifact.
            now: Timestamp recorded in the ledger.

        Returns:
            The committed ledger entry.

        Raises:
            KeyStoreError: Signing or a layer failed. Artifact stays Plaintext.
            ArtifactIOError: The plaintext or the staging tree is unusable.
        """
        try:
            data = artifact.path.read_bytes()
        except OSError as exc:
            raise ArtifactIOError(f"cannot read {artifact.path}: {exc}") from exc

        ciphertext, signature = self.seal(data)

        cipher_path, sig_path = self.output_paths(artifact)
        temps: list[Path] = []
        try:
            cipher_path.parent.mkdir(parents=True, exist_ok=True)
            sig_tmp = _write_temp(cipher_path.parent, signature)
            temps.append(sig_tmp)
            cipher_tmp = _write_temp(cipher_path.parent, ciphertext)
            temps.append(cipher_tmp)
            os.replace(sig_tmp, sig_path)
            try:
                os.replace(cipher_tmp, cipher_path)
            except OSError:
                sig_path.unlink(missing_ok=True)
                raise
            _fsync_dir(cipher_path.parent)
        except OSError as exc:
            raise ArtifactIOError(f"cannot install ciphertext for {artifact.path}: {exc}") from exc
        finally:
            for tmp in temps:
                tmp.unlink(missing_ok=True)

        entry = self.ledger.advance(
            artifact.path,
            Stage.ENCRYPTED,
            now,
            artifact_type=artifact.artifact_type,
            digest=hashlib.sha256(data).hexdigest(),
            size_bytes=len(data),
            root=str(artifact.root),
            encrypted_path=str(cipher_path),
            signature_path=str(sig_path),
        )

        if self.retention.remove_plaintext:
            self.remove_plaintext(artifact.path)
        return entry

    def remove_plaintext(self, path: Path) -> bool:
        """Delete an original once its ciphertext is committed."""
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning("%s: encrypted but plaintext not removed: %s", path, exc)
            return False
        logger.debug("%s: plaintext removed", path)
        return True

    def discard_orphans(self) -> int:
        """Delete temporary files left behind by an interrupted run."""
        if not self.staging_dir.is_dir():
            return 0
        removed = 0
        for tmp in self.staging_dir.rglob(TEMP_PREFIX + "*"):
            try:
                tmp.unlink()
                removed += 1
            except OSError as exc:
                logger.warning("cannot remove orphaned temp file %s: %s", tmp, exc)
        if removed:
            logger.info("Discarded %d orphaned temporary file(s)", removed)
        return removed


def peel(keystore: KeyStore, ciphertext: bytes, keys: list[tuple[str, str]]) -> bytes:
    """Remove layers outermost first, one (key_id, passphrase) per layer.

    ``keys`` lists the keys in peeling order: keys[0] opens the outermost
    (last configured) layer.

    Raises:
        KeyStoreError: If any key cannot open its layer.
    """
    data = ciphertext
    for key_id, passphrase in keys:
        data = keystore.decrypt(data, key_id, passphrase)
    return data
