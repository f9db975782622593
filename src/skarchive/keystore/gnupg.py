"""
GnuPG key store -- drives the system ``gpg`` binary.

For hosts whose keys already live in a GnuPG home. Data goes through
temporary files in a private directory; the passphrase is fed on
stdin with loopback pinentry so it never appears in the process list.
"""

from __future__ import annotations

import logging
import re
import subprocess
import tempfile
from pathlib import Path
from typing import Optional

from ..errors import KeyNotFound, KeyStoreError, PassphraseInvalid
from .base import KeyStore

logger = logging.getLogger("skarchive.keystore.gnupg")

_MISSING_KEY = re.compile(r"no (secret|public) key|no such key|not found|skipped: no public key", re.I)
_BAD_PASSPHRASE = re.compile(r"bad passphrase|decryption failed: bad session key|no passphrase given", re.I)


class GnuPGKeyStore(KeyStore):
    """Key store backed by a GnuPG home directory."""

    def __init__(
        self,
        gnupg_home: Optional[Path] = None,
        gpg_binary: str = "gpg",
        timeout: Optional[float] = None,
    ):
        self.gnupg_home = gnupg_home.expanduser() if gnupg_home else None
        self.gpg_binary = gpg_binary
        self.timeout = timeout

    @property
    def name(self) -> str:
        return "gnupg"

    def _base_cmd(self) -> list[str]:
        cmd = [self.gpg_binary, "--batch", "--yes", "--no-tty", "--quiet"]
        if self.gnupg_home:
            cmd.extend(["--homedir", str(self.gnupg_home)])
        return cmd

    def _run(
        self,
        args: list[str],
        stdin: Optional[bytes] = None,
        key_id: str = "",
    ) -> subprocess.CompletedProcess:
        cmd = self._base_cmd() + args
        try:
            result = subprocess.run(
                cmd,
                input=stdin,
                capture_output=True,
                check=False,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise KeyStoreError(f"gpg binary not found: {self.gpg_binary}") from exc
        except subprocess.TimeoutExpired as exc:
            raise KeyStoreError(f"gpg timed out after {self.timeout}s") from exc

        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            logger.debug("gpg %s failed: %s", " ".join(args[:2]), stderr)
            if _BAD_PASSPHRASE.search(stderr):
                raise PassphraseInvalid(key_id)
            if _MISSING_KEY.search(stderr):
                raise KeyNotFound(key_id, stderr.splitlines()[-1] if stderr else "")
            raise KeyStoreError(f"gpg failed ({result.returncode}): {stderr}")
        return result

    def _colons(self, key_id: str, secret: bool = False) -> list[list[str]]:
        flag = "--list-secret-keys" if secret else "--list-keys"
        result = self._run(["--with-colons", "--fingerprint", flag, key_id], key_id=key_id)
        return [
            line.split(":")
            for line in result.stdout.decode("utf-8", errors="replace").splitlines()
        ]

    def resolve(self, key_id: str) -> str:
        for fields in self._colons(key_id):
            if fields[0] == "fpr":
                return fields[9].upper()
        raise KeyNotFound(key_id)

    def sign(self, data: bytes, key_id: str, passphrase: str) -> bytes:
        with tempfile.TemporaryDirectory(prefix="skarchive-gpg-") as tmp:
            src = Path(tmp) / "data"
            src.write_bytes(data)
            result = self._run(
                [
                    "--pinentry-mode", "loopback",
                    "--passphrase-fd", "0",
                    "--local-user", key_id,
                    "--armor", "--detach-sign",
                    "--output", "-",
                    str(src),
                ],
                stdin=passphrase.encode("utf-8") + b"\n",
                key_id=key_id,
            )
        return result.stdout

    def verify(self, data: bytes, signature: bytes, key_id: str) -> bool:
        with tempfile.TemporaryDirectory(prefix="skarchive-gpg-") as tmp:
            src = Path(tmp) / "data"
            sig = Path(tmp) / "data.sig"
            src.write_bytes(data)
            sig.write_bytes(signature)
            try:
                result = self._run(
                    ["--status-fd", "1", "--verify", str(sig), str(src)],
                    key_id=key_id,
                )
            except KeyStoreError as exc:
                logger.debug("Signature verification by %s failed: %s", key_id, exc)
                return False
        try:
            wanted = self.resolve(key_id)
        except KeyNotFound:
            return False
        for line in result.stdout.decode("utf-8", errors="replace").splitlines():
            parts = line.split()
            if len(parts) >= 3 and parts[1] == "VALIDSIG":
                signer = {parts[2].upper(), parts[-1].upper()}
                return wanted in signer
        return False

    def encrypt(self, data: bytes, recipients: list[str]) -> bytes:
        if not recipients:
            raise KeyStoreError("no recipients given")
        for key_id in recipients:
            self.resolve(key_id)
        args = ["--trust-model", "always", "--encrypt"]
        for key_id in recipients:
            args.extend(["--recipient", key_id])
        with tempfile.TemporaryDirectory(prefix="skarchive-gpg-") as tmp:
            src = Path(tmp) / "data"
            src.write_bytes(data)
            result = self._run(
                args + ["--output", "-", str(src)],
                key_id=",".join(recipients),
            )
        return result.stdout

    def decrypt(self, data: bytes, key_id: str, passphrase: str = "") -> bytes:
        self._colons(key_id, secret=True)
        with tempfile.TemporaryDirectory(prefix="skarchive-gpg-") as tmp:
            src = Path(tmp) / "data.gpg"
            src.write_bytes(data)
            result = self._run(
                [
                    "--pinentry-mode", "loopback",
                    "--passphrase-fd", "0",
                    "--try-secret-key", key_id,
                    "--decrypt",
                    "--output", "-",
                    str(src),
                ],
                stdin=passphrase.encode("utf-8") + b"\n",
                key_id=key_id,
            )
        return result.stdout
