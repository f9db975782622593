"""
PGPy key store -- a directory of ASCII-armored keys.

Public keys are enough for encryption. Secret keys are needed for
signing and for peeling layers off during recovery. When both halves
of a key are present the secret one wins.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import pgpy
from pgpy.constants import SymmetricKeyAlgorithm
from pgpy.errors import PGPDecryptionError, PGPError

from ..errors import KeyNotFound, KeyStoreError, PassphraseInvalid
from .base import KeyStore, normalize_key_id

logger = logging.getLogger("skarchive.keystore.pgp")

KEY_SUFFIXES = {".asc", ".key", ".pub", ".gpg"}
CIPHER = SymmetricKeyAlgorithm.AES256


def _fingerprint(key: pgpy.PGPKey) -> str:
    return normalize_key_id(str(key.fingerprint))


def _check_passphrase(key: pgpy.PGPKey, key_id: str, passphrase: str) -> None:
    """Raise PassphraseInvalid unless the passphrase unlocks a protected key."""
    if not key.is_protected:
        return
    try:
        with key.unlock(passphrase):
            pass
    except PGPDecryptionError as exc:
        raise PassphraseInvalid(key_id) from exc


class PGPyKeyStore(KeyStore):
    """Key store backed by PGPy and a keyring directory."""

    def __init__(self, keyring: Optional[Path] = None):
        self.keyring = keyring.expanduser() if keyring else None
        self._keys: dict[str, pgpy.PGPKey] = {}
        self._loaded = False

    @property
    def name(self) -> str:
        return "pgpy"

    def add_key(self, key: pgpy.PGPKey) -> str:
        """Register a key object. Returns its fingerprint."""
        fpr = _fingerprint(key)
        existing = self._keys.get(fpr)
        if existing is None or (existing.is_public and not key.is_public):
            self._keys[fpr] = key
        return fpr

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if self.keyring is None:
            return
        if not self.keyring.is_dir():
            logger.warning("Keyring directory %s does not exist", self.keyring)
            return
        for key_file in sorted(self.keyring.iterdir()):
            if key_file.suffix not in KEY_SUFFIXES or not key_file.is_file():
                continue
            try:
                key, others = pgpy.PGPKey.from_file(str(key_file))
            except (PGPError, ValueError, OSError) as exc:
                logger.warning("Skipping unreadable key file %s: %s", key_file, exc)
                continue
            self.add_key(key)
            for other in others.values():
                if isinstance(other, pgpy.PGPKey) and other.is_primary:
                    self.add_key(other)
        logger.debug("Loaded %d keys from %s", len(self._keys), self.keyring)

    def _lookup(self, key_id: str) -> pgpy.PGPKey:
        self._ensure_loaded()
        wanted = normalize_key_id(key_id)
        if not wanted:
            raise KeyNotFound(key_id, "empty key id")
        for fpr, key in self._keys.items():
            if fpr == wanted or fpr.endswith(wanted):
                return key
            for sub_id in key.subkeys:
                if normalize_key_id(str(sub_id)).endswith(wanted):
                    return key
            if "@" in wanted and any(
                uid.email and uid.email.lower() == wanted for uid in key.userids
            ):
                return key
        raise KeyNotFound(key_id)

    def _secret(self, key_id: str) -> pgpy.PGPKey:
        key = self._lookup(key_id)
        if key.is_public:
            raise KeyNotFound(key_id, "no secret key")
        return key

    def resolve(self, key_id: str) -> str:
        return _fingerprint(self._lookup(key_id))

    def sign(self, data: bytes, key_id: str, passphrase: str) -> bytes:
        key = self._secret(key_id)
        _check_passphrase(key, key_id, passphrase)
        try:
            if key.is_protected:
                with key.unlock(passphrase):
                    sig = key.sign(data)
            else:
                sig = key.sign(data)
        except PGPError as exc:
            raise KeyStoreError(f"signing with {key_id} failed: {exc}") from exc
        return str(sig).encode("ascii")

    def verify(self, data: bytes, signature: bytes, key_id: str) -> bool:
        key = self._lookup(key_id)
        public = key if key.is_public else key.pubkey
        try:
            sig = pgpy.PGPSignature.from_blob(signature.decode("ascii"))
            return bool(public.verify(data, sig))
        except (PGPError, ValueError) as exc:
            logger.debug("Signature verification by %s failed: %s", key_id, exc)
            return False

    def encrypt(self, data: bytes, recipients: list[str]) -> bytes:
        if not recipients:
            raise KeyStoreError("no recipients given")
        publics = []
        for key_id in recipients:
            key = self._lookup(key_id)
            publics.append(key if key.is_public else key.pubkey)

        message = pgpy.PGPMessage.new(data)
        sessionkey = CIPHER.gen_key()
        try:
            for public in publics:
                message = public.encrypt(message, cipher=CIPHER, sessionkey=sessionkey)
        except PGPError as exc:
            raise KeyStoreError(f"encryption to {recipients} failed: {exc}") from exc
        finally:
            del sessionkey
        return bytes(message)

    def decrypt(self, data: bytes, key_id: str, passphrase: str = "") -> bytes:
        key = self._secret(key_id)
        try:
            message = pgpy.PGPMessage.from_blob(data)
        except (PGPError, ValueError) as exc:
            raise KeyStoreError(f"not a PGP message: {exc}") from exc
        _check_passphrase(key, key_id, passphrase)
        try:
            if key.is_protected:
                with key.unlock(passphrase):
                    plain = key.decrypt(message)
            else:
                plain = key.decrypt(message)
        except (PGPError, PGPDecryptionError) as exc:
            raise KeyStoreError(f"key {key_id} cannot decrypt this layer: {exc}") from exc
        if plain.is_encrypted:
            raise KeyStoreError(f"key {key_id} cannot decrypt this layer")
        content = plain.message
        if isinstance(content, str):
            return content.encode("utf-8")
        return bytes(content)
