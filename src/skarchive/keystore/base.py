"""
Key store interface.

The pipeline never touches key material directly. It asks a key store
to sign, verify, encrypt and decrypt, naming keys by id (fingerprint,
long or short key id, or user id email).
"""

from __future__ import annotations

from abc import ABC, abstractmethod


def normalize_key_id(key_id: str) -> str:
    """Uppercase hex without spaces or a 0x prefix. Emails pass through lowercased."""
    key_id = key_id.strip()
    if "@" in key_id:
        return key_id.lower()
    key_id = key_id.replace(" ", "").upper()
    if key_id.startswith("0X"):
        key_id = key_id[2:]
    return key_id


class KeyStore(ABC):
    """Abstract key store capability."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend name."""

    @abstractmethod
    def resolve(self, key_id: str) -> str:
        """Return the primary fingerprint for ``key_id``.

        Raises:
            KeyNotFound: If the key is unknown.
        """

    @abstractmethod
    def sign(self, data: bytes, key_id: str, passphrase: str) -> bytes:
        """Detached, ASCII-armored signature over ``data``.

        Raises:
            KeyNotFound: If no secret key matches ``key_id``.
            PassphraseInvalid: If ``passphrase`` does not unlock it.
        """

    @abstractmethod
    def verify(self, data: bytes, signature: bytes, key_id: str) -> bool:
        """Whether ``signature`` is a valid signature by ``key_id`` over ``data``."""

    @abstractmethod
    def encrypt(self, data: bytes, recipients: list[str]) -> bytes:
        """Encrypt ``data`` so that any one of ``recipients`` can decrypt it.

        Raises:
            KeyNotFound: If any recipient is unknown.
        """

    @abstractmethod
    def decrypt(self, data: bytes, key_id: str, passphrase: str = "") -> bytes:
        """Remove one encryption layer with the secret key ``key_id``.

        Raises:
            KeyNotFound: If no secret key matches ``key_id``.
            PassphraseInvalid: If ``passphrase`` does not unlock it.
            KeyStoreError: If the key cannot decrypt this message.
        """
