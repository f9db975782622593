"""
Key stores -- where signing and recipient keys live.

Backends: PGPy (a directory of armored keys, pure Python) and GnuPG
(the system gpg binary and its home directory).
"""

from __future__ import annotations

from typing import Optional

from ..errors import ConfigError
from ..models import KeyStoreConfig
from .base import KeyStore, normalize_key_id

__all__ = ["KeyStore", "create_keystore", "normalize_key_id"]


def create_keystore(config: KeyStoreConfig, timeout: Optional[float] = None) -> KeyStore:
    """Factory function to create the configured key store.

    Args:
        config: Key store section of the archive config.
        timeout: Bound on a single subprocess-backed key operation.

    Returns:
        Instantiated KeyStore.

    Raises:
        ConfigError: If the backend is not supported.
    """
    if config.backend == "pgpy":
        from .pgp import PGPyKeyStore

        return PGPyKeyStore(config.keyring)
    if config.backend == "gnupg":
        from .gnupg import GnuPGKeyStore

        return GnuPGKeyStore(config.gnupg_home, config.gpg_binary, timeout=timeout)
    raise ConfigError(f"unsupported key store backend: {config.backend}")
