"""Shared test fixtures for skarchive."""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

import pytest

from skarchive.errors import KeyNotFound, KeyStoreError, PassphraseInvalid
from skarchive.keystore.base import KeyStore, normalize_key_id
from skarchive.models import ArchiveConfig, ArtifactType, SigningKey, SourceConfig

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
SIGNER = "5161A7E0"
LAYERS = [["AAAA1111", "BBBB2222"], ["CCCC3333", "DDDD4444"]]
FAKE_MAGIC = b"FAKEPGP\n"


class FakeKeyStore(KeyStore):
    """In-memory key store with the same contract as the real backends.

    "Ciphertext" is a JSON envelope naming its recipients, so tests can
    look inside a layer and check who may open it.
    """

    def __init__(self, keys: Optional[dict[str, str]] = None):
        keys = keys if keys is not None else {
            SIGNER: "sign-pass",
            **{k: "" for layer in LAYERS for k in layer},
        }
        self.keys = {normalize_key_id(k): p for k, p in keys.items()}
        self.sign_calls = 0
        self.encrypt_calls = 0

    @property
    def name(self) -> str:
        return "fake"

    def resolve(self, key_id: str) -> str:
        wanted = normalize_key_id(key_id)
        if wanted not in self.keys:
            raise KeyNotFound(key_id)
        return wanted

    def _unlock(self, key_id: str, passphrase: str) -> str:
        fpr = self.resolve(key_id)
        if self.keys[fpr] != passphrase:
            raise PassphraseInvalid(key_id)
        return fpr

    def sign(self, data: bytes, key_id: str, passphrase: str) -> bytes:
        fpr = self._unlock(key_id, passphrase)
        self.sign_calls += 1
        return f"SIG:{fpr}:{hashlib.sha256(data).hexdigest()}".encode()

    def verify(self, data: bytes, signature: bytes, key_id: str) -> bool:
        try:
            fpr = self.resolve(key_id)
        except KeyNotFound:
            return False
        return signature == f"SIG:{fpr}:{hashlib.sha256(data).hexdigest()}".encode()

    def encrypt(self, data: bytes, recipients: list[str]) -> bytes:
        if not recipients:
            raise KeyStoreError("no recipients given")
        to = [self.resolve(r) for r in recipients]
        self.encrypt_calls += 1
        envelope = {"to": to, "payload": base64.b64encode(data).decode()}
        return FAKE_MAGIC + json.dumps(envelope).encode()

    def decrypt(self, data: bytes, key_id: str, passphrase: str = "") -> bytes:
        fpr = self._unlock(key_id, passphrase)
        envelope = open_envelope(data)
        if fpr not in envelope["to"]:
            raise KeyStoreError(f"key {key_id} cannot decrypt this layer")
        return base64.b64decode(envelope["payload"])


def open_envelope(data: bytes) -> dict:
    """Parse one fake layer without decrypting it."""
    if not data.startswith(FAKE_MAGIC):
        raise KeyStoreError("not a fake PGP message")
    return json.loads(data[len(FAKE_MAGIC):])


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def keystore() -> FakeKeyStore:
    return FakeKeyStore()


@pytest.fixture
def dirs(tmp_path: Path) -> dict[str, Path]:
    """Source roots, staging and archive home under tmp_path."""
    layout = {
        "ttyrec": tmp_path / "ttyrec",
        "home": tmp_path / "home",
        "staging": tmp_path / "encrypted",
        "state": tmp_path / "state",
        "remote": tmp_path / "remote",
    }
    for key in ("ttyrec", "home", "remote"):
        layout[key].mkdir()
    return layout


@pytest.fixture
def make_file(now: datetime) -> Callable[..., Path]:
    """Write a file whose mtime is ``age_days`` before NOW."""

    def _make(path: Path, age_days: float, content: bytes = b"session data\n") -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        ts = (now - timedelta(days=age_days)).timestamp()
        os.utime(path, (ts, ts))
        return path

    return _make


@pytest.fixture
def make_config(dirs: dict[str, Path]) -> Callable[..., ArchiveConfig]:
    """Build an ArchiveConfig pointing at the tmp layout."""

    def _make(destination: Optional[str] = None, **overrides) -> ArchiveConfig:
        data = {
            "home": dirs["state"],
            "staging_dir": dirs["staging"],
            "sources": {
                ArtifactType.TTYREC: SourceConfig(
                    root=dirs["ttyrec"], patterns=["*.ttyrec"], delay_days=14
                ),
                ArtifactType.USERLOG: SourceConfig(
                    root=dirs["home"], patterns=["*-log-??????.log"], delay_days=31
                ),
                ArtifactType.SQLITE: SourceConfig(
                    root=dirs["home"], patterns=["*-log-??????.sqlite"], delay_days=31
                ),
            },
            "signing_key": SigningKey(key_id=SIGNER, passphrase="sign-pass"),
            "recipients": [list(layer) for layer in LAYERS],
            "logging": {"syslog_facility": None},
        }
        sync = {"command": "cp {path} {destination}", "probe_command": "test -d {destination}"}
        if destination is not None:
            sync["destination"] = destination
        sync.update(overrides.pop("sync", {}))
        data["sync"] = sync
        data.update(overrides)
        return ArchiveConfig(**data)

    return _make


@pytest.fixture(autouse=True)
def _reset_package_logger():
    """Undo handlers configure_logging attaches to the package logger."""
    logger = logging.getLogger("skarchive")
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield
    for handler in list(logger.handlers):
        if handler not in handlers:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(level)
    logger.propagate = propagate


class SlowKeyStore(FakeKeyStore):
    """FakeKeyStore whose encrypt call takes ``delay`` seconds."""

    def __init__(self, delay: float, **kwargs):
        super().__init__(**kwargs)
        self.delay = delay

    def encrypt(self, data: bytes, recipients: list[str]) -> bytes:
        time.sleep(self.delay)
        return super().encrypt(data, recipients)
