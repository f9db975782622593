"""Tests for the PGPy key store with real keys."""

from __future__ import annotations

from pathlib import Path

import pytest

pgpy = pytest.importorskip("pgpy")

from pgpy.constants import (  # noqa: E402
    CompressionAlgorithm,
    HashAlgorithm,
    KeyFlags,
    PubKeyAlgorithm,
    SymmetricKeyAlgorithm,
)

from skarchive.encryption import EncryptionEngine, peel  # noqa: E402
from skarchive.errors import KeyNotFound, KeyStoreError, PassphraseInvalid  # noqa: E402
from skarchive.keystore import create_keystore  # noqa: E402
from skarchive.keystore.pgp import PGPyKeyStore  # noqa: E402
from skarchive.models import KeyStoreConfig, SigningKey  # noqa: E402


def _new_key(name: str, passphrase: str = "") -> pgpy.PGPKey:
    key = pgpy.PGPKey.new(PubKeyAlgorithm.RSAEncryptOrSign, 2048)
    uid = pgpy.PGPUID.new(name, email=f"{name.lower()}@example.org")
    key.add_uid(
        uid,
        usage={KeyFlags.Sign, KeyFlags.EncryptCommunications, KeyFlags.EncryptStorage},
        hashes=[HashAlgorithm.SHA256],
        ciphers=[SymmetricKeyAlgorithm.AES256],
        compression=[CompressionAlgorithm.Uncompressed],
    )
    if passphrase:
        key.protect(passphrase, SymmetricKeyAlgorithm.AES256, HashAlgorithm.SHA256)
    return key


@pytest.fixture(scope="module")
def keys() -> dict[str, pgpy.PGPKey]:
    return {
        "signer": _new_key("Signer", "sign-pass"),
        "a": _new_key("Alpha"),
        "b": _new_key("Bravo", "bravo-pass"),
        "c": _new_key("Charlie"),
        "d": _new_key("Delta"),
    }


@pytest.fixture
def store(keys) -> PGPyKeyStore:
    ks = PGPyKeyStore()
    for key in keys.values():
        ks.add_key(key)
    return ks


def _fpr(key) -> str:
    return str(key.fingerprint).replace(" ", "")


class TestResolve:
    def test_by_fingerprint_suffix_and_email(self, store, keys):
        fpr = _fpr(keys["a"])
        assert store.resolve(fpr) == fpr
        assert store.resolve(fpr[-16:].lower()) == fpr
        assert store.resolve("0x" + fpr[-8:]) == fpr
        assert store.resolve("Alpha@Example.org") == fpr

    def test_unknown(self, store):
        with pytest.raises(KeyNotFound):
            store.resolve("DEADBEEFDEADBEEF")


class TestSignVerify:
    def test_round_trip(self, store, keys):
        signer = _fpr(keys["signer"])
        sig = store.sign(b"audit data", signer, "sign-pass")
        assert store.verify(b"audit data", sig, signer)
        assert not store.verify(b"tampered", sig, signer)
        assert not store.verify(b"audit data", sig, _fpr(keys["a"]))

    def test_wrong_passphrase(self, store, keys):
        with pytest.raises(PassphraseInvalid):
            store.sign(b"x", _fpr(keys["signer"]), "nope")

    def test_public_only_cannot_sign(self, keys):
        ks = PGPyKeyStore()
        ks.add_key(keys["signer"].pubkey)
        with pytest.raises(KeyNotFound, match="no secret key"):
            ks.sign(b"x", _fpr(keys["signer"]), "sign-pass")


class TestLayers:
    def test_any_recipient_opens_a_layer(self, store, keys):
        ct = store.encrypt(b"payload", [_fpr(keys["a"]), _fpr(keys["b"])])
        assert store.decrypt(ct, _fpr(keys["a"])) == b"payload"
        assert store.decrypt(ct, _fpr(keys["b"]), "bravo-pass") == b"payload"
        with pytest.raises(KeyStoreError):
            store.decrypt(ct, _fpr(keys["c"]))

    def test_wrong_passphrase_on_decrypt(self, store, keys):
        ct = store.encrypt(b"payload", [_fpr(keys["b"])])
        with pytest.raises(PassphraseInvalid):
            store.decrypt(ct, _fpr(keys["b"]), "wrong")

    def test_not_a_message(self, store, keys):
        with pytest.raises(KeyStoreError):
            store.decrypt(b"plain bytes", _fpr(keys["a"]))

    def test_engine_layering(self, store, keys, tmp_path):
        layers = [[_fpr(keys["a"]), _fpr(keys["b"])], [_fpr(keys["c"]), _fpr(keys["d"])]]
        engine = EncryptionEngine(
            store, SigningKey(key_id=_fpr(keys["signer"]), passphrase="sign-pass"),
            layers, tmp_path, ledger=None,
        )
        ciphertext, signature = engine.seal(b"session bytes")

        for outer, inner in [("c", "a"), ("d", "b"), ("c", "b"), ("d", "a")]:
            pairs = [
                (_fpr(keys[outer]), ""),
                (_fpr(keys[inner]), "bravo-pass" if inner == "b" else ""),
            ]
            assert peel(store, ciphertext, pairs) == b"session bytes"

        with pytest.raises(KeyStoreError):
            peel(store, ciphertext, [(_fpr(keys["a"]), "")])
        assert store.verify(b"session bytes", signature, _fpr(keys["signer"]))


class TestKeyring:
    def test_loads_armored_files(self, keys, tmp_path: Path):
        ring = tmp_path / "keyring"
        ring.mkdir()
        (ring / "signer.asc").write_text(str(keys["signer"]))
        (ring / "alpha.pub").write_text(str(keys["a"].pubkey))
        (ring / "notes.txt").write_text("not a key")

        store = create_keystore(KeyStoreConfig(backend="pgpy", keyring=ring))
        assert store.name == "pgpy"
        assert store.resolve(_fpr(keys["a"])) == _fpr(keys["a"])
        sig = store.sign(b"x", _fpr(keys["signer"]), "sign-pass")
        assert store.verify(b"x", sig, _fpr(keys["signer"]))
        with pytest.raises(KeyNotFound):
            store.decrypt(b"x", _fpr(keys["a"]))

    def test_missing_keyring(self, tmp_path: Path):
        store = PGPyKeyStore(tmp_path / "nope")
        with pytest.raises(KeyNotFound):
            store.resolve("ABCD")
