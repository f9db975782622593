"""Tests for the signing and layered encryption engine."""

from __future__ import annotations

import hashlib
from datetime import timedelta
from pathlib import Path

import pytest

from skarchive.encryption import EncryptionEngine, check_layers, peel
from skarchive.errors import ArtifactIOError, ConfigError, KeyNotFound, KeyStoreError, PassphraseInvalid
from skarchive.ledger import PipelineLedger
from skarchive.models import Artifact, ArtifactType, RetentionPolicy, SigningKey, Stage
from skarchive.scanner import TEMP_PREFIX

from conftest import LAYERS, SIGNER, FakeKeyStore, SlowKeyStore, open_envelope


@pytest.fixture
def ledger(dirs) -> PipelineLedger:
    return PipelineLedger(dirs["state"] / "ledger.json")


@pytest.fixture
def engine_for(keystore, dirs, ledger):
    def _make(signing=None, layers=None, store=None, retention=None, timeout=None):
        return EncryptionEngine(
            store or keystore,
            signing or SigningKey(key_id=SIGNER, passphrase="sign-pass"),
            layers if layers is not None else LAYERS,
            dirs["staging"],
            ledger,
            retention,
            timeout=timeout,
        )

    return _make


@pytest.fixture
def artifact(dirs, make_file, now) -> Artifact:
    path = make_file(dirs["ttyrec"] / "alice" / "2026-02-01.ttyrec", 20, b"rec-bytes")
    return Artifact(
        path=path, artifact_type=ArtifactType.TTYREC, root=dirs["ttyrec"],
        created_at=now - timedelta(days=20), size_bytes=9,
    )


def _staged_files(staging: Path) -> list[str]:
    if not staging.exists():
        return []
    return sorted(str(p.relative_to(staging)) for p in staging.rglob("*") if p.is_file())


class TestCheckLayers:
    def test_empty(self):
        with pytest.raises(ConfigError, match="no recipient layers"):
            check_layers([])

    def test_blank_layer(self):
        with pytest.raises(ConfigError, match="layer 2"):
            check_layers([["A"], ["  "]])

    def test_ok(self):
        check_layers(LAYERS)


class TestEncrypt:
    def test_writes_ciphertext_and_signature(self, engine_for, artifact, dirs, ledger, now):
        entry = engine_for().encrypt(artifact, now)

        assert _staged_files(dirs["staging"]) == [
            "ttyrec/alice/2026-02-01.ttyrec.gpg",
            "ttyrec/alice/2026-02-01.ttyrec.sig",
        ]
        assert entry.stage == Stage.ENCRYPTED
        assert ledger.stage_of(artifact.path) == Stage.ENCRYPTED
        assert entry.size_bytes == 9
        assert Path(entry.encrypted_path).exists()
        assert not artifact.path.exists()

    def test_first_layer_is_innermost(self, engine_for, artifact, now, keystore):
        entry = engine_for().encrypt(artifact, now)
        outer = open_envelope(Path(entry.encrypted_path).read_bytes())
        assert outer["to"] == ["CCCC3333", "DDDD4444"]

        middle = keystore.decrypt(Path(entry.encrypted_path).read_bytes(), "DDDD4444")
        inner = open_envelope(middle)
        assert inner["to"] == ["AAAA1111", "BBBB2222"]
        assert keystore.decrypt(middle, "AAAA1111") == b"rec-bytes"

    def test_signature_over_plaintext(self, engine_for, artifact, now, keystore):
        entry = engine_for().encrypt(artifact, now)
        signature = Path(entry.signature_path).read_bytes()
        assert keystore.verify(b"rec-bytes", signature, SIGNER)
        assert not keystore.verify(Path(entry.encrypted_path).read_bytes(), signature, SIGNER)

    def test_wrong_passphrase_leaves_nothing(self, engine_for, artifact, dirs, ledger, now):
        engine = engine_for(signing=SigningKey(key_id=SIGNER, passphrase="wrong"))
        with pytest.raises(PassphraseInvalid):
            engine.encrypt(artifact, now)
        assert _staged_files(dirs["staging"]) == []
        assert ledger.stage_of(artifact.path) == Stage.PLAINTEXT
        assert artifact.path.exists()

    def test_unknown_recipient_leaves_nothing(self, engine_for, artifact, dirs, ledger, now):
        engine = engine_for(layers=[["AAAA1111"], ["EEEE9999"]])
        with pytest.raises(KeyNotFound) as info:
            engine.encrypt(artifact, now)
        assert info.value.key_id == "EEEE9999"
        assert _staged_files(dirs["staging"]) == []
        assert ledger.stage_of(artifact.path) == Stage.PLAINTEXT

    def test_keep_plaintext(self, engine_for, artifact, now):
        engine = engine_for(retention=RetentionPolicy(remove_plaintext=False))
        engine.encrypt(artifact, now)
        assert artifact.path.exists()

    def test_unreadable_plaintext(self, engine_for, artifact, now):
        artifact.path.unlink()
        with pytest.raises(ArtifactIOError, match="cannot read"):
            engine_for().encrypt(artifact, now)

    def test_digest_recorded(self, engine_for, artifact, ledger, now):
        engine_for().encrypt(artifact, now)
        digest = hashlib.sha256(b"rec-bytes").hexdigest()
        assert ledger.find_by_digest(digest).path == str(artifact.path)


    def test_slow_sealing_fails_the_artifact(self, engine_for, artifact, dirs, ledger, now):
        engine = engine_for(store=SlowKeyStore(0.1), timeout=0.05)
        with pytest.raises(KeyStoreError, match="exceeded"):
            engine.encrypt(artifact, now)
        assert _staged_files(dirs["staging"]) == []
        assert ledger.stage_of(artifact.path) == Stage.PLAINTEXT
        assert artifact.path.exists()

    def test_fast_sealing_within_limit(self, engine_for, artifact, now):
        assert engine_for(timeout=30).encrypt(artifact, now).stage == Stage.ENCRYPTED


class TestOrphans:
    def test_discard_orphans(self, engine_for, dirs):
        nested = dirs["staging"] / "ttyrec" / "bob"
        nested.mkdir(parents=True)
        (nested / (TEMP_PREFIX + "abc")).write_bytes(b"partial")
        (nested / "keep.ttyrec.gpg").write_bytes(b"done")

        assert engine_for().discard_orphans() == 1
        assert _staged_files(dirs["staging"]) == ["ttyrec/bob/keep.ttyrec.gpg"]

    def test_no_staging_dir(self, engine_for):
        assert engine_for().discard_orphans() == 0


class TestPeel:
    @pytest.fixture
    def sealed(self, engine_for):
        ciphertext, _ = engine_for().seal(b"secret session")
        return ciphertext

    def test_outermost_first(self, keystore, sealed):
        assert peel(keystore, sealed, [("CCCC3333", ""), ("AAAA1111", "")]) == b"secret session"

    def test_any_key_of_a_layer(self, keystore, sealed):
        assert peel(keystore, sealed, [("DDDD4444", ""), ("BBBB2222", "")]) == b"secret session"

    def test_wrong_order(self, keystore, sealed):
        with pytest.raises(KeyStoreError):
            peel(keystore, sealed, [("AAAA1111", ""), ("CCCC3333", "")])

    def test_missing_layer_key(self):
        store = FakeKeyStore()
        engine = EncryptionEngine(
            store, SigningKey(key_id=SIGNER, passphrase="sign-pass"), LAYERS,
            Path("/nonexistent"), ledger=None,
        )
        ciphertext, _ = engine.seal(b"x")
        only_outer = FakeKeyStore({"CCCC3333": ""})
        inner = peel(only_outer, ciphertext, [("CCCC3333", "")])
        assert inner != b"x"
        with pytest.raises(KeyNotFound):
            peel(only_outer, inner, [("AAAA1111", "")])
