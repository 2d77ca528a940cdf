"""Tests for the Signer — key formats, signing and verification."""

from __future__ import annotations

import json
from pathlib import Path

import nacl.pwhash
import pytest

from promote_release.core.errors import SigningError
from promote_release.models.release import Artifact, Manifest, PublicArtifact
from promote_release.stages.signer import (
    Signer,
    generate_keypair,
    key_fingerprint,
    seal_signing_key,
    signing_key,
    verify_pgp_signature,
    verify_signature,
)

FAST_KDF = {
    "opslimit": nacl.pwhash.argon2id.OPSLIMIT_MIN,
    "memlimit": nacl.pwhash.argon2id.MEMLIMIT_MIN,
}


@pytest.fixture
def manifest(config) -> Manifest:
    body = b'date = "2024-05-01"\nmanifest-version = "2"\n'
    return Manifest(
        product=config.product,
        channel="nightly",
        date="2024-05-01",
        commit="0" * 40,
        version="nightly",
        file_name="channel-rust-nightly.toml",
        body=body,
        sha256="",
    )


@pytest.fixture
def sealed_key(tmp_path: Path) -> tuple[Path, Path, str]:
    """``(key_file, password_file, public_key_hex)`` for a sealed envelope."""
    seed_hex, public_hex = generate_keypair()
    key_file = tmp_path / "sealed.key"
    key_file.write_text(seal_signing_key(seed_hex, b"correct horse", **FAST_KDF))
    password_file = tmp_path / "password"
    password_file.write_text("correct horse\n")
    return key_file, password_file, public_hex


class TestSigner:
    def test_sign_and_verify(self, config, manifest, signing_keypair):
        signature = Signer(config).sign(manifest)

        assert signature.public_key_hex == signing_keypair[1]
        assert len(signature.signature_hex) == 128
        assert verify_signature(manifest.body, signature.signature_hex, signing_keypair[1])

    def test_tampered_body_fails_verification(self, config, manifest, signing_keypair):
        signature = Signer(config).sign(manifest)
        assert not verify_signature(manifest.body + b"\n", signature.signature_hex, signing_keypair[1])

    def test_wrong_key_fails_verification(self, config, manifest):
        signature = Signer(config).sign(manifest)
        _, other_public = generate_keypair()
        assert not verify_signature(manifest.body, signature.signature_hex, other_public)

    @pytest.mark.parametrize(("sig", "key"), [("", "00" * 32), ("zz", "00" * 32), ("00" * 64, "abc")])
    def test_malformed_input_is_not_valid(self, sig: str, key: str):
        assert verify_signature(b"data", sig, key) is False

    def test_signature_file_contents(self, config, manifest):
        signature = Signer(config).sign(manifest)
        assert signature.as_bytes() == f"{signature.signature_hex}\n".encode()

    def test_fingerprint(self, config, manifest, signing_keypair):
        signature = Signer(config).sign(manifest)
        assert signature.key_fingerprint == key_fingerprint(signing_keypair[1])
        assert len(signature.key_fingerprint) == 16
        assert key_fingerprint("") == ""

    def test_empty_manifest_refused(self, config, manifest):
        with pytest.raises(SigningError):
            Signer(config).sign(manifest.model_copy(update={"body": b""}))


class TestKeyLoading:
    def test_sealed_envelope(self, make_config, manifest, sealed_key):
        key_file, password_file, public_hex = sealed_key
        config = make_config(signing_key_file=key_file, signing_password_file=password_file)

        signature = Signer(config).sign(manifest)

        assert verify_signature(manifest.body, signature.signature_hex, public_hex)

    def test_wrong_passphrase(self, make_config, manifest, sealed_key, tmp_path: Path):
        key_file, _, _ = sealed_key
        wrong = tmp_path / "wrong"
        wrong.write_text("battery staple")
        config = make_config(signing_key_file=key_file, signing_password_file=wrong)

        with pytest.raises(SigningError, match="wrong passphrase"):
            Signer(config).sign(manifest)

    def test_envelope_without_password_file(self, make_config, manifest, sealed_key):
        config = make_config(signing_key_file=sealed_key[0])
        with pytest.raises(SigningError, match="no signing password file"):
            Signer(config).sign(manifest)

    def test_unsupported_kdf(self, make_config, manifest, sealed_key):
        key_file, password_file, _ = sealed_key
        envelope = json.loads(key_file.read_text())
        envelope["kdf"] = "scrypt"
        key_file.write_text(json.dumps(envelope))
        config = make_config(signing_key_file=key_file, signing_password_file=password_file)

        with pytest.raises(SigningError, match="kdf"):
            Signer(config).sign(manifest)

    def test_missing_key_file(self, make_config, manifest, tmp_path: Path):
        config = make_config(signing_key_file=tmp_path / "absent.key")
        with pytest.raises(SigningError, match="cannot read"):
            Signer(config).sign(manifest)

    def test_no_key_configured(self, make_config, manifest):
        config = make_config(signing_key_file=None)
        with pytest.raises(SigningError, match="no signing key file"):
            Signer(config).sign(manifest)

    def test_short_seed(self, make_config, manifest, tmp_path: Path):
        key_file = tmp_path / "short.key"
        key_file.write_text("00" * 16)
        with pytest.raises(SigningError, match="32 bytes"):
            Signer(make_config(signing_key_file=key_file)).sign(manifest)

    def test_scoped_key(self, config, signing_keypair):
        with signing_key(config) as key:
            assert key.verify_key.encode().hex() == signing_keypair[1]


class TestOpenPgp:
    def _config(self, make_config, gpg_key, **overrides):
        key_file, password_file, _ = gpg_key
        return make_config(gpg_key_file=key_file, gpg_password_file=password_file, **overrides)

    def test_manifest_gets_armored_signature(self, make_config, gpg_key, manifest):
        signature = Signer(self._config(make_config, gpg_key)).sign(manifest)

        assert signature.pgp_armored.startswith("-----BEGIN PGP SIGNATURE-----")
        assert signature.pgp_fingerprint
        assert "BEGIN PGP PUBLIC KEY BLOCK" in signature.pgp_public_key
        assert signature.artifact_pgp == {}
        config = self._config(make_config, gpg_key)
        assert verify_pgp_signature(config, manifest.body, signature.pgp_armored, gpg_key[2])
        assert not verify_pgp_signature(
            config, manifest.body + b"x", signature.pgp_armored, gpg_key[2]
        )

    def test_every_public_file_is_signed(self, make_config, gpg_key, manifest, tmp_path: Path):
        config = self._config(make_config, gpg_key)
        files = []
        for component in ("rustc", "cargo"):
            name = f"{component}-nightly-x86_64-unknown-linux-gnu.tar.xz"
            path = tmp_path / name
            path.write_bytes(name.encode() * 100)
            files.append(
                Artifact(
                    component=component,
                    target="x86_64-unknown-linux-gnu",
                    file_name=name,
                    source_key=f"rustc-builds/c/{name}",
                    path=path,
                    size_bytes=path.stat().st_size,
                    sha256="0" * 64,
                )
            )
        public = [PublicArtifact(source=f, primary=f) for f in files]

        signature = Signer(config).sign(manifest, public)

        assert sorted(signature.artifact_pgp) == sorted(f.file_name for f in files)
        for f in files:
            armored = signature.artifact_pgp[f.file_name]
            assert verify_pgp_signature(config, f.path.read_bytes(), armored, gpg_key[2])

    def test_unparseable_public_key_is_rejected(self, make_config, gpg_key, manifest):
        config = self._config(make_config, gpg_key)
        signature = Signer(config).sign(manifest)
        assert not verify_pgp_signature(config, manifest.body, signature.pgp_armored, "not a key")

    def test_wrong_password(self, make_config, gpg_key, manifest, tmp_path: Path):
        wrong = tmp_path / "wrong-password"
        wrong.write_text("not the passphrase\n")
        config = make_config(gpg_key_file=gpg_key[0], gpg_password_file=wrong)

        with pytest.raises(SigningError, match="could not sign|no OpenPGP secret key"):
            Signer(config).sign(manifest)

    def test_missing_password_file(self, make_config, gpg_key, manifest):
        config = make_config(gpg_key_file=gpg_key[0])
        with pytest.raises(SigningError, match="no gpg password file configured"):
            Signer(config).sign(manifest)

    def test_public_key_is_not_a_signing_key(self, make_config, gpg_key, manifest, tmp_path: Path):
        public_only = tmp_path / "public.asc"
        public_only.write_text(gpg_key[2])
        config = make_config(gpg_key_file=public_only, gpg_password_file=gpg_key[1])

        with pytest.raises(SigningError, match="no OpenPGP secret key"):
            Signer(config).sign(manifest)

    def test_missing_gpg_binary(self, make_config, gpg_key, manifest):
        config = self._config(make_config, gpg_key, gpg_binary="/nonexistent/gpg")
        with pytest.raises(SigningError, match="cannot run"):
            Signer(config).sign(manifest)
