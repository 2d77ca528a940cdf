"""Signer — detached signatures over manifest and artifact bytes.

Ed25519 key file formats
------------------------
1. **Hex seed**: 64 hex characters, the raw 32-byte Ed25519 seed.

2. **Sealed envelope**: JSON produced by ``seal_signing_key()``::

       {"kdf": "argon2id", "salt": "<hex>", "opslimit": N, "memlimit": N,
        "ciphertext": "<hex>"}

   The seed is encrypted with a ``SecretBox`` whose key is derived from the
   passphrase in ``signing_password_file``.

OpenPGP
-------
When ``gpg_key_file`` is set it must hold an armored secret key, unlocked
by the passphrase in ``gpg_password_file``. The key is imported into a
throwaway GnuPG home that only lives for one ``pgp_keyring()`` block, and
produces armored detached ``.asc`` signatures (SHA-512 digests) for the
manifest and every public file.

Keys are only held inside ``signing_key()`` / ``pgp_keyring()``; any
failure is a ``SigningError`` and nothing is published unsigned.
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
import tempfile
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import gnupg
import nacl.pwhash
import nacl.secret
import nacl.signing
import nacl.utils
from nacl.exceptions import BadSignatureError, CryptoError

from promote_release.config import PromoteConfig
from promote_release.core.errors import SigningError
from promote_release.core.parallel import run_parallel
from promote_release.models.release import Artifact, Manifest, PublicArtifact, Signature

logger = logging.getLogger(__name__)

SEED_BYTES = 32
ENVELOPE_KDF = "argon2id"
PGP_DIGEST = "SHA512"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def key_fingerprint(public_key_hex: str) -> str:
    """First 16 hex chars of SHA-256 over the raw public key bytes."""
    if not public_key_hex:
        return ""
    try:
        raw = bytes.fromhex(public_key_hex)
    except ValueError:
        raw = public_key_hex.encode("utf-8")
    return hashlib.sha256(raw).hexdigest()[:16]


def generate_keypair() -> tuple[str, str]:
    """Return ``(seed_hex, public_key_hex)`` for a fresh Ed25519 key."""
    sk = nacl.signing.SigningKey.generate()
    return sk.encode().hex(), sk.verify_key.encode().hex()


def seal_signing_key(
    seed_hex: str,
    password: bytes,
    *,
    opslimit: int = nacl.pwhash.argon2id.OPSLIMIT_MODERATE,
    memlimit: int = nacl.pwhash.argon2id.MEMLIMIT_MODERATE,
) -> str:
    """Encrypt a hex seed into the sealed-envelope JSON format."""
    salt = nacl.utils.random(nacl.pwhash.argon2id.SALTBYTES)
    key = nacl.pwhash.argon2id.kdf(
        nacl.secret.SecretBox.KEY_SIZE, password, salt, opslimit=opslimit, memlimit=memlimit
    )
    ciphertext = nacl.secret.SecretBox(key).encrypt(bytes.fromhex(seed_hex))
    return json.dumps(
        {
            "kdf": ENVELOPE_KDF,
            "salt": salt.hex(),
            "opslimit": opslimit,
            "memlimit": memlimit,
            "ciphertext": bytes(ciphertext).hex(),
        },
        indent=2,
    )


def _open_envelope(envelope: dict, password: bytes) -> bytes:
    if envelope.get("kdf") != ENVELOPE_KDF:
        raise SigningError(f"unsupported key envelope kdf: {envelope.get('kdf')!r}")
    try:
        key = nacl.pwhash.argon2id.kdf(
            nacl.secret.SecretBox.KEY_SIZE,
            password,
            bytes.fromhex(envelope["salt"]),
            opslimit=int(envelope["opslimit"]),
            memlimit=int(envelope["memlimit"]),
        )
        return nacl.secret.SecretBox(key).decrypt(bytes.fromhex(envelope["ciphertext"]))
    except CryptoError as exc:
        raise SigningError("could not decrypt signing key: wrong passphrase?") from exc
    except (KeyError, ValueError, TypeError) as exc:
        raise SigningError(f"malformed signing key envelope: {exc}") from exc


def _read_text(path: Path | None, what: str) -> str:
    if path is None:
        raise SigningError(f"no {what} configured")
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SigningError(f"cannot read {what} {path}: {exc}") from exc


def _load_seed(config: PromoteConfig) -> bytes:
    text = _read_text(config.signing_key_file, "signing key file").strip()
    if text.startswith("{"):
        try:
            envelope = json.loads(text)
        except ValueError as exc:
            raise SigningError(f"malformed signing key envelope: {exc}") from exc
        password = _read_text(config.signing_password_file, "signing password file")
        seed = _open_envelope(envelope, password.rstrip("\r\n").encode("utf-8"))
    else:
        try:
            seed = bytes.fromhex(text)
        except ValueError as exc:
            raise SigningError("signing key file is neither hex nor an envelope") from exc
    if len(seed) != SEED_BYTES:
        raise SigningError(f"signing key must be {SEED_BYTES} bytes, got {len(seed)}")
    return seed


@contextmanager
def signing_key(config: PromoteConfig) -> Iterator[nacl.signing.SigningKey]:
    """Load the signing key for the duration of the block only."""
    seed = _load_seed(config)
    key = nacl.signing.SigningKey(seed)
    try:
        yield key
    finally:
        del key, seed


# ---------------------------------------------------------------------------
# OpenPGP
# ---------------------------------------------------------------------------


@contextmanager
def _gnupg_home(config: PromoteConfig) -> Iterator[gnupg.GPG]:
    # Short path: gpg-agent socket paths have a length limit.
    home = tempfile.mkdtemp(prefix="prgpg-")
    try:
        try:
            gpg = gnupg.GPG(gpgbinary=config.gpg_binary, gnupghome=home)
        except (OSError, ValueError) as exc:
            raise SigningError(f"cannot run {config.gpg_binary}: {exc}") from exc
        gpg.encoding = "utf-8"
        yield gpg
    finally:
        shutil.rmtree(home, ignore_errors=True)


@dataclass(frozen=True)
class PgpKeyring:
    """An unlocked OpenPGP signing key inside a throwaway GnuPG home."""

    gpg: gnupg.GPG
    fingerprint: str
    passphrase: str

    def _check(self, result, what: str) -> str:
        if not result or not result.data:
            status = getattr(result, "status", None) or "no signature produced"
            raise SigningError(f"gpg could not sign {what}: {status}")
        return result.data.decode("ascii")

    def _options(self) -> dict:
        return {
            "keyid": self.fingerprint,
            "passphrase": self.passphrase,
            "detach": True,
            "binary": False,
            "extra_args": ["--digest-algo", PGP_DIGEST],
        }

    def sign_bytes(self, data: bytes, what: str) -> str:
        """Armored detached signature over ``data``."""
        return self._check(self.gpg.sign(data, **self._options()), what)

    def sign_file(self, path: Path) -> str:
        with path.open("rb") as fh:
            result = self.gpg.sign_file(fh, **self._options())
        return self._check(result, path.name)

    def public_key(self) -> str:
        return str(self.gpg.export_keys(self.fingerprint))


@contextmanager
def pgp_keyring(config: PromoteConfig) -> Iterator[PgpKeyring]:
    """Import the armored secret key for the duration of the block only."""
    armored = _read_text(config.gpg_key_file, "gpg key file")
    passphrase = _read_text(config.gpg_password_file, "gpg password file").strip()
    with _gnupg_home(config) as gpg:
        imported = gpg.import_keys(armored, passphrase=passphrase)
        fingerprints = sorted(set(imported.fingerprints or []))
        if len(fingerprints) != 1:
            raise SigningError(
                f"expected one OpenPGP key in {config.gpg_key_file}, found {len(fingerprints)}"
            )
        fingerprint = fingerprints[0]
        secret = {key["fingerprint"] for key in gpg.list_keys(True)}
        if fingerprint not in secret:
            raise SigningError(f"{config.gpg_key_file} holds no OpenPGP secret key")
        yield PgpKeyring(gpg=gpg, fingerprint=fingerprint, passphrase=passphrase)


def verify_pgp_signature(
    config: PromoteConfig, data: bytes, armored_signature: str, public_key: str
) -> bool:
    """True when ``armored_signature`` is a valid detached signature of
    ``data`` by the key in the armored ``public_key``.
    """
    if not armored_signature.strip():
        return False
    with _gnupg_home(config) as gpg:
        imported = gpg.import_keys(public_key)
        if not imported.fingerprints:
            return False
        with tempfile.NamedTemporaryFile(
            "w", suffix=".asc", dir=gpg.gnupghome, delete=False
        ) as fh:
            fh.write(armored_signature)
        verified = gpg.verify_data(fh.name, data)
        return bool(verified.valid) and verified.pubkey_fingerprint in imported.fingerprints


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


class Signer:
    """Signs manifests, and with an OpenPGP key also every public file."""

    def __init__(self, config: PromoteConfig) -> None:
        self._config = config

    def sign(
        self, manifest: Manifest, artifacts: Sequence[PublicArtifact] = ()
    ) -> Signature:
        if not manifest.body:
            raise SigningError("refusing to sign an empty manifest")
        with signing_key(self._config) as key:
            signature_hex = key.sign(manifest.body).signature.hex()
            public_key_hex = key.verify_key.encode().hex()
        fingerprint = key_fingerprint(public_key_hex)
        logger.info("signed %s with key %s", manifest.file_name, fingerprint)
        signature = Signature(
            signature_hex=signature_hex,
            public_key_hex=public_key_hex,
            key_fingerprint=fingerprint,
        )
        if self._config.gpg_key_file is None:
            return signature
        return signature.model_copy(update=self._sign_pgp(manifest, artifacts))

    def _sign_pgp(self, manifest: Manifest, artifacts: Sequence[PublicArtifact]) -> dict:
        files: dict[str, Artifact] = {
            f.file_name: f for public in artifacts for f in public.files()
        }
        with pgp_keyring(self._config) as keyring:
            armored = keyring.sign_bytes(manifest.body, manifest.file_name)
            signed = run_parallel(
                keyring.sign_file, [f.path for f in files.values()], self._config.num_threads
            )
            public_key = keyring.public_key()
        logger.info(
            "signed %s and %d files with OpenPGP key %s",
            manifest.file_name,
            len(files),
            keyring.fingerprint,
        )
        return {
            "pgp_armored": armored,
            "pgp_fingerprint": keyring.fingerprint,
            "pgp_public_key": public_key,
            "artifact_pgp": dict(zip(files, signed)),
        }


def verify_signature(data: bytes, signature_hex: str, public_key_hex: str) -> bool:
    """True when ``signature_hex`` is a valid signature of ``data``.

    Malformed hex or a wrong-length key is treated as a failed verification.
    """
    if not signature_hex:
        return False
    try:
        verify_key = nacl.signing.VerifyKey(bytes.fromhex(public_key_hex.strip()))
        verify_key.verify(data, bytes.fromhex(signature_hex.strip()))
    except (BadSignatureError, ValueError, TypeError):
        return False
    return True
