"""Published-release verification.

Reads a channel's latest manifest and its signatures back from the public
store, checks them, and re-hashes every object the manifest references.
Used by ``promote-release verify`` and by the integration tests.
"""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path

from pydantic import BaseModel, Field

from promote_release.config import PromoteConfig
from promote_release.core.errors import ConfigurationError, DataError
from promote_release.core.hasher import sha256_file
from promote_release.core.retry import call_with_retry
from promote_release.stages.manifest_builder import (
    latest_key,
    manifest_file_name,
    parse_manifest,
)
from promote_release.stages.signer import verify_pgp_signature, verify_signature
from promote_release.storage.object_store import ObjectNotFoundError, ObjectStore

logger = logging.getLogger(__name__)


class VerificationReport(BaseModel):
    manifest_key: str
    signature_valid: bool | None = None
    pgp_signature_valid: bool | None = None
    checked: int = 0
    mismatches: list[str] = Field(default_factory=list)
    missing: list[str] = Field(default_factory=list)

    @property
    def signatures(self) -> list[bool]:
        """Results of the signature checks that were requested."""
        return [v for v in (self.signature_valid, self.pgp_signature_valid) if v is not None]

    @property
    def ok(self) -> bool:
        signatures = self.signatures
        return bool(signatures) and all(signatures) and not self.mismatches and not self.missing


def key_for_url(config: PromoteConfig, url: str) -> str:
    prefix = f"{config.upload_addr.rstrip('/')}/"
    if not url.startswith(prefix):
        raise DataError(f"manifest url outside {prefix}: {url}")
    return url[len(prefix):]


def referenced_objects(document: dict) -> list[tuple[str, str]]:
    """``(url, sha256)`` for every entry and variant in a parsed manifest."""
    out: list[tuple[str, str]] = []
    for package in document.get("pkg", {}).values():
        for entry in package.get("target", {}).values():
            if "url" in entry:
                out.append((entry["url"], entry["hash"]))
            if "xz_url" in entry:
                out.append((entry["xz_url"], entry["xz_hash"]))
    return sorted(out)


def verify_release(
    config: PromoteConfig,
    store: ObjectStore,
    public_key_hex: str | None = None,
    pgp_public_key: str | None = None,
) -> VerificationReport:
    """Check the latest manifest's signatures and every referenced checksum.

    The Ed25519 ``.sig`` is checked when ``public_key_hex`` is given, the
    OpenPGP ``.asc`` when ``pgp_public_key`` (armored) is given.
    """
    if not public_key_hex and not pgp_public_key:
        raise ConfigurationError("verification needs an Ed25519 or OpenPGP public key")
    key = latest_key(config, manifest_file_name(config.product, config.channel))
    report = VerificationReport(manifest_key=key)
    body = call_with_retry(config, store.read, key)
    if public_key_hex:
        signature = call_with_retry(config, store.read, f"{key}.sig")
        report.signature_valid = verify_signature(
            body, signature.decode("ascii", errors="replace").strip(), public_key_hex
        )
        if not report.signature_valid:
            logger.error("signature check failed for %s", key)
    if pgp_public_key:
        armored = call_with_retry(config, store.read, f"{key}.asc")
        report.pgp_signature_valid = verify_pgp_signature(
            config, body, armored.decode("ascii", errors="replace"), pgp_public_key
        )
        if not report.pgp_signature_valid:
            logger.error("OpenPGP signature check failed for %s", key)

    with tempfile.TemporaryDirectory(prefix="promote-verify-") as scratch:
        dest = Path(scratch) / "object"
        for url, expected in referenced_objects(parse_manifest(body)):
            object_key = key_for_url(config, url)
            try:
                call_with_retry(config, store.download, object_key, dest)
            except ObjectNotFoundError:
                report.missing.append(object_key)
                continue
            report.checked += 1
            if sha256_file(dest) != expected:
                report.mismatches.append(object_key)
    logger.info(
        "verified %s: %d objects, %d mismatched, %d missing",
        key,
        report.checked,
        len(report.mismatches),
        len(report.missing),
    )
    return report
