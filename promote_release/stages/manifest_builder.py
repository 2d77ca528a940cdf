"""Manifest Builder — the publishable description of a release.

Also owns the channel's release marker: the single object that says which
commit is live, and the check that decides whether a run has anything to do.

Object layout under ``upload_dir``::

    {upload_dir}/{date}/{file}                       dated, immutable
    {upload_dir}/{file}                              latest copies
    {upload_dir}/channel-{product}-{channel}.marker.json
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

import toml
from pydantic import ValidationError

from promote_release.config import Product, PromoteConfig
from promote_release.core.errors import DataError
from promote_release.core.hasher import canonical_json_bytes, sha256_hex
from promote_release.core.retry import call_with_retry
from promote_release.models.release import (
    Channel,
    ChannelKind,
    Manifest,
    ManifestEntry,
    PublicArtifact,
    ReleaseCommit,
    ReleaseMarker,
    ReleaseVersion,
)
from promote_release.storage.object_store import ObjectNotFoundError, ObjectStore

logger = logging.getLogger(__name__)

MANIFEST_VERSION = "2"


# ---------------------------------------------------------------------------
# Key layout
# ---------------------------------------------------------------------------


def manifest_file_name(product: Product, channel: str) -> str:
    if product == Product.RUSTUP:
        return f"release-{channel}.toml"
    return f"channel-rust-{channel}.toml"


def dated_key(config: PromoteConfig, date: str, file_name: str) -> str:
    return f"{config.upload_dir}/{date}/{file_name}"


def latest_key(config: PromoteConfig, file_name: str) -> str:
    return f"{config.upload_dir}/{file_name}"


def marker_key(config: PromoteConfig) -> str:
    return f"{config.upload_dir}/channel-{config.product.value}-{config.channel}.marker.json"


def public_url(config: PromoteConfig, key: str) -> str:
    return f"{config.upload_addr.rstrip('/')}/{key}"


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _sorted(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _sorted(value[k]) for k in sorted(value)}
    return value


def serialize_manifest(document: dict[str, Any]) -> bytes:
    """TOML with keys sorted at every level. Same input, same bytes."""
    return toml.dumps(_sorted(document)).encode("utf-8")


class ManifestBuilder:
    """Builds the signed-over manifest bytes for a release.

    Parameters
    ----------
    config:
        Run configuration (``product``, ``channel``, ``upload_dir``,
        ``upload_addr``, ``required_target``, ``required_components``).
    """

    def __init__(self, config: PromoteConfig) -> None:
        self._config = config

    def _entry(self, date: str, public: PublicArtifact) -> ManifestEntry:
        def url(file_name: str) -> str:
            return public_url(self._config, dated_key(self._config, date, file_name))

        xz = public.xz
        return ManifestEntry(
            url=url(public.primary.file_name),
            hash=public.primary.sha256,
            xz_url=url(xz.file_name) if xz is not None else None,
            xz_hash=xz.sha256 if xz is not None else None,
        )

    def _check_required(self, packages: dict[str, dict[str, ManifestEntry]]) -> None:
        target = self._config.required_target
        missing = [
            c
            for c in self._config.required_components
            if target not in packages.get(c, {})
        ]
        if missing:
            raise DataError(
                f"manifest would lack required target {target} for: {', '.join(missing)}"
            )

    def build(
        self,
        date: str,
        commit: ReleaseCommit,
        version: ReleaseVersion,
        artifacts: list[PublicArtifact],
    ) -> Manifest:
        """Assemble the manifest from transformed artifacts.

        Hashes come from the staged files themselves. Components or targets
        with no artifact are simply absent.
        """
        packages: dict[str, dict[str, ManifestEntry]] = {}
        for public in artifacts:
            packages.setdefault(public.component, {})[public.target] = self._entry(date, public)
        self._check_required(packages)

        package_versions = {
            component: f"{version.for_component(component)} ({commit.short} {date})"
            for component in packages
        }

        pkg: dict[str, Any] = {}
        for component, targets in packages.items():
            pkg[component] = {
                "version": package_versions[component],
                "target": {
                    target: {
                        "available": True,
                        **entry.model_dump(exclude_none=True),
                    }
                    for target, entry in targets.items()
                },
            }
        document = {
            "manifest-version": MANIFEST_VERSION,
            "date": date,
            "channel": self._config.channel,
            "commit": commit.sha,
            "version": version.version,
            "pkg": pkg,
        }
        body = serialize_manifest(document)
        file_name = manifest_file_name(self._config.product, self._config.channel)
        logger.info(
            "built %s: %d components, %d bytes", file_name, len(packages), len(body)
        )
        return Manifest(
            product=self._config.product,
            channel=self._config.channel,
            date=date,
            commit=commit.sha,
            version=version.version,
            file_name=file_name,
            packages=packages,
            package_versions=package_versions,
            body=body,
            sha256=sha256_hex(body),
        )


def parse_manifest(body: bytes) -> dict[str, Any]:
    try:
        return toml.loads(body.decode("utf-8"))
    except (toml.TomlDecodeError, UnicodeDecodeError) as exc:
        raise DataError(f"unparseable manifest: {exc}") from exc


# ---------------------------------------------------------------------------
# Release marker
# ---------------------------------------------------------------------------


def read_marker(config: PromoteConfig, store: ObjectStore) -> ReleaseMarker | None:
    """The channel's current marker, or None before the first release."""
    try:
        raw = call_with_retry(config, store.read, marker_key(config))
    except ObjectNotFoundError:
        return None
    try:
        return ReleaseMarker.model_validate(json.loads(raw))
    except (ValueError, ValidationError) as exc:
        raise DataError(f"corrupt release marker {marker_key(config)}: {exc}") from exc


def next_marker(
    previous: ReleaseMarker | None, manifest: Manifest, manifest_key: str
) -> ReleaseMarker:
    history = list(previous.history) if previous is not None else []
    if previous is not None and previous.commit != manifest.commit:
        if previous.commit not in history:
            history.append(previous.commit)
    return ReleaseMarker(
        channel=manifest.channel,
        product=manifest.product,
        commit=manifest.commit,
        version=manifest.version,
        date=manifest.date,
        manifest_key=manifest_key,
        manifest_sha256=manifest.sha256,
        history=history,
    )


def marker_bytes(marker: ReleaseMarker) -> bytes:
    return canonical_json_bytes(marker.model_dump(mode="json"))


@dataclass(frozen=True)
class MarkerDecision:
    """Outcome of the startup check: proceed, or stop with ``reason``."""

    proceed: bool
    reason: str = ""
    marker: ReleaseMarker | None = None


class MarkerCheck:
    """Decides whether a resolved release still needs publishing.

    Short-circuits when the marker already names the commit and version, when
    a numbered release's version is unchanged since the last publish, or when
    another commit was already released on this channel today. A commit that
    was live before but is not now is a regression and fails.
    """

    def __init__(self, config: PromoteConfig, store: ObjectStore) -> None:
        self._config = config
        self._store = store

    def _dated_manifest_commit(self, date: str) -> str | None:
        file_name = manifest_file_name(self._config.product, self._config.channel)
        key = dated_key(self._config, date, file_name)
        try:
            body = call_with_retry(self._config, self._store.read, key)
        except ObjectNotFoundError:
            return None
        return str(parse_manifest(body).get("commit", ""))

    def _version_unchanged(self, marker: ReleaseMarker, version: ReleaseVersion) -> bool:
        # Channel-named versions repeat on every release of that channel.
        channel = Channel.from_name(self._config.channel)
        if channel.kind == ChannelKind.ROLLING or version.version == channel.name:
            return False
        return marker.version == version.version

    def check(
        self, date: str, commit: ReleaseCommit, version: ReleaseVersion
    ) -> MarkerDecision:
        marker = read_marker(self._config, self._store)
        if self._config.bypass_startup_checks:
            logger.warning("startup checks bypassed")
            return MarkerDecision(proceed=True, marker=marker)

        if marker is not None:
            if marker.commit == commit.sha and marker.version == version.version:
                return MarkerDecision(
                    proceed=False,
                    reason=f"{self._config.channel} is already at {commit.short} ({version.version})",
                    marker=marker,
                )
            if commit.sha in marker.history:
                raise DataError(
                    f"resolved commit {commit.sha} was published before; "
                    f"refusing to regress {self._config.channel} from {marker.commit}"
                )
            if self._version_unchanged(marker, version):
                return MarkerDecision(
                    proceed=False,
                    reason=f"{self._config.channel} version hasn't changed ({version.version})",
                    marker=marker,
                )

        released = self._dated_manifest_commit(date)
        if released is not None and released != commit.sha:
            return MarkerDecision(
                proceed=False,
                reason=f"another release on {self._config.channel} was done today ({date})",
                marker=marker,
            )
        return MarkerDecision(proceed=True, marker=marker)
