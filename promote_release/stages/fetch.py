"""Artifact Source Client — stage CI artifacts for one commit.

Artifacts are cached in the working object store under
``{download_dir}/{commit}/{file}``; the upstream CDN is only contacted when
the cache lacks a file. Staged copies land in ``{work_dir}/dl``.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from promote_release.config import Product, PromoteConfig
from promote_release.core.errors import DataError
from promote_release.core.hasher import sha256_file
from promote_release.core.parallel import run_parallel
from promote_release.models.release import Artifact, ReleaseCommit, ReleaseVersion
from promote_release.sources.upstream import UpstreamArtifacts
from promote_release.storage.object_store import (
    ObjectNotFoundError,
    ObjectStore,
    RetryingObjectStore,
    ensure_present,
)

logger = logging.getLogger(__name__)

# Residue from earlier runs that must never be promoted as an artifact.
SIDECAR_SUFFIXES = (".sha256", ".sig", ".asc")


@dataclass(frozen=True)
class ArtifactRequest:
    component: str
    target: str
    file_name: str
    required: bool


def artifact_file_name(product: Product, component: str, version: str, target: str) -> str:
    """Public file name for a (component, target) pair."""
    if product == Product.RUSTUP:
        return f"dist/{target}/{component}"
    return f"{component}-{version}-{target}.tar.xz"


class ArtifactSource:
    """Fetches and stages the artifacts of a release commit.

    Parameters
    ----------
    config:
        Run configuration.
    cache:
        The pipeline's working object store (download bucket).
    upstream:
        The upstream CI artifact CDN.
    """

    def __init__(
        self,
        config: PromoteConfig,
        cache: ObjectStore,
        upstream: UpstreamArtifacts,
    ) -> None:
        self._config = config
        self._cache = RetryingObjectStore(config, cache)
        self._upstream = upstream

    def cache_key(self, commit: ReleaseCommit, file_name: str) -> str:
        return f"{self._config.download_dir}/{commit.sha}/{file_name}"

    def requests(self, version: ReleaseVersion) -> list[ArtifactRequest]:
        config = self._config
        out: list[ArtifactRequest] = []
        for target in config.targets:
            for component in config.components:
                file_name = artifact_file_name(
                    config.product, component, version.version, target
                )
                if file_name.endswith(SIDECAR_SUFFIXES):
                    continue
                required = (
                    target == config.required_target
                    and component in config.required_components
                )
                out.append(ArtifactRequest(component, target, file_name, required))
        return out

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    def is_available(self, commit: ReleaseCommit, file_name: str) -> bool:
        key = self.cache_key(commit, file_name)
        if self._cache.exists(key):
            return True
        return self._upstream.exists(commit.sha, file_name)

    def check_required(self, commit: ReleaseCommit, requests: list[ArtifactRequest]) -> None:
        """Fail before any write if a required artifact is unavailable."""
        missing = [
            r.file_name
            for r in requests
            if r.required and not self.is_available(commit, r.file_name)
        ]
        if missing:
            raise DataError(
                f"required artifacts missing for {commit.sha} "
                f"(target {self._config.required_target}): {', '.join(missing)}"
            )

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    def _populate_cache(self, commit: ReleaseCommit, file_name: str) -> None:
        key = self.cache_key(commit, file_name)
        scratch = self._config.work_dir / "upstream" / commit.sha / file_name

        def _copy_from_upstream() -> None:
            if not self._upstream.exists(commit.sha, file_name):
                raise ObjectNotFoundError(f"{file_name} not found upstream for {commit.sha}")
            self._upstream.fetch(commit.sha, file_name, scratch)
            try:
                self._cache.upload(key, scratch)
            finally:
                scratch.unlink(missing_ok=True)

        ensure_present(self._cache, key, _copy_from_upstream)

    def stage(self, commit: ReleaseCommit, request: ArtifactRequest) -> Artifact | None:
        """Stage one artifact locally; None when an optional one is missing."""
        try:
            self._populate_cache(commit, request.file_name)
            dest = self._config.dl_dir / request.file_name
            key = self.cache_key(commit, request.file_name)
            self._cache.download(key, dest)
        except ObjectNotFoundError:
            if request.required:
                raise DataError(
                    f"required artifact {request.file_name} missing for {commit.sha}"
                ) from None
            logger.warning("skipping missing optional artifact %s", request.file_name)
            return None

        return Artifact(
            component=request.component,
            target=request.target,
            file_name=request.file_name,
            source_key=self.cache_key(commit, request.file_name),
            path=dest,
            size_bytes=dest.stat().st_size,
            sha256=sha256_file(dest),
            required=request.required,
        )

    def fetch_all(self, commit: ReleaseCommit, version: ReleaseVersion) -> list[Artifact]:
        """Stage every configured artifact for ``commit``.

        All fetches share the one commit. Independent pairs run in parallel
        since each writes a distinct cache key and local path.
        """
        requests = self.requests(version)
        self.check_required(commit, requests)

        dl = self._config.dl_dir
        shutil.rmtree(dl, ignore_errors=True)
        dl.mkdir(parents=True, exist_ok=True)

        logger.info(
            "staging %d artifacts for %s across %d threads",
            len(requests),
            commit.short,
            min(self._config.num_threads, len(requests)),
        )
        staged = run_parallel(
            lambda r: self.stage(commit, r), requests, self._config.num_threads
        )
        artifacts = [a for a in staged if a is not None]
        logger.info("staged %d of %d artifacts", len(artifacts), len(requests))
        return artifacts
