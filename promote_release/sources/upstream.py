"""Read-only client for the upstream CI artifact CDN."""

from __future__ import annotations

import logging
from pathlib import Path

import httpx

from promote_release.config import PromoteConfig
from promote_release.core.errors import TransientError
from promote_release.core.retry import call_with_retry
from promote_release.sources.http import build_client, expect_ok, send
from promote_release.storage.object_store import ObjectNotFoundError

logger = logging.getLogger(__name__)

_CHUNK = 1024 * 1024


class UpstreamArtifacts:
    """``HEAD``/``GET`` access to ``{base}/{commit}/{file}``."""

    def __init__(self, config: PromoteConfig, client: httpx.Client | None = None) -> None:
        self._config = config
        self._client = client or build_client(config)
        self._base = config.upstream_artifacts_url.rstrip("/")

    def close(self) -> None:
        self._client.close()

    def url(self, commit: str, file_name: str) -> str:
        return f"{self._base}/{commit}/{file_name}"

    def exists(self, commit: str, file_name: str) -> bool:
        response = call_with_retry(
            self._config, send, self._client, "HEAD", self.url(commit, file_name)
        )
        if response.status_code == 404:
            return False
        expect_ok(response)
        return True

    def fetch(self, commit: str, file_name: str, dest: Path) -> None:
        """Stream the artifact to ``dest``. Raises ObjectNotFoundError on 404."""
        call_with_retry(self._config, self._fetch_once, commit, file_name, dest)

    def _fetch_once(self, commit: str, file_name: str, dest: Path) -> None:
        url = self.url(commit, file_name)
        dest.parent.mkdir(parents=True, exist_ok=True)
        logger.info("copying %s from %s", file_name, self._base)
        try:
            with self._client.stream("GET", url) as response:
                if response.status_code == 404:
                    raise ObjectNotFoundError(f"{url} not found")
                if response.status_code >= 500:
                    raise TransientError(f"GET {url} returned {response.status_code}")
                expect_ok(response)
                with open(dest, "wb") as fd:
                    for chunk in response.iter_bytes(_CHUNK):
                        fd.write(chunk)
        except httpx.TransportError as exc:
            dest.unlink(missing_ok=True)
            raise TransientError(f"GET {url} failed: {exc}") from exc
