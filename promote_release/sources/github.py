"""Read-only client for the upstream source-control host (GitHub REST v3)."""

from __future__ import annotations

import logging

import httpx

from promote_release.config import PromoteConfig
from promote_release.core.errors import DataError
from promote_release.core.retry import call_with_retry
from promote_release.sources.http import build_client, expect_ok, send

logger = logging.getLogger(__name__)


class GithubClient:
    """Resolves branch tips and reads files at a commit.

    Parameters
    ----------
    config:
        Run configuration (API URL, token, timeouts, retry policy).
    client:
        Optional preconfigured httpx client, mainly for tests.
    """

    def __init__(self, config: PromoteConfig, client: httpx.Client | None = None) -> None:
        self._config = config
        headers = {"Accept": "application/vnd.github+json"}
        if config.github_token:
            headers["Authorization"] = f"token {config.github_token}"
        self._client = client or build_client(config, headers=headers)
        self._base = config.github_api_url.rstrip("/")

    def close(self) -> None:
        self._client.close()

    def branch_tip(self, repository: str, branch: str) -> str:
        """Return the commit sha at the tip of ``branch``."""
        url = f"{self._base}/repos/{repository}/git/ref/heads/{branch}"
        response = call_with_retry(self._config, send, self._client, "GET", url)
        if response.status_code == 404:
            raise DataError(f"missing git ref in {repository}: refs/heads/{branch}")
        payload = expect_ok(response).json()
        try:
            sha = payload["object"]["sha"]
        except (KeyError, TypeError) as exc:
            raise DataError(f"unexpected ref payload for {repository}@{branch}") from exc
        logger.debug("%s@%s is %s", repository, branch, sha)
        return sha

    def read_file(self, repository: str, path: str, commit: str) -> str | None:
        """Return the contents of ``path`` at ``commit``, or None if absent."""
        url = f"{self._base}/repos/{repository}/contents/{path}"
        response = call_with_retry(
            self._config,
            send,
            self._client,
            "GET",
            url,
            params={"ref": commit},
            headers={"Accept": "application/vnd.github.raw"},
        )
        if response.status_code == 404:
            return None
        return expect_ok(response).text
