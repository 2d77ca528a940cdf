"""Cache Invalidator — purge CDN copies of the latest pointers.

Runs after the marker is written. Failures are reported as warnings and
never undo a publish; stale caches expire on their own.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

import boto3
import httpx
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel, Field

from promote_release.config import PromoteConfig
from promote_release.core.errors import InvalidationError, PromoteError
from promote_release.core.retry import call_with_retry
from promote_release.models.release import PublishRecord
from promote_release.sources.http import build_client, expect_ok, send

logger = logging.getLogger(__name__)

FASTLY_API_URL = "https://api.fastly.com"


class InvalidationReport(BaseModel):
    """What was purged, and which providers failed."""

    paths: list[str] = Field(default_factory=list)
    invalidated: list[str] = Field(default_factory=list)
    failures: list[str] = Field(default_factory=list)
    skipped: bool = False


def invalidation_paths(record: PublishRecord) -> list[str]:
    keys = list(record.latest_keys)
    if record.marker_key:
        keys.append(record.marker_key)
    return sorted({f"/{key.lstrip('/')}" for key in keys})


class CacheInvalidator:
    """Issues CloudFront invalidations and Fastly purges.

    Parameters
    ----------
    config:
        Run configuration (distribution ids, Fastly credentials, skip flag).
    cloudfront:
        Optional boto3 CloudFront client; built from config when omitted.
    http:
        Optional httpx client for the Fastly API.
    """

    def __init__(
        self,
        config: PromoteConfig,
        cloudfront: Any | None = None,
        http: httpx.Client | None = None,
    ) -> None:
        self._config = config
        self._cloudfront = cloudfront
        self._http = http

    def _cloudfront_client(self) -> Any:
        if self._cloudfront is None:
            self._cloudfront = boto3.client(
                "cloudfront",
                config=BotoConfig(
                    connect_timeout=self._config.network_timeout_seconds,
                    read_timeout=self._config.network_timeout_seconds,
                    retries={"max_attempts": 1, "mode": "standard"},
                ),
            )
        return self._cloudfront

    def _http_client(self) -> httpx.Client:
        if self._http is None:
            self._http = build_client(self._config)
        return self._http

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    def invalidate_cloudfront(self, distribution_id: str, paths: list[str]) -> None:
        try:
            response = self._cloudfront_client().create_invalidation(
                DistributionId=distribution_id,
                InvalidationBatch={
                    "Paths": {"Quantity": len(paths), "Items": paths},
                    "CallerReference": f"promote-release-{uuid.uuid4()}",
                },
            )
        except (ClientError, BotoCoreError) as exc:
            raise InvalidationError(f"cloudfront {distribution_id}: {exc}") from exc
        invalidation_id = response.get("Invalidation", {}).get("Id", "?")
        logger.info(
            "[invalidating] cloudfront %s: %d paths (%s)",
            distribution_id,
            len(paths),
            invalidation_id,
        )

    def purge_fastly(self, paths: list[str]) -> None:
        config = self._config
        if not config.fastly_api_token or not config.fastly_domain:
            raise InvalidationError("fastly purge enabled without api token or domain")
        headers = {"Fastly-Key": config.fastly_api_token}
        for path in paths:
            url = f"{FASTLY_API_URL}/purge/{config.fastly_domain}{path}"
            try:
                response = call_with_retry(
                    config, send, self._http_client(), "POST", url, headers=headers
                )
                expect_ok(response)
            except PromoteError as exc:
                raise InvalidationError(f"fastly purge of {path}: {exc}") from exc
        logger.info("[invalidating] fastly %s: %d paths", config.fastly_domain, len(paths))

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, record: PublishRecord) -> InvalidationReport:
        paths = invalidation_paths(record)
        report = InvalidationReport(paths=paths)
        if self._config.skip_invalidations:
            logger.info("[invalidating] skipped by configuration")
            report.skipped = True
            return report
        if not paths:
            return report

        targets: list[tuple[str, Any]] = [
            (f"cloudfront:{dist}", lambda d=dist: self.invalidate_cloudfront(d, paths))
            for dist in self._config.cloudfront_distribution_ids
        ]
        if self._config.invalidate_fastly:
            targets.append(("fastly", lambda: self.purge_fastly(paths)))

        for name, action in targets:
            try:
                action()
            except InvalidationError as exc:
                logger.warning("[invalidating] %s failed: %s", name, exc)
                report.failures.append(str(exc))
            else:
                report.invalidated.append(name)
        return report

    def close(self) -> None:
        if self._http is not None:
            self._http.close()
