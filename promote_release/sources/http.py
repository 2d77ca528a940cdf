"""Shared httpx client construction and error mapping."""

from __future__ import annotations

import httpx

from promote_release.config import PromoteConfig
from promote_release.core.errors import DataError, TransientError

USER_AGENT = "promote-release"


def build_client(config: PromoteConfig, **kwargs) -> httpx.Client:
    """An httpx client with the configured timeout on every call."""
    headers = {"User-Agent": USER_AGENT, **kwargs.pop("headers", {})}
    return httpx.Client(
        timeout=httpx.Timeout(config.network_timeout_seconds),
        follow_redirects=True,
        headers=headers,
        **kwargs,
    )


def send(client: httpx.Client, method: str, url: str, **kwargs) -> httpx.Response:
    """Send a request, mapping transport failures and 5xx to TransientError.

    4xx responses are returned to the caller, which decides whether a 404
    means "not found" or a hard failure.
    """
    try:
        response = client.request(method, url, **kwargs)
    except httpx.TimeoutException as exc:
        raise TransientError(f"{method} {url} timed out") from exc
    except httpx.TransportError as exc:
        raise TransientError(f"{method} {url} failed: {exc}") from exc
    if response.status_code >= 500 or response.status_code == 429:
        raise TransientError(f"{method} {url} returned {response.status_code}")
    return response


def expect_ok(response: httpx.Response) -> httpx.Response:
    """Raise DataError for any non-2xx response that reached the caller."""
    if not response.is_success:
        raise DataError(
            f"{response.request.method} {response.request.url} "
            f"returned {response.status_code}"
        )
    return response
