"""Bounded exponential backoff for individual network calls."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from promote_release.config import PromoteConfig
from promote_release.core.errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "transient failure (attempt %d), retrying in %.1fs: %s",
        retry_state.attempt_number,
        retry_state.next_action.sleep if retry_state.next_action else 0.0,
        exc,
    )


def retrying(config: PromoteConfig) -> Retrying:
    """Build a tenacity ``Retrying`` that only retries ``TransientError``."""
    return Retrying(
        stop=stop_after_attempt(config.retry_attempts),
        wait=wait_exponential(
            multiplier=config.retry_base_delay,
            max=config.retry_max_delay,
        ),
        retry=retry_if_exception_type(TransientError),
        before_sleep=_log_retry,
        reraise=True,
    )


def call_with_retry(config: PromoteConfig, fn: Callable[..., T], *args, **kwargs) -> T:
    """Run ``fn`` under the configured retry policy."""
    return retrying(config)(fn, *args, **kwargs)
