"""Typed error taxonomy for the promotion pipeline.

Every stage raises a subclass of ``PromoteError``. The Orchestrator decides
between aborting and continuing from ``category``/``fatal`` alone.
"""

from __future__ import annotations

from enum import Enum


class ErrorCategory(str, Enum):
    """Classes of failure the pipeline distinguishes."""

    TRANSIENT = "transient"
    CONFIGURATION = "configuration"
    DATA = "data"
    SIGNING = "signing"
    PUBLISH = "publish"
    INVALIDATION = "invalidation"


class PromoteError(RuntimeError):
    """Base class for all pipeline failures."""

    category: ErrorCategory = ErrorCategory.DATA

    @property
    def fatal(self) -> bool:
        return self.category != ErrorCategory.INVALIDATION


class TransientError(PromoteError):
    """Network or timeout failure against an external service."""

    category = ErrorCategory.TRANSIENT


class ConfigurationError(PromoteError):
    """Missing or malformed configuration."""

    category = ErrorCategory.CONFIGURATION


class DataError(PromoteError):
    """Missing required artifact, unparseable metadata, checksum mismatch."""

    category = ErrorCategory.DATA


class SigningError(PromoteError):
    """The manifest could not be signed."""

    category = ErrorCategory.SIGNING


class PublishError(PromoteError):
    """An object-store write failed mid-sequence."""

    category = ErrorCategory.PUBLISH


class InvalidationError(PromoteError):
    """CDN invalidation failed. Never fatal."""

    category = ErrorCategory.INVALIDATION
