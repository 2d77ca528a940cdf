"""Release configuration — env-driven, validated once at startup.

Centralized config using pydantic-settings. Reads from a .env file and
PROMOTE_RELEASE_* environment variables. The resulting object is passed
explicitly into every pipeline component; nothing else reads the process
environment.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_COMMIT_RE = re.compile(r"^[0-9a-f]{40}$")
_CHANNEL_RE = re.compile(r"^[a-z0-9][a-z0-9._-]*$")


class Product(str, Enum):
    """What is being released: the toolchain or the installer alone."""

    RUST = "rust"
    RUSTUP = "rustup"


class PromoteConfig(BaseSettings):
    """Configuration for one promotion run.

    All settings can be overridden via PROMOTE_RELEASE_* environment
    variables or a .env file. List-valued settings take JSON arrays.

    Examples
    --------
    Local run against a filesystem stand-in::

        export PROMOTE_RELEASE_CHANNEL=nightly
        export PROMOTE_RELEASE_LOCAL_STORE_PATH=/persistent/store
        export PROMOTE_RELEASE_SKIP_INVALIDATIONS=true

    Local run against MinIO::

        PROMOTE_RELEASE_S3_ENDPOINT_URL=http://minio:9000
        PROMOTE_RELEASE_TARGETS='["x86_64-unknown-linux-gnu"]'
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PROMOTE_RELEASE_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # What to release
    channel: str = "nightly"
    product: Product = Product.RUST
    override_commit: str | None = None
    override_branch: str | None = None

    # Source-control host
    repository: str = ""
    github_api_url: str = "https://api.github.com"
    github_token: str = ""

    # Upstream CI artifacts
    upstream_artifacts_url: str = "https://ci-artifacts.rust-lang.org/rustc-builds"
    required_target: str = "x86_64-unknown-linux-gnu"
    required_components: list[str] = Field(
        default_factory=lambda: ["rustc", "rust-std", "cargo"]
    )
    targets: list[str] = Field(
        default_factory=lambda: ["x86_64-unknown-linux-gnu"]
    )
    components: list[str] = Field(
        default_factory=lambda: ["cargo", "rust", "rust-docs", "rust-std", "rustc"]
    )

    # Object stores
    download_bucket: str = "rust-lang-ci2"
    download_dir: str = "rustc-builds"
    upload_bucket: str = "static-rust-lang-org"
    upload_dir: str = "dist"
    upload_addr: str = "https://static.rust-lang.org"
    storage_class: str = "STANDARD"
    public_read: bool = True
    s3_endpoint_url: str | None = None
    local_store_path: Path | None = None

    # CDN
    cloudfront_distribution_ids: list[str] = Field(default_factory=list)
    invalidate_fastly: bool = False
    fastly_api_token: str = ""
    fastly_domain: str = ""
    skip_invalidations: bool = False

    # Transform
    recompress: bool = False
    recompress_xz: bool = False
    compression_level: int = 9

    # Signing keys
    signing_key_file: Path | None = None
    signing_password_file: Path | None = None
    gpg_key_file: Path | None = None
    gpg_password_file: Path | None = None
    gpg_binary: str = "gpg"

    # Behaviour switches
    bypass_startup_checks: bool = False
    skip_delete_build_dir: bool = False
    derived_version_override: str | None = None
    rustup_override_version: str | None = None
    release_date: str | None = None

    # Runtime
    work_dir: Path = Path(".promote-release")
    num_threads: int = 8
    network_timeout_seconds: float = 30.0
    retry_attempts: int = 5
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @field_validator("channel")
    @classmethod
    def _check_channel(cls, value: str) -> str:
        if not _CHANNEL_RE.match(value):
            raise ValueError(f"invalid channel name: {value!r}")
        return value

    @field_validator("override_commit")
    @classmethod
    def _check_commit(cls, value: str | None) -> str | None:
        if value in (None, ""):
            return None
        value = value.strip().lower()
        if not _COMMIT_RE.match(value):
            raise ValueError(
                f"override commit must be a full 40-character hex sha, got {value!r}"
            )
        return value

    @field_validator("compression_level")
    @classmethod
    def _check_level(cls, value: int) -> int:
        if not 1 <= value <= 9:
            raise ValueError("compression_level must be between 1 and 9")
        return value

    @field_validator("num_threads", "retry_attempts")
    @classmethod
    def _check_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("release_date")
    @classmethod
    def _check_date(cls, value: str | None) -> str | None:
        if value:
            datetime.strptime(value, "%Y-%m-%d")
        return value or None

    @model_validator(mode="after")
    def _check_required_target(self) -> PromoteConfig:
        if self.required_target not in self.targets:
            raise ValueError(
                f"required target {self.required_target!r} must be listed in targets"
            )
        missing = [c for c in self.required_components if c not in self.components]
        if missing:
            raise ValueError(f"required components not in components: {missing}")
        return self

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def source_repository(self) -> str:
        """The upstream repository, defaulting per product."""
        if self.repository:
            return self.repository
        return "rust-lang/rustup" if self.product == Product.RUSTUP else "rust-lang/rust"

    @property
    def date(self) -> str:
        """Release date (YYYY-MM-DD), pinned by ``release_date`` when set."""
        if self.release_date:
            return self.release_date
        return datetime.now(timezone.utc).strftime("%Y-%m-%d")

    @property
    def dl_dir(self) -> Path:
        return self.work_dir / "dl"

    @property
    def uses_local_store(self) -> bool:
        return self.local_store_path is not None
