"""Object stores: S3 (boto3) and a local filesystem stand-in.

Both implement the same ``ObjectStore`` protocol so the pipeline behaves
identically against production buckets, an S3-compatible endpoint such as
MinIO, or a plain directory during tests and local runs.

``ensure_present`` is the single stat-then-write operation used by both the
artifact fetch cache and the publisher. Both go through ``RetryingObjectStore``
so that each store call is retried on its own.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel, ConfigDict

from promote_release.config import PromoteConfig
from promote_release.core.errors import DataError, PublishError, TransientError
from promote_release.core.retry import call_with_retry

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
_TRANSIENT_CODES = {
    "500",
    "502",
    "503",
    "504",
    "InternalError",
    "RequestTimeout",
    "ServiceUnavailable",
    "SlowDown",
    "Throttling",
}


class ObjectNotFoundError(DataError):
    """Raised when reading a key that does not exist."""


class WriteOptions(BaseModel):
    """Per-object metadata applied on write."""

    model_config = ConfigDict(frozen=True)

    storage_class: str | None = None
    public_read: bool = False
    cache_control: str | None = None
    content_type: str | None = None

    @classmethod
    def from_config(cls, config: PromoteConfig, content_type: str | None = None) -> WriteOptions:
        return cls(
            storage_class=config.storage_class,
            public_read=config.public_read,
            cache_control="public",
            content_type=content_type,
        )


@runtime_checkable
class ObjectStore(Protocol):
    """Minimal object-store surface the pipeline needs."""

    name: str

    def exists(self, key: str) -> bool: ...

    def read(self, key: str) -> bytes: ...

    def download(self, key: str, dest: Path) -> None: ...

    def put_bytes(self, key: str, data: bytes, options: WriteOptions | None = None) -> None: ...

    def upload(self, key: str, src: Path, options: WriteOptions | None = None) -> None: ...


def ensure_present(
    store: ObjectStore,
    key: str,
    write: Callable[[], None],
    *,
    is_current: Callable[[], bool] | None = None,
) -> bool:
    """Write ``key`` only if it is missing (or stale per ``is_current``).

    Returns True when a write happened.
    """
    if store.exists(key) and (is_current is None or is_current()):
        logger.info("reusing existing %s/%s", store.name, key)
        return False
    write()
    return True


class RetryingObjectStore:
    """Runs every call on ``store`` under the configured retry policy.

    Each store call is one retry unit. Do not wrap ``call_with_retry``
    around code that already goes through this wrapper.
    """

    def __init__(self, config: PromoteConfig, store: ObjectStore) -> None:
        self._config = config
        self._store = store
        self.name = store.name

    def exists(self, key: str) -> bool:
        return call_with_retry(self._config, self._store.exists, key)

    def read(self, key: str) -> bytes:
        return call_with_retry(self._config, self._store.read, key)

    def download(self, key: str, dest: Path) -> None:
        call_with_retry(self._config, self._store.download, key, dest)

    def put_bytes(self, key: str, data: bytes, options: WriteOptions | None = None) -> None:
        call_with_retry(self._config, self._store.put_bytes, key, data, options)

    def upload(self, key: str, src: Path, options: WriteOptions | None = None) -> None:
        call_with_retry(self._config, self._store.upload, key, src, options)


# ---------------------------------------------------------------------------
# S3
# ---------------------------------------------------------------------------


def _client_error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class S3ObjectStore:
    """Bucket-backed store using boto3.

    Parameters
    ----------
    bucket:
        Bucket name.
    client:
        A boto3 S3 client. Use ``from_config`` to build one with the
        configured endpoint and timeouts.
    """

    def __init__(self, bucket: str, client: Any) -> None:
        self.bucket = bucket
        self.name = f"s3://{bucket}"
        self._client = client

    @classmethod
    def from_config(cls, config: PromoteConfig, bucket: str) -> S3ObjectStore:
        boto_config = BotoConfig(
            connect_timeout=config.network_timeout_seconds,
            read_timeout=config.network_timeout_seconds,
            retries={"max_attempts": 1, "mode": "standard"},
            max_pool_connections=max(10, config.num_threads * 2),
        )
        client = boto3.client(
            "s3",
            endpoint_url=config.s3_endpoint_url,
            config=boto_config,
        )
        return cls(bucket, client)

    # ------------------------------------------------------------------
    # Error mapping
    # ------------------------------------------------------------------

    def _translate(self, exc: Exception, key: str, *, writing: bool) -> Exception:
        if isinstance(exc, ClientError):
            code = _client_error_code(exc)
            if code in _NOT_FOUND_CODES:
                return ObjectNotFoundError(f"{self.name}/{key} not found")
            if code in _TRANSIENT_CODES:
                return TransientError(f"{self.name}/{key}: {exc}")
        elif isinstance(exc, BotoCoreError):
            return TransientError(f"{self.name}/{key}: {exc}")
        error_cls = PublishError if writing else DataError
        return error_cls(f"{self.name}/{key}: {exc}")

    @staticmethod
    def _extra_args(options: WriteOptions | None) -> dict[str, str]:
        if options is None:
            return {}
        extra: dict[str, str] = {}
        if options.storage_class:
            extra["StorageClass"] = options.storage_class
        if options.public_read:
            extra["ACL"] = "public-read"
        if options.cache_control:
            extra["CacheControl"] = options.cache_control
        if options.content_type:
            extra["ContentType"] = options.content_type
        return extra

    # ------------------------------------------------------------------
    # ObjectStore
    # ------------------------------------------------------------------

    def exists(self, key: str) -> bool:
        try:
            self._client.head_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            translated = self._translate(exc, key, writing=False)
            if isinstance(translated, ObjectNotFoundError):
                return False
            raise translated from exc
        return True

    def read(self, key: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except (ClientError, BotoCoreError) as exc:
            raise self._translate(exc, key, writing=False) from exc

    def download(self, key: str, dest: Path) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._client.download_file(self.bucket, key, str(dest))
        except (ClientError, BotoCoreError) as exc:
            raise self._translate(exc, key, writing=False) from exc

    def put_bytes(self, key: str, data: bytes, options: WriteOptions | None = None) -> None:
        try:
            self._client.put_object(
                Bucket=self.bucket, Key=key, Body=data, **self._extra_args(options)
            )
        except (ClientError, BotoCoreError) as exc:
            raise self._translate(exc, key, writing=True) from exc

    def upload(self, key: str, src: Path, options: WriteOptions | None = None) -> None:
        try:
            self._client.upload_file(
                str(src), self.bucket, key, ExtraArgs=self._extra_args(options)
            )
        except (ClientError, BotoCoreError) as exc:
            raise self._translate(exc, key, writing=True) from exc


# ---------------------------------------------------------------------------
# Local filesystem stand-in
# ---------------------------------------------------------------------------


class LocalObjectStore:
    """Directory-backed store with atomic writes.

    Layout: {root}/{key}. Writes go to a temporary file in the destination
    directory and are renamed into place, so readers never see a partial
    object. Write metadata and the ordered list of written keys are kept in
    memory for diagnostics.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.name = f"file://{self.root}"
        self.metadata: dict[str, WriteOptions] = {}
        self.writes: list[str] = []
        self._lock = threading.Lock()

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise DataError(f"key escapes store root: {key}")
        return path

    def _record(self, key: str, options: WriteOptions | None) -> None:
        with self._lock:
            self.metadata[key] = options or WriteOptions()
            self.writes.append(key)

    def _write_atomic(self, path: Path, fill: Callable[[Path], None]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        os.close(fd)
        try:
            fill(Path(tmp))
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def read(self, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise ObjectNotFoundError(f"{self.name}/{key} not found")
        return path.read_bytes()

    def download(self, key: str, dest: Path) -> None:
        path = self._path(key)
        if not path.is_file():
            raise ObjectNotFoundError(f"{self.name}/{key} not found")
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(path, dest)

    def put_bytes(self, key: str, data: bytes, options: WriteOptions | None = None) -> None:
        try:
            self._write_atomic(self._path(key), lambda tmp: tmp.write_bytes(data))
        except OSError as exc:
            raise PublishError(f"{self.name}/{key}: {exc}") from exc
        self._record(key, options)

    def upload(self, key: str, src: Path, options: WriteOptions | None = None) -> None:
        try:
            self._write_atomic(self._path(key), lambda tmp: shutil.copyfile(src, tmp))
        except OSError as exc:
            raise PublishError(f"{self.name}/{key}: {exc}") from exc
        self._record(key, options)


def open_store(config: PromoteConfig, bucket: str) -> ObjectStore:
    """Return the configured store for ``bucket``.

    With ``local_store_path`` set, each bucket becomes a subdirectory of it.
    """
    if config.local_store_path is not None:
        return LocalObjectStore(config.local_store_path / bucket)
    return S3ObjectStore.from_config(config, bucket)
