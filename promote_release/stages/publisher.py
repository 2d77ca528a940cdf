"""Publisher — ordered, resumable writes to the public store.

Write order:

1. dated artifacts, each followed by its ``.sha256`` sidecar and ``.asc``
2. dated manifest (+ sidecar), then the dated signatures
3. latest artifact copies (+ sidecars and ``.asc``)
4. latest manifest (+ sidecar), then the latest signatures
5. the release marker

Every manifest URL points at a dated key written in step 1, so a reader that
follows any manifest never hits a missing object. A failure at any step
raises ``PublishError`` before the marker moves; a re-run skips objects that
are already present with identical content.
"""

from __future__ import annotations

import logging
import threading

from promote_release.config import PromoteConfig
from promote_release.core.errors import PromoteError, PublishError
from promote_release.core.hasher import checksum_line, sha256_hex
from promote_release.core.parallel import run_parallel
from promote_release.models.release import (
    Artifact,
    Manifest,
    PublicArtifact,
    PublishedObject,
    PublishRecord,
    ReleaseMarker,
    Signature,
)
from promote_release.stages.manifest_builder import (
    dated_key,
    latest_key,
    marker_bytes,
    marker_key,
)
from promote_release.storage.object_store import (
    ObjectNotFoundError,
    ObjectStore,
    RetryingObjectStore,
    WriteOptions,
    ensure_present,
)

logger = logging.getLogger(__name__)

_CONTENT_TYPES = {
    ".tar.xz": "application/x-xz",
    ".tar.gz": "application/gzip",
    ".toml": "text/plain; charset=utf-8",
    ".sha256": "text/plain; charset=utf-8",
    ".sig": "text/plain; charset=utf-8",
    ".asc": "text/plain; charset=utf-8",
    ".json": "application/json",
}


def content_type_for(key: str) -> str:
    for suffix, content_type in _CONTENT_TYPES.items():
        if key.endswith(suffix):
            return content_type
    return "application/octet-stream"


class Publisher:
    """Writes one release to the public store.

    Parameters
    ----------
    config:
        Run configuration (``upload_dir``, storage class, ACL, threads).
    store:
        The public object store.
    """

    def __init__(self, config: PromoteConfig, store: ObjectStore) -> None:
        self._config = config
        self._store = RetryingObjectStore(config, store)
        self._lock = threading.Lock()
        self._written = 0

    # ------------------------------------------------------------------
    # Single-object writes
    # ------------------------------------------------------------------

    def _options(self, key: str) -> WriteOptions:
        return WriteOptions.from_config(self._config, content_type_for(key))

    def _has_content(self, key: str, data: bytes) -> bool:
        try:
            return self._store.read(key) == data
        except ObjectNotFoundError:
            return False

    def _count(self, wrote: bool) -> None:
        if wrote:
            with self._lock:
                self._written += 1

    def put_bytes(self, key: str, data: bytes) -> PublishedObject:
        """Write small content unless an identical object is already there."""
        wrote = ensure_present(
            self._store,
            key,
            lambda: self._store.put_bytes(key, data, self._options(key)),
            is_current=lambda: self._has_content(key, data),
        )
        self._count(wrote)
        return PublishedObject(
            key=key, size_bytes=len(data), sha256=sha256_hex(data), skipped=not wrote
        )

    def put_detached(self, key: str, data: bytes, *, rewritten: bool) -> PublishedObject:
        """Write a detached OpenPGP signature for the object just before it.

        Armored signatures differ byte-wise between runs, so an existing one
        stays unless the signed object was rewritten.
        """
        wrote = ensure_present(
            self._store,
            key,
            lambda: self._store.put_bytes(key, data, self._options(key)),
            is_current=lambda: not rewritten,
        )
        self._count(wrote)
        return PublishedObject(
            key=key, size_bytes=len(data), sha256=sha256_hex(data), skipped=not wrote
        )

    def put_artifact(
        self, key: str, artifact: Artifact, armored: str = ""
    ) -> list[PublishedObject]:
        """Upload a file, its checksum sidecar and its ``.asc`` if signed.

        An existing upload counts as current when its sidecar already holds
        the same checksum; the sidecar is always written after the content.
        """
        sidecar_key = f"{key}.sha256"
        sidecar = checksum_line(artifact.sha256, key.rsplit("/", 1)[-1])
        wrote = ensure_present(
            self._store,
            key,
            lambda: self._store.upload(key, artifact.path, self._options(key)),
            is_current=lambda: self._has_content(sidecar_key, sidecar),
        )
        self._count(wrote)
        content = PublishedObject(
            key=key, size_bytes=artifact.size_bytes, sha256=artifact.sha256, skipped=not wrote
        )
        objects = [content, self.put_bytes(sidecar_key, sidecar)]
        if armored:
            objects.append(
                self.put_detached(f"{key}.asc", armored.encode("ascii"), rewritten=wrote)
            )
        return objects

    def _put_files(
        self, items: list[tuple[str, Artifact]], signature: Signature
    ) -> list[PublishedObject]:
        results = run_parallel(
            lambda item: self.put_artifact(
                item[0], item[1], signature.artifact_pgp.get(item[1].file_name, "")
            ),
            items,
            self._config.num_threads,
        )
        return [obj for objs in results for obj in objs]

    # ------------------------------------------------------------------
    # Sequence
    # ------------------------------------------------------------------

    def _manifest_objects(
        self, prefix_key: str, manifest: Manifest, signature: Signature
    ) -> list[PublishedObject]:
        content = self.put_bytes(prefix_key, manifest.body)
        objects = [
            content,
            self.put_bytes(
                f"{prefix_key}.sha256",
                checksum_line(manifest.sha256, manifest.file_name),
            ),
            self.put_bytes(f"{prefix_key}.sig", signature.as_bytes()),
        ]
        if signature.pgp_armored:
            objects.append(
                self.put_detached(
                    f"{prefix_key}.asc",
                    signature.pgp_armored.encode("ascii"),
                    rewritten=not content.skipped,
                )
            )
        return objects

    def publish(
        self,
        manifest: Manifest,
        signature: Signature,
        artifacts: list[PublicArtifact],
        marker: ReleaseMarker,
    ) -> PublishRecord:
        """Run the full write sequence and return what was written."""
        config = self._config
        date = manifest.date
        files = [f for public in artifacts for f in public.files()]
        record = PublishRecord()
        self._written = 0

        try:
            logger.info("[publishing] uploading %d dated files", len(files))
            record.objects += self._put_files(
                [(dated_key(config, date, f.file_name), f) for f in files], signature
            )

            manifest_dated = dated_key(config, date, manifest.file_name)
            record.objects += self._manifest_objects(manifest_dated, manifest, signature)

            logger.info("[publishing] updating %d latest copies", len(files))
            latest_files = [(latest_key(config, f.file_name), f) for f in files]
            record.objects += self._put_files(latest_files, signature)

            manifest_latest = latest_key(config, manifest.file_name)
            latest_manifest = self._manifest_objects(manifest_latest, manifest, signature)
            record.objects += latest_manifest

            key = marker_key(config)
            record.objects.append(self.put_bytes(key, marker_bytes(marker)))
        except PublishError:
            raise
        except PromoteError as exc:
            raise PublishError(f"publish aborted before release marker: {exc}") from exc

        record.latest_keys = [k for k, _ in latest_files] + [o.key for o in latest_manifest]
        record.manifest_key = manifest_latest
        record.marker_key = key
        logger.info(
            "[publishing] %d objects written, %d already present",
            self._written,
            len(record.objects) - self._written,
        )
        return record
