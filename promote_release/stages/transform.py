"""Transform Stage — recompress CI tarballs for public distribution.

CI produces ``.tar.xz`` tarballs with moderate compression. When enabled,
each one gets a ``.tar.gz`` sibling and, optionally, an xz re-encode with
tuned settings. Outputs go to ``{work_dir}/public``; staged inputs are never
modified.
"""

from __future__ import annotations

import gzip
import logging
import lzma
import shutil
import time
from pathlib import Path

from promote_release.config import PromoteConfig
from promote_release.core.errors import DataError
from promote_release.core.hasher import sha256_file
from promote_release.core.parallel import run_parallel
from promote_release.models.release import Artifact, PublicArtifact

logger = logging.getLogger(__name__)

# Installers need at least this much free RAM to decompress an archive.
MAX_XZ_DICTSIZE = 128 * 1024 * 1024
MIN_XZ_DICTSIZE = 4096

_BUF = 4 * 1024 * 1024


def choose_xz_dictsize(size: int) -> int:
    """Smallest XZ dictionary size >= ``size`` that XZ will not round.

    XZ dictionary sizes have the form 2^n or 2^n + 2^(n-1); the result is
    clamped to [MIN_XZ_DICTSIZE, MAX_XZ_DICTSIZE].
    """
    size = max(MIN_XZ_DICTSIZE, min(size, MAX_XZ_DICTSIZE))
    if size & (size - 1) == 0:
        return size
    hi_one = 1 << (size.bit_length() - 1)
    twinbit = hi_one | (hi_one >> 1)
    if twinbit >= size:
        return twinbit
    return min(hi_one << 1, MAX_XZ_DICTSIZE)


def xz_filters(level: int, dict_size: int) -> list[dict]:
    """LZMA2 filter chain; level 9 gets the exhaustive match settings."""
    options: dict = {"id": lzma.FILTER_LZMA2, "preset": level, "dict_size": dict_size}
    if level == 9:
        options.update(
            mf=lzma.MF_BT4,
            mode=lzma.MODE_NORMAL,
            nice_len=273,
            depth=1000,
            lc=3,
            lp=0,
            pb=2,
        )
    return [options]


def _gzip_from_xz(src: Path, dest: Path, level: int) -> int:
    """Write a reproducible gzip of the decompressed ``src``; return raw size."""
    total = 0
    with lzma.open(src, "rb") as reader, open(dest, "wb") as raw_out:
        with gzip.GzipFile(filename="", mode="wb", compresslevel=level, fileobj=raw_out, mtime=0) as gz:
            for block in iter(lambda: reader.read(_BUF), b""):
                total += len(block)
                gz.write(block)
    return total


def _reencode_xz(src: Path, dest: Path, level: int, raw_size: int) -> int:
    dict_size = choose_xz_dictsize(raw_size)
    compressor = lzma.LZMACompressor(
        format=lzma.FORMAT_XZ, check=lzma.CHECK_NONE, filters=xz_filters(level, dict_size)
    )
    with lzma.open(src, "rb") as reader, open(dest, "wb") as out:
        for block in iter(lambda: reader.read(_BUF), b""):
            out.write(compressor.compress(block))
        out.write(compressor.flush())
    return dict_size


def _variant(source: Artifact, path: Path, file_name: str) -> Artifact:
    return source.model_copy(
        update={
            "file_name": file_name,
            "path": path,
            "size_bytes": path.stat().st_size,
            "sha256": sha256_file(path),
        }
    )


class Transformer:
    """Derives public variants for staged artifacts.

    Parameters
    ----------
    config:
        Run configuration (``recompress``, ``recompress_xz``,
        ``compression_level``, ``num_threads``).
    """

    def __init__(self, config: PromoteConfig) -> None:
        self._config = config
        self._out = config.work_dir / "public"

    @staticmethod
    def passthrough(artifact: Artifact) -> PublicArtifact:
        return PublicArtifact(source=artifact, primary=artifact)

    def recompress(self, artifact: Artifact) -> PublicArtifact:
        """Produce gz (and optionally re-encoded xz) variants of one tarball."""
        if not artifact.is_tar_xz:
            return self.passthrough(artifact)

        level = self._config.compression_level
        start = time.monotonic()
        stem = artifact.file_name[: -len(".tar.xz")]
        gz_name = f"{stem}.tar.gz"
        gz_path = self._out / gz_name
        gz_path.parent.mkdir(parents=True, exist_ok=True)

        raw_size = _gzip_from_xz(artifact.path, gz_path, level)
        gz = _variant(artifact, gz_path, gz_name)

        xz = artifact
        if self._config.recompress_xz:
            xz_path = self._out / artifact.file_name
            dict_size = _reencode_xz(artifact.path, xz_path, level, raw_size)
            xz = _variant(artifact, xz_path, artifact.file_name)
            logger.debug("%s: xz dictionary %d bytes", artifact.file_name, dict_size)

        logger.info(
            "recompressed %s in %.2fs (%d -> gz %d, xz %d bytes)",
            artifact.file_name,
            time.monotonic() - start,
            artifact.size_bytes,
            gz.size_bytes,
            xz.size_bytes,
        )
        return PublicArtifact(source=artifact, primary=gz, xz=xz)

    def _transform_one(self, artifact: Artifact) -> PublicArtifact:
        try:
            return self.recompress(artifact)
        except (OSError, lzma.LZMAError, EOFError) as exc:
            if artifact.required:
                raise DataError(f"failed to recompress {artifact.file_name}: {exc}") from exc
            logger.warning(
                "failed to recompress optional %s, shipping it unchanged: %s",
                artifact.file_name,
                exc,
            )
            return self.passthrough(artifact)

    def run(self, artifacts: list[Artifact]) -> list[PublicArtifact]:
        if not self._config.recompress:
            logger.info("recompression disabled, shipping %d artifacts as-is", len(artifacts))
            return [self.passthrough(a) for a in artifacts]

        shutil.rmtree(self._out, ignore_errors=True)
        self._out.mkdir(parents=True, exist_ok=True)

        # Largest first, so small files fill the tail of the schedule.
        ordered = sorted(artifacts, key=lambda a: a.size_bytes, reverse=True)
        logger.info(
            "recompressing %d files (level %d, xz re-encode %s)",
            len(ordered),
            self._config.compression_level,
            self._config.recompress_xz,
        )
        results = run_parallel(self._transform_one, ordered, self._config.num_threads)
        by_name = {r.source.file_name: r for r in results}
        return [by_name[a.file_name] for a in artifacts]
