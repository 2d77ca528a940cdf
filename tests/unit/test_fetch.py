"""Tests for the Artifact Source Client — caching, required artifacts, retries."""

from __future__ import annotations

import hashlib

import pytest

from promote_release.config import Product
from promote_release.core.errors import DataError, TransientError
from promote_release.models.release import ReleaseCommit, ReleaseVersion
from promote_release.stages.fetch import ArtifactRequest, ArtifactSource, artifact_file_name


@pytest.fixture
def source(config, download_store, fake_ci):
    return ArtifactSource(config, download_store, fake_ci.upstream(config))


class TestArtifactFileName:
    def test_rust_tarball(self):
        assert (
            artifact_file_name(Product.RUST, "rustc", "1.47.0", "x86_64-unknown-linux-gnu")
            == "rustc-1.47.0-x86_64-unknown-linux-gnu.tar.xz"
        )

    def test_rustup_binary(self):
        assert (
            artifact_file_name(Product.RUSTUP, "rustup-init", "1.27.1", "x86_64-apple-darwin")
            == "dist/x86_64-apple-darwin/rustup-init"
        )


class TestRequests:
    def test_required_flags(self, source):
        requests = source.requests(ReleaseVersion(version="nightly"))
        required = [r for r in requests if r.required]
        assert required == [
            ArtifactRequest(
                "rustc",
                "x86_64-unknown-linux-gnu",
                "rustc-nightly-x86_64-unknown-linux-gnu.tar.xz",
                True,
            )
        ]
        assert len(requests) == 6

    def test_sidecars_are_never_requested(self, make_config, download_store, fake_ci):
        config = make_config(
            product=Product.RUSTUP,
            components=["rustup-init", "rustup-init.sha256"],
            required_components=["rustup-init"],
        )
        source = ArtifactSource(config, download_store, fake_ci.upstream(config))
        names = [r.file_name for r in source.requests(ReleaseVersion(version="1.27.1"))]
        assert names
        assert not any(n.endswith(".sha256") for n in names)


class TestFetchAll:
    def test_stages_every_artifact(self, source, fake_ci, download_store, config, commit_a):
        added = fake_ci.add_build(commit_a, "nightly")

        artifacts = source.fetch_all(ReleaseCommit(sha=commit_a), ReleaseVersion(version="nightly"))

        assert len(artifacts) == len(added)
        for artifact in artifacts:
            assert artifact.path.parent == config.dl_dir
            assert artifact.sha256 == hashlib.sha256(added[artifact.file_name]).hexdigest()
            assert artifact.source_key == f"rustc-builds/{commit_a}/{artifact.file_name}"
            assert download_store.exists(artifact.source_key)

    def test_cache_hit_skips_upstream(self, source, fake_ci, commit_a):
        fake_ci.add_build(commit_a, "nightly")
        commit, version = ReleaseCommit(sha=commit_a), ReleaseVersion(version="nightly")
        source.fetch_all(commit, version)
        gets = fake_ci.gets

        source.fetch_all(commit, version)

        assert fake_ci.gets == gets

    def test_missing_optional_is_skipped(self, source, fake_ci, commit_a):
        fake_ci.add_build(commit_a, "nightly", skip=(("cargo", "aarch64-unknown-linux-gnu"),))

        artifacts = source.fetch_all(ReleaseCommit(sha=commit_a), ReleaseVersion(version="nightly"))

        names = {a.file_name for a in artifacts}
        assert "cargo-nightly-aarch64-unknown-linux-gnu.tar.xz" not in names
        assert len(artifacts) == 5

    def test_missing_required_fails_before_any_write(
        self, source, fake_ci, download_store, commit_a
    ):
        fake_ci.add_build(commit_a, "nightly", skip=(("rustc", "x86_64-unknown-linux-gnu"),))

        with pytest.raises(DataError, match="required artifacts missing"):
            source.fetch_all(ReleaseCommit(sha=commit_a), ReleaseVersion(version="nightly"))
        assert download_store.writes == []
        assert fake_ci.gets == 0

    def test_transient_upstream_failures_are_retried(self, source, fake_ci, commit_a):
        fake_ci.add_build(commit_a, "nightly")
        fake_ci.transient_failures = 2

        artifacts = source.fetch_all(ReleaseCommit(sha=commit_a), ReleaseVersion(version="nightly"))

        assert len(artifacts) == 6

    def test_unavailable_upstream_is_tried_once_per_attempt(
        self, source, fake_ci, config, commit_a
    ):
        fake_ci.add_build(commit_a, "nightly")
        fake_ci.transient_failures = 1000
        request = source.requests(ReleaseVersion(version="nightly"))[0]

        with pytest.raises(TransientError):
            source.stage(ReleaseCommit(sha=commit_a), request)

        assert fake_ci.requests == config.retry_attempts

    def test_previously_staged_files_are_cleared(self, source, fake_ci, config, commit_a):
        fake_ci.add_build(commit_a, "nightly")
        config.dl_dir.mkdir(parents=True)
        stale = config.dl_dir / "rustc-old-x86_64-unknown-linux-gnu.tar.xz"
        stale.write_bytes(b"stale")

        source.fetch_all(ReleaseCommit(sha=commit_a), ReleaseVersion(version="nightly"))

        assert not stale.exists()
