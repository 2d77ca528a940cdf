"""Shared test fixtures for promote-release.

External services are faked in-process: GitHub and the CI artifact CDN
through ``httpx.MockTransport``, object stores through ``LocalObjectStore``
and CloudFront through a recording stub.
"""

from __future__ import annotations

import io
import lzma
import shutil
import tarfile
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

import gnupg
import httpx
import pytest
from botocore.exceptions import ClientError

from promote_release.config import Product, PromoteConfig
from promote_release.core.orchestrator import Orchestrator
from promote_release.sources.github import GithubClient
from promote_release.sources.upstream import UpstreamArtifacts
from promote_release.stages.fetch import artifact_file_name
from promote_release.stages.invalidator import CacheInvalidator
from promote_release.stages.signer import generate_keypair
from promote_release.storage.object_store import LocalObjectStore

GITHUB_API = "https://api.github.test"
CI_BASE = "https://ci.test/rustc-builds"
UPLOAD_ADDR = "https://static.test"
RELEASE_DATE = "2024-05-01"

TARGETS = ["x86_64-unknown-linux-gnu", "aarch64-unknown-linux-gnu"]
COMPONENTS = ["cargo", "rust-std", "rustc"]
GPG_PASSPHRASE = "release-test-passphrase"


def make_tarball(name: str, payload: bytes) -> bytes:
    """A small but real ``.tar.xz`` with one member under ``name/``."""
    raw = io.BytesIO()
    with tarfile.open(fileobj=raw, mode="w") as tar:
        info = tarfile.TarInfo(f"{name}/payload.bin")
        info.size = len(payload)
        info.mtime = 0
        tar.addfile(info, io.BytesIO(payload))
    return lzma.compress(raw.getvalue(), format=lzma.FORMAT_XZ, preset=1)


# ---------------------------------------------------------------------------
# Fake services
# ---------------------------------------------------------------------------


class FakeGithub:
    """Serves ``git/ref/heads`` and ``contents`` from in-memory tables."""

    def __init__(self) -> None:
        self.branches: dict[tuple[str, str], str] = {}
        self.files: dict[tuple[str, str, str], str] = {}
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        rest = request.url.path[len("/repos/"):]
        if "/git/ref/heads/" in rest:
            repo, branch = rest.split("/git/ref/heads/", 1)
            sha = self.branches.get((repo, branch))
            if sha is None:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(
                200,
                json={"ref": f"refs/heads/{branch}", "object": {"sha": sha, "type": "commit"}},
            )
        if "/contents/" in rest:
            repo, path = rest.split("/contents/", 1)
            text = self.files.get((repo, path, request.url.params.get("ref", "")))
            if text is None:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(200, text=text)
        return httpx.Response(404)

    def client(self, config: PromoteConfig) -> GithubClient:
        transport = httpx.MockTransport(self.handler)
        return GithubClient(config, client=httpx.Client(transport=transport))


class FakeCI:
    """Serves ``HEAD``/``GET {base}/{commit}/{file}`` from memory.

    ``transient_failures`` makes the next N requests answer 503.
    ``requests`` counts every request, failed or not.
    """

    def __init__(self) -> None:
        self.files: dict[tuple[str, str], bytes] = {}
        self.gets = 0
        self.heads = 0
        self.transient_failures = 0
        self.requests = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests += 1
        if self.transient_failures > 0:
            self.transient_failures -= 1
            return httpx.Response(503)
        commit, file_name = request.url.path[len("/rustc-builds/"):].split("/", 1)
        data = self.files.get((commit, file_name))
        if request.method == "HEAD":
            self.heads += 1
            return httpx.Response(200 if data is not None else 404)
        self.gets += 1
        if data is None:
            return httpx.Response(404)
        return httpx.Response(200, content=data)

    def add_build(
        self,
        commit: str,
        version: str,
        *,
        product: Product = Product.RUST,
        targets: list[str] | None = None,
        components: list[str] | None = None,
        skip: tuple[tuple[str, str], ...] = (),
    ) -> dict[str, bytes]:
        """Publish one CI build; ``skip`` lists (component, target) to leave out."""
        added: dict[str, bytes] = {}
        for target in targets or TARGETS:
            for component in components or COMPONENTS:
                if (component, target) in skip:
                    continue
                file_name = artifact_file_name(product, component, version, target)
                if product == Product.RUSTUP:
                    data = b"\x7fELF" + f"{component}-{target}-{commit}".encode()
                else:
                    data = make_tarball(
                        f"{component}-{version}-{target}",
                        f"{component} {target} {commit}\n".encode() * 64,
                    )
                self.files[(commit, file_name)] = data
                added[file_name] = data
        return added

    def upstream(self, config: PromoteConfig) -> UpstreamArtifacts:
        transport = httpx.MockTransport(self.handler)
        return UpstreamArtifacts(config, client=httpx.Client(transport=transport))


class FakeCloudFront:
    """Records ``create_invalidation`` calls; optionally fails them."""

    def __init__(self, fail: bool = False) -> None:
        self.calls: list[dict[str, Any]] = []
        self.fail = fail

    def create_invalidation(self, **kwargs: Any) -> dict[str, Any]:
        if self.fail:
            raise ClientError(
                {"Error": {"Code": "AccessDenied", "Message": "denied"}},
                "CreateInvalidation",
            )
        self.calls.append(kwargs)
        return {"Invalidation": {"Id": f"I{len(self.calls)}", "Status": "InProgress"}}


# ---------------------------------------------------------------------------
# Commits
# ---------------------------------------------------------------------------


@pytest.fixture
def commit_a() -> str:
    return "0123456789abcdef0123456789abcdef01234567"


@pytest.fixture
def commit_b() -> str:
    return "89abcdef0123456789abcdef0123456789abcdef"


@pytest.fixture
def commit_c() -> str:
    return "fedcba9876543210fedcba9876543210fedcba98"


# ---------------------------------------------------------------------------
# Services and stores
# ---------------------------------------------------------------------------


@pytest.fixture
def tarball() -> Callable[[str, bytes], bytes]:
    """Factory fixture: build a ``.tar.xz`` from a name and payload."""
    return make_tarball


@pytest.fixture
def fake_github() -> FakeGithub:
    return FakeGithub()


@pytest.fixture
def fake_ci() -> FakeCI:
    return FakeCI()


@pytest.fixture
def cloudfront() -> FakeCloudFront:
    return FakeCloudFront()


@pytest.fixture
def download_store(tmp_path: Path) -> LocalObjectStore:
    """The working store acting as the CI artifact cache."""
    return LocalObjectStore(tmp_path / "stores" / "download")


@pytest.fixture
def upload_store(tmp_path: Path) -> LocalObjectStore:
    """The public distribution store."""
    return LocalObjectStore(tmp_path / "stores" / "upload")


@pytest.fixture
def signing_keypair(tmp_path: Path) -> tuple[str, str, Path]:
    """``(seed_hex, public_key_hex, key_file)`` with the seed written to disk."""
    seed_hex, public_hex = generate_keypair()
    key_file = tmp_path / "keys" / "signing.key"
    key_file.parent.mkdir(parents=True)
    key_file.write_text(seed_hex + "\n")
    return seed_hex, public_hex, key_file


@pytest.fixture(scope="session")
def gpg_key(tmp_path_factory: pytest.TempPathFactory) -> tuple[Path, Path, str]:
    """``(secret_key_file, password_file, public_key)``, armored, one per session.

    Skips when no ``gpg`` binary is installed.
    """
    if shutil.which("gpg") is None:
        pytest.skip("gpg binary not available")
    home = tempfile.mkdtemp(prefix="prgpgt-")
    try:
        gpg = gnupg.GPG(gnupghome=home)
        key = gpg.gen_key(
            gpg.gen_key_input(
                key_type="RSA",
                key_length=2048,
                name_real="Release Test",
                name_email="release@example.test",
                passphrase=GPG_PASSPHRASE,
            )
        )
        assert key.fingerprint, f"gpg key generation failed: {key.stderr}"
        secret = gpg.export_keys(key.fingerprint, secret=True, passphrase=GPG_PASSPHRASE)
        public = gpg.export_keys(key.fingerprint)
    finally:
        shutil.rmtree(home, ignore_errors=True)
    keys = tmp_path_factory.mktemp("gpg")
    key_file = keys / "release.asc"
    key_file.write_text(secret)
    password_file = keys / "password"
    password_file.write_text(GPG_PASSPHRASE + "\n")
    return key_file, password_file, public


# ---------------------------------------------------------------------------
# Config and orchestrator factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_config(
    tmp_path: Path, signing_keypair: tuple[str, str, Path]
) -> Callable[..., PromoteConfig]:
    """Factory fixture: a PromoteConfig wired to the fakes above."""

    def _factory(**overrides: Any) -> PromoteConfig:
        defaults: dict[str, Any] = {
            "channel": "nightly",
            "github_api_url": GITHUB_API,
            "upstream_artifacts_url": CI_BASE,
            "upload_addr": UPLOAD_ADDR,
            "targets": list(TARGETS),
            "components": list(COMPONENTS),
            "required_components": ["rustc"],
            "work_dir": tmp_path / "work",
            "local_store_path": tmp_path / "stores",
            "download_bucket": "download",
            "upload_bucket": "upload",
            "signing_key_file": signing_keypair[2],
            "release_date": RELEASE_DATE,
            "cloudfront_distribution_ids": ["E2EXAMPLE"],
            "num_threads": 4,
            "retry_attempts": 3,
            "retry_base_delay": 0,
            "retry_max_delay": 0,
        }
        defaults.update(overrides)
        return PromoteConfig(**defaults)

    return _factory


@pytest.fixture
def config(make_config: Callable[..., PromoteConfig]) -> PromoteConfig:
    return make_config()


@pytest.fixture
def make_orchestrator(
    fake_github: FakeGithub,
    fake_ci: FakeCI,
    download_store: LocalObjectStore,
    upload_store: LocalObjectStore,
    cloudfront: FakeCloudFront,
) -> Callable[..., Orchestrator]:
    """Factory fixture: an Orchestrator with every collaborator faked."""

    def _factory(config: PromoteConfig, **overrides: Any) -> Orchestrator:
        wiring: dict[str, Any] = {
            "github": fake_github.client(config),
            "upstream": fake_ci.upstream(config),
            "download_store": download_store,
            "upload_store": upload_store,
            "invalidator": CacheInvalidator(config, cloudfront=cloudfront),
        }
        wiring.update(overrides)
        return Orchestrator(config, **wiring)

    return _factory
