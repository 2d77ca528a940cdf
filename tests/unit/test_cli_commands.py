"""Tests for the Typer CLI commands using CliRunner."""

from __future__ import annotations

from pathlib import Path

import pytest
from typer.testing import CliRunner

from promote_release.cli import runtime
from promote_release.cli.app import app
from promote_release.cli.commands import release as release_module
from promote_release.config import Product
from promote_release.core.errors import ErrorCategory
from promote_release.models.outcome import RunOutcome
from promote_release.models.stages import PipelineState

runner = CliRunner()


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path: Path):
    """Point the CLI at a scratch work dir and keep logging config untouched."""
    monkeypatch.setenv("PROMOTE_RELEASE_WORK_DIR", str(tmp_path / "work"))
    monkeypatch.setattr(release_module, "configure_logging", lambda level: None)
    monkeypatch.setattr(
        "promote_release.cli.commands.verify.configure_logging", lambda level: None
    )


def _fake_orchestrator(outcome: RunOutcome | None = None, raises: BaseException | None = None):
    seen: dict = {}

    class FakeOrchestrator:
        def __init__(self, config):
            seen["config"] = config

        def run(self) -> RunOutcome:
            if raises is not None:
                raise raises
            return outcome

    return FakeOrchestrator, seen


def _outcome(state: PipelineState, **extra) -> RunOutcome:
    return RunOutcome(
        channel="nightly", product=Product.RUST, state=state, date="2024-05-01", **extra
    )


class TestHelp:
    def test_lists_commands(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "release" in result.output
        assert "verify" in result.output


class TestReleaseCommand:
    def test_published(self, monkeypatch):
        fake, seen = _fake_orchestrator(_outcome(PipelineState.DONE, commit="a" * 40))
        monkeypatch.setattr(release_module, "Orchestrator", fake)

        result = runner.invoke(app, ["release", "beta", "--skip-invalidations"])

        assert result.exit_code == 0
        assert "Release published" in result.output
        assert seen["config"].channel == "beta"
        assert seen["config"].skip_invalidations is True

    def test_nothing_to_do_exits_zero(self, monkeypatch):
        fake, _ = _fake_orchestrator(
            _outcome(PipelineState.SHORT_CIRCUIT, reason="already at abc")
        )
        monkeypatch.setattr(release_module, "Orchestrator", fake)

        result = runner.invoke(app, ["release", "nightly"])

        assert result.exit_code == 0
        assert "Nothing to release" in result.output

    def test_failure_exits_one(self, monkeypatch):
        fake, _ = _fake_orchestrator(
            _outcome(
                PipelineState.FAILED,
                reason="missing required artifact",
                error_category=ErrorCategory.DATA,
            )
        )
        monkeypatch.setattr(release_module, "Orchestrator", fake)

        result = runner.invoke(app, ["release", "nightly"])

        assert result.exit_code == 1
        assert "data error" in result.output

    def test_interrupt_exits_130(self, monkeypatch):
        fake, _ = _fake_orchestrator(raises=KeyboardInterrupt())
        monkeypatch.setattr(release_module, "Orchestrator", fake)

        result = runner.invoke(app, ["release", "nightly"])

        assert result.exit_code == 130

    def test_commit_and_product_options(self, monkeypatch):
        fake, seen = _fake_orchestrator(_outcome(PipelineState.DONE))
        monkeypatch.setattr(release_module, "Orchestrator", fake)

        result = runner.invoke(
            app, ["release", "stable", "--commit", "AB" * 20, "--product", "rustup"]
        )

        assert result.exit_code == 0
        assert seen["config"].override_commit == "ab" * 20
        assert seen["config"].product == Product.RUSTUP

    def test_invalid_commit_exits_one(self, monkeypatch):
        fake, seen = _fake_orchestrator(_outcome(PipelineState.DONE))
        monkeypatch.setattr(release_module, "Orchestrator", fake)

        result = runner.invoke(app, ["release", "nightly", "--commit", "abc123"])

        assert result.exit_code == 1
        assert "config" not in seen

    def test_concurrent_run_is_refused(self, monkeypatch, tmp_path: Path):
        fake, seen = _fake_orchestrator(_outcome(PipelineState.DONE))
        monkeypatch.setattr(release_module, "Orchestrator", fake)

        with runtime.run_lock(tmp_path / "work"):
            result = runner.invoke(app, ["release", "nightly"])

        assert result.exit_code == 1
        assert "config" not in seen
        assert "another promote-release" in result.output


class TestVerifyCommand:
    def _env(self, monkeypatch, tmp_path: Path) -> None:
        monkeypatch.setenv("PROMOTE_RELEASE_LOCAL_STORE_PATH", str(tmp_path / "stores"))
        monkeypatch.setenv("PROMOTE_RELEASE_UPLOAD_BUCKET", "upload")
        monkeypatch.setenv("PROMOTE_RELEASE_UPLOAD_ADDR", "https://static.test")

    def test_published_release_verifies(
        self,
        monkeypatch,
        tmp_path: Path,
        make_config,
        make_orchestrator,
        fake_github,
        fake_ci,
        signing_keypair,
        commit_a,
    ):
        fake_github.branches[("rust-lang/rust", "master")] = commit_a
        fake_ci.add_build(commit_a, "nightly")
        assert make_orchestrator(make_config()).run().state == PipelineState.DONE
        self._env(monkeypatch, tmp_path)

        result = runner.invoke(app, ["verify", "nightly", "-k", signing_keypair[1]])

        assert result.exit_code == 0, result.output
        assert "valid" in result.output

    def test_wrong_key_fails(
        self,
        monkeypatch,
        tmp_path: Path,
        make_config,
        make_orchestrator,
        fake_github,
        fake_ci,
        commit_a,
    ):
        fake_github.branches[("rust-lang/rust", "master")] = commit_a
        fake_ci.add_build(commit_a, "nightly")
        make_orchestrator(make_config()).run()
        self._env(monkeypatch, tmp_path)

        result = runner.invoke(app, ["verify", "nightly", "-k", "00" * 32])

        assert result.exit_code == 1
        assert "INVALID" in result.output

    def test_nothing_published(self, monkeypatch, tmp_path: Path):
        self._env(monkeypatch, tmp_path)

        result = runner.invoke(app, ["verify", "beta", "-k", "00" * 32])

        assert result.exit_code == 1
        assert "data error" in result.output

    def test_a_public_key_is_required(self, monkeypatch, tmp_path: Path):
        self._env(monkeypatch, tmp_path)

        result = runner.invoke(app, ["verify", "nightly"])

        assert result.exit_code == 1
        assert "needs an Ed25519 or OpenPGP public key" in result.output

    def test_openpgp_signature_verifies(
        self,
        monkeypatch,
        tmp_path: Path,
        make_config,
        make_orchestrator,
        fake_github,
        fake_ci,
        gpg_key,
        commit_a,
    ):
        fake_github.branches[("rust-lang/rust", "master")] = commit_a
        fake_ci.add_build(commit_a, "nightly")
        config = make_config(gpg_key_file=gpg_key[0], gpg_password_file=gpg_key[1])
        assert make_orchestrator(config).run().state == PipelineState.DONE
        self._env(monkeypatch, tmp_path)
        public_key = tmp_path / "release-public.asc"
        public_key.write_text(gpg_key[2])

        result = runner.invoke(app, ["verify", "nightly", "--pgp-public-key", str(public_key)])

        assert result.exit_code == 0, result.output
        assert "not checked" in result.output
