"""Version Resolver — which commit and version a channel releases.

Version lookup for numbered channels is an ordered list of strategies, each
returning a value or None ("not found"); the first hit wins.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass

import toml

from promote_release.config import Product, PromoteConfig
from promote_release.core.errors import DataError
from promote_release.models.release import (
    Channel,
    ChannelKind,
    ReleaseCommit,
    ReleaseVersion,
)
from promote_release.sources.github import GithubClient

logger = logging.getLogger(__name__)

DEFAULT_BRANCH = "master"

CANONICAL_VERSION_FILE = "src/version"
LEGACY_VERSION_FILE = "src/bootstrap/channel.rs"
RUSTUP_MANIFEST_FILE = "Cargo.toml"
CHANNEL_FILE = "src/ci/channel"

# Promotion order. A branch may only carry metadata for its own channel or a later one.
CHANNEL_ORDER = ("nightly", "beta", "stable")

_CFG_RELEASE_NUM_RE = re.compile(r'CFG_RELEASE_NUM\b[^"\n]*"([^"\n]+)"')
_SEMVER_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)(.*)$")


# ---------------------------------------------------------------------------
# Parsers for version metadata files
# ---------------------------------------------------------------------------


def parse_version_file(contents: str) -> str | None:
    """``src/version``: the first non-empty line."""
    for line in contents.splitlines():
        if line.strip():
            return line.strip()
    return None


def parse_cfg_release_num(contents: str) -> str | None:
    """Legacy ``CFG_RELEASE_NUM`` declaration, in either shell/yaml or Rust form."""
    match = _CFG_RELEASE_NUM_RE.search(contents)
    return match.group(1).strip() if match else None


def parse_cargo_toml(contents: str) -> str | None:
    try:
        data = toml.loads(contents)
    except toml.TomlDecodeError as exc:
        raise DataError(f"unparseable {RUSTUP_MANIFEST_FILE}: {exc}") from exc
    package = data.get("package", {})
    return package.get("version") or data.get("version")


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VersionStrategy:
    """One place a version might be found."""

    name: str
    lookup: Callable[[str], str | None]


def file_strategy(
    github: GithubClient,
    repository: str,
    path: str,
    parse: Callable[[str], str | None],
) -> VersionStrategy:
    def _lookup(commit: str) -> str | None:
        contents = github.read_file(repository, path, commit)
        return parse(contents) if contents is not None else None

    return VersionStrategy(name=f"{repository}:{path}", lookup=_lookup)


def fixed_strategy(name: str, value: str | None) -> VersionStrategy:
    return VersionStrategy(name=name, lookup=lambda _commit: value or None)


def resolve_first(strategies: Sequence[VersionStrategy], commit: str) -> str:
    """Try each strategy in order and return the first value found."""
    for strategy in strategies:
        value = strategy.lookup(commit)
        if value:
            logger.info("version %s found via %s", value, strategy.name)
            return value
        logger.info("no version at %s, trying next location", strategy.name)
    tried = ", ".join(s.name for s in strategies)
    raise DataError(f"version metadata not found at {commit} (tried {tried})")


# ---------------------------------------------------------------------------
# Derived sub-component versions
# ---------------------------------------------------------------------------

# Releases where cargo's crate version does not follow 0.(minor + 1).patch.
# Consulted before the rule.
CARGO_VERSION_FALLBACKS: dict[str, str] = {
    "1.0.0": "0.2.0",
}


def derive_cargo_version(rust_version: str) -> str:
    """Derive the bundled cargo version from a toolchain version.

    KNOWN FRAGILE: this is a mapping observed across past releases
    (``1.M.P`` ships cargo ``0.(M+1).P``), not a general algorithm. Extend
    ``CARGO_VERSION_FALLBACKS`` or set ``derived_version_override`` when a
    release breaks it; do not generalize the rule.

    Channel-named versions (``nightly``, ``beta``) are returned unchanged.
    """
    if rust_version in CARGO_VERSION_FALLBACKS:
        return CARGO_VERSION_FALLBACKS[rust_version]
    match = _SEMVER_RE.match(rust_version)
    if match is None:
        if rust_version[:1].isdigit():
            raise DataError(f"cannot derive cargo version from {rust_version!r}")
        return rust_version
    major, minor, patch, suffix = match.groups()
    if major != "1":
        raise DataError(f"cannot derive cargo version from {rust_version!r}")
    return f"0.{int(minor) + 1}.{patch}{suffix}"


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class VersionResolver:
    """Produces the ReleaseCommit and ReleaseVersion for a run.

    Parameters
    ----------
    config:
        Run configuration.
    github:
        Source-control host client.
    """

    def __init__(self, config: PromoteConfig, github: GithubClient) -> None:
        self._config = config
        self._github = github

    def branch_for(self, channel: Channel) -> str:
        if self._config.override_branch:
            return self._config.override_branch
        if channel.kind == ChannelKind.ROLLING:
            return DEFAULT_BRANCH
        return channel.name

    def resolve_commit(self, channel: Channel) -> ReleaseCommit:
        if self._config.override_commit:
            logger.info("using overridden commit %s", self._config.override_commit)
            return ReleaseCommit(sha=self._config.override_commit, source="override")
        repository = self._config.source_repository
        branch = self.branch_for(channel)
        sha = self._github.branch_tip(repository, branch)
        logger.info("%s rev is %s (%s@%s)", channel, sha, repository, branch)
        return ReleaseCommit(sha=sha, source="branch")

    def strategies(self, channel: Channel) -> list[VersionStrategy]:
        repository = self._config.source_repository
        if self._config.product == Product.RUSTUP:
            return [
                fixed_strategy("rustup_override_version", self._config.rustup_override_version),
                file_strategy(self._github, repository, RUSTUP_MANIFEST_FILE, parse_cargo_toml),
            ]
        if channel.kind != ChannelKind.NUMBERED:
            return [fixed_strategy("channel name", channel.name)]
        return [
            file_strategy(self._github, repository, CANONICAL_VERSION_FILE, parse_version_file),
            file_strategy(self._github, repository, LEGACY_VERSION_FILE, parse_cfg_release_num),
        ]

    def resolve_version(self, channel: Channel, commit: ReleaseCommit) -> ReleaseVersion:
        version = resolve_first(self.strategies(channel), commit.sha)
        derived: dict[str, str] = {}
        if self._config.product == Product.RUST:
            derived["cargo"] = (
                self._config.derived_version_override or derive_cargo_version(version)
            )
        return ReleaseVersion(version=version, derived=derived)

    def check_channel_metadata(self, channel: Channel, commit: ReleaseCommit) -> None:
        """Fail when a beta or stable branch still builds an earlier channel.

        Happens between a branch being force-pushed from its predecessor and
        the follow-up change that updates its channel file. Retrying later
        succeeds.
        """
        if self._config.product != Product.RUST or channel.name not in CHANNEL_ORDER[1:]:
            return
        contents = self._github.read_file(
            self._config.source_repository, CHANNEL_FILE, commit.sha
        )
        if contents is None:
            return
        recorded = contents.strip()
        if recorded in CHANNEL_ORDER and CHANNEL_ORDER.index(recorded) < CHANNEL_ORDER.index(
            channel.name
        ):
            raise DataError(
                f"{channel} branch at {commit.short} still builds {recorded}; looks like "
                "channels are being switched (is a channel update still pending?)"
            )

    def resolve(self, channel: Channel) -> tuple[ReleaseCommit, ReleaseVersion]:
        commit = self.resolve_commit(channel)
        if not self._config.bypass_startup_checks:
            self.check_channel_metadata(channel, commit)
        return commit, self.resolve_version(channel, commit)
