"""Release data models: channels, commits, versions, artifacts, manifests."""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from promote_release.config import Product


class ChannelKind(str, Enum):
    """How a channel resolves its branch and version.

    - ROLLING  : default branch, version is the channel name (nightly)
    - NAMED    : channel-named branch, version is the channel name (beta, tools)
    - NUMBERED : channel-named branch, version read from the source tree (stable)
    """

    ROLLING = "rolling"
    NAMED = "named"
    NUMBERED = "numbered"


_KNOWN_KINDS: dict[str, ChannelKind] = {
    "nightly": ChannelKind.ROLLING,
    "beta": ChannelKind.NAMED,
    "stable": ChannelKind.NUMBERED,
}


class Channel(BaseModel):
    """A named release track. Immutable per run."""

    model_config = ConfigDict(frozen=True)

    name: str
    kind: ChannelKind

    @classmethod
    def from_name(cls, name: str) -> Channel:
        return cls(name=name, kind=_KNOWN_KINDS.get(name, ChannelKind.NAMED))

    def __str__(self) -> str:
        return self.name


class ReleaseCommit(BaseModel):
    """The commit a release is built from; the cache key for every fetch."""

    model_config = ConfigDict(frozen=True)

    sha: str
    source: str = "branch"  # "override" or "branch"

    @property
    def short(self) -> str:
        return self.sha[:9]


class ReleaseVersion(BaseModel):
    """Human-readable release version plus derived sub-component versions."""

    model_config = ConfigDict(frozen=True)

    version: str
    derived: dict[str, str] = {}

    def for_component(self, component: str) -> str:
        return self.derived.get(component, self.version)


class Artifact(BaseModel):
    """A CI-produced file for one (component, target) pair, staged locally.

    Never mutated after fetch: transformed variants are separate Artifacts.
    """

    model_config = ConfigDict(frozen=True)

    component: str
    target: str
    file_name: str
    source_key: str
    path: Path
    size_bytes: int
    sha256: str
    required: bool = False

    @property
    def is_tar_xz(self) -> bool:
        return self.file_name.endswith(".tar.xz")


class PublicArtifact(BaseModel):
    """The public-facing files derived from one staged Artifact.

    ``primary`` is listed as the manifest ``url``; ``xz`` (when present) as
    ``xz_url``. Without recompression ``primary`` is the source artifact.
    """

    model_config = ConfigDict(frozen=True)

    source: Artifact
    primary: Artifact
    xz: Artifact | None = None

    @property
    def component(self) -> str:
        return self.source.component

    @property
    def target(self) -> str:
        return self.source.target

    def files(self) -> list[Artifact]:
        return [self.primary] + ([self.xz] if self.xz is not None else [])


class ManifestEntry(BaseModel):
    """One component for one target inside a Manifest."""

    model_config = ConfigDict(frozen=True)

    url: str
    hash: str
    xz_url: str | None = None
    xz_hash: str | None = None


class Manifest(BaseModel):
    """The publishable description of a release."""

    model_config = ConfigDict(frozen=True)

    product: Product
    channel: str
    date: str
    commit: str
    version: str
    file_name: str
    packages: dict[str, dict[str, ManifestEntry]] = {}  # component -> target -> entry
    package_versions: dict[str, str] = {}
    body: bytes = b""
    sha256: str = ""

    @property
    def targets(self) -> set[str]:
        return {target for entries in self.packages.values() for target in entries}


class Signature(BaseModel):
    """Detached signatures for one release.

    Always an Ed25519 signature over the serialized manifest (``.sig``).
    With an OpenPGP key configured, also armored detached signatures
    (``.asc``) for the manifest and for every public file, keyed by file
    name in ``artifact_pgp``.
    """

    model_config = ConfigDict(frozen=True)

    signature_hex: str
    public_key_hex: str
    key_fingerprint: str
    pgp_armored: str = ""
    pgp_fingerprint: str = ""
    pgp_public_key: str = ""
    artifact_pgp: dict[str, str] = {}

    def as_bytes(self) -> bytes:
        return f"{self.signature_hex}\n".encode("ascii")


class PublishedObject(BaseModel):
    """A single object-store write performed during publish."""

    model_config = ConfigDict(frozen=True)

    key: str
    size_bytes: int
    sha256: str = ""
    skipped: bool = False  # already present with identical content


class PublishRecord(BaseModel):
    """All writes of one run, in order. Not persisted beyond the run."""

    objects: list[PublishedObject] = Field(default_factory=list)
    latest_keys: list[str] = Field(default_factory=list)
    manifest_key: str = ""
    marker_key: str = ""

    def keys(self) -> list[str]:
        return [obj.key for obj in self.objects]


class ReleaseMarker(BaseModel):
    """Single source of truth for what is currently published on a channel."""

    model_config = ConfigDict(frozen=True)

    channel: str
    product: Product
    commit: str
    version: str
    date: str
    manifest_key: str
    manifest_sha256: str
    history: list[str] = []
