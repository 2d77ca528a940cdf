"""promote-release data models — Pydantic v2, frozen where immutable."""

from promote_release.models.outcome import RunOutcome
from promote_release.models.release import (
    Artifact,
    Channel,
    ChannelKind,
    Manifest,
    ManifestEntry,
    PublicArtifact,
    PublishedObject,
    PublishRecord,
    ReleaseCommit,
    ReleaseMarker,
    ReleaseVersion,
    Signature,
)
from promote_release.models.stages import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    PipelineState,
    StateTransition,
)
