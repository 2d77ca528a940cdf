"""Pipeline state machine models — deterministic transitions."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class PipelineState(str, Enum):
    """Every state a promotion run can be in."""

    NOT_STARTED = "not_started"
    RESOLVING_VERSION = "resolving_version"
    CHECKING_MARKER = "checking_marker"
    SHORT_CIRCUIT = "short_circuit"
    FETCHING = "fetching"
    TRANSFORMING = "transforming"
    BUILDING_MANIFEST = "building_manifest"
    SIGNING = "signing"
    SMOKE_TESTING = "smoke_testing"
    PUBLISHING = "publishing"
    INVALIDATING = "invalidating"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATES: frozenset[PipelineState] = frozenset(
    {PipelineState.SHORT_CIRCUIT, PipelineState.DONE, PipelineState.FAILED}
)

SUCCESS_STATES: frozenset[PipelineState] = frozenset(
    {PipelineState.SHORT_CIRCUIT, PipelineState.DONE}
)


def _forward(*targets: PipelineState) -> set[PipelineState]:
    return {*targets, PipelineState.FAILED}


# Valid state transitions, enforced by PipelineStateMachine.
# Terminal states have no outgoing transitions.
VALID_TRANSITIONS: dict[PipelineState, set[PipelineState]] = {
    PipelineState.NOT_STARTED: _forward(PipelineState.RESOLVING_VERSION),
    PipelineState.RESOLVING_VERSION: _forward(PipelineState.CHECKING_MARKER),
    PipelineState.CHECKING_MARKER: _forward(
        PipelineState.SHORT_CIRCUIT, PipelineState.FETCHING
    ),
    PipelineState.FETCHING: _forward(PipelineState.TRANSFORMING),
    PipelineState.TRANSFORMING: _forward(PipelineState.BUILDING_MANIFEST),
    PipelineState.BUILDING_MANIFEST: _forward(PipelineState.SIGNING),
    PipelineState.SIGNING: _forward(PipelineState.SMOKE_TESTING),
    PipelineState.SMOKE_TESTING: _forward(PipelineState.PUBLISHING),
    PipelineState.PUBLISHING: _forward(PipelineState.INVALIDATING),
    PipelineState.INVALIDATING: _forward(PipelineState.DONE),
    PipelineState.SHORT_CIRCUIT: set(),
    PipelineState.DONE: set(),
    PipelineState.FAILED: set(),
}


class StateTransition(BaseModel):
    """Records a single state transition for the progress trace."""

    model_config = ConfigDict(frozen=True)

    from_state: PipelineState
    to_state: PipelineState
    note: str = ""
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
