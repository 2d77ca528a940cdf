"""Run outcome — what a promotion run did, for rendering and exit codes."""

from __future__ import annotations

from pydantic import BaseModel, Field

from promote_release.config import Product
from promote_release.core.errors import ErrorCategory
from promote_release.models.stages import SUCCESS_STATES, PipelineState, StateTransition


class RunOutcome(BaseModel):
    """Summary of one run. Built once the state machine is terminal."""

    channel: str
    product: Product
    state: PipelineState
    date: str
    commit: str = ""
    version: str = ""
    reason: str = ""
    error_category: ErrorCategory | None = None
    manifest_key: str = ""
    objects_written: int = 0
    objects_reused: int = 0
    invalidation_failures: list[str] = Field(default_factory=list)
    transitions: list[StateTransition] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state in SUCCESS_STATES

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1
