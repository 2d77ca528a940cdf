"""Deterministic pipeline state machine.

Enforces:
- Valid state transitions only (VALID_TRANSITIONS table)
- FAILED reachable from every non-terminal state
- Every transition recorded in order for the progress trace
"""

from __future__ import annotations

import logging

from promote_release.models.stages import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    PipelineState,
    StateTransition,
)

logger = logging.getLogger(__name__)


class InvalidTransitionError(RuntimeError):
    """Raised when a requested state transition is not valid."""


class PipelineStateMachine:
    """Tracks the state of one promotion run.

    Parameters
    ----------
    channel:
        Channel name, used to tag log lines.
    """

    def __init__(self, channel: str = "") -> None:
        self._channel = channel
        self._state = PipelineState.NOT_STARTED
        self._history: list[StateTransition] = []

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def history(self) -> list[StateTransition]:
        return list(self._history)

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    def available_transitions(self) -> set[PipelineState]:
        """Return the set of valid target states from the current state."""
        return set(VALID_TRANSITIONS.get(self._state, set()))

    # ------------------------------------------------------------------
    # Transition logic
    # ------------------------------------------------------------------

    def transition(self, target: PipelineState, note: str = "") -> StateTransition:
        """Move to ``target``, recording the step.

        Raises InvalidTransitionError if the table does not allow it.
        """
        allowed = VALID_TRANSITIONS.get(self._state, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition from {self._state.value} to {target.value}. "
                f"Allowed: {sorted(s.value for s in allowed)}"
            )
        record = StateTransition(from_state=self._state, to_state=target, note=note)
        self._history.append(record)
        self._state = target

        tag = f"[{target.value}]"
        if target == PipelineState.FAILED:
            logger.error("%s %s %s", tag, self._channel, note)
        elif note:
            logger.info("%s %s %s", tag, self._channel, note)
        else:
            logger.info("%s %s", tag, self._channel)
        return record

    def fail(self, note: str) -> StateTransition | None:
        """Move to FAILED unless already terminal."""
        if self.is_terminal:
            return None
        return self.transition(PipelineState.FAILED, note)
