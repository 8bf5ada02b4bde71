"""
Pipeline state machine definition.

The stage graph is plain data so it can be inspected and tested without a
live platform.
"""

from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from stagegate.errors import InvalidTransitionError


class PipelineState(str, Enum):
    """States of a pipeline run."""

    PENDING = "PENDING"
    STAGING_DEPLOY = "STAGING_DEPLOY"
    STAGING_UPDATE = "STAGING_UPDATE"
    STAGING_GATE = "STAGING_GATE"
    PROD_DEPLOY = "PROD_DEPLOY"
    PROD_UPDATE = "PROD_UPDATE"
    PROD_GATE = "PROD_GATE"
    SUCCEEDED = "SUCCEEDED"
    ROLLING_BACK = "ROLLING_BACK"
    ROLLED_BACK = "ROLLED_BACK"
    FAILED = "FAILED"


# Happy path, in execution order
STAGE_SEQUENCE: Tuple[PipelineState, ...] = (
    PipelineState.STAGING_DEPLOY,
    PipelineState.STAGING_UPDATE,
    PipelineState.STAGING_GATE,
    PipelineState.PROD_DEPLOY,
    PipelineState.PROD_UPDATE,
    PipelineState.PROD_GATE,
)

TERMINAL_STATES: FrozenSet[PipelineState] = frozenset(
    {PipelineState.SUCCEEDED, PipelineState.ROLLED_BACK, PipelineState.FAILED}
)

# Only a production gate failure can roll back; earlier stages have nothing
# in production yet.
ROLLBACK_ELIGIBLE: FrozenSet[PipelineState] = frozenset({PipelineState.PROD_GATE})

# Which environment each stage acts on
STAGE_ENVIRONMENT: Dict[PipelineState, str] = {
    PipelineState.STAGING_DEPLOY: "staging",
    PipelineState.STAGING_UPDATE: "staging",
    PipelineState.STAGING_GATE: "staging",
    PipelineState.PROD_DEPLOY: "production",
    PipelineState.PROD_UPDATE: "production",
    PipelineState.PROD_GATE: "production",
    PipelineState.ROLLING_BACK: "production",
}


def _build_transitions() -> Dict[PipelineState, FrozenSet[PipelineState]]:
    table: Dict[PipelineState, FrozenSet[PipelineState]] = {}
    previous = PipelineState.PENDING
    for state in STAGE_SEQUENCE:
        table[previous] = frozenset({state, PipelineState.FAILED})
        previous = state
    table[previous] = frozenset({PipelineState.SUCCEEDED, PipelineState.FAILED})
    for state in ROLLBACK_ELIGIBLE:
        table[state] = table[state] | {PipelineState.ROLLING_BACK}
    table[PipelineState.ROLLING_BACK] = frozenset(
        {PipelineState.ROLLED_BACK, PipelineState.FAILED}
    )
    for terminal in TERMINAL_STATES:
        table[terminal] = frozenset()
    return table


TRANSITIONS: Dict[PipelineState, FrozenSet[PipelineState]] = _build_transitions()


def can_transition(current: PipelineState, nxt: PipelineState) -> bool:
    return nxt in TRANSITIONS[current]


def require_transition(current: PipelineState, nxt: PipelineState) -> None:
    if not can_transition(current, nxt):
        raise InvalidTransitionError(
            f"Invalid pipeline transition: {current.value} -> {nxt.value}",
            {"from": current.value, "to": nxt.value},
        )


def next_stage(current: PipelineState) -> Optional[PipelineState]:
    """Return the stage after ``current`` on the happy path, or None at the end."""
    if current == PipelineState.PENDING:
        return STAGE_SEQUENCE[0]
    if current not in STAGE_SEQUENCE:
        return None
    index = STAGE_SEQUENCE.index(current)
    if index + 1 < len(STAGE_SEQUENCE):
        return STAGE_SEQUENCE[index + 1]
    return None


def remaining_stages(current: PipelineState) -> List[PipelineState]:
    """Stages of the happy path that come after ``current``."""
    if current == PipelineState.PENDING:
        return list(STAGE_SEQUENCE)
    if current not in STAGE_SEQUENCE:
        return []
    return list(STAGE_SEQUENCE[STAGE_SEQUENCE.index(current) + 1 :])


__all__ = [
    "PipelineState",
    "STAGE_SEQUENCE",
    "TERMINAL_STATES",
    "ROLLBACK_ELIGIBLE",
    "STAGE_ENVIRONMENT",
    "TRANSITIONS",
    "can_transition",
    "require_transition",
    "next_stage",
    "remaining_stages",
]
