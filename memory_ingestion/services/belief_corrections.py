"""Apply human verify/reject/correct verdicts to beliefs held by the memory store."""

from typing import Any, Dict, Optional, Tuple

from ..core.errors import (
    BeliefConflictError,
    BeliefNotActiveError,
    CorrectionAlreadyAppliedError,
)
from ..core.logging import get_logger
from ..models.belief import (
    BeliefSnapshot,
    BeliefState,
    CorrectionAction,
    CorrectionEvent,
    CorrectionResult,
)
from .memory_client import MemoryClient

logger = get_logger(__name__)

# (current state, action) -> state of the corrected belief afterwards.
# A correct on a deprecated belief leaves it deprecated and only creates
# the replacement.
TRANSITIONS: Dict[Tuple[BeliefState, CorrectionAction], BeliefState] = {
    (BeliefState.ACTIVE, CorrectionAction.VERIFY): BeliefState.VERIFIED,
    (BeliefState.ACTIVE, CorrectionAction.REJECT): BeliefState.DEPRECATED,
    (BeliefState.ACTIVE, CorrectionAction.CORRECT): BeliefState.SUPERSEDED,
    (BeliefState.VERIFIED, CorrectionAction.REJECT): BeliefState.DEPRECATED,
    (BeliefState.VERIFIED, CorrectionAction.CORRECT): BeliefState.SUPERSEDED,
    (BeliefState.DEPRECATED, CorrectionAction.CORRECT): BeliefState.DEPRECATED,
}


def next_state(current: BeliefSnapshot, action: CorrectionAction) -> BeliefState:
    """Resolve the state a correction leads to, or raise why it cannot apply."""
    if current.state == BeliefState.SUPERSEDED:
        raise BeliefConflictError(
            f"Belief {current.belief_id} was already superseded"
            + (f" by {current.superseded_by}" if current.superseded_by else ""),
            superseded_by=current.superseded_by,
        )
    if current.state == BeliefState.VERIFIED and action == CorrectionAction.VERIFY:
        raise CorrectionAlreadyAppliedError(f"Belief {current.belief_id} is already verified")

    target = TRANSITIONS.get((current.state, action))
    if target is None:
        raise BeliefNotActiveError(
            f"Belief {current.belief_id} is {current.state.value}; {action.value} does not apply"
        )
    return target


def _new_belief_id(ack: Dict[str, Any]) -> Optional[str]:
    new_belief = ack.get("new_belief")
    if isinstance(new_belief, dict) and new_belief.get("id"):
        return str(new_belief["id"])
    if ack.get("new_belief_id"):
        return str(ack["new_belief_id"])
    return None


class BeliefCorrections:
    """State machine over externally owned beliefs.

    Deprecated and superseded beliefs are never re-activated; a correction
    always produces a new belief. Each event results in exactly one update
    call to the store, and failures surface to the caller unretried.
    """

    def __init__(self, memory: MemoryClient):
        self.memory = memory

    async def apply(self, event: CorrectionEvent) -> CorrectionResult:
        current = await self.memory.get_belief(event.belief_id)
        target = next_state(current, event.action)

        ack = await self.memory.update(event)

        new_belief_id = None
        if event.action == CorrectionAction.CORRECT:
            new_belief_id = _new_belief_id(ack)
            if not new_belief_id or new_belief_id == event.belief_id:
                logger.error(
                    "Correction applied without a distinct new belief",
                    belief_id=event.belief_id,
                    store_ack=ack,
                )
                raise BeliefConflictError(
                    f"Memory store applied the correction to {event.belief_id} "
                    f"but returned no distinct new belief id (ack: {ack!r})"
                )

        logger.info(
            "Applied belief correction",
            belief_id=event.belief_id,
            action=event.action.value,
            previous_state=current.state.value,
            state=target.value,
            new_belief_id=new_belief_id,
        )
        return CorrectionResult(
            belief_id=event.belief_id,
            action=event.action,
            previous_state=current.state,
            state=target,
            new_belief_id=new_belief_id,
            store_ack=ack,
        )
