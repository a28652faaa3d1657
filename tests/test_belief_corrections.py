"""Tests for the belief correction state machine."""

from unittest.mock import AsyncMock, Mock

import pytest
from pydantic import ValidationError

from memory_ingestion.core.errors import (
    BeliefConflictError,
    BeliefNotActiveError,
    BeliefNotFoundError,
    CorrectionAlreadyAppliedError,
)
from memory_ingestion.models.belief import (
    BeliefSnapshot,
    BeliefState,
    CorrectionAction,
    CorrectionEvent,
)
from memory_ingestion.services.belief_corrections import BeliefCorrections, next_state


class FakeMemoryStore:
    """Holds belief snapshots and applies updates the way the store would."""

    def __init__(self, *snapshots: BeliefSnapshot):
        self.beliefs = {s.belief_id: s for s in snapshots}
        self.updates = []
        self._next_id = 2

    async def get_belief(self, belief_id):
        if belief_id not in self.beliefs:
            raise BeliefNotFoundError(belief_id)
        return self.beliefs[belief_id]

    async def update(self, event):
        self.updates.append(event)
        current = self.beliefs[event.belief_id]
        if event.action == CorrectionAction.VERIFY:
            self.beliefs[event.belief_id] = current.model_copy(update={"state": BeliefState.VERIFIED})
            return {"id": event.belief_id, "state": "verified"}
        if event.action == CorrectionAction.REJECT:
            self.beliefs[event.belief_id] = current.model_copy(update={"state": BeliefState.DEPRECATED})
            return {"id": event.belief_id, "state": "deprecated"}

        new_id = f"B{self._next_id}"
        self._next_id += 1
        self.beliefs[new_id] = BeliefSnapshot(
            belief_id=new_id, state=BeliefState.ACTIVE, content=event.corrected_content
        )
        if current.state != BeliefState.DEPRECATED:
            self.beliefs[event.belief_id] = current.model_copy(
                update={"state": BeliefState.SUPERSEDED, "superseded_by": new_id}
            )
        return {"id": event.belief_id, "new_belief": {"id": new_id}}


def snapshot(state, belief_id="B1", superseded_by=None):
    return BeliefSnapshot(belief_id=belief_id, state=state, content="Bob prefers Tuesday", superseded_by=superseded_by)


def correction(action, belief_id="B1", **payload):
    return CorrectionEvent(belief_id=belief_id, action=action, payload=payload)


@pytest.mark.parametrize(
    "state,action,expected",
    [
        (BeliefState.ACTIVE, CorrectionAction.VERIFY, BeliefState.VERIFIED),
        (BeliefState.ACTIVE, CorrectionAction.REJECT, BeliefState.DEPRECATED),
        (BeliefState.ACTIVE, CorrectionAction.CORRECT, BeliefState.SUPERSEDED),
        (BeliefState.VERIFIED, CorrectionAction.REJECT, BeliefState.DEPRECATED),
        (BeliefState.VERIFIED, CorrectionAction.CORRECT, BeliefState.SUPERSEDED),
        (BeliefState.DEPRECATED, CorrectionAction.CORRECT, BeliefState.DEPRECATED),
    ],
)
def test_allowed_transitions(state, action, expected):
    assert next_state(snapshot(state), action) == expected


@pytest.mark.parametrize("action", list(CorrectionAction))
def test_superseded_belief_conflicts_with_every_action(action):
    with pytest.raises(BeliefConflictError) as exc_info:
        next_state(snapshot(BeliefState.SUPERSEDED, superseded_by="B7"), action)
    assert exc_info.value.superseded_by == "B7"


@pytest.mark.asyncio
async def test_reject_then_correct_creates_new_belief_and_keeps_old_deprecated():
    store = FakeMemoryStore(snapshot(BeliefState.ACTIVE))
    corrections = BeliefCorrections(store)

    rejected = await corrections.apply(correction(CorrectionAction.REJECT))
    corrected = await corrections.apply(correction(CorrectionAction.CORRECT, content="Bob prefers Thursday"))

    assert rejected.state == BeliefState.DEPRECATED
    assert corrected.previous_state == BeliefState.DEPRECATED
    assert corrected.state == BeliefState.DEPRECATED
    assert corrected.new_belief_id == "B2"
    assert store.beliefs["B1"].state == BeliefState.DEPRECATED
    assert store.beliefs["B2"].state == BeliefState.ACTIVE
    assert store.beliefs["B2"].content == "Bob prefers Thursday"
    assert len(store.updates) == 2


@pytest.mark.asyncio
async def test_correct_on_active_supersedes_it():
    store = FakeMemoryStore(snapshot(BeliefState.ACTIVE))

    result = await BeliefCorrections(store).apply(correction(CorrectionAction.CORRECT, content="Thursday"))

    assert result.state == BeliefState.SUPERSEDED
    assert store.beliefs["B1"].superseded_by == result.new_belief_id


@pytest.mark.asyncio
async def test_second_correct_on_superseded_belief_conflicts():
    store = FakeMemoryStore(snapshot(BeliefState.ACTIVE))
    corrections = BeliefCorrections(store)
    first = await corrections.apply(correction(CorrectionAction.CORRECT, content="Thursday"))

    with pytest.raises(BeliefConflictError) as exc_info:
        await corrections.apply(correction(CorrectionAction.CORRECT, content="Friday"))

    assert exc_info.value.superseded_by == first.new_belief_id
    assert len(store.updates) == 1


@pytest.mark.asyncio
async def test_verify_twice_is_already_applied():
    store = FakeMemoryStore(snapshot(BeliefState.VERIFIED))

    with pytest.raises(CorrectionAlreadyAppliedError):
        await BeliefCorrections(store).apply(correction(CorrectionAction.VERIFY))
    assert store.updates == []


@pytest.mark.asyncio
@pytest.mark.parametrize("action", [CorrectionAction.VERIFY, CorrectionAction.REJECT])
async def test_deprecated_belief_cannot_be_revived(action):
    store = FakeMemoryStore(snapshot(BeliefState.DEPRECATED))

    with pytest.raises(BeliefNotActiveError):
        await BeliefCorrections(store).apply(correction(action))
    assert store.updates == []


@pytest.mark.asyncio
async def test_unknown_belief_surfaces_not_found():
    with pytest.raises(BeliefNotFoundError):
        await BeliefCorrections(FakeMemoryStore()).apply(correction(CorrectionAction.VERIFY, belief_id="B404"))


@pytest.mark.asyncio
@pytest.mark.parametrize("ack", [{"id": "B1"}, {"id": "B1", "new_belief": {"id": "B1"}}])
async def test_correct_without_distinct_new_belief_conflicts(ack):
    memory = Mock()
    memory.get_belief = AsyncMock(return_value=snapshot(BeliefState.ACTIVE))
    memory.update = AsyncMock(return_value=ack)

    with pytest.raises(BeliefConflictError, match="applied the correction to B1"):
        await BeliefCorrections(memory).apply(correction(CorrectionAction.CORRECT, content="Thursday"))
    memory.update.assert_awaited_once()


@pytest.mark.parametrize("payload", [{}, {"content": "   "}, {"content": 42}])
def test_correct_requires_content(payload):
    with pytest.raises(ValidationError):
        CorrectionEvent(belief_id="B1", action=CorrectionAction.CORRECT, payload=payload)
