"""Belief correction models.

Beliefs live in the memory store; only their id and state pass through here.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, model_validator

from ..core.storage import utc_now


class BeliefState(str, Enum):
    ACTIVE = "active"
    VERIFIED = "verified"
    DEPRECATED = "deprecated"
    SUPERSEDED = "superseded"


class CorrectionAction(str, Enum):
    VERIFY = "verify"
    REJECT = "reject"
    CORRECT = "correct"


class CorrectionEvent(BaseModel):
    """A human verdict on one belief. Never persisted locally."""
    belief_id: str = Field(..., min_length=1)
    action: CorrectionAction
    payload: Dict[str, Any] = Field(default_factory=dict)
    issued_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def validate_payload(self) -> "CorrectionEvent":
        if self.action == CorrectionAction.CORRECT and self.corrected_content is None:
            raise ValueError("correct requires payload.content with the corrected statement")
        return self

    @property
    def corrected_content(self) -> Optional[str]:
        content = self.payload.get("content")
        if isinstance(content, str) and content.strip():
            return content.strip()
        return None


class BeliefSnapshot(BaseModel):
    """Current state of a belief as reported by the memory store."""
    belief_id: str
    state: BeliefState
    content: Optional[str] = None
    superseded_by: Optional[str] = None


class CorrectionResult(BaseModel):
    """What applying a correction did."""
    belief_id: str
    action: CorrectionAction
    previous_state: BeliefState
    state: BeliefState
    new_belief_id: Optional[str] = None
    store_ack: Dict[str, Any] = Field(default_factory=dict)
