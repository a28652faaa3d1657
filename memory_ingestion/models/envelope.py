"""Canonical document envelope submitted to the memory store."""

import hashlib
import json
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .source import SourceKind


class Participant(BaseModel):
    """A person attached to an item (author, recipient, attendee, mention)."""
    model_config = ConfigDict(frozen=True)

    name: Optional[str] = None
    address: Optional[str] = None

    @property
    def identity(self) -> str:
        return (self.address or self.name or "").lower()


class EnvelopeContext(BaseModel):
    """Where the item lives: thread, channel, subject and a link back."""
    model_config = ConfigDict(frozen=True)

    thread_id: Optional[str] = None
    channel: Optional[str] = None
    subject: Optional[str] = None
    link: Optional[str] = None
    location: Optional[str] = None


class EnvelopeContent(BaseModel):
    """Normalized text plus the markup it was derived from."""
    model_config = ConfigDict(frozen=True)

    text: str
    raw_markup: Optional[str] = None
    content_type: str = "text"


class DocumentEnvelope(BaseModel):
    """Canonical representation of one ingested item."""
    model_config = ConfigDict(frozen=True)

    source_kind: SourceKind
    source_id: str = Field(..., min_length=1)
    timestamp: datetime
    author: Optional[Participant] = None
    participants: List[Participant] = Field(default_factory=list)
    context: EnvelopeContext = Field(default_factory=EnvelopeContext)
    content: EnvelopeContent

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("Envelope timestamp must be timezone-aware")
        return v

    @property
    def idempotency_key(self) -> str:
        return f"{self.source_kind.value}:{self.source_id}"

    def canonical_json(self) -> str:
        """Stable JSON rendering; identical envelopes render identically."""
        return json.dumps(
            self.model_dump(mode="json"),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        )

    @property
    def content_hash(self) -> str:
        return hashlib.sha256(self.canonical_json().encode("utf-8")).hexdigest()
