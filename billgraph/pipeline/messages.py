"""Ingestion messages and per-unit processing state."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from billgraph.extraction.models import BillingExtraction, DocumentType
from billgraph.merge.models import MergeResult, ParticipantRole, ResolvedParticipant
from billgraph.resolution.identity import IdentityHints
from billgraph.storage.schemas import CommunicationKind, CommunicationRecord, ensure_utc


class IngestionMessage(BaseModel):
    """One queue message: a pointer to a raw payload, optionally tied to a case."""

    model_config = ConfigDict(frozen=True)

    message_id: str = Field(..., min_length=1)
    record_type: CommunicationKind
    raw_payload_locator: str = Field(..., min_length=1)
    case_key: Optional[str] = None
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("received_at")
    @classmethod
    def validate_received_at(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @field_validator("case_key")
    @classmethod
    def blank_case_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None


class ParticipantHint(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: ParticipantRole
    hints: IdentityHints


class NormalizedInput(BaseModel):
    """Everything the extract/resolve/merge stages need for one message."""

    model_config = ConfigDict(frozen=True)

    record: CommunicationRecord
    participants: List[ParticipantHint] = Field(default_factory=list)
    text: str = ""
    source_hint: Optional[DocumentType] = None
    failed_attachments: List[str] = Field(default_factory=list)


class UnitState(str, Enum):
    """Processing state of a unit of work."""

    RECEIVED = "received"
    EXTRACTED = "extracted"
    RESOLVED = "resolved"
    MERGED = "merged"
    FAILED = "failed"
    PARKED = "parked"  # waiting for an unknown case to be registered
    DEAD_LETTERED = "dead_lettered"

    @property
    def is_unresolved(self) -> bool:
        return self in (UnitState.PARKED, UnitState.DEAD_LETTERED)


class UnitError(BaseModel):
    """An error recorded against one processing attempt."""

    model_config = ConfigDict(frozen=True)

    attempt: int
    stage: UnitState
    error_type: str
    message: str
    retryable: bool
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class WorkUnit(BaseModel):
    """Processing record for one ingestion message.

    ``state`` is what operators see; ``completed`` is the last stage that
    finished, so a retry resumes after it instead of re-running the
    extractor or resolver.
    """

    message: IngestionMessage
    state: UnitState = UnitState.RECEIVED
    completed: UnitState = UnitState.RECEIVED
    attempts: int = 0
    errors: List[UnitError] = Field(default_factory=list)

    normalized: Optional[NormalizedInput] = None
    extraction: Optional[BillingExtraction] = None
    participants: List[ResolvedParticipant] = Field(default_factory=list)
    result: Optional[MergeResult] = None

    @property
    def message_id(self) -> str:
        return self.message.message_id

    @property
    def case_key(self) -> Optional[str]:
        return self.message.case_key

    @property
    def last_error(self) -> Optional[UnitError]:
        return self.errors[-1] if self.errors else None

    def advance(self, stage: UnitState) -> None:
        self.state = stage
        self.completed = stage
