"""Data models for the graph merge engine."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from billgraph.storage.schemas import BillableEventStatus, EdgeType, PersonRef


class ParticipantRole(str, Enum):
    """How a person took part in a communication record."""

    SENDER = "sender"
    TO = "to"
    CC = "cc"
    BCC = "bcc"
    PARTICIPANT = "participant"
    AUTHOR = "author"


# (edge type, person is the edge source)
ROLE_EDGES = {
    ParticipantRole.SENDER: (EdgeType.SENT, True),
    ParticipantRole.TO: (EdgeType.TO, False),
    ParticipantRole.CC: (EdgeType.CC, False),
    ParticipantRole.BCC: (EdgeType.BCC, False),
    ParticipantRole.PARTICIPANT: (EdgeType.PARTICIPATED_IN, True),
    ParticipantRole.AUTHOR: (EdgeType.AUTHORED, True),
}


class ResolvedParticipant(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: ParticipantRole
    person: PersonRef


class ImmutableEventConflict(BaseModel):
    """Replay tried to amend an approved/rejected event; the update was skipped."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    status: BillableEventStatus
    attempted_fields: List[str] = Field(default_factory=list)


class MergeResult(BaseModel):
    """Outcome of one ``GraphMergeEngine.merge`` call."""

    record_key: str
    case_key: Optional[str] = None
    record_created: bool = False
    record_updated: bool = False
    edges_created: int = 0
    event_id: Optional[str] = None
    event_created: bool = False
    event_updated: bool = False
    conflicts: List[ImmutableEventConflict] = Field(default_factory=list)

    @property
    def changed(self) -> bool:
        return (
            self.record_created
            or self.record_updated
            or self.edges_created > 0
            or self.event_created
            or self.event_updated
        )
