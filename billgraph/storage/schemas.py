"""Pydantic models for graph nodes, edges and their keys."""

import hashlib
import json
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import uuid5, NAMESPACE_URL

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class NodeLabel(str, Enum):
    """Node labels in the billing graph."""

    PERSON = "Person"
    ORGANIZATION = "Organization"
    ATTORNEY = "Attorney"
    CASE = "Case"
    EMAIL = "Email"
    PHONE_CALL = "PhoneCall"
    DOCUMENT = "Document"
    BILLABLE_EVENT = "BillableEvent"
    UNRESOLVED_UNIT = "UnresolvedUnit"


class EdgeType(str, Enum):
    """Typed edges; an edge is identified by (source, type, target)."""

    MANAGES = "MANAGES"
    REPRESENTS = "REPRESENTS"
    MEMBER_OF = "MEMBER_OF"
    SENT = "SENT"
    TO = "TO"
    CC = "CC"
    BCC = "BCC"
    PARTICIPATED_IN = "PARTICIPATED_IN"
    AUTHORED = "AUTHORED"
    RELATES_TO = "RELATES_TO"
    GENERATED = "GENERATED"
    FOR_CASE = "FOR_CASE"


class NodeRef(BaseModel):
    """Label plus natural key; the address of a node in any graph store."""

    model_config = ConfigDict(frozen=True)

    label: NodeLabel
    key: str

    def __str__(self) -> str:
        return f"{self.label.value}:{self.key}"


def ensure_utc(value: datetime) -> datetime:
    """Reject naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError("timestamp must be timezone-aware")
    return value.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


class PersonRef(BaseModel):
    """Resolved reference to a canonical Person node."""

    model_config = ConfigDict(frozen=True)

    person_id: str
    display_name: str = ""
    created: bool = False

    @property
    def ref(self) -> NodeRef:
        return NodeRef(label=NodeLabel.PERSON, key=self.person_id)


class Person(BaseModel):
    """Canonical person, unique per normalized email or phone."""

    id: str
    display_name: str = ""
    emails: List[str] = Field(default_factory=list)
    phones: List[str] = Field(default_factory=list)
    roles: List[str] = Field(default_factory=list)

    @property
    def ref(self) -> NodeRef:
        return NodeRef(label=NodeLabel.PERSON, key=self.id)

    def to_graph_dict(self) -> Dict[str, Any]:
        data = self.model_dump()
        data["key"] = data.pop("id")
        return data

    @classmethod
    def from_graph_dict(cls, data: Dict[str, Any]) -> "Person":
        return cls(
            id=data["key"],
            display_name=data.get("display_name") or "",
            emails=list(data.get("emails") or []),
            phones=list(data.get("phones") or []),
            roles=list(data.get("roles") or []),
        )


class OrganizationRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    name: str

    @property
    def ref(self) -> NodeRef:
        return NodeRef(label=NodeLabel.ORGANIZATION, key=self.key)


class CaseStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class Case(BaseModel):
    """Legal matter; created by case management, never by the merge engine."""

    case_key: str
    name: str = ""
    status: CaseStatus = CaseStatus.OPEN

    @field_validator("case_key")
    @classmethod
    def validate_case_key(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("case_key cannot be empty")
        return v.strip()

    @property
    def ref(self) -> NodeRef:
        return NodeRef(label=NodeLabel.CASE, key=self.case_key)

    def to_graph_dict(self) -> Dict[str, Any]:
        return {"key": self.case_key, "name": self.name, "status": self.status.value}

    @classmethod
    def from_graph_dict(cls, data: Dict[str, Any]) -> "Case":
        return cls(
            case_key=data["key"],
            name=data.get("name") or "",
            status=CaseStatus(data.get("status") or CaseStatus.OPEN.value),
        )


class Attorney(BaseModel):
    """Attorney managing cases and representing people."""

    key: str
    name: str = ""
    email: Optional[str] = None

    @property
    def ref(self) -> NodeRef:
        return NodeRef(label=NodeLabel.ATTORNEY, key=self.key)

    def to_graph_dict(self) -> Dict[str, Any]:
        return self.model_dump()


# ---------------------------------------------------------------------------
# Communication records (tagged union on ``kind``)
# ---------------------------------------------------------------------------


class CommunicationKind(str, Enum):
    EMAIL = "email"
    PHONE_CALL = "phone_call"
    DOCUMENT = "document"

    @property
    def label(self) -> NodeLabel:
        return _KIND_LABELS[self]


_KIND_LABELS = {
    CommunicationKind.EMAIL: NodeLabel.EMAIL,
    CommunicationKind.PHONE_CALL: NodeLabel.PHONE_CALL,
    CommunicationKind.DOCUMENT: NodeLabel.DOCUMENT,
}


class EmailPayload(BaseModel):
    kind: Literal[CommunicationKind.EMAIL] = CommunicationKind.EMAIL
    message_id: str
    subject: str = ""
    sender: str = ""
    to: List[str] = Field(default_factory=list)
    cc: List[str] = Field(default_factory=list)
    bcc: List[str] = Field(default_factory=list)
    attachment_names: List[str] = Field(default_factory=list)


class PhoneCallPayload(BaseModel):
    kind: Literal[CommunicationKind.PHONE_CALL] = CommunicationKind.PHONE_CALL
    call_id: str
    duration_seconds: int = Field(default=0, ge=0)
    direction: Literal["inbound", "outbound", "unknown"] = "unknown"
    participants: List[str] = Field(default_factory=list)


class DocumentPayload(BaseModel):
    kind: Literal[CommunicationKind.DOCUMENT] = CommunicationKind.DOCUMENT
    filename: str
    content_hash: str
    mime_type: str = "application/octet-stream"


RecordPayload = Annotated[
    Union[EmailPayload, PhoneCallPayload, DocumentPayload],
    Field(discriminator="kind"),
]
_payload_adapter: TypeAdapter[Any] = TypeAdapter(RecordPayload)


class CommunicationRecord(BaseModel):
    """Immutable provenance node for an email, phone call or document.

    Only ``summary`` and ``source_pointer`` may be filled in after the first
    merge, and only when they were previously empty.
    """

    key: str
    timestamp: datetime
    payload: RecordPayload
    summary: Optional[str] = None
    source_pointer: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def kind(self) -> CommunicationKind:
        return self.payload.kind

    @property
    def ref(self) -> NodeRef:
        return NodeRef(label=self.kind.label, key=self.key)

    def to_graph_dict(self) -> Dict[str, Any]:
        # Graph properties must be primitives, so the payload travels as JSON.
        return {
            "key": self.key,
            "kind": self.kind.value,
            "timestamp": self.timestamp,
            "summary": self.summary,
            "source_pointer": self.source_pointer,
            "payload": self.payload.model_dump_json(),
        }

    @classmethod
    def from_graph_dict(cls, data: Dict[str, Any]) -> "CommunicationRecord":
        payload = data.get("payload")
        if isinstance(payload, str):
            payload = json.loads(payload)
        return cls(
            key=data["key"],
            timestamp=data["timestamp"],
            payload=_payload_adapter.validate_python(payload),
            summary=data.get("summary"),
            source_pointer=data.get("source_pointer"),
        )


def email_key(message_id: str) -> str:
    """Natural key for an email: its Message-ID without angle brackets."""
    cleaned = (message_id or "").strip().strip("<>").strip()
    if not cleaned:
        raise ValueError("message_id cannot be empty")
    return f"email:{cleaned}"


def phone_call_key(
    call_id: Optional[str] = None,
    *,
    participants: Optional[List[str]] = None,
    started_at: Optional[datetime] = None,
    duration_seconds: int = 0,
) -> str:
    """Natural key for a phone call.

    Uses the carrier/PBX call id when present, otherwise a hash of the
    sorted participants, the UTC start time and the duration.
    """
    if call_id and call_id.strip():
        return f"call:{call_id.strip()}"
    if started_at is None or not participants:
        raise ValueError("phone call key needs a call_id or participants and start time")
    material = "|".join(
        [*sorted(participants), ensure_utc(started_at).isoformat(), str(int(duration_seconds))]
    )
    return f"call:{hashlib.sha256(material.encode('utf-8')).hexdigest()[:32]}"


def content_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def document_key(content: bytes, filename: str) -> str:
    """Natural key for a document: content hash plus filename."""
    return f"document:{content_hash(content)}:{filename}"


# ---------------------------------------------------------------------------
# Billable events
# ---------------------------------------------------------------------------


class BillableEventStatus(str, Enum):
    """Forward-only lifecycle: draft -> approved | rejected."""

    DRAFT = "draft"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self is not BillableEventStatus.DRAFT


def billable_event_id(record_key: str, case_key: str) -> str:
    """Deterministic event id so replays address the same event."""
    return str(uuid5(NAMESPACE_URL, f"billable_event:{record_key}:{case_key}"))


class BillableEvent(BaseModel):
    """Candidate billable activity generated by a record for one case."""

    id: str
    record_key: str
    case_key: str
    description: str
    timestamp: datetime
    suggested_duration_hours: float = Field(..., gt=0.0)
    status: BillableEventStatus = BillableEventStatus.DRAFT
    source_type: CommunicationKind
    amount: Optional[Decimal] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("timestamp", "created_at", "updated_at")
    @classmethod
    def validate_timestamps(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def ref(self) -> NodeRef:
        return NodeRef(label=NodeLabel.BILLABLE_EVENT, key=self.id)

    def to_graph_dict(self) -> Dict[str, Any]:
        return {
            "key": self.id,
            "record_key": self.record_key,
            "case_key": self.case_key,
            "description": self.description,
            "timestamp": self.timestamp,
            "suggested_duration_hours": self.suggested_duration_hours,
            "status": self.status.value,
            "source_type": self.source_type.value,
            "amount": str(self.amount) if self.amount is not None else None,
            "confidence": self.confidence,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_graph_dict(cls, data: Dict[str, Any]) -> "BillableEvent":
        amount = data.get("amount")
        return cls(
            id=data["key"],
            record_key=data["record_key"],
            case_key=data["case_key"],
            description=data.get("description") or "",
            timestamp=data["timestamp"],
            suggested_duration_hours=float(data["suggested_duration_hours"]),
            status=BillableEventStatus(data.get("status") or BillableEventStatus.DRAFT.value),
            source_type=CommunicationKind(data["source_type"]),
            amount=Decimal(amount) if amount is not None else None,
            confidence=float(data.get("confidence") or 0.0),
            created_at=data.get("created_at") or _utcnow(),
            updated_at=data.get("updated_at") or _utcnow(),
        )


# ---------------------------------------------------------------------------
# Ingestion bookkeeping
# ---------------------------------------------------------------------------


UnresolvedState = Literal["parked", "dead_lettered", "resolved"]
UNRESOLVED_STATES = ("parked", "dead_lettered")


class UnresolvedUnit(BaseModel):
    """A message the pipeline could not merge, kept so queries can flag the gap."""

    message_id: str
    case_key: Optional[str] = None
    state: UnresolvedState
    record_type: str = ""
    raw_payload_locator: str = ""
    attempts: int = 0
    error_type: str = ""
    error: str = ""
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("updated_at")
    @classmethod
    def validate_updated_at(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def ref(self) -> NodeRef:
        return NodeRef(label=NodeLabel.UNRESOLVED_UNIT, key=self.message_id)

    def to_graph_dict(self) -> Dict[str, Any]:
        data = self.model_dump()
        data["key"] = data.pop("message_id")
        return data

    @classmethod
    def from_graph_dict(cls, data: Dict[str, Any]) -> "UnresolvedUnit":
        props = dict(data)
        props["message_id"] = props.pop("key")
        return cls(**props)
