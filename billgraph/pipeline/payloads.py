"""Loading raw payloads referenced by ingestion messages.

Locators are paths relative to the payload root. Three shapes are accepted:

* ``*.json`` envelopes, one schema per record type (see the ``Raw*`` models;
  binary content travels base64-encoded)
* ``*.eml`` RFC 822 messages, for emails
* any other file, taken verbatim as a document
"""

from __future__ import annotations

import base64
import email
import email.policy
import json
import mimetypes
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import getaddresses, parsedate_to_datetime
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Protocol, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from billgraph.errors import InvalidPayloadError, PayloadNotFoundError
from billgraph.storage.schemas import CommunicationKind


def _decode_base64(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    return base64.b64decode(value or "", validate=True)


class RawAttachment(BaseModel):
    model_config = ConfigDict(frozen=True)

    filename: str
    mime_type: str = "application/octet-stream"
    content: bytes = b""

    @field_validator("content", mode="before")
    @classmethod
    def decode_content(cls, v: Any) -> bytes:
        return _decode_base64(v)


class RawEmail(BaseModel):
    """Email as delivered by the mail connector."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    message_id: str
    subject: str = ""
    sender: str = Field(default="", alias="from")
    to: List[str] = Field(default_factory=list)
    cc: List[str] = Field(default_factory=list)
    bcc: List[str] = Field(default_factory=list)
    sent_at: Optional[datetime] = None
    body: str = ""
    attachments: List[RawAttachment] = Field(default_factory=list)


class CallParticipant(BaseModel):
    model_config = ConfigDict(frozen=True)

    phone: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None


class RawPhoneCall(BaseModel):
    """Call detail record from the phone system, with optional notes."""

    model_config = ConfigDict(frozen=True)

    call_id: Optional[str] = None
    started_at: datetime
    duration_seconds: int = Field(default=0, ge=0)
    direction: Literal["inbound", "outbound", "unknown"] = "unknown"
    participants: List[CallParticipant] = Field(default_factory=list)
    notes: str = ""


class RawDocument(BaseModel):
    """A stored file plus whatever authorship metadata came with it."""

    model_config = ConfigDict(frozen=True)

    filename: str
    mime_type: str = "application/octet-stream"
    content: bytes = b""
    authored_at: Optional[datetime] = None
    authors: List[str] = Field(default_factory=list)

    @field_validator("content", mode="before")
    @classmethod
    def decode_content(cls, v: Any) -> bytes:
        return _decode_base64(v)


RawPayload = Union[RawEmail, RawPhoneCall, RawDocument]

_ENVELOPES = {
    CommunicationKind.EMAIL: RawEmail,
    CommunicationKind.PHONE_CALL: RawPhoneCall,
    CommunicationKind.DOCUMENT: RawDocument,
}


class PayloadStore(Protocol):
    """Resolves a raw payload locator into a parsed raw payload."""

    def load(self, locator: str, record_type: CommunicationKind) -> RawPayload: ...


class FilesystemPayloadStore:
    """Payload store backed by a directory tree.

    Example:
        >>> store = FilesystemPayloadStore("data/payloads")
        >>> raw = store.load("mail/0001.eml", CommunicationKind.EMAIL)
        >>> raw.subject
        'Invoice 2025-114'
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def resolve(self, locator: str) -> Path:
        """Absolute path for ``locator``; locators may not escape the root."""
        path = (self.root / locator).resolve()
        if path != self.root and self.root not in path.parents:
            raise PayloadNotFoundError(f"Locator escapes payload root: {locator}")
        if not path.is_file():
            raise PayloadNotFoundError(f"Payload not found: {locator}")
        return path

    def load(self, locator: str, record_type: CommunicationKind) -> RawPayload:
        path = self.resolve(locator)
        data = path.read_bytes()

        try:
            raw = self._parse(path, data, record_type)
        except (ValidationError, ValueError) as exc:
            raise InvalidPayloadError(f"Malformed payload {locator}: {exc}") from exc

        logger.debug("Loaded payload", locator=locator, record_type=record_type.value)
        return raw

    def _parse(self, path: Path, data: bytes, record_type: CommunicationKind) -> RawPayload:
        suffix = path.suffix.lower()
        if suffix == ".json":
            return self._load_envelope(data, record_type)
        if suffix == ".eml":
            if record_type is not CommunicationKind.EMAIL:
                raise InvalidPayloadError(f"{path.name} is an email, not a {record_type.value}")
            return parse_eml(data)
        if record_type is not CommunicationKind.DOCUMENT:
            raise InvalidPayloadError(
                f"{path.name}: {record_type.value} payloads must be JSON envelopes"
            )
        mime_type, _ = mimetypes.guess_type(path.name)
        return RawDocument(
            filename=path.name,
            mime_type=mime_type or "application/octet-stream",
            content=data,
            authored_at=datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc),
        )

    def _load_envelope(self, data: bytes, record_type: CommunicationKind) -> RawPayload:
        envelope: Dict[str, Any] = json.loads(data.decode("utf-8"))
        if not isinstance(envelope, dict):
            raise InvalidPayloadError("JSON payload root must be an object")
        return _ENVELOPES[record_type].model_validate(envelope)


def parse_eml(data: bytes) -> RawEmail:
    """Parse an RFC 822 message into a ``RawEmail``."""
    msg = email.message_from_bytes(data, policy=email.policy.default)
    if not isinstance(msg, EmailMessage):
        raise InvalidPayloadError(f"Expected an RFC 822 email, got {type(msg).__name__}")

    message_id = (msg.get("Message-ID") or "").strip()
    if not message_id:
        raise InvalidPayloadError("Email has no Message-ID header")

    sent_at = None
    if msg.get("Date"):
        sent_at = parsedate_to_datetime(str(msg["Date"]))
        if sent_at.tzinfo is None:
            sent_at = sent_at.replace(tzinfo=timezone.utc)

    body_part = msg.get_body(preferencelist=("plain", "html"))
    body = body_part.get_content() if body_part is not None else ""

    attachments = [
        RawAttachment(
            filename=part.get_filename() or "attachment",
            mime_type=part.get_content_type(),
            content=part.get_payload(decode=True) or b"",
        )
        for part in msg.iter_attachments()
    ]

    return RawEmail(
        message_id=message_id,
        subject=str(msg.get("Subject") or ""),
        sender=str(msg.get("From") or ""),
        to=_addresses(msg, "To"),
        cc=_addresses(msg, "Cc"),
        bcc=_addresses(msg, "Bcc"),
        sent_at=sent_at,
        body=body,
        attachments=attachments,
    )


def _addresses(msg: EmailMessage, header: str) -> List[str]:
    values = [str(v) for v in msg.get_all(header, [])]
    return [
        f"{name} <{addr}>" if name else addr
        for name, addr in getaddresses(values)
        if addr
    ]
