"""Tests for RecordNormalizer: natural keys, participants and extraction text."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from billgraph.errors import ExtractionUnavailable
from billgraph.extraction.models import DocumentType
from billgraph.merge import ParticipantRole
from billgraph.pipeline.messages import IngestionMessage
from billgraph.pipeline.normalization import SUMMARY_MAX_CHARS, RecordNormalizer
from billgraph.pipeline.payloads import (
    CallParticipant,
    RawAttachment,
    RawDocument,
    RawEmail,
    RawPhoneCall,
)
from billgraph.storage.schemas import (
    CommunicationKind,
    DocumentPayload,
    PhoneCallPayload,
    document_key,
)

RECEIVED = datetime(2025, 11, 7, 8, 0, tzinfo=timezone.utc)


def _message(kind: CommunicationKind, locator: str = "raw/payload") -> IngestionMessage:
    return IngestionMessage(
        message_id="msg-1",
        record_type=kind,
        raw_payload_locator=locator,
        case_key="CV-2025-123",
        received_at=RECEIVED,
    )


class _FailingTextSource:
    def extract_text(self, content: bytes, *, filename: str, mime_type: str) -> str:
        raise ExtractionUnavailable(f"OCR down for {filename}")


def test_ingestion_message_validation() -> None:
    blank_case = IngestionMessage(
        message_id="m", record_type="email", raw_payload_locator="x", case_key="   "
    )
    assert blank_case.case_key is None
    assert blank_case.received_at.tzinfo is not None

    with pytest.raises(ValidationError):
        IngestionMessage(
            message_id="m",
            record_type="email",
            raw_payload_locator="x",
            received_at=datetime(2025, 11, 7),
        )
    with pytest.raises(ValidationError):
        IngestionMessage(message_id="", record_type="email", raw_payload_locator="x")


def test_email_normalization() -> None:
    raw = RawEmail(
        message_id="<abc@mail.example>",
        subject="Invoice INV-2025-0042",
        sender="Smith & Partners <billing@smithpartners.com>",
        to=["Jane Roe <jane@example.com>"],
        cc=["paralegal@firm.example"],
        sent_at=datetime(2025, 11, 5, 9, 30, tzinfo=timezone.utc),
        body="\nPlease find our invoice attached.\nRegards",
        attachments=[
            RawAttachment(
                filename="inv.pdf", mime_type="application/pdf", content=b"Total: $1,450.00"
            )
        ],
    )

    normalized = RecordNormalizer().normalize(_message(CommunicationKind.EMAIL, "mail/1.eml"), raw)

    record = normalized.record
    assert record.key == "email:abc@mail.example"
    assert record.timestamp == raw.sent_at
    assert record.summary == "Please find our invoice attached."
    assert record.source_pointer == "mail/1.eml"
    assert record.payload.message_id == "abc@mail.example"
    assert record.payload.attachment_names == ["inv.pdf"]

    roles = [(p.role, p.hints.email) for p in normalized.participants]
    assert roles == [
        (ParticipantRole.SENDER, "billing@smithpartners.com"),
        (ParticipantRole.TO, "jane@example.com"),
        (ParticipantRole.CC, "paralegal@firm.example"),
    ]
    assert normalized.participants[1].hints.display_name == "Jane Roe"

    assert normalized.text.startswith("Subject: Invoice INV-2025-0042")
    assert "--- Attachment: inv.pdf ---\nTotal: $1,450.00" in normalized.text
    assert normalized.source_hint is DocumentType.INVOICE


def test_email_without_date_uses_received_time() -> None:
    raw = RawEmail(message_id="m2", subject="Lunch?", sender="a@example.com")

    normalized = RecordNormalizer().normalize(_message(CommunicationKind.EMAIL), raw)

    assert normalized.record.timestamp == RECEIVED
    assert normalized.record.summary == "Lunch?"
    assert normalized.source_hint is None


def test_call_key_is_stable_without_call_id() -> None:
    started = datetime(2025, 11, 6, 14, 0, tzinfo=timezone.utc)
    people = [
        CallParticipant(phone="+15550100", name="Jane Roe"),
        CallParticipant(name="Receptionist"),
    ]
    first = RawPhoneCall(
        started_at=started, duration_seconds=420, participants=people, notes="Settlement"
    )
    second = RawPhoneCall(
        started_at=started, duration_seconds=420, participants=list(reversed(people))
    )

    normalizer = RecordNormalizer()
    a = normalizer.normalize(_message(CommunicationKind.PHONE_CALL), first)
    b = normalizer.normalize(_message(CommunicationKind.PHONE_CALL), second)

    assert a.record.key == b.record.key
    assert isinstance(a.record.payload, PhoneCallPayload)
    assert a.record.payload.participants == ["+15550100", "Receptionist"]
    assert a.text == "Settlement"
    assert [(p.role, p.hints.phone) for p in a.participants] == [
        (ParticipantRole.PARTICIPANT, "+15550100")
    ]


def test_call_id_is_preferred() -> None:
    raw = RawPhoneCall(call_id="PBX-9", started_at=RECEIVED, duration_seconds=60)

    normalized = RecordNormalizer().normalize(_message(CommunicationKind.PHONE_CALL), raw)

    assert normalized.record.key == "call:PBX-9"
    assert normalized.record.payload.call_id == "PBX-9"


def test_document_normalization() -> None:
    raw = RawDocument(
        filename="retainer.txt",
        mime_type="text/plain",
        content=b"Retainer agreement\nTotal: $5,000.00",
        authors=["Jane Roe <jane@example.com>"],
    )

    normalized = RecordNormalizer().normalize(_message(CommunicationKind.DOCUMENT), raw)

    assert normalized.record.key == document_key(raw.content, "retainer.txt")
    assert isinstance(normalized.record.payload, DocumentPayload)
    assert normalized.record.timestamp == RECEIVED
    assert normalized.record.summary == "Retainer agreement"
    assert normalized.text == "Retainer agreement\nTotal: $5,000.00"
    assert normalized.participants[0].role is ParticipantRole.AUTHOR


def test_long_summaries_are_clipped() -> None:
    raw = RawEmail(message_id="m3", body="x" * 1000)

    summary = RecordNormalizer().normalize(_message(CommunicationKind.EMAIL), raw).record.summary

    assert len(summary) == SUMMARY_MAX_CHARS
    assert summary.endswith("...")


def test_text_source_failures_propagate() -> None:
    raw = RawDocument(filename="scan.pdf", mime_type="application/pdf", content=b"%PDF")

    with pytest.raises(ExtractionUnavailable):
        RecordNormalizer(_FailingTextSource()).normalize(_message(CommunicationKind.DOCUMENT), raw)


class _RecordingTextSource:
    """Converts everything except the filenames listed in ``broken``."""

    def __init__(self, broken=()) -> None:
        self.broken = set(broken)
        self.seen = []

    def extract_text(self, content: bytes, *, filename: str, mime_type: str) -> str:
        self.seen.append((filename, mime_type))
        if filename in self.broken:
            raise ExtractionUnavailable(f"OCR down for {filename}")
        return content.decode("utf-8")


def test_one_broken_attachment_does_not_sink_the_email() -> None:
    raw = RawEmail(
        message_id="m4",
        subject="Invoices",
        body="Two invoices attached.",
        attachments=[
            RawAttachment(filename="a.pdf", mime_type="application/pdf", content=b"Total: $10.00"),
            RawAttachment(filename="b.pdf", mime_type="application/pdf", content=b"%PDF"),
        ],
    )
    source = _RecordingTextSource(broken={"b.pdf"})

    normalized = RecordNormalizer(source).normalize(_message(CommunicationKind.EMAIL), raw)

    assert normalized.failed_attachments == ["b.pdf"]
    assert "--- Attachment: a.pdf ---\nTotal: $10.00" in normalized.text
    assert "b.pdf" not in normalized.text
    assert normalized.record.payload.attachment_names == ["a.pdf", "b.pdf"]


def test_only_pdf_and_text_attachments_are_converted() -> None:
    raw = RawEmail(
        message_id="m5",
        subject="Scans",
        attachments=[
            RawAttachment(filename="scan.png", mime_type="image/png", content=b"\x89PNG\r\n"),
            RawAttachment(
                filename="notes.txt", mime_type="text/plain; charset=utf-8", content=b"Call notes"
            ),
            RawAttachment(filename="inv.pdf", mime_type="Application/PDF", content=b"Total: $5.00"),
        ],
    )
    source = _RecordingTextSource()

    normalized = RecordNormalizer(source).normalize(_message(CommunicationKind.EMAIL), raw)

    assert source.seen == [("notes.txt", "text/plain"), ("inv.pdf", "application/pdf")]
    assert "PNG" not in normalized.text
    assert "scan.png" not in normalized.text
    assert normalized.failed_attachments == []
    assert normalized.record.payload.attachment_names == ["scan.png", "notes.txt", "inv.pdf"]


def test_call_key_ignores_phone_formatting() -> None:
    started = datetime(2025, 11, 6, 14, 0, tzinfo=timezone.utc)
    formatted = RawPhoneCall(
        started_at=started,
        duration_seconds=60,
        participants=[
            CallParticipant(phone="+1 (555) 123-4567"),
            CallParticipant(email="Jane.Roe@Example.com"),
        ],
    )
    bare = RawPhoneCall(
        started_at=started,
        duration_seconds=60,
        participants=[
            CallParticipant(phone="+15551234567"),
            CallParticipant(email="jane.roe@example.com"),
        ],
    )

    normalizer = RecordNormalizer()
    a = normalizer.normalize(_message(CommunicationKind.PHONE_CALL), formatted)
    b = normalizer.normalize(_message(CommunicationKind.PHONE_CALL), bare)

    assert a.record.key == b.record.key
    assert a.record.payload.participants == ["+15551234567", "jane.roe@example.com"]
