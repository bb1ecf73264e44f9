"""Tests for raw payload loading from the filesystem."""

import base64
import json
from datetime import datetime, timezone
from email.message import EmailMessage, Message
from pathlib import Path

import pytest

from billgraph.errors import InvalidPayloadError, PayloadNotFoundError
from billgraph.pipeline.payloads import (
    FilesystemPayloadStore,
    RawDocument,
    RawEmail,
    RawPhoneCall,
    parse_eml,
)
from billgraph.storage.schemas import CommunicationKind


def _write_json(root: Path, name: str, data) -> str:
    (root / name).write_text(json.dumps(data), encoding="utf-8")
    return name


def _eml(with_message_id: bool = True) -> bytes:
    msg = EmailMessage()
    if with_message_id:
        msg["Message-ID"] = "<abc123@mail.example>"
    msg["Subject"] = "Invoice INV-2025-0042"
    msg["From"] = "Smith & Partners <billing@smithpartners.com>"
    msg["To"] = "Jane Roe <jane@example.com>, bob@example.com"
    msg["Date"] = "Wed, 05 Nov 2025 09:30:00 -0500"
    msg.set_content("Please find our invoice attached.\nTotal: $1,450.00\n")
    msg.add_attachment(
        b"%PDF-1.4 fake", maintype="application", subtype="pdf", filename="INV-2025-0042.pdf"
    )
    return bytes(msg)


@pytest.fixture
def payloads(tmp_path: Path) -> FilesystemPayloadStore:
    return FilesystemPayloadStore(tmp_path)


def test_email_envelope_decodes_attachments(payloads, tmp_path) -> None:
    locator = _write_json(
        tmp_path,
        "m1.json",
        {
            "message_id": "<m1@mail>",
            "subject": "Invoice",
            "from": "billing@vendor.com",
            "to": ["jane@example.com"],
            "sent_at": "2025-11-05T09:30:00+00:00",
            "attachments": [
                {
                    "filename": "inv.txt",
                    "mime_type": "text/plain",
                    "content": base64.b64encode(b"Total: $10.00").decode("ascii"),
                }
            ],
        },
    )

    raw = payloads.load(locator, CommunicationKind.EMAIL)

    assert isinstance(raw, RawEmail)
    assert raw.sender == "billing@vendor.com"
    assert raw.sent_at == datetime(2025, 11, 5, 9, 30, tzinfo=timezone.utc)
    assert raw.attachments[0].content == b"Total: $10.00"


def test_phone_call_envelope(payloads, tmp_path) -> None:
    locator = _write_json(
        tmp_path,
        "call.json",
        {
            "started_at": "2025-11-06T14:00:00Z",
            "duration_seconds": 420,
            "direction": "outbound",
            "participants": [{"phone": "+1 555 0100", "name": "Jane Roe"}],
            "notes": "Discussed settlement terms",
        },
    )

    raw = payloads.load(locator, CommunicationKind.PHONE_CALL)

    assert isinstance(raw, RawPhoneCall)
    assert raw.call_id is None
    assert raw.participants[0].phone == "+1 555 0100"


def test_eml_file_is_parsed(payloads, tmp_path) -> None:
    (tmp_path / "mail").mkdir()
    (tmp_path / "mail" / "0001.eml").write_bytes(_eml())

    raw = payloads.load("mail/0001.eml", CommunicationKind.EMAIL)

    assert raw.message_id == "<abc123@mail.example>"
    assert raw.subject == "Invoice INV-2025-0042"
    assert raw.to == ["Jane Roe <jane@example.com>", "bob@example.com"]
    assert raw.sent_at == datetime(2025, 11, 5, 14, 30, tzinfo=timezone.utc)
    assert raw.body.startswith("Please find our invoice attached.")
    assert len(raw.attachments) == 1
    attachment = raw.attachments[0]
    assert attachment.filename == "INV-2025-0042.pdf"
    assert attachment.mime_type == "application/pdf"
    assert attachment.content == b"%PDF-1.4 fake"


def test_eml_without_message_id_is_invalid() -> None:
    with pytest.raises(InvalidPayloadError, match="Message-ID"):
        parse_eml(_eml(with_message_id=False))


def test_eml_parser_rejects_legacy_message_objects(monkeypatch) -> None:
    monkeypatch.setattr(
        "billgraph.pipeline.payloads.email.message_from_bytes",
        lambda data, policy=None: Message(),
    )

    with pytest.raises(InvalidPayloadError, match="Expected an RFC 822 email"):
        parse_eml(_eml())


def test_other_files_load_as_documents(payloads, tmp_path) -> None:
    (tmp_path / "notes.txt").write_bytes(b"Call notes")

    raw = payloads.load("notes.txt", CommunicationKind.DOCUMENT)

    assert isinstance(raw, RawDocument)
    assert raw.mime_type == "text/plain"
    assert raw.content == b"Call notes"
    assert raw.authored_at is not None and raw.authored_at.tzinfo is not None

    with pytest.raises(InvalidPayloadError):
        payloads.load("notes.txt", CommunicationKind.EMAIL)


@pytest.mark.parametrize(
    "content",
    [
        "{not json",
        json.dumps(["a", "b"]),
        json.dumps({"filename": "a.pdf", "content": "***not base64***"}),
    ],
)
def test_malformed_envelopes_are_invalid(payloads, tmp_path, content) -> None:
    (tmp_path / "bad.json").write_text(content, encoding="utf-8")

    with pytest.raises(InvalidPayloadError):
        payloads.load("bad.json", CommunicationKind.DOCUMENT)


def test_missing_and_escaping_locators(payloads, tmp_path) -> None:
    (tmp_path.parent / "outside.json").write_text("{}", encoding="utf-8")

    with pytest.raises(PayloadNotFoundError, match="not found"):
        payloads.load("missing.json", CommunicationKind.EMAIL)
    with pytest.raises(PayloadNotFoundError, match="escapes"):
        payloads.load("../outside.json", CommunicationKind.EMAIL)
