"""Turn raw payloads into communication records plus extraction input."""

from __future__ import annotations

from typing import List, Optional

from loguru import logger

from billgraph.errors import ExtractionUnavailable
from billgraph.extraction.signals import email_source_hint
from billgraph.extraction.text_sources import PDF_MIME_TYPE, PlainTextSource, TextSource
from billgraph.merge.models import ParticipantRole
from billgraph.pipeline.messages import IngestionMessage, NormalizedInput, ParticipantHint
from billgraph.pipeline.payloads import (
    CallParticipant,
    RawDocument,
    RawEmail,
    RawPayload,
    RawPhoneCall,
)
from billgraph.resolution.identity import IdentityHints, normalize_email, normalize_phone
from billgraph.storage.schemas import (
    CommunicationRecord,
    DocumentPayload,
    EmailPayload,
    PhoneCallPayload,
    content_hash,
    document_key,
    email_key,
    phone_call_key,
)

SUMMARY_MAX_CHARS = 280


class RecordNormalizer:
    """Builds ``CommunicationRecord``s with natural keys from raw payloads.

    Document bytes and PDF or ``text/*`` email attachments are turned into
    text through ``text_source`` (Docling for PDFs in production). Other
    attachment types are only listed by name. A failed attachment is recorded
    in ``failed_attachments`` and the email goes ahead with the text that did
    convert; a failed standalone document raises ``ExtractionUnavailable``.
    """

    def __init__(self, text_source: Optional[TextSource] = None) -> None:
        self.text_source: TextSource = text_source or PlainTextSource()

    def normalize(self, message: IngestionMessage, raw: RawPayload) -> NormalizedInput:
        if isinstance(raw, RawEmail):
            normalized = self._normalize_email(message, raw)
        elif isinstance(raw, RawPhoneCall):
            normalized = self._normalize_call(message, raw)
        else:
            normalized = self._normalize_document(message, raw)

        logger.debug(
            "Normalized payload",
            message_id=message.message_id,
            record_key=normalized.record.key,
            participants=len(normalized.participants),
            text_chars=len(normalized.text),
            failed_attachments=normalized.failed_attachments,
        )
        return normalized

    def _normalize_email(self, message: IngestionMessage, raw: RawEmail) -> NormalizedInput:
        has_pdf = any(_base_mime(a.mime_type) == PDF_MIME_TYPE for a in raw.attachments)
        record = CommunicationRecord(
            key=email_key(raw.message_id),
            timestamp=raw.sent_at or message.received_at,
            payload=EmailPayload(
                message_id=raw.message_id.strip().strip("<>"),
                subject=raw.subject,
                sender=raw.sender,
                to=list(raw.to),
                cc=list(raw.cc),
                bcc=list(raw.bcc),
                attachment_names=[a.filename for a in raw.attachments],
            ),
            summary=_summarize(raw.subject, raw.body),
            source_pointer=message.raw_payload_locator,
        )

        participants: List[ParticipantHint] = []
        for role, addresses in (
            (ParticipantRole.SENDER, [raw.sender]),
            (ParticipantRole.TO, raw.to),
            (ParticipantRole.CC, raw.cc),
            (ParticipantRole.BCC, raw.bcc),
        ):
            participants.extend(
                ParticipantHint(role=role, hints=IdentityHints.from_address(address))
                for address in addresses
                if address
            )

        sections = [f"Subject: {raw.subject}", f"From: {raw.sender}", raw.body]
        failed: List[str] = []
        for attachment in raw.attachments:
            mime_type = _base_mime(attachment.mime_type)
            if mime_type != PDF_MIME_TYPE and not mime_type.startswith("text/"):
                logger.debug(
                    "Skipping attachment without a text form",
                    message_id=message.message_id,
                    filename=attachment.filename,
                    mime_type=mime_type,
                )
                continue
            try:
                text = self.text_source.extract_text(
                    attachment.content, filename=attachment.filename, mime_type=mime_type
                )
            except ExtractionUnavailable as exc:
                logger.warning(
                    "Attachment conversion failed; continuing without it",
                    message_id=message.message_id,
                    filename=attachment.filename,
                    error=str(exc),
                )
                failed.append(attachment.filename)
                continue
            sections.append(f"--- Attachment: {attachment.filename} ---\n{text}")

        return NormalizedInput(
            record=record,
            participants=participants,
            text=_join(sections),
            source_hint=email_source_hint(raw.subject, raw.sender, has_pdf),
            failed_attachments=failed,
        )

    def _normalize_call(self, message: IngestionMessage, raw: RawPhoneCall) -> NormalizedInput:
        labels = [_call_label(p) for p in raw.participants]
        key = phone_call_key(
            raw.call_id,
            participants=labels,
            started_at=raw.started_at,
            duration_seconds=raw.duration_seconds,
        )
        record = CommunicationRecord(
            key=key,
            timestamp=raw.started_at,
            payload=PhoneCallPayload(
                call_id=key.split(":", 1)[1],
                duration_seconds=raw.duration_seconds,
                direction=raw.direction,
                participants=labels,
            ),
            summary=_summarize("", raw.notes),
            source_pointer=message.raw_payload_locator,
        )
        participants = [
            ParticipantHint(
                role=ParticipantRole.PARTICIPANT,
                hints=IdentityHints(email=p.email, phone=p.phone, display_name=p.name),
            )
            for p in raw.participants
            if p.email or p.phone
        ]
        return NormalizedInput(record=record, participants=participants, text=raw.notes)

    def _normalize_document(self, message: IngestionMessage, raw: RawDocument) -> NormalizedInput:
        text = self.text_source.extract_text(
            raw.content, filename=raw.filename, mime_type=raw.mime_type
        )
        record = CommunicationRecord(
            key=document_key(raw.content, raw.filename),
            timestamp=raw.authored_at or message.received_at,
            payload=DocumentPayload(
                filename=raw.filename,
                content_hash=content_hash(raw.content),
                mime_type=raw.mime_type,
            ),
            summary=_summarize(raw.filename, text),
            source_pointer=message.raw_payload_locator,
        )
        participants = [
            ParticipantHint(role=ParticipantRole.AUTHOR, hints=IdentityHints.from_address(author))
            for author in raw.authors
            if author
        ]
        return NormalizedInput(record=record, participants=participants, text=text)


def _base_mime(mime_type: str) -> str:
    return (mime_type or "").split(";", 1)[0].strip().lower()


def _call_label(participant: CallParticipant) -> str:
    """Stable label for a call participant: normalized phone or email, else the raw value."""
    return (
        normalize_phone(participant.phone)
        or normalize_email(participant.email)
        or participant.phone
        or participant.email
        or participant.name
        or "unknown"
    )


def _join(sections: List[str]) -> str:
    return "\n\n".join(s.strip() for s in sections if s and s.strip())


def _summarize(title: str, body: str) -> Optional[str]:
    """First non-empty line of ``body`` (or the title), clipped."""
    for line in (body or "").splitlines():
        if line.strip():
            summary = line.strip()
            break
    else:
        summary = (title or "").strip()
    if not summary:
        return None
    if len(summary) > SUMMARY_MAX_CHARS:
        summary = summary[: SUMMARY_MAX_CHARS - 3] + "..."
    return summary

