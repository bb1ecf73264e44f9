from __future__ import annotations

from typing import List

import pytest

from billgraph.errors import ExtractionUnavailable
from billgraph.extraction.models import DocumentType
from billgraph.extraction.signals import email_source_hint, is_likely_billing_message
from billgraph.extraction.text_sources import (
    PDF_MIME_TYPE,
    CompositeTextSource,
    DoclingTextSource,
    PlainTextSource,
)


class _RecordingSource:
    def __init__(self, text: str) -> None:
        self.text = text
        self.calls: List[str] = []

    def extract_text(self, content: bytes, *, filename: str, mime_type: str) -> str:
        self.calls.append(filename)
        return self.text


def test_plain_text_source_replaces_undecodable_bytes() -> None:
    text = PlainTextSource().extract_text(b"Total \xff$10", filename="a.txt", mime_type="text/plain")

    assert text.startswith("Total ")
    assert "$10" in text


def test_composite_routes_pdf_and_falls_back_for_other_types() -> None:
    pdf = _RecordingSource("pdf text")
    source = CompositeTextSource(routes={PDF_MIME_TYPE: pdf})

    assert source.extract_text(b"%PDF", filename="bill.pdf", mime_type="Application/PDF") == "pdf text"
    assert source.extract_text(b"hello", filename="note.txt", mime_type="text/plain") == "hello"
    assert pdf.calls == ["bill.pdf"]


def test_docling_failure_is_extraction_unavailable(monkeypatch: pytest.MonkeyPatch) -> None:
    source = DoclingTextSource()

    def broken_converter() -> None:
        raise RuntimeError("model download failed")

    monkeypatch.setattr(source, "_ensure_converter", broken_converter)

    with pytest.raises(ExtractionUnavailable, match="bill.pdf"):
        source.extract_text(b"%PDF-1.7", filename="bill.pdf", mime_type=PDF_MIME_TYPE)


def test_billing_message_needs_keyword_and_pdf() -> None:
    assert is_likely_billing_message("Your Verizon bill", "noreply@verizon.com", True)
    assert not is_likely_billing_message("Your Verizon bill", "noreply@verizon.com", False)
    assert not is_likely_billing_message("Lunch?", "friend@example.com", True)


def test_email_source_hint() -> None:
    assert email_source_hint("Invoice 1042", "billing@firm.example", True) is DocumentType.INVOICE
    assert email_source_hint("Invoice 1042", "billing@firm.example", False) is None
