"""Cheap pre-extraction signals on message headers."""

from typing import Optional

from billgraph.extraction.models import DocumentType

BILLING_KEYWORDS = (
    "invoice",
    "bill",
    "statement",
    "payment",
    "due",
    "attorney",
    "legal",
    "phone",
    "utility",
    "telecom",
    "mobile",
    "verizon",
    "at&t",
    "t-mobile",
)


def is_likely_billing_message(subject: str, sender: str, has_pdf_attachments: bool) -> bool:
    """True when subject or sender carries a billing keyword and a PDF is attached."""
    subject = (subject or "").lower()
    sender = (sender or "").lower()
    has_keyword = any(keyword in subject or keyword in sender for keyword in BILLING_KEYWORDS)
    return has_keyword and has_pdf_attachments


def email_source_hint(subject: str, sender: str, has_pdf_attachments: bool) -> Optional[DocumentType]:
    if is_likely_billing_message(subject, sender, has_pdf_attachments):
        return DocumentType.INVOICE
    return None
