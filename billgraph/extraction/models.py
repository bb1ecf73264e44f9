"""Shared data models for billing extraction."""

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field


class DocumentType(str, Enum):
    """Document classes recognized by the extractors."""

    PHONE_BILL = "phone_bill"
    LEGAL_INVOICE = "legal_invoice"
    INVOICE = "invoice"
    STATEMENT = "statement"
    UNKNOWN = "unknown"


class BillingExtraction(BaseModel):
    """Structured billing candidate extracted from a document or message text."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    document_type: Optional[DocumentType] = None
    total_amount: Optional[Decimal] = None
    due_date: Optional[str] = None
    due_date_parsed: Optional[date] = None
    vendor: Optional[str] = None
    invoice_number: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    extractor: str = "unknown"
    raw_fields: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def empty(cls, extractor: str = "unknown") -> "BillingExtraction":
        """Degraded extraction: every optional field absent, zero confidence."""
        return cls(extractor=extractor)

    def has_billing_signal(self, billable_types: Iterable[str]) -> bool:
        """Non-zero confidence and either an amount or a billable document type."""
        if self.confidence <= 0:
            return False
        if self.total_amount is not None:
            return True
        return self.document_type is not None and self.document_type.value in set(billable_types)


class ClassificationRule(BaseModel):
    """Keyword set mapped to a document type; the first matching rule wins."""

    model_config = ConfigDict(frozen=True)

    keywords: List[str]
    document_type: DocumentType

    def matches(self, lowered_text: str) -> bool:
        return any(keyword.lower() in lowered_text for keyword in self.keywords)


class BillingExtractor(Protocol):
    """Extraction strategy contract."""

    name: str

    def extract(
        self, raw_text: str, source_hint: Optional[DocumentType] = None
    ) -> BillingExtraction: ...
