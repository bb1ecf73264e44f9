"""Deterministic pattern-based billing field extraction.

Every result is a pure function of the input text (and optional hint), so
the same text always yields the same extraction.
"""

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml
from loguru import logger

from billgraph.extraction.models import BillingExtraction, ClassificationRule, DocumentType

_AMOUNT = r"(\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?)"

AMOUNT_PATTERNS: Sequence[re.Pattern[str]] = (
    re.compile(r"total[:\s]*\$?" + _AMOUNT, re.IGNORECASE),
    re.compile(r"amount[:\s]*\$?" + _AMOUNT, re.IGNORECASE),
    re.compile(r"\$" + _AMOUNT),
)
DUE_DATE_PATTERN = re.compile(r"due[:\s]*(\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4})", re.IGNORECASE)
INVOICE_NUMBER_PATTERN = re.compile(
    r"invoice\b[ \t]*(?:no\.?|number|#)?[ \t:#]*([A-Z0-9][\w\-/]*\d[\w\-/]*)", re.IGNORECASE
)
VENDOR_PATTERN = re.compile(r"^([^\n]*?)(?:invoice|bill)", re.IGNORECASE | re.MULTILINE)

# Most specific first; declaration order breaks ties.
DEFAULT_RULES: List[ClassificationRule] = [
    ClassificationRule(keywords=["phone", "telecom"], document_type=DocumentType.PHONE_BILL),
    ClassificationRule(keywords=["legal", "attorney"], document_type=DocumentType.LEGAL_INVOICE),
    ClassificationRule(keywords=["invoice"], document_type=DocumentType.INVOICE),
    ClassificationRule(keywords=["statement"], document_type=DocumentType.STATEMENT),
]

FIELD_WEIGHTS: Dict[str, float] = {
    "total_amount": 0.35,
    "document_type": 0.25,
    "invoice_number": 0.15,
    "due_date": 0.15,
    "vendor": 0.10,
}

_DATE_FORMATS = {
    2: ("%m/%d/%y", "%m-%d-%y"),
    4: ("%m/%d/%Y", "%m-%d-%Y"),
}


def load_rules(path: str | Path) -> List[ClassificationRule]:
    """Load ordered classification rules from YAML, falling back to the defaults."""
    path = Path(path)
    if not path.exists():
        logger.warning(f"Billing rules file not found, using defaults: {path}")
        return list(DEFAULT_RULES)

    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Billing rules root must be a mapping/dict: {path}")
    rules = [ClassificationRule.model_validate(item) for item in data.get("rules", [])]
    return rules or list(DEFAULT_RULES)


class HeuristicBillingExtractor:
    """Regex/keyword extraction strategy.

    Example:
        >>> extractor = HeuristicBillingExtractor()
        >>> extractor.extract("Legal services invoice 1042. Total: $450.00").total_amount
        Decimal('450.00')
    """

    name = "heuristic"

    def __init__(self, rules: Optional[Sequence[ClassificationRule]] = None) -> None:
        self.rules = list(rules) if rules is not None else list(DEFAULT_RULES)

    @classmethod
    def from_rules_file(cls, path: str | Path) -> "HeuristicBillingExtractor":
        return cls(load_rules(path))

    def extract(
        self, raw_text: str, source_hint: Optional[DocumentType] = None
    ) -> BillingExtraction:
        if not isinstance(raw_text, str) or not raw_text.strip():
            return BillingExtraction.empty(self.name)

        try:
            return self._extract(raw_text, source_hint)
        except (ValueError, InvalidOperation, re.error) as exc:
            logger.warning("Heuristic extraction degraded to empty result", error=str(exc))
            return BillingExtraction.empty(self.name)

    def classify(self, text: str) -> Optional[DocumentType]:
        lowered = text.lower()
        for rule in self.rules:
            if rule.matches(lowered):
                return rule.document_type
        return None

    def _extract(self, text: str, source_hint: Optional[DocumentType]) -> BillingExtraction:
        fields: Dict[str, Any] = {}

        amount = self._find_amount(text)
        if amount is not None:
            fields["total_amount"] = amount

        due_match = DUE_DATE_PATTERN.search(text)
        if due_match:
            fields["due_date"] = due_match.group(1)

        invoice_match = INVOICE_NUMBER_PATTERN.search(text)
        if invoice_match:
            fields["invoice_number"] = invoice_match.group(1)

        vendor_match = VENDOR_PATTERN.search(text)
        if vendor_match:
            vendor = vendor_match.group(1).strip(" \t:-,")
            if vendor:
                fields["vendor"] = vendor

        document_type = self.classify(text) or source_hint
        if document_type is not None and document_type is not DocumentType.UNKNOWN:
            fields["document_type"] = document_type

        confidence = round(min(1.0, sum(FIELD_WEIGHTS[name] for name in fields)), 4)

        return BillingExtraction(
            document_type=fields.get("document_type"),
            total_amount=fields.get("total_amount"),
            due_date=fields.get("due_date"),
            due_date_parsed=parse_due_date(fields.get("due_date")),
            vendor=fields.get("vendor"),
            invoice_number=fields.get("invoice_number"),
            confidence=confidence,
            extractor=self.name,
            raw_fields={
                name: str(value.value if isinstance(value, DocumentType) else value)
                for name, value in fields.items()
            },
        )

    def _find_amount(self, text: str) -> Optional[Decimal]:
        for pattern in AMOUNT_PATTERNS:
            match = pattern.search(text)
            if match:
                return Decimal(match.group(1).replace(",", ""))
        return None


def parse_due_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    year = re.split(r"[/\-]", value)[-1]
    for fmt in _DATE_FORMATS.get(len(year), ()):
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return None
