"""Extraction package exports."""

from billgraph.extraction.heuristic_extractor import HeuristicBillingExtractor
from billgraph.extraction.llm_extractor import LLMBillingExtractor
from billgraph.extraction.models import (
    BillingExtraction,
    BillingExtractor,
    ClassificationRule,
    DocumentType,
)
from billgraph.extraction.signals import is_likely_billing_message
from billgraph.extraction.text_sources import (
    CompositeTextSource,
    DoclingTextSource,
    PlainTextSource,
    TextSource,
)

__all__ = [
    "BillingExtraction",
    "BillingExtractor",
    "ClassificationRule",
    "CompositeTextSource",
    "DoclingTextSource",
    "DocumentType",
    "HeuristicBillingExtractor",
    "LLMBillingExtractor",
    "PlainTextSource",
    "TextSource",
    "is_likely_billing_message",
]
