from __future__ import annotations

from decimal import Decimal
from pathlib import Path
from typing import Dict

import pytest
import yaml

from billgraph.errors import ExtractionUnavailable
from billgraph.extraction.llm_extractor import LLMBillingExtractor
from billgraph.extraction.models import DocumentType
from billgraph.utils.config import LLMConfig

PROMPTS = Path(__file__).parent.parent.parent / "config" / "extraction_prompts.yaml"


@pytest.fixture
def extractor() -> LLMBillingExtractor:
    config = LLMConfig(provider="openai", model="test-model")
    return LLMBillingExtractor(config=config, prompts_path=PROMPTS)


def test_llm_extractor_parses_camel_case_response(
    extractor: LLMBillingExtractor, monkeypatch: pytest.MonkeyPatch
) -> None:
    calls: Dict[str, str] = {}

    def fake_openai(*, system: str, user: str) -> str:
        calls["system"] = system
        calls["user"] = user
        return """
        Here is the result:
        {
          "documentType": "legal_invoice",
          "totalAmount": "$1,450.00",
          "dueDate": "11/30/2025",
          "vendor": "Smith & Partners LLP",
          "invoiceNumber": "INV-42",
          "confidence": 0.91
        }
        """

    monkeypatch.setattr(extractor, "_call_openai", fake_openai)

    result = extractor.extract("Legal services invoice INV-42", DocumentType.INVOICE)

    assert result.document_type is DocumentType.LEGAL_INVOICE
    assert result.total_amount == Decimal("1450.00")
    assert result.due_date_parsed is not None
    assert result.vendor == "Smith & Partners LLP"
    assert result.invoice_number == "INV-42"
    assert result.confidence == pytest.approx(0.91)
    assert result.extractor == "llm"
    assert "Legal services invoice INV-42" in calls["user"]
    assert "invoice" in calls["user"]
    assert calls["system"]


def test_llm_extractor_accepts_snake_case_and_falls_back_to_hint(
    extractor: LLMBillingExtractor, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(
        extractor,
        "_call_openai",
        lambda *, system, user: '{"document_type": "receipt", "total_amount": 12.5, "confidence": 7}',
    )

    result = extractor.extract("some text", DocumentType.PHONE_BILL)

    assert result.document_type is DocumentType.PHONE_BILL
    assert result.total_amount == Decimal("12.5")
    assert result.confidence == 1.0


def test_llm_extractor_degrades_on_unparseable_response(
    extractor: LLMBillingExtractor, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(extractor, "_call_openai", lambda *, system, user: "I cannot help.")

    result = extractor.extract("some text")

    assert result.confidence == 0.0
    assert result.total_amount is None
    assert result.document_type is None


def test_llm_extractor_empty_text_skips_call(
    extractor: LLMBillingExtractor, monkeypatch: pytest.MonkeyPatch
) -> None:
    def fail(**_: str) -> str:
        raise AssertionError("LLM should not be called")

    monkeypatch.setattr(extractor, "_call_openai", fail)

    assert extractor.extract("   ").confidence == 0.0


def test_llm_transport_failure_is_extraction_unavailable(
    extractor: LLMBillingExtractor, monkeypatch: pytest.MonkeyPatch
) -> None:
    def boom(*, system: str, user: str) -> str:
        raise ConnectionError("connection reset")

    monkeypatch.setattr(extractor, "_call_openai", boom)

    with pytest.raises(ExtractionUnavailable) as excinfo:
        extractor.extract("Invoice 1042 total $10")
    assert excinfo.value.retryable


def test_llm_extractor_routes_to_anthropic(monkeypatch: pytest.MonkeyPatch) -> None:
    extractor = LLMBillingExtractor(
        config=LLMConfig(provider="anthropic", model="test-model"), prompts_path=PROMPTS
    )
    monkeypatch.setattr(
        extractor,
        "_call_anthropic",
        lambda *, system, user: '{"documentType": "phone_bill", "confidence": 0.6}',
    )

    result = extractor.extract("Mobile statement")

    assert result.document_type is DocumentType.PHONE_BILL


def test_missing_prompt_placeholder_raises(tmp_path: Path) -> None:
    prompts = tmp_path / "prompts.yaml"
    prompts.write_text(
        yaml.safe_dump({"billing_extraction": {"system": "s", "user_template": "{unknown}"}}),
        encoding="utf-8",
    )
    extractor = LLMBillingExtractor(config=LLMConfig(), prompts_path=prompts)

    with pytest.raises(KeyError, match="unknown"):
        extractor.extract("text")


def test_missing_prompt_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        LLMBillingExtractor(config=LLMConfig(), prompts_path=tmp_path / "missing.yaml")
