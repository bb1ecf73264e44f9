"""LLM-powered billing field extraction.

Provider-agnostic wrapper over OpenAI and Anthropic chat APIs, sitting behind
the same contract as the heuristic extractor. Results are treated as
non-deterministic: retries may return different values, and the merge
engine reconciles them. The extractor makes a single call per request;
transport failures surface as ``ExtractionUnavailable`` so the pipeline
coordinator can apply its retry policy.
"""

from __future__ import annotations

import json
import re
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml
from loguru import logger

from billgraph.errors import ExtractionUnavailable
from billgraph.extraction.heuristic_extractor import parse_due_date
from billgraph.extraction.models import BillingExtraction, DocumentType
from billgraph.utils.config import LLMConfig
from billgraph.utils.llm_client import create_anthropic_client, create_openai_client


class LLMBillingExtractor:
    """LLM extractor with provider switch and structured parsing."""

    name = "llm"

    def __init__(
        self,
        config: Optional[LLMConfig] = None,
        prompts_path: str | Path = "config/extraction_prompts.yaml",
        *,
        api_key: Optional[str] = None,
        max_chars: int = 12000,
    ) -> None:
        self.config = config or LLMConfig()
        self.prompts_path = Path(prompts_path)
        self.prompts = self._load_prompts(self.prompts_path)
        self.api_key = api_key
        self.max_chars = max_chars

        logger.info(
            "Initialized LLMBillingExtractor",
            provider=self.config.provider,
            model=self.config.model,
            prompts=str(self.prompts_path),
        )

    def extract(
        self, raw_text: str, source_hint: Optional[DocumentType] = None
    ) -> BillingExtraction:
        if not isinstance(raw_text, str) or not raw_text.strip():
            return BillingExtraction.empty(self.name)

        system, user = self._render_prompt(
            "billing_extraction",
            {
                "document_text": raw_text[: self.max_chars],
                "source_hint": source_hint.value if source_hint else "none",
                "document_types": ", ".join(t.value for t in DocumentType),
            },
        )
        raw_response = self._call_llm(system=system, user=user)
        return self._parse_response(raw_response, source_hint)

    # -----------------------
    # Prompt handling
    # -----------------------
    def _load_prompts(self, path: Path) -> Dict[str, Any]:
        if not path.exists():
            raise FileNotFoundError(f"Extraction prompt template not found: {path}")
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Prompt template root must be a mapping/dict: {path}")
        return data

    def _render_prompt(self, key: str, context: Dict[str, Any]) -> Tuple[str, str]:
        if key not in self.prompts:
            raise KeyError(f"Prompt key not found in template: {key}")

        prompt = self.prompts.get(key) or {}
        system = str(prompt.get("system", "")).strip()
        user_template = str(prompt.get("user_template", "{document_text}"))

        try:
            user = user_template.format(**context)
        except KeyError as exc:
            missing = exc.args[0]
            raise KeyError(f"Missing placeholder '{missing}' in prompt context for '{key}'") from exc
        return system, user

    # -----------------------
    # LLM invocation
    # -----------------------
    def _call_llm(self, *, system: str, user: str) -> str:
        logger.debug(
            f"Calling LLM for billing extraction using {self.config.provider}: {self.config.model}"
        )
        try:
            if self.config.provider == "openai":
                return self._call_openai(system=system, user=user)
            if self.config.provider == "anthropic":
                return self._call_anthropic(system=system, user=user)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "LLM extraction request failed", provider=self.config.provider, error=str(exc)
            )
            raise ExtractionUnavailable(f"LLM extraction failed: {exc}") from exc
        raise ValueError(f"Unsupported LLM provider: {self.config.provider}")

    def _call_openai(self, *, system: str, user: str) -> str:
        client = create_openai_client(self.config, self.api_key)
        response = client.chat.completions.create(
            model=self.config.model,
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        )
        content = response.choices[0].message.content
        return str(content or "")

    def _call_anthropic(self, *, system: str, user: str) -> str:
        client = create_anthropic_client(self.config, self.api_key)
        message = client.messages.create(
            model=self.config.model,
            system=system,
            messages=[{"role": "user", "content": user}],
            max_tokens=self.config.max_tokens,
        )
        parts = []
        for block in message.content:
            if getattr(block, "type", None) == "text":
                parts.append(getattr(block, "text", ""))
        return "\n".join(parts).strip()

    # -----------------------
    # Parsing helpers
    # -----------------------
    def _parse_response(
        self, response_text: str, source_hint: Optional[DocumentType]
    ) -> BillingExtraction:
        data = self._extract_json(response_text)
        if not isinstance(data, dict):
            logger.warning("Failed to parse LLM billing response as JSON object")
            return BillingExtraction.empty(self.name)

        document_type = self._coerce_document_type(
            data.get("documentType") or data.get("document_type")
        )
        if document_type is None:
            document_type = source_hint

        due_date = self._clean_str(data.get("dueDate") or data.get("due_date"))
        return BillingExtraction(
            document_type=document_type,
            total_amount=self._coerce_amount(data.get("totalAmount", data.get("total_amount"))),
            due_date=due_date,
            due_date_parsed=parse_due_date(due_date),
            vendor=self._clean_str(data.get("vendor")),
            invoice_number=self._clean_str(
                data.get("invoiceNumber") or data.get("invoice_number")
            ),
            confidence=self._clamp_confidence(data.get("confidence")),
            extractor=self.name,
            raw_fields={k: str(v) for k, v in data.items() if v is not None},
        )

    def _extract_json(self, text: str) -> Any:
        if not text:
            return None

        try:
            return json.loads(text)
        except json.JSONDecodeError:
            pass

        match = re.search(r"\{.*\}", text, flags=re.DOTALL)
        if not match:
            return None

        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError:
            return None

    def _coerce_document_type(self, value: Any) -> Optional[DocumentType]:
        if not value:
            return None
        try:
            return DocumentType(str(value).strip().lower())
        except ValueError:
            return None

    def _coerce_amount(self, value: Any) -> Optional[Decimal]:
        if value is None or value == "":
            return None
        try:
            amount = Decimal(str(value).replace("$", "").replace(",", "").strip())
        except InvalidOperation:
            return None
        return amount if amount.is_finite() and amount >= 0 else None

    def _clean_str(self, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    def _clamp_confidence(self, value: Any) -> float:
        try:
            score = float(value)
        except (TypeError, ValueError):
            return 0.0
        return max(0.0, min(score, 1.0))
