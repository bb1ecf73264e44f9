"""End-to-end wiring through build_coordinator with the in-memory backend."""

import json
from decimal import Decimal
from pathlib import Path

from billgraph.extraction.heuristic_extractor import HeuristicBillingExtractor
from billgraph.extraction.llm_extractor import LLMBillingExtractor
from billgraph.pipeline import IngestionMessage, UnitState
from billgraph.pipeline.factory import build_coordinator, create_extractor, create_graph_store
from billgraph.retrieval import BillableEventLifecycle
from billgraph.storage.graph_store import InMemoryGraphStore
from billgraph.storage.schemas import Case, CommunicationKind
from billgraph.utils.config import Config, ExtractionConfig, StorageConfig

REPO_CONFIG = Path(__file__).resolve().parents[2] / "config"


def _config(tmp_path: Path, **extraction) -> Config:
    return Config(
        storage=StorageConfig(graph_backend="memory", payload_root=tmp_path),
        extraction=ExtractionConfig(
            rules_file=str(REPO_CONFIG / "billing_rules.yaml"),
            llm_prompt_template=str(REPO_CONFIG / "extraction_prompts.yaml"),
            **extraction,
        ),
    )


def test_extractor_strategy_selection(tmp_path) -> None:
    assert isinstance(create_extractor(_config(tmp_path)), HeuristicBillingExtractor)
    assert isinstance(create_extractor(_config(tmp_path, strategy="llm")), LLMBillingExtractor)
    assert isinstance(create_graph_store(_config(tmp_path)), InMemoryGraphStore)


def test_email_envelope_becomes_draft_billable_event(tmp_path) -> None:
    (tmp_path / "m1.json").write_text(
        json.dumps(
            {
                "message_id": "<inv-42@smithpartners.com>",
                "subject": "Invoice INV-2025-0042",
                "from": "Smith & Partners <billing@smithpartners.com>",
                "to": ["Jane Roe <jane@example.com>"],
                "sent_at": "2025-11-05T09:30:00+00:00",
                "body": "Legal services rendered in October.\nTotal: $1,450.00",
            }
        ),
        encoding="utf-8",
    )
    config = _config(tmp_path)
    store = InMemoryGraphStore()
    store.register_case(Case(case_key="CV-2025-123"))
    coordinator = build_coordinator(config, store)

    unit = coordinator.process(
        IngestionMessage(
            message_id="q-1",
            record_type=CommunicationKind.EMAIL,
            raw_payload_locator="m1.json",
            case_key="CV-2025-123",
        )
    )

    assert unit.state is UnitState.MERGED
    assert unit.result.record_key == "email:inv-42@smithpartners.com"
    event = store.get_billable_event(unit.result.event_id)
    assert event.amount == Decimal("1450.00")
    assert event.case_key == "CV-2025-123"


def test_pipeline_writers_share_the_store_lock_table(tmp_path) -> None:
    store = InMemoryGraphStore()
    coordinator = build_coordinator(_config(tmp_path), store)

    assert coordinator.engine.locks is store.locks
    assert coordinator.resolver.locks is store.locks
    assert BillableEventLifecycle(store).locks is store.locks
