"""Tests for BillingQueryService range listing and ingestion metadata."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import List

import pytest

from billgraph.extraction.models import BillingExtraction, DocumentType
from billgraph.merge import GraphMergeEngine
from billgraph.retrieval import BillableEventLifecycle, BillingQueryService
from billgraph.storage.graph_store import InMemoryGraphStore
from billgraph.storage.schemas import (
    BillableEventStatus,
    Case,
    CommunicationRecord,
    EmailPayload,
)

CASE = "CV-2025-123"
NOV_1 = datetime(2025, 11, 1, tzinfo=timezone.utc)
DEC_1 = datetime(2025, 12, 1, tzinfo=timezone.utc)
INVOICE = BillingExtraction(
    document_type=DocumentType.INVOICE, total_amount=Decimal("25.00"), confidence=0.8
)


class _StubPending:
    def __init__(self, units: List[str]) -> None:
        self.units = units
        self.calls: List[str] = []

    def unresolved_units_for_case(self, case_key: str) -> List[str]:
        self.calls.append(case_key)
        return list(self.units)


def _merge_email(engine: GraphMergeEngine, message_id: str, ts: datetime, case_key: str = CASE):
    record = CommunicationRecord(
        key=f"email:{message_id}",
        timestamp=ts,
        payload=EmailPayload(message_id=message_id, subject=f"Invoice {message_id}"),
    )
    return engine.merge(record, INVOICE, case_key)


@pytest.fixture
def store() -> InMemoryGraphStore:
    store = InMemoryGraphStore()
    store.register_case(Case(case_key=CASE))
    store.register_case(Case(case_key="CV-2025-456"))
    return store


@pytest.fixture
def engine(store: InMemoryGraphStore) -> GraphMergeEngine:
    return GraphMergeEngine(store)


def test_november_range_excludes_december_event(store, engine) -> None:
    nov_5 = _merge_email(engine, "nov5", datetime(2025, 11, 5, 10, tzinfo=timezone.utc))
    nov_20 = _merge_email(engine, "nov20", datetime(2025, 11, 20, 10, tzinfo=timezone.utc))
    _merge_email(engine, "dec2", datetime(2025, 12, 2, 10, tzinfo=timezone.utc))
    _merge_email(engine, "other-case", datetime(2025, 11, 7, tzinfo=timezone.utc), "CV-2025-456")

    result = BillingQueryService(store).list_billable_events(CASE, NOV_1, DEC_1)

    assert [e.id for e in result.events] == [nov_5.event_id, nov_20.event_id]
    assert len(result) == 2
    assert result.ingestion_incomplete is False
    assert result.pending_units == []


def test_bounds_are_half_open(store, engine) -> None:
    at_start = _merge_email(engine, "start", NOV_1)
    _merge_email(engine, "end", DEC_1)

    result = BillingQueryService(store).list_billable_events(CASE, NOV_1, DEC_1)

    assert [e.id for e in result.events] == [at_start.event_id]


def test_ties_are_ordered_by_event_id(store, engine) -> None:
    ts = datetime(2025, 11, 10, tzinfo=timezone.utc)
    ids = [_merge_email(engine, name, ts).event_id for name in ("a", "b", "c")]

    result = BillingQueryService(store).list_billable_events(CASE, NOV_1, DEC_1)

    assert [e.id for e in result.events] == sorted(ids)


def test_default_is_drafts_and_statuses_can_be_selected(store, engine) -> None:
    draft = _merge_email(engine, "draft", datetime(2025, 11, 3, tzinfo=timezone.utc))
    approved = _merge_email(engine, "approved", datetime(2025, 11, 4, tzinfo=timezone.utc))
    rejected = _merge_email(engine, "rejected", datetime(2025, 11, 5, tzinfo=timezone.utc))
    lifecycle = BillableEventLifecycle(store)
    lifecycle.approve(approved.event_id)
    lifecycle.reject(rejected.event_id)
    service = BillingQueryService(store)

    assert [e.id for e in service.list_billable_events(CASE, NOV_1, DEC_1).events] == [
        draft.event_id
    ]
    both = service.list_billable_events(CASE, NOV_1, DEC_1, statuses=["draft", "approved"])
    assert [e.id for e in both.events] == [draft.event_id, approved.event_id]
    only_rejected = service.list_billable_events(
        CASE, NOV_1, DEC_1, statuses=[BillableEventStatus.REJECTED]
    )
    assert [e.status for e in only_rejected.events] == [BillableEventStatus.REJECTED]
    assert service.list_billable_events(CASE, NOV_1, DEC_1, statuses=[]).events == []


def test_unknown_status_is_rejected(store) -> None:
    with pytest.raises(ValueError):
        BillingQueryService(store).list_billable_events(CASE, NOV_1, DEC_1, statuses=["billed"])


def test_naive_bounds_are_rejected(store) -> None:
    with pytest.raises(ValueError, match="timezone-aware"):
        BillingQueryService(store).list_billable_events(CASE, datetime(2025, 11, 1), DEC_1)


def test_empty_or_inverted_range_returns_nothing(store, engine) -> None:
    _merge_email(engine, "nov5", datetime(2025, 11, 5, tzinfo=timezone.utc))
    service = BillingQueryService(store)

    assert service.list_billable_events(CASE, DEC_1, NOV_1).events == []
    assert service.list_billable_events(CASE, NOV_1, NOV_1).events == []


def test_unknown_case_lists_nothing(store) -> None:
    result = BillingQueryService(store).list_billable_events("CV-0000-000", NOV_1, DEC_1)

    assert result.events == []


def test_unresolved_units_flag_incomplete_ingestion(store, engine) -> None:
    _merge_email(engine, "nov5", datetime(2025, 11, 5, tzinfo=timezone.utc))
    pending = _StubPending(["msg-9", "msg-2"])

    result = BillingQueryService(store, pending=pending).list_billable_events(CASE, NOV_1, DEC_1)

    assert pending.calls == [CASE]
    assert result.ingestion_incomplete is True
    assert result.pending_units == ["msg-2", "msg-9"]
    assert len(result.events) == 1

    data = result.to_dict()
    assert data["ingestion_incomplete"] is True
    assert data["events"][0]["amount"] == "25.00"
