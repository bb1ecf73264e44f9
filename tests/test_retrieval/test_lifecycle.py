"""Tests for forward-only billable event transitions."""

from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from billgraph.errors import EventNotFoundError, InvalidTransitionError
from billgraph.extraction.models import BillingExtraction, DocumentType
from billgraph.merge import GraphMergeEngine
from billgraph.retrieval import BillableEventLifecycle
from billgraph.storage.graph_store import InMemoryGraphStore
from billgraph.storage.locks import KeyedLocks
from billgraph.storage.schemas import BillableEventStatus, Case, CommunicationRecord, EmailPayload


@pytest.fixture
def store() -> InMemoryGraphStore:
    store = InMemoryGraphStore()
    store.register_case(Case(case_key="CV-1"))
    return store


@pytest.fixture
def event_id(store: InMemoryGraphStore) -> str:
    record = CommunicationRecord(
        key="email:m1",
        timestamp=datetime(2025, 11, 5, tzinfo=timezone.utc),
        payload=EmailPayload(message_id="m1", subject="Invoice"),
    )
    extraction = BillingExtraction(
        document_type=DocumentType.INVOICE, total_amount=Decimal("10.00"), confidence=0.7
    )
    return GraphMergeEngine(store).merge(record, extraction, "CV-1").event_id


def test_approve_moves_draft_forward(store, event_id) -> None:
    before = store.get_billable_event(event_id)

    event = BillableEventLifecycle(store).approve(event_id)

    assert event.status is BillableEventStatus.APPROVED
    assert event.updated_at >= before.updated_at
    assert store.get_billable_event(event_id).status is BillableEventStatus.APPROVED


def test_repeating_a_transition_is_a_no_op(store, event_id) -> None:
    lifecycle = BillableEventLifecycle(store)
    first = lifecycle.reject(event_id)

    second = lifecycle.reject(event_id)

    assert second == first


@pytest.mark.parametrize(
    "first,second",
    [("approve", "reject"), ("reject", "approve")],
)
def test_decided_events_cannot_change_status(store, event_id, first, second) -> None:
    lifecycle = BillableEventLifecycle(store)
    decided = getattr(lifecycle, first)(event_id)

    with pytest.raises(InvalidTransitionError) as exc_info:
        getattr(lifecycle, second)(event_id)

    assert exc_info.value.current == decided.status.value
    assert store.get_billable_event(event_id).status is decided.status


def test_missing_event_raises(store) -> None:
    with pytest.raises(EventNotFoundError):
        BillableEventLifecycle(store).approve("does-not-exist")


class _RacingStore(InMemoryGraphStore):
    """Lets a rival writer decide the event right after the lifecycle reads it."""

    def __init__(self) -> None:
        super().__init__()
        self.rival_status = None

    @contextmanager
    def transaction(self):
        with super().transaction() as tx:
            if self.rival_status is not None:
                status, self.rival_status = self.rival_status, None
                original = tx.get_node

                def get_node_then_race(ref):
                    data = original(ref)
                    with InMemoryGraphStore.transaction(self) as rival:
                        rival.update_node_if(ref, {"status": "draft"}, {"status": status})
                    tx.get_node = original
                    return data

                tx.get_node = get_node_then_race
            yield tx


@pytest.mark.parametrize(
    "rival,requested,outcome",
    [("approved", "approve", "approved"), ("rejected", "approve", None)],
)
def test_transition_respects_a_rival_decision(rival, requested, outcome) -> None:
    store = _RacingStore()
    store.register_case(Case(case_key="CV-1"))
    record = CommunicationRecord(
        key="email:m1",
        timestamp=datetime(2025, 11, 5, tzinfo=timezone.utc),
        payload=EmailPayload(message_id="m1", subject="Invoice"),
    )
    extraction = BillingExtraction(document_type=DocumentType.INVOICE, confidence=0.7)
    event_id = GraphMergeEngine(store).merge(record, extraction, "CV-1").event_id
    lifecycle = BillableEventLifecycle(store, locks=KeyedLocks())

    store.rival_status = rival
    if outcome is None:
        with pytest.raises(InvalidTransitionError) as exc_info:
            getattr(lifecycle, requested)(event_id)
        assert exc_info.value.current == rival
    else:
        assert getattr(lifecycle, requested)(event_id).status.value == outcome

    assert store.get_billable_event(event_id).status.value == rival
