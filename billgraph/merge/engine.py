"""Idempotent merge of communication records and billing candidates into the graph.

One ``merge`` call runs these steps inside a single store transaction,
holding per-key locks on the record key and the (record, case) event key:

1. Upsert the record node by natural key. ``summary`` and ``source_pointer``
   are filled only when previously empty; nothing else is ever overwritten.
2. Upsert participant edges (SENT/TO/CC/BCC/PARTICIPATED_IN/AUTHORED).
3. Ensure RELATES_TO -> case. A missing case raises ``UnknownCaseError``
   and the whole transaction rolls back, record node included.
4. With a billing signal, upsert the single BillableEvent for
   (record, case). Drafts are amended only by extractions at least as
   confident as the one already stored; approved/rejected events are
   never amended and the skip is reported as an ``ImmutableEventConflict``.
   The amend is a store-side conditional write on ``status == draft`` that
   never touches ``status``, so an approval committed by another writer
   mid-merge wins.
5. Verify every event generated by the record: its FOR_CASE target must be
   the case it was generated for, and that case must be reachable through
   the record's RELATES_TO edges. Mismatches raise ``DataIntegrityError``.

Re-merging the same (record, extraction, case) triple leaves the graph
unchanged, which is what makes at-least-once delivery safe.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence, Set

from loguru import logger

from billgraph.errors import DataIntegrityError, UnknownCaseError
from billgraph.extraction.models import BillingExtraction
from billgraph.merge.models import (
    ROLE_EDGES,
    ImmutableEventConflict,
    MergeResult,
    ResolvedParticipant,
)
from billgraph.storage.graph_store import GraphStore, GraphTransaction
from billgraph.storage.locks import KeyedLocks
from billgraph.storage.schemas import (
    BillableEvent,
    BillableEventStatus,
    CommunicationRecord,
    EdgeType,
    EmailPayload,
    NodeLabel,
    NodeRef,
    PhoneCallPayload,
    billable_event_id,
)
from billgraph.utils.config import BillingConfig

DEFAULT_BILLABLE_TYPES = ("legal_invoice", "invoice", "phone_bill")
_AMENDABLE_FIELDS = ("description", "suggested_duration_hours", "amount")


class GraphMergeEngine:
    """Writes normalized records and billing candidates into a graph store.

    Example:
        >>> engine = GraphMergeEngine(store)
        >>> result = engine.merge(record, extraction, "CV-2025-123")
        >>> result.event_created
        True
    """

    def __init__(
        self,
        store: GraphStore,
        *,
        billable_document_types: Iterable[str] = DEFAULT_BILLABLE_TYPES,
        billing: Optional[BillingConfig] = None,
        locks: Optional[KeyedLocks] = None,
    ) -> None:
        self.store = store
        self.billable_document_types = frozenset(billable_document_types)
        self.billing = billing or BillingConfig()
        self.locks = locks or store.locks

    def merge(
        self,
        record: CommunicationRecord,
        extraction: Optional[BillingExtraction] = None,
        case_key: Optional[str] = None,
        participants: Sequence[ResolvedParticipant] = (),
    ) -> MergeResult:
        """Merge one record (and optional billing candidate) for one case.

        Raises:
            UnknownCaseError: If ``case_key`` is not a registered case.
            DataIntegrityError: If a FOR_CASE edge disagrees with RELATES_TO.
        """
        case_key = case_key.strip() if case_key and case_key.strip() else None
        lock_keys = [f"record:{record.key}"]
        if case_key:
            lock_keys.append(f"event:{billable_event_id(record.key, case_key)}")

        with self.locks.hold(*lock_keys):
            with self.store.transaction() as tx:
                result = self._merge(tx, record, extraction, case_key, participants)

        logger.info(
            "Merged record",
            record_key=record.key,
            case_key=case_key,
            record_created=result.record_created,
            event_id=result.event_id,
            event_created=result.event_created,
            event_updated=result.event_updated,
            edges_created=result.edges_created,
        )
        for conflict in result.conflicts:
            logger.info(
                "Skipped extraction update for decided billable event",
                event_id=conflict.event_id,
                status=conflict.status.value,
                fields=conflict.attempted_fields,
            )
        return result

    # -----------------------
    # Steps
    # -----------------------
    def _merge(
        self,
        tx: GraphTransaction,
        record: CommunicationRecord,
        extraction: Optional[BillingExtraction],
        case_key: Optional[str],
        participants: Sequence[ResolvedParticipant],
    ) -> MergeResult:
        result = MergeResult(record_key=record.key, case_key=case_key)

        stored = self._upsert_record(tx, record, result)
        result.edges_created += self._link_participants(tx, stored, participants)

        if case_key:
            case_ref = NodeRef(label=NodeLabel.CASE, key=case_key)
            if tx.get_node(case_ref) is None:
                raise UnknownCaseError(case_key)
            if tx.add_edge(stored.ref, EdgeType.RELATES_TO, case_ref):
                result.edges_created += 1

            if extraction is not None and extraction.has_billing_signal(self.billable_document_types):
                self._upsert_event(tx, stored, extraction, case_ref, result)

        self._verify_denormalization(tx, stored)
        return result

    def _upsert_record(
        self, tx: GraphTransaction, record: CommunicationRecord, result: MergeResult
    ) -> CommunicationRecord:
        existing = tx.get_node(record.ref)
        if existing is None:
            tx.put_node(record.ref, record.to_graph_dict())
            result.record_created = True
            return record

        stored = CommunicationRecord.from_graph_dict(existing)
        updates = {}
        if not stored.summary and record.summary:
            updates["summary"] = record.summary
        if not stored.source_pointer and record.source_pointer:
            updates["source_pointer"] = record.source_pointer
        if updates:
            stored = stored.model_copy(update=updates)
            tx.put_node(stored.ref, stored.to_graph_dict())
            result.record_updated = True
        return stored

    def _link_participants(
        self,
        tx: GraphTransaction,
        record: CommunicationRecord,
        participants: Sequence[ResolvedParticipant],
    ) -> int:
        created = 0
        for participant in participants:
            edge_type, person_is_source = ROLE_EDGES[participant.role]
            person_ref = participant.person.ref
            if person_is_source:
                created += tx.add_edge(person_ref, edge_type, record.ref)
            else:
                created += tx.add_edge(record.ref, edge_type, person_ref)
        return created

    def _upsert_event(
        self,
        tx: GraphTransaction,
        record: CommunicationRecord,
        extraction: BillingExtraction,
        case_ref: NodeRef,
        result: MergeResult,
    ) -> None:
        existing = self._find_event(tx, record, case_ref.key)
        proposed = BillableEvent(
            id=existing.id if existing else billable_event_id(record.key, case_ref.key),
            record_key=record.key,
            case_key=case_ref.key,
            description=self.describe(record, extraction),
            timestamp=record.timestamp,
            suggested_duration_hours=self.suggest_duration(record),
            source_type=record.kind,
            amount=extraction.total_amount,
            confidence=extraction.confidence,
        )
        result.event_id = proposed.id

        if existing is None:
            tx.put_node(proposed.ref, proposed.to_graph_dict())
            result.event_created = True
            event = proposed
        else:
            event = existing
            changed = [
                name
                for name in _AMENDABLE_FIELDS
                if getattr(existing, name) != getattr(proposed, name)
            ]
            if existing.status.is_terminal:
                if changed or extraction.confidence != existing.confidence:
                    result.conflicts.append(
                        ImmutableEventConflict(
                            event_id=existing.id,
                            status=existing.status,
                            attempted_fields=changed,
                        )
                    )
            elif extraction.confidence >= existing.confidence and (
                changed or extraction.confidence != existing.confidence
            ):
                updates = {
                    "description": proposed.description,
                    "suggested_duration_hours": proposed.suggested_duration_hours,
                    "amount": str(proposed.amount) if proposed.amount is not None else None,
                    "confidence": proposed.confidence,
                    "updated_at": datetime.now(timezone.utc),
                }
                draft = {"status": BillableEventStatus.DRAFT.value}
                if tx.update_node_if(existing.ref, draft, updates):
                    event = existing.model_copy(update={**updates, "amount": proposed.amount})
                    result.event_updated = True
                else:
                    current = tx.get_node(existing.ref)
                    result.conflicts.append(
                        ImmutableEventConflict(
                            event_id=existing.id,
                            status=BillableEventStatus(current["status"])
                            if current
                            else existing.status,
                            attempted_fields=changed,
                        )
                    )
            elif changed:
                logger.debug(
                    "Kept higher-confidence draft",
                    event_id=existing.id,
                    stored_confidence=existing.confidence,
                    offered_confidence=extraction.confidence,
                )

        if tx.add_edge(record.ref, EdgeType.GENERATED, event.ref):
            result.edges_created += 1
        if not tx.neighbors(event.ref, EdgeType.FOR_CASE, "out"):
            tx.add_edge(event.ref, EdgeType.FOR_CASE, case_ref)
            result.edges_created += 1

    def _find_event(
        self, tx: GraphTransaction, record: CommunicationRecord, case_key: str
    ) -> Optional[BillableEvent]:
        """The event for (record, case): by deterministic id, else via GENERATED edges."""
        data = tx.get_node(
            NodeRef(label=NodeLabel.BILLABLE_EVENT, key=billable_event_id(record.key, case_key))
        )
        if data is not None:
            return BillableEvent.from_graph_dict(data)
        for ref in tx.neighbors(record.ref, EdgeType.GENERATED, "out"):
            data = tx.get_node(ref)
            if data is not None and data.get("case_key") == case_key:
                return BillableEvent.from_graph_dict(data)
        return None

    def _verify_denormalization(self, tx: GraphTransaction, record: CommunicationRecord) -> None:
        related: Set[NodeRef] = set(tx.neighbors(record.ref, EdgeType.RELATES_TO, "out"))
        for event_ref in tx.neighbors(record.ref, EdgeType.GENERATED, "out"):
            data = tx.get_node(event_ref) or {}
            expected = NodeRef(label=NodeLabel.CASE, key=str(data.get("case_key")))
            targets = tx.neighbors(event_ref, EdgeType.FOR_CASE, "out")
            if targets != [expected]:
                raise DataIntegrityError(
                    f"Event {event_ref.key} FOR_CASE {[str(t) for t in targets]} "
                    f"does not match generating case {expected}",
                    event_id=event_ref.key,
                )
            if expected not in related:
                raise DataIntegrityError(
                    f"Event {event_ref.key} points at {expected}, which record "
                    f"{record.key} does not RELATES_TO",
                    event_id=event_ref.key,
                )

    # -----------------------
    # Event content
    # -----------------------
    def describe(self, record: CommunicationRecord, extraction: BillingExtraction) -> str:
        payload = record.payload
        if isinstance(payload, EmailPayload):
            base = f"Email: {payload.subject or '(no subject)'}"
            if payload.sender:
                base += f" from {payload.sender}"
        elif isinstance(payload, PhoneCallPayload):
            minutes = math.ceil(payload.duration_seconds / 60) if payload.duration_seconds else 0
            base = f"Phone call ({minutes} min)"
            if payload.participants:
                base += f" with {', '.join(payload.participants)}"
        else:
            base = f"Document review: {payload.filename}"

        details: List[str] = []
        if extraction.document_type is not None:
            details.append(extraction.document_type.value)
        if extraction.vendor:
            details.append(f"vendor {extraction.vendor}")
        if extraction.invoice_number:
            details.append(f"invoice {extraction.invoice_number}")
        if extraction.total_amount is not None:
            details.append(f"amount {extraction.total_amount:.2f}")
        return f"{base} [{', '.join(details)}]" if details else base

    def suggest_duration(self, record: CommunicationRecord) -> float:
        increment = self.billing.minimum_increment_hours
        payload = record.payload
        if isinstance(payload, PhoneCallPayload):
            hours = payload.duration_seconds / 3600
            steps = max(1, math.ceil(round(hours / increment, 6)))
            return round(steps * increment, 2)
        if isinstance(payload, EmailPayload):
            return self.billing.email_hours
        return self.billing.document_hours
