"""Forward-only status transitions for billable events."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from loguru import logger

from billgraph.errors import EventNotFoundError, InvalidTransitionError
from billgraph.storage.graph_store import GraphStore
from billgraph.storage.locks import KeyedLocks
from billgraph.storage.schemas import BillableEvent, BillableEventStatus, NodeLabel, NodeRef


class BillableEventLifecycle:
    """Approve or reject draft billable events.

    ``draft -> approved`` and ``draft -> rejected`` are the only transitions.
    Repeating the transition an event already went through is a no-op, so a
    retried approval from the billing UI is harmless.

    Both this service and the merge engine default to the store's lock
    table, so a transition and an extraction replay on the same event never
    interleave in one process. The status write itself is conditional on
    the event still being a draft, which covers writers in other processes.
    """

    def __init__(self, store: GraphStore, locks: Optional[KeyedLocks] = None) -> None:
        self.store = store
        self.locks = locks or store.locks

    def approve(self, event_id: str) -> BillableEvent:
        return self._transition(event_id, BillableEventStatus.APPROVED)

    def reject(self, event_id: str) -> BillableEvent:
        return self._transition(event_id, BillableEventStatus.REJECTED)

    def _transition(self, event_id: str, target: BillableEventStatus) -> BillableEvent:
        ref = NodeRef(label=NodeLabel.BILLABLE_EVENT, key=event_id)
        with self.locks.hold(f"event:{event_id}"):
            with self.store.transaction() as tx:
                data = tx.get_node(ref)
                if data is None:
                    raise EventNotFoundError(f"Billable event not found: {event_id}")
                event = BillableEvent.from_graph_dict(data)

                if event.status is not BillableEventStatus.DRAFT:
                    return self._already_decided(event, target)

                now = datetime.now(timezone.utc)
                if not tx.update_node_if(
                    ref,
                    {"status": BillableEventStatus.DRAFT.value},
                    {"status": target.value, "updated_at": now},
                ):
                    data = tx.get_node(ref)
                    if data is None:
                        raise EventNotFoundError(f"Billable event not found: {event_id}")
                    return self._already_decided(BillableEvent.from_graph_dict(data), target)
                event = event.model_copy(update={"status": target, "updated_at": now})

        logger.info("Billable event status changed", event_id=event_id, status=target.value)
        return event

    def _already_decided(self, event: BillableEvent, target: BillableEventStatus) -> BillableEvent:
        if event.status is target:
            logger.debug("Status already set", event_id=event.id, status=target.value)
            return event
        raise InvalidTransitionError(event.id, event.status.value, target.value)
