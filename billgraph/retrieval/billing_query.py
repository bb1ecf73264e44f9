"""Read-side listing of billable events for invoice drafting."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from loguru import logger

from billgraph.retrieval.models import BillableEventQueryResult, PendingUnitSource
from billgraph.storage.graph_store import GraphStore
from billgraph.storage.schemas import BillableEventStatus, ensure_utc

DEFAULT_STATUSES = frozenset({BillableEventStatus.DRAFT})


class BillingQueryService:
    """Lists billable events of a case over a half-open time range.

    Results are ordered by ascending timestamp with ties broken by event id,
    so paging through them is stable. The service never writes to the store
    and takes no locks; a consistent snapshot from the store is enough.
    Unresolved ingestion units come from ``pending``, which defaults to the
    units the pipeline recorded in the store.

    Example:
        >>> service = BillingQueryService(store)
        >>> result = service.list_billable_events(
        ...     "CV-2025-123",
        ...     datetime(2025, 11, 1, tzinfo=timezone.utc),
        ...     datetime(2025, 12, 1, tzinfo=timezone.utc),
        ... )
        >>> [e.timestamp.day for e in result.events]
        [5, 20]
    """

    def __init__(self, store: GraphStore, pending: Optional[PendingUnitSource] = None) -> None:
        self.store = store
        self.pending: PendingUnitSource = pending or store

    def list_billable_events(
        self,
        case_key: str,
        from_ts: datetime,
        to_ts: datetime,
        statuses: Optional[Iterable[BillableEventStatus | str]] = None,
    ) -> BillableEventQueryResult:
        """Events with ``from_ts <= timestamp < to_ts`` in any of ``statuses``.

        Args:
            case_key: Case number, e.g. ``CV-2025-123``
            from_ts: Inclusive lower bound (timezone-aware)
            to_ts: Exclusive upper bound (timezone-aware)
            statuses: Lifecycle states to include; defaults to drafts only

        Raises:
            ValueError: If either bound is a naive datetime or a status is unknown.
        """
        start = ensure_utc(from_ts)
        end = ensure_utc(to_ts)
        wanted = (
            {BillableEventStatus(s) for s in statuses}
            if statuses is not None
            else set(DEFAULT_STATUSES)
        )

        events = []
        if start < end and wanted:
            events = self.store.billable_events_for_case(case_key, start, end, wanted)

        pending_units = self.pending.unresolved_units_for_case(case_key)
        if pending_units:
            logger.warning(
                "Billing query served while ingestion is incomplete",
                case_key=case_key,
                pending_units=len(pending_units),
            )

        logger.debug(
            "Listed billable events",
            case_key=case_key,
            start=start.isoformat(),
            end=end.isoformat(),
            statuses=sorted(s.value for s in wanted),
            count=len(events),
        )
        return BillableEventQueryResult(
            case_key=case_key,
            from_ts=start,
            to_ts=end,
            events=events,
            ingestion_incomplete=bool(pending_units),
            pending_units=sorted(pending_units),
        )
