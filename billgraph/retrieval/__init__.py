"""Billing read side: event listing and status transitions."""

from billgraph.retrieval.billing_query import BillingQueryService
from billgraph.retrieval.lifecycle import BillableEventLifecycle
from billgraph.retrieval.models import BillableEventQueryResult, PendingUnitSource

__all__ = [
    "BillableEventLifecycle",
    "BillableEventQueryResult",
    "BillingQueryService",
    "PendingUnitSource",
]
