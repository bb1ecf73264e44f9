"""Error taxonomy shared by the extraction, merge and pipeline layers.

Components raise these and never retry on their own; the pipeline
coordinator inspects ``retryable`` (and the concrete type) to decide
between retry, parking, and dead-lettering.
"""

from __future__ import annotations

from typing import Optional


class BillGraphError(Exception):
    """Base class for all billgraph errors."""

    retryable: bool = False


class ExtractionUnavailable(BillGraphError):
    """The OCR/NLP collaborator could not produce text or fields (transient)."""

    retryable = True


class UnknownCaseError(BillGraphError):
    """A record referenced a case key that the case registry does not know."""

    def __init__(self, case_key: str) -> None:
        super().__init__(f"Unknown case: {case_key}")
        self.case_key = case_key


class DataIntegrityError(BillGraphError):
    """The denormalized FOR_CASE edge disagrees with the RELATES_TO path."""

    def __init__(self, message: str, *, event_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.event_id = event_id


class InvalidTransitionError(BillGraphError):
    """A billable event status transition violates the forward-only lifecycle."""

    def __init__(self, event_id: str, current: str, requested: str) -> None:
        super().__init__(f"Cannot move event {event_id} from {current} to {requested}")
        self.event_id = event_id
        self.current = current
        self.requested = requested


class EventNotFoundError(BillGraphError):
    """No billable event exists with the requested id."""


class PayloadNotFoundError(BillGraphError):
    """The raw payload locator does not resolve to a stored blob."""


class UnitCancelled(BillGraphError):
    """The unit of work was cancelled between stages."""


class ProcessingTimeout(BillGraphError):
    """The unit of work exceeded its processing deadline."""

    retryable = True


class InvalidPayloadError(BillGraphError):
    """The raw payload exists but cannot be parsed into a record."""


class ConcurrentModificationError(BillGraphError):
    """A guarded write found its node changed by another writer before commit."""

    retryable = True
