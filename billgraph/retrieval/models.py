"""Shared models for the billing read side."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Protocol

from pydantic import BaseModel, ConfigDict, Field

from billgraph.storage.schemas import BillableEvent


class PendingUnitSource(Protocol):
    """Anything that can report unresolved ingestion units for a case."""

    def unresolved_units_for_case(self, case_key: str) -> List[str]: ...


class BillableEventQueryResult(BaseModel):
    """Billable events for one case and range, plus ingestion health metadata."""

    model_config = ConfigDict(frozen=True)

    case_key: str = Field(..., description="Case the events belong to")
    from_ts: datetime = Field(..., description="Inclusive lower bound")
    to_ts: datetime = Field(..., description="Exclusive upper bound")
    events: List[BillableEvent] = Field(default_factory=list, description="Ordered events")
    ingestion_incomplete: bool = Field(
        default=False, description="Parked or dead-lettered units exist for this case"
    )
    pending_units: List[str] = Field(
        default_factory=list, description="Message ids of the unresolved units"
    )

    def __len__(self) -> int:
        return len(self.events)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return self.model_dump(mode="json")
