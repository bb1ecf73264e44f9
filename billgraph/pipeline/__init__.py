"""Pipeline coordination: messages, payloads, normalization and the coordinator."""

from billgraph.pipeline.coordinator import InMemoryWorkQueue, PipelineCoordinator, WorkQueue
from billgraph.pipeline.messages import (
    IngestionMessage,
    NormalizedInput,
    ParticipantHint,
    UnitState,
    WorkUnit,
)
from billgraph.pipeline.normalization import RecordNormalizer
from billgraph.pipeline.payloads import FilesystemPayloadStore, PayloadStore

__all__ = [
    "FilesystemPayloadStore",
    "InMemoryWorkQueue",
    "IngestionMessage",
    "NormalizedInput",
    "ParticipantHint",
    "PayloadStore",
    "PipelineCoordinator",
    "RecordNormalizer",
    "UnitState",
    "WorkQueue",
    "WorkUnit",
]
