"""Graph merge engine exports."""

from billgraph.merge.engine import GraphMergeEngine
from billgraph.merge.models import (
    ImmutableEventConflict,
    MergeResult,
    ParticipantRole,
    ResolvedParticipant,
)

__all__ = [
    "GraphMergeEngine",
    "ImmutableEventConflict",
    "MergeResult",
    "ParticipantRole",
    "ResolvedParticipant",
]
