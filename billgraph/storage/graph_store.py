"""Graph store contract and the in-process implementation.

A compliant store offers transactional upsert-by-key over labelled nodes,
idempotent typed edges keyed by (source, type, target), and an indexed
range scan of billable events by case and timestamp. Edges are kept in an
adjacency index rather than as object references.
"""

from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, DefaultDict, Dict, Iterable, Iterator, List, Literal, Optional, Set, Tuple

from loguru import logger

from billgraph.errors import ConcurrentModificationError, UnknownCaseError
from billgraph.storage.locks import KeyedLocks
from billgraph.storage.schemas import (
    Attorney,
    BillableEvent,
    BillableEventStatus,
    Case,
    EdgeType,
    NodeLabel,
    NodeRef,
    PersonRef,
    UNRESOLVED_STATES,
    UnresolvedUnit,
)

Direction = Literal["out", "in"]
EdgeKey = Tuple[NodeRef, EdgeType, NodeRef]


class GraphTransaction(ABC):
    """Read/write primitives available inside one atomic store transaction."""

    @abstractmethod
    def get_node(self, ref: NodeRef) -> Optional[Dict[str, Any]]:
        """Return a copy of the node's properties, or None."""

    @abstractmethod
    def find_node(self, label: NodeLabel, field: str, value: str) -> Optional[Dict[str, Any]]:
        """Return the first node of ``label`` whose list property ``field`` contains ``value``."""

    @abstractmethod
    def put_node(self, ref: NodeRef, props: Dict[str, Any]) -> bool:
        """Create or replace a node's properties. Returns True when created."""

    @abstractmethod
    def update_node_if(
        self, ref: NodeRef, expected: Dict[str, Any], updates: Dict[str, Any]
    ) -> bool:
        """Merge ``updates`` into an existing node only while it still matches ``expected``.

        Properties not named in ``updates`` are left alone. Returns False when
        the node is missing or no longer matches. A match that is invalidated
        by another writer before commit raises ``ConcurrentModificationError``
        on commit.
        """

    @abstractmethod
    def add_edge(self, source: NodeRef, edge_type: EdgeType, target: NodeRef) -> bool:
        """Create the edge if absent. Returns True when created.

        Raises:
            ValueError: If either endpoint does not exist.
        """

    @abstractmethod
    def neighbors(
        self, ref: NodeRef, edge_type: EdgeType, direction: Direction = "out"
    ) -> List[NodeRef]:
        """Nodes reachable from ``ref`` over ``edge_type`` in ``direction``."""

    def has_edge(self, source: NodeRef, edge_type: EdgeType, target: NodeRef) -> bool:
        return target in self.neighbors(source, edge_type, "out")


class GraphStore(ABC):
    """Abstract graph store; concrete stores supply transactions and the range scan.

    ``locks`` is the per-key lock table that writers sharing this store use
    by default, so the merge engine and the event lifecycle serialize on the
    same ``event:<id>`` keys without extra wiring.
    """

    locks: KeyedLocks

    @abstractmethod
    @contextmanager
    def transaction(self) -> Iterator[GraphTransaction]:
        """Atomic unit: commit on normal exit, roll back on any exception."""

    @abstractmethod
    def billable_events_for_case(
        self,
        case_key: str,
        start: datetime,
        end: datetime,
        statuses: Iterable[BillableEventStatus],
    ) -> List[BillableEvent]:
        """Events with FOR_CASE -> case, ``start <= timestamp < end``, ordered by (timestamp, id)."""

    @abstractmethod
    def unresolved_units_for_case(self, case_key: str) -> List[str]:
        """Message ids of parked or dead-lettered units for ``case_key``, sorted."""

    def close(self) -> None:
        """Release backend resources."""

    # Ingestion bookkeeping --------------------------------------------------

    def record_unresolved_unit(self, unit: UnresolvedUnit) -> None:
        """Persist a parked or dead-lettered unit, replacing any earlier entry."""
        with self.transaction() as tx:
            tx.put_node(unit.ref, unit.to_graph_dict())
        logger.debug(
            "Recorded unresolved unit",
            message_id=unit.message_id,
            case_key=unit.case_key,
            state=unit.state,
        )

    def mark_unit_resolved(self, message_id: str) -> bool:
        """Flip a recorded unit to ``resolved``. Returns False when none is open."""
        ref = NodeRef(label=NodeLabel.UNRESOLVED_UNIT, key=message_id)
        with self.transaction() as tx:
            data = tx.get_node(ref)
            if data is None or data.get("state") not in UNRESOLVED_STATES:
                return False
            unit = UnresolvedUnit.from_graph_dict(data).model_copy(
                update={"state": "resolved", "updated_at": datetime.now(timezone.utc)}
            )
            tx.put_node(ref, unit.to_graph_dict())
        logger.debug("Resolved unit", message_id=message_id)
        return True

    def get_unresolved_unit(self, message_id: str) -> Optional[UnresolvedUnit]:
        ref = NodeRef(label=NodeLabel.UNRESOLVED_UNIT, key=message_id)
        with self.transaction() as tx:
            data = tx.get_node(ref)
        return UnresolvedUnit.from_graph_dict(data) if data else None

    # Case registry ----------------------------------------------------------

    def register_case(self, case: Case) -> bool:
        """Create or update a case node (case-management action)."""
        with self.transaction() as tx:
            created = tx.put_node(case.ref, case.to_graph_dict())
        logger.info("Registered case", case_key=case.case_key, created=created)
        return created

    def register_attorney(
        self,
        attorney: Attorney,
        *,
        manages: Iterable[str] = (),
        represents: Iterable[PersonRef] = (),
    ) -> None:
        """Upsert an attorney with MANAGES -> Case and REPRESENTS -> Person edges.

        Raises:
            UnknownCaseError: If a managed case is not registered.
        """
        with self.transaction() as tx:
            tx.put_node(attorney.ref, attorney.to_graph_dict())
            for case_key in manages:
                case_ref = NodeRef(label=NodeLabel.CASE, key=case_key)
                if tx.get_node(case_ref) is None:
                    raise UnknownCaseError(case_key)
                tx.add_edge(attorney.ref, EdgeType.MANAGES, case_ref)
            for person in represents:
                tx.add_edge(attorney.ref, EdgeType.REPRESENTS, person.ref)
        logger.info("Registered attorney", attorney=attorney.key)

    def case_exists(self, case_key: str) -> bool:
        with self.transaction() as tx:
            return tx.get_node(NodeRef(label=NodeLabel.CASE, key=case_key)) is not None

    def get_case(self, case_key: str) -> Optional[Case]:
        with self.transaction() as tx:
            data = tx.get_node(NodeRef(label=NodeLabel.CASE, key=case_key))
        return Case.from_graph_dict(data) if data else None

    def get_billable_event(self, event_id: str) -> Optional[BillableEvent]:
        with self.transaction() as tx:
            data = tx.get_node(NodeRef(label=NodeLabel.BILLABLE_EVENT, key=event_id))
        return BillableEvent.from_graph_dict(data) if data else None


class _MemoryTransaction(GraphTransaction):
    """Stages writes locally and applies them to the store on commit."""

    def __init__(self, store: "InMemoryGraphStore") -> None:
        self._store = store
        self._nodes: Dict[NodeRef, Dict[str, Any]] = {}
        self._edges: Set[EdgeKey] = set()
        self._patches: Dict[NodeRef, Dict[str, Any]] = {}
        self._guards: List[Tuple[NodeRef, Dict[str, Any]]] = []

    def get_node(self, ref: NodeRef) -> Optional[Dict[str, Any]]:
        if ref in self._nodes:
            return copy.deepcopy(self._nodes[ref])
        with self._store._lock:
            data = self._store._nodes.get(ref)
            return copy.deepcopy(data) if data is not None else None

    def find_node(self, label: NodeLabel, field: str, value: str) -> Optional[Dict[str, Any]]:
        for ref in sorted(self._nodes, key=str):
            props = self._nodes[ref]
            if ref.label == label and value in (props.get(field) or []):
                return copy.deepcopy(props)
        with self._store._lock:
            for ref in sorted(self._store._labels.get(label, ()), key=str):
                if ref in self._nodes:
                    continue
                props = self._store._nodes[ref]
                if value in (props.get(field) or []):
                    return copy.deepcopy(props)
        return None

    def put_node(self, ref: NodeRef, props: Dict[str, Any]) -> bool:
        created = self.get_node(ref) is None
        data = copy.deepcopy(props)
        data["key"] = ref.key
        self._nodes[ref] = data
        self._patches.pop(ref, None)
        return created

    def update_node_if(
        self, ref: NodeRef, expected: Dict[str, Any], updates: Dict[str, Any]
    ) -> bool:
        current = self.get_node(ref)
        if current is None or any(current.get(k) != v for k, v in expected.items()):
            return False
        if ref not in self._nodes or ref in self._patches:
            self._patches.setdefault(ref, {}).update(copy.deepcopy(updates))
        current.update(copy.deepcopy(updates))
        self._nodes[ref] = current
        self._guards.append((ref, dict(expected)))
        return True

    def add_edge(self, source: NodeRef, edge_type: EdgeType, target: NodeRef) -> bool:
        for endpoint in (source, target):
            if self.get_node(endpoint) is None:
                raise ValueError(f"Cannot link missing node {endpoint}")
        if self.has_edge(source, edge_type, target):
            return False
        self._edges.add((source, edge_type, target))
        return True

    def neighbors(
        self, ref: NodeRef, edge_type: EdgeType, direction: Direction = "out"
    ) -> List[NodeRef]:
        index = self._store._out if direction == "out" else self._store._in
        with self._store._lock:
            found = set(index.get((ref, edge_type), ()))
        for source, etype, target in self._edges:
            if etype != edge_type:
                continue
            if direction == "out" and source == ref:
                found.add(target)
            elif direction == "in" and target == ref:
                found.add(source)
        return sorted(found, key=str)

    def commit(self) -> None:
        self._store._apply(self._nodes, self._edges, self._patches, self._guards)

    def rollback(self) -> None:
        self._nodes.clear()
        self._edges.clear()
        self._patches.clear()
        self._guards.clear()


class InMemoryGraphStore(GraphStore):
    """Thread-safe in-process graph store.

    Transactions are applied atomically under a single store lock, so
    readers never observe a partially applied transaction. Guards taken by
    ``update_node_if`` are re-checked under that lock before anything is
    applied.
    """

    def __init__(self) -> None:
        self.locks = KeyedLocks()
        self._lock = threading.RLock()
        self._nodes: Dict[NodeRef, Dict[str, Any]] = {}
        self._labels: DefaultDict[NodeLabel, Set[NodeRef]] = defaultdict(set)
        self._out: DefaultDict[Tuple[NodeRef, EdgeType], Set[NodeRef]] = defaultdict(set)
        self._in: DefaultDict[Tuple[NodeRef, EdgeType], Set[NodeRef]] = defaultdict(set)

    @contextmanager
    def transaction(self) -> Iterator[GraphTransaction]:
        tx = _MemoryTransaction(self)
        try:
            yield tx
        except BaseException:
            tx.rollback()
            raise
        tx.commit()

    def _apply(
        self,
        nodes: Dict[NodeRef, Dict[str, Any]],
        edges: Set[EdgeKey],
        patches: Dict[NodeRef, Dict[str, Any]],
        guards: List[Tuple[NodeRef, Dict[str, Any]]],
    ) -> None:
        with self._lock:
            for ref, expected in guards:
                committed = self._nodes.get(ref)
                if committed is None:
                    continue
                stale = {k: committed.get(k) for k, v in expected.items() if committed.get(k) != v}
                if stale:
                    logger.warning("Guarded write lost a race", node=str(ref), found=stale)
                    raise ConcurrentModificationError(f"{ref} changed before commit: {stale}")
            for ref, props in nodes.items():
                if ref in patches and ref in self._nodes:
                    props = {**self._nodes[ref], **patches[ref]}
                self._nodes[ref] = props
                self._labels[ref.label].add(ref)
            for source, edge_type, target in edges:
                self._out[(source, edge_type)].add(target)
                self._in[(target, edge_type)].add(source)

    def billable_events_for_case(
        self,
        case_key: str,
        start: datetime,
        end: datetime,
        statuses: Iterable[BillableEventStatus],
    ) -> List[BillableEvent]:
        wanted = {BillableEventStatus(s).value for s in statuses}
        case_ref = NodeRef(label=NodeLabel.CASE, key=case_key)
        with self._lock:
            rows = [
                copy.deepcopy(self._nodes[ref])
                for ref in self._in.get((case_ref, EdgeType.FOR_CASE), ())
                if ref.label == NodeLabel.BILLABLE_EVENT
            ]
        events = [
            BillableEvent.from_graph_dict(row)
            for row in rows
            if row.get("status") in wanted and start <= row["timestamp"] < end
        ]
        return sorted(events, key=lambda e: (e.timestamp, e.id))

    def unresolved_units_for_case(self, case_key: str) -> List[str]:
        with self._lock:
            return sorted(
                self._nodes[ref]["key"]
                for ref in self._labels.get(NodeLabel.UNRESOLVED_UNIT, ())
                if self._nodes[ref].get("case_key") == case_key
                and self._nodes[ref].get("state") in UNRESOLVED_STATES
            )

    # Introspection ------------------------------------------------------------

    def nodes(self, label: NodeLabel) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(self._nodes[ref]) for ref in sorted(self._labels[label], key=str)]

    def edges(self) -> Set[EdgeKey]:
        with self._lock:
            return {
                (source, edge_type, target)
                for (source, edge_type), targets in self._out.items()
                for target in targets
            }

    def snapshot(self) -> Tuple[Dict[NodeRef, Dict[str, Any]], Set[EdgeKey]]:
        """Deep copy of all nodes and edges, for consistency checks."""
        with self._lock:
            return copy.deepcopy(self._nodes), self.edges()
