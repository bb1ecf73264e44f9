"""Neo4j-backed graph store.

Every node carries its natural key in the ``key`` property, guarded by a
per-label uniqueness constraint, so ``MERGE`` on ``key`` is the upsert
primitive. One ``GraphStore.transaction()`` maps to one explicit Neo4j
write transaction.
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional

from loguru import logger
from neo4j import GraphDatabase, Session, Transaction
from neo4j.exceptions import Neo4jError

from billgraph.storage.graph_store import Direction, GraphStore, GraphTransaction
from billgraph.storage.locks import KeyedLocks
from billgraph.storage.schemas import (
    BillableEvent,
    BillableEventStatus,
    EdgeType,
    NodeLabel,
    NodeRef,
    UNRESOLVED_STATES,
)
from billgraph.utils.config import DatabaseConfig


_LABELS = {label.value for label in NodeLabel}


def _to_native(value: Any) -> Any:
    """Convert neo4j temporal values back to Python datetimes."""
    if hasattr(value, "to_native"):
        return value.to_native()
    return value


def _node_props(node: Any) -> Dict[str, Any]:
    return {k: _to_native(v) for k, v in dict(node).items()}


class Neo4jTransaction(GraphTransaction):
    """Graph primitives executed inside one Neo4j transaction.

    Labels and relationship types come from closed enums, so interpolating
    them into Cypher is safe; all values travel as parameters.
    """

    def __init__(self, tx: Transaction) -> None:
        self._tx = tx

    def get_node(self, ref: NodeRef) -> Optional[Dict[str, Any]]:
        record = self._tx.run(
            f"MATCH (n:{ref.label.value} {{key: $key}}) RETURN n", key=ref.key
        ).single()
        return _node_props(record["n"]) if record else None

    def find_node(self, label: NodeLabel, field: str, value: str) -> Optional[Dict[str, Any]]:
        record = self._tx.run(
            f"MATCH (n:{label.value}) WHERE $value IN n[$field] "
            "RETURN n ORDER BY n.key LIMIT 1",
            field=field,
            value=value,
        ).single()
        return _node_props(record["n"]) if record else None

    def put_node(self, ref: NodeRef, props: Dict[str, Any]) -> bool:
        data = {k: v for k, v in props.items() if v is not None}
        data["key"] = ref.key
        record = self._tx.run(
            f"""
            MERGE (n:{ref.label.value} {{key: $key}})
            ON CREATE SET n._created = true
            WITH n, coalesce(n._created, false) AS created
            SET n = $props
            RETURN created
            """,
            key=ref.key,
            props=data,
        ).single()
        return bool(record and record["created"])

    def update_node_if(
        self, ref: NodeRef, expected: Dict[str, Any], updates: Dict[str, Any]
    ) -> bool:
        # Touching a property takes the node's write lock before the guard is read.
        record = self._tx.run(
            f"""
            MATCH (n:{ref.label.value} {{key: $key}})
            SET n._lock = true
            REMOVE n._lock
            WITH n
            WHERE all(k IN keys($expected) WHERE n[k] = $expected[k])
            SET n += $updates
            RETURN count(n) AS updated
            """,
            key=ref.key,
            expected=expected,
            updates=updates,
        ).single()
        return bool(record and record["updated"])

    def add_edge(self, source: NodeRef, edge_type: EdgeType, target: NodeRef) -> bool:
        record = self._tx.run(
            f"""
            MATCH (a:{source.label.value} {{key: $source_key}})
            MATCH (b:{target.label.value} {{key: $target_key}})
            OPTIONAL MATCH (a)-[existing:{edge_type.value}]->(b)
            WITH a, b, existing IS NOT NULL AS existed
            MERGE (a)-[:{edge_type.value}]->(b)
            RETURN existed
            """,
            source_key=source.key,
            target_key=target.key,
        ).single()
        if record is None:
            raise ValueError(f"Cannot link {source} -[{edge_type.value}]-> {target}: missing node")
        return not record["existed"]

    def neighbors(
        self, ref: NodeRef, edge_type: EdgeType, direction: Direction = "out"
    ) -> List[NodeRef]:
        pattern = (
            f"(n:{ref.label.value} {{key: $key}})-[:{edge_type.value}]->(m)"
            if direction == "out"
            else f"(n:{ref.label.value} {{key: $key}})<-[:{edge_type.value}]-(m)"
        )
        result = self._tx.run(
            f"MATCH {pattern} RETURN labels(m) AS labels, m.key AS key ORDER BY key",
            key=ref.key,
        )
        refs: List[NodeRef] = []
        for record in result:
            label = next((NodeLabel(lbl) for lbl in record["labels"] if lbl in _LABELS), None)
            if label is not None:
                refs.append(NodeRef(label=label, key=record["key"]))
        return sorted(refs, key=str)


class Neo4jGraphStore(GraphStore):
    """Manager for Neo4j connections, schema and billing graph transactions."""

    def __init__(self, config: DatabaseConfig):
        self.uri = config.neo4j_uri
        self.user = config.neo4j_user
        self.password = config.neo4j_password
        self.database = config.neo4j_database
        self.driver = None
        self._connected = False
        self.locks = KeyedLocks()

    def connect(self) -> None:
        """Establish connection to Neo4j database.

        Raises:
            Neo4jError: If connection fails
        """
        try:
            self.driver = GraphDatabase.driver(
                self.uri, auth=(self.user, self.password), max_connection_pool_size=50
            )
            self.driver.verify_connectivity()
            self._connected = True
            logger.info(f"Connected to Neo4j at {self.uri}")
        except Neo4jError as e:
            logger.error(f"Failed to connect to Neo4j: {e}")
            raise

    def close(self) -> None:
        if self.driver:
            self.driver.close()
            self._connected = False
            logger.info("Closed Neo4j connection")

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context manager for a Neo4j session.

        Raises:
            RuntimeError: If not connected to database
        """
        if not self._connected or not self.driver:
            raise RuntimeError("Not connected to Neo4j. Call connect() first.")

        session = self.driver.session(database=self.database)
        try:
            yield session
        finally:
            session.close()

    @contextmanager
    def transaction(self) -> Iterator[GraphTransaction]:
        with self.session() as session:
            tx = session.begin_transaction()
            try:
                yield Neo4jTransaction(tx)
            except BaseException:
                tx.rollback()
                raise
            tx.commit()

    def create_schema(self) -> None:
        """Create key uniqueness constraints and the event range-scan indexes."""
        with self.session() as session:
            for label in NodeLabel:
                try:
                    session.run(
                        f"CREATE CONSTRAINT {label.value.lower()}_key_unique IF NOT EXISTS "
                        f"FOR (n:{label.value}) REQUIRE n.key IS UNIQUE"
                    )
                    logger.info(f"Created key uniqueness constraint for {label.value}")
                except Neo4jError as e:
                    logger.warning(f"Could not create constraint for {label.value}: {e}")

            for name, label, prop in (
                ("billable_event_timestamp_idx", NodeLabel.BILLABLE_EVENT, "timestamp"),
                ("billable_event_status_idx", NodeLabel.BILLABLE_EVENT, "status"),
                ("billable_event_case_idx", NodeLabel.BILLABLE_EVENT, "case_key"),
                ("unresolved_unit_case_idx", NodeLabel.UNRESOLVED_UNIT, "case_key"),
            ):
                try:
                    session.run(
                        f"CREATE INDEX {name} IF NOT EXISTS "
                        f"FOR (e:{label.value}) ON (e.{prop})"
                    )
                except Neo4jError as e:
                    logger.warning(f"Could not create index {name}: {e}")

            logger.info("Neo4j schema creation completed")

    def billable_events_for_case(
        self,
        case_key: str,
        start: datetime,
        end: datetime,
        statuses: Iterable[BillableEventStatus],
    ) -> List[BillableEvent]:
        with self.session() as session:
            result = session.run(
                """
                MATCH (e:BillableEvent)-[:FOR_CASE]->(:Case {key: $case_key})
                WHERE e.status IN $statuses
                  AND e.timestamp >= $start AND e.timestamp < $end
                RETURN e
                ORDER BY e.timestamp ASC, e.key ASC
                """,
                case_key=case_key,
                statuses=[BillableEventStatus(s).value for s in statuses],
                start=start,
                end=end,
            )
            return [BillableEvent.from_graph_dict(_node_props(record["e"])) for record in result]

    def unresolved_units_for_case(self, case_key: str) -> List[str]:
        with self.session() as session:
            result = session.run(
                """
                MATCH (u:UnresolvedUnit {case_key: $case_key})
                WHERE u.state IN $states
                RETURN u.key AS key
                ORDER BY u.key
                """,
                case_key=case_key,
                states=list(UNRESOLVED_STATES),
            )
            return [record["key"] for record in result]
