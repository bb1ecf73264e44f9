"""Graph storage: schema models, store contract and backends."""

from billgraph.storage.graph_store import GraphStore, GraphTransaction, InMemoryGraphStore
from billgraph.storage.locks import KeyedLocks

__all__ = ["GraphStore", "GraphTransaction", "InMemoryGraphStore", "KeyedLocks"]
