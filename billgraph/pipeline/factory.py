"""Wire the pipeline components together from a ``Config``."""

from __future__ import annotations

from typing import Optional

from loguru import logger

from billgraph.extraction.heuristic_extractor import HeuristicBillingExtractor
from billgraph.extraction.llm_extractor import LLMBillingExtractor
from billgraph.extraction.models import BillingExtractor
from billgraph.extraction.text_sources import CompositeTextSource
from billgraph.merge.engine import GraphMergeEngine
from billgraph.pipeline.coordinator import PipelineCoordinator
from billgraph.pipeline.normalization import RecordNormalizer
from billgraph.pipeline.payloads import FilesystemPayloadStore
from billgraph.resolution.entity_resolver import EntityResolver
from billgraph.storage.graph_store import GraphStore, InMemoryGraphStore
from billgraph.storage.locks import KeyedLocks
from billgraph.utils.config import Config


def create_graph_store(config: Config) -> GraphStore:
    """Connected graph store for ``config.storage.graph_backend``."""
    if config.storage.graph_backend == "memory":
        logger.warning("Using in-memory graph store; nothing will be persisted")
        return InMemoryGraphStore()

    from billgraph.storage.neo4j_store import Neo4jGraphStore

    store = Neo4jGraphStore(config.database)
    store.connect()
    return store


def create_extractor(config: Config) -> BillingExtractor:
    extraction = config.extraction
    if extraction.strategy == "llm":
        if extraction.llm.provider == "anthropic":
            api_key = config.anthropic_api_key
        else:
            api_key = config.openai_api_key
        return LLMBillingExtractor(
            extraction.llm, extraction.llm_prompt_template, api_key=api_key or None
        )
    return HeuristicBillingExtractor.from_rules_file(extraction.rules_file)


def build_coordinator(
    config: Config,
    store: Optional[GraphStore] = None,
    *,
    locks: Optional[KeyedLocks] = None,
) -> PipelineCoordinator:
    """Coordinator with every stage configured from ``config``.

    ``locks`` defaults to ``store.locks``, the table a default
    ``BillableEventLifecycle`` on the same store also uses.
    """
    store = store or create_graph_store(config)
    locks = locks or store.locks
    return PipelineCoordinator(
        payloads=FilesystemPayloadStore(config.storage.payload_root),
        normalizer=RecordNormalizer(CompositeTextSource.default(config.extraction.pdf)),
        extractor=create_extractor(config),
        resolver=EntityResolver(store, locks),
        engine=GraphMergeEngine(
            store,
            billable_document_types=config.extraction.billable_document_types,
            billing=config.billing,
            locks=locks,
        ),
        config=config.pipeline,
    )
