#!/usr/bin/env python3
"""Graph setup script: Neo4j constraints/indexes and case registration.

Safe to run repeatedly; constraints use IF NOT EXISTS and cases are upserted.

Usage:
    python scripts/setup_graph.py
    python scripts/setup_graph.py --case CV-2025-123 "Roe v. Acme"
    python scripts/setup_graph.py --config config/custom.yaml --case CV-2025-124 "Doe v. Beta"

Environment variables:
    NEO4J_URI - Neo4j connection URI (default: bolt://localhost:7687)
    NEO4J_USER - Neo4j username (default: neo4j)
    NEO4J_PASSWORD - Neo4j password (default: billgraph)
"""

import argparse
import sys
from pathlib import Path

# Make the billgraph package importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent))

from loguru import logger

from billgraph.storage.neo4j_store import Neo4jGraphStore
from billgraph.storage.schemas import Case
from billgraph.utils.config import load_config
from billgraph.utils.logging import setup_logging


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create the billing graph schema and register cases.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--config", "-c", type=Path, default=Path("config/config.yaml"), help="Config file"
    )
    parser.add_argument(
        "--case",
        nargs=2,
        action="append",
        default=[],
        metavar=("CASE_KEY", "NAME"),
        help="Register a case (can be used multiple times)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    return parser.parse_args()


def main() -> int:
    args = parse_args()

    try:
        config = load_config(args.config)
        setup_logging(config.logging, verbose=args.verbose)
        logger.info("Configuration loaded successfully")

        store = Neo4jGraphStore(config.database)
        store.connect()
        store.create_schema()
        logger.success("Neo4j schema ready")

        for case_key, name in args.case:
            created = store.register_case(Case(case_key=case_key, name=name))
            logger.info(f"{'Created' if created else 'Updated'} case {case_key}")
        return 0

    except Exception as e:
        logger.error(f"Setup failed with error: {e}")
        return 1
    finally:
        if "store" in locals():
            store.close()


if __name__ == "__main__":
    sys.exit(main())
