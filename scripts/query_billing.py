#!/usr/bin/env python3
"""List billable events for a case over a date range.

Usage:
    python scripts/query_billing.py CV-2025-123 2025-11-01 2025-12-01
    python scripts/query_billing.py CV-2025-123 2025-11-01 2025-12-01 --status draft --status approved
    python scripts/query_billing.py CV-2025-123 2025-11-01 2025-12-01 --json

Dates without a timezone are read as UTC. The range is half-open: events on
the end date itself are excluded.
"""

import argparse
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

# Make the billgraph package importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent))

from loguru import logger

from billgraph.pipeline.factory import create_graph_store
from billgraph.retrieval.billing_query import BillingQueryService
from billgraph.storage.schemas import BillableEventStatus
from billgraph.utils.config import load_config
from billgraph.utils.logging import setup_logging


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="List billable events for invoice drafting",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("case_key", help="Case number, e.g. CV-2025-123")
    parser.add_argument("start", type=parse_timestamp, help="Inclusive start (ISO 8601)")
    parser.add_argument("end", type=parse_timestamp, help="Exclusive end (ISO 8601)")
    parser.add_argument(
        "--status",
        action="append",
        choices=[s.value for s in BillableEventStatus],
        help="Lifecycle states to include (default: draft)",
    )
    parser.add_argument(
        "--config", "-c", type=Path, default=Path("config/config.yaml"), help="Config file"
    )
    parser.add_argument("--json", action="store_true", help="Print JSON instead of a table")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
        setup_logging(config.logging, verbose=args.verbose)

        store = create_graph_store(config)
        service = BillingQueryService(store)
        result = service.list_billable_events(args.case_key, args.start, args.end, args.status)

        if args.json:
            print(json.dumps(result.to_dict(), indent=2))
            return 0

        print(f"Billable events for {args.case_key} [{args.start:%Y-%m-%d}, {args.end:%Y-%m-%d})")
        for event in result.events:
            amount = f"{event.amount:>10.2f}" if event.amount is not None else " " * 10
            print(
                f"{event.timestamp:%Y-%m-%d %H:%M}  {event.status.value:<8}  "
                f"{event.suggested_duration_hours:>4.1f}h  {amount}  {event.description}"
            )
        print(f"{len(result)} event(s)")
        if result.ingestion_incomplete:
            print(
                f"WARNING: ingestion incomplete, {len(result.pending_units)} unresolved "
                f"message(s): {', '.join(result.pending_units)}"
            )
        return 0

    except Exception as e:
        logger.error(f"Query failed: {e}")
        return 1
    finally:
        if "store" in locals():
            store.close()


if __name__ == "__main__":
    sys.exit(main())
