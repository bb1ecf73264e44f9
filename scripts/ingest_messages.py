#!/usr/bin/env python3
"""Ingestion CLI: feed queued messages through the billing pipeline.

Messages are read from JSON Lines files, one ingestion message per line:

    {"message_id": "m-1", "record_type": "email",
     "raw_payload_locator": "mail/0001.eml", "case_key": "CV-2025-123",
     "received_at": "2025-11-05T14:02:00+00:00"}

Locators are relative to ``storage.payload_root``.

Usage:
    python scripts/ingest_messages.py inbox.jsonl
    python scripts/ingest_messages.py --config config/custom.yaml a.jsonl b.jsonl
    python scripts/ingest_messages.py --dry-run inbox.jsonl
"""

import argparse
import json
import sys
import time
from pathlib import Path
from typing import List

# Make the billgraph package importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent))

from loguru import logger
from pydantic import ValidationError

from billgraph.pipeline.coordinator import InMemoryWorkQueue
from billgraph.pipeline.factory import build_coordinator
from billgraph.pipeline.messages import IngestionMessage, UnitState
from billgraph.utils.config import load_config
from billgraph.utils.logging import setup_logging


def read_messages(paths: List[Path]) -> List[IngestionMessage]:
    """Parse every JSONL file; malformed lines are logged and skipped."""
    messages: List[IngestionMessage] = []
    for path in paths:
        with path.open("r", encoding="utf-8") as handle:
            for line_no, line in enumerate(handle, 1):
                if not line.strip():
                    continue
                try:
                    messages.append(IngestionMessage.model_validate(json.loads(line)))
                except (json.JSONDecodeError, ValidationError) as exc:
                    logger.warning(f"Skipping {path.name}:{line_no}: {exc}")
    return messages


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Ingest queued messages into the billing graph",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("files", nargs="+", type=Path, help="JSONL files of ingestion messages")
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=Path("config/config.yaml"),
        help="Path to configuration file (default: config/config.yaml)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate and list messages without processing them",
    )
    args = parser.parse_args()

    try:
        config = load_config(args.config)
        setup_logging(config.logging, verbose=args.verbose)

        messages = read_messages(args.files)
        if not messages:
            logger.error("No valid ingestion messages found")
            return 1
        logger.info(f"Found {len(messages)} messages to process")

        if args.dry_run:
            for message in messages:
                logger.info(
                    f"  {message.message_id}: {message.record_type.value} "
                    f"{message.raw_payload_locator} -> {message.case_key or '(no case)'}"
                )
            return 0

        coordinator = build_coordinator(config)
        start_time = time.time()
        coordinator.run(InMemoryWorkQueue(messages))
        total_time = time.time() - start_time

        units = coordinator.units()
        by_state = {state: [u for u in units if u.state is state] for state in UnitState}

        logger.info("=" * 50)
        logger.info("INGESTION SUMMARY")
        logger.info("=" * 50)
        logger.info(f"Total messages: {len(units)}")
        for state, members in by_state.items():
            if members:
                logger.info(f"{state.value}: {len(members)}")
        logger.info(f"Total processing time: {total_time:.2f}s")

        for unit in by_state[UnitState.PARKED] + by_state[UnitState.DEAD_LETTERED]:
            error = unit.last_error
            logger.warning(
                f"  - {unit.message_id} [{unit.state.value}]: "
                f"{error.error_type if error else ''} {error.message if error else ''}"
            )

        logger.info("Pipeline statistics:")
        for key, value in coordinator.get_statistics().items():
            logger.info(f"  {key}: {value}")

        return 0 if not by_state[UnitState.DEAD_LETTERED] else 1

    except Exception as e:
        logger.error(f"Ingestion failed: {e}")
        return 1
    finally:
        if "coordinator" in locals():
            coordinator.close()


if __name__ == "__main__":
    sys.exit(main())
