"""Loguru sink configuration shared by the CLI scripts."""

from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

from billgraph.utils.config import LoggingConfig

_TEXT_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan> | <level>{message}</level> {extra}"
)


def setup_logging(config: LoggingConfig | None = None, *, verbose: bool = False) -> None:
    """Replace the default Loguru handler with a console sink and a rotating file sink."""
    config = config or LoggingConfig()
    level = "DEBUG" if verbose else config.level.upper()

    logger.remove()
    if config.format == "json":
        logger.add(sys.stderr, level=level, serialize=True)
    else:
        logger.add(sys.stderr, level=level, format=_TEXT_FORMAT)

    if config.file:
        log_file = Path(config.file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_file),
            level="DEBUG",
            rotation=f"{config.max_size_mb} MB",
            retention=config.backup_count,
            serialize=config.format == "json",
        )
