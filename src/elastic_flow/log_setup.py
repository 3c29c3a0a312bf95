"""Loguru sink configuration."""

import sys
from pathlib import Path

from loguru import logger

from .config import LoggingConfig

DEFAULT_FORMAT = LoggingConfig.model_fields["format"].default


def setup_logging(log_config: LoggingConfig) -> None:
    """Configure logging based on configuration."""
    # Remove default handler
    logger.remove()

    log_format = log_config.format
    if log_format == "text":
        log_format = DEFAULT_FORMAT

    # Console logging
    logger.add(
        sink=sys.stderr,
        format=log_format,
        level=log_config.level.upper(),
        colorize=True,
    )

    # File logging if enabled
    if log_config.file_enabled:
        log_path = Path(log_config.file_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        logger.add(
            sink=log_path,
            format=log_format,
            level=log_config.level.upper(),
            rotation=log_config.file_rotation,
            retention=log_config.file_retention,
            serialize=log_config.json_logs,
        )

    logger.debug(f"Logging configured at level {log_config.level.upper()}")
