"""Logging configuration using loguru."""

import sys
from pathlib import Path

from loguru import logger


def configure_logging(logging_settings) -> None:
    """Configure loguru logging with settings."""
    # Remove default handler
    logger.remove()

    # Quiet mode is used when Hypnos runs as a stdio subprocess (MCP),
    # where stderr belongs to the parent
    if not logging_settings.quiet:
        logger.add(
            sys.stderr,
            level=logging_settings.level,
            format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        )

    log_file = logging_settings.output_file
    if not log_file and logging_settings.quiet:
        log_file = str(Path.home() / ".hypnos" / "hypnos.log")

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        if logging_settings.format == "json":
            logger.add(
                log_path,
                level=logging_settings.level,
                format="{time} {level} {message}",
                serialize=True,
                rotation="10 MB",
                retention="1 week",
            )
        else:
            logger.add(
                log_path,
                level=logging_settings.level,
                format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
                rotation="10 MB",
                retention="1 week",
            )
