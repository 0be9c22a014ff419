"""Logging setup for the CLI (loguru sink on stderr)."""

import sys

from loguru import logger


def configure_logging(level: str = "WARNING", *, verbose: bool = False) -> None:
    """Replace loguru's default sink with a stderr sink at the chosen level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level="DEBUG" if verbose else level,
        format="<dim>{time:HH:mm:ss}</dim> <level>{level: <7}</level> {message}",
    )
