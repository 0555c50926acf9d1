"""Logging configuration for the application."""
import logging
import sys

from apprentice_tracker.config import get_settings


def setup_logging() -> None:
    """Configure application-wide logging.

    Level comes from settings.log_level (INFO when unrecognised).
    Output goes to stdout.
    """
    settings = get_settings()
    log_level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
