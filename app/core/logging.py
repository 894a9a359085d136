"""
Logging utilities for the FastAPI application.

Provides a consistent logging format and configuration.
"""

import logging
import sys

# These libraries log full request URLs at INFO; Graph API URLs carry tokens
# in their query strings.
_URL_LOGGING_LIBRARIES = ("httpx", "httpcore")


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging with a sensible default format."""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stdout,
    )
    for name in _URL_LOGGING_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)


__all__ = ["configure_logging"]
