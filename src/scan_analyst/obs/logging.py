"""Process-wide logging setup."""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str | int = "INFO") -> None:
    """Attach one stream handler to the package logger.

    Calling it again only updates the level.
    """
    package_logger = logging.getLogger("scan_analyst")
    package_logger.setLevel(level)
    if any(getattr(handler, "_scan_analyst", False) for handler in package_logger.handlers):
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._scan_analyst = True  # type: ignore[attr-defined]
    package_logger.addHandler(handler)
