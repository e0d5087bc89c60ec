"""Exceptions raised by the scan analyst pipeline."""

from __future__ import annotations


class ScanAnalystError(Exception):
    """Base class for all scan analyst errors."""


class NotFoundError(ScanAnalystError):
    """Raised when a scan, finding or knowledge entry id does not exist."""

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class ClassificationUnavailableError(ScanAnalystError):
    """Raised when the inference service cannot classify a query."""
