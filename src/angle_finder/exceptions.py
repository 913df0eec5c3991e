"""Centralized exception hierarchy for the angle-finder package.

All domain-specific exceptions inherit from ``AngleFinderError`` so
callers can catch the entire family with a single ``except`` clause.
Rate-limit failures from the LLM provider are deliberately *not* wrapped:
they propagate as the provider's own exception type once retries run out.
"""

from __future__ import annotations


class AngleFinderError(Exception):
    """Base exception for all angle-finder errors."""


# ---------------------------------------------------------------------------
# LLM output errors
# ---------------------------------------------------------------------------


class JSONRepairError(AngleFinderError):
    """Raised when an LLM completion cannot be coerced into JSON.

    Attributes:
        position: Character offset reported by the final parse attempt.
        context: Up to 100 characters either side of ``position``.
    """

    def __init__(self, message: str, position: int = 0, context: str = "") -> None:
        super().__init__(message)
        self.position = position
        self.context = context


class AnalysisError(AngleFinderError):
    """Raised when an analysis completion carries no JSON object at all."""


# ---------------------------------------------------------------------------
# Storage errors
# ---------------------------------------------------------------------------


class StoreError(AngleFinderError):
    """Raised when the record store file cannot be read or written."""
