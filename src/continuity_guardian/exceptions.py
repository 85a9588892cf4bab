"""
Exception hierarchy for the Continuity Guardian engine.

Every error carries a human-readable message and an optional ``details``
dictionary with structured context for logging and tool output.

Degradations that are part of normal operation (malformed extraction records,
stale chapters in a batch scan, throttled incremental checks) are not raised;
they are recorded as state by the component that observes them.
"""

from __future__ import annotations

from typing import Any


class ContinuityError(Exception):
    """Base exception for all Continuity Guardian errors.

    Args:
        message: Human-readable description of the error.
        details: Optional structured context.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ExtractionError(ContinuityError):
    """Raised when the external extraction capability fails.

    Args:
        message: Description of the failure.
        chapter_id: Chapter being extracted, if known.
        recoverable: Whether retrying may succeed.
        details: Optional structured context.
    """

    def __init__(
        self,
        message: str,
        chapter_id: str | None = None,
        recoverable: bool = True,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.chapter_id = chapter_id
        self.recoverable = recoverable


class ExtractionTimeoutError(ExtractionError):
    """Raised when an extraction call exceeds its time budget."""

    def __init__(
        self,
        message: str,
        operation: str,
        timeout_seconds: float,
        chapter_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, chapter_id=chapter_id, recoverable=True, details=details)
        self.operation = operation
        self.timeout_seconds = timeout_seconds


class CheckFailedError(ContinuityError):
    """Raised when an incremental consistency check cannot complete."""
    pass


class StoreCorruptionError(ContinuityError):
    """Raised when a Fact Store invariant is found violated.

    This is never a recoverable runtime condition: two active facts for the
    same (subject, attribute) key mean a contract was broken upstream.
    """

    def __init__(
        self,
        message: str,
        fact_key: tuple[str, str] | None = None,
        fact_ids: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.fact_key = fact_key
        self.fact_ids = fact_ids or []


class FactNotFoundError(ContinuityError):
    """Raised when a fact key or id does not resolve to an active fact."""
    pass


class IssueNotFoundError(ContinuityError):
    """Raised when an issue id is unknown for the given book."""
    pass


class InvalidTransitionError(ContinuityError):
    """Raised when an issue status change is not an allowed transition."""

    def __init__(
        self,
        message: str,
        current_status: str,
        requested_status: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.current_status = current_status
        self.requested_status = requested_status


class ScanInProgressError(ContinuityError):
    """Raised when a batch scan is requested while one is already running."""
    pass


__all__ = [
    "ContinuityError",
    "ExtractionError",
    "ExtractionTimeoutError",
    "CheckFailedError",
    "StoreCorruptionError",
    "FactNotFoundError",
    "IssueNotFoundError",
    "InvalidTransitionError",
    "ScanInProgressError",
]
