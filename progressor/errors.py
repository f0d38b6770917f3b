"""Error taxonomy for the tracking engine.

Lifecycle and ledger operations raise these; the service facade turns them
into result dictionaries keyed by ``error_type``.
"""

from __future__ import annotations

from typing import Any, Dict


class TrackerError(Exception):
    """Base class for all tracker errors."""

    error_type = "TrackerError"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "error_type": self.error_type,
            "message": self.message,
            "context": dict(self.context),
        }


class NotFoundError(TrackerError):
    """An entity id is unknown."""

    error_type = "NotFound"


class InvalidStateError(TrackerError):
    """The operation is illegal for the current lifecycle state."""

    error_type = "InvalidState"


class ConflictError(TrackerError):
    """A concurrent write or the single-active-card rule was violated."""

    error_type = "Conflict"


class ValidationError(TrackerError):
    """Malformed input."""

    error_type = "ValidationError"


class ClockSkewError(TrackerError):
    """A time range ends before it starts."""

    error_type = "ClockSkew"
