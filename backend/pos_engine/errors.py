# Overview: Error taxonomy shared by every engine service.

"""
Engine errors.

Callers map these onto their own transport. ``status_code`` is the
HTTP-equivalent class of the failure; ``details`` carries structured data
(e.g. which variants lacked stock) for the caller to render.
"""

from __future__ import annotations


class PosError(Exception):
    """Base class for engine errors."""
    status_code = 500

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(PosError, ValueError):
    """400-level input problem, or a malformed tax configuration."""
    status_code = 400


class NotFoundError(PosError, LookupError):
    """Referenced sale, sale item, variant or order does not exist."""
    status_code = 404


class ConflictError(PosError):
    """409-level state machine violation (double cancel, over-return, stale order)."""
    status_code = 409


class InsufficientStockError(ConflictError):
    """Requested quantity exceeds available stock for one or more variants."""


class InternalError(PosError):
    """Persistence or unexpected failure; the transaction was rolled back."""
    status_code = 500
