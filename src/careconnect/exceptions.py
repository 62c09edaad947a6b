"""Custom exception hierarchy for the CareConnect package."""

from __future__ import annotations


class CareConnectError(Exception):
    """Base class for all CareConnect specific errors."""


class ValidationError(CareConnectError):
    """Raised when input is malformed or semantically invalid."""


class DuplicateRecordError(ValidationError):
    """Raised when a record with the same identifier already exists."""


class InvalidStateError(CareConnectError):
    """Raised when a transition is attempted from a non-pending state."""


class PreconditionError(CareConnectError):
    """Raised when a payment proof cannot be attached to its submission."""


class NotFoundError(CareConnectError):
    """Raised when a record lookup fails."""


class AuthorizationError(CareConnectError):
    """Raised when the caller's role does not allow the operation."""
