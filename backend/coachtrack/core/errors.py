"""
Error taxonomy for the processing tracker.

Stores raise these; the tracker converts them into ``TrackerResult`` errors so
nothing propagates into the presentation layer.
"""
from typing import Literal

ErrorKind = Literal[
    "authentication_required",
    "not_found",
    "persistence_error",
    "validation_error",
]


class TrackerError(Exception):
    """Base class for tracker failures."""

    kind: ErrorKind = "persistence_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthenticationRequired(TrackerError):
    """Operation attempted without an acting user."""

    kind: ErrorKind = "authentication_required"

    def __init__(self, message: str = "An authenticated user is required"):
        super().__init__(message)


class NotFoundError(TrackerError):
    """Target record does not exist or is not owned by the acting user."""

    kind: ErrorKind = "not_found"


class PersistenceError(TrackerError):
    """The underlying store could not read or commit."""

    kind: ErrorKind = "persistence_error"


class ValidationError(TrackerError):
    """Request is well-formed but not allowed in the record's current state."""

    kind: ErrorKind = "validation_error"
