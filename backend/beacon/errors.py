"""Errors raised by beacon session and player operations."""

from shared.dal.gateway import PersistenceError


class BeaconError(Exception):
    """Base class for errors surfaced to callers of the beacon core."""


class NotFound(BeaconError):
    """Referenced session or player does not exist."""


class InvalidInput(BeaconError):
    """Arguments are malformed (empty participant list, unknown template type, ...)."""


class InvalidStateTransition(BeaconError):
    """Operation is not allowed from the record's current status."""


class ValidationError(BeaconError):
    """Outcome payload does not fit the session's template type."""


class ConcurrencyConflict(BeaconError):
    """A conditional update found the record changed since it was read."""


__all__ = [
    "BeaconError",
    "ConcurrencyConflict",
    "InvalidInput",
    "InvalidStateTransition",
    "NotFound",
    "PersistenceError",
    "ValidationError",
]
