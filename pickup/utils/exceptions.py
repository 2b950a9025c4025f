"""
Exception taxonomy for game lifecycle and rating operations.

Every error carries the HTTP status the API layer answers with, so route
handlers can translate them without a lookup table.
"""

import enum
from typing import Optional

from pickup.utils.geo_utils import format_distance


class GameError(Exception):
    """Base exception for all lifecycle errors."""

    status_code = 400


class ValidationError(GameError):
    """Malformed input: bad team partition, non-integer score, past start time."""

    status_code = 400


class StateError(GameError):
    """Operation is not valid for the game's current status."""

    status_code = 409


class AuthorizationError(GameError):
    """Actor lacks the role the operation requires (e.g. host-only)."""

    status_code = 403


class CapacityError(GameError):
    """Game is full."""

    status_code = 409


class EligibilityError(GameError):
    """Actor's rating is below the game's minimum rating."""

    status_code = 403

    def __init__(self, rating: int, min_rating: int):
        super().__init__(
            f"Rating {rating} does not meet this game's minimum rating of {min_rating}"
        )
        self.rating = rating
        self.min_rating = min_rating


class GeofenceError(GameError):
    """Actor is outside the check-in radius."""

    status_code = 403

    def __init__(self, distance_meters: float, radius_meters: float):
        super().__init__(
            f"You must be within {format_distance(radius_meters)} of the game location "
            f"to check in. You are {format_distance(distance_meters)} away."
        )
        self.distance_meters = distance_meters
        self.radius_meters = radius_meters


class WindowError(GameError):
    """Current time is outside the check-in window."""

    status_code = 403


class PreconditionError(GameError):
    """Operation prerequisites are not met (e.g. nobody checked in)."""

    status_code = 412


class TransactionConflictError(GameError):
    """A concurrent write won the race. Safe to retry with identical inputs."""

    status_code = 409


class NotFoundError(GameError):
    """Referenced game or player does not exist."""

    status_code = 404


class CorruptRecordError(GameError):
    """A persisted record could not be decoded into a domain value."""

    status_code = 500


class PositionErrorReason(str, enum.Enum):
    """Why the device position could not be obtained."""

    PERMISSION_DENIED = "permission_denied"
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"


class PositionError(GameError):
    """The position provider could not produce coordinates."""

    status_code = 422

    def __init__(self, reason: PositionErrorReason, message: Optional[str] = None):
        super().__init__(message or f"Could not get your location ({reason.value})")
        self.reason = reason
