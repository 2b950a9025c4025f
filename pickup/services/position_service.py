"""
Position providers for geofenced check-in.

A provider returns the actor's current coordinates or raises PositionError
with a typed reason. Over HTTP the device reports its own position (or the
reason it could not get one) and ReportedPositionProvider replays it.
"""

from abc import ABC, abstractmethod
from typing import Optional

from pickup.utils.exceptions import PositionError, PositionErrorReason
from pickup.utils.geo_utils import Coordinates


class PositionProvider(ABC):
    """Source of the actor's live position."""

    @abstractmethod
    async def current_position(self, player_id: str) -> Coordinates:
        """
        Get the player's current coordinates.

        Raises:
            PositionError: permission denied, position unavailable, or timed out
        """


class ReportedPositionProvider(PositionProvider):
    """Position reported by the client along with the check-in request."""

    def __init__(
        self,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        error: Optional[PositionErrorReason] = None,
    ):
        self.latitude = latitude
        self.longitude = longitude
        self.error = error

    async def current_position(self, player_id: str) -> Coordinates:
        if self.error is not None:
            raise PositionError(self.error)
        if self.latitude is None or self.longitude is None:
            raise PositionError(
                PositionErrorReason.UNAVAILABLE, "No position was reported with the check-in"
            )
        return Coordinates(self.latitude, self.longitude)


class UnavailablePositionProvider(PositionProvider):
    """Default when no provider is configured; every lookup fails as unavailable."""

    async def current_position(self, player_id: str) -> Coordinates:
        raise PositionError(PositionErrorReason.UNAVAILABLE)
