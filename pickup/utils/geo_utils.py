"""
Geospatial helpers: haversine distance, check-in radius and time window checks.
"""

import math
from datetime import datetime, timedelta
from typing import NamedTuple, Optional

from pickup.utils.constants import CHECK_IN_RADIUS_METERS, CHECK_IN_WINDOW_MINUTES
from pickup.utils.datetime_utils import ensure_utc, utcnow
from pickup.utils.rounding import round_half_up

EARTH_RADIUS_METERS = 6_371_000


class Coordinates(NamedTuple):
    """A point on the globe in decimal degrees."""

    latitude: float
    longitude: float


def calculate_distance_meters(a: Coordinates, b: Coordinates) -> float:
    """
    Great-circle distance between two points using the haversine formula.

    Args:
        a: First point
        b: Second point

    Returns:
        Distance in meters (0 for identical points, symmetric in a and b)
    """
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    delta_lat = math.radians(b.latitude - a.latitude)
    delta_lng = math.radians(b.longitude - a.longitude)

    h = (
        math.sin(delta_lat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(delta_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_METERS * c


def is_within_radius(
    current: Coordinates,
    target: Coordinates,
    radius_meters: float = CHECK_IN_RADIUS_METERS,
) -> bool:
    """True iff current is at most radius_meters away from target."""
    return calculate_distance_meters(current, target) <= radius_meters


def _window_bounds(game_start: datetime, window_minutes: float):
    start = ensure_utc(game_start)
    window = timedelta(minutes=window_minutes)
    return start - window, start + window


def is_within_window(
    game_start: datetime,
    window_minutes: float = CHECK_IN_WINDOW_MINUTES,
    now: Optional[datetime] = None,
) -> bool:
    """
    Check whether now falls inside [game_start - window, game_start + window].

    Args:
        game_start: Scheduled start of the game
        window_minutes: Minutes before/after start the window spans
        now: Current instant (defaults to utcnow())
    """
    now = ensure_utc(now) if now is not None else utcnow()
    opens_at, closes_at = _window_bounds(game_start, window_minutes)
    return opens_at <= now <= closes_at


def has_window_opened(
    game_start: datetime,
    window_minutes: float = CHECK_IN_WINDOW_MINUTES,
    now: Optional[datetime] = None,
) -> bool:
    """True once now has reached game_start - window (stays true after it closes)."""
    now = ensure_utc(now) if now is not None else utcnow()
    opens_at, _ = _window_bounds(game_start, window_minutes)
    return now >= opens_at


def time_until_window_opens(
    game_start: datetime,
    window_minutes: float = CHECK_IN_WINDOW_MINUTES,
    now: Optional[datetime] = None,
) -> int:
    """
    Milliseconds until the check-in window opens, or 0 if it already has.
    """
    now = ensure_utc(now) if now is not None else utcnow()
    opens_at, _ = _window_bounds(game_start, window_minutes)
    remaining = (opens_at - now).total_seconds() * 1000
    return max(0, round_half_up(remaining))


def format_distance(meters: float) -> str:
    """Format a distance for display: "350m" below 1km, otherwise "1.2km"."""
    if meters < 1000:
        return f"{round_half_up(meters)}m"
    return f"{meters / 1000:.1f}km"
