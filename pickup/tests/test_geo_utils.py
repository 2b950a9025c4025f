"""
Tests for geospatial helpers - distance, radius, window and formatting.
"""
from datetime import datetime, timedelta

import pytest
import pytz

from pickup.utils.geo_utils import (
    Coordinates,
    calculate_distance_meters,
    format_distance,
    has_window_opened,
    is_within_radius,
    is_within_window,
    time_until_window_opens,
)

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=pytz.UTC)

NEW_YORK = Coordinates(40.7128, -74.0060)
LOS_ANGELES = Coordinates(34.0522, -118.2437)
LONDON = Coordinates(51.5074, -0.1278)


@pytest.mark.parametrize("point", [NEW_YORK, LOS_ANGELES, Coordinates(0, 0), Coordinates(-89.9, 179.9)])
def test_distance_to_self_is_zero(point):
    assert calculate_distance_meters(point, point) == 0


@pytest.mark.parametrize("a,b", [(NEW_YORK, LOS_ANGELES), (LONDON, NEW_YORK), (Coordinates(0, 0), Coordinates(-10, 170))])
def test_distance_is_symmetric(a, b):
    assert calculate_distance_meters(a, b) == pytest.approx(calculate_distance_meters(b, a))


def test_distance_known_values():
    """One degree of latitude on a 6,371km sphere is ~111,195m."""
    assert calculate_distance_meters(Coordinates(0, 0), Coordinates(1, 0)) == pytest.approx(111_195, abs=1)
    # New York to Los Angeles is roughly 3,936km
    assert calculate_distance_meters(NEW_YORK, LOS_ANGELES) == pytest.approx(3_936_000, abs=10_000)


def test_is_within_radius():
    nearby = Coordinates(40.7130, -74.0062)
    far = Coordinates(40.7228, -74.0060)  # ~1.1km north

    assert is_within_radius(nearby, NEW_YORK)
    assert not is_within_radius(far, NEW_YORK)
    assert is_within_radius(far, NEW_YORK, radius_meters=2000)


def test_is_within_radius_boundary_is_inclusive():
    target = Coordinates(0, 0)
    point = Coordinates(1, 0)
    distance = calculate_distance_meters(point, target)
    assert is_within_radius(point, target, radius_meters=distance)
    assert not is_within_radius(point, target, radius_meters=distance - 0.01)


def test_check_in_window():
    """20 minutes before start is outside a 15 minute window but inside a 30 minute one."""
    start = NOW + timedelta(minutes=20)
    assert not is_within_window(start, 15, now=NOW)
    assert is_within_window(start, 30, now=NOW)


def test_check_in_window_bounds_are_inclusive():
    start = NOW + timedelta(minutes=15)
    assert is_within_window(start, 15, now=NOW)
    assert is_within_window(NOW - timedelta(minutes=15), 15, now=NOW)
    assert not is_within_window(NOW - timedelta(minutes=16), 15, now=NOW)


def test_has_window_opened_stays_true_after_close():
    assert not has_window_opened(NOW + timedelta(minutes=20), 15, now=NOW)
    assert has_window_opened(NOW + timedelta(minutes=10), 15, now=NOW)
    assert has_window_opened(NOW - timedelta(hours=2), 15, now=NOW)


def test_time_until_window_opens():
    assert time_until_window_opens(NOW + timedelta(minutes=20), 15, now=NOW) == 5 * 60 * 1000
    assert time_until_window_opens(NOW + timedelta(minutes=10), 15, now=NOW) == 0
    assert time_until_window_opens(NOW - timedelta(minutes=30), 15, now=NOW) == 0


def test_window_accepts_naive_datetimes_as_utc():
    naive_start = (NOW + timedelta(minutes=5)).replace(tzinfo=None)
    assert is_within_window(naive_start, 15, now=NOW)


def test_format_distance():
    assert format_distance(0) == "0m"
    assert format_distance(350.4) == "350m"
    assert format_distance(999) == "999m"
    assert format_distance(500.5) == "501m"
    assert format_distance(2.5) == "3m"
    assert format_distance(1000) == "1.0km"
    assert format_distance(1234) == "1.2km"
    assert format_distance(15_750) == "15.8km"
