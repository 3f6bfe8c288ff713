"""
Great-circle distance and movement helpers.

All distances are in meters, times in seconds, coordinates in decimal degrees.
"""

import math
from collections.abc import Iterable

EARTH_RADIUS_M = 6371e3


def haversine_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Great-circle distance between two coordinates using the haversine formula.

    Args:
        lat1: Latitude of the first point
        lng1: Longitude of the first point
        lat2: Latitude of the second point
        lng2: Longitude of the second point

    Returns:
        Distance in meters
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    # Rounding can push a fractionally above 1 for antipodal points
    a = min(1.0, max(0.0, a))
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def implied_speed(distance_m: float, elapsed_s: float) -> float:
    """Speed in m/s needed to cover distance_m in elapsed_s; 0 when no time passed."""
    if elapsed_s <= 0:
        return 0.0
    return distance_m / elapsed_s


def coordinate_variance(points: Iterable[tuple[float, float]]) -> float:
    """
    Spread of a set of (lat, lng) points.

    Returns sqrt(var(lat) + var(lng)) using population variance, so a set of
    identical points yields exactly 0. Fewer than two points yields 0.
    """
    coords = list(points)
    if len(coords) < 2:
        return 0.0

    n = len(coords)
    mean_lat = sum(lat for lat, _ in coords) / n
    mean_lng = sum(lng for _, lng in coords) / n
    lat_var = sum((lat - mean_lat) ** 2 for lat, _ in coords) / n
    lng_var = sum((lng - mean_lng) ** 2 for _, lng in coords) / n
    return math.sqrt(lat_var + lng_var)
