"""
Geographic utility functions.

This module provides core geospatial calculations used throughout the application.
"""

import math
from dataclasses import dataclass
from math import radians, cos, sin, asin, sqrt
from numbers import Real

EARTH_RADIUS_METERS = 6371000


@dataclass(frozen=True)
class Coordinates:
    """A validated latitude/longitude pair."""
    lat: float
    lng: float

    def cache_key(self) -> str:
        return f"{self.lat:.6f},{self.lng:.6f}"


@dataclass(frozen=True)
class Place:
    """A named point: pickup or destination of a ride."""
    address: str
    coordinates: Coordinates


def is_valid_coordinate_pair(lat, lng) -> bool:
    """
    Check that lat/lng are finite real numbers inside Earth ranges.

    Booleans are rejected even though they are ints in Python.
    """
    for value in (lat, lng):
        if isinstance(value, bool) or not isinstance(value, Real):
            return False
        if not math.isfinite(value):
            return False
    return -90 <= lat <= 90 and -180 <= lng <= 180


def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate distance between two points in meters using Haversine formula.
    
    Args:
        lat1: Latitude of first point
        lon1: Longitude of first point
        lat2: Latitude of second point
        lon2: Longitude of second point
    
    Returns:
        Distance in meters
    """
    lat1, lon1, lat2, lon2 = map(radians, [float(lat1), float(lon1), float(lat2), float(lon2)])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    c = 2 * asin(sqrt(a))
    return c * EARTH_RADIUS_METERS
