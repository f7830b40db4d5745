"""Common utility functions."""

from .geo import (
    Coordinates,
    Place,
    calculate_distance,
    is_valid_coordinate_pair,
)

__all__ = [
    "Coordinates",
    "Place",
    "calculate_distance",
    "is_valid_coordinate_pair",
]
