"""Fare pricing: per-class fare table and time-of-day surge."""

from .fare_calculator import (
    FARE_TABLE,
    FareCalculator,
    FareQuote,
    FareRate,
    surge_multiplier_for_hour,
)

__all__ = [
    "FARE_TABLE",
    "FareCalculator",
    "FareQuote",
    "FareRate",
    "surge_multiplier_for_hour",
]
