"""
Fare estimation.

A pure function of distance, duration, vehicle class and time of day:
identical inputs always produce identical output. No I/O, no clock reads.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Mapping, Optional

from common.choices import VehicleClass


@dataclass(frozen=True)
class FareRate:
    """One row of the fare table."""
    base: float
    per_km: float
    per_minute: float


FARE_TABLE: Mapping[str, FareRate] = {
    VehicleClass.ECONOMY: FareRate(base=20, per_km=8, per_minute=1.5),
    VehicleClass.STANDARD: FareRate(base=30, per_km=10, per_minute=2),
    VehicleClass.PREMIUM: FareRate(base=50, per_km=15, per_minute=3),
}

PEAK_SURGE = 1.5
LATE_NIGHT_SURGE = 1.3
NO_SURGE = 1.0

MIN_DISTANCE_KM = 1.0
MIN_DURATION_MIN = 5.0

MIN_FARE_FACTOR = 2
MAX_FARE_FACTOR = 10
FARE_STEP = 10


@dataclass(frozen=True)
class FareQuote:
    """Ephemeral per-request quote: one amount per vehicle class."""
    amounts: Dict[str, int]
    distance_meters: float
    duration_seconds: float
    surge_multiplier: float
    currency: str = "USD"
    route_source: str = "provider"

    def amount_for(self, vehicle_class: str) -> int:
        return self.amounts[vehicle_class]

    def as_dict(self) -> Dict[str, object]:
        return {
            "fares": dict(self.amounts),
            "currency": self.currency,
            "distance_meters": self.distance_meters,
            "duration_seconds": self.duration_seconds,
            "surge_multiplier": self.surge_multiplier,
            "route_source": self.route_source,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "FareQuote":
        return cls(
            amounts=dict(data["fares"]),
            distance_meters=data["distance_meters"],
            duration_seconds=data["duration_seconds"],
            surge_multiplier=data["surge_multiplier"],
            currency=data.get("currency", "USD"),
            route_source=data.get("route_source", "provider"),
        )


def surge_multiplier_for_hour(hour: int) -> float:
    """
    Time-of-day surge: 1.5x in the 07-09 and 17-19 peaks,
    1.3x late at night (22-23 and 00-05), 1.0x otherwise.
    """
    if 7 <= hour <= 9 or 17 <= hour <= 19:
        return PEAK_SURGE
    if hour >= 22 or hour <= 5:
        return LATE_NIGHT_SURGE
    return NO_SURGE


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def fare_for_class(
    rate: FareRate,
    distance_meters: float,
    duration_seconds: float,
    surge: float,
) -> int:
    """Apply minimums, the formula, the [2x, 10x] base clamp and the 10-unit step."""
    distance_km = max(distance_meters / 1000.0, MIN_DISTANCE_KM)
    duration_min = max(duration_seconds / 60.0, MIN_DURATION_MIN)

    raw = _round_half_up((rate.base + distance_km * rate.per_km + duration_min * rate.per_minute) * surge)

    clamped = min(max(raw, rate.base * MIN_FARE_FACTOR), rate.base * MAX_FARE_FACTOR)
    return _round_half_up(clamped / FARE_STEP) * FARE_STEP


class FareCalculator:
    """Produces bounded per-class fares from a route estimate and request time."""

    def __init__(self, table: Optional[Mapping[str, FareRate]] = None, currency: str = "USD"):
        self.table = dict(table or FARE_TABLE)
        self.currency = currency

    def quote(
        self,
        distance_meters: float,
        duration_seconds: float,
        time_of_request: datetime,
        route_source: str = "provider",
    ) -> FareQuote:
        if distance_meters < 0 or duration_seconds < 0:
            from services.ride_management.exceptions import InvalidInputError
            raise InvalidInputError("Distance and duration must be non-negative")

        surge = surge_multiplier_for_hour(time_of_request.hour)
        amounts = {
            str(vehicle_class): fare_for_class(rate, distance_meters, duration_seconds, surge)
            for vehicle_class, rate in self.table.items()
        }

        return FareQuote(
            amounts=amounts,
            distance_meters=distance_meters,
            duration_seconds=duration_seconds,
            surge_multiplier=surge,
            currency=self.currency,
            route_source=route_source,
        )
