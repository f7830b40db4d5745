"""
Dispatch orchestration.

A ride request runs strictly in this order:
validate -> route -> fare -> create -> find eligible drivers -> fan out.
Anything failing before the ride is created leaves no trace; the ride is
never created without a fare.
"""

import logging
from datetime import datetime
from typing import Any, Mapping, Optional, Union

from django.conf import settings
from django.core.cache import cache
from django.db import transaction
from django.utils import timezone

from common.choices import VehicleClass
from common.utils.geo import Place
from drivers import registry
from services.pricing import FareCalculator, FareQuote
from services.ride_management.exceptions import ForbiddenError, InvalidInputError
from services.ride_management.ride_lifecycle import RideResult, create_ride
from services.routing import get_route_client, to_coordinates

logger = logging.getLogger(__name__)

PlaceInput = Union[Place, Mapping[str, Any]]


def _to_place(value: PlaceInput) -> Place:
    if isinstance(value, Place):
        return Place(address=value.address or "", coordinates=to_coordinates(value.coordinates))
    if isinstance(value, Mapping):
        return Place(address=value.get("address") or "", coordinates=to_coordinates(value))
    raise InvalidInputError("A place needs lat and lng")


def get_fare(pickup: PlaceInput, destination: PlaceInput, now: Optional[datetime] = None) -> FareQuote:
    """
    Per-class fare quote for a trip requested at `now`.

    Quotes are cached briefly per coordinate pair and hour of day, since
    the surge multiplier only changes on the hour.
    """
    pickup = _to_place(pickup)
    destination = _to_place(destination)
    now = now or timezone.now()
    if timezone.is_naive(now):
        now = timezone.make_aware(now)
    now = timezone.localtime(now)

    config = settings.DISPATCH_CONFIG
    cache_key = (
        f"fare:{pickup.coordinates.cache_key()}:{destination.coordinates.cache_key()}"
        f":{now.date().isoformat()}T{now.hour:02d}"
    )
    cached = cache.get(cache_key)
    if cached is not None:
        return FareQuote.from_dict(cached)

    estimate = get_route_client().route(pickup.coordinates, destination.coordinates)
    quote = FareCalculator(currency=config["CURRENCY"]).quote(
        distance_meters=estimate.distance_meters,
        duration_seconds=estimate.duration_seconds,
        time_of_request=now,
        route_source=estimate.source,
    )

    cache.set(cache_key, quote.as_dict(), config["FARE_QUOTE_CACHE_TTL"])
    return quote


def request_ride(
    rider,
    pickup: PlaceInput,
    destination: PlaceInput,
    vehicle_class: str,
    now: Optional[datetime] = None,
) -> RideResult:
    """
    Create a ride for `rider` and offer it to every eligible driver.

    Drivers found eligible are notified once the ride is committed; with
    none, the rider is told no drivers are available.
    """
    if getattr(rider, "is_driver", False):
        raise ForbiddenError("Drivers cannot request rides")
    if vehicle_class not in VehicleClass.values:
        raise InvalidInputError(f"Unknown vehicle class: {vehicle_class}")
    pickup = _to_place(pickup)
    destination = _to_place(destination)

    quote = get_fare(pickup, destination, now=now)
    ride = create_ride(rider, pickup, destination, vehicle_class, quote)

    driver_ids = registry.find_eligible(vehicle_class, pickup.coordinates)

    from realtime.notifications import fan_out_new_ride
    transaction.on_commit(lambda: fan_out_new_ride(ride, driver_ids))

    if driver_ids:
        message = "Notifying nearby drivers..."
    else:
        message = "No available drivers found nearby yet."
    logger.info("Ride %s: %d eligible driver(s)", ride.id, len(driver_ids))

    return RideResult(
        ride=ride,
        message=message,
        extra={"driver_candidates": len(driver_ids), "route_source": quote.route_source},
    )
