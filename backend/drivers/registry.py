"""
Driver availability registry.

Single writer of DriverProfile availability, position and heartbeat.
Every write is a conditional UPDATE so concurrent callers cannot lose
each other's changes:

- claim/release run inside the caller's ride transaction, so a driver
  flips to unavailable exactly when a ride commits as accepted and back
  when it commits as completed or cancelled.
- location and heartbeat updates are last-write-wins on the timestamp;
  an update older than what is stored is discarded.

`on_duty` is the driver's own intent to work. `is_available` means
"can be offered a ride right now" and is only true while on duty and
not attached to an active ride.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from django.conf import settings
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from common.choices import VehicleClass
from common.utils.geo import Coordinates, calculate_distance, is_valid_coordinate_pair
from drivers.models import DriverProfile
from rides.models import DRIVER_BUSY_STATUSES, Ride
from services.ride_management.exceptions import (
    DriverNotFoundError,
    DriverUnavailableError,
    InvalidInputError,
    InvalidStateError,
)

logger = logging.getLogger(__name__)

# One degree of latitude in kilometres, for the bounding-box prefilter
KM_PER_DEGREE = 111.32


def _config(key):
    return settings.DISPATCH_CONFIG[key]


def _freshness(freshness: Optional[timedelta]) -> timedelta:
    if freshness is None:
        return timedelta(seconds=_config("DRIVER_FRESHNESS_SECONDS"))
    return freshness


def _missing_or(driver_id: int, error: Exception):
    """Raise DriverNotFoundError if the profile is gone, else the given error."""
    if not DriverProfile.objects.filter(user_id=driver_id).exists():
        raise DriverNotFoundError(f"No driver profile for user {driver_id}")
    raise error


def _clamp(timestamp: Optional[datetime]) -> datetime:
    """Client clocks may run ahead; never store a time in the future."""
    now = timezone.now()
    return now if timestamp is None or timestamp > now else timestamp


def has_active_ride(driver_id: int) -> bool:
    return Ride.objects.filter(driver_id=driver_id, status__in=DRIVER_BUSY_STATUSES).exists()


def get_profile(driver_id: int) -> DriverProfile:
    try:
        return DriverProfile.objects.select_related("user").get(user_id=driver_id)
    except DriverProfile.DoesNotExist:
        raise DriverNotFoundError(f"No driver profile for user {driver_id}")


# ---------------------- Driver-initiated ----------------------

@transaction.atomic
def set_available(driver_id: int, available: bool) -> DriverProfile:
    """
    Go on or off duty.

    Going on duty is refused while the driver still holds an active ride;
    the ride's own completion or cancellation releases them.
    """
    try:
        profile = DriverProfile.objects.select_for_update().get(user_id=driver_id)
    except DriverProfile.DoesNotExist:
        raise DriverNotFoundError(f"No driver profile for user {driver_id}")

    if available and has_active_ride(driver_id):
        raise InvalidStateError("Finish or cancel your current ride before going available")

    profile.on_duty = available
    profile.is_available = available
    profile.save(update_fields=["on_duty", "is_available"])

    logger.info("Driver %s set %s", driver_id, "available" if available else "offline")
    return profile


def update_location(driver_id: int, coordinates: Coordinates, timestamp: Optional[datetime] = None) -> bool:
    """
    Record a position report. Returns False when the report is older than
    the stored one and was discarded.
    """
    if not is_valid_coordinate_pair(coordinates.lat, coordinates.lng):
        raise InvalidInputError("Invalid coordinates")
    timestamp = _clamp(timestamp)

    updated = DriverProfile.objects.filter(user_id=driver_id).filter(
        Q(last_seen__isnull=True) | Q(last_seen__lt=timestamp)
    ).update(
        current_latitude=round(coordinates.lat, 6),
        current_longitude=round(coordinates.lng, 6),
        last_seen=timestamp,
    )
    if updated:
        return True

    if not DriverProfile.objects.filter(user_id=driver_id).exists():
        raise DriverNotFoundError(f"No driver profile for user {driver_id}")
    logger.debug("Discarded out-of-order location for driver %s at %s", driver_id, timestamp)
    return False


def heartbeat(driver_id: int, timestamp: Optional[datetime] = None) -> bool:
    """Refresh last_seen without moving the driver."""
    timestamp = _clamp(timestamp)
    updated = DriverProfile.objects.filter(user_id=driver_id).filter(
        Q(last_seen__isnull=True) | Q(last_seen__lt=timestamp)
    ).update(last_seen=timestamp)
    if updated:
        return True
    if not DriverProfile.objects.filter(user_id=driver_id).exists():
        raise DriverNotFoundError(f"No driver profile for user {driver_id}")
    return False


# ---------------------- Ride-initiated ----------------------

def claim(driver_id: int) -> None:
    """
    Take an available driver off the market for a ride.

    Must run inside the ride transaction that assigns the driver.
    """
    updated = DriverProfile.objects.filter(user_id=driver_id, is_available=True).update(is_available=False)
    if not updated:
        _missing_or(driver_id, DriverUnavailableError())


def release(driver_id: int) -> None:
    """
    Return a driver to the market after their ride ended.

    Must run inside the ride transaction that ends the ride. A driver who
    went off duty in the meantime stays unavailable.
    """
    DriverProfile.objects.filter(user_id=driver_id, on_duty=True).update(is_available=True)


# ---------------------- Queries ----------------------

def find_eligible(
    vehicle_class: str,
    origin: Coordinates,
    radius_km: Optional[float] = None,
    freshness: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> List[int]:
    """
    User ids of drivers that may be offered a ride at `origin`.

    Eligible means available, of the requested class, seen within the
    freshness window, and within `radius_km` of the origin. Order is
    unspecified.
    """
    if vehicle_class not in VehicleClass.values:
        raise InvalidInputError(f"Unknown vehicle class: {vehicle_class}")
    if not is_valid_coordinate_pair(origin.lat, origin.lng):
        raise InvalidInputError("Invalid coordinates")

    radius_km = _config("SEARCH_RADIUS_KM") if radius_km is None else radius_km
    cutoff = (now or timezone.now()) - _freshness(freshness)

    lat_delta = radius_km / KM_PER_DEGREE
    candidates = DriverProfile.objects.filter(
        is_available=True,
        vehicle_class=vehicle_class,
        last_seen__gte=cutoff,
        current_latitude__isnull=False,
        current_longitude__isnull=False,
        current_latitude__gte=origin.lat - lat_delta,
        current_latitude__lte=origin.lat + lat_delta,
    ).values_list("user_id", "current_latitude", "current_longitude")

    radius_m = radius_km * 1000
    return [
        user_id
        for user_id, lat, lng in candidates
        if calculate_distance(origin.lat, origin.lng, lat, lng) <= radius_m
    ]


# ---------------------- Supervision ----------------------

def expire_stale(now: Optional[datetime] = None, freshness: Optional[timedelta] = None) -> int:
    """
    Take drivers off duty whose heartbeat is older than the freshness window.

    Drivers on an active ride keep their ride; they are only taken off duty
    so they are not released back to the market when it ends.
    """
    cutoff = (now or timezone.now()) - _freshness(freshness)
    expired = DriverProfile.objects.filter(on_duty=True).filter(
        Q(last_seen__isnull=True) | Q(last_seen__lt=cutoff)
    ).update(on_duty=False, is_available=False)

    if expired:
        logger.info("Expired %d stale driver(s) (last seen before %s)", expired, cutoff)
    return expired


def _busy_driver_ids(driver_ids=None) -> set:
    """Drivers attached to a ride in an accepted or later active status."""
    rides = Ride.objects.filter(status__in=DRIVER_BUSY_STATUSES, driver__isnull=False)
    if driver_ids is not None:
        rides = rides.filter(driver_id__in=driver_ids)
    return set(rides.values_list("driver_id", flat=True))


def _lock_profiles(**filters) -> List[int]:
    """Row-lock the matching profiles and return their user ids."""
    return list(
        DriverProfile.objects.select_for_update()
        .filter(**filters)
        .order_by("user_id")
        .values_list("user_id", flat=True)
    )


def reconcile(now: Optional[datetime] = None, freshness: Optional[timedelta] = None) -> Dict[str, int]:
    """
    Re-derive availability from ride state.

    Drivers attached to an active ride are forced unavailable; on-duty
    drivers with a fresh heartbeat and no active ride are released.
    Idempotent.

    Profiles are locked before their rides are read, so a concurrent
    accept, completion or cancellation has committed by the time the
    driver's rides are checked.
    """
    cutoff = (now or timezone.now()) - _freshness(freshness)

    with transaction.atomic():
        available = _lock_profiles(user_id__in=list(_busy_driver_ids()), is_available=True)
        busy = _busy_driver_ids(available)
        locked = DriverProfile.objects.filter(user_id__in=busy).update(is_available=False) if busy else 0

        candidates = _lock_profiles(on_duty=True, is_available=False, last_seen__gte=cutoff)
        busy = _busy_driver_ids(candidates)
        idle = [driver_id for driver_id in candidates if driver_id not in busy]
        released = DriverProfile.objects.filter(user_id__in=idle).update(is_available=True) if idle else 0

    if locked or released:
        logger.warning("Reconciled driver availability: %d locked, %d released", locked, released)
    return {"locked": locked, "released": released}
