"""
Core ride lifecycle operations.

Every mutation runs in one transaction: the ride row is locked, the edge
is checked against the lifecycle graph, and the row is written with a
conditional UPDATE on (status, version). Driver availability is changed
by the registry inside the same transaction. Notifications are scheduled
with transaction.on_commit, so a delivery failure can never undo a
transition and a rolled-back transition never notifies anybody.
"""

import logging
import secrets
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models import F, Q
from django.utils import timezone

from common.choices import CancelledBy, PaymentMethod, RideStatus, VehicleClass
from common.utils.geo import Place, is_valid_coordinate_pair
from drivers import registry
from rides.models import ACTIVE_STATUSES, TERMINAL_STATUSES, Ride
from .exceptions import (
    ActiveRideExistsError,
    ForbiddenError,
    InvalidCodeError,
    InvalidInputError,
    InvalidStateError,
    RideNotFoundError,
)
from .transitions import assert_transition

User = get_user_model()
logger = logging.getLogger(__name__)

VERIFICATION_CODE_DIGITS = 6


@dataclass
class RideResult:
    """Result object for ride operations."""
    ride: Ride
    message: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)


def generate_verification_code() -> str:
    """Six decimal digits from the OS CSPRNG."""
    return f"{secrets.randbelow(10 ** VERIFICATION_CODE_DIGITS):0{VERIFICATION_CODE_DIGITS}d}"


def _minutes(key: str) -> timedelta:
    return timedelta(minutes=settings.DISPATCH_CONFIG[key])


# ===================== Internal helpers =====================

def _lock_ride(ride_id, **filters) -> Ride:
    """Load and row-lock a ride. Bad ids and misses are both RideNotFoundError."""
    try:
        return Ride.objects.select_for_update().get(pk=ride_id, **filters)
    except (Ride.DoesNotExist, ValidationError, ValueError):
        raise RideNotFoundError(f"Ride {ride_id} not found")


def _transition(ride: Ride, target: str, **changes) -> Ride:
    """
    Move `ride` to `target` with a conditional update against the status
    and version it was read with. Zero rows means somebody else won.
    """
    assert_transition(ride.status, target)

    updated = Ride.objects.filter(
        pk=ride.pk,
        status=ride.status,
        version=ride.version,
    ).update(status=target, version=F("version") + 1, **changes)

    if not updated:
        raise RideNotFoundError("This ride was already handled or cancelled")

    ride.refresh_from_db()
    return ride


def _require_assigned_driver(ride: Ride, driver_id: int) -> None:
    if ride.driver_id is None or ride.driver_id != driver_id:
        raise ForbiddenError("Only the assigned driver can do this")


def _on_commit(fn, *args, **kwargs) -> None:
    transaction.on_commit(lambda: fn(*args, **kwargs))


def _parse_tip(tip) -> Decimal:
    try:
        value = Decimal(str(tip if tip is not None else 0))
    except (InvalidOperation, ValueError):
        raise InvalidInputError("Tip must be a number")
    if not value.is_finite() or value < 0:
        raise InvalidInputError("Tip must be a non-negative amount")
    return value.quantize(Decimal("0.01"))


# ===================== Rider Operations =====================

def check_active_ride(user) -> Optional[Ride]:
    """Check if user has an active ride, as rider or as driver."""
    return Ride.objects.filter(
        Q(rider=user) | Q(driver=user),
        status__in=ACTIVE_STATUSES,
    ).first()


@transaction.atomic
def create_ride(rider, pickup: Place, destination: Place, vehicle_class: str, fare_quote) -> Ride:
    """
    Persist a new ride in `requested` with a fresh verification code.

    The fare comes from an already computed quote; a ride never exists
    without one. Raises ActiveRideExistsError if the rider already has a
    ride in progress.
    """
    if vehicle_class not in VehicleClass.values:
        raise InvalidInputError(f"Unknown vehicle class: {vehicle_class}")
    for place in (pickup, destination):
        if not is_valid_coordinate_pair(place.coordinates.lat, place.coordinates.lng):
            raise InvalidInputError("Invalid coordinates")
    if fare_quote is None:
        raise InvalidInputError("A fare quote is required to create a ride")

    # Serialize concurrent requests from the same rider
    User.objects.select_for_update().filter(pk=rider.pk).first()
    if Ride.objects.filter(rider=rider, status__in=ACTIVE_STATUSES).exists():
        raise ActiveRideExistsError("You already have an active ride")

    ride = Ride.objects.create(
        rider=rider,
        pickup_address=pickup.address,
        pickup_latitude=round(pickup.coordinates.lat, 6),
        pickup_longitude=round(pickup.coordinates.lng, 6),
        destination_address=destination.address,
        destination_latitude=round(destination.coordinates.lat, 6),
        destination_longitude=round(destination.coordinates.lng, 6),
        vehicle_class=vehicle_class,
        status=RideStatus.REQUESTED,
        fare_amount=Decimal(fare_quote.amount_for(vehicle_class)),
        fare_currency=fare_quote.currency,
        surge_multiplier=Decimal(str(fare_quote.surge_multiplier)),
        distance_meters=fare_quote.distance_meters,
        duration_seconds=fare_quote.duration_seconds,
        verification_code=generate_verification_code(),
    )
    ride.refresh_from_db()

    logger.info("Ride %s requested by rider %s (%s, %s)", ride.id, rider.pk, vehicle_class, ride.fare_amount)
    return ride


@transaction.atomic
def cancel_ride(ride_id, actor_id: Optional[int] = None, reason: str = "") -> RideResult:
    """
    Cancel a ride from `requested` or `accepted`.

    The actor must be the rider or the assigned driver; no actor means the
    system. An assigned driver is released in the same transaction and the
    ride drops its driver reference.
    """
    ride = _lock_ride(ride_id)

    if actor_id is None:
        cancelled_by = CancelledBy.SYSTEM
    elif actor_id == ride.rider_id:
        cancelled_by = CancelledBy.RIDER
    elif ride.driver_id is not None and actor_id == ride.driver_id:
        cancelled_by = CancelledBy.DRIVER
    else:
        raise ForbiddenError("Only the rider or the assigned driver can cancel this ride")

    assert_transition(ride.status, RideStatus.CANCELLED)

    previous_driver_id = ride.driver_id
    if previous_driver_id is not None:
        registry.release(previous_driver_id)

    ride = _transition(
        ride,
        RideStatus.CANCELLED,
        driver=None,
        cancelled_at=timezone.now(),
        cancellation_reason=reason or "",
        cancelled_by=cancelled_by,
    )

    logger.info("Ride %s cancelled by %s", ride.id, cancelled_by)

    from realtime.notifications import publish_ride_event
    _on_commit(
        publish_ride_event,
        "ride_cancelled",
        ride,
        f"Ride cancelled by {cancelled_by}.",
        driver_id=previous_driver_id,
        extra={"cancelled_by": cancelled_by, "reason": ride.cancellation_reason},
    )

    return RideResult(
        ride=ride,
        message="Ride cancelled successfully",
        extra={"was_assigned": previous_driver_id is not None},
    )


@transaction.atomic
def rate_ride(ride_id, rider_id: int, rating, review: str = "") -> Ride:
    """Attach a 1-5 rating to a completed ride, once."""
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise InvalidInputError("Rating must be an integer between 1 and 5")

    ride = _lock_ride(ride_id)
    if ride.rider_id != rider_id:
        raise ForbiddenError("Only the rider of this ride can rate it")
    if ride.status != RideStatus.COMPLETED:
        raise InvalidStateError("Only completed rides can be rated")
    if ride.rating is not None:
        raise InvalidStateError("This ride has already been rated")

    updated = Ride.objects.filter(
        pk=ride.pk,
        status=RideStatus.COMPLETED,
        rating__isnull=True,
        version=ride.version,
    ).update(rating=rating, review=review or "", version=F("version") + 1)
    if not updated:
        raise InvalidStateError("This ride has already been rated")

    ride.refresh_from_db()

    from realtime.notifications import notify_new_rating
    _on_commit(notify_new_rating, ride)
    return ride


# ===================== Driver Operations =====================

@transaction.atomic
def accept_ride(ride_id, driver_id: int) -> Ride:
    """
    Assign a requested ride to an available driver.

    Exactly one of several concurrent acceptors wins. The others see
    RideNotFoundError (ride already taken) or DriverUnavailableError
    (driver already busy); their driver claim is rolled back with them.
    """
    ride = _lock_ride(ride_id, status=RideStatus.REQUESTED)

    registry.claim(driver_id)

    now = timezone.now()
    ride = _transition(
        ride,
        RideStatus.ACCEPTED,
        driver_id=driver_id,
        accepted_at=now,
        estimated_arrival_at=now + _minutes("ACCEPT_ETA_MINUTES"),
    )

    logger.info("Ride %s accepted by driver %s", ride.id, driver_id)

    from realtime.notifications import publish_ride_event
    _on_commit(publish_ride_event, "ride_accepted", ride, "Your ride has been accepted! The driver is on the way.")
    return ride


@transaction.atomic
def mark_en_route(ride_id, driver_id: int) -> Ride:
    """Driver heads to pickup: accepted -> on-the-way, refreshing the ETA."""
    ride = _lock_ride(ride_id)
    _require_assigned_driver(ride, driver_id)

    ride = _transition(
        ride,
        RideStatus.ON_THE_WAY,
        estimated_arrival_at=timezone.now() + _minutes("EN_ROUTE_ETA_MINUTES"),
    )

    from realtime.notifications import publish_ride_event
    _on_commit(publish_ride_event, "ride_en_route", ride, "Your driver is on the way.")
    return ride


@transaction.atomic
def start_ride(ride_id, driver_id: int, verification_code) -> Ride:
    """
    Pickup: accepted/on-the-way -> in-progress, once the rider's code
    matches exactly.
    """
    ride = _lock_ride(ride_id)
    _require_assigned_driver(ride, driver_id)
    assert_transition(ride.status, RideStatus.IN_PROGRESS)

    supplied = "" if verification_code is None else str(verification_code)
    if not secrets.compare_digest(supplied.encode("utf-8"), ride.verification_code.encode("utf-8")):
        raise InvalidCodeError("Verification code does not match")

    ride = _transition(ride, RideStatus.IN_PROGRESS, actual_arrival_at=timezone.now())

    logger.info("Ride %s started by driver %s", ride.id, driver_id)

    from realtime.notifications import publish_ride_event
    _on_commit(publish_ride_event, "ride_started", ride, "Your ride has started.")
    return ride


@transaction.atomic
def complete_ride(ride_id, driver_id: int, payment_method: str, tip=0) -> Ride:
    """
    Drop-off: in-progress -> completed. Records settlement, bumps both
    parties' completed ride counters and releases the driver.
    """
    if payment_method not in PaymentMethod.values:
        raise InvalidInputError(f"Unknown payment method: {payment_method}")
    tip = _parse_tip(tip)

    ride = _lock_ride(ride_id)
    _require_assigned_driver(ride, driver_id)

    ride = _transition(
        ride,
        RideStatus.COMPLETED,
        actual_end_at=timezone.now(),
        payment_method=payment_method,
        tip=tip,
    )

    User.objects.filter(pk__in=[ride.rider_id, driver_id]).update(completed_rides=F("completed_rides") + 1)
    registry.release(driver_id)

    logger.info("Ride %s completed by driver %s (%s)", ride.id, driver_id, payment_method)

    from realtime.notifications import publish_ride_event
    _on_commit(
        publish_ride_event,
        "ride_completed",
        ride,
        "Your ride has been completed. Thank you for riding with us!",
    )
    return ride


# ===================== Queries =====================

def get_ride_for_participant(ride_id, user_id: int) -> Ride:
    """A single ride, visible to its rider and its driver only."""
    try:
        ride = Ride.objects.select_related("rider", "driver").get(pk=ride_id)
    except (Ride.DoesNotExist, ValidationError, ValueError):
        raise RideNotFoundError(f"Ride {ride_id} not found")
    if user_id not in (ride.rider_id, ride.driver_id):
        raise ForbiddenError("You are not part of this ride")
    return ride


def get_active_rides(user_id: int) -> List[Ride]:
    """Non-terminal rides where the user is rider or driver."""
    return list(
        Ride.objects.filter(Q(rider_id=user_id) | Q(driver_id=user_id), status__in=ACTIVE_STATUSES)
        .select_related("rider", "driver")
    )


def get_ride_history(user_id: int, limit: Optional[int] = None) -> List[Ride]:
    """Finished rides where the user was rider or driver, newest first."""
    qs = Ride.objects.filter(
        Q(rider_id=user_id) | Q(driver_id=user_id),
        status__in=TERMINAL_STATUSES,
    ).select_related("rider", "driver").order_by("-requested_at")
    if limit:
        qs = qs[:limit]
    return list(qs)
