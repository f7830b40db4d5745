"""
Ride management services.

Handles ride creation, acceptance, progress, cancellation, rating and
the per-ride chat (see .chat).
"""

from .exceptions import (
    DispatchError,
    InvalidInputError,
    NotFoundError,
    RideNotFoundError,
    DriverNotFoundError,
    AddressNotFoundError,
    ForbiddenError,
    InvalidCodeError,
    DriverUnavailableError,
    InvalidTransitionError,
    InvalidStateError,
    ActiveRideExistsError,
    ServiceUnavailableError,
)
from .transitions import ALLOWED_TRANSITIONS, assert_transition, can_transition
from .ride_lifecycle import (
    RideResult,
    create_ride,
    accept_ride,
    mark_en_route,
    start_ride,
    complete_ride,
    cancel_ride,
    rate_ride,
    get_active_rides,
    get_ride_history,
    get_ride_for_participant,
)

__all__ = [
    # Lifecycle
    "RideResult",
    "create_ride",
    "accept_ride",
    "mark_en_route",
    "start_ride",
    "complete_ride",
    "cancel_ride",
    "rate_ride",
    "get_active_rides",
    "get_ride_history",
    "get_ride_for_participant",
    # Transitions
    "ALLOWED_TRANSITIONS",
    "assert_transition",
    "can_transition",
    # Exceptions
    "DispatchError",
    "InvalidInputError",
    "NotFoundError",
    "RideNotFoundError",
    "DriverNotFoundError",
    "AddressNotFoundError",
    "ForbiddenError",
    "InvalidCodeError",
    "DriverUnavailableError",
    "InvalidTransitionError",
    "InvalidStateError",
    "ActiveRideExistsError",
    "ServiceUnavailableError",
]
