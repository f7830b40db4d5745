"""Custom exceptions for ride dispatch."""


class DispatchError(Exception):
    """Base class for every typed dispatch failure."""
    status_code = 400
    code = "dispatch_error"
    default_message = "Dispatch request failed"

    def __init__(self, message: str = ""):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class InvalidInputError(DispatchError):
    """Raised for malformed coordinates or fields."""
    status_code = 400
    code = "invalid_input"
    default_message = "Invalid input"


class NotFoundError(DispatchError):
    """Raised when a record is missing or not in the expected state."""
    status_code = 404
    code = "not_found"
    default_message = "Resource not found"


class RideNotFoundError(NotFoundError):
    """Raised when a ride cannot be found, or was already handled."""
    default_message = "Ride not found"


class DriverNotFoundError(NotFoundError):
    """Raised when no driver profile exists for the given id."""
    default_message = "Driver not found"


class AddressNotFoundError(NotFoundError):
    """Raised when geocoding yields no match."""
    default_message = "Address not found"


class ForbiddenError(DispatchError):
    """Raised when the actor may not perform this transition."""
    status_code = 403
    code = "forbidden"
    default_message = "Not allowed"


class InvalidCodeError(DispatchError):
    """Raised when the supplied verification code does not match."""
    status_code = 400
    code = "invalid_code"
    default_message = "Invalid verification code"


class DriverUnavailableError(DispatchError):
    """Raised when a driver is not available to accept rides."""
    status_code = 409
    code = "driver_unavailable"
    default_message = "Driver is not available"


class InvalidTransitionError(DispatchError):
    """Raised when a ride status change is not an edge of the lifecycle."""
    status_code = 409
    code = "invalid_transition"

    def __init__(self, current: str, attempted: str):
        self.current = current
        self.attempted = attempted
        super().__init__(f"Invalid status transition from {current} to {attempted}")


class InvalidStateError(DispatchError):
    """Raised when an operation does not apply to the record's current state."""
    status_code = 409
    code = "invalid_state"
    default_message = "Operation not allowed in the current state"


class ActiveRideExistsError(DispatchError):
    """Raised when user already has an active ride."""
    status_code = 409
    code = "active_ride_exists"
    default_message = "You already have an active ride"


class ServiceUnavailableError(DispatchError):
    """Raised when a downstream provider failed and no fallback exists."""
    status_code = 503
    code = "service_unavailable"
    default_message = "Service unavailable"
