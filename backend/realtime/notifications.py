"""
Notification helpers for sending WebSocket messages to connected clients.

Groups:
- user_<id>   every connection of a user
- driver_<id> every driver connection of a driver

Each participant is addressed through exactly one personal group, so a
connection receives each event once.

Delivery is fire-and-forget: callers schedule these after the ride
transition commits, and a failure for one recipient is logged and never
stops delivery to the others.
"""

import logging
from typing import Any, Dict, Iterable, Optional

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer

logger = logging.getLogger(__name__)


# ---------------------- Group names ----------------------

def user_group(user_id) -> str:
    return f"user_{user_id}"


def driver_group(driver_id) -> str:
    return f"driver_{driver_id}"


# ---------------------- Low-level send ----------------------

def _send(group: str, payload: Dict[str, Any]) -> bool:
    """Send one message to one group. Returns False instead of raising."""
    channel_layer = get_channel_layer()
    if channel_layer is None:
        return False

    try:
        logger.debug("WS -> %s: %s", group, payload.get("type"))
        async_to_sync(channel_layer.group_send)(group, payload)
        return True
    except Exception:
        logger.exception("Failed to deliver %s to %s", payload.get("type"), group)
        return False


def _ride_payload(event_type: str, ride, for_rider: bool, message: str, extra: Optional[Dict[str, Any]]):
    from rides.serializers import RideSerializer, RiderRideSerializer

    serializer = RiderRideSerializer if for_rider else RideSerializer
    payload = {
        "type": event_type,
        "ride_id": str(ride.id),
        "status": ride.status,
        "ride_data": serializer(ride).data,
        **(extra or {}),
    }
    if message:
        payload["message"] = message
    return payload


# ---------------------- Ride Event Notifications ----------------------

def notify_rider_event(event_type: str, ride, message: str = "", extra: Dict[str, Any] = None) -> bool:
    """
    Send ride-related event to the rider through: user_<rider_id>
    """
    try:
        payload = _ride_payload(event_type, ride, True, message, extra)
    except Exception:
        logger.exception("Failed to build %s for rider of ride %s", event_type, ride.id)
        return False
    return _send(user_group(ride.rider_id), payload)


def notify_driver_event(
    event_type: str,
    ride,
    driver_id: Optional[int],
    message: str = "",
    extra: Dict[str, Any] = None,
) -> bool:
    """
    Send an event to a specific driver using their personal group: driver_<driver_id>
    """
    if not driver_id:
        return False
    try:
        payload = _ride_payload(event_type, ride, False, message, {"driver_id": driver_id, **(extra or {})})
    except Exception:
        logger.exception("Failed to build %s for driver %s", event_type, driver_id)
        return False
    return _send(driver_group(driver_id), payload)


def publish_ride_event(
    event_type: str,
    ride,
    message: str = "",
    driver_id: Optional[int] = None,
    extra: Dict[str, Any] = None,
) -> int:
    """
    Deliver a ride state change to the rider and the driver (if any).

    `driver_id` overrides the ride's driver, for events where the ride no
    longer references the driver it had (cancellation). Returns the number
    of groups reached.
    """
    driver_id = driver_id or ride.driver_id
    delivered = 0
    delivered += notify_rider_event(event_type, ride, message, extra)
    delivered += notify_driver_event(event_type, ride, driver_id, message, extra)
    return delivered


def fan_out_new_ride(ride, driver_ids: Iterable[int]) -> int:
    """
    Offer a freshly requested ride to every eligible driver, then tell the
    rider how many drivers were asked.

    With nobody to offer it to, the rider gets a no_drivers_available notice
    instead. Returns the number of drivers reached.
    """
    driver_ids = list(driver_ids)
    if not driver_ids:
        notify_rider_event(
            "no_drivers_available",
            ride,
            "No drivers found nearby. Please try again later.",
        )
        return 0

    delivered = 0
    for driver_id in driver_ids:
        delivered += notify_driver_event("new_ride", ride, driver_id, "New ride request nearby.")

    notify_rider_event(
        "ride_requested",
        ride,
        "Looking for a driver.",
        {"drivers_notified": delivered},
    )
    logger.info("Ride %s offered to %d/%d driver(s)", ride.id, delivered, len(driver_ids))
    return delivered


def notify_new_rating(ride) -> bool:
    """Tell the driver a completed ride was rated."""
    return notify_driver_event(
        "new_rating",
        ride,
        ride.driver_id,
        extra={"rating": ride.rating, "review": ride.review},
    )


# ---------------------- Driver Location ----------------------

def publish_driver_location(driver_id: int, lat: float, lng: float) -> int:
    """
    Forward a driver's position to the rider of their active ride.
    Drivers without an active ride reach nobody.
    """
    from rides.models import DRIVER_BUSY_STATUSES, Ride

    ride = Ride.objects.filter(driver_id=driver_id, status__in=DRIVER_BUSY_STATUSES).only(
        "id", "rider", "status"
    ).first()
    if ride is None:
        return 0

    payload = {
        "type": "driver_location",
        "ride_id": str(ride.id),
        "driver_id": driver_id,
        "location": {"lat": lat, "lng": lng},
    }
    return int(_send(user_group(ride.rider_id), payload))


# ---------------------- Ride Chat ----------------------

def _chat_group(ride, user_id) -> Optional[str]:
    """Personal group of one chat participant."""
    if user_id == ride.rider_id:
        return user_group(user_id)
    if user_id and user_id == ride.driver_id:
        return driver_group(user_id)
    return None


def _other_participant(ride, user_id):
    return ride.driver_id if user_id == ride.rider_id else ride.rider_id


def publish_chat_message(message, ride) -> int:
    """
    Deliver a stored chat message to both participants, so every open
    socket of the sender sees it too. Returns the number of groups reached.
    """
    from rides.serializers import ChatMessageSerializer

    try:
        payload = {
            "type": "chat_message",
            "ride_id": str(ride.id),
            "chat": ChatMessageSerializer(message).data,
        }
    except Exception:
        logger.exception("Failed to build chat message %s", message.pk)
        return 0

    delivered = 0
    for user_id in (ride.rider_id, ride.driver_id):
        group = _chat_group(ride, user_id)
        if group:
            delivered += _send(group, payload)
    return delivered


def notify_chat_typing(ride, user_id: int, is_typing: bool) -> bool:
    group = _chat_group(ride, _other_participant(ride, user_id))
    if group is None:
        return False
    return _send(group, {
        "type": "chat_typing",
        "ride_id": str(ride.id),
        "user_id": user_id,
        "is_typing": is_typing,
    })


def notify_chat_read(ride, reader_id: int, message_ids) -> bool:
    """Tell the sender which of their messages were read."""
    group = _chat_group(ride, _other_participant(ride, reader_id))
    if group is None:
        return False
    return _send(group, {
        "type": "chat_read",
        "ride_id": str(ride.id),
        "reader_id": reader_id,
        "message_ids": list(message_ids),
    })


def notify_chat_initiated(ride) -> bool:
    return _send(user_group(ride.rider_id), {
        "type": "chat_initiated",
        "ride_id": str(ride.id),
        "driver_id": ride.driver_id,
    })
