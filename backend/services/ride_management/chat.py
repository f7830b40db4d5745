"""
Per-ride chat between a rider and the driver assigned to the ride.

Messages can be sent while a driver is attached to an active ride; the
history stays readable by both participants afterwards. Messages are
stored first and delivered on commit, like ride events.
"""

import logging
from typing import Iterable, List, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from common.choices import ChatRole, MessageStatus
from rides.models import DRIVER_BUSY_STATUSES, ChatMessage, Ride
from .exceptions import ForbiddenError, InvalidInputError, InvalidStateError
from .ride_lifecycle import get_ride_for_participant

logger = logging.getLogger(__name__)

DRIVER_GREETING = "Hi, I'm on my way!"


def _open_chat(ride_id, user_id: int) -> Ride:
    ride = get_ride_for_participant(ride_id, user_id)
    if ride.status not in DRIVER_BUSY_STATUSES:
        raise InvalidStateError("Chat is only open while a driver is on the ride")
    return ride


def _clean_text(text) -> str:
    if not isinstance(text, str) or not text.strip():
        raise InvalidInputError("Message text is required")
    limit = settings.DISPATCH_CONFIG["CHAT_MAX_LENGTH"]
    text = text.strip()
    if len(text) > limit:
        raise InvalidInputError(f"Messages are limited to {limit} characters")
    return text


def _role_of(ride: Ride, user_id: int) -> str:
    return ChatRole.DRIVER if user_id == ride.driver_id else ChatRole.RIDER


def _store(ride: Ride, sender_id: int, text: str) -> ChatMessage:
    from realtime.notifications import publish_chat_message

    message = ChatMessage.objects.create(
        ride=ride,
        sender_id=sender_id,
        sender_role=_role_of(ride, sender_id),
        text=text,
    )
    transaction.on_commit(lambda: publish_chat_message(message, ride))
    return message


def get_chat_history(ride_id, user_id: int) -> List[ChatMessage]:
    """All messages of a ride, oldest first."""
    ride = get_ride_for_participant(ride_id, user_id)
    return list(ride.messages.order_by("created_at", "id"))


@transaction.atomic
def send_message(ride_id, sender_id: int, text) -> ChatMessage:
    text = _clean_text(text)
    ride = _open_chat(ride_id, sender_id)
    return _store(ride, sender_id, text)


@transaction.atomic
def initiate_chat(ride_id, driver_id: int) -> ChatMessage:
    """
    Driver opens the conversation with a greeting; the rider is told the
    chat has started.
    """
    from realtime.notifications import notify_chat_initiated

    ride = _open_chat(ride_id, driver_id)
    if ride.driver_id != driver_id:
        raise ForbiddenError("Only the assigned driver can start the chat")

    message = _store(ride, driver_id, DRIVER_GREETING)
    transaction.on_commit(lambda: notify_chat_initiated(ride))
    logger.info("Driver %s started chat on ride %s", driver_id, ride.id)
    return message


def mark_read(ride_id, reader_id: int, message_ids: Optional[Iterable[int]] = None) -> List[int]:
    """
    Mark messages from the other participant as read. Without ids, every
    unread message is marked. Returns the ids that changed.
    """
    from realtime.notifications import notify_chat_read

    ride = get_ride_for_participant(ride_id, reader_id)
    unread = ride.messages.filter(status=MessageStatus.SENT).exclude(sender_id=reader_id)
    if message_ids is not None:
        if isinstance(message_ids, (str, bytes)):
            raise InvalidInputError("message_ids must be a list of ids")
        try:
            message_ids = [int(pk) for pk in message_ids]
        except (TypeError, ValueError):
            raise InvalidInputError("message_ids must be a list of ids")
        unread = unread.filter(pk__in=message_ids)

    with transaction.atomic():
        ids = list(unread.select_for_update().values_list("pk", flat=True))
        if not ids:
            return []
        ChatMessage.objects.filter(pk__in=ids).update(status=MessageStatus.READ, read_at=timezone.now())
        transaction.on_commit(lambda: notify_chat_read(ride, reader_id, ids))
    return ids


def set_typing(ride_id, user_id: int, is_typing) -> bool:
    """Relay a typing indicator to the other participant. Nothing is stored."""
    from realtime.notifications import notify_chat_typing

    ride = _open_chat(ride_id, user_id)
    return notify_chat_typing(ride, user_id, bool(is_typing))
