"""Shared websocket plumbing: authentication, personal groups, typed errors."""

import logging
from typing import Dict, Any, Set

from channels.generic.websocket import AsyncJsonWebsocketConsumer

from realtime.notifications import user_group
from services.ride_management.exceptions import DispatchError

logger = logging.getLogger(__name__)

# Application close code for unauthenticated sockets
CLOSE_UNAUTHENTICATED = 4401


class BaseConsumer(AsyncJsonWebsocketConsumer):
    """
    Every connection joins user_<id>, so ride events addressed to the user
    reach all of their open sockets. DispatchError raised by a handler is
    answered with {"type": "error", "code", "message"} and the socket stays
    open.

    Subclasses implement on_connect() and handle_message(msg_type, data).
    """

    joined_groups: Set[str] = frozenset()

    async def connect(self):
        self.user = self.scope.get("user")
        if self.user is None or self.user.is_anonymous or not self.user.is_active:
            await self.close(code=CLOSE_UNAUTHENTICATED)
            return

        self.user_id = self.user.id
        self.role = self.user.role
        self.joined_groups = set()

        await self._join_group(user_group(self.user_id))
        await self.accept()
        await self.on_connect()

    async def on_connect(self):
        await self.send_json({
            "type": "connection_established",
            "user_id": self.user_id,
            "role": self.role,
        })

    async def disconnect(self, close_code):
        """Leave every joined group, then let the subclass clean up."""
        if not self.joined_groups:
            return
        try:
            for group in list(self.joined_groups):
                await self._leave_group(group)
            await self.on_disconnect(close_code)
        except Exception:
            logger.exception("Error during disconnect for user %s", getattr(self, 'user_id', 'unknown'))

    async def on_disconnect(self, close_code):
        """Override in subclass for custom disconnect logic."""
        pass

    async def receive_json(self, data: Dict[str, Any]):
        """Route incoming messages to appropriate handlers."""
        msg_type = data.get("type") if isinstance(data, dict) else None
        if not msg_type:
            await self.send_error("Message type is required", code="invalid_input")
            return

        try:
            await self.handle_message(msg_type, data)
        except DispatchError as e:
            await self.send_error(e.message, code=e.code)
        except Exception:
            logger.exception("Error handling message type %s", msg_type)
            await self.send_error(f"Error processing {msg_type}")

    async def handle_message(self, msg_type: str, data: Dict[str, Any]):
        """Override in subclass to handle specific message types."""
        await self.send_error(f"Unknown message type: {msg_type}", code="invalid_input")

    # ---------------------- Group Management Helpers ----------------------

    async def _join_group(self, group_name: str):
        """Join a channel group and track it."""
        await self.channel_layer.group_add(group_name, self.channel_name)
        self.joined_groups.add(group_name)

    async def _leave_group(self, group_name: str):
        """Leave a channel group and untrack it."""
        await self.channel_layer.group_discard(group_name, self.channel_name)
        self.joined_groups.discard(group_name)

    # ---------------------- Response Helpers ----------------------

    async def send_error(self, message: str, code: str = "error"):
        """Send an error message to the client."""
        await self.send_json({
            "type": "error",
            "code": code,
            "message": message,
        })

    async def send_success(self, event_type: str, **kwargs):
        """Send a success response to the client."""
        await self.send_json({
            "type": event_type,
            **kwargs,
        })

    # ---------------------- Common Event Handlers ----------------------
    # These handle group_send events from server-side code

    async def _forward_ride_event(self, event):
        message = {
            "type": event["type"],
            "ride_id": event.get("ride_id"),
            "status": event.get("status"),
            "message": event.get("message", ""),
        }
        if "ride_data" in event:
            message["ride"] = event["ride_data"]
        for key in ("driver_id", "drivers_notified", "cancelled_by", "reason", "rating", "review"):
            if key in event:
                message[key] = event[key]
        await self.send_json(message)

    async def new_ride(self, event):
        """Sent by server to every eligible driver for a fresh request."""
        await self._forward_ride_event(event)

    async def ride_requested(self, event):
        """Sent to the rider once the request has been offered to drivers."""
        await self._forward_ride_event(event)

    async def no_drivers_available(self, event):
        """Sent when no drivers are available."""
        await self._forward_ride_event(event)

    async def ride_accepted(self, event):
        """Sent when a ride is accepted."""
        await self._forward_ride_event(event)

    async def ride_en_route(self, event):
        """Sent when the driver heads to pickup."""
        await self._forward_ride_event(event)

    async def ride_started(self, event):
        """Sent when the rider is picked up."""
        await self._forward_ride_event(event)

    async def ride_completed(self, event):
        """Sent when a ride is completed."""
        await self._forward_ride_event(event)

    async def ride_cancelled(self, event):
        """Sent when a ride is cancelled."""
        await self._forward_ride_event(event)

    async def new_rating(self, event):
        """Sent to a driver when their ride is rated."""
        await self._forward_ride_event(event)

    async def driver_location(self, event):
        """Forward the assigned driver's position during a ride."""
        await self.send_json({
            "type": "driver_location",
            "ride_id": event.get("ride_id"),
            "driver_id": event.get("driver_id"),
            "location": event.get("location"),
        })

    # ---------------------- Ride Chat Events ----------------------

    async def chat_message(self, event):
        """A chat message on one of the user's rides."""
        await self.send_json({"type": "chat_message", "ride_id": event["ride_id"], "chat": event["chat"]})

    async def chat_typing(self, event):
        await self.send_json({
            "type": "chat_typing",
            "ride_id": event["ride_id"],
            "user_id": event["user_id"],
            "is_typing": event["is_typing"],
        })

    async def chat_read(self, event):
        """The other participant read some of the user's messages."""
        await self.send_json({
            "type": "chat_read",
            "ride_id": event["ride_id"],
            "reader_id": event["reader_id"],
            "message_ids": event["message_ids"],
        })

    async def chat_initiated(self, event):
        await self.send_json({"type": "chat_initiated", "ride_id": event["ride_id"], "driver_id": event["driver_id"]})
