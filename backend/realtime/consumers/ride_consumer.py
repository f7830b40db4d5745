"""Ride WebSocket consumer: ride status changes, in-ride driver tracking and ride chat."""

import logging
from typing import Dict, Any

from channels.db import database_sync_to_async

from common.choices import RideStatus
from common.utils.geo import Coordinates, is_valid_coordinate_pair
from drivers import registry
from realtime.notifications import driver_group, publish_driver_location
from rides.serializers import ChatMessageSerializer
from services.ride_management import chat, ride_lifecycle
from services.ride_management.exceptions import ForbiddenError, InvalidInputError
from .base import BaseConsumer

logger = logging.getLogger(__name__)

CHAT_HANDLERS = {
    "chat_join": "_handle_chat_join",
    "chat_send": "_handle_chat_send",
    "chat_typing": "_handle_chat_typing",
    "chat_read": "_handle_chat_read",
    "chat_initiate": "_handle_chat_initiate",
}


class RideConsumer(BaseConsumer):
    """
    WebSocket consumer for riders and drivers during a ride.

    Handles:
        - ride_status: move a ride along its lifecycle (same rules as HTTP)
        - tracking_update: driver position while on a ride
        - chat_join / chat_send / chat_typing / chat_read / chat_initiate:
          the per-ride chat between rider and driver
        - ride events addressed to user_<id> / driver_<id>
    """

    async def on_connect(self):
        """Set up ride connection."""
        # Drivers also receive offers and ride events on this connection
        if self.role == "driver":
            self.driver_group = driver_group(self.user_id)
            await self._join_group(self.driver_group)

        await self.send_json({
            "type": "connection_established",
            "user_id": self.user_id,
            "role": self.role,
            "message": "Ride connection established",
        })

    async def handle_message(self, msg_type: str, data: Dict[str, Any]):
        """Handle ride messages."""

        if msg_type == "ride_status":
            await self._handle_ride_status(data)
        elif msg_type == "tracking_update":
            await self._handle_tracking_update(data)
        elif msg_type in CHAT_HANDLERS:
            await getattr(self, CHAT_HANDLERS[msg_type])(self._chat_ride_id(data), data)
        else:
            await self.send_error(f"Unknown message type: {msg_type}", code="invalid_input")

    # ---------------------- Message Handlers ----------------------

    async def _handle_ride_status(self, data: Dict[str, Any]):
        """
        Request a status change. Edges, permissions and verification are
        enforced by the ride lifecycle service, exactly as for HTTP.
        """
        ride_id = data.get("ride_id")
        status = data.get("status")
        if not ride_id or not status:
            raise InvalidInputError("ride_status requires ride_id and status")

        ride = await self._apply_status(str(ride_id), status, data)
        await self.send_success("ride_status_updated", ride_id=str(ride.id), status=ride.status)

    async def _handle_tracking_update(self, data: Dict[str, Any]):
        """Driver sends location update during an active ride."""
        if self.role != "driver":
            raise ForbiddenError("Only drivers can send tracking updates")

        lat = data.get("latitude")
        lng = data.get("longitude")
        if not is_valid_coordinate_pair(lat, lng):
            raise InvalidInputError("tracking_update requires valid latitude and longitude")

        accepted = await self._record_location(float(lat), float(lng))
        await self.send_success("location_updated", accepted=accepted)

    # ---------------------- Ride Chat ----------------------

    @staticmethod
    def _chat_ride_id(data: Dict[str, Any]) -> str:
        ride_id = data.get("ride_id")
        if not ride_id:
            raise InvalidInputError("Chat messages require ride_id")
        return str(ride_id)

    async def _handle_chat_join(self, ride_id: str, data: Dict[str, Any]):
        """Reply with the ride's chat history."""
        messages = await self._chat_history(ride_id)
        await self.send_success("chat_history", ride_id=ride_id, messages=messages)

    async def _handle_chat_send(self, ride_id: str, data: Dict[str, Any]):
        # The stored message comes back through the user's own group
        await database_sync_to_async(chat.send_message)(ride_id, self.user_id, data.get("text"))

    async def _handle_chat_typing(self, ride_id: str, data: Dict[str, Any]):
        await database_sync_to_async(chat.set_typing)(ride_id, self.user_id, data.get("is_typing", True))

    async def _handle_chat_read(self, ride_id: str, data: Dict[str, Any]):
        ids = await database_sync_to_async(chat.mark_read)(ride_id, self.user_id, data.get("message_ids"))
        await self.send_success("chat_marked_read", ride_id=ride_id, message_ids=ids)

    async def _handle_chat_initiate(self, ride_id: str, data: Dict[str, Any]):
        if self.role != "driver":
            raise ForbiddenError("Only drivers can start a ride chat")
        await database_sync_to_async(chat.initiate_chat)(ride_id, self.user_id)

    # ---------------------- Database Helpers ----------------------

    @database_sync_to_async
    def _apply_status(self, ride_id: str, status: str, data: Dict[str, Any]):
        if status == RideStatus.ACCEPTED:
            return ride_lifecycle.accept_ride(ride_id, self.user_id)
        if status == RideStatus.ON_THE_WAY:
            return ride_lifecycle.mark_en_route(ride_id, self.user_id)
        if status == RideStatus.IN_PROGRESS:
            return ride_lifecycle.start_ride(ride_id, self.user_id, data.get("verification_code"))
        if status == RideStatus.COMPLETED:
            return ride_lifecycle.complete_ride(
                ride_id,
                self.user_id,
                data.get("payment_method"),
                data.get("tip", 0),
            )
        if status == RideStatus.CANCELLED:
            return ride_lifecycle.cancel_ride(ride_id, self.user_id, data.get("reason", "")).ride
        raise InvalidInputError(f"Unsupported status: {status}")

    @database_sync_to_async
    def _record_location(self, lat: float, lng: float) -> bool:
        accepted = registry.update_location(self.user_id, Coordinates(lat, lng))
        if accepted:
            publish_driver_location(self.user_id, lat, lng)
        return accepted

    @database_sync_to_async
    def _chat_history(self, ride_id: str):
        return ChatMessageSerializer(chat.get_chat_history(ride_id, self.user_id), many=True).data
