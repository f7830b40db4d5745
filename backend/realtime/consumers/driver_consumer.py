"""Driver WebSocket consumer for location reports, heartbeats and ride offers."""

import logging
from typing import Dict, Any

from channels.db import database_sync_to_async
from django.utils.dateparse import parse_datetime

from common.utils.geo import Coordinates, is_valid_coordinate_pair
from drivers import registry
from realtime.notifications import driver_group, publish_driver_location
from realtime.presence import get_async_presence_store
from services.ride_management.exceptions import DriverNotFoundError, InvalidInputError
from .base import BaseConsumer

logger = logging.getLogger(__name__)


class DriverConsumer(BaseConsumer):
    """
    WebSocket consumer for drivers.

    Handles:
        - Driver location updates (forwarded to the rider of the active ride)
        - Heartbeats (keep last_seen and presence fresh)
        - Going on/off duty
        - new_ride offers and ride events via driver_<id>
    """

    async def on_connect(self):
        """Set up driver-specific groups on connection."""
        if self.role != "driver":
            await self.send_error("This endpoint is for drivers only", code="forbidden")
            await self.close()
            return

        # Join driver-specific group for targeted notifications
        self.driver_group = driver_group(self.user_id)
        await self._join_group(self.driver_group)

        try:
            await database_sync_to_async(registry.heartbeat)(self.user_id)
        except DriverNotFoundError:
            await self.send_error("Driver profile not found", code="not_found")
            await self.close()
            return

        await self._register_presence()

        await self.send_json({
            "type": "connection_established",
            "user_id": self.user_id,
            "role": self.role,
            "message": "Driver connected successfully",
        })

    async def on_disconnect(self, close_code):
        """Drop the presence handle. Availability is left to the heartbeat supervisor."""
        if self.role != "driver":
            return
        try:
            await get_async_presence_store().unregister(self.user_id, self.channel_name)
        except Exception as e:
            logger.warning("Failed to drop presence for driver %s: %s", self.user_id, e)

    async def handle_message(self, msg_type: str, data: Dict[str, Any]):
        """Handle driver-specific messages."""

        if msg_type == "driver_location_update":
            await self._handle_location_update(data)
        elif msg_type == "heartbeat":
            await self._handle_heartbeat(data)
        elif msg_type == "driver_status_update":
            await self._handle_status_update(data)
        else:
            await self.send_error(f"Unknown message type: {msg_type}", code="invalid_input")

    # ---------------------- Message Handlers ----------------------

    async def _handle_location_update(self, data: Dict[str, Any]):
        """
        Record a position report and forward it to the rider of the
        driver's active ride. Reports older than the stored one are dropped.
        """
        lat = data.get("latitude")
        lng = data.get("longitude")
        if not is_valid_coordinate_pair(lat, lng):
            raise InvalidInputError("driver_location_update requires valid latitude and longitude")

        timestamp = _parse_timestamp(data.get("timestamp"))
        accepted = await self._record_location(float(lat), float(lng), timestamp)
        await self._refresh_presence()

        await self.send_success("location_updated", accepted=accepted)

    async def _handle_heartbeat(self, data: Dict[str, Any]):
        timestamp = _parse_timestamp(data.get("timestamp"))
        await database_sync_to_async(registry.heartbeat)(self.user_id, timestamp)
        await self._refresh_presence()
        await self.send_success("heartbeat_ack")

    async def _handle_status_update(self, data: Dict[str, Any]):
        """Go on or off duty."""
        available = data.get("is_available")
        if not isinstance(available, bool):
            raise InvalidInputError("driver_status_update requires a boolean is_available")

        profile = await database_sync_to_async(registry.set_available)(self.user_id, available)
        await self.send_success("status_updated", is_available=profile.is_available)

    # ---------------------- Presence Helpers ----------------------

    async def _register_presence(self):
        try:
            await get_async_presence_store().register(self.user_id, self.channel_name)
        except Exception as e:
            logger.warning("Failed to register presence for driver %s: %s", self.user_id, e)

    async def _refresh_presence(self):
        try:
            await get_async_presence_store().refresh(self.user_id)
        except Exception as e:
            logger.warning("Failed to refresh presence for driver %s: %s", self.user_id, e)

    # ---------------------- Database Helpers ----------------------

    @database_sync_to_async
    def _record_location(self, lat: float, lng: float, timestamp) -> bool:
        accepted = registry.update_location(self.user_id, Coordinates(lat, lng), timestamp)
        if accepted:
            publish_driver_location(self.user_id, lat, lng)
        return accepted


def _parse_timestamp(value):
    """Client timestamps are optional ISO-8601 strings; server time is used otherwise."""
    if value in (None, ""):
        return None
    try:
        parsed = parse_datetime(value) if isinstance(value, str) else None
    except ValueError:
        parsed = None
    if parsed is None or parsed.tzinfo is None:
        raise InvalidInputError("timestamp must be an ISO-8601 datetime with timezone")
    return parsed
