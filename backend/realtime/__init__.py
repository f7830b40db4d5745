"""
Realtime app for WebSocket communication.

This app provides:
- WebSocket consumers for drivers and rides
- Notification helpers that push ride events and chat to user_<id> / driver_<id> groups
- An ephemeral, Redis-backed driver presence store
- JWT/Cookie authentication middleware for WebSocket connections

Usage:
    from realtime.consumers import DriverConsumer, RideConsumer
    from realtime.notifications import publish_ride_event, fan_out_new_ride
    from realtime.presence import get_presence_store
"""
