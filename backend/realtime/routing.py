"""WebSocket URL routing for the realtime app."""

from django.urls import path

from .consumers import DriverConsumer, RideConsumer

websocket_urlpatterns = [
    # Location reports, heartbeats, duty changes and ride offers
    path("ws/driver/", DriverConsumer.as_asgi(), name="driver-ws"),
    # Ride status changes and in-ride tracking, for riders and drivers
    path("ws/ride/", RideConsumer.as_asgi(), name="ride-ws"),
]
