"""Channels consumers: drivers on ws/driver/, riders and drivers on ws/ride/."""

from .base import BaseConsumer
from .driver_consumer import DriverConsumer
from .ride_consumer import RideConsumer

__all__ = ["BaseConsumer", "DriverConsumer", "RideConsumer"]
