"""Ride request orchestration: quote, create, fan out."""

from .orchestrator import get_fare, request_ride

__all__ = ["get_fare", "request_ride"]
