"""Routing, geocoding and address search against external providers."""

from .retry import RetriesExhausted, RetryPolicy
from .route_client import (
    GeoRouteClient,
    RouteEstimate,
    get_route_client,
    to_coordinates,
)

__all__ = [
    "GeoRouteClient",
    "RetriesExhausted",
    "RetryPolicy",
    "RouteEstimate",
    "get_route_client",
    "to_coordinates",
]
