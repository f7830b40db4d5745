"""
Routing and geocoding client.

Talks to an OSRM-compatible routing service and a Nominatim-compatible
search service over HTTP. Route lookups never fail on provider trouble:
after retries are exhausted, or when the response cannot be parsed, a
great-circle estimate at a fixed average speed is returned instead.

Results are cached through Django's cache framework with per-kind TTLs.
"""

import hashlib
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import requests
from django.conf import settings
from django.core.cache import cache as default_cache

from common.utils.geo import Coordinates, calculate_distance, is_valid_coordinate_pair
from services.ride_management.exceptions import (
    AddressNotFoundError,
    InvalidInputError,
    ServiceUnavailableError,
)
from .retry import RetriesExhausted, RetryPolicy

logger = logging.getLogger(__name__)

ROUTE_SOURCE_PROVIDER = "provider"
ROUTE_SOURCE_FALLBACK = "fallback"

MIN_AUTOCOMPLETE_LENGTH = 3


class TransientProviderError(Exception):
    """A provider answered with a 5xx status; worth retrying."""


class MalformedResponseError(ValueError):
    """A provider answered, but not with something we can use."""


@dataclass(frozen=True)
class RouteEstimate:
    distance_meters: float
    duration_seconds: float
    source: str = ROUTE_SOURCE_PROVIDER

    @property
    def is_fallback(self) -> bool:
        return self.source == ROUTE_SOURCE_FALLBACK

    def as_dict(self) -> Dict[str, Any]:
        return {
            "distance_meters": self.distance_meters,
            "duration_seconds": self.duration_seconds,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RouteEstimate":
        return cls(
            distance_meters=data["distance_meters"],
            duration_seconds=data["duration_seconds"],
            source=data.get("source", ROUTE_SOURCE_PROVIDER),
        )


def to_coordinates(value) -> Coordinates:
    """
    Accept a Coordinates instance or a {"lat", "lng"} mapping.

    Raises InvalidInputError for anything that is not a finite pair
    inside latitude/longitude ranges.
    """
    if isinstance(value, Coordinates):
        lat, lng = value.lat, value.lng
    elif isinstance(value, Mapping):
        lat, lng = value.get("lat"), value.get("lng")
    else:
        raise InvalidInputError("Coordinates must provide lat and lng")

    if not is_valid_coordinate_pair(lat, lng):
        raise InvalidInputError(f"Invalid coordinates: lat={lat!r}, lng={lng!r}")
    return Coordinates(lat=float(lat), lng=float(lng))


def _digest(*parts) -> str:
    raw = "|".join("" if part is None else str(part) for part in parts)
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


class GeoRouteClient:
    """Route, geocode and autocomplete lookups with retry, fallback and caching."""

    RETRYABLE = (requests.Timeout, requests.ConnectionError, TransientProviderError)

    def __init__(
        self,
        config: Optional[Mapping[str, Any]] = None,
        session: Optional[requests.Session] = None,
        retry_policy: Optional[RetryPolicy] = None,
        cache=None,
    ):
        self._config = dict(config if config is not None else settings.DISPATCH_CONFIG)
        self._session = session or requests.Session()
        self._session.headers.setdefault("User-Agent", self._config["PROVIDER_USER_AGENT"])
        self._retry = retry_policy or RetryPolicy(
            max_attempts=self._config["PROVIDER_MAX_ATTEMPTS"],
            backoff_seconds=self._config["PROVIDER_BACKOFF_SECONDS"],
            retry_on=self.RETRYABLE,
        )
        self._cache = cache or default_cache

    # ---------------------- HTTP ----------------------

    def _get_json(self, url: str, params: Dict[str, Any]) -> Any:
        response = self._session.get(
            url,
            params=params,
            timeout=self._config["PROVIDER_TIMEOUT_SECONDS"],
        )
        if response.status_code >= 500:
            raise TransientProviderError(f"{url} answered {response.status_code}")
        response.raise_for_status()
        return response.json()

    # ---------------------- Routes ----------------------

    def route(self, origin, destination) -> RouteEstimate:
        """
        Distance and duration between two points.

        Raises InvalidInputError for bad coordinates. Provider failures
        are absorbed by the great-circle fallback.
        """
        origin = to_coordinates(origin)
        destination = to_coordinates(destination)

        cache_key = f"route:{origin.cache_key()}:{destination.cache_key()}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return RouteEstimate.from_dict(cached)

        url = (
            f"{self._config['ROUTING_URL'].rstrip('/')}/route/v1/driving/"
            f"{origin.lng},{origin.lat};{destination.lng},{destination.lat}"
        )
        try:
            payload = self._retry.call(lambda: self._get_json(url, {"overview": "false"}))
            estimate = self._parse_route(payload)
        except RetriesExhausted as exc:
            logger.warning("Routing provider unreachable, using great-circle estimate: %s", exc.last_error)
            estimate = self.fallback_estimate(origin, destination)
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Routing provider response unusable, using great-circle estimate: %s", exc)
            estimate = self.fallback_estimate(origin, destination)

        self._cache.set(cache_key, estimate.as_dict(), self._config["ROUTE_CACHE_TTL"])
        return estimate

    @staticmethod
    def _parse_route(payload: Any) -> RouteEstimate:
        if not isinstance(payload, dict) or payload.get("code") != "Ok":
            raise MalformedResponseError("Routing provider returned a non-Ok code")
        routes = payload.get("routes")
        if not isinstance(routes, list) or not routes or not isinstance(routes[0], dict):
            raise MalformedResponseError("Routing provider returned no routes")

        try:
            distance = float(routes[0]["distance"])
            duration = float(routes[0]["duration"])
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedResponseError(f"Route is missing distance/duration: {exc}") from exc

        if not (math.isfinite(distance) and math.isfinite(duration)) or distance < 0 or duration < 0:
            raise MalformedResponseError("Route distance/duration out of range")
        return RouteEstimate(distance_meters=distance, duration_seconds=duration)

    def fallback_estimate(self, origin: Coordinates, destination: Coordinates) -> RouteEstimate:
        """Haversine distance, duration at the configured average speed."""
        distance = calculate_distance(origin.lat, origin.lng, destination.lat, destination.lng)
        speed_kmh = self._config["FALLBACK_SPEED_KMH"]
        duration = (distance / 1000.0) / speed_kmh * 3600.0
        return RouteEstimate(
            distance_meters=distance,
            duration_seconds=duration,
            source=ROUTE_SOURCE_FALLBACK,
        )

    # ---------------------- Geocoding ----------------------

    def geocode(self, address: str) -> Dict[str, Any]:
        """
        Resolve an address to {"lat", "lng", "address"}.

        Raises AddressNotFoundError when nothing matches and
        ServiceUnavailableError when the provider cannot be reached.
        """
        if not isinstance(address, str) or not address.strip():
            raise InvalidInputError("Address is required")
        address = address.strip()

        cache_key = f"geocode:{_digest(address.lower())}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        params = {"format": "json", "q": address, "limit": 1, "addressdetails": 1}
        try:
            payload = self._retry.call(lambda: self._get_json(self._config["GEOCODING_URL"], params))
        except RetriesExhausted as exc:
            logger.warning("Geocoding provider unreachable for %r: %s", address, exc.last_error)
            raise ServiceUnavailableError("Geocoding service unavailable") from exc
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Geocoding provider failed for %r: %s", address, exc)
            raise ServiceUnavailableError("Geocoding service unavailable") from exc

        if not isinstance(payload, list) or not payload:
            raise AddressNotFoundError(f"No match for address: {address}")

        first = payload[0]
        try:
            result = {
                "lat": float(first["lat"]),
                "lng": float(first["lon"]),
                "address": first.get("display_name") or address,
            }
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Malformed geocoding result for %r: %s", address, exc)
            raise ServiceUnavailableError("Geocoding service returned an invalid result") from exc

        self._cache.set(cache_key, result, self._config["GEOCODE_CACHE_TTL"])
        return result

    def autocomplete(
        self,
        query: str,
        limit: int = 5,
        country: Optional[str] = None,
        language: str = "en-US",
        feature_type: str = "all",
    ) -> List[Dict[str, Any]]:
        """
        Address suggestions sorted by importance, best first.

        Inputs shorter than three characters, and any provider failure,
        yield an empty list.
        """
        if not isinstance(query, str) or len(query.strip()) < MIN_AUTOCOMPLETE_LENGTH:
            return []
        query = query.strip()

        cache_key = f"suggestions:{_digest(query.lower(), limit, country, language, feature_type)}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        params = {
            "format": "json",
            "q": query,
            "limit": limit,
            "addressdetails": 1,
            "accept-language": language,
        }
        if feature_type != "all":
            params["featureType"] = feature_type
        if country:
            params["countrycodes"] = country

        try:
            payload = self._retry.call(lambda: self._get_json(self._config["GEOCODING_URL"], params))
        except RetriesExhausted as exc:
            logger.warning("Autocomplete provider unreachable for %r: %s", query, exc.last_error)
            return []
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Autocomplete provider failed for %r: %s", query, exc)
            return []

        if not isinstance(payload, list):
            return []

        suggestions = []
        for item in payload:
            suggestion = self._to_suggestion(item)
            if suggestion is not None:
                suggestions.append(suggestion)
        suggestions.sort(key=lambda s: s["importance"], reverse=True)

        self._cache.set(cache_key, suggestions, self._config["SUGGESTION_CACHE_TTL"])
        return suggestions

    @staticmethod
    def _to_suggestion(item: Any) -> Optional[Dict[str, Any]]:
        """One provider result as a suggestion, or None if it cannot be read."""
        if not isinstance(item, dict):
            return None
        try:
            lat = float(item["lat"])
            lng = float(item["lon"])
            importance = float(item.get("importance") or 0)
        except (KeyError, TypeError, ValueError):
            return None
        if not is_valid_coordinate_pair(lat, lng) or not math.isfinite(importance):
            return None

        details = item.get("address")
        if not isinstance(details, dict):
            details = {}
        return {
            "address": item.get("display_name", ""),
            "lat": lat,
            "lng": lng,
            "display_name": item.get("display_name", ""),
            "type": item.get("type"),
            "importance": importance,
            "address_details": {
                "house_number": details.get("house_number"),
                "road": details.get("road"),
                "suburb": details.get("suburb"),
                "city": details.get("city") or details.get("town"),
                "state": details.get("state"),
                "country": details.get("country"),
                "postcode": details.get("postcode"),
            },
        }


# ---------------------- Singleton ----------------------

_route_client: Optional[GeoRouteClient] = None


def get_route_client() -> GeoRouteClient:
    """Get singleton GeoRouteClient instance."""
    global _route_client
    if _route_client is None:
        _route_client = GeoRouteClient()
    return _route_client


def reset_route_client() -> None:
    """Drop the singleton so the next call picks up current settings."""
    global _route_client
    _route_client = None
