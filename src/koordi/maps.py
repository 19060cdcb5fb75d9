"""Geocoding and time-aware routing against the Google Maps web services."""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, NamedTuple

import httpx

from koordi.config import GOOGLE_MAPS_API_KEY_ENV
from koordi.errors import ConfigurationError, GeocodingError, RoutingError, redact_secrets

logger = logging.getLogger(__name__)

GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
DISTANCE_MATRIX_URL = "https://maps.googleapis.com/maps/api/distancematrix/json"
EARTH_RADIUS_KM = 6371.0


class Coordinates(NamedTuple):
    lat: float
    lng: float

    def as_param(self) -> str:
        return f"{self.lat},{self.lng}"


@dataclass(frozen=True)
class GeocodeResult:
    address: str
    coordinates: Coordinates
    formatted_address: str


@dataclass(frozen=True)
class TravelTime:
    """Route duration in whole minutes (rounded up) and distance in meters."""

    duration_minutes: int
    duration_in_traffic_minutes: int
    distance_meters: int


def is_valid_coordinates(lat: Any, lng: Any) -> bool:
    if isinstance(lat, bool) or isinstance(lng, bool):
        return False
    if not isinstance(lat, int | float) or not isinstance(lng, int | float):
        return False
    return -90 <= lat <= 90 and -180 <= lng <= 180


def haversine_km(a: Coordinates, b: Coordinates) -> float:
    """Great-circle distance in kilometers, for quick checks without an API call."""
    d_lat = math.radians(b.lat - a.lat)
    d_lng = math.radians(b.lng - a.lng)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(a.lat)) * math.cos(math.radians(b.lat)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def _ceil_minutes(seconds: Any) -> int:
    return math.ceil(float(seconds) / 60)


class GoogleMapsClient:
    """Thin async client for the Geocoding and Distance Matrix endpoints.

    The API key is resolved lazily so that a process without maps access can
    still reconcile feeds; the first geocode/route call raises
    :class:`ConfigurationError` instead.
    """

    def __init__(
        self,
        api_key: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        *,
        timeout: float = 10.0,
    ) -> None:
        self._api_key = api_key
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    def _require_api_key(self) -> str:
        key = self._api_key or os.environ.get(GOOGLE_MAPS_API_KEY_ENV, "").strip()
        if not key:
            raise ConfigurationError("Google Maps API key is not configured")
        self._api_key = key
        return key

    async def _get_json(
        self, url: str, params: dict[str, Any], error_cls: type[GeocodingError | RoutingError]
    ) -> dict[str, Any]:
        try:
            response = await self._http_client.get(url, params=params)
        except httpx.HTTPError as exc:
            raise error_cls(redact_secrets(f"Maps request failed: {exc}")) from exc
        if response.status_code < 200 or response.status_code >= 300:
            raise error_cls(
                f"Maps request failed with HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise error_cls("Maps API returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise error_cls("Maps API returned an unexpected payload shape")
        return payload

    async def geocode(self, address: str) -> GeocodeResult:
        normalized = address.strip()
        if not normalized:
            raise GeocodingError("Cannot geocode an empty address")
        payload = await self._get_json(
            GEOCODE_URL,
            {"address": normalized, "key": self._require_api_key()},
            GeocodingError,
        )
        status = payload.get("status")
        if status != "OK":
            raise GeocodingError(f"Geocoding failed for {normalized!r}: {status}")
        results = payload.get("results") or []
        if not results:
            raise GeocodingError(f"No results found for address {normalized!r}")
        try:
            first = results[0]
            location = first["geometry"]["location"]
            coordinates = Coordinates(float(location["lat"]), float(location["lng"]))
        except (KeyError, TypeError, ValueError) as exc:
            raise GeocodingError("Geocoding response is missing coordinates") from exc
        if not is_valid_coordinates(coordinates.lat, coordinates.lng):
            raise GeocodingError(f"Geocoding returned invalid coordinates {coordinates}")
        return GeocodeResult(
            address=normalized,
            coordinates=coordinates,
            formatted_address=str(first.get("formatted_address") or normalized),
        )

    async def travel_time(
        self,
        origin: Coordinates,
        destination: Coordinates,
        *,
        depart_at: datetime | None = None,
        arrive_by: datetime | None = None,
    ) -> TravelTime:
        """Driving time between two points.

        ``arrive_by`` asks for a route that arrives at that instant;
        ``depart_at`` asks for one that leaves then (traffic-aware). With
        neither, the route is computed for departure now.
        """
        if depart_at is not None and arrive_by is not None:
            raise ValueError("Pass at most one of depart_at or arrive_by")
        params: dict[str, Any] = {
            "origins": origin.as_param(),
            "destinations": destination.as_param(),
            "mode": "driving",
            "key": self._require_api_key(),
        }
        if arrive_by is not None:
            params["arrival_time"] = int(arrive_by.timestamp())
        elif depart_at is not None:
            params["departure_time"] = int(depart_at.timestamp())
        else:
            params["departure_time"] = "now"

        payload = await self._get_json(DISTANCE_MATRIX_URL, params, RoutingError)
        status = payload.get("status")
        if status != "OK":
            raise RoutingError(f"Distance Matrix request failed: {status}")
        try:
            element = payload["rows"][0]["elements"][0]
        except (KeyError, IndexError, TypeError) as exc:
            raise RoutingError("No route found") from exc
        element_status = element.get("status")
        if element_status != "OK":
            raise RoutingError(f"Route calculation failed: {element_status}")

        try:
            duration = element["duration"]["value"]
            in_traffic = (element.get("duration_in_traffic") or element["duration"])["value"]
            distance = int(element["distance"]["value"])
        except (KeyError, TypeError, ValueError) as exc:
            raise RoutingError("Route response is missing duration or distance") from exc

        return TravelTime(
            duration_minutes=_ceil_minutes(duration),
            duration_in_traffic_minutes=_ceil_minutes(in_traffic),
            distance_meters=distance,
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
