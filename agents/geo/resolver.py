"""
Geo Resolver
Turns "city, state" into city-level coordinates and provides distance math.

Coordinates never leave this module at more than two decimal places
(roughly 1 km), so precise locations are never persisted or logged.
"""
import math
from typing import Optional

import httpx
import structlog
from pydantic import BaseModel, Field

from backend.core.config import settings
from backend.core.exceptions import GeoResolutionFailed

logger = structlog.get_logger().bind(agent="geo")

EARTH_RADIUS_KM = 6371.0

# Length of one degree of arc on the haversine sphere
KM_PER_DEGREE = math.pi * EARTH_RADIUS_KM / 180.0

COARSEN_DECIMALS = 2


class GeocodedLocation(BaseModel):
    """Coarsened result of a geocoding lookup."""

    latitude: float = Field(..., ge=-90, le=90, description="Latitude, 2 decimals")
    longitude: float = Field(..., ge=-180, le=180, description="Longitude, 2 decimals")
    display_name: str = Field(..., description="Provider's place name")


def coarsen_coords(lat: float, lng: float) -> tuple[float, float]:
    """
    Round coordinates to city-level precision.

    >>> coarsen_coords(44.977753, -93.265011)
    (44.98, -93.27)
    """
    return round(lat, COARSEN_DECIMALS), round(lng, COARSEN_DECIMALS)


def calculate_distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points (haversine)."""
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lng = math.radians(lng2 - lng1)

    a = (
        math.sin(delta_lat / 2) ** 2
        + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(delta_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def bounding_box(
    lat: float,
    lng: float,
    radius_km: float,
    margin: float = 1.1,
) -> tuple[float, float, float, float]:
    """
    Lat/lng box containing every point within radius_km of (lat, lng).

    Only a storage prefilter: callers still apply the exact haversine cutoff.

    Returns:
        (min_lat, max_lat, min_lng, max_lng)
    """
    lat_delta = radius_km * margin / KM_PER_DEGREE
    min_lat = max(lat - lat_delta, -90.0)
    max_lat = min(lat + lat_delta, 90.0)

    # Longitude degrees shrink toward the poles; size the box at its widest latitude
    widest = max(abs(min_lat), abs(max_lat))
    cos_lat = math.cos(math.radians(widest))
    if cos_lat < 1e-6:
        return min_lat, max_lat, -180.0, 180.0

    lng_delta = lat_delta / cos_lat
    if lng_delta >= 180.0:
        return min_lat, max_lat, -180.0, 180.0

    return min_lat, max_lat, lng - lng_delta, lng + lng_delta


class GeoResolver:
    """
    Nominatim (OpenStreetMap) geocoder.

    One request per lookup, no retries. Every failure mode surfaces as
    GeoResolutionFailed so callers can fall back to statewide matching.
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        user_agent: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self._http_client = http_client
        self.base_url = base_url or settings.geocoding_url
        self.user_agent = user_agent or settings.geocoding_user_agent
        self.timeout = timeout or settings.geocoding_timeout_seconds

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Lazy-loaded HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers={"User-Agent": self.user_agent},
            )
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def resolve(self, city: str, region: str) -> GeocodedLocation:
        """
        Geocode a city within a US state.

        Args:
            city: City name (e.g., "Minneapolis").
            region: State code (e.g., "MN").

        Returns:
            GeocodedLocation with coarsened coordinates.

        Raises:
            GeoResolutionFailed: On network errors, non-2xx responses,
                empty results or unparsable coordinates.
        """
        query = f"{city}, {region}, {settings.geocoding_country}"
        params = {"q": query, "format": "json", "limit": "1"}

        try:
            response = await self.http_client.get(
                self.base_url,
                params=params,
                headers={"User-Agent": self.user_agent},
                timeout=self.timeout,
            )
            response.raise_for_status()
            results = response.json()
        except httpx.HTTPStatusError as e:
            logger.warning("geocoding_http_error", status_code=e.response.status_code)
            raise GeoResolutionFailed(city, region, f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.warning("geocoding_request_failed", error=str(e))
            raise GeoResolutionFailed(city, region, f"request failed: {e}") from e
        except ValueError as e:
            raise GeoResolutionFailed(city, region, "invalid JSON response") from e

        if not isinstance(results, list) or not results:
            logger.info("geocoding_no_results", city=city, region=region)
            raise GeoResolutionFailed(city, region, "no results")

        first = results[0]
        try:
            raw_lat = float(first["lat"])
            raw_lng = float(first["lon"])
        except (KeyError, TypeError, ValueError) as e:
            raise GeoResolutionFailed(city, region, "unparsable coordinates") from e

        if not (-90.0 <= raw_lat <= 90.0 and -180.0 <= raw_lng <= 180.0):
            raise GeoResolutionFailed(city, region, "coordinates out of range")

        latitude, longitude = coarsen_coords(raw_lat, raw_lng)
        display_name = first.get("display_name") or f"{city}, {region}"

        logger.info(
            "location_resolved",
            city=city,
            region=region,
            latitude=latitude,
            longitude=longitude,
        )

        return GeocodedLocation(
            latitude=latitude,
            longitude=longitude,
            display_name=display_name,
        )
