"""Reverse geocoding for emergency landmarks.

Wraps the Google Maps Geocoding API with an in-memory LRU cache and async
HTTP via httpx. Failures never raise: the landmark degrades to the
coordinates formatted with 5 decimals.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Optional

import httpx

from riderescue.services.geo import Coordinates

logger = logging.getLogger(__name__)

GOOGLE_GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"

# Address component types that name a place, most specific first
NAMED_PLACE_TYPES = ("point_of_interest", "establishment", "premise")

_MAX_CACHE_SIZE = 10_000


def fallback_landmark(lat: float, lon: float) -> str:
    return str(Coordinates(lat, lon))


class GeocodingService:
    """Async reverse geocoder returning a short human-readable landmark."""

    def __init__(self, api_key: Optional[str]) -> None:
        self._api_key = api_key
        self._cache: OrderedDict[str, Optional[str]] = OrderedDict()

    # ------------------------------------------------------------------
    # Cache helpers
    # ------------------------------------------------------------------

    def _cache_key(self, lat: float, lon: float) -> str:
        return f"{lat:.5f},{lon:.5f}"

    def _cache_get(self, key: str) -> tuple[bool, Optional[str]]:
        """Return (hit, value). Moves item to end on hit (LRU)."""
        if key in self._cache:
            self._cache.move_to_end(key)
            return True, self._cache[key]
        return False, None

    def _cache_put(self, key: str, value: Optional[str]) -> None:
        if key in self._cache:
            self._cache.move_to_end(key)
            self._cache[key] = value
        else:
            self._cache[key] = value
            if len(self._cache) > _MAX_CACHE_SIZE:
                self._cache.popitem(last=False)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def reverse_geocode(self, lat: float, lon: float) -> str:
        """Landmark for a lat/lon pair, or ``"(lat, lon)"`` when none is found."""
        if not self._api_key:
            return fallback_landmark(lat, lon)

        cache_key = self._cache_key(lat, lon)
        hit, cached = self._cache_get(cache_key)
        if not hit:
            cached = await self._fetch({"latlng": f"{lat},{lon}", "key": self._api_key})
            # Only successful lookups are cached; failures retry next time
            if cached is not None:
                self._cache_put(cache_key, cached)

        return cached or fallback_landmark(lat, lon)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _fetch(self, params: dict) -> Optional[str]:
        """Execute the HTTP request to Google and parse the response."""
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                resp = await client.get(GOOGLE_GEOCODE_URL, params=params)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as exc:
            logger.warning("Google Geocoding API HTTP error: %s", exc)
            return None
        except httpx.RequestError as exc:
            logger.warning("Google Geocoding API request failed: %s", exc)
            return None
        except ValueError as exc:
            logger.warning("Google Geocoding API returned invalid JSON: %s", exc)
            return None

        return self._parse_google_response(data)

    def _parse_google_response(self, data: dict) -> Optional[str]:
        """Pick a landmark from the top reverse-geocoding result.

        Preference: a named place, then the street, then "locality region country".
        """
        status = data.get("status")
        if status != "OK":
            if status not in ("ZERO_RESULTS",):
                logger.warning("Google Geocoding API returned status: %s", status)
            return None

        results = data.get("results")
        if not results:
            return None

        top = results[0]
        components = top.get("address_components", [])

        name = ""
        street = ""
        locality = ""
        sublocality = ""
        region = ""
        country = ""
        for comp in components:
            types = comp.get("types", [])
            if any(t in types for t in NAMED_PLACE_TYPES) and not name:
                name = comp.get("long_name", "")
            if "route" in types and not street:
                street = comp.get("long_name", "")
            if "locality" in types and not locality:
                locality = comp.get("long_name", "")
            if "sublocality" in types and not sublocality:
                sublocality = comp.get("long_name", "")
            if "administrative_area_level_1" in types:
                region = comp.get("long_name", "")
            if "country" in types:
                country = comp.get("long_name", "")

        # Google lists sublocality before locality; the locality wins
        city = locality or sublocality
        landmark = name or street or " ".join(p for p in (city, region, country) if p)
        return landmark or top.get("formatted_address") or None


# ----------------------------------------------------------------------
# Module-level convenience
# ----------------------------------------------------------------------


def geocoding_service_from_settings() -> GeocodingService:
    """Build a service using the configured API key."""
    from riderescue.app.config import get_settings

    return GeocodingService(get_settings().google_maps_api_key)
