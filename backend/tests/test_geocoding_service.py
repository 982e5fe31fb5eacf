"""Tests for riderescue.services.geocoding_service.

All HTTP calls are mocked; no real Google API requests are made.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from riderescue.services.geocoding_service import (
    GOOGLE_GEOCODE_URL,
    GeocodingService,
    _MAX_CACHE_SIZE,
    fallback_landmark,
)

# ---------------------------------------------------------------------------
# Fixtures & helpers
# ---------------------------------------------------------------------------

FAKE_API_KEY = "test-api-key-123"
LAT, LON = 14.5995, 120.9842
CLIENT_PATH = "riderescue.services.geocoding_service.httpx.AsyncClient"


def _component(name: str, *types: str) -> dict:
    return {"long_name": name, "short_name": name, "types": list(types)}


def _google_ok_response(
    place: str | None = "Manila City Hall",
    route: str | None = "Padre Burgos Avenue",
    formatted_address: str = "Padre Burgos Ave, Ermita, Manila, 1000 Metro Manila, Philippines",
) -> dict:
    """Build a realistic Google Maps reverse-geocoding 'OK' response."""
    components = []
    if place:
        components.append(_component(place, "point_of_interest", "establishment"))
    if route:
        components.append(_component(route, "route"))
    components += [
        _component("Ermita", "sublocality_level_1", "sublocality", "political"),
        _component("Manila", "locality", "political"),
        _component("Metro Manila", "administrative_area_level_1", "political"),
        _component("Philippines", "country", "political"),
    ]
    return {
        "status": "OK",
        "results": [
            {
                "formatted_address": formatted_address,
                "geometry": {"location": {"lat": LAT, "lng": LON}},
                "address_components": components,
            }
        ],
    }


def _make_mock_response(json_data: dict, status_code: int = 200) -> MagicMock:
    """Create a mock httpx.Response."""
    resp = MagicMock(spec=httpx.Response)
    resp.status_code = status_code
    resp.json.return_value = json_data
    if status_code >= 400:
        resp.raise_for_status.side_effect = httpx.HTTPStatusError(
            message="error",
            request=MagicMock(),
            response=resp,
        )
    else:
        resp.raise_for_status.return_value = None
    return resp


def _mock_client(resp: MagicMock | None = None, side_effect: Exception | None = None) -> AsyncMock:
    mock_client = AsyncMock(spec=httpx.AsyncClient)
    if side_effect is not None:
        mock_client.get.side_effect = side_effect
    else:
        mock_client.get.return_value = resp
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    return mock_client


@pytest.fixture
def service() -> GeocodingService:
    return GeocodingService(api_key=FAKE_API_KEY)


# ---------------------------------------------------------------------------
# 1. _parse_google_response: landmark preference
# ---------------------------------------------------------------------------


class TestParseGoogleResponse:
    def test_named_place_wins(self, service: GeocodingService) -> None:
        assert service._parse_google_response(_google_ok_response()) == "Manila City Hall"

    def test_street_when_no_named_place(self, service: GeocodingService) -> None:
        data = _google_ok_response(place=None)
        assert service._parse_google_response(data) == "Padre Burgos Avenue"

    def test_locality_region_country_when_no_street(self, service: GeocodingService) -> None:
        data = _google_ok_response(place=None, route=None)
        assert service._parse_google_response(data) == "Manila Metro Manila Philippines"

    def test_sublocality_when_no_locality(self, service: GeocodingService) -> None:
        data = {
            "status": "OK",
            "results": [
                {
                    "formatted_address": "Ermita, Philippines",
                    "address_components": [
                        _component("Ermita", "sublocality_level_1", "sublocality", "political"),
                        _component("Philippines", "country", "political"),
                    ],
                }
            ],
        }
        assert service._parse_google_response(data) == "Ermita Philippines"

    def test_formatted_address_when_no_components(self, service: GeocodingService) -> None:
        data = {
            "status": "OK",
            "results": [{"formatted_address": "Somewhere, PH", "address_components": []}],
        }
        assert service._parse_google_response(data) == "Somewhere, PH"

    def test_returns_none_when_status_not_ok(self, service: GeocodingService) -> None:
        data = {"status": "REQUEST_DENIED", "results": []}
        assert service._parse_google_response(data) is None

    def test_returns_none_on_zero_results(self, service: GeocodingService) -> None:
        data = {"status": "ZERO_RESULTS", "results": []}
        assert service._parse_google_response(data) is None

    def test_returns_none_when_result_is_empty(self, service: GeocodingService) -> None:
        data = {"status": "OK", "results": [{"address_components": [], "formatted_address": ""}]}
        assert service._parse_google_response(data) is None


# ---------------------------------------------------------------------------
# 2. reverse_geocode: request and fallback
# ---------------------------------------------------------------------------


class TestReverseGeocode:
    @pytest.mark.asyncio
    async def test_sends_latlng_and_key(self, service: GeocodingService) -> None:
        mock_client = _mock_client(_make_mock_response(_google_ok_response()))

        with patch(CLIENT_PATH, return_value=mock_client):
            result = await service.reverse_geocode(LAT, LON)

        assert result == "Manila City Hall"
        mock_client.get.assert_awaited_once_with(
            GOOGLE_GEOCODE_URL,
            params={"latlng": f"{LAT},{LON}", "key": FAKE_API_KEY},
        )

    @pytest.mark.asyncio
    async def test_no_api_key_skips_http(self) -> None:
        svc = GeocodingService(api_key="")
        with patch(CLIENT_PATH) as client_cls:
            result = await svc.reverse_geocode(LAT, LON)

        assert result == "(14.59950, 120.98420)"
        client_cls.assert_not_called()

    def test_fallback_landmark_uses_five_decimals(self) -> None:
        assert fallback_landmark(-33.8688197, 151.2092955) == "(-33.86882, 151.20930)"

    @pytest.mark.asyncio
    async def test_zero_results_falls_back(self, service: GeocodingService) -> None:
        mock_client = _mock_client(_make_mock_response({"status": "ZERO_RESULTS", "results": []}))

        with patch(CLIENT_PATH, return_value=mock_client):
            result = await service.reverse_geocode(LAT, LON)

        assert result == fallback_landmark(LAT, LON)


# ---------------------------------------------------------------------------
# 3. Cache behaviour
# ---------------------------------------------------------------------------


class TestCacheBehaviour:
    @pytest.mark.asyncio
    async def test_second_call_uses_cache(self, service: GeocodingService) -> None:
        mock_client = _mock_client(_make_mock_response(_google_ok_response()))

        with patch(CLIENT_PATH, return_value=mock_client):
            result1 = await service.reverse_geocode(LAT, LON)
            result2 = await service.reverse_geocode(LAT, LON)

        assert result1 == result2 == "Manila City Hall"
        # Only one HTTP call should have been made
        assert mock_client.get.call_count == 1

    @pytest.mark.asyncio
    async def test_key_rounds_to_five_decimals(self, service: GeocodingService) -> None:
        mock_client = _mock_client(_make_mock_response(_google_ok_response()))

        with patch(CLIENT_PATH, return_value=mock_client):
            await service.reverse_geocode(LAT, LON)
            await service.reverse_geocode(LAT + 0.000001, LON - 0.000001)

        assert mock_client.get.call_count == 1

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self, service: GeocodingService) -> None:
        failing = _mock_client(side_effect=httpx.ConnectError("Connection refused"))
        working = _mock_client(_make_mock_response(_google_ok_response()))

        with patch(CLIENT_PATH, side_effect=[failing, working]):
            first = await service.reverse_geocode(LAT, LON)
            second = await service.reverse_geocode(LAT, LON)

        assert first == fallback_landmark(LAT, LON)
        assert second == "Manila City Hall"

    def test_lru_eviction_when_exceeding_max_size(self) -> None:
        svc = GeocodingService(api_key=FAKE_API_KEY)

        for i in range(_MAX_CACHE_SIZE):
            svc._cache_put(f"key-{i}", f"Landmark {i}")
        assert len(svc._cache) == _MAX_CACHE_SIZE

        # Touch the oldest entry so the second-oldest is evicted instead
        svc._cache_get("key-0")
        svc._cache_put("overflow-key", "Overflow")

        assert len(svc._cache) == _MAX_CACHE_SIZE
        assert "key-0" in svc._cache
        assert "key-1" not in svc._cache
        assert "overflow-key" in svc._cache


# ---------------------------------------------------------------------------
# 4. Transport failures never raise
# ---------------------------------------------------------------------------


class TestGeocodingFailure:
    @pytest.mark.asyncio
    async def test_network_error(self, service: GeocodingService) -> None:
        mock_client = _mock_client(side_effect=httpx.ConnectTimeout("timed out"))

        with patch(CLIENT_PATH, return_value=mock_client):
            result = await service.reverse_geocode(LAT, LON)

        assert result == fallback_landmark(LAT, LON)

    @pytest.mark.asyncio
    async def test_http_error_status(self, service: GeocodingService) -> None:
        mock_client = _mock_client(_make_mock_response({}, status_code=500))

        with patch(CLIENT_PATH, return_value=mock_client):
            result = await service.reverse_geocode(LAT, LON)

        assert result == fallback_landmark(LAT, LON)

    @pytest.mark.asyncio
    async def test_invalid_json(self, service: GeocodingService) -> None:
        resp = _make_mock_response({})
        resp.json.side_effect = ValueError("Expecting value")
        mock_client = _mock_client(resp)

        with patch(CLIENT_PATH, return_value=mock_client):
            result = await service.reverse_geocode(LAT, LON)

        assert result == fallback_landmark(LAT, LON)

    @pytest.mark.asyncio
    async def test_request_denied(self, service: GeocodingService) -> None:
        data = {"status": "REQUEST_DENIED", "error_message": "API key invalid"}
        mock_client = _mock_client(_make_mock_response(data))

        with patch(CLIENT_PATH, return_value=mock_client):
            result = await service.reverse_geocode(LAT, LON)

        assert result == fallback_landmark(LAT, LON)
        assert service._cache == {}
