"""
Tests — Geocoder
=================
Unit tests for :class:`~church_geocoder.geocoder.Geocoder`,
:class:`~church_geocoder.geocoder.MapboxBackend`, and
:class:`~church_geocoder.geocoder.NominatimBackend`.

All HTTP calls are mocked via the ``responses`` library — no real
network requests are made during testing.
"""

from __future__ import annotations

import asyncio
import re

import pytest
import responses as rsps_lib

from church_geocoder.exceptions import (
    AddressError,
    GeocodingError,
    GeocodingRateLimitError,
    InvalidCoordinatesError,
    NoCoordinatesError,
)
from church_geocoder.geocoder import (
    GeocodeResult,
    Geocoder,
    GeocoderBackend,
    MapboxBackend,
    NominatimBackend,
)
from church_geocoder.rate_limiter import RateLimiter

from conftest import FAST_RPM, ScriptedBackend, candidate

MAPBOX_URL = re.compile(r"https://api\.mapbox\.com/geocoding/v5/mapbox\.places/.+\.json")
NOMINATIM_URL = "https://nominatim.openstreetmap.org/search"


def _geocode(
    backend: GeocoderBackend,
    address: str | None = "1 Church St",
    city: str | None = "Nashville",
    state: str | None = "TN",
    min_relevance: float = 0.3,
) -> GeocodeResult:
    geocoder = Geocoder(backend, RateLimiter(FAST_RPM), min_relevance=min_relevance)
    return asyncio.run(geocoder.geocode(address, city, state))


def _mapbox_hit(lon: object, lat: object, relevance: float = 0.95) -> dict:
    """Build a mock Mapbox places response with one feature."""
    return {
        "type": "FeatureCollection",
        "features": [
            {
                "id": "address.123",
                "place_name": "1 Church St, Nashville, Tennessee 37201, United States",
                "relevance": relevance,
                "center": [lon, lat],
                "geometry": {"type": "Point", "coordinates": [lon, lat]},
                "context": [
                    {"id": "postcode.456", "text": "37201"},
                    {"id": "place.789", "text": "Nashville"},
                ],
            }
        ],
    }


def _nominatim_hit(lon: float, lat: float, importance: float = 0.62) -> list:
    """Build a mock Nominatim JSON response for one result."""
    return [
        {
            "lon": str(lon),
            "lat": str(lat),
            "importance": importance,
            "display_name": "First Church, Church Street, Nashville, Tennessee, 37201",
            "address": {"postcode": "37201"},
        }
    ]


# ---------------------------------------------------------------------------
# Address validation
# ---------------------------------------------------------------------------


class TestAddressValidation:
    @pytest.mark.parametrize(
        "address, city, state",
        [
            ("", "Nashville", "TN"),
            (None, "Nashville", "TN"),
            ("1 Church St", "", ""),
            ("1 Church St", None, "   "),
        ],
    )
    @rsps_lib.activate
    def test_incomplete_address_makes_no_request(self, address, city, state) -> None:
        backend = MapboxBackend(access_token="pk.test")
        with pytest.raises(AddressError):
            _geocode(backend, address, city, state)
        assert len(rsps_lib.calls) == 0

    def test_missing_components_are_listed(self) -> None:
        backend = ScriptedBackend()
        with pytest.raises(AddressError) as exc_info:
            _geocode(backend, "", "", "TN")
        assert exc_info.value.missing == ["Address", "City"]
        assert backend.calls == []

    def test_address_with_state_only_is_geocodable(self) -> None:
        backend = ScriptedBackend()
        _geocode(backend, "1 Church St", "", "TN")
        assert backend.calls == ["1 Church St, TN"]

    def test_build_query_skips_blank_components(self) -> None:
        assert Geocoder.build_query(" 1 Church St ", None, "TN") == "1 Church St, TN"


# ---------------------------------------------------------------------------
# Result selection
# ---------------------------------------------------------------------------


class TestResultSelection:
    def test_low_relevance_is_accepted_and_flagged(self) -> None:
        backend = ScriptedBackend({"1 Church St, Nashville, TN": [candidate(relevance=0.2)]})
        result = _geocode(backend)
        assert result.low_confidence is True
        assert result.relevance == pytest.approx(0.2)

    def test_relevance_at_threshold_is_not_flagged(self) -> None:
        backend = ScriptedBackend({"1 Church St, Nashville, TN": [candidate(relevance=0.3)]})
        assert _geocode(backend).low_confidence is False

    def test_no_candidates_raises(self) -> None:
        backend = ScriptedBackend({"1 Church St, Nashville, TN": []})
        with pytest.raises(NoCoordinatesError) as exc_info:
            _geocode(backend)
        assert exc_info.value.kind == "no_coordinates"

    @pytest.mark.parametrize(
        "longitude, latitude",
        [(None, 36.16), ("abc", 36.16), (-86.78, float("nan")), (-86.78, 95.0), (True, 36.16)],
    )
    def test_unusable_coordinates_raise(self, longitude, latitude) -> None:
        backend = ScriptedBackend(
            {"1 Church St, Nashville, TN": [candidate(longitude=longitude, latitude=latitude)]}
        )
        with pytest.raises(InvalidCoordinatesError):
            _geocode(backend)

    def test_string_coordinates_are_converted(self) -> None:
        backend = ScriptedBackend(
            {"1 Church St, Nashville, TN": [candidate(longitude="-86.78", latitude="36.16")]}
        )
        result = _geocode(backend)
        assert result.longitude == pytest.approx(-86.78)
        assert result.latitude == pytest.approx(36.16)

    def test_result_serializes_for_storage(self) -> None:
        result = _geocode(ScriptedBackend())
        data = result.to_dict()
        assert data["query"] == "1 Church St, Nashville, TN"
        assert data["postal_code"] == "37201"
        assert data["low_confidence"] is False
        assert data["raw_result"] == {"source": "test"}


# ---------------------------------------------------------------------------
# MapboxBackend tests (mocked HTTP)
# ---------------------------------------------------------------------------


class TestMapboxBackend:
    @rsps_lib.activate
    def test_successful_geocode(self) -> None:
        rsps_lib.add(rsps_lib.GET, MAPBOX_URL, json=_mapbox_hit(-86.7816, 36.1627), status=200)
        result = _geocode(MapboxBackend(access_token="pk.test"))
        assert result.longitude == pytest.approx(-86.7816)
        assert result.latitude == pytest.approx(36.1627)
        assert result.postal_code == "37201"
        assert result.formatted_address.startswith("1 Church St")

    @rsps_lib.activate
    def test_query_is_url_encoded_with_limit_one(self) -> None:
        rsps_lib.add(rsps_lib.GET, MAPBOX_URL, json=_mapbox_hit(-86.78, 36.16), status=200)
        _geocode(MapboxBackend(access_token="pk.test"), "1 Church St #2", "Nashville", "TN")
        url = rsps_lib.calls[0].request.url
        assert "/1%20Church%20St%20%232%2C%20Nashville%2C%20TN.json" in url
        assert "limit=1" in url
        assert "access_token=pk.test" in url

    @rsps_lib.activate
    def test_low_relevance_is_flagged(self) -> None:
        rsps_lib.add(
            rsps_lib.GET, MAPBOX_URL, json=_mapbox_hit(-86.78, 36.16, relevance=0.2), status=200
        )
        assert _geocode(MapboxBackend(access_token="pk.test")).low_confidence is True

    @rsps_lib.activate
    def test_empty_features_raise_no_coordinates(self) -> None:
        rsps_lib.add(rsps_lib.GET, MAPBOX_URL, json={"features": []}, status=200)
        with pytest.raises(NoCoordinatesError):
            _geocode(MapboxBackend(access_token="pk.test"))

    @rsps_lib.activate
    def test_non_numeric_coordinates_raise(self) -> None:
        rsps_lib.add(rsps_lib.GET, MAPBOX_URL, json=_mapbox_hit("west", None), status=200)
        with pytest.raises(InvalidCoordinatesError):
            _geocode(MapboxBackend(access_token="pk.test"))

    @rsps_lib.activate
    def test_rate_limit_raises(self) -> None:
        rsps_lib.add(rsps_lib.GET, MAPBOX_URL, status=429, headers={"Retry-After": "30"})
        with pytest.raises(GeocodingRateLimitError) as exc_info:
            _geocode(MapboxBackend(access_token="pk.test"))
        assert exc_info.value.retry_after == 30
        assert exc_info.value.kind == "rate_limited"

    @rsps_lib.activate
    def test_unprocessable_address_raises(self) -> None:
        rsps_lib.add(rsps_lib.GET, MAPBOX_URL, json={"message": "Query too long"}, status=422)
        with pytest.raises(GeocodingError) as exc_info:
            _geocode(MapboxBackend(access_token="pk.test"))
        assert exc_info.value.kind == "invalid_address_format"

    @rsps_lib.activate
    def test_server_error_raises(self) -> None:
        rsps_lib.add(rsps_lib.GET, MAPBOX_URL, status=503)
        with pytest.raises(GeocodingError) as exc_info:
            _geocode(MapboxBackend(access_token="pk.test"))
        assert exc_info.value.kind == "provider_error"

    @rsps_lib.activate
    def test_invalid_json_raises(self) -> None:
        rsps_lib.add(rsps_lib.GET, MAPBOX_URL, body="<html>oops</html>", status=200)
        with pytest.raises(GeocodingError) as exc_info:
            _geocode(MapboxBackend(access_token="pk.test"))
        assert exc_info.value.kind == "invalid_response"

    @pytest.mark.parametrize(
        "body",
        [
            {"features": "nope"},
            {"features": [{"geometry": "x", "relevance": 0.9}]},
            {"features": [{"geometry": {"coordinates": 5}, "relevance": 0.9}]},
            {"features": [{"geometry": {"coordinates": [-86.78, 36.16]}, "relevance": "high"}]},
            ["not", "a", "collection"],
        ],
    )
    @rsps_lib.activate
    def test_unexpected_shape_raises(self, body: object) -> None:
        rsps_lib.add(rsps_lib.GET, MAPBOX_URL, json=body, status=200)
        with pytest.raises(GeocodingError) as exc_info:
            _geocode(MapboxBackend(access_token="pk.test"))
        assert exc_info.value.kind == "invalid_response"


# ---------------------------------------------------------------------------
# NominatimBackend tests (mocked HTTP)
# ---------------------------------------------------------------------------


class TestNominatimBackend:
    @rsps_lib.activate
    def test_successful_geocode(self) -> None:
        rsps_lib.add(rsps_lib.GET, NOMINATIM_URL, json=_nominatim_hit(-86.78, 36.16), status=200)
        result = _geocode(NominatimBackend(user_agent="test/1.0"))
        assert result.longitude == pytest.approx(-86.78)
        assert result.relevance == pytest.approx(0.62)
        assert result.postal_code == "37201"
        assert rsps_lib.calls[0].request.headers["User-Agent"] == "test/1.0"

    @rsps_lib.activate
    def test_no_results_raise(self) -> None:
        rsps_lib.add(rsps_lib.GET, NOMINATIM_URL, json=[], status=200)
        with pytest.raises(NoCoordinatesError):
            _geocode(NominatimBackend(user_agent="test/1.0"))

    @rsps_lib.activate
    def test_rate_limit_raises(self) -> None:
        rsps_lib.add(rsps_lib.GET, NOMINATIM_URL, status=429)
        with pytest.raises(GeocodingRateLimitError):
            _geocode(NominatimBackend(user_agent="test/1.0"))

    @rsps_lib.activate
    def test_error_object_reply_raises(self) -> None:
        rsps_lib.add(rsps_lib.GET, NOMINATIM_URL, json={"error": "Unable to geocode"}, status=200)
        with pytest.raises(GeocodingError) as exc_info:
            _geocode(NominatimBackend(user_agent="test/1.0"))
        assert exc_info.value.kind == "invalid_response"
        assert "expected a list" in exc_info.value.message

    @rsps_lib.activate
    def test_non_numeric_importance_raises(self) -> None:
        hit = _nominatim_hit(-86.78, 36.16)
        hit[0]["importance"] = "very"
        rsps_lib.add(rsps_lib.GET, NOMINATIM_URL, json=hit, status=200)
        with pytest.raises(GeocodingError) as exc_info:
            _geocode(NominatimBackend(user_agent="test/1.0"))
        assert exc_info.value.kind == "invalid_response"
