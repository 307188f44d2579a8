"""
Church Geocoder — Geocoder
===========================
Turns a record's address, city and state into a validated coordinate
result through a pluggable provider backend.

Architecture:
    ``GeocoderBackend`` is an abstract strategy — swap providers without
    changing the :class:`Geocoder`.  Backends are plain blocking
    ``requests`` clients that return raw :class:`Candidate` objects; the
    :class:`Geocoder` validates the address before any network call, runs
    the backend off the event loop through the shared
    :class:`~church_geocoder.rate_limiter.RateLimiter`, and validates the
    best candidate.

Classes:
    GeocodeResult       Immutable validated result for one address.
    Candidate           Unvalidated best match as reported by a provider.
    GeocoderBackend     Abstract base for geocoding providers.
    MapboxBackend       Mapbox Geocoding API (requires an access token).
    NominatimBackend    Free OSM-powered geocoder (no API key required).
    Geocoder            Validation + rate limiting in front of a backend.

Usage::

    limiter = RateLimiter(requests_per_minute=300)
    geocoder = Geocoder(MapboxBackend(access_token), limiter, min_relevance=0.3)
    result = await geocoder.geocode("1 Church St", "Nashville", "TN")
"""

from __future__ import annotations

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import requests

from church_geocoder.exceptions import (
    GeocodingError,
    GeocodingRateLimitError,
    InvalidCoordinatesError,
    NoCoordinatesError,
)
from church_geocoder.rate_limiter import RateLimiter
from church_geocoder.validators import Validators

logger = logging.getLogger("church_geocoder.geocoder")


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GeocodeResult:
    """Immutable, validated result for a single address.

    Attributes:
        query: The joined address string sent to the provider.
        latitude: Latitude in WGS84.
        longitude: Longitude in WGS84.
        relevance: Provider match quality, clamped to ``[0, 1]``.
        formatted_address: Normalized address returned by the provider.
        postal_code: Postal code of the match, if the provider reported one.
        low_confidence: ``True`` when ``relevance`` is below the configured
                        minimum.  Such results are still stored.
        raw: The provider's raw candidate, kept for auditing.
    """

    query: str
    latitude: float
    longitude: float
    relevance: float
    formatted_address: str | None
    postal_code: str | None
    low_confidence: bool = False
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def to_dict(self) -> dict[str, Any]:
        """Serialise for the record's geocoding details."""
        return {
            "query": self.query,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "relevance": self.relevance,
            "full_address": self.formatted_address,
            "postal_code": self.postal_code,
            "low_confidence": self.low_confidence,
            "raw_result": self.raw,
        }


@dataclass(frozen=True)
class Candidate:
    """Best match as reported by a provider, before validation.

    ``longitude`` and ``latitude`` are whatever the provider sent (numbers,
    numeric strings, or garbage); :class:`Geocoder` decides if they are usable.
    """

    longitude: Any
    latitude: Any
    relevance: float
    formatted_address: str | None = None
    postal_code: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


# ---------------------------------------------------------------------------
# Backend strategies
# ---------------------------------------------------------------------------


class GeocoderBackend(ABC):
    """Abstract strategy for a geocoding provider.

    Subclass this and implement :meth:`lookup` to add a new provider.
    Implementations are synchronous and are called from a worker thread.
    """

    name = "provider"

    @abstractmethod
    def lookup(self, query: str) -> list[Candidate]:
        """Return the provider's candidates for *query*, best first.

        Args:
            query: Comma-joined address, not yet URL encoded.

        Returns:
            Candidates in provider order; empty when nothing matched.

        Raises:
            GeocodingRateLimitError: If the provider returns HTTP 429.
            GeocodingError: For any other provider or transport error, or a
                reply whose shape cannot be parsed.
        """

    def _get(self, session: requests.Session, url: str, params: dict[str, Any], timeout: int) -> Any:
        """Perform a GET and translate failures into :class:`GeocodingError`."""
        try:
            response = session.get(url, params=params, timeout=timeout)
        except requests.RequestException as exc:
            raise GeocodingError(f"{self.name} request failed: {exc}", kind="transport_error") from exc

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise GeocodingRateLimitError(
                self.name, retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None
            )
        if response.status_code == 422:
            raise GeocodingError(
                f"{self.name} could not process the address format",
                kind="invalid_address_format",
            )
        if not response.ok:
            raise GeocodingError(f"{self.name} returned HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError as exc:
            raise GeocodingError(f"{self.name} returned invalid JSON", kind="invalid_response") from exc

    def _malformed(self, reason: object) -> GeocodingError:
        """Wrap a parse failure on a well-formed JSON reply."""
        return GeocodingError(
            f"{self.name} returned an unexpected response: {reason}", kind="invalid_response"
        )


class MapboxBackend(GeocoderBackend):
    """Geocoder backend powered by the Mapbox Geocoding API (v5, places).

    Args:
        access_token: Mapbox access token.  Read it from the environment;
                      never commit it to version control.
        timeout: HTTP request timeout in seconds.
        session: Optional pre-configured :class:`requests.Session`.

    Reference:
        https://docs.mapbox.com/api/search/geocoding-v5/
    """

    name = "Mapbox"
    _BASE_URL = "https://api.mapbox.com/geocoding/v5/mapbox.places"

    def __init__(
        self,
        access_token: str,
        timeout: int = 10,
        session: requests.Session | None = None,
    ) -> None:
        self.access_token = access_token
        self.timeout = timeout
        self._session = session or requests.Session()

    def lookup(self, query: str) -> list[Candidate]:
        """Geocode *query* via Mapbox.

        The query travels in the URL path, so it is percent-encoded here.
        """
        url = f"{self._BASE_URL}/{quote(query, safe='')}.json"
        params = {"access_token": self.access_token, "limit": 1}
        data = self._get(self._session, url, params, self.timeout)

        try:
            return [self._candidate(feature) for feature in (data or {}).get("features") or []]
        except (AttributeError, TypeError, ValueError) as exc:
            raise self._malformed(exc) from exc

    def _candidate(self, feature: dict[str, Any]) -> Candidate:
        coordinates = (feature.get("geometry") or {}).get("coordinates") or feature.get("center") or []
        lon, lat = (list(coordinates) + [None, None])[:2]
        return Candidate(
            longitude=lon,
            latitude=lat,
            relevance=float(feature.get("relevance") or 0.0),
            formatted_address=feature.get("place_name"),
            postal_code=self._postcode(feature),
            raw=feature,
        )

    @staticmethod
    def _postcode(feature: dict[str, Any]) -> str | None:
        if str(feature.get("id", "")).startswith("postcode."):
            return feature.get("text")
        for entry in feature.get("context") or []:
            if str(entry.get("id", "")).startswith("postcode."):
                return entry.get("text")
        return None


class NominatimBackend(GeocoderBackend):
    """Geocoder backend powered by OpenStreetMap's Nominatim API.

    **Free to use** — no API key required.  The Nominatim Usage Policy asks
    for a descriptive ``user_agent`` and at most 1 request/second, so pair
    this backend with ``requests_per_minute <= 54``.

    Nominatim has no relevance score; its ``importance`` value is used
    instead.

    Args:
        user_agent: Identifies your application to Nominatim.
        timeout: HTTP request timeout in seconds.
        session: Optional pre-configured :class:`requests.Session`.

    Reference:
        https://nominatim.org/release-docs/develop/api/Search/
    """

    name = "Nominatim"
    _BASE_URL = "https://nominatim.openstreetmap.org/search"

    def __init__(
        self,
        user_agent: str = "church-geocoder/1.0",
        timeout: int = 10,
        session: requests.Session | None = None,
    ) -> None:
        self.user_agent = user_agent
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers["User-Agent"] = self.user_agent

    def lookup(self, query: str) -> list[Candidate]:
        """Geocode *query* via Nominatim."""
        params = {"q": query, "format": "json", "limit": 1, "addressdetails": 1}
        data = self._get(self._session, self._BASE_URL, params, self.timeout)
        if data is not None and not isinstance(data, list):
            raise self._malformed(f"expected a list, got {type(data).__name__}")

        try:
            return [
                Candidate(
                    longitude=hit.get("lon"),
                    latitude=hit.get("lat"),
                    relevance=float(hit.get("importance") or 0.0),
                    formatted_address=hit.get("display_name"),
                    postal_code=(hit.get("address") or {}).get("postcode"),
                    raw=hit,
                )
                for hit in data or []
            ]
        except (AttributeError, TypeError, ValueError) as exc:
            raise self._malformed(exc) from exc


# ---------------------------------------------------------------------------
# Geocoder
# ---------------------------------------------------------------------------


def _coordinate(value: Any, limit: float) -> float | None:
    """Return *value* as a finite float within ``±limit``, else ``None``."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or abs(number) > limit:
        return None
    return number


class Geocoder:
    """Validate an address, geocode it through the rate limiter, and
    validate the provider's answer.

    The geocoder holds no queue of its own; every provider call is
    scheduled on the shared *rate_limiter*.

    Args:
        backend: Provider strategy.
        rate_limiter: Shared limiter pacing all provider calls.
        min_relevance: Results scoring below this are flagged
                       ``low_confidence`` rather than rejected.
    """

    def __init__(
        self,
        backend: GeocoderBackend,
        rate_limiter: RateLimiter,
        min_relevance: float = 0.3,
    ) -> None:
        self.backend = backend
        self.rate_limiter = rate_limiter
        self.min_relevance = min_relevance

    @staticmethod
    def build_query(address: str | None, city: str | None, state: str | None) -> str:
        """Join the non-empty address components with ``", "``."""
        parts = [str(p).strip() for p in (address, city, state) if p and str(p).strip()]
        return ", ".join(parts)

    async def geocode(self, address: str | None, city: str | None, state: str | None) -> GeocodeResult:
        """Geocode one address.

        Returns:
            A :class:`GeocodeResult`; ``low_confidence`` is set when the
            relevance is below ``min_relevance``.

        Raises:
            AddressError: Before any network call, if the street address is
                missing or both city and state are missing.
            NoCoordinatesError: If the provider returned no candidates.
            InvalidCoordinatesError: If the best candidate has no usable
                numeric coordinate pair.
            GeocodingError: For provider or transport failures.
        """
        Validators.assert_address_complete(address, city, state)
        query = self.build_query(address, city, state)

        candidates = await self.rate_limiter.submit(
            lambda: asyncio.to_thread(self.backend.lookup, query)
        )
        return self._select(query, candidates)

    def _select(self, query: str, candidates: list[Candidate]) -> GeocodeResult:
        if not candidates:
            raise NoCoordinatesError(query)

        best = candidates[0]
        latitude = _coordinate(best.latitude, 90.0)
        longitude = _coordinate(best.longitude, 180.0)
        if latitude is None or longitude is None:
            raise InvalidCoordinatesError(
                f"Invalid coordinates ({best.longitude!r}, {best.latitude!r}) for '{query}'"
            )

        relevance = min(max(best.relevance, 0.0), 1.0)
        low_confidence = relevance < self.min_relevance
        if low_confidence:
            logger.info(
                "Low relevance score (%.2f) below threshold of %.2f for: %s",
                relevance, self.min_relevance, query,
            )

        return GeocodeResult(
            query=query,
            latitude=latitude,
            longitude=longitude,
            relevance=relevance,
            formatted_address=best.formatted_address,
            postal_code=best.postal_code,
            low_confidence=low_confidence,
            raw=best.raw,
        )
