"""
Geocoding Providers Module
==========================

HTTP clients for the three geocoding tiers:

1. Nominatim (OpenStreetMap): free, strict, wants a structured address
2. Mapbox: generous free tier, tolerates venue-name queries
3. Google Geocoding API: premium, treated as ground truth

Each provider turns an HTTP JSON answer into a ``ProviderCandidate`` and
raises ``GeocodingProviderError`` on transport or payload failures.
"""

from __future__ import annotations

import logging
import os
import time
from abc import ABC, abstractmethod
from typing import Any
from urllib.parse import quote

import httpx

from booth_catalog.core.enums import GeocodeConfidence, GeocodeProvider
from booth_catalog.core.schema import GeocodeQuery
from booth_catalog.geocoding.validation import ProviderCandidate

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "BoothCatalog/0.1 (geocoding)"

# Street-level keys in a Nominatim addressdetails block
_NOMINATIM_STREET_KEYS = ("house_number", "road")


class GeocodingProviderError(Exception):
    """Raised when a provider cannot produce an answer."""


class GeocodingProvider(ABC):
    """
    Base class for one tier of the geocoding cascade.

    Subclasses must implement ``lookup`` and declare whether the venue
    name is part of the query they send.
    """

    PROVIDER: GeocodeProvider
    INCLUDES_NAME: bool = False

    def __init__(self, client: httpx.Client | None = None, timeout: float = 10.0) -> None:
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def _get_json(self, url: str, params: dict[str, Any] | None = None,
                  headers: dict[str, str] | None = None) -> Any:
        try:
            response = self.client.get(url, params=params, headers=headers)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            raise GeocodingProviderError(f"{self.PROVIDER.value} request failed: {e}") from e
        except ValueError as e:
            raise GeocodingProviderError(f"{self.PROVIDER.value} returned invalid JSON") from e

    @abstractmethod
    def lookup(self, query: GeocodeQuery) -> ProviderCandidate | None:
        """
        Ask the provider for a coordinate.

        Args:
            query: Address data to resolve

        Returns:
            The best candidate, or None if the provider has no match

        Raises:
            GeocodingProviderError: On network or payload failures
        """

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()


def build_address_query(query: GeocodeQuery, include_name: bool = False) -> str:
    """Join the non-empty address parts into a single query string."""
    parts = [query.name] if include_name and query.name else []
    parts.extend(p for p in (query.address, query.city, query.state, query.country) if p)
    return ", ".join(part.strip() for part in parts if part.strip())


class NominatimProvider(GeocodingProvider):
    """
    OpenStreetMap Nominatim.

    The usage policy allows one request per second and requires an
    identifying User-Agent, so calls are spaced by ``min_interval``.
    """

    PROVIDER = GeocodeProvider.NOMINATIM
    INCLUDES_NAME = False
    BASE_URL = "https://nominatim.openstreetmap.org/search"

    def __init__(
        self,
        client: httpx.Client | None = None,
        timeout: float = 10.0,
        user_agent: str = DEFAULT_USER_AGENT,
        min_interval: float = 1.1,
    ) -> None:
        super().__init__(client, timeout)
        self.user_agent = user_agent
        self.min_interval = min_interval
        self._last_request: float | None = None

    def _respect_rate_limit(self) -> None:
        if self._last_request is not None and self.min_interval > 0:
            wait = self.min_interval - (time.monotonic() - self._last_request)
            if wait > 0:
                time.sleep(wait)
        self._last_request = time.monotonic()

    def lookup(self, query: GeocodeQuery) -> ProviderCandidate | None:
        self._respect_rate_limit()
        data = self._get_json(
            self.BASE_URL,
            params={
                "q": build_address_query(query),
                "format": "json",
                "addressdetails": "1",
                "limit": "1",
            },
            headers={"User-Agent": self.user_agent},
        )
        if not isinstance(data, list):
            raise GeocodingProviderError("nominatim returned an unexpected payload")
        if not data:
            return None

        hit = data[0]
        try:
            address = hit.get("address") or {}
            return ProviderCandidate(
                latitude=float(hit["lat"]),
                longitude=float(hit["lon"]),
                display_name=hit.get("display_name", ""),
                place_type=hit.get("type", ""),
                place_class=hit.get("class", ""),
                has_street_components=any(k in address for k in _NOMINATIM_STREET_KEYS),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise GeocodingProviderError(f"nominatim returned a malformed result: {e}") from e


class MapboxProvider(GeocodingProvider):
    """Mapbox Geocoding v5. The venue name is part of the query."""

    PROVIDER = GeocodeProvider.MAPBOX
    INCLUDES_NAME = True
    BASE_URL = "https://api.mapbox.com/geocoding/v5/mapbox.places"

    def __init__(self, access_token: str, client: httpx.Client | None = None,
                 timeout: float = 10.0) -> None:
        super().__init__(client, timeout)
        self.access_token = access_token

    def lookup(self, query: GeocodeQuery) -> ProviderCandidate | None:
        search = quote(build_address_query(query, include_name=True), safe="")
        data = self._get_json(
            f"{self.BASE_URL}/{search}.json",
            params={"access_token": self.access_token, "limit": "1", "types": "poi,address"},
        )
        features = data.get("features") if isinstance(data, dict) else None
        if features is None:
            raise GeocodingProviderError("mapbox returned an unexpected payload")
        if not features:
            return None

        feature = features[0]
        try:
            longitude, latitude = feature["center"]
            place_types = feature.get("place_type") or []
            relevance = float(feature.get("relevance", 0.0))
        except (KeyError, TypeError, ValueError) as e:
            raise GeocodingProviderError(f"mapbox returned a malformed result: {e}") from e

        place_type = place_types[0] if place_types else ""
        return ProviderCandidate(
            latitude=float(latitude),
            longitude=float(longitude),
            display_name=feature.get("place_name", ""),
            place_type=place_type,
            has_street_components=place_type in ("address", "poi") or "address" in feature,
            provider_score=relevance * 100,
            confidence_cap=self.confidence_for_relevance(relevance),
        )

    @staticmethod
    def confidence_for_relevance(relevance: float) -> GeocodeConfidence:
        if relevance >= 0.9:
            return GeocodeConfidence.HIGH
        if relevance >= 0.7:
            return GeocodeConfidence.MEDIUM
        return GeocodeConfidence.LOW


class GoogleProvider(GeocodingProvider):
    """
    Google Geocoding API.

    ``location_type`` stands in for a native score: ROOFTOP is exact,
    RANGE_INTERPOLATED and GEOMETRIC_CENTER are approximate.
    """

    PROVIDER = GeocodeProvider.GOOGLE
    INCLUDES_NAME = True
    BASE_URL = "https://maps.googleapis.com/maps/api/geocode/json"

    LOCATION_TYPE_SCORES = {
        "ROOFTOP": 95.0,
        "RANGE_INTERPOLATED": 75.0,
        "GEOMETRIC_CENTER": 70.0,
        "APPROXIMATE": 40.0,
    }
    LOCATION_TYPE_CONFIDENCE = {
        "ROOFTOP": GeocodeConfidence.HIGH,
        "RANGE_INTERPOLATED": GeocodeConfidence.MEDIUM,
        "GEOMETRIC_CENTER": GeocodeConfidence.MEDIUM,
    }

    def __init__(self, api_key: str, client: httpx.Client | None = None,
                 timeout: float = 10.0) -> None:
        super().__init__(client, timeout)
        self.api_key = api_key

    def lookup(self, query: GeocodeQuery) -> ProviderCandidate | None:
        data = self._get_json(
            self.BASE_URL,
            params={"address": build_address_query(query, include_name=True), "key": self.api_key},
        )
        if not isinstance(data, dict):
            raise GeocodingProviderError("google returned an unexpected payload")

        status = data.get("status")
        if status == "ZERO_RESULTS":
            return None
        if status != "OK":
            raise GeocodingProviderError(f"google returned status {status}")

        results = data.get("results") or []
        if not results:
            return None

        hit = results[0]
        try:
            location = hit["geometry"]["location"]
            location_type = hit["geometry"].get("location_type", "APPROXIMATE")
            latitude = float(location["lat"])
            longitude = float(location["lng"])
        except (KeyError, TypeError, ValueError) as e:
            raise GeocodingProviderError(f"google returned a malformed result: {e}") from e

        types = hit.get("types") or []
        component_types = {
            t for component in hit.get("address_components", []) for t in component.get("types", [])
        }
        return ProviderCandidate(
            latitude=latitude,
            longitude=longitude,
            display_name=hit.get("formatted_address", ""),
            place_type=types[0] if types else "",
            has_street_components=bool({"street_number", "route"} & component_types),
            provider_score=self.LOCATION_TYPE_SCORES.get(location_type, 40.0),
            confidence_cap=self.LOCATION_TYPE_CONFIDENCE.get(location_type, GeocodeConfidence.LOW),
        )


def get_google_api_key() -> str | None:
    """Read the Google key, preferring the backend-only variable."""
    return os.environ.get("GOOGLE_MAPS_API_KEY_BACKEND") or os.environ.get("GOOGLE_MAPS_API_KEY")
