"""
Geocoding Cascade Module
========================

Walks the provider tiers in order and returns the first result that
survives all four validation layers. A cascade that exhausts its tiers
returns None; callers treat that as "could not geocode".
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING

import httpx

from booth_catalog.core.schema import GeocodeQuery, GeocodeResult
from booth_catalog.geocoding.providers import (
    GeocodingProvider,
    GeocodingProviderError,
    GoogleProvider,
    MapboxProvider,
    NominatimProvider,
    get_google_api_key,
)
from booth_catalog.geocoding.validation import (
    score_confidence,
    validate_address_completeness,
    validate_distance,
    validate_result_quality,
)

if TYPE_CHECKING:
    from booth_catalog.ingestion.registry import GeocodingConfig

logger = logging.getLogger(__name__)


class GeocodingCascade:
    """
    Tiered geocoder with multi-layer validation.

    Providers are tried strictly in the order given. A provider that
    errors, has no match, or fails validation hands over to the next one.
    """

    def __init__(self, providers: list[GeocodingProvider]) -> None:
        self.providers = providers

    @classmethod
    def from_config(
        cls,
        config: GeocodingConfig,
        user_agent: str | None = None,
        client: httpx.Client | None = None,
    ) -> GeocodingCascade:
        """
        Build the cascade from configuration and environment credentials.

        Mapbox and Google tiers are only added when their credentials are
        present in the environment.
        """
        providers: list[GeocodingProvider] = []
        timeout = config.request_timeout

        if config.enable_nominatim:
            kwargs = {"user_agent": user_agent} if user_agent else {}
            providers.append(
                NominatimProvider(
                    client=client,
                    timeout=timeout,
                    min_interval=config.nominatim_min_interval,
                    **kwargs,
                )
            )

        mapbox_token = os.environ.get("MAPBOX_API_TOKEN")
        if config.enable_mapbox and mapbox_token:
            providers.append(MapboxProvider(mapbox_token, client=client, timeout=timeout))
        elif config.enable_mapbox:
            logger.debug("MAPBOX_API_TOKEN not set, skipping Mapbox tier")

        google_key = get_google_api_key()
        if config.enable_google and google_key:
            providers.append(GoogleProvider(google_key, client=client, timeout=timeout))
        elif config.enable_google:
            logger.debug("GOOGLE_MAPS_API_KEY not set, skipping Google tier")

        return cls(providers)

    def geocode(self, query: GeocodeQuery) -> GeocodeResult | None:
        """
        Resolve an address to coordinates.

        Args:
            query: Address, venue name and any coordinate already on record

        Returns:
            A validated GeocodeResult, or None if no tier produced one
        """
        address_check = validate_address_completeness(query)
        if not address_check.is_valid:
            logger.info(
                f"Skipping geocode for '{query.name or query.address}': "
                f"{'; '.join(address_check.issues)}"
            )
            return None

        for provider in self.providers:
            tier = provider.PROVIDER.value
            try:
                candidate = provider.lookup(query)
            except GeocodingProviderError as e:
                logger.warning(f"Geocoding tier {tier} failed: {e}")
                continue

            if candidate is None:
                logger.debug(f"Geocoding tier {tier} returned no results")
                continue

            quality = validate_result_quality(query, candidate, provider.INCLUDES_NAME)
            distance = validate_distance(
                address_check.quality,
                candidate.latitude,
                candidate.longitude,
                query.existing_latitude,
                query.existing_longitude,
            )
            final = score_confidence(address_check, quality, distance)

            if not final.is_valid:
                logger.info(
                    f"Geocoding tier {tier} rejected for '{query.address}': "
                    f"{'; '.join(final.issues)}"
                )
                continue

            logger.info(
                f"Geocoded '{query.address}' via {tier} "
                f"({final.confidence.value}, score {final.match_score})"
            )
            return GeocodeResult(
                latitude=candidate.latitude,
                longitude=candidate.longitude,
                display_address=candidate.display_name,
                provider=provider.PROVIDER,
                confidence=final.confidence,
                match_score=final.match_score,
                validation_issues=final.issues,
                needs_review=final.needs_review,
            )

        logger.info(f"All geocoding tiers failed for '{query.address}'")
        return None

    def close(self) -> None:
        for provider in self.providers:
            provider.close()
