"""
Geocoding Package
=================

Tiered address-to-coordinate resolution with four validation layers.
"""

from booth_catalog.geocoding.cascade import GeocodingCascade
from booth_catalog.geocoding.providers import (
    GeocodingProvider,
    GeocodingProviderError,
    GoogleProvider,
    MapboxProvider,
    NominatimProvider,
)
from booth_catalog.geocoding.validation import (
    AddressValidationResult,
    FinalValidation,
    ProviderCandidate,
    score_confidence,
    validate_address_completeness,
    validate_distance,
    validate_result_quality,
)

__all__ = [
    # Cascade
    "GeocodingCascade",
    # Providers
    "GeocodingProvider",
    "GeocodingProviderError",
    "NominatimProvider",
    "MapboxProvider",
    "GoogleProvider",
    # Validation
    "AddressValidationResult",
    "FinalValidation",
    "ProviderCandidate",
    "validate_address_completeness",
    "validate_result_quality",
    "validate_distance",
    "score_confidence",
]
