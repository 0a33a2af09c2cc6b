"""
Geocoding Validation Module
===========================

Four validation layers applied to every geocoding attempt:

1. Address completeness (before any provider is called)
2. Result quality (after a provider answers)
3. Distance validation (against coordinates the record already had)
4. Confidence scoring (combines the layers, flags results for review)
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from booth_catalog.core.enums import GeocodeConfidence
from booth_catalog.core.schema import GeocodeQuery
from booth_catalog.core.similarity import fuzzy_ratio, haversine_distance, normalize_text

# Lowest first
CONFIDENCE_ORDER: list[GeocodeConfidence] = [
    GeocodeConfidence.REJECT,
    GeocodeConfidence.LOW,
    GeocodeConfidence.MEDIUM,
    GeocodeConfidence.HIGH,
]

# Results that point at a road feature rather than a venue
INAPPROPRIATE_PLACE_TYPES = {"highway", "intersection", "crossing", "traffic_signals"}

# Results that are only the centroid of an administrative area
CENTROID_PLACE_TYPES = {
    "continent",
    "country",
    "state",
    "region",
    "province",
    "county",
    "administrative",
    "administrative_area_level_1",
    "administrative_area_level_2",
    "postcode",
    "postal_code",
}

MAX_DISTANCE_METERS = 500.0

_STREET_NUMBER = re.compile(r"\b\d+[a-zA-Z]?\b")


@dataclass
class AddressQuality:
    """Which components an input address carries."""

    has_street_number: bool = False
    has_street_name: bool = False
    has_city: bool = False
    has_country: bool = False

    @property
    def is_complete(self) -> bool:
        return (
            self.has_street_number
            and self.has_street_name
            and self.has_city
            and self.has_country
        )


@dataclass
class AddressValidationResult:
    """Layer 1 outcome."""

    is_valid: bool
    confidence: GeocodeConfidence
    quality: AddressQuality
    issues: list[str] = field(default_factory=list)


@dataclass
class ProviderCandidate:
    """
    A provider answer normalized into the fields validation needs.

    ``provider_score`` is the provider's own 0-100 quality signal when it
    has one (Mapbox relevance, Google location type). ``confidence_cap``
    is the best confidence that signal allows.
    """

    latitude: float
    longitude: float
    display_name: str
    place_type: str = ""
    place_class: str = ""
    has_street_components: bool = False
    provider_score: float | None = None
    confidence_cap: GeocodeConfidence | None = None


@dataclass
class ResultValidation:
    """Layer 2 outcome."""

    is_valid: bool
    confidence: GeocodeConfidence
    match_score: float
    issues: list[str] = field(default_factory=list)


@dataclass
class DistanceValidation:
    """Layer 3 outcome."""

    is_valid: bool
    distance: float | None
    within_threshold: bool
    threshold: float
    reason: str | None = None


@dataclass
class FinalValidation:
    """Layer 4 outcome."""

    is_valid: bool
    confidence: GeocodeConfidence
    match_score: float
    issues: list[str] = field(default_factory=list)

    @property
    def needs_review(self) -> bool:
        return bool(self.issues) or self.confidence != GeocodeConfidence.HIGH


def lowest_confidence(levels: list[GeocodeConfidence]) -> GeocodeConfidence:
    """Return the weakest confidence in a list."""
    return min(levels, key=CONFIDENCE_ORDER.index)


# ============================================================================
# Layer 1: Address completeness
# ============================================================================


def extract_street_number(address: str) -> str | None:
    """Return the first house-number-like token in an address."""
    match = _STREET_NUMBER.search(address)
    return match.group(0) if match else None


def validate_address_completeness(query: GeocodeQuery) -> AddressValidationResult:
    """
    Check that an address is worth sending to a geocoder.

    The address must carry a street number and must not simply repeat
    the venue name. Missing city or country lowers confidence without
    rejecting the address.
    """
    issues: list[str] = []
    address = (query.address or "").strip()

    quality = AddressQuality(
        has_street_number=extract_street_number(address) is not None,
        has_street_name=len(address.split()) >= 2,
        has_city=bool(query.city and query.city.strip()),
        has_country=bool(query.country and query.country.strip()),
    )

    is_venue_name = bool(query.name) and normalize_text(address) == normalize_text(query.name)

    if not quality.has_street_number:
        issues.append("Missing street number")
    if not quality.has_street_name:
        issues.append("Missing street name")
    if not quality.has_city:
        issues.append("Missing city")
    if not quality.has_country:
        issues.append("Missing country")
    if is_venue_name:
        issues.append("Address is the venue name")

    if is_venue_name or not quality.has_street_number or not quality.has_street_name:
        issues.append("Address too incomplete for reliable geocoding")
        return AddressValidationResult(
            is_valid=False,
            confidence=GeocodeConfidence.REJECT,
            quality=quality,
            issues=issues,
        )

    if quality.is_complete:
        confidence = GeocodeConfidence.HIGH
    elif quality.has_city:
        confidence = GeocodeConfidence.MEDIUM
    else:
        confidence = GeocodeConfidence.LOW

    return AddressValidationResult(
        is_valid=True, confidence=confidence, quality=quality, issues=issues
    )


# ============================================================================
# Layer 2: Result quality
# ============================================================================


def validate_result_quality(
    query: GeocodeQuery,
    candidate: ProviderCandidate,
    query_includes_name: bool,
) -> ResultValidation:
    """
    Score a provider answer against the input.

    The identity check is worth 40 points: the venue name must show up
    in the result when the provider was asked for it, otherwise the
    input street number must. City match is worth 30, an appropriate
    place type 20 and street-level address components 10. Administrative
    centroids are rejected outright.
    """
    issues: list[str] = []
    display = candidate.display_name.lower()
    place_kinds = {candidate.place_type.lower(), candidate.place_class.lower()}

    if place_kinds & CENTROID_PLACE_TYPES and not candidate.has_street_components:
        return ResultValidation(
            is_valid=False,
            confidence=GeocodeConfidence.REJECT,
            match_score=0.0,
            issues=[f"Result is an area centroid: {candidate.place_type or candidate.place_class}"],
        )

    if query_includes_name and query.name:
        identity = fuzzy_ratio(query.name, display)
        if normalize_text(query.name) and normalize_text(query.name) in normalize_text(display):
            identity = 1.0
        if identity <= 0.5:
            issues.append(f"Poor name match ({round(identity * 100)}%)")
        elif identity <= 0.7:
            issues.append(f"Weak name match ({round(identity * 100)}%)")
    else:
        number = extract_street_number(query.address)
        identity = 1.0 if number and re.search(rf"\b{re.escape(number)}\b", display) else 0.0
        if identity == 0.0:
            issues.append("Street number not found in result")

    city_match = bool(query.city) and query.city.lower() in display
    if query.city and not city_match:
        issues.append(f'City "{query.city}" not found in result')

    inappropriate = bool(place_kinds & INAPPROPRIATE_PLACE_TYPES)
    if inappropriate:
        issues.append(f"Inappropriate place type: {candidate.place_type}/{candidate.place_class}")

    if not candidate.has_street_components:
        issues.append("Result lacks detailed address components")

    structural = (
        identity * 40
        + (30 if city_match else 0)
        + (0 if inappropriate else 20)
        + (10 if candidate.has_street_components else 0)
    )
    if candidate.provider_score is not None:
        match_score = (structural + candidate.provider_score) / 2
    else:
        match_score = structural
    match_score = round(match_score, 2)

    if match_score >= 80:
        confidence = GeocodeConfidence.HIGH
    elif match_score >= 60:
        confidence = GeocodeConfidence.MEDIUM
    elif match_score >= 40:
        confidence = GeocodeConfidence.LOW
        issues.append("Low overall match score - manual review recommended")
    else:
        issues.append("Match score too low - likely incorrect location")
        return ResultValidation(
            is_valid=False,
            confidence=GeocodeConfidence.REJECT,
            match_score=match_score,
            issues=issues,
        )

    if candidate.confidence_cap is not None:
        confidence = lowest_confidence([confidence, candidate.confidence_cap])

    return ResultValidation(
        is_valid=True, confidence=confidence, match_score=match_score, issues=issues
    )


# ============================================================================
# Layer 3: Distance validation
# ============================================================================


def validate_distance(
    quality: AddressQuality,
    latitude: float,
    longitude: float,
    existing_latitude: float | None,
    existing_longitude: float | None,
) -> DistanceValidation:
    """
    Compare a new coordinate with the one the record already had.

    Complete addresses should land within 50m, street-level ones within
    200m, anything else within 500m. Beyond 500m the result is invalid.
    """
    if existing_latitude is None or existing_longitude is None:
        return DistanceValidation(
            is_valid=True, distance=None, within_threshold=True, threshold=0.0
        )

    distance = haversine_distance(existing_latitude, existing_longitude, latitude, longitude)

    if quality.is_complete:
        threshold = 50.0
    elif quality.has_street_number and quality.has_street_name:
        threshold = 200.0
    else:
        threshold = MAX_DISTANCE_METERS

    within_threshold = distance <= threshold
    is_valid = distance <= MAX_DISTANCE_METERS

    reason = None
    if not is_valid:
        reason = f"Distance {round(distance)}m exceeds maximum threshold of {int(MAX_DISTANCE_METERS)}m"
    elif not within_threshold:
        reason = (
            f"Distance {round(distance)}m exceeds quality threshold of {int(threshold)}m "
            f"but within {int(MAX_DISTANCE_METERS)}m limit"
        )

    return DistanceValidation(
        is_valid=is_valid,
        distance=distance,
        within_threshold=within_threshold,
        threshold=threshold,
        reason=reason,
    )


# ============================================================================
# Layer 4: Confidence scoring
# ============================================================================


def score_confidence(
    address: AddressValidationResult,
    result: ResultValidation,
    distance: DistanceValidation,
) -> FinalValidation:
    """
    Combine the three earlier layers into a final verdict.

    The final confidence is the weakest of the layers; a result that
    misses its quality threshold and lies more than 200m from the
    reference point counts as low. A result with any
    outstanding issue is never reported as high.
    """
    issues = [*address.issues, *result.issues]
    if distance.reason:
        issues.append(distance.reason)

    levels = [address.confidence, result.confidence]
    if not distance.within_threshold and (distance.distance or 0) > 200:
        levels.append(GeocodeConfidence.LOW)
    if not distance.is_valid:
        levels.append(GeocodeConfidence.REJECT)

    confidence = lowest_confidence(levels)
    if issues and confidence == GeocodeConfidence.HIGH:
        confidence = GeocodeConfidence.MEDIUM

    is_valid = (
        address.is_valid
        and result.is_valid
        and distance.is_valid
        and confidence != GeocodeConfidence.REJECT
    )

    return FinalValidation(
        is_valid=is_valid,
        confidence=confidence,
        match_score=result.match_score,
        issues=issues,
    )
