"""
Deduplication Module
====================

Finds and merges duplicate booth records across sources using:
- Normalized edit-distance similarity for names and addresses
- City/country agreement
- Great-circle distance, geocoding on demand when coordinates are missing
- A source trust table to decide whose data wins
- Conflict detection that routes disagreements to manual review

Runs after extraction and before records are persisted.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from booth_catalog.core.enums import (
    BoothStatus,
    MatchType,
    MergeStrategy,
    RecommendedAction,
)
from booth_catalog.core.schema import CandidateRecord, DuplicateMatch, GeocodeQuery
from booth_catalog.core.similarity import haversine_distance, name_similarity, normalize_text
from booth_catalog.ingestion.registry import DeduplicationConfig

if TYPE_CHECKING:
    from booth_catalog.core.schema import GeocodeResult
    from booth_catalog.geocoding.cascade import GeocodingCascade

logger = logging.getLogger(__name__)

# Higher priority = more trustworthy
SOURCE_PRIORITY: dict[str, int] = {
    # Tier 1: operator sites
    "photobooth_net": 100,
    "photomatica_com": 95,
    "photoautomat_de": 90,
    "photomatic_net": 85,
    # Tier 2: aggregators
    "google_maps": 75,
    "yelp": 70,
    "foursquare": 65,
    # Tier 3: directories
    "atlas_obscura": 60,
    "roadtrippers": 55,
    # Tier 4: community sources
    "smithsonian": 50,
    "reddit_photobooth": 45,
    "reddit_analog": 40,
    "analog_cafe": 35,
    # Default
    "generic": 30,
}

# Field disagreements that block an automatic merge
CONFLICT_FIELDS = ("is_operational", "cost", "hours", "machine_model")
CONFLICT_LABELS = {"is_operational": "operational_status"}

# Fields merge_booths never fills from the duplicate
_PROVENANCE_FIELDS = {"source_name", "source_url", "photos", "needs_review", "status"}

_NON_WORD_KEY = re.compile(r"[^\w]")


def source_key(source_name: str) -> str:
    """Normalize a source name into a trust-table key."""
    return _NON_WORD_KEY.sub("_", (source_name or "").lower())


def get_source_priority(source_name: str, overrides: dict[str, int] | None = None) -> int:
    """
    Look up how much a source is trusted.

    Unknown sources get the ``generic`` priority. Overrides from
    configuration take precedence over the built-in table.
    """
    table = dict(SOURCE_PRIORITY)
    if overrides:
        table.update({source_key(k): v for k, v in overrides.items()})
    return table.get(source_key(source_name), table["generic"])


def distance_score(distance_meters: float) -> float:
    """Map a distance to a 0-100 closeness score."""
    if distance_meters < 10:
        return 100.0
    if distance_meters < 50:
        return 80.0
    if distance_meters < 200:
        return 50.0
    if distance_meters < 1000:
        return 20.0
    return 0.0


def _same_value(a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        return a.strip().lower() == b.strip().lower()
    return a == b


def detect_conflicts(booth1: CandidateRecord, booth2: CandidateRecord) -> list[str]:
    """Fields both records set to different values."""
    conflicts = []
    for field_name in CONFLICT_FIELDS:
        a = getattr(booth1, field_name)
        b = getattr(booth2, field_name)
        if a in (None, "") or b in (None, ""):
            continue
        if not _same_value(a, b):
            conflicts.append(CONFLICT_LABELS.get(field_name, field_name))
    return conflicts


def compare_booths(
    booth1: CandidateRecord,
    booth2: CandidateRecord,
    config: DeduplicationConfig | None = None,
    geocode: Callable[[CandidateRecord], object] | None = None,
) -> DuplicateMatch | None:
    """
    Compare two records and decide whether they are the same booth.

    The composite confidence is a weighted average of name (0.4), address
    (0.3), location (0.2) and distance (0.1); components that could not
    be computed are left out and the remaining weights renormalized.

    Args:
        booth1: First record
        booth2: Second record
        config: Thresholds and trust overrides
        geocode: Fills in coordinates on a record lacking them, in place

    Returns:
        DuplicateMatch, or None when confidence is below the review threshold
    """
    config = config or DeduplicationConfig()

    name_score = name_similarity(booth1.name, booth2.name)
    weighted = name_score * 0.4
    weights = 0.4

    if booth1.address and booth2.address:
        weighted += name_similarity(booth1.address, booth2.address) * 0.3
        weights += 0.3

    location_score = 0.0
    if booth1.city and booth2.city:
        city_score = name_similarity(booth1.city, booth2.city)
        country_match = 100.0 if _same_value(booth1.country, booth2.country) else 0.0
        location_score = (city_score + country_match) / 2
        weighted += location_score * 0.2
        weights += 0.2

    if geocode is not None and booth1.address and booth2.address:
        for booth in (booth1, booth2):
            if not booth.has_coordinates:
                geocode(booth)

    distance_meters = None
    if booth1.has_coordinates and booth2.has_coordinates:
        distance_meters = haversine_distance(
            booth1.latitude, booth1.longitude, booth2.latitude, booth2.longitude
        )
        weighted += distance_score(distance_meters) * 0.1
        weights += 0.1

    confidence = round(weighted / weights, 2)

    if confidence >= config.exact_threshold:
        match_type, action = MatchType.EXACT, RecommendedAction.MERGE
    elif confidence >= config.high_confidence_threshold:
        match_type, action = MatchType.HIGH_CONFIDENCE, RecommendedAction.MERGE
    elif confidence >= config.probable_threshold:
        match_type, action = MatchType.PROBABLE, RecommendedAction.MANUAL_REVIEW
    elif confidence >= config.manual_review_threshold:
        match_type, action = MatchType.MANUAL_REVIEW, RecommendedAction.MANUAL_REVIEW
    else:
        return None

    priority1 = get_source_priority(booth1.source_name, config.source_priority)
    priority2 = get_source_priority(booth2.source_name, config.source_priority)
    if priority1 > priority2:
        primary, strategy = booth1, MergeStrategy.KEEP_PRIMARY
    elif priority2 > priority1:
        primary, strategy = booth2, MergeStrategy.KEEP_PRIMARY
    else:
        primary, strategy = booth1, MergeStrategy.MERGE_FIELDS

    conflicts = detect_conflicts(booth1, booth2)
    if conflicts and confidence < config.exact_threshold:
        action = RecommendedAction.MANUAL_REVIEW

    return DuplicateMatch(
        booth1=booth1,
        booth2=booth2,
        confidence_score=confidence,
        match_type=match_type,
        name_similarity=name_score,
        location_similarity=location_score,
        distance_meters=round(distance_meters, 1) if distance_meters is not None else None,
        recommended_action=action,
        merge_strategy=strategy,
        primary_booth=primary,
        conflicts=conflicts,
    )


def _union_photos(primary: CandidateRecord, duplicate: CandidateRecord) -> list[str]:
    return [*primary.photos, *(p for p in duplicate.photos if p not in primary.photos)]


def _is_missing(value: Any) -> bool:
    return value is None or value == ""


def merge_booths(
    primary: CandidateRecord,
    duplicate: CandidateRecord,
    strategy: MergeStrategy,
) -> CandidateRecord:
    """
    Combine two records describing the same booth.

    - keep_primary: the primary's values stand; only its empty fields are
      filled from the duplicate, and photo lists are unioned
    - keep_duplicate: keep_primary with the roles swapped
    - merge_fields: used on trust ties; the longer name wins, feature
      flags are OR-ed, an active status wins, descriptions are joined

    Returns:
        A new record; neither input is modified
    """
    if strategy == MergeStrategy.KEEP_DUPLICATE:
        return merge_booths(duplicate, primary, MergeStrategy.KEEP_PRIMARY)

    updates: dict[str, Any] = {}
    for field_name in CandidateRecord.model_fields:
        if field_name in _PROVENANCE_FIELDS:
            continue
        if _is_missing(getattr(primary, field_name)):
            other = getattr(duplicate, field_name)
            if not _is_missing(other):
                updates[field_name] = other
    updates["photos"] = _union_photos(primary, duplicate)

    if strategy == MergeStrategy.MERGE_FIELDS:
        updates["name"] = primary.name if len(primary.name) >= len(duplicate.name) else duplicate.name
        if primary.is_operational is not None or duplicate.is_operational is not None:
            updates["is_operational"] = bool(primary.is_operational or duplicate.is_operational)
        updates["status"] = (
            primary.status if primary.status == BoothStatus.ACTIVE else duplicate.status
        )
        descriptions = [d for d in (primary.description, duplicate.description) if d]
        if descriptions:
            updates["description"] = " | ".join(dict.fromkeys(descriptions))
        updates["needs_review"] = primary.needs_review or duplicate.needs_review

    return primary.model_copy(update=updates, deep=True)


@dataclass
class DeduplicationStats:
    """Counts from one deduplication pass."""

    original_count: int = 0
    deduplicated_count: int = 0
    exact_matches: int = 0
    high_confidence_matches: int = 0
    probable_matches: int = 0
    manual_review_count: int = 0
    merged_count: int = 0

    def to_dict(self) -> dict[str, int]:
        """Convert to dictionary for serialization."""
        return {
            "original_count": self.original_count,
            "deduplicated_count": self.deduplicated_count,
            "exact_matches": self.exact_matches,
            "high_confidence_matches": self.high_confidence_matches,
            "probable_matches": self.probable_matches,
            "manual_review_count": self.manual_review_count,
            "merged_count": self.merged_count,
        }


@dataclass
class DeduplicationResult:
    """Surviving records, every match found, and the pass statistics."""

    records: list[CandidateRecord] = field(default_factory=list)
    duplicates: list[DuplicateMatch] = field(default_factory=list)
    stats: DeduplicationStats = field(default_factory=DeduplicationStats)
    stopped: bool = False

    @property
    def review_matches(self) -> list[DuplicateMatch]:
        """Matches a human has to resolve."""
        return [
            m for m in self.duplicates if m.recommended_action == RecommendedAction.MANUAL_REVIEW
        ]


class Deduplicator:
    """
    Batch deduplication over a set of candidate records.

    Records live in an arena indexed by position; an absorbed-index set
    marks records merged into an earlier one. Runs on a single worker.
    """

    def __init__(
        self,
        config: DeduplicationConfig | None = None,
        geocoder: GeocodingCascade | None = None,
    ) -> None:
        self.config = config or DeduplicationConfig()
        self.geocoder = geocoder
        self._geocode_cache: dict[tuple[str, str, str, str], GeocodeResult | None] = {}

    def geocode_record(self, record: CandidateRecord) -> bool:
        """
        Fill coordinates on a record in place through the cascade.

        Results, failures included, are cached per normalized address so a
        venue seen on several pages is looked up once.

        Returns:
            True when coordinates were applied
        """
        if self.geocoder is None or not record.address:
            return False

        key = (
            normalize_text(record.name),
            normalize_text(record.address),
            normalize_text(record.city or ""),
            normalize_text(record.country or ""),
        )
        if key not in self._geocode_cache:
            self._geocode_cache[key] = self.geocoder.geocode(GeocodeQuery.from_record(record))

        result = self._geocode_cache[key]
        if result is None:
            return False
        record.latitude = result.latitude
        record.longitude = result.longitude
        record.geocode_provider = result.provider
        record.geocode_confidence = result.confidence
        record.needs_review = record.needs_review or result.needs_review
        return True

    def _quick_reject(self, booth1: CandidateRecord, booth2: CandidateRecord) -> bool:
        if booth1.country and booth2.country and not _same_value(booth1.country, booth2.country):
            return True
        prefix = self.config.quick_name_prefix
        quick_score = name_similarity(booth1.name[:prefix], booth2.name[:prefix])
        return quick_score < self.config.quick_name_threshold

    def compare(self, booth1: CandidateRecord, booth2: CandidateRecord) -> DuplicateMatch | None:
        """Compare two records with this engine's config and geocoder."""
        geocode = self.geocode_record if self.geocoder is not None else None
        return compare_booths(booth1, booth2, self.config, geocode)

    def deduplicate(
        self,
        records: list[CandidateRecord],
        stop_requested: Callable[[], bool] | None = None,
    ) -> DeduplicationResult:
        """
        Find duplicates within a batch and merge the confident ones.

        Each surviving record is compared with every later one. On a merge
        recommendation the earlier record is replaced by the merged record
        and the later one is absorbed. Lower-confidence matches are only
        reported for review.

        Args:
            records: Valid candidate records
            stop_requested: Polled before each record; once it returns True
                the remaining records pass through unexamined

        Returns:
            DeduplicationResult with survivors in input order
        """
        arena = list(records)
        absorbed: set[int] = set()
        result = DeduplicationResult()

        logger.info(f"Starting deduplication of {len(arena)} booths")

        for i in range(len(arena)):
            if i in absorbed:
                continue
            if stop_requested is not None and stop_requested():
                logger.info(f"Deduplication stopped after {i} of {len(arena)} booths")
                result.stopped = True
                break

            for j in range(i + 1, len(arena)):
                if j in absorbed:
                    continue
                current, other = arena[i], arena[j]
                if self._quick_reject(current, other):
                    continue

                match = self.compare(current, other)
                if match is None:
                    continue
                result.duplicates.append(match)

                if match.recommended_action == RecommendedAction.MERGE:
                    arena[i] = merge_booths(
                        match.primary_booth, match.duplicate_booth, match.merge_strategy
                    )
                    absorbed.add(j)
                    logger.info(
                        f'Auto-merged "{current.name}" + "{other.name}" '
                        f"(confidence {match.confidence_score}%)"
                    )
                elif match.conflicts:
                    logger.info(
                        f'Conflicting fields for "{current.name}" / "{other.name}": '
                        f"{', '.join(match.conflicts)}"
                    )

        result.records = [record for index, record in enumerate(arena) if index not in absorbed]

        stats = result.stats
        stats.original_count = len(arena)
        stats.deduplicated_count = len(result.records)
        stats.merged_count = len(absorbed)
        stats.exact_matches = sum(1 for m in result.duplicates if m.match_type == MatchType.EXACT)
        stats.high_confidence_matches = sum(
            1 for m in result.duplicates if m.match_type == MatchType.HIGH_CONFIDENCE
        )
        stats.probable_matches = sum(
            1 for m in result.duplicates if m.match_type == MatchType.PROBABLE
        )
        stats.manual_review_count = len(result.review_matches)

        logger.info(
            f"Deduplication complete: {stats.original_count} -> {stats.deduplicated_count} "
            f"({stats.manual_review_count} for manual review)"
        )
        return result
