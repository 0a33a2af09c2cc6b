"""Pydantic v2 models for the booth extraction and resolution pipeline.

These models define the records that flow through the pipeline:
- CandidateRecord (a provisional venue extracted from one page)
- CrawlSource (a source plus its extraction/learning state)
- LearnedPattern, PatternValidationEvent (pattern learning)
- DuplicateMatch (deduplication)
- GeocodeQuery, GeocodeResult (geocoding cascade)
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from booth_catalog.core.enums import (
    BoothStatus,
    ExtractionMethod,
    ExtractionMode,
    GeocodeConfidence,
    GeocodeProvider,
    MatchType,
    MergeStrategy,
    PatternLearningStatus,
    PatternType,
    RecommendedAction,
    SourceType,
)


def _utc_now() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(UTC)


# ============================================================================
# Candidate Records
# ============================================================================


class CandidateRecord(BaseModel):
    """
    A provisional booth/venue entity extracted from one page.

    Only ``name`` and ``address`` are required for a record to be usable;
    everything else is filled in as sources provide it.
    """

    name: str = ""
    address: str = ""
    city: str | None = None
    state: str | None = None
    country: str | None = None
    postal_code: str | None = None
    latitude: float | None = None
    longitude: float | None = None

    # Machine details
    machine_model: str | None = None
    machine_manufacturer: str | None = None
    booth_type: str | None = None

    # Operational details
    cost: str | None = None
    accepts_cash: bool | None = None
    accepts_card: bool | None = None
    hours: str | None = None
    is_operational: bool | None = None
    status: BoothStatus = BoothStatus.UNVERIFIED

    # Content and contact
    description: str | None = None
    website: str | None = None
    phone: str | None = None
    photos: list[str] = Field(default_factory=list)

    # Provenance
    source_name: str = ""
    source_url: str = ""

    # Geocoding metadata (set by the cascade backfill)
    geocode_provider: GeocodeProvider | None = None
    geocode_confidence: GeocodeConfidence | None = None
    needs_review: bool = False

    @field_validator("name", "address", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        if v is None:
            return ""
        if isinstance(v, str):
            return v.strip()
        return v

    @property
    def is_valid(self) -> bool:
        """A record needs a name and an address to enter deduplication."""
        return bool(self.name) and bool(self.address) and self.name != "N/A"

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


# ============================================================================
# Sources and Patterns
# ============================================================================


class CrawlSource(BaseModel):
    """
    A crawl source together with its extraction state.

    The static part comes from sources.yaml; the learning status and
    timestamps are owned by the persistence layer.
    """

    id: UUID = Field(default_factory=uuid4)
    name: str
    domain: str = ""
    source_type: SourceType = SourceType.DIRECTORY
    extraction_mode: ExtractionMode = ExtractionMode.HYBRID
    pattern_learning_status: PatternLearningStatus = PatternLearningStatus.NOT_STARTED
    pattern_learned_at: datetime | None = None
    enabled: bool = True

    @field_validator("name")
    @classmethod
    def name_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("name cannot be empty")
        return v.strip()


class LearnedPattern(BaseModel):
    """A reusable extraction rule for one field of one source."""

    id: UUID | None = None
    source_id: UUID | None = None
    field_name: str
    pattern_type: PatternType = PatternType.CSS_SELECTOR
    selector: str
    fallback_selectors: list[str] = Field(default_factory=list)
    extraction_method: ExtractionMethod = ExtractionMethod.TEXT
    extraction_args: dict[str, Any] = Field(default_factory=dict)
    validation_regex: str | None = None
    required: bool = False
    transform_fn: str | None = None
    confidence_score: float = Field(default=0.5, ge=0.0, le=1.0)
    is_active: bool = True
    success_count: int = 0
    failure_count: int = 0
    learned_at: datetime = Field(default_factory=_utc_now)


class PatternValidationEvent(BaseModel):
    """Outcome of applying one pattern during a direct scraping run."""

    pattern_id: UUID | None = None
    source_id: UUID | None = None
    field_name: str
    selector: str
    crawl_run_id: str | None = None
    success: bool
    extracted_value: str | None = None
    latency_ms: float = 0.0
    source_url: str = ""
    html_snippet: str = ""
    validated_at: datetime = Field(default_factory=_utc_now)

    @field_validator("html_snippet")
    @classmethod
    def truncate_snippet(cls, v: str) -> str:
        return v[:500]


# ============================================================================
# Deduplication
# ============================================================================


class DuplicateMatch(BaseModel):
    """
    Outcome of comparing two candidate records.

    ``primary_booth`` is the same object as either ``booth1`` or ``booth2``.
    """

    booth1: CandidateRecord
    booth2: CandidateRecord
    confidence_score: float = Field(ge=0.0, le=100.0)
    match_type: MatchType
    name_similarity: float
    location_similarity: float
    distance_meters: float | None = None
    recommended_action: RecommendedAction
    merge_strategy: MergeStrategy
    primary_booth: CandidateRecord
    conflicts: list[str] = Field(default_factory=list)

    @property
    def duplicate_booth(self) -> CandidateRecord:
        """The record that is not the primary."""
        return self.booth2 if self.primary_booth is self.booth1 else self.booth1


# ============================================================================
# Geocoding
# ============================================================================


class GeocodeQuery(BaseModel):
    """Address data handed to the geocoding cascade."""

    name: str = ""
    address: str
    city: str | None = None
    state: str | None = None
    country: str | None = None
    existing_latitude: float | None = None
    existing_longitude: float | None = None

    @classmethod
    def from_record(cls, record: CandidateRecord) -> "GeocodeQuery":
        return cls(
            name=record.name,
            address=record.address,
            city=record.city,
            state=record.state,
            country=record.country,
            existing_latitude=record.latitude,
            existing_longitude=record.longitude,
        )


class GeocodeResult(BaseModel):
    """
    Coordinates resolved by one tier of the cascade.

    Any validation issue forces ``needs_review`` and rules out
    ``high`` confidence.
    """

    latitude: float
    longitude: float
    display_address: str = ""
    provider: GeocodeProvider
    confidence: GeocodeConfidence
    match_score: float = 0.0
    validation_issues: list[str] = Field(default_factory=list)
    needs_review: bool = False

    @model_validator(mode="after")
    def enforce_review_flag(self) -> "GeocodeResult":
        if self.validation_issues and self.confidence == GeocodeConfidence.HIGH:
            self.confidence = GeocodeConfidence.MEDIUM
        if self.validation_issues or self.confidence != GeocodeConfidence.HIGH:
            self.needs_review = True
        return self
