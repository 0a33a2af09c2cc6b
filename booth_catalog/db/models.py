"""SQLAlchemy ORM models for the booth catalog database.

These models define the tables written by the ingestion pipeline:
- CrawlSourceDB (sources and their pattern-learning state)
- ExtractionPatternDB, PatternValidationDB (learned patterns)
- BoothDB (deduplicated catalog records)
- BoothDuplicateDB (matches waiting for manual review)
"""

from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utc_now() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(UTC)


def _generate_uuid() -> str:
    """Generate a UUID string."""
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ============================================================================
# Sources and Patterns
# ============================================================================


class CrawlSourceDB(Base):
    """
    Database model for crawl sources.

    Static settings are synced from sources.yaml; learning status and
    timestamps are written by the pattern learner.
    """

    __tablename__ = "crawl_sources"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True, index=True)
    domain: Mapped[str] = mapped_column(String(255), default="")
    source_type: Mapped[str] = mapped_column(String(20), default="directory")
    extraction_mode: Mapped[str] = mapped_column(String(10), default="hybrid")
    pattern_learning_status: Mapped[str] = mapped_column(String(20), default="not_started")
    pattern_learned_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    # Relationships
    patterns: Mapped[list["ExtractionPatternDB"]] = relationship(
        "ExtractionPatternDB", back_populates="source", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<CrawlSourceDB(id={self.id}, name='{self.name}', mode='{self.extraction_mode}')>"


class ExtractionPatternDB(Base):
    """
    Database model for learned extraction patterns.

    One row per (source, field, selector); relearning updates in place.
    """

    __tablename__ = "extraction_patterns"
    __table_args__ = (
        UniqueConstraint("source_id", "field_name", "selector", name="uq_pattern_source_field_selector"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    source_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("crawl_sources.id"), nullable=False, index=True
    )
    field_name: Mapped[str] = mapped_column(String(50), nullable=False)
    pattern_type: Mapped[str] = mapped_column(String(20), default="css_selector")
    selector: Mapped[str] = mapped_column(Text, nullable=False)
    fallback_selectors_json: Mapped[str] = mapped_column(Text, default="[]")  # JSON array
    extraction_method: Mapped[str] = mapped_column(String(20), default="text")
    extraction_args_json: Mapped[str] = mapped_column(Text, default="{}")  # JSON object
    validation_regex: Mapped[str | None] = mapped_column(Text, nullable=True)
    required: Mapped[bool] = mapped_column(Boolean, default=False)
    transform_fn: Mapped[str | None] = mapped_column(String(50), nullable=True)
    seed_confidence: Mapped[float] = mapped_column(Float, default=0.5)
    confidence_score: Mapped[float] = mapped_column(Float, default=0.5)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, default=0)
    learned_from_run_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    learned_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    last_validated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Relationships
    source: Mapped["CrawlSourceDB"] = relationship("CrawlSourceDB", back_populates="patterns")

    def __repr__(self) -> str:
        return (
            f"<ExtractionPatternDB(id={self.id}, field='{self.field_name}', "
            f"confidence={self.confidence_score})>"
        )


class PatternValidationDB(Base):
    """Database model for per-pattern validation events."""

    __tablename__ = "pattern_validations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    pattern_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("extraction_patterns.id"), nullable=False, index=True
    )
    crawl_run_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    extracted_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    latency_ms: Mapped[float] = mapped_column(Float, default=0.0)
    source_url: Mapped[str] = mapped_column(String(2000), default="")
    html_snippet: Mapped[str] = mapped_column(Text, default="")
    validated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    def __repr__(self) -> str:
        return f"<PatternValidationDB(pattern_id={self.pattern_id}, success={self.success})>"


# ============================================================================
# Booths
# ============================================================================


class BoothDB(Base):
    """
    Database model for catalog booths.

    ``match_key`` is the normalized (name, address, country) triple used
    to upsert records from repeated crawls.
    """

    __tablename__ = "booths"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    match_key: Mapped[str] = mapped_column(String(600), nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    address: Mapped[str] = mapped_column(String(500), nullable=False)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    state: Mapped[str | None] = mapped_column(String(100), nullable=True)
    country: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    geocode_provider: Mapped[str | None] = mapped_column(String(20), nullable=True)
    geocode_confidence: Mapped[str | None] = mapped_column(String(10), nullable=True)
    needs_review: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(String(20), default="unverified")
    source_name: Mapped[str] = mapped_column(String(100), default="")
    source_url: Mapped[str] = mapped_column(String(2000), default="")
    record_json: Mapped[str] = mapped_column(Text, nullable=False)  # full CandidateRecord
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    def __repr__(self) -> str:
        return f"<BoothDB(id={self.id}, name='{self.name}', city='{self.city}')>"


class BoothDuplicateDB(Base):
    """Database model for duplicate matches routed to manual review."""

    __tablename__ = "booth_duplicates"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    booth1_json: Mapped[str] = mapped_column(Text, nullable=False)
    booth2_json: Mapped[str] = mapped_column(Text, nullable=False)
    booth1_name: Mapped[str] = mapped_column(String(255), default="")
    booth2_name: Mapped[str] = mapped_column(String(255), default="")
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False)
    match_type: Mapped[str] = mapped_column(String(20), nullable=False)
    name_similarity: Mapped[float] = mapped_column(Float, default=0.0)
    location_similarity: Mapped[float] = mapped_column(Float, default=0.0)
    distance_meters: Mapped[float | None] = mapped_column(Float, nullable=True)
    conflicts_json: Mapped[str] = mapped_column(Text, default="[]")  # JSON array
    merge_strategy: Mapped[str] = mapped_column(String(20), default="keep_primary")
    primary_is_booth1: Mapped[bool] = mapped_column(Boolean, default=True)
    review_status: Mapped[str] = mapped_column(String(20), default="pending")  # pending/merged/kept
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    def __repr__(self) -> str:
        return (
            f"<BoothDuplicateDB(id={self.id}, '{self.booth1_name}' ~ '{self.booth2_name}', "
            f"confidence={self.confidence_score})>"
        )
