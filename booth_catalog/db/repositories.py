"""Repository ports and SQLAlchemy implementations for pipeline persistence.

Each pipeline component receives only the port it needs:
- SourceRepository: source rows and pattern-learning status
- PatternRepository: learned patterns and their validation history
- MatchRepository: duplicate matches waiting for manual review
- BoothRepository: deduplicated catalog records
"""

import json
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from booth_catalog.core.enums import (
    ExtractionMethod,
    ExtractionMode,
    MergeStrategy,
    PatternLearningStatus,
    PatternType,
    SourceType,
)
from booth_catalog.core.schema import (
    CandidateRecord,
    CrawlSource,
    DuplicateMatch,
    LearnedPattern,
    PatternValidationEvent,
)
from booth_catalog.core.similarity import normalize_text
from booth_catalog.db.models import (
    BoothDB,
    BoothDuplicateDB,
    CrawlSourceDB,
    ExtractionPatternDB,
    PatternValidationDB,
)
from booth_catalog.ingestion.deduplication import merge_booths
from booth_catalog.ingestion.pattern_learning import CONFIDENCE_PRIOR_WEIGHT, revise_confidence
from booth_catalog.ingestion.registry import SourceConfig


def _utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


def _as_utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo; stored timestamps are always UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# ============================================================================
# Ports
# ============================================================================


class SourceRepository(ABC):
    """Persistence port for crawl sources."""

    @abstractmethod
    def get_or_create(self, config: SourceConfig) -> CrawlSource:
        """Fetch the stored source for a config entry, creating it on first use."""

    @abstractmethod
    def get_by_name(self, name: str) -> CrawlSource | None:
        """Get a source by its configured name."""

    @abstractmethod
    def list_all(self) -> list[CrawlSource]:
        """List all stored sources."""

    @abstractmethod
    def update_learning_status(
        self,
        source_id: UUID,
        status: PatternLearningStatus,
        mode: ExtractionMode | None = None,
        learned_at: datetime | None = None,
    ) -> None:
        """Record a pattern-learning outcome and, optionally, the new mode."""


class PatternRepository(ABC):
    """Persistence port for learned patterns."""

    @abstractmethod
    def get_active_patterns(self, source_id: UUID, min_confidence: float = 0.0) -> list[LearnedPattern]:
        """Active patterns for a source at or above a confidence floor."""

    @abstractmethod
    def list_patterns(self, source_id: UUID) -> list[LearnedPattern]:
        """All patterns for a source, active or not."""

    @abstractmethod
    def upsert_patterns(
        self,
        source_id: UUID,
        patterns: list[LearnedPattern],
        run_id: str | None = None,
    ) -> list[LearnedPattern]:
        """
        Store patterns keyed by (source, field, selector) and return them with ids.

        Active patterns for a relearned field whose selector was not emitted
        again are deactivated, not deleted.
        """

    @abstractmethod
    def record_validation(self, event: PatternValidationEvent) -> None:
        """Append a validation event and revise the pattern's confidence."""


class MatchRepository(ABC):
    """Persistence port for duplicate matches needing review."""

    @abstractmethod
    def save_for_review(self, match: DuplicateMatch) -> str:
        """Store a match and return its id."""

    @abstractmethod
    def list_pending(self, limit: int = 100) -> list[dict]:
        """Matches nobody has resolved yet, highest confidence first."""


class BoothRepository(ABC):
    """Persistence port for catalog booths."""

    @abstractmethod
    def upsert(self, record: CandidateRecord) -> str:
        """Insert or update a booth and return its id."""

    @abstractmethod
    def count(self) -> int:
        """Total number of stored booths."""


# ============================================================================
# SQLAlchemy implementations
# ============================================================================


class SqlSourceRepository(SourceRepository):
    """Source repository backed by the crawl_sources table."""

    def __init__(self, session: Session):
        self.session = session

    def _get_db(self, **criteria) -> CrawlSourceDB | None:
        stmt = select(CrawlSourceDB).filter_by(**criteria)
        return self.session.execute(stmt).scalar_one_or_none()

    def get_or_create(self, config: SourceConfig) -> CrawlSource:
        db_item = self._get_db(name=config.name)
        if db_item is None:
            db_item = CrawlSourceDB(
                name=config.name,
                pattern_learning_status=PatternLearningStatus.NOT_STARTED.value,
            )
            self.session.add(db_item)

        # Configuration is authoritative for the static fields
        db_item.domain = config.domain
        db_item.source_type = config.source_type.value
        db_item.extraction_mode = config.extraction_mode.value
        db_item.enabled = config.enabled

        self.session.flush()
        return self._to_domain(db_item)

    def get_by_name(self, name: str) -> CrawlSource | None:
        db_item = self._get_db(name=name)
        return self._to_domain(db_item) if db_item else None

    def list_all(self) -> list[CrawlSource]:
        stmt = select(CrawlSourceDB).order_by(CrawlSourceDB.name)
        return [self._to_domain(s) for s in self.session.execute(stmt).scalars().all()]

    def update_learning_status(
        self,
        source_id: UUID,
        status: PatternLearningStatus,
        mode: ExtractionMode | None = None,
        learned_at: datetime | None = None,
    ) -> None:
        db_item = self._get_db(id=str(source_id))
        if db_item is None:
            raise ValueError(f"Source with id {source_id} not found")

        db_item.pattern_learning_status = status.value
        if mode is not None:
            db_item.extraction_mode = mode.value
        if learned_at is not None:
            db_item.pattern_learned_at = learned_at
        db_item.updated_at = _utc_now()
        self.session.flush()

    def _to_domain(self, db_item: CrawlSourceDB) -> CrawlSource:
        """Convert DB model to domain model."""
        return CrawlSource(
            id=UUID(db_item.id),
            name=db_item.name,
            domain=db_item.domain,
            source_type=SourceType(db_item.source_type),
            extraction_mode=ExtractionMode(db_item.extraction_mode),
            pattern_learning_status=PatternLearningStatus(db_item.pattern_learning_status),
            pattern_learned_at=_as_utc(db_item.pattern_learned_at),
            enabled=db_item.enabled,
        )


class SqlPatternRepository(PatternRepository):
    """
    Pattern repository backed by extraction_patterns and pattern_validations.

    Args:
        session: Open SQLAlchemy session
        active_floor: Patterns revised below this confidence are deactivated
            once they have enough validation history
    """

    def __init__(self, session: Session, active_floor: float = 0.3):
        self.session = session
        self.active_floor = active_floor

    def get_active_patterns(self, source_id: UUID, min_confidence: float = 0.0) -> list[LearnedPattern]:
        stmt = (
            select(ExtractionPatternDB)
            .where(ExtractionPatternDB.source_id == str(source_id))
            .where(ExtractionPatternDB.is_active.is_(True))
            .where(ExtractionPatternDB.confidence_score >= min_confidence)
            .order_by(ExtractionPatternDB.field_name)
        )
        return [self._to_domain(p) for p in self.session.execute(stmt).scalars().all()]

    def list_patterns(self, source_id: UUID) -> list[LearnedPattern]:
        stmt = (
            select(ExtractionPatternDB)
            .where(ExtractionPatternDB.source_id == str(source_id))
            .order_by(ExtractionPatternDB.field_name, ExtractionPatternDB.confidence_score.desc())
        )
        return [self._to_domain(p) for p in self.session.execute(stmt).scalars().all()]

    def upsert_patterns(
        self,
        source_id: UUID,
        patterns: list[LearnedPattern],
        run_id: str | None = None,
    ) -> list[LearnedPattern]:
        stored = []
        for pattern in patterns:
            stmt = select(ExtractionPatternDB).where(
                ExtractionPatternDB.source_id == str(source_id),
                ExtractionPatternDB.field_name == pattern.field_name,
                ExtractionPatternDB.selector == pattern.selector,
            )
            db_item = self.session.execute(stmt).scalar_one_or_none()
            if db_item is None:
                db_item = ExtractionPatternDB(
                    source_id=str(source_id),
                    field_name=pattern.field_name,
                    selector=pattern.selector,
                )
                self.session.add(db_item)

            # A relearned pattern starts a fresh validation history
            db_item.pattern_type = pattern.pattern_type.value
            db_item.fallback_selectors_json = json.dumps(pattern.fallback_selectors)
            db_item.extraction_method = pattern.extraction_method.value
            db_item.extraction_args_json = json.dumps(pattern.extraction_args)
            db_item.validation_regex = pattern.validation_regex
            db_item.required = pattern.required
            db_item.transform_fn = pattern.transform_fn
            db_item.seed_confidence = pattern.confidence_score
            db_item.confidence_score = pattern.confidence_score
            db_item.is_active = True
            db_item.success_count = 0
            db_item.failure_count = 0
            db_item.learned_from_run_id = run_id
            db_item.learned_at = pattern.learned_at
            stored.append(db_item)

        self.session.flush()
        self._retire_superseded(source_id, {(p.field_name, p.selector) for p in patterns})
        return [self._to_domain(p) for p in stored]

    def _retire_superseded(self, source_id: UUID, emitted: set[tuple[str, str]]) -> None:
        fields = {field_name for field_name, _ in emitted}
        if not fields:
            return
        stmt = select(ExtractionPatternDB).where(
            ExtractionPatternDB.source_id == str(source_id),
            ExtractionPatternDB.field_name.in_(fields),
            ExtractionPatternDB.is_active.is_(True),
        )
        for db_item in self.session.execute(stmt).scalars():
            if (db_item.field_name, db_item.selector) not in emitted:
                db_item.is_active = False
        self.session.flush()

    def record_validation(self, event: PatternValidationEvent) -> None:
        if event.pattern_id is None:
            return
        db_item = self.session.get(ExtractionPatternDB, str(event.pattern_id))
        if db_item is None:
            return

        self.session.add(
            PatternValidationDB(
                pattern_id=db_item.id,
                crawl_run_id=event.crawl_run_id,
                success=event.success,
                extracted_value=event.extracted_value,
                latency_ms=event.latency_ms,
                source_url=event.source_url,
                html_snippet=event.html_snippet,
                validated_at=event.validated_at,
            )
        )

        if event.success:
            db_item.success_count += 1
        else:
            db_item.failure_count += 1
        attempts = db_item.success_count + db_item.failure_count
        db_item.confidence_score = revise_confidence(
            db_item.seed_confidence, db_item.success_count, attempts
        )
        if attempts >= CONFIDENCE_PRIOR_WEIGHT and db_item.confidence_score < self.active_floor:
            db_item.is_active = False
        db_item.last_validated_at = event.validated_at
        self.session.flush()

    def _to_domain(self, db_item: ExtractionPatternDB) -> LearnedPattern:
        """Convert DB model to domain model."""
        return LearnedPattern(
            id=UUID(db_item.id),
            source_id=UUID(db_item.source_id),
            field_name=db_item.field_name,
            pattern_type=PatternType(db_item.pattern_type),
            selector=db_item.selector,
            fallback_selectors=json.loads(db_item.fallback_selectors_json),
            extraction_method=ExtractionMethod(db_item.extraction_method),
            extraction_args=json.loads(db_item.extraction_args_json),
            validation_regex=db_item.validation_regex,
            required=db_item.required,
            transform_fn=db_item.transform_fn,
            confidence_score=db_item.confidence_score,
            is_active=db_item.is_active,
            success_count=db_item.success_count,
            failure_count=db_item.failure_count,
            learned_at=_as_utc(db_item.learned_at),
        )


class SqlMatchRepository(MatchRepository):
    """Match repository backed by the booth_duplicates table."""

    def __init__(self, session: Session):
        self.session = session

    def save_for_review(self, match: DuplicateMatch) -> str:
        db_item = BoothDuplicateDB(
            booth1_json=match.booth1.model_dump_json(),
            booth2_json=match.booth2.model_dump_json(),
            booth1_name=match.booth1.name,
            booth2_name=match.booth2.name,
            confidence_score=match.confidence_score,
            match_type=match.match_type.value,
            name_similarity=match.name_similarity,
            location_similarity=match.location_similarity,
            distance_meters=match.distance_meters,
            conflicts_json=json.dumps(match.conflicts),
            merge_strategy=match.merge_strategy.value,
            primary_is_booth1=match.primary_booth is match.booth1,
        )
        self.session.add(db_item)
        self.session.flush()
        return db_item.id

    def list_pending(self, limit: int = 100) -> list[dict]:
        stmt = (
            select(BoothDuplicateDB)
            .where(BoothDuplicateDB.review_status == "pending")
            .order_by(BoothDuplicateDB.confidence_score.desc())
            .limit(limit)
        )
        return [
            {
                "id": m.id,
                "booth1_name": m.booth1_name,
                "booth2_name": m.booth2_name,
                "confidence_score": m.confidence_score,
                "match_type": m.match_type,
                "distance_meters": m.distance_meters,
                "conflicts": json.loads(m.conflicts_json),
            }
            for m in self.session.execute(stmt).scalars().all()
        ]

    def count_pending(self) -> int:
        """Number of unresolved matches."""
        stmt = (
            select(func.count())
            .select_from(BoothDuplicateDB)
            .where(BoothDuplicateDB.review_status == "pending")
        )
        return self.session.execute(stmt).scalar() or 0


def booth_match_key(record: CandidateRecord) -> str:
    """Normalized (name, address, country) key for catalog upserts."""
    return "|".join(
        normalize_text(value or "") for value in (record.name, record.address, record.country)
    )


class SqlBoothRepository(BoothRepository):
    """Booth repository backed by the booths table."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_key(self, record: CandidateRecord) -> CandidateRecord | None:
        """Stored booth with the same normalized name, address and country."""
        db_item = self._get_db(booth_match_key(record))
        return CandidateRecord.model_validate_json(db_item.record_json) if db_item else None

    def _get_db(self, key: str) -> BoothDB | None:
        stmt = select(BoothDB).where(BoothDB.match_key == key)
        return self.session.execute(stmt).scalar_one_or_none()

    def upsert(self, record: CandidateRecord) -> str:
        key = booth_match_key(record)
        db_item = self._get_db(key)
        if db_item is None:
            db_item = BoothDB(match_key=key)
            self.session.add(db_item)
        else:
            # Newest crawl wins; fields it lacks are kept from the stored copy
            stored = CandidateRecord.model_validate_json(db_item.record_json)
            record = merge_booths(record, stored, MergeStrategy.KEEP_PRIMARY)

        db_item.name = record.name
        db_item.address = record.address
        db_item.city = record.city
        db_item.state = record.state
        db_item.country = record.country
        db_item.latitude = record.latitude
        db_item.longitude = record.longitude
        db_item.geocode_provider = record.geocode_provider.value if record.geocode_provider else None
        db_item.geocode_confidence = (
            record.geocode_confidence.value if record.geocode_confidence else None
        )
        db_item.needs_review = record.needs_review
        db_item.status = record.status.value
        db_item.source_name = record.source_name
        db_item.source_url = record.source_url
        db_item.record_json = record.model_dump_json()
        self.session.flush()
        return db_item.id

    def count(self) -> int:
        stmt = select(func.count()).select_from(BoothDB)
        return self.session.execute(stmt).scalar() or 0

    def list_all(self, limit: int = 100, offset: int = 0) -> list[CandidateRecord]:
        """List stored booths with pagination."""
        stmt = select(BoothDB).order_by(BoothDB.name).limit(limit).offset(offset)
        return [
            CandidateRecord.model_validate_json(b.record_json)
            for b in self.session.execute(stmt).scalars().all()
        ]
