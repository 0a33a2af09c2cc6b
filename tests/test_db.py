"""Tests for database persistence layer."""

import tempfile
from datetime import UTC, datetime
from pathlib import Path
from uuid import uuid4

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker

from booth_catalog.core.enums import (
    ExtractionMode,
    GeocodeConfidence,
    GeocodeProvider,
    MatchType,
    MergeStrategy,
    PatternLearningStatus,
    RecommendedAction,
    SourceType,
)
from booth_catalog.core.schema import (
    CandidateRecord,
    DuplicateMatch,
    LearnedPattern,
    PatternValidationEvent,
)
from booth_catalog.db.engine import get_database_url
from booth_catalog.db.models import Base, PatternValidationDB
from booth_catalog.db.repositories import (
    SqlBoothRepository,
    SqlMatchRepository,
    SqlPatternRepository,
    SqlSourceRepository,
    booth_match_key,
)
from booth_catalog.ingestion.registry import SourceConfig


@pytest.fixture
def temp_db_path():
    """Create a temporary database file."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test.db"


@pytest.fixture
def engine(temp_db_path):
    """Create a test database engine."""
    url = f"sqlite:///{temp_db_path}"
    engine = create_engine(url, echo=False)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    """Create a database session for testing."""
    SessionLocal = sessionmaker(bind=engine)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def stored_source(session: Session):
    """A source row to hang patterns on."""
    return SqlSourceRepository(session).get_or_create(
        SourceConfig(name="photobooth.net", domain="photobooth.net", source_type=SourceType.OPERATOR)
    )


def validation(pattern: LearnedPattern, success: bool) -> PatternValidationEvent:
    return PatternValidationEvent(
        pattern_id=pattern.id,
        source_id=pattern.source_id,
        field_name=pattern.field_name,
        selector=pattern.selector,
        success=success,
        extracted_value="x" if success else None,
        source_url="https://photobooth.net/locations/1",
    )


class TestDatabaseUrl:
    """Tests for get_database_url."""

    def test_memory(self) -> None:
        """Test the in-memory shortcut."""
        assert get_database_url(":memory:") == "sqlite://"

    def test_explicit_path(self, temp_db_path: Path) -> None:
        """Test a file path."""
        assert get_database_url(temp_db_path) == f"sqlite:///{temp_db_path}"

    def test_env_url(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that a full URL in the environment is used as-is."""
        monkeypatch.setenv("DATABASE_URL", "postgresql://user@db/booths")
        assert get_database_url() == "postgresql://user@db/booths"

    def test_env_path(self, monkeypatch: pytest.MonkeyPatch, temp_db_path: Path) -> None:
        """Test that a bare path in the environment becomes a SQLite URL."""
        monkeypatch.setenv("DATABASE_URL", str(temp_db_path))
        assert get_database_url() == f"sqlite:///{temp_db_path}"


class TestSourceRepository:
    """Tests for SqlSourceRepository."""

    def test_get_or_create_new(self, session: Session) -> None:
        """Test that a new source starts unlearned."""
        repo = SqlSourceRepository(session)

        source = repo.get_or_create(SourceConfig(name="yelp", domain="yelp.com"))
        session.commit()

        assert source.name == "yelp"
        assert source.pattern_learning_status == PatternLearningStatus.NOT_STARTED
        assert source.extraction_mode == ExtractionMode.HYBRID
        assert source.pattern_learned_at is None

    def test_get_or_create_existing_syncs_config(self, session: Session) -> None:
        """Test that config changes are applied without losing learning state."""
        repo = SqlSourceRepository(session)
        first = repo.get_or_create(SourceConfig(name="yelp", domain="yelp.com"))
        repo.update_learning_status(first.id, PatternLearningStatus.COMPLETED)

        second = repo.get_or_create(
            SourceConfig(name="yelp", domain="www.yelp.com", extraction_mode=ExtractionMode.AGENT)
        )

        assert second.id == first.id
        assert second.domain == "www.yelp.com"
        assert second.extraction_mode == ExtractionMode.AGENT
        assert second.pattern_learning_status == PatternLearningStatus.COMPLETED

    def test_get_by_name(self, session: Session, stored_source) -> None:
        """Test lookup by name."""
        repo = SqlSourceRepository(session)
        assert repo.get_by_name("photobooth.net").id == stored_source.id
        assert repo.get_by_name("missing") is None

    def test_list_all_sorted(self, session: Session) -> None:
        """Test listing sources by name."""
        repo = SqlSourceRepository(session)
        repo.get_or_create(SourceConfig(name="yelp", domain="yelp.com"))
        repo.get_or_create(SourceConfig(name="atlas_obscura", domain="atlasobscura.com"))

        assert [s.name for s in repo.list_all()] == ["atlas_obscura", "yelp"]

    def test_update_learning_status(self, session: Session, stored_source) -> None:
        """Test storing a learning outcome with a mode and timestamp."""
        repo = SqlSourceRepository(session)
        learned_at = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

        repo.update_learning_status(
            stored_source.id, PatternLearningStatus.COMPLETED, ExtractionMode.HYBRID, learned_at
        )
        session.commit()

        stored = repo.get_by_name("photobooth.net")
        assert stored.pattern_learning_status == PatternLearningStatus.COMPLETED
        assert stored.pattern_learned_at == learned_at
        assert stored.pattern_learned_at.tzinfo is not None

    def test_update_unknown_source(self, session: Session) -> None:
        """Test that an unknown source id raises ValueError."""
        with pytest.raises(ValueError, match="not found"):
            SqlSourceRepository(session).update_learning_status(
                uuid4(), PatternLearningStatus.FAILED
            )


class TestPatternRepository:
    """Tests for SqlPatternRepository."""

    def _store(self, session: Session, source_id, **kwargs) -> LearnedPattern:
        pattern = LearnedPattern(
            field_name=kwargs.pop("field_name", "name"),
            selector=kwargs.pop("selector", "h2"),
            confidence_score=kwargs.pop("confidence_score", 0.5),
            **kwargs,
        )
        return SqlPatternRepository(session).upsert_patterns(source_id, [pattern], run_id="run-1")[0]

    def test_upsert_assigns_ids(self, session: Session, stored_source) -> None:
        """Test that stored patterns come back with ids and their source."""
        stored = self._store(session, stored_source.id, fallback_selectors=[".title"])

        assert stored.id is not None
        assert stored.source_id == stored_source.id
        assert stored.fallback_selectors == [".title"]
        assert stored.learned_at.tzinfo is not None

    def test_upsert_same_key_updates(self, session: Session, stored_source) -> None:
        """Test that relearning a pattern resets its history."""
        repo = SqlPatternRepository(session)
        first = self._store(session, stored_source.id)
        repo.record_validation(validation(first, False))

        second = self._store(session, stored_source.id, confidence_score=0.7)

        assert second.id == first.id
        assert second.confidence_score == 0.7
        assert second.failure_count == 0
        assert len(repo.list_patterns(stored_source.id)) == 1

    def test_relearned_field_retires_old_selector(self, session: Session, stored_source) -> None:
        """Test that a new selector for a field deactivates the one it replaces."""
        repo = SqlPatternRepository(session)
        old = self._store(session, stored_source.id, selector="article h1, article h2, article h3")
        self._store(session, stored_source.id, field_name="address", selector="address")

        new = self._store(session, stored_source.id, selector="h1, h2, .title, .name")

        by_selector = {p.selector: p for p in repo.list_patterns(stored_source.id)}
        assert len(by_selector) == 3
        assert by_selector[old.selector].is_active is False
        assert by_selector[new.selector].is_active is True
        assert by_selector["address"].is_active is True
        assert {p.selector for p in repo.get_active_patterns(stored_source.id)} == {
            "h1, h2, .title, .name",
            "address",
        }

    def test_get_active_patterns_floor(self, session: Session, stored_source) -> None:
        """Test the confidence floor on active patterns."""
        repo = SqlPatternRepository(session)
        self._store(session, stored_source.id, field_name="name", confidence_score=0.7)
        self._store(session, stored_source.id, field_name="cost", selector="\\$\\d+", confidence_score=0.4)

        assert len(repo.get_active_patterns(stored_source.id)) == 2
        assert [p.field_name for p in repo.get_active_patterns(stored_source.id, 0.5)] == ["name"]

    def test_validation_revises_confidence(self, session: Session, stored_source) -> None:
        """Test that successes raise the stored confidence."""
        repo = SqlPatternRepository(session)
        pattern = self._store(session, stored_source.id)

        for _ in range(5):
            repo.record_validation(validation(pattern, True))

        revised = repo.list_patterns(stored_source.id)[0]
        assert revised.success_count == 5
        assert revised.confidence_score == 0.75
        assert revised.is_active is True
        rows = session.execute(select(PatternValidationDB)).scalars().all()
        assert len(rows) == 5

    def test_repeated_failure_deactivates(self, session: Session, stored_source) -> None:
        """Test that a failing pattern is retired after enough attempts."""
        repo = SqlPatternRepository(session)
        pattern = self._store(session, stored_source.id)

        for _ in range(4):
            repo.record_validation(validation(pattern, False))
        assert repo.list_patterns(stored_source.id)[0].is_active is True

        repo.record_validation(validation(pattern, False))

        retired = repo.list_patterns(stored_source.id)[0]
        assert retired.confidence_score == 0.25
        assert retired.is_active is False
        assert repo.get_active_patterns(stored_source.id) == []

    def test_validation_without_pattern_id_ignored(self, session: Session, stored_source) -> None:
        """Test that events for unstored patterns are dropped."""
        repo = SqlPatternRepository(session)
        event = PatternValidationEvent(
            source_id=stored_source.id, field_name="name", selector="h2", success=True
        )
        repo.record_validation(event)
        repo.record_validation(event.model_copy(update={"pattern_id": uuid4()}))

        assert session.execute(select(PatternValidationDB)).scalars().all() == []


class TestMatchRepository:
    """Tests for SqlMatchRepository."""

    def _match(self, confidence: float, conflicts: list[str] | None = None) -> DuplicateMatch:
        first = CandidateRecord(name="Joe's Bar & Grill", address="123 Main St")
        second = CandidateRecord(name="Joes Bar and Grill", address="123 Main Street", cost="$5")
        return DuplicateMatch(
            booth1=first,
            booth2=second,
            confidence_score=confidence,
            match_type=MatchType.PROBABLE,
            name_similarity=100.0,
            location_similarity=0.0,
            recommended_action=RecommendedAction.MANUAL_REVIEW,
            merge_strategy=MergeStrategy.MERGE_FIELDS,
            primary_booth=first,
            conflicts=conflicts or [],
        )

    def test_save_and_list_pending(self, session: Session) -> None:
        """Test storing matches and listing them by confidence."""
        repo = SqlMatchRepository(session)
        low_id = repo.save_for_review(self._match(62.5))
        high_id = repo.save_for_review(self._match(91.1, ["cost"]))
        session.commit()

        pending = repo.list_pending()

        assert [m["id"] for m in pending] == [high_id, low_id]
        assert pending[0]["booth1_name"] == "Joe's Bar & Grill"
        assert pending[0]["conflicts"] == ["cost"]
        assert pending[0]["match_type"] == "probable"
        assert repo.count_pending() == 2

    def test_list_pending_limit(self, session: Session) -> None:
        """Test the listing limit."""
        repo = SqlMatchRepository(session)
        for score in (50.0, 60.0, 70.0):
            repo.save_for_review(self._match(score))
        assert len(repo.list_pending(limit=2)) == 2


class TestBoothRepository:
    """Tests for SqlBoothRepository."""

    def test_match_key_normalizes(self) -> None:
        """Test that punctuation and case do not change the key."""
        a = CandidateRecord(name="Joe's Bar & Grill", address="123 Main St.", country="USA")
        b = CandidateRecord(name="joes bar and grill", address="123 MAIN ST", country="usa")
        assert booth_match_key(a) == booth_match_key(b)

    def test_upsert_new(self, session: Session) -> None:
        """Test inserting a booth."""
        repo = SqlBoothRepository(session)
        record = CandidateRecord(
            name="Cafe Lomo",
            address="Rua Augusta 210",
            country="Portugal",
            latitude=38.7103,
            longitude=-9.1375,
            geocode_provider=GeocodeProvider.MAPBOX,
            geocode_confidence=GeocodeConfidence.HIGH,
        )

        booth_id = repo.upsert(record)
        session.commit()

        assert booth_id
        assert repo.count() == 1
        stored = repo.get_by_key(record)
        assert stored.geocode_provider == GeocodeProvider.MAPBOX
        assert stored.latitude == pytest.approx(38.7103)

    def test_upsert_existing_merges(self, session: Session) -> None:
        """Test that a later crawl updates the row and keeps known fields."""
        repo = SqlBoothRepository(session)
        first_id = repo.upsert(
            CandidateRecord(name="Cafe Lomo", address="Rua Augusta 210", cost="€4", photos=["a.jpg"])
        )

        second_id = repo.upsert(
            CandidateRecord(name="CAFE LOMO", address="Rua Augusta 210", hours="9-18", photos=["b.jpg"])
        )
        session.commit()

        assert second_id == first_id
        assert repo.count() == 1
        stored = repo.list_all()[0]
        assert stored.name == "CAFE LOMO"
        assert stored.cost == "€4"
        assert stored.hours == "9-18"
        assert stored.photos == ["b.jpg", "a.jpg"]

    def test_list_all_pagination(self, session: Session) -> None:
        """Test listing booths by name with pagination."""
        repo = SqlBoothRepository(session)
        for name in ("Cafe Lomo", "Ace Hotel Photobooth", "Photoautomat Kastanienallee"):
            repo.upsert(CandidateRecord(name=name, address="1 Test St"))

        assert [b.name for b in repo.list_all(limit=2)] == ["Ace Hotel Photobooth", "Cafe Lomo"]
        assert [b.name for b in repo.list_all(limit=2, offset=2)] == ["Photoautomat Kastanienallee"]

    def test_get_by_key_missing(self, session: Session) -> None:
        """Test lookup of an unknown booth."""
        assert SqlBoothRepository(session).get_by_key(CandidateRecord(name="X", address="Y")) is None
