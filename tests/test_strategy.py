"""Tests for the extraction strategy module."""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from booth_catalog.core.enums import ExtractionMode, PatternLearningStatus, SourceType
from booth_catalog.core.schema import (
    CandidateRecord,
    CrawlSource,
    LearnedPattern,
    PatternValidationEvent,
)
from booth_catalog.db.models import Base
from booth_catalog.db.repositories import SqlPatternRepository, SqlSourceRepository
from booth_catalog.ingestion.extractors.base import (
    AgentExtractor,
    ExtractionResult,
    PageContent,
)
from booth_catalog.ingestion.extractors.fixture import TEST_BOOTHS, FixtureAgentExtractor
from booth_catalog.ingestion.pattern_learning import PatternLearner
from booth_catalog.ingestion.registry import ExtractionConfig, SourceConfig
from booth_catalog.ingestion.strategy import (
    ExtractionEngine,
    decide_extraction_mode,
    estimate_monthly_savings,
    should_fall_back,
    summarize_strategy,
)

NOW = datetime.now(UTC)


class CountingAgent(AgentExtractor):
    """Agent stand-in that returns fixed records and counts calls."""

    EXTRACTOR_NAME = "counting"

    def __init__(self, records: list[CandidateRecord] | None = None) -> None:
        super().__init__()
        self.records = records or []
        self.calls = 0

    def extract(self, page: PageContent, source: CrawlSource) -> ExtractionResult:
        self.calls += 1
        return ExtractionResult(records=list(self.records))


class RaisingAgent(AgentExtractor):
    def extract(self, page: PageContent, source: CrawlSource) -> ExtractionResult:
        raise RuntimeError("service unavailable")


def pattern(field_name: str, confidence: float = 0.7, age_days: int = 1) -> LearnedPattern:
    return LearnedPattern(
        field_name=field_name,
        selector="h2" if field_name == "name" else "address",
        confidence_score=confidence,
        learned_at=NOW - timedelta(days=age_days),
    )


def source(
    mode: ExtractionMode = ExtractionMode.HYBRID,
    status: PatternLearningStatus = PatternLearningStatus.COMPLETED,
    source_type: SourceType = SourceType.DIRECTORY,
) -> CrawlSource:
    return CrawlSource(
        name="test-source",
        extraction_mode=mode,
        pattern_learning_status=status,
        source_type=source_type,
    )


GOOD_PATTERNS = [pattern("name"), pattern("address")]

LIST_PAGE = PageContent(
    url="https://booths.test/locations",
    html=(
        "<ul>"
        "<li><h2>Cafe Lomo</h2><address>Rua Augusta 210</address></li>"
        "<li><h2>Ace Hotel Photobooth</h2><address>20 W 29th St</address></li>"
        "</ul>"
    ),
)
LIST_RECORDS = [
    CandidateRecord(name="Cafe Lomo", address="Rua Augusta 210"),
    CandidateRecord(name="Ace Hotel Photobooth", address="20 W 29th St"),
]


@pytest.fixture
def session():
    """Create an in-memory database session."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        yield session


class TestDecideExtractionMode:
    """Tests for decide_extraction_mode."""

    def test_agent_mode_always_agent(self) -> None:
        """Test that a configured agent source never goes direct."""
        decision = decide_extraction_mode(source(ExtractionMode.AGENT), GOOD_PATTERNS, now=NOW)
        assert decision.mode == ExtractionMode.AGENT

    @pytest.mark.parametrize("mode", list(ExtractionMode))
    def test_not_started_always_agent(self, mode: ExtractionMode) -> None:
        """Test that an unlearned source uses the agent whatever else holds."""
        decision = decide_extraction_mode(
            source(mode, PatternLearningStatus.NOT_STARTED), GOOD_PATTERNS, now=NOW
        )
        assert decision.mode == ExtractionMode.AGENT

    def test_direct_with_patterns(self) -> None:
        """Test a configured direct source with patterns."""
        decision = decide_extraction_mode(source(ExtractionMode.DIRECT), [pattern("name", 0.1)], now=NOW)
        assert decision.mode == ExtractionMode.DIRECT

    def test_direct_without_patterns(self) -> None:
        """Test a configured direct source whose patterns are gone."""
        decision = decide_extraction_mode(source(ExtractionMode.DIRECT), [], now=NOW)
        assert decision.mode == ExtractionMode.AGENT
        assert decision.relearn is True

    def test_hybrid_good_patterns(self) -> None:
        """Test that healthy patterns choose direct."""
        decision = decide_extraction_mode(source(), GOOD_PATTERNS, now=NOW)
        assert decision.mode == ExtractionMode.DIRECT
        assert decision.relearn is False

    def test_hybrid_no_patterns(self) -> None:
        """Test a hybrid source with no patterns."""
        decision = decide_extraction_mode(source(), [], now=NOW)
        assert decision.mode == ExtractionMode.AGENT
        assert decision.relearn is True

    def test_hybrid_low_confidence(self) -> None:
        """Test that low average confidence chooses the agent."""
        patterns = [pattern("name", 0.5), pattern("address", 0.3)]
        decision = decide_extraction_mode(source(), patterns, now=NOW)
        assert decision.mode == ExtractionMode.AGENT
        assert "Low pattern confidence" in decision.reason

    def test_hybrid_stale_patterns(self) -> None:
        """Test that old patterns choose the agent."""
        patterns = [pattern("name"), pattern("address", age_days=120)]
        decision = decide_extraction_mode(source(), patterns, now=NOW)
        assert decision.mode == ExtractionMode.AGENT
        assert "too old" in decision.reason

    def test_hybrid_missing_required_field(self) -> None:
        """Test that a missing address pattern chooses the agent."""
        decision = decide_extraction_mode(source(), [pattern("name"), pattern("city")], now=NOW)
        assert decision.mode == ExtractionMode.AGENT
        assert "address" in decision.reason

    def test_thresholds_from_config(self) -> None:
        """Test that configured thresholds are honored."""
        config = ExtractionConfig(min_pattern_confidence=0.8)
        decision = decide_extraction_mode(source(), GOOD_PATTERNS, config, now=NOW)
        assert decision.mode == ExtractionMode.AGENT


class TestShouldFallBack:
    """Tests for should_fall_back."""

    def test_zero_records(self) -> None:
        """Test that nothing found always falls back."""
        assert should_fall_back(0, 0.9, SourceType.DIRECTORY) is True

    def test_low_confidence(self) -> None:
        """Test that low confidence falls back."""
        assert should_fall_back(5, 0.3, SourceType.DIRECTORY) is True

    def test_single_record_directory(self) -> None:
        """Test that one record from a directory falls back."""
        assert should_fall_back(1, 0.9, SourceType.DIRECTORY) is True

    def test_single_record_blog(self) -> None:
        """Test that one record from a blog is acceptable."""
        assert should_fall_back(1, 0.9, SourceType.BLOG) is False

    def test_healthy_run(self) -> None:
        """Test a run that needs no fallback."""
        assert should_fall_back(3, 0.7, SourceType.OPERATOR) is False


class TestExtractionEngine:
    """Tests for ExtractionEngine."""

    def test_first_crawl_uses_agent_and_learns(self) -> None:
        """Test that an unlearned hybrid source seeds its patterns."""
        extractor = FixtureAgentExtractor({"page_size": 5})
        crawl_source = source(status=PatternLearningStatus.NOT_STARTED)
        engine = ExtractionEngine(extractor)

        result = engine.run(extractor.get_fixture_page(0), crawl_source, patterns=[])

        assert result.mode_used == ExtractionMode.AGENT
        assert len(result.records) == 5
        assert result.pattern_learning_triggered is True
        assert result.pattern_learning is not None
        assert len(result.pattern_learning.patterns_learned) >= 1
        assert crawl_source.pattern_learning_status == PatternLearningStatus.COMPLETED

    def test_direct_run_on_learned_source(self) -> None:
        """Test that learned patterns are reused on the next page."""
        extractor = FixtureAgentExtractor()
        crawl_source = source(status=PatternLearningStatus.NOT_STARTED)
        engine = ExtractionEngine(extractor)
        first = engine.run(extractor.get_fixture_page(0), crawl_source, patterns=[])
        patterns = first.pattern_learning.patterns_learned

        result = engine.run(extractor.get_fixture_page(1), crawl_source, patterns=patterns)

        assert result.mode_used == ExtractionMode.DIRECT
        assert result.fallback_to_agent is False
        assert result.direct_scraping_attempted is True
        assert [r.name for r in result.records] == [b["name"] for b in TEST_BOOTHS[3:6]]
        assert result.patterns_used == 9
        assert result.patterns_successful == 8

    def test_fallback_when_direct_finds_nothing(self) -> None:
        """Test one-shot fallback to the agent on a layout the patterns miss."""
        agent = CountingAgent([CandidateRecord(name="Cafe Lomo", address="Rua Augusta 210")])
        crawl_source = source()
        page = PageContent(
            url="https://blog.test/cafe-lomo",
            html="<html><body><h2>Cafe Lomo</h2><p>Great booth in Lisbon</p></body></html>",
        )

        result = ExtractionEngine(agent).run(page, crawl_source, patterns=GOOD_PATTERNS)

        assert result.fallback_to_agent is True
        assert result.mode_used == ExtractionMode.AGENT
        assert result.direct_scraping_attempted is True
        assert result.direct_scraping_confidence == 0.0
        assert "fallback to agent" in result.mode_decision_reason
        assert agent.calls == 1
        assert [r.name for r in result.records] == ["Cafe Lomo"]
        # Fallback relearns from the agent's answer
        assert result.pattern_learning_triggered is True

    def test_agent_source_never_scrapes(self) -> None:
        """Test that agent mode skips the direct scraper."""
        agent = CountingAgent([CandidateRecord(name="A", address="1 Main St")])
        result = ExtractionEngine(agent).run(
            PageContent(url="u", html=""), source(ExtractionMode.AGENT), patterns=GOOD_PATTERNS
        )
        assert result.direct_scraping_attempted is False
        assert result.mode_used == ExtractionMode.AGENT

    def test_forced_agent(self) -> None:
        """Test forcing the agent on a direct-ready source."""
        agent = CountingAgent()
        result = ExtractionEngine(agent).run(
            PageContent(url="u", html=""), source(), patterns=GOOD_PATTERNS,
            force_mode=ExtractionMode.AGENT,
        )
        assert result.mode_used == ExtractionMode.AGENT
        assert result.mode_decision_reason == "Forced agent mode"
        assert agent.calls == 1

    def test_forced_direct_without_patterns_uses_agent(self) -> None:
        """Test that forcing direct with no patterns still produces records."""
        agent = CountingAgent([CandidateRecord(name="A", address="1 Main St")])
        result = ExtractionEngine(agent).run(
            PageContent(url="u", html=""), source(), patterns=[],
            force_mode=ExtractionMode.DIRECT,
        )
        assert result.mode_used == ExtractionMode.AGENT
        assert result.direct_scraping_attempted is False
        assert len(result.records) == 1
        assert result.pattern_learning_triggered is True

    def test_agent_exception_is_reported(self) -> None:
        """Test that an extractor crash becomes an error, not an exception."""
        result = ExtractionEngine(RaisingAgent()).run(
            PageContent(url="u", html=""), source(ExtractionMode.AGENT), patterns=[]
        )
        assert result.records == []
        assert "service unavailable" in result.errors[0]

    def test_completed_source_does_not_relearn(self) -> None:
        """Test that a plain agent run on a learned source skips learning."""
        agent = CountingAgent([CandidateRecord(name="A", address="1 Main St")])
        result = ExtractionEngine(agent).run(
            PageContent(url="u", html="<h2>A</h2>"), source(ExtractionMode.AGENT), patterns=[]
        )
        assert result.pattern_learning_triggered is False

    def test_load_patterns_without_repository(self) -> None:
        """Test that an engine without persistence has no patterns."""
        assert ExtractionEngine(CountingAgent()).load_patterns(source().id) == []


class TestEngineWithStoredPatterns:
    """Engine runs against patterns kept in the database."""

    def build(self, session: Session, agent: AgentExtractor) -> ExtractionEngine:
        source_repo = SqlSourceRepository(session)
        pattern_repo = SqlPatternRepository(session)
        return ExtractionEngine(
            agent,
            pattern_learner=PatternLearner(pattern_repo, source_repo),
            pattern_repository=pattern_repo,
        )

    def learned_source(self, session: Session, mode: ExtractionMode) -> CrawlSource:
        repo = SqlSourceRepository(session)
        stored = repo.get_or_create(
            SourceConfig(name="booths-test", domain="booths.test", extraction_mode=mode)
        )
        repo.update_learning_status(stored.id, PatternLearningStatus.COMPLETED)
        return repo.get_by_name("booths-test")

    def test_direct_source_reseeds_after_patterns_retired(self, session: Session) -> None:
        """Test that a learned direct source whose patterns all failed learns again."""
        crawl_source = self.learned_source(session, ExtractionMode.DIRECT)
        pattern_repo = SqlPatternRepository(session)
        [stale] = pattern_repo.upsert_patterns(
            crawl_source.id, [LearnedPattern(field_name="name", selector=".venue", confidence_score=0.5)]
        )
        for _ in range(5):
            pattern_repo.record_validation(
                PatternValidationEvent(
                    pattern_id=stale.id, field_name="name", selector=".venue", success=False
                )
            )
        assert pattern_repo.get_active_patterns(crawl_source.id) == []

        result = self.build(session, CountingAgent(LIST_RECORDS)).run(LIST_PAGE, crawl_source)

        assert result.mode_used == ExtractionMode.AGENT
        assert result.pattern_learning_triggered is True
        active = {p.field_name for p in pattern_repo.get_active_patterns(crawl_source.id)}
        assert {"name", "address"} <= active

    def test_stale_patterns_replaced_after_layout_change(self, session: Session) -> None:
        """Test that relearning on a new layout leaves the source ready for direct."""
        crawl_source = self.learned_source(session, ExtractionMode.HYBRID)
        pattern_repo = SqlPatternRepository(session)
        learned_long_ago = NOW - timedelta(days=120)
        pattern_repo.upsert_patterns(
            crawl_source.id,
            [
                LearnedPattern(
                    field_name="name",
                    selector="article h1, article h2, article h3",
                    confidence_score=0.7,
                    learned_at=learned_long_ago,
                ),
                LearnedPattern(
                    field_name="address",
                    selector='address, .address, [itemprop="address"], .location, .venue-address',
                    confidence_score=0.6,
                    learned_at=learned_long_ago,
                ),
            ],
        )
        before = decide_extraction_mode(
            crawl_source, pattern_repo.get_active_patterns(crawl_source.id), now=NOW
        )
        assert "too old" in before.reason

        result = self.build(session, CountingAgent(LIST_RECORDS)).run(LIST_PAGE, crawl_source)
        assert result.pattern_learning_triggered is True

        active = pattern_repo.get_active_patterns(crawl_source.id)
        assert [p.selector for p in active if p.field_name == "name"] == ["h1, h2, .title, .name"]
        after = decide_extraction_mode(crawl_source, active)
        assert after.mode == ExtractionMode.DIRECT


class TestSavings:
    """Tests for cost estimation and strategy summaries."""

    def test_estimate_monthly_savings(self) -> None:
        """Test savings from direct-eligible sources."""
        assert estimate_monthly_savings(0, 10) == 0.0
        assert estimate_monthly_savings(2, 10) == pytest.approx(2 * (0.30 - 0.005) * 4)

    def test_summarize_strategy(self) -> None:
        """Test aggregating modes and pattern health."""
        direct_ready = source()
        learning = source(status=PatternLearningStatus.NOT_STARTED)
        agent_only = source(ExtractionMode.AGENT)
        weak = pattern("city", confidence=0.2)
        patterns_by_source = {direct_ready.id: [*GOOD_PATTERNS, weak]}

        stats = summarize_strategy([direct_ready, learning, agent_only], patterns_by_source)

        assert stats.total_sources == 3
        assert stats.sources_with_patterns == 1
        assert stats.direct_enabled == 1
        assert stats.hybrid_mode == 2
        assert stats.agent_only == 1
        assert stats.total_patterns == 3
        assert stats.active_patterns == 2
        assert stats.avg_pattern_confidence == pytest.approx(0.7)
        assert stats.estimated_monthly_savings_usd > 0
