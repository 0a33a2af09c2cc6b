"""
Extraction Strategy Module
==========================

Chooses between the agent extractor (expensive, robust to layout
changes) and the direct scraper (cheap, brittle) for each page, runs the
choice, and falls back to the agent once when a direct run underperforms.

Decision factors:
1. The source's configured extraction mode
2. Whether pattern learning has happened yet
3. Average confidence and age of the learned patterns
4. Whether the required name and address fields are covered
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from booth_catalog.core.enums import ExtractionMode, PatternLearningStatus, SourceType
from booth_catalog.core.schema import CandidateRecord, CrawlSource, LearnedPattern
from booth_catalog.ingestion.direct_scraper import DirectScraper
from booth_catalog.ingestion.extractors.base import AgentExtractor, PageContent
from booth_catalog.ingestion.pattern_learning import PatternLearner, PatternLearningResult
from booth_catalog.ingestion.registry import ExtractionConfig

if TYPE_CHECKING:
    from booth_catalog.db.repositories import PatternRepository

logger = logging.getLogger(__name__)

REQUIRED_PATTERN_FIELDS = ("name", "address")

# Estimated cost per crawl of one source, in USD
AGENT_COST_PER_CRAWL = 0.30
DIRECT_COST_PER_CRAWL = 0.005
CRAWLS_PER_MONTH = 4


@dataclass
class ModeDecision:
    """
    Which extractor to run and why.

    ``relearn`` asks for pattern learning after the agent run even if the
    source already completed it once, because the stored patterns were
    judged stale or unreliable.
    """

    mode: ExtractionMode
    reason: str
    relearn: bool = False


@dataclass
class StrategyResult:
    """Records produced for one page plus how they were produced."""

    records: list[CandidateRecord] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    mode_used: ExtractionMode = ExtractionMode.AGENT
    mode_decision_reason: str = ""
    direct_scraping_attempted: bool = False
    direct_scraping_confidence: float | None = None
    fallback_to_agent: bool = False
    patterns_used: int = 0
    patterns_successful: int = 0
    pattern_learning_triggered: bool = False
    pattern_learning: PatternLearningResult | None = None
    agent_diagnostics: dict[str, Any] = field(default_factory=dict)
    extraction_time_ms: float = 0.0


@dataclass
class StrategyStats:
    """Aggregate view of extraction modes and pattern health."""

    total_sources: int = 0
    sources_with_patterns: int = 0
    direct_enabled: int = 0
    agent_only: int = 0
    hybrid_mode: int = 0
    direct_mode: int = 0
    total_patterns: int = 0
    active_patterns: int = 0
    avg_pattern_confidence: float = 0.0
    estimated_monthly_savings_usd: float = 0.0


def _age_in_days(learned_at: datetime, now: datetime) -> float:
    if learned_at.tzinfo is None:
        learned_at = learned_at.replace(tzinfo=UTC)
    return (now - learned_at).total_seconds() / 86400


def decide_extraction_mode(
    source: CrawlSource,
    patterns: list[LearnedPattern],
    config: ExtractionConfig | None = None,
    now: datetime | None = None,
) -> ModeDecision:
    """
    Decide how a source's next page should be extracted.

    Rules, first match wins:
    1. Configured ``agent``: always the agent
    2. Pattern learning not started: the agent, to seed patterns
    3. Configured ``direct``: direct when patterns exist, else the agent once
    4. Configured ``hybrid``: the agent when there are no patterns, their
       average confidence is too low, the oldest is too old, or name or
       address has no pattern; direct otherwise

    A DIRECT decision is executed with a one-shot fallback to the agent.

    Args:
        source: Source with its configured mode and learning status
        patterns: Active patterns eligible for direct scraping
        config: Thresholds; defaults when omitted
        now: Reference time for pattern age

    Returns:
        ModeDecision with AGENT or DIRECT and the reason
    """
    config = config or ExtractionConfig()
    now = now or datetime.now(UTC)

    if source.extraction_mode == ExtractionMode.AGENT:
        return ModeDecision(ExtractionMode.AGENT, "Agent mode configured for source")

    if source.pattern_learning_status == PatternLearningStatus.NOT_STARTED:
        return ModeDecision(ExtractionMode.AGENT, "No patterns learned yet")

    if source.extraction_mode == ExtractionMode.DIRECT:
        if patterns:
            return ModeDecision(
                ExtractionMode.DIRECT, f"Direct mode configured ({len(patterns)} patterns)"
            )
        return ModeDecision(
            ExtractionMode.AGENT,
            "Direct mode configured but no patterns stored, seeding with agent",
            relearn=True,
        )

    if not patterns:
        return ModeDecision(ExtractionMode.AGENT, "No patterns learned yet", relearn=True)

    avg_confidence = sum(p.confidence_score for p in patterns) / len(patterns)
    if avg_confidence < config.min_pattern_confidence:
        return ModeDecision(
            ExtractionMode.AGENT,
            f"Low pattern confidence ({avg_confidence:.2f})",
            relearn=True,
        )

    oldest = min(p.learned_at for p in patterns)
    age_days = _age_in_days(oldest, now)
    if age_days > config.max_pattern_age_days:
        return ModeDecision(
            ExtractionMode.AGENT, f"Patterns too old ({age_days:.0f} days)", relearn=True
        )

    covered = {p.field_name for p in patterns}
    missing = [f for f in REQUIRED_PATTERN_FIELDS if f not in covered]
    if missing:
        return ModeDecision(
            ExtractionMode.AGENT,
            f"Missing required field patterns: {', '.join(missing)}",
            relearn=True,
        )

    return ModeDecision(
        ExtractionMode.DIRECT,
        f"{len(patterns)} patterns, avg confidence {avg_confidence:.2f}",
    )


def should_fall_back(
    records_found: int,
    confidence: float,
    source_type: SourceType,
    config: ExtractionConfig | None = None,
) -> bool:
    """
    Whether a direct run underperformed enough to retry with the agent.

    Single-venue blogs legitimately yield one record per page, so the
    minimum record count does not apply to them.
    """
    config = config or ExtractionConfig()
    if records_found == 0:
        return True
    if confidence < config.fallback_min_confidence:
        return True
    return records_found < config.fallback_min_records and source_type != SourceType.BLOG


class ExtractionEngine:
    """
    Runs the mode decision, the chosen extractor, the fallback and the
    pattern learning stage for one page.
    """

    def __init__(
        self,
        agent_extractor: AgentExtractor,
        direct_scraper: DirectScraper | None = None,
        pattern_learner: PatternLearner | None = None,
        pattern_repository: PatternRepository | None = None,
        config: ExtractionConfig | None = None,
    ) -> None:
        self.config = config or ExtractionConfig()
        self.agent_extractor = agent_extractor
        self.pattern_repository = pattern_repository
        self.direct_scraper = direct_scraper or DirectScraper(
            pattern_repository, self.config.expected_records_per_page
        )
        self.pattern_learner = pattern_learner or PatternLearner(pattern_repository)

    def load_patterns(self, source_id: UUID) -> list[LearnedPattern]:
        """Active patterns at or above the confidence floor."""
        if self.pattern_repository is None:
            return []
        return self.pattern_repository.get_active_patterns(
            source_id, self.config.pattern_active_floor
        )

    def run(
        self,
        page: PageContent,
        source: CrawlSource,
        patterns: list[LearnedPattern] | None = None,
        run_id: str | None = None,
        force_mode: ExtractionMode | None = None,
    ) -> StrategyResult:
        """
        Extract records from one page.

        Args:
            page: Page markup and text rendering
            source: Source the page belongs to
            patterns: Patterns to use; loaded from the repository when omitted
            run_id: Crawl run identifier for pattern bookkeeping
            force_mode: Skip the decision; HYBRID and DIRECT both run the
                direct scraper with fallback

        Returns:
            StrategyResult with the records and how they were obtained
        """
        start = time.perf_counter()
        if patterns is None:
            patterns = self.load_patterns(source.id)

        if force_mode is not None:
            decision = ModeDecision(
                ExtractionMode.AGENT if force_mode == ExtractionMode.AGENT else ExtractionMode.DIRECT,
                f"Forced {force_mode.value} mode",
            )
        else:
            decision = decide_extraction_mode(source, patterns, self.config)

        logger.info(f"Decision for {source.name}: {decision.mode.value.upper()} ({decision.reason})")

        if decision.mode == ExtractionMode.AGENT:
            result = self._run_agent(page, source, run_id, decision.relearn)
            result.mode_decision_reason = decision.reason
        else:
            result = self._run_direct(page, source, patterns, run_id)

        result.extraction_time_ms = (time.perf_counter() - start) * 1000
        return result

    def _run_agent(
        self,
        page: PageContent,
        source: CrawlSource,
        run_id: str | None,
        relearn: bool = False,
    ) -> StrategyResult:
        result = StrategyResult(mode_used=ExtractionMode.AGENT)

        try:
            extraction = self.agent_extractor.extract(page, source)
        except Exception as e:
            logger.exception(f"Agent extractor raised for {page.url}")
            result.errors.append(f"Agent extraction failed: {e}")
            return result

        result.records = extraction.records
        result.errors.extend(extraction.errors)
        result.agent_diagnostics = extraction.diagnostics

        needs_learning = (
            source.pattern_learning_status != PatternLearningStatus.COMPLETED or relearn
        )
        if result.records and needs_learning:
            logger.info(f"Triggering pattern learning for {source.name}")
            result.pattern_learning = self.pattern_learner.learn(
                page.html, result.records, source, run_id
            )
            result.pattern_learning_triggered = True

        return result

    def _run_direct(
        self,
        page: PageContent,
        source: CrawlSource,
        patterns: list[LearnedPattern],
        run_id: str | None,
    ) -> StrategyResult:
        if not patterns:
            logger.warning(f"No patterns for {source.name}, using agent")
            result = self._run_agent(page, source, run_id, relearn=True)
            result.mode_decision_reason = "No patterns found, agent used instead"
            return result

        direct = self.direct_scraper.scrape(page, source, patterns, run_id)
        count = len(direct.records)

        if should_fall_back(count, direct.confidence, source.source_type, self.config):
            logger.warning(
                f"Direct scraping underperformed for {source.name} "
                f"({count} booths, {direct.confidence:.2f} confidence), falling back to agent"
            )
            result = self._run_agent(page, source, run_id, relearn=True)
            result.mode_decision_reason = (
                f"Direct scraping failed ({count} booths, {direct.confidence:.2f} confidence), "
                "fallback to agent"
            )
            result.fallback_to_agent = True
        else:
            result = StrategyResult(
                records=direct.records,
                mode_used=ExtractionMode.DIRECT,
                mode_decision_reason=(
                    f"Direct scraping succeeded ({count} booths, {direct.confidence:.2f} confidence)"
                ),
            )

        result.errors.extend(direct.errors)
        result.direct_scraping_attempted = True
        result.direct_scraping_confidence = direct.confidence
        result.patterns_used = direct.patterns_used
        result.patterns_successful = direct.patterns_successful
        return result


def estimate_monthly_savings(direct_enabled: int, total_sources: int) -> float:
    """Savings of running direct-eligible sources without the agent."""
    agent_cost = total_sources * AGENT_COST_PER_CRAWL * CRAWLS_PER_MONTH
    hybrid_cost = (
        (total_sources - direct_enabled) * AGENT_COST_PER_CRAWL * CRAWLS_PER_MONTH
        + direct_enabled * DIRECT_COST_PER_CRAWL * CRAWLS_PER_MONTH
    )
    return round(max(agent_cost - hybrid_cost, 0.0), 4)


def summarize_strategy(
    sources: list[CrawlSource],
    patterns_by_source: dict[UUID, list[LearnedPattern]],
    config: ExtractionConfig | None = None,
) -> StrategyStats:
    """
    Summarize extraction modes and pattern health across sources.

    A source counts as direct-enabled when the decision engine would
    choose the direct scraper for it right now.
    """
    config = config or ExtractionConfig()
    stats = StrategyStats(total_sources=len(sources))
    active_confidences: list[float] = []

    for source in sources:
        patterns = patterns_by_source.get(source.id, [])
        active = [
            p for p in patterns
            if p.is_active and p.confidence_score >= config.pattern_active_floor
        ]

        stats.total_patterns += len(patterns)
        stats.active_patterns += len(active)
        active_confidences.extend(p.confidence_score for p in active)

        if active:
            stats.sources_with_patterns += 1
        if decide_extraction_mode(source, active, config).mode == ExtractionMode.DIRECT:
            stats.direct_enabled += 1

        if source.extraction_mode == ExtractionMode.AGENT:
            stats.agent_only += 1
        elif source.extraction_mode == ExtractionMode.HYBRID:
            stats.hybrid_mode += 1
        else:
            stats.direct_mode += 1

    if active_confidences:
        stats.avg_pattern_confidence = round(sum(active_confidences) / len(active_confidences), 4)
    stats.estimated_monthly_savings_usd = estimate_monthly_savings(
        stats.direct_enabled, stats.total_sources
    )
    return stats
