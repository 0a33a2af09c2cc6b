"""
Pattern Learning Module
=======================

Mines successful agent extractions for reusable extraction patterns, so
later crawls of the same source can use the cheap direct scraper.

Steps:
1. Analyze the page structure (repeated classes and tags, list and
   table wrappers, data attributes)
2. Infer one selector per field the agent actually filled in
3. Upsert the patterns keyed by (source, field, selector)
4. Mark the source's pattern learning as completed
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from bs4 import BeautifulSoup

from booth_catalog.core.enums import (
    ExtractionMethod,
    ExtractionMode,
    PatternLearningStatus,
    PatternType,
)
from booth_catalog.core.schema import CandidateRecord, CrawlSource, LearnedPattern

if TYPE_CHECKING:
    from booth_catalog.db.repositories import PatternRepository, SourceRepository

logger = logging.getLogger(__name__)

# Fields the learner tries to cover, in order
FIELDS_TO_LEARN = [
    "name",
    "address",
    "city",
    "state",
    "country",
    "machine_model",
    "cost",
    "hours",
    "description",
]

CANDIDATE_CONTAINER_TAGS = ["article", "section", "div", "li", "tr", "dl"]

COST_REGEX = r"\$\d+(?:\.\d{2})?|€\d+|£\d+"

# Observations a learned confidence is worth when revising it
CONFIDENCE_PRIOR_WEIGHT = 5


@dataclass
class HtmlAnalysis:
    """Structural features of a page that hint at repeated booth blocks."""

    common_classes: list[str] = field(default_factory=list)
    common_tags: list[str] = field(default_factory=list)
    list_structures: list[str] = field(default_factory=list)
    table_structures: list[str] = field(default_factory=list)
    data_attributes: list[str] = field(default_factory=list)
    booth_count: int = 0


@dataclass
class PatternLearningResult:
    """Outcome of one pattern learning pass."""

    source_id: str
    source_name: str
    patterns_learned: list[LearnedPattern] = field(default_factory=list)
    analysis_time_ms: float = 0.0
    success: bool = False
    error_message: str | None = None


def revise_confidence(seed: float, successes: int, attempts: int,
                      prior_weight: int = CONFIDENCE_PRIOR_WEIGHT) -> float:
    """
    Blend a pattern's learned confidence with its observed success rate.

    The learned confidence counts as ``prior_weight`` observations, so a
    handful of validations nudges it and a long track record dominates.

    Args:
        seed: Confidence the pattern was learned with
        successes: Validations where the pattern produced a value
        attempts: Total validations

    Returns:
        Revised confidence between 0 and 1
    """
    if attempts <= 0:
        return seed
    revised = (seed * prior_weight + successes) / (prior_weight + attempts)
    return round(min(max(revised, 0.0), 1.0), 4)


def analyze_html_structure(html: str, booth_count: int = 0) -> HtmlAnalysis:
    """
    Find repeated structures in a page.

    Args:
        html: Page markup
        booth_count: Number of booths the agent found on the page

    Returns:
        HtmlAnalysis with the most frequent classes first
    """
    soup = BeautifulSoup(html, "html.parser")

    class_counts: Counter[str] = Counter()
    data_attributes: set[str] = set()
    for element in soup.find_all(True):
        for cls in element.get("class") or []:
            class_counts[cls] += 1
        data_attributes.update(a for a in element.attrs if a.startswith("data-"))

    tag_counts = {tag: len(soup.find_all(tag)) for tag in CANDIDATE_CONTAINER_TAGS}

    list_structures = []
    if soup.select_one("ul > li"):
        list_structures.append("ul > li")
    if soup.select_one("ol > li"):
        list_structures.append("ol > li")
    if tag_counts["article"] >= 2:
        list_structures.append("article")

    table_structures = []
    if soup.select_one("table tr"):
        table_structures.append("table > tbody > tr")

    return HtmlAnalysis(
        common_classes=[cls for cls, count in class_counts.most_common(20) if count >= 2],
        common_tags=[
            tag
            for tag, count in sorted(tag_counts.items(), key=lambda item: -item[1])
            if count >= 2
        ],
        list_structures=list_structures,
        table_structures=table_structures,
        data_attributes=sorted(data_attributes),
        booth_count=booth_count,
    )


def infer_pattern(field_name: str, analysis: HtmlAnalysis) -> LearnedPattern | None:
    """
    Build the heuristic pattern for one field.

    Starting confidences reflect how reliable each heuristic usually is,
    not how it has performed on this source yet.
    """
    in_articles = "article" in analysis.common_tags

    if field_name == "name":
        return LearnedPattern(
            field_name="name",
            selector="article h1, article h2, article h3" if in_articles else "h1, h2, .title, .name",
            fallback_selectors=["h1", "h2", "h3", ".title", ".name", "[data-name]"],
            required=True,
            transform_fn="remove_extra_spaces",
            confidence_score=0.7,
        )
    if field_name == "address":
        return LearnedPattern(
            field_name="address",
            selector='address, .address, [itemprop="address"], .location, .venue-address',
            fallback_selectors=[".address", '[itemprop="address"]', ".location", "address"],
            required=True,
            transform_fn="remove_extra_spaces",
            confidence_score=0.6,
        )
    if field_name == "city":
        return LearnedPattern(
            field_name="city",
            selector=".city",
            fallback_selectors=["[data-city]", ".location-city", '[itemprop="addressLocality"]'],
            confidence_score=0.5,
        )
    if field_name == "state":
        return LearnedPattern(
            field_name="state",
            selector=".state",
            fallback_selectors=["[data-state]", ".region", '[itemprop="addressRegion"]'],
            confidence_score=0.5,
        )
    if field_name == "country":
        return LearnedPattern(
            field_name="country",
            selector=".country",
            fallback_selectors=["[data-country]", '[itemprop="addressCountry"]'],
            confidence_score=0.5,
        )
    if field_name == "machine_model":
        return LearnedPattern(
            field_name="machine_model",
            selector=".machine-model",
            fallback_selectors=[".model", "[data-model]", ".machine"],
            confidence_score=0.5,
        )
    if field_name == "cost":
        return LearnedPattern(
            field_name="cost",
            pattern_type=PatternType.REGEX,
            selector=COST_REGEX,
            confidence_score=0.6,
        )
    if field_name == "hours":
        return LearnedPattern(
            field_name="hours",
            selector=".hours",
            fallback_selectors=[".opening-hours", '[itemprop="openingHours"]', "[data-hours]"],
            confidence_score=0.5,
        )
    if field_name == "description":
        return LearnedPattern(
            field_name="description",
            selector="article p" if in_articles else "p, .description, .content, .text",
            fallback_selectors=[".description", "p", ".content", '[itemprop="description"]'],
            extraction_method=ExtractionMethod.TEXT,
            confidence_score=0.5,
        )
    return None


class PatternLearner:
    """
    Learns extraction patterns from a successful agent run.

    Persistence goes through the injected repositories; without them the
    learner only returns what it inferred.
    """

    def __init__(
        self,
        pattern_repository: PatternRepository | None = None,
        source_repository: SourceRepository | None = None,
    ) -> None:
        self.pattern_repository = pattern_repository
        self.source_repository = source_repository

    def learn(
        self,
        html: str,
        records: list[CandidateRecord],
        source: CrawlSource,
        run_id: str | None = None,
    ) -> PatternLearningResult:
        """
        Learn patterns for the fields the agent filled in.

        Args:
            html: Markup of the page the agent extracted from
            records: Records the agent produced from that page
            source: Source the page belongs to; its learning status is
                updated in place when learning completes
            run_id: Identifier of the agent run, stored with the patterns

        Returns:
            PatternLearningResult; unsuccessful when there was nothing to learn from
        """
        start = time.perf_counter()
        result = PatternLearningResult(source_id=str(source.id), source_name=source.name)

        if not records:
            result.error_message = "No booths extracted by agent"
            result.analysis_time_ms = (time.perf_counter() - start) * 1000
            return result

        logger.info(f"Learning patterns from {source.name} ({len(records)} booths extracted)")

        try:
            analysis = analyze_html_structure(html, booth_count=len(records))

            patterns = []
            for field_name in FIELDS_TO_LEARN:
                if not any(getattr(record, field_name, None) for record in records):
                    continue
                pattern = infer_pattern(field_name, analysis)
                if pattern is not None:
                    patterns.append(pattern.model_copy(update={"source_id": source.id}))

            if patterns and self.pattern_repository is not None:
                patterns = self.pattern_repository.upsert_patterns(source.id, patterns, run_id)

            if patterns:
                self._mark_completed(source)
                logger.info(f"Learned {len(patterns)} patterns for {source.name}")

            result.patterns_learned = patterns
            result.success = True
        except Exception as e:
            logger.exception(f"Pattern learning failed for {source.name}")
            result.error_message = str(e)
            self._mark_failed(source)

        result.analysis_time_ms = (time.perf_counter() - start) * 1000
        return result

    def _mark_completed(self, source: CrawlSource) -> None:
        # Agent-only sources keep their mode; everything else may now run direct
        mode = (
            ExtractionMode.AGENT
            if source.extraction_mode == ExtractionMode.AGENT
            else ExtractionMode.HYBRID
        )
        now = datetime.now(UTC)
        source.pattern_learning_status = PatternLearningStatus.COMPLETED
        source.pattern_learned_at = now
        source.extraction_mode = mode
        if self.source_repository is not None:
            self.source_repository.update_learning_status(
                source.id, PatternLearningStatus.COMPLETED, mode, now
            )

    def _mark_failed(self, source: CrawlSource) -> None:
        source.pattern_learning_status = PatternLearningStatus.FAILED
        if self.source_repository is not None:
            self.source_repository.update_learning_status(
                source.id, PatternLearningStatus.FAILED
            )
