"""
Direct Scraper Module
=====================

Extracts booth records with learned patterns alone, without calling the
agent extractor.

Steps:
1. Find repeated container elements (articles, list items, cards); if
   none repeat, the whole page is one container
2. For each field, try its patterns on each container from the most
   confident down and keep the first value found; a pattern tries its
   primary selector, then its fallbacks, then the validation regex and
   transform
3. Keep records that resolved both name and address
4. Credit success only to the pattern that supplied a kept value
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from bs4 import BeautifulSoup, Tag
from pydantic import ValidationError
from soupsieve import SelectorSyntaxError

from booth_catalog.core.enums import ExtractionMethod, PatternType
from booth_catalog.core.schema import (
    CandidateRecord,
    CrawlSource,
    LearnedPattern,
    PatternValidationEvent,
)
from booth_catalog.ingestion.extractors.base import PageContent

if TYPE_CHECKING:
    from booth_catalog.db.repositories import PatternRepository

logger = logging.getLogger(__name__)

# Tried in order; the first selector matching two or more elements wins
CONTAINER_SELECTORS = [
    "article",
    "li",
    ".card",
    ".item",
    ".listing",
    ".booth",
    ".location",
    "[data-booth]",
    "[data-location]",
]

COMPOUND_SEPARATOR = "&&"

_WHITESPACE = re.compile(r"\s+")

TRANSFORMS = {
    "trim": str.strip,
    "lowercase": str.lower,
    "uppercase": str.upper,
    "remove_extra_spaces": lambda value: _WHITESPACE.sub(" ", value).strip(),
}


@dataclass
class DirectScraperResult:
    """Records and pattern statistics from one direct scraping run."""

    records: list[CandidateRecord] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    extraction_time_ms: float = 0.0
    patterns_used: int = 0
    patterns_successful: int = 0
    patterns_failed: int = 0
    confidence: float = 0.0
    validation_events: list[PatternValidationEvent] = field(default_factory=list)


def calculate_direct_confidence(
    records_found: int,
    patterns_used: int,
    patterns_successful: int,
    expected_records: int = 5,
) -> float:
    """
    Score how well a direct run went.

    60% comes from how many records were found against the expected
    count per page, 40% from the share of patterns that fired.

    Returns:
        Confidence between 0 and 1
    """
    record_score = min(records_found / expected_records, 1.0) if expected_records > 0 else 0.0
    pattern_score = patterns_successful / patterns_used if patterns_used > 0 else 0.0
    return record_score * 0.6 + pattern_score * 0.4


def find_booth_containers(soup: BeautifulSoup) -> list[Tag]:
    """Return the repeated booth blocks, or the whole document as one block."""
    for selector in CONTAINER_SELECTORS:
        found = soup.select(selector)
        if len(found) >= 2:
            logger.debug(f"Using container selector '{selector}' ({len(found)} matches)")
            return found
    return [soup]


def read_element(element: Tag, method: ExtractionMethod, args: dict[str, Any]) -> str | None:
    """Read a value from a matched element."""
    if method == ExtractionMethod.ATTRIBUTE:
        attr = args.get("attr")
        if not attr:
            return None
        value = element.get(attr)
        if isinstance(value, list):
            value = " ".join(value)
        return value
    if method == ExtractionMethod.MARKUP:
        return element.decode_contents()
    return _WHITESPACE.sub(" ", element.get_text(" ", strip=True)).strip()


def try_selector(container: Tag, pattern: LearnedPattern, selector: str) -> str | None:
    """Evaluate one selector of a pattern against a container."""
    if not selector:
        return None

    try:
        if pattern.pattern_type == PatternType.REGEX:
            match = re.search(selector, container.get_text(" ", strip=True))
            return match.group(0) if match else None

        if pattern.pattern_type == PatternType.COMPOUND:
            parts = []
            for part in selector.split(COMPOUND_SEPARATOR):
                element = container.select_one(part.strip()) if part.strip() else None
                value = read_element(element, pattern.extraction_method, pattern.extraction_args) if element else None
                if value:
                    parts.append(value)
            return ", ".join(parts) or None

        if pattern.pattern_type == PatternType.CSS_SELECTOR:
            element = container.select_one(selector)
            if element is None:
                return None
            return read_element(element, pattern.extraction_method, pattern.extraction_args)
    except (re.error, SelectorSyntaxError) as e:
        logger.debug(f"Invalid selector for {pattern.field_name}: {selector!r} ({e})")
        return None

    logger.debug(f"Pattern type {pattern.pattern_type.value} is not supported by the direct scraper")
    return None


def extract_value(container: Tag, pattern: LearnedPattern) -> str | None:
    """
    Apply a pattern to a container.

    The primary selector is tried first, then each fallback. A value that
    fails the validation regex is discarded.
    """
    value = None
    for selector in [pattern.selector, *pattern.fallback_selectors]:
        value = try_selector(container, pattern, selector)
        if value:
            break

    if value and pattern.validation_regex:
        try:
            if not re.search(pattern.validation_regex, value):
                return None
        except re.error:
            logger.debug(f"Invalid validation regex for {pattern.field_name}")
            return None

    if value and pattern.transform_fn:
        transform = TRANSFORMS.get(pattern.transform_fn)
        if transform is not None:
            value = transform(value)

    return value or None


def rank_patterns(patterns: list[LearnedPattern]) -> dict[str, list[int]]:
    """
    Group pattern positions by field, most confident first.

    Ties keep their input order.
    """
    ranked: dict[str, list[int]] = {}
    for index, pattern in enumerate(patterns):
        ranked.setdefault(pattern.field_name, []).append(index)
    for candidates in ranked.values():
        candidates.sort(key=lambda i: patterns[i].confidence_score, reverse=True)
    return ranked


class DirectScraper:
    """
    Pattern-based booth extractor.

    Cheap compared to the agent, but brittle when a site's layout drifts;
    the confidence it reports lets the caller fall back to the agent.
    """

    def __init__(
        self,
        pattern_repository: PatternRepository | None = None,
        expected_records_per_page: int = 5,
    ) -> None:
        self.pattern_repository = pattern_repository
        self.expected_records_per_page = expected_records_per_page

    def scrape(
        self,
        page: PageContent,
        source: CrawlSource,
        patterns: list[LearnedPattern],
        run_id: str | None = None,
    ) -> DirectScraperResult:
        """
        Extract records from a page using a source's patterns.

        Args:
            page: Page markup
            source: Source the patterns belong to
            patterns: Active patterns for the source
            run_id: Crawl run identifier stored with validation events

        Returns:
            DirectScraperResult with valid records and pattern statistics
        """
        start = time.perf_counter()
        result = DirectScraperResult(patterns_used=len(patterns))

        logger.info(f"Direct scraping {source.name} with {len(patterns)} patterns")

        soup = BeautifulSoup(page.html or "", "html.parser")
        containers = find_booth_containers(soup)

        ranked = rank_patterns(patterns)
        # index into patterns -> first value it supplied to a kept record
        credited: dict[int, str] = {}

        for container in containers:
            values: dict[str, Any] = {}
            supplied_by: dict[str, int] = {}
            for field_name, candidates in ranked.items():
                for index in candidates:
                    value = extract_value(container, patterns[index])
                    if value:
                        values[field_name] = value
                        supplied_by[field_name] = index
                        break

            if not values.get("name") or not values.get("address"):
                continue

            try:
                record = CandidateRecord.model_validate(
                    {**values, "source_name": source.name, "source_url": page.url}
                )
            except ValidationError as e:
                result.errors.append(f"Discarded record '{values['name']}': {e.error_count()} invalid fields")
                continue

            if record.is_valid:
                result.records.append(record)
                for field_name, index in supplied_by.items():
                    if getattr(record, field_name, None):
                        credited.setdefault(index, values[field_name])

        elapsed_ms = (time.perf_counter() - start) * 1000

        for index, pattern in enumerate(patterns):
            extracted = credited.get(index)
            success = extracted is not None
            if success:
                result.patterns_successful += 1
            else:
                result.patterns_failed += 1
            result.validation_events.append(
                PatternValidationEvent(
                    pattern_id=pattern.id,
                    source_id=source.id,
                    field_name=pattern.field_name,
                    selector=pattern.selector,
                    crawl_run_id=run_id,
                    success=success,
                    extracted_value=extracted,
                    latency_ms=elapsed_ms,
                    source_url=page.url,
                    html_snippet=(page.html or "")[:500],
                )
            )

        if self.pattern_repository is not None:
            for event in result.validation_events:
                if event.pattern_id is not None:
                    self.pattern_repository.record_validation(event)

        result.confidence = calculate_direct_confidence(
            len(result.records),
            result.patterns_used,
            result.patterns_successful,
            self.expected_records_per_page,
        )
        result.extraction_time_ms = (time.perf_counter() - start) * 1000

        logger.info(
            f"Direct scraping found {len(result.records)} booths in {len(containers)} containers "
            f"({result.patterns_successful}/{result.patterns_used} patterns successful, "
            f"confidence {result.confidence:.2f})"
        )
        return result
