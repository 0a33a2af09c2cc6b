"""
Crawl Pipeline Module
=====================

Orchestrates the per-page and per-batch stages:

Page stage (``process_page``):
1. Extract - decision engine picks agent or direct, with fallback
2. Learn - pattern learning after agent runs that need it
3. Geocode - coordinates backfilled through the cascade

Batch stage (``finalize_batch``):
4. Filter - records without a name or address are dropped
5. Deduplicate - pairwise scan, confident matches merged
6. Persist - survivors upserted, ambiguous matches queued for review
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from booth_catalog.core.enums import ExtractionMode
from booth_catalog.core.schema import CandidateRecord, CrawlSource
from booth_catalog.ingestion.deduplication import DeduplicationResult, Deduplicator
from booth_catalog.ingestion.extractors.base import PageContent
from booth_catalog.ingestion.strategy import ExtractionEngine, StrategyResult

if TYPE_CHECKING:
    from booth_catalog.db.repositories import BoothRepository, MatchRepository

logger = logging.getLogger(__name__)


@dataclass
class PageOutcome:
    """What one page produced."""

    url: str
    records: list[CandidateRecord] = field(default_factory=list)
    strategy: StrategyResult | None = None
    geocoded: int = 0
    geocode_failed: int = 0

    @property
    def errors(self) -> list[str]:
        return self.strategy.errors if self.strategy else []


@dataclass
class BatchOutcome:
    """What one deduplication batch produced."""

    invalid_dropped: int = 0
    booths_saved: int = 0
    review_saved: int = 0
    dedup: DeduplicationResult = field(default_factory=DeduplicationResult)
    errors: list[str] = field(default_factory=list)

    @property
    def stopped(self) -> bool:
        return self.dedup.stopped


class CrawlPipeline:
    """
    Runs extraction, geocoding and deduplication for a crawl.

    Pages are processed one at a time; deduplication runs once over the
    records collected from all pages of a batch.
    """

    def __init__(
        self,
        engine: ExtractionEngine,
        deduplicator: Deduplicator | None = None,
        booth_repository: BoothRepository | None = None,
        match_repository: MatchRepository | None = None,
    ) -> None:
        self.engine = engine
        self.deduplicator = deduplicator or Deduplicator()
        self.booth_repository = booth_repository
        self.match_repository = match_repository

    def process_page(
        self,
        source: CrawlSource,
        page: PageContent,
        run_id: str | None = None,
        force_mode: ExtractionMode | None = None,
    ) -> PageOutcome:
        """
        Extract records from one page and backfill their coordinates.

        Args:
            source: Source the page belongs to
            page: Page markup and text rendering
            run_id: Crawl run identifier
            force_mode: Skip the mode decision

        Returns:
            PageOutcome with the extracted records
        """
        strategy = self.engine.run(page, source, run_id=run_id, force_mode=force_mode)
        outcome = PageOutcome(url=page.url, records=strategy.records, strategy=strategy)

        for record in outcome.records:
            if record.has_coordinates or not record.is_valid:
                continue
            if self.deduplicator.geocode_record(record):
                outcome.geocoded += 1
            elif self.deduplicator.geocoder is not None:
                outcome.geocode_failed += 1

        logger.info(
            f"{page.url}: {len(outcome.records)} booths via {strategy.mode_used.value}"
            + (f", {outcome.geocoded} geocoded" if outcome.geocoded else "")
            + (f", {outcome.geocode_failed} not geocoded" if outcome.geocode_failed else "")
        )
        return outcome

    def finalize_batch(
        self,
        records: list[CandidateRecord],
        stop_requested: Callable[[], bool] | None = None,
    ) -> BatchOutcome:
        """
        Deduplicate a batch of records and persist the result.

        Args:
            records: Records collected from one or more pages
            stop_requested: Polled between records; finished work is kept

        Returns:
            BatchOutcome with counts and the deduplication result
        """
        outcome = BatchOutcome()
        valid = [r for r in records if r.is_valid]
        outcome.invalid_dropped = len(records) - len(valid)
        if outcome.invalid_dropped:
            logger.info(f"Dropped {outcome.invalid_dropped} records without name or address")

        outcome.dedup = self.deduplicator.deduplicate(valid, stop_requested)

        if self.booth_repository is not None:
            for record in outcome.dedup.records:
                try:
                    self.booth_repository.upsert(record)
                    outcome.booths_saved += 1
                except Exception as e:
                    logger.exception(f'Failed to save booth "{record.name}"')
                    outcome.errors.append(f'Save failed for "{record.name}": {e}')

        if self.match_repository is not None:
            for match in outcome.dedup.review_matches:
                self.match_repository.save_for_review(match)
                outcome.review_saved += 1

        return outcome
