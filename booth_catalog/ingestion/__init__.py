"""
Booth Catalog Ingestion Framework
=================================

This package provides the pipeline that turns crawled pages into a
deduplicated, geocoded catalog of photo booths.

Pipeline Stages:
1. Discovery - Extractors find URLs to crawl from a source
2. Fetch - Crawler respects robots.txt, rate limits, fetches content
3. Decide - The decision engine picks agent or direct extraction per page
4. Extract - The agent or the learned-pattern scraper produces records
5. Learn - Successful agent runs teach patterns for later direct runs
6. Geocode - Missing coordinates are filled in by the provider cascade
7. Deduplicate - Near-duplicate records are merged or queued for review

Background jobs live in ``booth_catalog.ingestion.jobs``.
"""

from booth_catalog.ingestion.registry import (
    SourceRegistry,
    SourceConfig,
    RateLimitConfig,
    ExtractionConfig,
    DeduplicationConfig,
    GeocodingConfig,
    get_default_registry,
)
from booth_catalog.ingestion.crawler import (
    Crawler,
    FetchResult,
    TokenBucket,
    RobotsChecker,
)
from booth_catalog.ingestion.pattern_learning import (
    PatternLearner,
    PatternLearningResult,
)
from booth_catalog.ingestion.direct_scraper import (
    DirectScraper,
    DirectScraperResult,
)
from booth_catalog.ingestion.strategy import (
    ExtractionEngine,
    ModeDecision,
    StrategyResult,
    decide_extraction_mode,
    summarize_strategy,
)
from booth_catalog.ingestion.deduplication import (
    Deduplicator,
    DeduplicationResult,
    compare_booths,
    merge_booths,
)
from booth_catalog.ingestion.pipeline import (
    CrawlPipeline,
    PageOutcome,
    BatchOutcome,
)

__all__ = [
    # Registry
    "SourceRegistry",
    "SourceConfig",
    "RateLimitConfig",
    "ExtractionConfig",
    "DeduplicationConfig",
    "GeocodingConfig",
    "get_default_registry",
    # Crawler
    "Crawler",
    "FetchResult",
    "TokenBucket",
    "RobotsChecker",
    # Pattern learning
    "PatternLearner",
    "PatternLearningResult",
    # Direct scraping
    "DirectScraper",
    "DirectScraperResult",
    # Strategy
    "ExtractionEngine",
    "ModeDecision",
    "StrategyResult",
    "decide_extraction_mode",
    "summarize_strategy",
    # Deduplication
    "Deduplicator",
    "DeduplicationResult",
    "compare_booths",
    "merge_booths",
    # Pipeline
    "CrawlPipeline",
    "PageOutcome",
    "BatchOutcome",
]
