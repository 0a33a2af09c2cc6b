"""
Crawl Jobs
==========

arq task that runs the whole pipeline for one source, plus helpers to
queue it, poll it, or run it inline. The queue lives in Redis; the
inline path needs neither Redis nor a worker.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from arq import create_pool
from arq.connections import RedisSettings
from arq.jobs import Job
from arq.jobs import JobStatus as ArqJobStatus
from sqlalchemy.orm import Session

from booth_catalog.core.enums import ExtractionMode
from booth_catalog.core.schema import CandidateRecord, CrawlSource
from booth_catalog.db.engine import get_session, init_db
from booth_catalog.db.repositories import (
    SqlBoothRepository,
    SqlMatchRepository,
    SqlPatternRepository,
    SqlSourceRepository,
)
from booth_catalog.geocoding.cascade import GeocodingCascade
from booth_catalog.ingestion.crawler import Crawler
from booth_catalog.ingestion.deduplication import Deduplicator
from booth_catalog.ingestion.extractors import FixtureAgentExtractor, get_agent_extractor
from booth_catalog.ingestion.extractors.base import AgentExtractor, PageContent
from booth_catalog.ingestion.pattern_learning import PatternLearner
from booth_catalog.ingestion.pipeline import CrawlPipeline, PageOutcome
from booth_catalog.ingestion.registry import SourceConfig, SourceRegistry, get_default_registry
from booth_catalog.ingestion.strategy import ExtractionEngine

logger = logging.getLogger(__name__)

TIMESTAMP_FIELDS = ("started_at", "completed_at")


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class JobResult:
    """Counters and errors reported by one crawl run."""

    job_id: str
    source_name: str
    status: JobStatus
    started_at: datetime | None = None
    completed_at: datetime | None = None
    urls_discovered: int = 0
    urls_fetched: int = 0
    booths_extracted: int = 0
    booths_saved: int = 0
    duplicates_merged: int = 0
    review_queue_count: int = 0
    pages_direct: int = 0
    pages_agent: int = 0
    fallbacks: int = 0
    patterns_learned: int = 0
    geocoded: int = 0
    errors: list[str] = field(default_factory=list)
    duration_seconds: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly form; arq stores this as the job result."""
        data = asdict(self)
        data["status"] = self.status.value
        for key in TIMESTAMP_FIELDS:
            stamp = data[key]
            data[key] = stamp.isoformat() if stamp else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> JobResult:
        values = dict(data)
        values["status"] = JobStatus(values["status"])
        for key in TIMESTAMP_FIELDS:
            if values.get(key):
                values[key] = datetime.fromisoformat(values[key])
        return cls(**values)

    def fail(self, message: str) -> dict[str, Any]:
        self.status = JobStatus.FAILED
        self.errors.append(message)
        return self.to_dict()

    def record_page(self, url: str, outcome: PageOutcome) -> None:
        strategy = outcome.strategy
        self.urls_fetched += 1
        self.geocoded += outcome.geocoded
        self.errors.extend(f"{url}: {message}" for message in outcome.errors)
        if strategy.mode_used == ExtractionMode.DIRECT:
            self.pages_direct += 1
        else:
            self.pages_agent += 1
        if strategy.fallback_to_agent:
            self.fallbacks += 1
        learning = strategy.pattern_learning
        if learning is not None and learning.success:
            self.patterns_learned += len(learning.patterns_learned)


def get_redis_settings() -> RedisSettings:
    """Redis location from REDIS_HOST, REDIS_PORT and REDIS_DB."""
    env = os.environ
    return RedisSettings(
        host=env.get("REDIS_HOST", "localhost"),
        port=int(env.get("REDIS_PORT", 6379)),
        database=int(env.get("REDIS_DB", 0)),
    )


def _build_pipeline(
    session: Session,
    registry: SourceRegistry,
    extractor: AgentExtractor,
    geocoder: GeocodingCascade | None,
) -> CrawlPipeline:
    source_repo = SqlSourceRepository(session)
    pattern_repo = SqlPatternRepository(session, registry.extraction.pattern_active_floor)
    engine = ExtractionEngine(
        extractor,
        pattern_learner=PatternLearner(pattern_repo, source_repo),
        pattern_repository=pattern_repo,
        config=registry.extraction,
    )
    return CrawlPipeline(
        engine,
        Deduplicator(registry.deduplication, geocoder),
        booth_repository=SqlBoothRepository(session),
        match_repository=SqlMatchRepository(session),
    )


async def _load_page(
    url: str,
    extractor: AgentExtractor,
    crawler: Crawler,
    source_config: SourceConfig,
) -> tuple[PageContent | None, str | None]:
    # Fixture URLs point at canned pages, never at the network
    if isinstance(extractor, FixtureAgentExtractor):
        index = int(url.rstrip("/").rsplit("/", 1)[-1])
        return extractor.get_fixture_page(index), None
    return await crawler.fetch_page(url, source_config)


async def _crawl_pages(
    result: JobResult,
    urls: list[str],
    source: CrawlSource,
    source_config: SourceConfig,
    extractor: AgentExtractor,
    crawler: Crawler,
    pipeline: CrawlPipeline,
    session: Session,
    mode: ExtractionMode | None,
) -> list[CandidateRecord]:
    records: list[CandidateRecord] = []
    for url in urls:
        try:
            page, reason = await _load_page(url, extractor, crawler, source_config)
            if page is None:
                result.errors.append(f"Failed to fetch {url}: {reason}")
                continue
            outcome = pipeline.process_page(source, page, run_id=result.job_id, force_mode=mode)
            result.record_page(url, outcome)
            records.extend(outcome.records)
            # Learned patterns and validations are kept even if a later page fails
            session.commit()
        except Exception as e:
            logger.exception(f"Page {url} failed")
            session.rollback()
            result.errors.append(f"{url}: {e}")
    return records


async def crawl_source(
    ctx: dict[str, Any],
    source_name: str,
    max_urls: int | None = None,
    force_mode: str | None = None,
    geocode: bool = True,
) -> dict[str, Any]:
    """
    arq task: crawl one source end to end.

    URLs come from the source's extractor and are fetched in order,
    at most ``max_urls`` of them. Every page goes through the extraction
    engine, which picks agent or direct extraction unless ``force_mode``
    names one; missing coordinates are then backfilled when ``geocode``
    is set. When all pages are done the collected records are
    deduplicated once and written to the database along with any pairs
    that need manual review.

    Configuration problems and unexpected exceptions end the job with
    status ``failed``; a single bad page only adds to ``errors``.
    Returns ``JobResult.to_dict()``.
    """
    result = JobResult(
        job_id=ctx.get("job_id") or str(uuid4()),
        source_name=source_name,
        status=JobStatus.RUNNING,
        started_at=datetime.now(UTC),
    )
    geocoder: GeocodingCascade | None = None

    try:
        registry = get_default_registry()
        source_config = registry.get_source(source_name)
        if source_config is None:
            return result.fail(f"Source '{source_name}' not found")
        if not source_config.enabled:
            return result.fail(f"Source '{source_name}' is disabled")

        extractor = get_agent_extractor(source_config.extractor, source_config.custom_config)
        if extractor is None:
            return result.fail(f"Extractor '{source_config.extractor}' not found")

        mode = ExtractionMode(force_mode) if force_mode else None

        settings = registry.global_config
        crawler = Crawler(
            user_agent=settings.user_agent,
            timeout=settings.request_timeout,
            max_retries=settings.max_retries,
        )
        if geocode:
            geocoder = GeocodingCascade.from_config(registry.geocoding, settings.user_agent)

        urls = extractor.discover_urls(source_config.seed_urls or None)
        result.urls_discovered = len(urls)
        urls = urls[:max_urls] if max_urls else urls
        logger.info(f"{source_name}: {result.urls_discovered} URLs discovered, crawling {len(urls)}")

        init_db()
        with get_session() as session:
            source = SqlSourceRepository(session).get_or_create(source_config)
            session.commit()

            pipeline = _build_pipeline(session, registry, extractor, geocoder)
            records = await _crawl_pages(
                result, urls, source, source_config, extractor, crawler, pipeline, session, mode
            )

            result.booths_extracted = len(records)
            batch = pipeline.finalize_batch(records)
            session.commit()

        result.booths_saved = batch.booths_saved
        result.duplicates_merged = batch.dedup.stats.merged_count
        result.review_queue_count = batch.review_saved
        result.errors.extend(batch.errors)
        result.status = JobStatus.COMPLETED

    except Exception as e:
        logger.exception(f"Crawl of {source_name} aborted")
        result.status = JobStatus.FAILED
        result.errors.append(str(e))

    finally:
        if geocoder is not None:
            geocoder.close()
        result.completed_at = datetime.now(UTC)
        result.duration_seconds = (result.completed_at - result.started_at).total_seconds()

    return result.to_dict()


async def crawl_source_sync(
    source_name: str,
    max_urls: int | None = None,
    force_mode: str | None = None,
    geocode: bool = True,
) -> JobResult:
    """Run :func:`crawl_source` in this process, bypassing the queue."""
    data = await crawl_source({"job_id": str(uuid4())}, source_name, max_urls, force_mode, geocode)
    return JobResult.from_dict(data)


async def enqueue_crawl(
    source_name: str,
    max_urls: int | None = None,
    force_mode: str | None = None,
) -> str:
    """Queue a crawl for the worker and return its job ID."""
    redis = await create_pool(get_redis_settings())
    try:
        job = await redis.enqueue_job("crawl_source", source_name, max_urls, force_mode)
    finally:
        await redis.close()
    return job.job_id


async def get_job_status(job_id: str) -> dict[str, Any] | None:
    """
    Look up a queued job.

    Returns ``{"job_id", "status", "result"}`` where ``result`` is the
    task's dict once it has finished, or None for an unknown ID.
    """
    redis = await create_pool(get_redis_settings())
    try:
        job = Job(job_id, redis)
        status = await job.status()
        if status == ArqJobStatus.not_found:
            return None
        info = await job.result_info()
    finally:
        await redis.close()

    return {"job_id": job_id, "status": status.value, "result": info.result if info else None}


class WorkerSettings:
    """Settings consumed by ``arq`` / ``booth-catalog ingest worker``."""

    functions = [crawl_source]
    redis_settings = get_redis_settings()
    max_jobs = 5
    job_timeout = 60 * 60
    keep_result = 24 * 60 * 60
