"""Pipeline stage operations and the job handlers that drive them.

Each stage is a plain coroutine over a PipelineDeps container, so it can be
called from the HTTP API, the CLI or a job handler alike. Handlers wrap the
stages into tagged results for the worker.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Dict, List, Optional, Sequence

import httpx

from crawlsync.config import Settings, get_settings
from crawlsync.db.stores import JobStore, PageStore, SourceStore, SyncStore
from crawlsync.errors import NotFoundError, PipelineError
from crawlsync.models.common import Clock, utcnow
from crawlsync.models.jobs import Job, JobKind
from crawlsync.models.posts import ExtractedPost
from crawlsync.services.crawl.base import CachedPage, DiscoverConfig, Ingestor, RawPage, SourceIngestor
from crawlsync.services.crawl.ingestors.http_ingestor import HttpIngestor
from crawlsync.services.crawl.ingestors.rate_limited import RateLimitedIngestor
from crawlsync.services.crawl.ingestors.social_ingestor import SocialIngestor
from crawlsync.services.crawl.ingestors.validated import ValidatedIngestor
from crawlsync.services.crawl.pipeline import ContentCache
from crawlsync.services.crawl.robots import RobotsCache
from crawlsync.services.crawl.site_crawler import discover_site
from crawlsync.services import discovery_service
from crawlsync.services.extraction.engine import ExtractionEngine
from crawlsync.services.extraction.enrichment import Enricher, EnrichmentSearch
from crawlsync.services.jobs.queue import JobQueue
from crawlsync.services.jobs.worker import Handler
from crawlsync.services.llm_client import AIBackend
from crawlsync.services.results import Err, Ok, Result
from crawlsync.services.summarizer import Summarizer
from crawlsync.services.sync.engine import SyncEngine

logger = logging.getLogger(__name__)


@dataclass
class PipelineDeps:
    settings: Settings
    backend: AIBackend
    pages: PageStore
    sources: SourceStore
    records: SyncStore
    jobs: JobStore
    ingestor: Ingestor
    search: Optional[EnrichmentSearch] = None
    social: Optional[SourceIngestor] = None
    robots_client: Optional[httpx.AsyncClient] = None
    clock: Clock = utcnow

    summarizer: Summarizer = field(init=False)
    cache: ContentCache = field(init=False)
    extraction: ExtractionEngine = field(init=False)
    sync: SyncEngine = field(init=False)
    queue: JobQueue = field(init=False)

    def __post_init__(self) -> None:
        s = self.settings
        self.summarizer = Summarizer(
            self.backend,
            self.pages,
            prompt_version=s.summary_prompt_version,
            concurrency=s.summarize_concurrency,
        )
        self.cache = ContentCache(
            self.pages,
            prompt_hash=self.summarizer.prompt_hash,
            min_summary_chars=s.min_summary_chars,
            max_age=timedelta(hours=s.cache_max_age_hours) if s.cache_max_age_hours else None,
            clock=self.clock,
        )
        enricher = Enricher(
            self.backend,
            self.search,
            max_turns=s.enrichment_max_turns,
            time_budget=s.enrichment_seconds,
        )
        self.extraction = ExtractionEngine(
            self.backend,
            enricher,
            batch_char_budget=s.batch_char_budget,
            page_char_limit=s.page_char_limit,
            concurrency=s.extraction_concurrency,
        )
        self.sync = SyncEngine(
            self.backend,
            self.records,
            intra_threshold=s.intra_run_threshold,
            cross_threshold=s.cross_run_threshold,
            cleanup_threshold=s.cleanup_threshold,
            clock=self.clock,
        )
        self.queue = JobQueue(
            self.jobs,
            max_retries=s.job_max_retries,
            backoff_base=s.job_backoff_base,
            backoff_cap=s.job_backoff_cap,
            stale_after=s.job_stale_seconds,
            clock=self.clock,
        )


def build_deps(
    settings: Optional[Settings] = None,
    *,
    store: Any = None,
    backend: Optional[AIBackend] = None,
    ingestor: Optional[Ingestor] = None,
    search: Optional[EnrichmentSearch] = None,
    social: Optional[SourceIngestor] = None,
    robots_client: Optional[httpx.AsyncClient] = None,
    clock: Clock = utcnow,
) -> PipelineDeps:
    """Production wiring; every collaborator can be overridden."""
    settings = settings or get_settings()
    if store is None:
        if settings.store_backend == "neo4j":
            from crawlsync.db.neo4j_store import Neo4jStore

            store = Neo4jStore()
        else:
            from crawlsync.db.memory import MemoryStore

            store = MemoryStore()
    if backend is None:
        from crawlsync.services.llm_client import LLMClient

        backend = LLMClient(strong_model=settings.strong_model)
    if ingestor is None:
        http = HttpIngestor(user_agent=settings.user_agent, timeout=settings.http_timeout)
        ingestor = RateLimitedIngestor(
            ValidatedIngestor(http),
            max_concurrent=settings.max_concurrent_fetches,
            per_host_delay=settings.per_host_delay,
        )
        if robots_client is None:
            robots_client = httpx.AsyncClient(timeout=settings.http_timeout, follow_redirects=True)
    if search is None:
        from crawlsync.services.web_search_service import WebSearch

        search = WebSearch()
    if social is None and settings.apify_token:
        social = SocialIngestor(token=settings.apify_token, clock=clock)
    return PipelineDeps(
        settings=settings,
        backend=backend,
        pages=store,
        sources=store,
        records=store,
        jobs=store,
        ingestor=ingestor,
        search=search,
        social=social,
        robots_client=robots_client,
        clock=clock,
    )


# --- stages -------------------------------------------------------------------


async def run_discovery(deps: PipelineDeps) -> Dict[str, Any]:
    if deps.search is None:
        raise PipelineError("no search service configured")
    return await discovery_service.run_discovery(
        deps.sources, deps.search, location=deps.settings.discovery_location
    )


async def _cache_and_summarize(deps: PipelineDeps, raws: Sequence[RawPage], source_id: str) -> Dict[str, Any]:
    pages: List[CachedPage] = list(
        await asyncio.gather(*(deps.cache.ingest(raw, source_id=source_id) for raw in raws if raw.has_content()))
    )
    todo = [p for p in pages if p.needs_summary(deps.summarizer.prompt_hash)]
    await deps.summarizer.summarize_all(todo)
    return {
        "pages_crawled": len(pages),
        "pages_summarized": len(todo),
        "page_ids": [p.id for p in pages],
    }


async def crawl_website(deps: PipelineDeps, website_id: str) -> Dict[str, Any]:
    site = await deps.sources.get_website(website_id)
    if site is None:
        raise NotFoundError(f"website {website_id} not found")
    if site.status != "approved":
        raise PipelineError(f"website {site.domain} is {site.status}, not approved")
    config = DiscoverConfig(
        url=site.url,
        limit=site.max_pages or deps.settings.max_pages_per_site,
        max_depth=deps.settings.max_crawl_depth,
    )
    # robots policies are cached for this run only
    robots = RobotsCache(deps.robots_client, deps.settings.user_agent) if deps.robots_client is not None else None
    raws = await discover_site(deps.ingestor, config, robots=robots)
    fact = await _cache_and_summarize(deps, raws, site.id)
    site.last_crawled_at = deps.clock()
    await deps.sources.save_website(site)
    logger.info("Crawled %s: %d page(s), %d summarized", site.domain, fact["pages_crawled"], fact["pages_summarized"])
    return fact


async def regenerate_posts(deps: PipelineDeps, social_source_id: str) -> Dict[str, Any]:
    """Re-scrape a social profile's recent posts into the cache."""
    source = await deps.sources.get_social_source(social_source_id)
    if source is None:
        raise NotFoundError(f"social source {social_source_id} not found")
    if deps.social is None:
        raise PipelineError("social ingestion is not configured (APIFY_TOKEN)")
    raws = await deps.social.fetch_source(source)
    return await _cache_and_summarize(deps, raws, source.id)


async def extract_posts(deps: PipelineDeps, page_ids: Sequence[str]) -> Dict[str, Any]:
    pages = await deps.pages.get_pages(page_ids)
    if len(pages) < len(page_ids):
        logger.warning("%d of %d page(s) no longer cached", len(page_ids) - len(pages), len(page_ids))
    posts = await deps.extraction.extract(pages)
    return {
        "narratives_count": len(posts),
        "page_urls": [p.url for p in pages],
        "posts": [p.model_dump(mode="json") for p in posts],
    }


async def sync_posts(deps: PipelineDeps, source_id: str, posts: Sequence[Any]) -> Dict[str, Any]:
    parsed = [p if isinstance(p, ExtractedPost) else ExtractedPost.model_validate(p) for p in posts]
    batch = await deps.sync.stage(source_id, parsed)
    return {"posts_synced": len(parsed), "batch_id": batch.id, "proposals": len(batch.proposal_ids)}


async def get_job(deps: PipelineDeps, job_id: str) -> Dict[str, Any]:
    return await deps.queue.get_job(job_id)


async def get_batch(deps: PipelineDeps, batch_id: str) -> Dict[str, Any]:
    batch = await deps.records.get_batch(batch_id)
    if batch is None:
        raise NotFoundError(f"batch {batch_id} not found")
    proposals = await deps.records.list_proposals(batch_id)
    return {**batch.to_dict(), "proposals": [p.to_dict() for p in proposals]}


async def approve_proposal(deps: PipelineDeps, proposal_id: str) -> Dict[str, Any]:
    return (await deps.sync.approve_proposal(proposal_id)).to_dict()


async def reject_proposal(deps: PipelineDeps, proposal_id: str) -> Dict[str, Any]:
    return (await deps.sync.reject_proposal(proposal_id)).to_dict()


async def approve_batch(deps: PipelineDeps, batch_id: str) -> Dict[str, Any]:
    return await deps.sync.approve_batch(batch_id)


async def reject_batch(deps: PipelineDeps, batch_id: str) -> Dict[str, Any]:
    return await deps.sync.reject_batch(batch_id)


async def cleanup(deps: PipelineDeps, source_id: Optional[str] = None) -> Dict[str, Any]:
    batches = await deps.sync.cleanup(source_id)
    return {"batches": [b.id for b in batches], "proposals": sum(len(b.proposal_ids) for b in batches)}


async def purge_cache(deps: PipelineDeps, days: Optional[int] = None) -> Dict[str, Any]:
    removed = await deps.cache.purge_older_than(timedelta(days=days or deps.settings.cache_retention_days))
    return {"pages_purged": removed}


# --- job handlers -------------------------------------------------------------


async def _guard(work: Awaitable[Dict[str, Any]]) -> Result:
    try:
        return Ok(await work)
    except PipelineError as exc:
        return Err(exc.kind, exc.message)


def job_handlers(deps: PipelineDeps) -> Dict[JobKind, Handler]:
    async def crawl(job: Job) -> Result:
        return await _guard(crawl_website(deps, job.payload.get("website_id") or job.source_key))

    async def regenerate(job: Job) -> Result:
        return await _guard(regenerate_posts(deps, job.payload.get("social_source_id") or job.source_key))

    async def extract(job: Job) -> Result:
        return await _guard(extract_posts(deps, job.payload.get("page_ids") or []))

    async def sync(job: Job) -> Result:
        return await _guard(
            sync_posts(deps, job.payload.get("source_id") or job.source_key, job.payload.get("posts") or [])
        )

    async def discover(job: Job) -> Result:
        return await _guard(run_discovery(deps))

    return {
        JobKind.CRAWL_WEBSITE: crawl,
        JobKind.REGENERATE_POSTS: regenerate,
        JobKind.EXTRACT_POSTS: extract,
        JobKind.SYNC_POSTS: sync,
        JobKind.RUN_DISCOVERY: discover,
    }
