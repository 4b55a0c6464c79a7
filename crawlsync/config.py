"""Runtime settings for the crawl/extract/sync pipeline.

All values come from environment variables (optionally loaded from a `.env`
file at the project root). Defaults are tuned for small community sites.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def load_env_file(path: Optional[str] = None) -> None:
    """Load environment variables from a .env file at the project root if present.

    Only sets variables that aren't already present in the process environment.
    """
    try:
        if path is None:
            root_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
            path = os.path.join(root_dir, ".env")
        if not os.path.isfile(path):
            return
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                s = line.strip()
                if not s or s.startswith("#"):
                    continue
                if "=" not in s:
                    continue
                key, val = s.split("=", 1)
                key = key.strip()
                val = val.strip().strip('"').strip("'")
                if key and (key not in os.environ or not os.environ[key]):
                    os.environ[key] = val
    except OSError:
        # Best-effort; an unreadable .env leaves the process environment untouched
        pass


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


@dataclass
class Settings:
    user_agent: str = "crawlsync-bot/0.1"
    http_timeout: float = 20.0

    # ingestion
    max_concurrent_fetches: int = 4
    per_host_delay: float = 1.0
    max_pages_per_site: int = 20
    max_crawl_depth: int = 2
    min_summary_chars: int = 50
    cache_max_age_hours: Optional[float] = None
    cache_retention_days: int = 180

    # summarizer
    summary_prompt_version: str = "v1"
    summarize_concurrency: int = 4

    # extraction
    batch_char_budget: int = 60_000
    page_char_limit: int = 12_000
    extraction_concurrency: int = 3
    enrichment_max_turns: int = 8
    enrichment_seconds: float = 90.0

    # dedup/sync
    intra_run_threshold: float = 0.85
    cross_run_threshold: float = 0.82
    cleanup_threshold: float = 0.75
    strong_model: Optional[str] = None

    # jobs
    job_max_retries: int = 3
    job_backoff_base: float = 30.0
    job_backoff_cap: float = 3600.0
    job_stale_seconds: float = 900.0
    worker_concurrency: int = 2
    worker_poll_seconds: float = 5.0
    crawl_interval_hours: float = 24.0
    discovery_interval_hours: float = 168.0
    discovery_location: str = "Twin Cities, Minnesota"

    # social
    apify_token: Optional[str] = None

    # "memory" or "neo4j"
    store_backend: str = "memory"


def get_settings() -> Settings:
    load_env_file()
    max_age = os.getenv("CACHE_MAX_AGE_HOURS")
    return Settings(
        user_agent=os.getenv("CRAWL_USER_AGENT") or Settings.user_agent,
        http_timeout=_float("CRAWL_HTTP_TIMEOUT", Settings.http_timeout),
        max_concurrent_fetches=_int("CRAWL_MAX_CONCURRENT", Settings.max_concurrent_fetches),
        per_host_delay=_float("CRAWL_PER_HOST_DELAY", Settings.per_host_delay),
        max_pages_per_site=_int("CRAWL_MAX_PAGES", Settings.max_pages_per_site),
        max_crawl_depth=_int("CRAWL_MAX_DEPTH", Settings.max_crawl_depth),
        min_summary_chars=_int("CACHE_MIN_SUMMARY_CHARS", Settings.min_summary_chars),
        cache_max_age_hours=float(max_age) if max_age else None,
        cache_retention_days=_int("CACHE_RETENTION_DAYS", Settings.cache_retention_days),
        summary_prompt_version=os.getenv("SUMMARY_PROMPT_VERSION") or Settings.summary_prompt_version,
        summarize_concurrency=_int("SUMMARIZE_CONCURRENCY", Settings.summarize_concurrency),
        batch_char_budget=_int("EXTRACT_BATCH_CHARS", Settings.batch_char_budget),
        page_char_limit=_int("EXTRACT_PAGE_CHARS", Settings.page_char_limit),
        extraction_concurrency=_int("EXTRACT_CONCURRENCY", Settings.extraction_concurrency),
        enrichment_max_turns=_int("ENRICH_MAX_TURNS", Settings.enrichment_max_turns),
        enrichment_seconds=_float("ENRICH_SECONDS", Settings.enrichment_seconds),
        intra_run_threshold=_float("DEDUP_INTRA_THRESHOLD", Settings.intra_run_threshold),
        cross_run_threshold=_float("DEDUP_CROSS_THRESHOLD", Settings.cross_run_threshold),
        cleanup_threshold=_float("DEDUP_CLEANUP_THRESHOLD", Settings.cleanup_threshold),
        strong_model=os.getenv("LLM_STRONG_MODEL") or None,
        job_max_retries=_int("JOB_MAX_RETRIES", Settings.job_max_retries),
        job_backoff_base=_float("JOB_BACKOFF_BASE_SECONDS", Settings.job_backoff_base),
        job_backoff_cap=_float("JOB_BACKOFF_CAP_SECONDS", Settings.job_backoff_cap),
        job_stale_seconds=_float("JOB_STALE_SECONDS", Settings.job_stale_seconds),
        worker_concurrency=_int("WORKER_CONCURRENCY", Settings.worker_concurrency),
        worker_poll_seconds=_float("WORKER_POLL_SECONDS", Settings.worker_poll_seconds),
        crawl_interval_hours=_float("CRAWL_INTERVAL_HOURS", Settings.crawl_interval_hours),
        discovery_interval_hours=_float("DISCOVERY_INTERVAL_HOURS", Settings.discovery_interval_hours),
        discovery_location=os.getenv("DISCOVERY_LOCATION") or Settings.discovery_location,
        apify_token=os.getenv("APIFY_TOKEN") or None,
        store_backend=(os.getenv("CRAWLSYNC_STORE") or Settings.store_backend).lower(),
    )
