from __future__ import annotations

import logging
from datetime import timedelta
from typing import List

from crawlsync.db.stores import SourceStore
from crawlsync.models.jobs import Job, JobKind, JobStatus

from .queue import JobQueue

logger = logging.getLogger(__name__)

DISCOVERY_KEY = "discovery"


async def schedule_due_jobs(
    queue: JobQueue,
    sources: SourceStore,
    *,
    crawl_interval: timedelta,
    discovery_interval: timedelta,
) -> List[Job]:
    """Enqueue crawls for approved websites not crawled within crawl_interval,
    plus a discovery run when the last one is older than discovery_interval.

    Sources that already have a pending or running job are skipped.
    """
    now = queue.now()
    enqueued: List[Job] = []

    for site in await sources.list_websites(status="approved"):
        if site.last_crawled_at is not None and now - site.last_crawled_at < crawl_interval:
            continue
        if await queue.has_unfinished(JobKind.CRAWL_WEBSITE, site.id):
            continue
        enqueued.append(await queue.enqueue(JobKind.CRAWL_WEBSITE, site.id, {"website_id": site.id}))

    if not await queue.has_unfinished(JobKind.RUN_DISCOVERY, DISCOVERY_KEY):
        done = await queue.store.list_jobs(
            status=JobStatus.COMPLETED, kind=JobKind.RUN_DISCOVERY, source_key=DISCOVERY_KEY
        )
        last = max((j.completed_at for j in done if j.completed_at), default=None)
        if last is None or now - last >= discovery_interval:
            enqueued.append(await queue.enqueue(JobKind.RUN_DISCOVERY, DISCOVERY_KEY))

    if enqueued:
        logger.info("Scheduler enqueued %d job(s)", len(enqueued))
    return enqueued
