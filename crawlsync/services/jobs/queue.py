"""Persisted job queue: state transitions, retry policy and chaining.

pending -> running -> completed | failed. A transient failure with retry budget
left goes back to pending with exponential backoff on next_run_at; anything
else is terminal and kept for operators.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from crawlsync.db.stores import JobStore
from crawlsync.errors import NotFoundError
from crawlsync.models.common import Clock, utcnow
from crawlsync.models.jobs import JOB_CHAIN, Job, JobKind, JobStatus
from crawlsync.services.results import Err

logger = logging.getLogger(__name__)


def successor_payload(job: Job, fact: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Input for the next stage built from this job's output; None when there is nothing to pass on."""
    source_id = job.payload.get("source_id") or job.source_key
    if job.kind in (JobKind.CRAWL_WEBSITE, JobKind.REGENERATE_POSTS):
        page_ids = fact.get("page_ids") or []
        return {"source_id": source_id, "page_ids": page_ids} if page_ids else None
    if job.kind is JobKind.EXTRACT_POSTS:
        posts = fact.get("posts") or []
        return {"source_id": source_id, "posts": posts} if posts else None
    return None


class JobQueue:
    def __init__(
        self,
        store: JobStore,
        *,
        max_retries: int = 3,
        backoff_base: float = 30.0,
        backoff_cap: float = 3600.0,
        stale_after: float = 900.0,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.stale_after = stale_after
        self._clock = clock

    def now(self):
        return self._clock()

    def backoff(self, retry_count: int) -> timedelta:
        """Delay before attempt number retry_count + 1 (retry_count >= 1)."""
        seconds = self.backoff_base * (2 ** max(0, retry_count - 1))
        return timedelta(seconds=min(self.backoff_cap, seconds))

    async def enqueue(
        self,
        kind: JobKind,
        source_key: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        parent_id: Optional[str] = None,
    ) -> Job:
        now = self._clock()
        job = Job(
            kind=kind,
            source_key=source_key,
            payload=dict(payload or {}),
            max_retries=self.max_retries,
            next_run_at=now,
            created_at=now,
            parent_id=parent_id,
        )
        await self.store.save_job(job)
        logger.info("Enqueued %s job %s for %s", kind.value, job.id, source_key)
        return job

    async def has_unfinished(self, kind: JobKind, source_key: str) -> bool:
        for status in (JobStatus.PENDING, JobStatus.RUNNING):
            if await self.store.list_jobs(status=status, kind=kind, source_key=source_key):
                return True
        return False

    async def claim(self, worker_id: str) -> Optional[Job]:
        return await self.store.claim_job(self._clock(), worker_id)

    async def heartbeat(self, job: Job) -> None:
        await self.store.touch_job(job.id, self._clock())

    async def complete(self, job: Job, fact: Dict[str, Any]) -> Optional[Job]:
        """Mark completed and enqueue the chained successor, if any.

        A worker that lost the job to a stale reclaim gets None back; its
        result is dropped and nothing is chained.
        """
        owner = job.worker_id
        job.status = JobStatus.COMPLETED
        job.completed_at = self._clock()
        job.result = {k: v for k, v in fact.items() if k != "posts"}
        job.error = None
        job.error_kind = None
        if not await self.store.finish_job(job, owner):
            logger.warning("Dropping result of %s job %s: no longer held by %s", job.kind.value, job.id, owner)
            return None

        next_kind = JOB_CHAIN.get(job.kind)
        if next_kind is None:
            return None
        payload = successor_payload(job, fact)
        if payload is None:
            logger.info("%s job %s produced nothing for %s", job.kind.value, job.id, next_kind.value)
            return None
        return await self.enqueue(next_kind, job.source_key, payload, parent_id=job.id)

    async def fail(self, job: Job, err: Err) -> Job:
        now = self._clock()
        owner = job.worker_id
        job.retry_count += 1
        job.error = err.message
        job.error_kind = err.kind.value
        job.worker_id = None
        if err.retryable and job.retry_count < job.max_retries:
            job.status = JobStatus.PENDING
            job.next_run_at = now + self.backoff(job.retry_count)
            logger.warning(
                "%s job %s failed (attempt %d/%d), retrying at %s: %s",
                job.kind.value, job.id, job.retry_count, job.max_retries,
                job.next_run_at.isoformat(), err.message,
            )
        else:
            job.status = JobStatus.FAILED
            job.completed_at = now
            logger.error("%s job %s failed permanently: %s", job.kind.value, job.id, err.message)
        if not await self.store.finish_job(job, owner):
            logger.warning("Dropping failure of %s job %s: no longer held by %s", job.kind.value, job.id, owner)
        return job

    async def reclaim_stale(self) -> List[Job]:
        """Liveness sweep: running jobs with no heartbeat for stale_after go back to pending."""
        now = self._clock()
        jobs = await self.store.reclaim_stale(now - timedelta(seconds=self.stale_after), now)
        for job in jobs:
            logger.warning("Reclaimed stale %s job %s", job.kind.value, job.id)
        return jobs

    async def get_job(self, job_id: str) -> Dict[str, Any]:
        job = await self.store.get_job(job_id)
        if job is None:
            raise NotFoundError(f"job {job_id} not found")
        return job.status_view()

    async def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        return await self.store.list_jobs(status=status)
