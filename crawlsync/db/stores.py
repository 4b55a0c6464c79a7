"""Storage capabilities consumed by the pipeline.

Each protocol has an in-memory implementation (`memory.py`, default and used
by tests) and a Neo4j-backed one (`neo4j_store.py`).
"""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol, Sequence

from crawlsync.models.jobs import Job, JobKind, JobStatus
from crawlsync.models.sources import DiscoveryQuery, SocialSource, Website
from crawlsync.models.sync import CanonicalRecord, RecordStatus, SyncBatch, SyncProposal
from crawlsync.services.crawl.base import CachedPage


class PageStore(Protocol):
    async def get_page(self, page_id: str) -> Optional[CachedPage]: ...

    async def get_page_by_url(self, url: str) -> Optional[CachedPage]: ...

    async def find_summary_by_hash(self, content_hash: str, prompt_hash: str) -> Optional[CachedPage]:
        """Any page holding a valid summary for this content under this prompt hash."""
        ...

    async def save_page(self, page: CachedPage) -> CachedPage: ...

    async def get_pages(self, page_ids: Sequence[str]) -> List[CachedPage]: ...

    async def purge_pages_before(self, cutoff: datetime) -> int: ...


class SourceStore(Protocol):
    async def get_website(self, website_id: str) -> Optional[Website]: ...

    async def get_website_by_domain(self, domain: str) -> Optional[Website]: ...

    async def save_website(self, website: Website) -> Website: ...

    async def list_websites(self, status: Optional[str] = None) -> List[Website]: ...

    async def get_social_source(self, source_id: str) -> Optional[SocialSource]: ...

    async def save_social_source(self, source: SocialSource) -> SocialSource: ...

    async def list_discovery_queries(self, active_only: bool = True) -> List[DiscoveryQuery]: ...

    async def save_discovery_query(self, query: DiscoveryQuery) -> DiscoveryQuery: ...


class SyncStore(Protocol):
    async def get_record(self, record_id: str) -> Optional[CanonicalRecord]: ...

    async def save_record(self, record: CanonicalRecord) -> CanonicalRecord: ...

    async def list_records(
        self,
        source_id: Optional[str] = None,
        statuses: Sequence[RecordStatus] = (RecordStatus.ACTIVE, RecordStatus.PENDING),
    ) -> List[CanonicalRecord]: ...

    async def get_proposal(self, proposal_id: str) -> Optional[SyncProposal]: ...

    async def save_proposal(self, proposal: SyncProposal) -> SyncProposal: ...

    async def list_proposals(self, batch_id: str) -> List[SyncProposal]: ...

    async def get_batch(self, batch_id: str) -> Optional[SyncBatch]: ...

    async def save_batch(self, batch: SyncBatch) -> SyncBatch: ...

    async def list_batches(self, source_id: str) -> List[SyncBatch]: ...


class JobStore(Protocol):
    async def save_job(self, job: Job) -> Job: ...

    async def get_job(self, job_id: str) -> Optional[Job]: ...

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        kind: Optional[JobKind] = None,
        source_key: Optional[str] = None,
    ) -> List[Job]: ...

    async def claim_job(self, now: datetime, worker_id: str) -> Optional[Job]:
        """Atomically pick the next eligible pending job and mark it running.

        A job is eligible when its next_run_at has passed and no other job with
        the same (kind, source_key) is running.
        """
        ...

    async def touch_job(self, job_id: str, now: datetime) -> None:
        """Refresh the heartbeat of a running job; no-op for any other status."""
        ...

    async def finish_job(self, job: Job, worker_id: Optional[str]) -> bool:
        """Save a finished run only while the job is still running under worker_id.

        Returns False, leaving the stored job untouched, when the job was
        reclaimed or finished by someone else.
        """
        ...

    async def reclaim_stale(self, cutoff: datetime, now: datetime) -> List[Job]:
        """Return running jobs whose heartbeat is older than cutoff to pending."""
        ...
