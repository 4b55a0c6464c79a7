from __future__ import annotations

import copy
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from crawlsync.models.jobs import Job, JobKind, JobStatus
from crawlsync.models.sources import DiscoveryQuery, SocialSource, Website, domain_of
from crawlsync.models.sync import CanonicalRecord, RecordStatus, SyncBatch, SyncProposal
from crawlsync.services.crawl.base import CachedPage


class MemoryStore:
    """Process-local implementation of every store protocol.

    Objects are copied in and out so callers never share mutable state with the
    store. Methods never await, so each call is atomic on the event loop, which
    is what makes `claim_job` a fetch-and-mark.
    """

    def __init__(self) -> None:
        self.pages: Dict[str, CachedPage] = {}
        self.websites: Dict[str, Website] = {}
        self.social_sources: Dict[str, SocialSource] = {}
        self.queries: Dict[str, DiscoveryQuery] = {}
        self.records: Dict[str, CanonicalRecord] = {}
        self.proposals: Dict[str, SyncProposal] = {}
        self.batches: Dict[str, SyncBatch] = {}
        self.jobs: Dict[str, Job] = {}

    # pages
    async def get_page(self, page_id: str) -> Optional[CachedPage]:
        return copy.deepcopy(self.pages.get(page_id))

    async def get_page_by_url(self, url: str) -> Optional[CachedPage]:
        for page in self.pages.values():
            if page.url == url:
                return copy.deepcopy(page)
        return None

    async def find_summary_by_hash(self, content_hash: str, prompt_hash: str) -> Optional[CachedPage]:
        for page in self.pages.values():
            if page.content_hash == content_hash and page.summary_is_valid(prompt_hash):
                return copy.deepcopy(page)
        return None

    async def save_page(self, page: CachedPage) -> CachedPage:
        self.pages[page.id] = copy.deepcopy(page)
        return page

    async def get_pages(self, page_ids: Sequence[str]) -> List[CachedPage]:
        return [copy.deepcopy(self.pages[pid]) for pid in page_ids if pid in self.pages]

    async def purge_pages_before(self, cutoff: datetime) -> int:
        stale = [pid for pid, p in self.pages.items() if p.fetched_at < cutoff]
        for pid in stale:
            del self.pages[pid]
        return len(stale)

    # sources
    async def get_website(self, website_id: str) -> Optional[Website]:
        return copy.deepcopy(self.websites.get(website_id))

    async def get_website_by_domain(self, domain: str) -> Optional[Website]:
        domain = domain_of(domain)
        for site in self.websites.values():
            if site.domain == domain:
                return copy.deepcopy(site)
        return None

    async def save_website(self, website: Website) -> Website:
        self.websites[website.id] = copy.deepcopy(website)
        return website

    async def list_websites(self, status: Optional[str] = None) -> List[Website]:
        return [copy.deepcopy(w) for w in self.websites.values() if status is None or w.status == status]

    async def get_social_source(self, source_id: str) -> Optional[SocialSource]:
        return copy.deepcopy(self.social_sources.get(source_id))

    async def save_social_source(self, source: SocialSource) -> SocialSource:
        self.social_sources[source.id] = copy.deepcopy(source)
        return source

    async def list_discovery_queries(self, active_only: bool = True) -> List[DiscoveryQuery]:
        return [copy.deepcopy(q) for q in self.queries.values() if q.active or not active_only]

    async def save_discovery_query(self, query: DiscoveryQuery) -> DiscoveryQuery:
        self.queries[query.id] = copy.deepcopy(query)
        return query

    # canonical records, proposals, batches
    async def get_record(self, record_id: str) -> Optional[CanonicalRecord]:
        return copy.deepcopy(self.records.get(record_id))

    async def save_record(self, record: CanonicalRecord) -> CanonicalRecord:
        self.records[record.id] = copy.deepcopy(record)
        return record

    async def list_records(
        self,
        source_id: Optional[str] = None,
        statuses: Sequence[RecordStatus] = (RecordStatus.ACTIVE, RecordStatus.PENDING),
    ) -> List[CanonicalRecord]:
        return [
            copy.deepcopy(r)
            for r in self.records.values()
            if (source_id is None or r.source_id == source_id) and r.status in statuses
        ]

    async def get_proposal(self, proposal_id: str) -> Optional[SyncProposal]:
        return copy.deepcopy(self.proposals.get(proposal_id))

    async def save_proposal(self, proposal: SyncProposal) -> SyncProposal:
        self.proposals[proposal.id] = copy.deepcopy(proposal)
        return proposal

    async def list_proposals(self, batch_id: str) -> List[SyncProposal]:
        return [copy.deepcopy(p) for p in self.proposals.values() if p.batch_id == batch_id]

    async def get_batch(self, batch_id: str) -> Optional[SyncBatch]:
        return copy.deepcopy(self.batches.get(batch_id))

    async def save_batch(self, batch: SyncBatch) -> SyncBatch:
        self.batches[batch.id] = copy.deepcopy(batch)
        return batch

    async def list_batches(self, source_id: str) -> List[SyncBatch]:
        out = [copy.deepcopy(b) for b in self.batches.values() if b.source_id == source_id]
        return sorted(out, key=lambda b: b.created_at)

    # jobs
    async def save_job(self, job: Job) -> Job:
        self.jobs[job.id] = copy.deepcopy(job)
        return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        return copy.deepcopy(self.jobs.get(job_id))

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        kind: Optional[JobKind] = None,
        source_key: Optional[str] = None,
    ) -> List[Job]:
        out = [
            copy.deepcopy(j)
            for j in self.jobs.values()
            if (status is None or j.status is status)
            and (kind is None or j.kind is kind)
            and (source_key is None or j.source_key == source_key)
        ]
        return sorted(out, key=lambda j: j.created_at)

    async def claim_job(self, now: datetime, worker_id: str) -> Optional[Job]:
        running = {j.lock_key for j in self.jobs.values() if j.status is JobStatus.RUNNING}
        eligible = [
            j
            for j in self.jobs.values()
            if j.status is JobStatus.PENDING and j.next_run_at <= now and j.lock_key not in running
        ]
        if not eligible:
            return None
        job = min(eligible, key=lambda j: (j.next_run_at, j.created_at))
        job.status = JobStatus.RUNNING
        job.started_at = now
        job.heartbeat_at = now
        job.worker_id = worker_id
        return copy.deepcopy(job)

    async def touch_job(self, job_id: str, now: datetime) -> None:
        job = self.jobs.get(job_id)
        if job is not None and job.status is JobStatus.RUNNING:
            job.heartbeat_at = now

    async def finish_job(self, job: Job, worker_id: Optional[str]) -> bool:
        current = self.jobs.get(job.id)
        if current is None or current.status is not JobStatus.RUNNING or current.worker_id != worker_id:
            return False
        self.jobs[job.id] = copy.deepcopy(job)
        return True

    async def reclaim_stale(self, cutoff: datetime, now: datetime) -> List[Job]:
        reclaimed = []
        for job in self.jobs.values():
            if job.status is not JobStatus.RUNNING:
                continue
            seen = job.heartbeat_at or job.started_at
            if seen is not None and seen < cutoff:
                job.status = JobStatus.PENDING
                job.worker_id = None
                job.next_run_at = now
                reclaimed.append(copy.deepcopy(job))
        return reclaimed
