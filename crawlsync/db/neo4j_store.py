"""Neo4j-backed implementation of the store protocols.

Nested values (contact maps, proposal payloads, job payloads) are stored as
JSON strings; timestamps as fixed-width ISO strings so they sort and compare
lexically. Driver calls are blocking and run in a worker thread.
"""
from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from crawlsync.db.neo4j_connector import run_cypher, run_cypher_write
from crawlsync.models.common import new_id, parse_datetime
from crawlsync.models.jobs import Job, JobKind, JobStatus
from crawlsync.models.sources import DiscoveryQuery, SocialSource, Website, domain_of
from crawlsync.models.sync import (
    BatchStatus,
    CanonicalRecord,
    ProposalKind,
    ProposalStatus,
    RecordStatus,
    SyncBatch,
    SyncProposal,
)
from crawlsync.services.crawl.base import CachedPage


def _ts(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat(timespec="microseconds") if dt is not None else None


def _dumps(value: Any) -> Optional[str]:
    return json.dumps(value, ensure_ascii=False) if value is not None else None


def _loads(value: Optional[str], default: Any = None) -> Any:
    return json.loads(value) if value else default


async def _run(query: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    return await asyncio.to_thread(run_cypher, query, params or {})


async def _run_write(query: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    return await asyncio.to_thread(run_cypher_write, query, params or {})


async def _upsert(label: str, props: Dict[str, Any]) -> None:
    await _run(f"MERGE (n:{label} {{id: $id}}) SET n += $props", {"id": props["id"], "props": props})


# --- row <-> model ------------------------------------------------------------


def _page_props(p: CachedPage) -> Dict[str, Any]:
    return {
        "id": p.id,
        "url": p.url,
        "source_id": p.source_id,
        "title": p.title,
        "content": p.content,
        "content_hash": p.content_hash,
        "fetched_at": _ts(p.fetched_at),
        "summarizable": p.summarizable,
        "summary": p.summary,
        "embedding": p.embedding,
        "prompt_hash": p.prompt_hash,
        "summary_content_hash": p.summary_content_hash,
    }


def _page_from(row: Dict[str, Any]) -> CachedPage:
    return CachedPage(
        id=row["id"],
        url=row["url"],
        source_id=row.get("source_id"),
        title=row.get("title"),
        content=row.get("content") or "",
        content_hash=row["content_hash"],
        fetched_at=parse_datetime(row["fetched_at"]),
        summarizable=bool(row.get("summarizable", True)),
        summary=row.get("summary"),
        embedding=row.get("embedding"),
        prompt_hash=row.get("prompt_hash"),
        summary_content_hash=row.get("summary_content_hash"),
    )


def _website_from(row: Dict[str, Any]) -> Website:
    return Website(
        id=row["id"],
        domain=row["domain"],
        url=row["url"],
        status=row.get("status") or "pending_review",
        max_pages=row.get("max_pages"),
        submission_context=row.get("submission_context"),
        last_crawled_at=parse_datetime(row.get("last_crawled_at")),
    )


def _record_props(r: CanonicalRecord) -> Dict[str, Any]:
    return {
        "id": r.id,
        "source_id": r.source_id,
        "title": r.title,
        "summary": r.summary,
        "description": r.description,
        "contact_json": _dumps(r.contact),
        "schedule": r.schedule,
        "tags": list(r.tags),
        "source_page_ids": list(r.source_page_ids),
        "embedding": r.embedding,
        "status": r.status.value,
        "deletion_reason": r.deletion_reason,
        "updated_at": _ts(r.updated_at),
    }


def _record_from(row: Dict[str, Any]) -> CanonicalRecord:
    return CanonicalRecord(
        id=row["id"],
        source_id=row["source_id"],
        title=row.get("title") or "",
        summary=row.get("summary") or "",
        description=row.get("description") or "",
        contact=_loads(row.get("contact_json")),
        schedule=row.get("schedule"),
        tags=list(row.get("tags") or []),
        source_page_ids=list(row.get("source_page_ids") or []),
        embedding=row.get("embedding"),
        status=RecordStatus(row.get("status") or "active"),
        deletion_reason=row.get("deletion_reason"),
        updated_at=parse_datetime(row.get("updated_at")),
    )


def _proposal_props(p: SyncProposal) -> Dict[str, Any]:
    return {
        "id": p.id,
        "batch_id": p.batch_id,
        "kind": p.kind.value,
        "payload_json": _dumps(p.payload),
        "target_id": p.target_id,
        "source_ids": list(p.source_ids),
        "merge_source_ids": list(p.merge_source_ids),
        "reason": p.reason,
        "status": p.status.value,
        "reviewed_at": _ts(p.reviewed_at),
    }


def _proposal_from(row: Dict[str, Any]) -> SyncProposal:
    return SyncProposal(
        id=row["id"],
        batch_id=row["batch_id"],
        kind=ProposalKind(row["kind"]),
        payload=_loads(row.get("payload_json"), {}),
        target_id=row.get("target_id"),
        source_ids=list(row.get("source_ids") or []),
        merge_source_ids=list(row.get("merge_source_ids") or []),
        reason=row.get("reason") or "",
        status=ProposalStatus(row["status"]),
        reviewed_at=parse_datetime(row.get("reviewed_at")),
    )


def _batch_from(row: Dict[str, Any]) -> SyncBatch:
    return SyncBatch(
        id=row["id"],
        source_id=row["source_id"],
        proposal_ids=list(row.get("proposal_ids") or []),
        status=BatchStatus(row["status"]),
        kind=row.get("kind") or "sync",
        created_at=parse_datetime(row["created_at"]),
        summary=row.get("summary"),
    )


def _job_props(j: Job) -> Dict[str, Any]:
    return {
        "id": j.id,
        "kind": j.kind.value,
        "lock_key": j.lock_key,
        "source_key": j.source_key,
        "payload_json": _dumps(j.payload),
        "status": j.status.value,
        "error": j.error,
        "error_kind": j.error_kind,
        "retry_count": j.retry_count,
        "max_retries": j.max_retries,
        "next_run_at": _ts(j.next_run_at),
        "created_at": _ts(j.created_at),
        "started_at": _ts(j.started_at),
        "heartbeat_at": _ts(j.heartbeat_at),
        "completed_at": _ts(j.completed_at),
        "worker_id": j.worker_id,
        "parent_id": j.parent_id,
        "result_json": _dumps(j.result),
    }


def _job_from(row: Dict[str, Any]) -> Job:
    return Job(
        id=row["id"],
        kind=JobKind(row["kind"]),
        source_key=row["source_key"],
        payload=_loads(row.get("payload_json"), {}),
        status=JobStatus(row["status"]),
        error=row.get("error"),
        error_kind=row.get("error_kind"),
        retry_count=int(row.get("retry_count") or 0),
        max_retries=int(row.get("max_retries") or 0),
        next_run_at=parse_datetime(row["next_run_at"]),
        created_at=parse_datetime(row["created_at"]),
        started_at=parse_datetime(row.get("started_at")),
        heartbeat_at=parse_datetime(row.get("heartbeat_at")),
        completed_at=parse_datetime(row.get("completed_at")),
        worker_id=row.get("worker_id"),
        parent_id=row.get("parent_id"),
        result=_loads(row.get("result_json")),
    )


_CLAIM_QUERY = (
    "MATCH (j:Job {status: 'pending'}) "
    "WHERE j.next_run_at <= $now "
    "  AND NOT EXISTS { MATCH (:Job {status: 'running', lock_key: j.lock_key}) } "
    "WITH j ORDER BY j.next_run_at, j.created_at LIMIT 1 "
    "MERGE (l:JobLock {key: j.lock_key}) "
    "SET l.touched_at = $now, j.claim_token = $token "
    "WITH j "
    "WHERE j.status = 'pending' "
    "  AND NOT EXISTS { MATCH (o:Job {status: 'running', lock_key: j.lock_key}) WHERE o.id <> j.id } "
    "SET j.status = 'running', j.started_at = $now, j.heartbeat_at = $now, j.worker_id = $worker "
    "RETURN properties(j) AS job"
)


class Neo4jStore:
    """All store protocols over one Neo4j database."""

    # pages
    async def get_page(self, page_id: str) -> Optional[CachedPage]:
        rows = await _run("MATCH (p:Page {id: $id}) RETURN properties(p) AS p", {"id": page_id})
        return _page_from(rows[0]["p"]) if rows else None

    async def get_page_by_url(self, url: str) -> Optional[CachedPage]:
        rows = await _run(
            "MATCH (p:Page {url: $url}) RETURN properties(p) AS p ORDER BY p.fetched_at DESC LIMIT 1",
            {"url": url},
        )
        return _page_from(rows[0]["p"]) if rows else None

    async def find_summary_by_hash(self, content_hash: str, prompt_hash: str) -> Optional[CachedPage]:
        rows = await _run(
            "MATCH (p:Page {content_hash: $h}) "
            "WHERE p.summary IS NOT NULL AND p.prompt_hash = $ph AND p.summary_content_hash = $h "
            "RETURN properties(p) AS p LIMIT 1",
            {"h": content_hash, "ph": prompt_hash},
        )
        return _page_from(rows[0]["p"]) if rows else None

    async def save_page(self, page: CachedPage) -> CachedPage:
        await _upsert("Page", _page_props(page))
        return page

    async def get_pages(self, page_ids: Sequence[str]) -> List[CachedPage]:
        rows = await _run(
            "UNWIND $ids AS id MATCH (p:Page {id: id}) RETURN properties(p) AS p", {"ids": list(page_ids)}
        )
        return [_page_from(r["p"]) for r in rows]

    async def purge_pages_before(self, cutoff: datetime) -> int:
        rows = await _run(
            "MATCH (p:Page) WHERE p.fetched_at < $cutoff "
            "WITH p, p.id AS id DETACH DELETE p RETURN count(id) AS cnt",
            {"cutoff": _ts(cutoff)},
        )
        return int(rows[0]["cnt"]) if rows else 0

    # sources
    async def get_website(self, website_id: str) -> Optional[Website]:
        rows = await _run("MATCH (w:Website {id: $id}) RETURN properties(w) AS w", {"id": website_id})
        return _website_from(rows[0]["w"]) if rows else None

    async def get_website_by_domain(self, domain: str) -> Optional[Website]:
        rows = await _run(
            "MATCH (w:Website {domain: $d}) RETURN properties(w) AS w LIMIT 1", {"d": domain_of(domain)}
        )
        return _website_from(rows[0]["w"]) if rows else None

    async def save_website(self, website: Website) -> Website:
        props = website.to_dict()
        props["last_crawled_at"] = _ts(website.last_crawled_at)
        await _upsert("Website", props)
        return website

    async def list_websites(self, status: Optional[str] = None) -> List[Website]:
        rows = await _run(
            "MATCH (w:Website) WHERE $status IS NULL OR w.status = $status RETURN properties(w) AS w",
            {"status": status},
        )
        return [_website_from(r["w"]) for r in rows]

    async def get_social_source(self, source_id: str) -> Optional[SocialSource]:
        rows = await _run("MATCH (s:SocialSource {id: $id}) RETURN properties(s) AS s", {"id": source_id})
        if not rows:
            return None
        row = rows[0]["s"]
        return SocialSource(id=row["id"], platform=row["platform"], handle=row["handle"], url=row.get("url"))

    async def save_social_source(self, source: SocialSource) -> SocialSource:
        await _upsert(
            "SocialSource",
            {"id": source.id, "platform": source.platform, "handle": source.handle, "url": source.url},
        )
        return source

    async def list_discovery_queries(self, active_only: bool = True) -> List[DiscoveryQuery]:
        rows = await _run(
            "MATCH (q:DiscoveryQuery) WHERE NOT $active_only OR q.active RETURN properties(q) AS q",
            {"active_only": active_only},
        )
        return [
            DiscoveryQuery(id=r["q"]["id"], query_text=r["q"]["query_text"], active=bool(r["q"].get("active")))
            for r in rows
        ]

    async def save_discovery_query(self, query: DiscoveryQuery) -> DiscoveryQuery:
        await _upsert("DiscoveryQuery", {"id": query.id, "query_text": query.query_text, "active": query.active})
        return query

    # canonical records, proposals, batches
    async def get_record(self, record_id: str) -> Optional[CanonicalRecord]:
        rows = await _run("MATCH (r:Record {id: $id}) RETURN properties(r) AS r", {"id": record_id})
        return _record_from(rows[0]["r"]) if rows else None

    async def save_record(self, record: CanonicalRecord) -> CanonicalRecord:
        await _upsert("Record", _record_props(record))
        return record

    async def list_records(
        self,
        source_id: Optional[str] = None,
        statuses: Sequence[RecordStatus] = (RecordStatus.ACTIVE, RecordStatus.PENDING),
    ) -> List[CanonicalRecord]:
        rows = await _run(
            "MATCH (r:Record) WHERE ($sid IS NULL OR r.source_id = $sid) AND r.status IN $statuses "
            "RETURN properties(r) AS r",
            {"sid": source_id, "statuses": [s.value for s in statuses]},
        )
        return [_record_from(r["r"]) for r in rows]

    async def get_proposal(self, proposal_id: str) -> Optional[SyncProposal]:
        rows = await _run("MATCH (p:Proposal {id: $id}) RETURN properties(p) AS p", {"id": proposal_id})
        return _proposal_from(rows[0]["p"]) if rows else None

    async def save_proposal(self, proposal: SyncProposal) -> SyncProposal:
        await _upsert("Proposal", _proposal_props(proposal))
        return proposal

    async def list_proposals(self, batch_id: str) -> List[SyncProposal]:
        rows = await _run("MATCH (p:Proposal {batch_id: $bid}) RETURN properties(p) AS p", {"bid": batch_id})
        return [_proposal_from(r["p"]) for r in rows]

    async def get_batch(self, batch_id: str) -> Optional[SyncBatch]:
        rows = await _run("MATCH (b:Batch {id: $id}) RETURN properties(b) AS b", {"id": batch_id})
        return _batch_from(rows[0]["b"]) if rows else None

    async def save_batch(self, batch: SyncBatch) -> SyncBatch:
        props = batch.to_dict()
        props["created_at"] = _ts(batch.created_at)
        await _upsert("Batch", props)
        return batch

    async def list_batches(self, source_id: str) -> List[SyncBatch]:
        rows = await _run(
            "MATCH (b:Batch {source_id: $sid}) RETURN properties(b) AS b ORDER BY b.created_at",
            {"sid": source_id},
        )
        return [_batch_from(r["b"]) for r in rows]

    # jobs
    async def save_job(self, job: Job) -> Job:
        await _upsert("Job", _job_props(job))
        return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        rows = await _run("MATCH (j:Job {id: $id}) RETURN properties(j) AS j", {"id": job_id})
        return _job_from(rows[0]["j"]) if rows else None

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        kind: Optional[JobKind] = None,
        source_key: Optional[str] = None,
    ) -> List[Job]:
        rows = await _run(
            "MATCH (j:Job) "
            "WHERE ($status IS NULL OR j.status = $status) "
            "  AND ($kind IS NULL OR j.kind = $kind) "
            "  AND ($sk IS NULL OR j.source_key = $sk) "
            "RETURN properties(j) AS j ORDER BY j.created_at",
            {
                "status": status.value if status else None,
                "kind": kind.value if kind else None,
                "sk": source_key,
            },
        )
        return [_job_from(r["j"]) for r in rows]

    async def claim_job(self, now: datetime, worker_id: str) -> Optional[Job]:
        rows = await _run_write(_CLAIM_QUERY, {"now": _ts(now), "worker": worker_id, "token": new_id()})
        return _job_from(rows[0]["job"]) if rows else None

    async def touch_job(self, job_id: str, now: datetime) -> None:
        await _run(
            "MATCH (j:Job {id: $id, status: 'running'}) SET j.heartbeat_at = $now",
            {"id": job_id, "now": _ts(now)},
        )

    async def finish_job(self, job: Job, worker_id: Optional[str]) -> bool:
        rows = await _run_write(
            "MATCH (j:Job {id: $id, status: 'running'}) WHERE j.worker_id = $worker "
            "SET j += $props RETURN j.id AS id",
            {"id": job.id, "worker": worker_id, "props": _job_props(job)},
        )
        return bool(rows)

    async def reclaim_stale(self, cutoff: datetime, now: datetime) -> List[Job]:
        rows = await _run_write(
            "MATCH (j:Job {status: 'running'}) "
            "WHERE coalesce(j.heartbeat_at, j.started_at) < $cutoff "
            "SET j.status = 'pending', j.worker_id = null, j.next_run_at = $now "
            "RETURN properties(j) AS j",
            {"cutoff": _ts(cutoff), "now": _ts(now)},
        )
        return [_job_from(r["j"]) for r in rows]
