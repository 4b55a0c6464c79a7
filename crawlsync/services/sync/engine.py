"""Deduplication and staged sync of extracted posts into canonical records.

Staging never touches active records. New listings are written as pending
draft records so later runs (and the cleanup pass) can match against them;
only an approved proposal activates a draft or patches an existing record.
"""
from __future__ import annotations

import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from crawlsync.db.stores import SyncStore
from crawlsync.errors import NotFoundError, PipelineError, ProposalStateError
from crawlsync.models.common import Clock, utcnow
from crawlsync.models.posts import ExtractedPost
from crawlsync.models.sync import (
    RECORD_FIELDS,
    BatchStatus,
    CanonicalRecord,
    ProposalKind,
    ProposalStatus,
    RecordStatus,
    SyncBatch,
    SyncProposal,
    derive_batch_status,
)
from crawlsync.services.extraction.merge import fold_posts
from crawlsync.services.llm_client import AIBackend
from crawlsync.services.locks import KeyedLocks

from .matching import UnionFind, cosine, identity_key, mean_vector

logger = logging.getLogger(__name__)

_TEXT_FIELDS = ("title", "summary", "description")


@dataclass
class Survivor:
    """One Phase-1 group folded into a single post."""

    post: ExtractedPost
    members: List[ExtractedPost]
    embedding: Optional[List[float]]


def post_payload(post: ExtractedPost) -> Dict[str, Any]:
    return {
        "title": post.title,
        "summary": post.summary,
        "description": post.description,
        "contact": post.contact.model_dump(exclude_none=True) if post.contact else None,
        "schedule": post.schedule,
        "tags": list(post.tags),
        "source_page_ids": list(post.source_page_ids),
    }


def _union(a: Sequence[str], b: Sequence[str]) -> List[str]:
    return list(dict.fromkeys([*a, *b]))


def diff_payload(record: CanonicalRecord, payload: Dict[str, Any], *, fill_only: bool = False) -> Dict[str, Any]:
    """Fields of payload that would change record.

    Empty incoming values never erase existing ones. With fill_only, scalar
    fields are taken only where the record has none.
    """
    changes: Dict[str, Any] = {}
    for name in (*_TEXT_FIELDS, "schedule"):
        new = payload.get(name)
        old = getattr(record, name)
        if not new or new == old or (fill_only and old):
            continue
        changes[name] = new

    contact = dict(record.contact or {})
    for key, value in (payload.get("contact") or {}).items():
        if value and (contact.get(key) != value) and not (fill_only and contact.get(key)):
            contact[key] = value
    if contact != (record.contact or {}):
        changes["contact"] = contact

    for name in ("tags", "source_page_ids"):
        merged = _union(getattr(record, name), payload.get(name) or [])
        if merged != list(getattr(record, name)):
            changes[name] = merged
    return changes


def apply_payload(record: CanonicalRecord, payload: Dict[str, Any], now) -> None:
    for name in RECORD_FIELDS:
        if name in payload:
            setattr(record, name, payload[name])
    if any(name in payload for name in _TEXT_FIELDS):
        # re-embedded lazily on the next match
        record.embedding = None
    record.updated_at = now


def _is_draft_proposal(proposal: SyncProposal) -> bool:
    return proposal.kind is ProposalKind.CREATE or (
        proposal.kind is ProposalKind.MERGE and not proposal.merge_source_ids
    )


class SyncEngine:
    def __init__(
        self,
        backend: AIBackend,
        store: SyncStore,
        *,
        intra_threshold: float = 0.85,
        cross_threshold: float = 0.82,
        cleanup_threshold: float = 0.75,
        clock: Clock = utcnow,
    ) -> None:
        self.backend = backend
        self.store = store
        self.intra_threshold = intra_threshold
        self.cross_threshold = cross_threshold
        self.cleanup_threshold = cleanup_threshold
        self._clock = clock
        self._record_locks = KeyedLocks()
        self._source_locks = KeyedLocks()

    # --- matching ---------------------------------------------------------------

    async def _equivalent(
        self,
        a_text: str,
        a_key: str,
        a_vec: Optional[Sequence[float]],
        b_text: str,
        b_key: str,
        b_vec: Optional[Sequence[float]],
        *,
        threshold: float,
        strong: bool = False,
    ) -> bool:
        if a_key == b_key:
            return True
        if cosine(a_vec, b_vec) < threshold:
            return False
        return await self.backend.judge(a_text, b_text, strong=strong)

    async def _ensure_embeddings(self, records: List[CanonicalRecord]) -> None:
        missing = [r for r in records if not r.embedding]
        if not missing:
            return
        vectors = await self.backend.embed([r.embedding_text() for r in missing])
        for record, vec in zip(missing, vectors):
            record.embedding = vec
            # a review may have committed while we waited on the backend
            async with self._record_locks.hold(record.id):
                fresh = await self.store.get_record(record.id)
                if fresh is None or fresh.embedding_text() != record.embedding_text():
                    continue
                fresh.embedding = vec
                await self.store.save_record(fresh)

    async def _find_match(
        self, post: ExtractedPost, vec: Optional[List[float]], records: List[CanonicalRecord]
    ) -> Optional[CanonicalRecord]:
        key = identity_key(post.title, post.description)
        for record in records:
            if identity_key(record.title, record.description) == key:
                return record
        ranked = sorted(records, key=lambda r: cosine(vec, r.embedding), reverse=True)
        for record in ranked:
            if cosine(vec, record.embedding) < self.cross_threshold:
                break
            if await self.backend.judge(post.embedding_text(), record.embedding_text()):
                return record
        return None

    # --- phase 1 ----------------------------------------------------------------

    async def group_candidates(self, posts: List[ExtractedPost]) -> List[Survivor]:
        """Union equivalent candidates of one run; each group becomes one survivor."""
        if not posts:
            return []
        vectors = await self.backend.embed([p.embedding_text() for p in posts])
        keys = [identity_key(p.title, p.description) for p in posts]
        uf = UnionFind(len(posts))
        for i in range(len(posts)):
            for j in range(i + 1, len(posts)):
                if uf.find(i) == uf.find(j):
                    continue
                if await self._equivalent(
                    posts[i].embedding_text(), keys[i], vectors[i],
                    posts[j].embedding_text(), keys[j], vectors[j],
                    threshold=self.intra_threshold,
                ):
                    uf.union(i, j)

        survivors = []
        for group in uf.groups():
            members = [posts[i] for i in group]
            post = members[0] if len(members) == 1 else fold_posts(members)
            survivors.append(Survivor(post=post, members=members, embedding=mean_vector([vectors[i] for i in group])))
        return survivors

    # --- phase 2 + staging --------------------------------------------------------

    async def _expire_pending_batches(self, source_id: str) -> None:
        for batch in await self.store.list_batches(source_id):
            if batch.kind != "sync" or batch.status is not BatchStatus.PENDING:
                continue
            batch.status = BatchStatus.EXPIRED
            await self.store.save_batch(batch)
            for proposal in await self.store.list_proposals(batch.id):
                if proposal.status is ProposalStatus.PENDING and _is_draft_proposal(proposal):
                    await self._discard_draft(proposal, "superseded by a newer sync batch")
            logger.info("Expired sync batch %s for source %s", batch.id, source_id)

    async def _discard_draft(self, proposal: SyncProposal, reason: str) -> None:
        draft = await self.store.get_record(proposal.target_id) if proposal.target_id else None
        if draft is not None and draft.status is RecordStatus.PENDING:
            draft.status = RecordStatus.DELETED
            draft.deletion_reason = reason
            draft.updated_at = self._clock()
            await self.store.save_record(draft)

    async def stage(self, source_id: str, posts: List[ExtractedPost]) -> SyncBatch:
        """Phase 1 + Phase 2: turn one run's posts into a batch of pending proposals."""
        async with self._source_locks.hold(source_id):
            await self._expire_pending_batches(source_id)
            survivors = await self.group_candidates(posts)

            records = await self.store.list_records(source_id)
            await self._ensure_embeddings(records)

            batch = SyncBatch(source_id=source_id, created_at=self._clock())
            proposals: List[SyncProposal] = []
            for survivor in survivors:
                post = survivor.post
                payload = post_payload(post)
                match = await self._find_match(post, survivor.embedding, records)
                if match is not None:
                    diff = diff_payload(match, payload)
                    if not diff:
                        logger.info("No changes for record %s (%r)", match.id, match.title)
                        continue
                    proposals.append(
                        SyncProposal(
                            batch_id=batch.id,
                            kind=ProposalKind.UPDATE,
                            payload=diff,
                            target_id=match.id,
                            source_ids=list(post.source_page_ids),
                            reason=f"matches existing record {match.id}",
                        )
                    )
                    continue

                draft = CanonicalRecord(
                    source_id=source_id,
                    title=post.title,
                    summary=post.summary,
                    description=post.description,
                    contact=payload["contact"],
                    schedule=post.schedule,
                    tags=list(post.tags),
                    source_page_ids=list(post.source_page_ids),
                    embedding=survivor.embedding,
                    status=RecordStatus.PENDING,
                    updated_at=self._clock(),
                )
                await self.store.save_record(draft)
                merged = len(survivor.members) > 1
                proposals.append(
                    SyncProposal(
                        batch_id=batch.id,
                        kind=ProposalKind.MERGE if merged else ProposalKind.CREATE,
                        payload=payload,
                        target_id=draft.id,
                        source_ids=list(post.source_page_ids),
                        reason=f"folds {len(survivor.members)} duplicate candidates" if merged else "new listing",
                    )
                )

            for proposal in proposals:
                await self.store.save_proposal(proposal)
            batch.proposal_ids = [p.id for p in proposals]
            batch.status = derive_batch_status(proposals)
            await self.store.save_batch(batch)
            logger.info(
                "Staged batch %s for source %s: %d proposal(s) from %d post(s)",
                batch.id, source_id, len(proposals), len(posts),
            )
            return batch

    # --- review -----------------------------------------------------------------

    async def _reviewable(self, proposal_id: str) -> SyncProposal:
        proposal = await self.store.get_proposal(proposal_id)
        if proposal is None:
            raise NotFoundError(f"proposal {proposal_id} not found")
        if proposal.status is not ProposalStatus.PENDING:
            raise ProposalStateError(f"proposal {proposal_id} is already {proposal.status.value}")
        batch = await self.store.get_batch(proposal.batch_id)
        if batch is not None and batch.status is BatchStatus.EXPIRED:
            raise ProposalStateError(f"batch {batch.id} has expired")
        return proposal

    async def _refresh_batch(self, batch_id: str) -> Optional[SyncBatch]:
        batch = await self.store.get_batch(batch_id)
        if batch is None or batch.status is BatchStatus.EXPIRED:
            return batch
        batch.status = derive_batch_status(await self.store.list_proposals(batch_id))
        await self.store.save_batch(batch)
        return batch

    async def _apply(self, proposal: SyncProposal) -> None:
        now = self._clock()
        target = await self.store.get_record(proposal.target_id) if proposal.target_id else None
        if target is None:
            raise NotFoundError(f"record {proposal.target_id} not found")
        if target.status is RecordStatus.DELETED:
            raise ProposalStateError(f"record {target.id} has been deleted")

        if proposal.kind is ProposalKind.REJECT:
            target.status = RecordStatus.DELETED
            target.deletion_reason = proposal.reason or "rejected as duplicate"
            target.updated_at = now
            await self.store.save_record(target)
            return

        apply_payload(target, proposal.payload, now)
        if proposal.kind in (ProposalKind.CREATE, ProposalKind.MERGE):
            target.status = RecordStatus.ACTIVE
        await self.store.save_record(target)

        for source_id in proposal.merge_source_ids:
            merged = await self.store.get_record(source_id)
            if merged is None or merged.status is RecordStatus.DELETED:
                continue
            merged.status = RecordStatus.DELETED
            merged.deletion_reason = f"merged into {target.id}"
            merged.updated_at = now
            await self.store.save_record(merged)

    async def _review(self, proposal_id: str, approve: bool) -> SyncProposal:
        proposal = await self._reviewable(proposal_id)
        keys = sorted({f"proposal:{proposal.id}", *(k for k in [proposal.target_id, *proposal.merge_source_ids] if k)})
        async with AsyncExitStack() as stack:
            for key in keys:
                await stack.enter_async_context(self._record_locks.hold(key))
            proposal = await self._reviewable(proposal_id)
            if approve:
                await self._apply(proposal)
                proposal.status = ProposalStatus.APPROVED
            else:
                proposal.status = ProposalStatus.REJECTED
                if _is_draft_proposal(proposal):
                    await self._discard_draft(proposal, "proposal rejected")
            proposal.reviewed_at = self._clock()
            await self.store.save_proposal(proposal)
        await self._refresh_batch(proposal.batch_id)
        logger.info("Proposal %s %s", proposal.id, proposal.status.value)
        return proposal

    async def approve_proposal(self, proposal_id: str) -> SyncProposal:
        return await self._review(proposal_id, approve=True)

    async def reject_proposal(self, proposal_id: str) -> SyncProposal:
        return await self._review(proposal_id, approve=False)

    async def _review_batch(self, batch_id: str, approve: bool) -> Dict[str, Any]:
        batch = await self.store.get_batch(batch_id)
        if batch is None:
            raise NotFoundError(f"batch {batch_id} not found")
        if batch.status is BatchStatus.EXPIRED:
            raise ProposalStateError(f"batch {batch_id} has expired")
        reviewed: List[str] = []
        failed: List[Dict[str, str]] = []
        for proposal in await self.store.list_proposals(batch_id):
            if proposal.status is not ProposalStatus.PENDING:
                continue
            try:
                await self._review(proposal.id, approve)
                reviewed.append(proposal.id)
            except PipelineError as exc:
                logger.warning("Could not review proposal %s: %s", proposal.id, exc.message)
                failed.append({"proposal_id": proposal.id, "error": exc.message})
        batch = await self._refresh_batch(batch_id)
        return {
            "batch_id": batch_id,
            "status": batch.status.value if batch else None,
            "reviewed": reviewed,
            "failed": failed,
        }

    async def approve_batch(self, batch_id: str) -> Dict[str, Any]:
        return await self._review_batch(batch_id, approve=True)

    async def reject_batch(self, batch_id: str) -> Dict[str, Any]:
        return await self._review_batch(batch_id, approve=False)

    # --- cleanup ----------------------------------------------------------------

    def _cleanup_proposal(self, batch_id: str, a: CanonicalRecord, b: CanonicalRecord) -> SyncProposal:
        if a.status is RecordStatus.ACTIVE and b.status is RecordStatus.ACTIVE:
            keep, drop = sorted(
                (a, b), key=lambda r: (len(r.source_page_ids), len(r.description or ""), -r.updated_at.timestamp()),
                reverse=True,
            )
            drop_payload = {
                "contact": drop.contact,
                "schedule": drop.schedule,
                "tags": drop.tags,
                "source_page_ids": drop.source_page_ids,
            }
            return SyncProposal(
                batch_id=batch_id,
                kind=ProposalKind.MERGE,
                payload=diff_payload(keep, drop_payload, fill_only=True),
                target_id=keep.id,
                merge_source_ids=[drop.id],
                source_ids=list(drop.source_page_ids),
                reason=f"record {drop.id} duplicates {keep.id}",
            )
        pending, active = (a, b) if a.status is RecordStatus.PENDING else (b, a)
        return SyncProposal(
            batch_id=batch_id,
            kind=ProposalKind.REJECT,
            target_id=pending.id,
            source_ids=list(pending.source_page_ids),
            reason=f"duplicate of active record {active.id}",
        )

    async def cleanup(self, source_id: Optional[str] = None) -> List[SyncBatch]:
        """Re-scan active + pending records with the strong judge and a lower threshold."""
        records = await self.store.list_records(source_id)
        by_source: Dict[str, List[CanonicalRecord]] = {}
        for record in records:
            by_source.setdefault(record.source_id, []).append(record)

        batches: List[SyncBatch] = []
        for sid, group in by_source.items():
            async with self._source_locks.hold(sid):
                await self._ensure_embeddings(group)
                batch = SyncBatch(source_id=sid, kind="cleanup", created_at=self._clock())
                used = set()
                proposals: List[SyncProposal] = []
                for i, a in enumerate(group):
                    if a.id in used:
                        continue
                    for b in group[i + 1:]:
                        if b.id in used or (a.status is RecordStatus.PENDING and b.status is RecordStatus.PENDING):
                            continue
                        if not await self._equivalent(
                            a.embedding_text(), identity_key(a.title, a.description), a.embedding,
                            b.embedding_text(), identity_key(b.title, b.description), b.embedding,
                            threshold=self.cleanup_threshold,
                            strong=True,
                        ):
                            continue
                        proposal = self._cleanup_proposal(batch.id, a, b)
                        proposals.append(proposal)
                        used.update({a.id, b.id})
                        break
                if not proposals:
                    continue
                for proposal in proposals:
                    await self.store.save_proposal(proposal)
                batch.proposal_ids = [p.id for p in proposals]
                await self.store.save_batch(batch)
                batches.append(batch)
                logger.info("Cleanup staged %d proposal(s) for source %s", len(proposals), sid)
        return batches
