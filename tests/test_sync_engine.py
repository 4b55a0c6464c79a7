import asyncio

import pytest

from crawlsync.errors import NotFoundError, ProposalStateError
from crawlsync.models.posts import ContactInfo, ExtractedPost
from crawlsync.models.sync import (
    BatchStatus,
    CanonicalRecord,
    ProposalKind,
    ProposalStatus,
    RecordStatus,
    SyncBatch,
    SyncProposal,
    derive_batch_status,
)
from crawlsync.services.sync.engine import SyncEngine, diff_payload
from crawlsync.services.sync.matching import UnionFind, cosine, identity_key

SHARED = [0.0] * 63 + [1.0]


def _engine(backend, store, clock):
    return SyncEngine(backend, store, clock=clock)


def _post(title, description, **kw):
    return ExtractedPost(title=title, description=description, **kw)


def _record(store, title="Food Shelf", description="Weekly groceries at Northside", **kw):
    record = CanonicalRecord(source_id=kw.pop("source_id", "s1"), title=title, description=description, **kw)
    asyncio.run(store.save_record(record))
    return record


# --- helpers ------------------------------------------------------------------


def test_matching_helpers():
    assert cosine([1, 0], [1, 0]) == pytest.approx(1.0)
    assert cosine([1, 0], None) == 0.0
    assert identity_key("Food  Shelf", "Weekly\ngroceries") == identity_key("food shelf", "weekly groceries")
    uf = UnionFind(4)
    uf.union(2, 0)
    uf.union(3, 1)
    assert uf.groups() == [[0, 2], [1, 3]]


def test_batch_status_derivation():
    p = lambda status: SyncProposal(batch_id="b", kind=ProposalKind.CREATE, status=status)  # noqa: E731
    assert derive_batch_status([]) is BatchStatus.COMPLETED
    assert derive_batch_status([p(ProposalStatus.PENDING)]) is BatchStatus.PENDING
    assert derive_batch_status([p(ProposalStatus.APPROVED), p(ProposalStatus.PENDING)]) is BatchStatus.PARTIALLY_REVIEWED
    assert derive_batch_status([p(ProposalStatus.APPROVED), p(ProposalStatus.REJECTED)]) is BatchStatus.COMPLETED


def test_diff_never_erases_and_fill_only_respects_existing():
    record = CanonicalRecord(source_id="s1", title="T", summary="old", schedule="Mon",
                             contact={"phone": "1"}, tags=["a"])
    diff = diff_payload(record, {"summary": "", "schedule": "Tue", "contact": {"phone": "1", "email": "e"}, "tags": ["b"]})
    assert diff == {"schedule": "Tue", "contact": {"phone": "1", "email": "e"}, "tags": ["a", "b"]}
    filled = diff_payload(record, {"schedule": "Tue", "contact": {"phone": "2"}}, fill_only=True)
    assert filled == {}


# --- phase 1 ------------------------------------------------------------------


def test_near_duplicates_in_one_run_become_one_merge_proposal(backend, store, clock):
    backend.vectors["Food Shelf"] = SHARED
    backend.judge_fn = lambda a, b: True
    posts = [
        _post("Food Shelf", "Weekly groceries at Northside", source_page_ids=["p1"]),
        _post("Northside Food Shelf", "Groceries every week", source_page_ids=["p2"],
              contact=ContactInfo(phone="555-0100")),
        _post("Tutoring", "After-school homework help", source_page_ids=["p3"]),
    ]
    batch = asyncio.run(_engine(backend, store, clock).stage("s1", posts))
    proposals = asyncio.run(store.list_proposals(batch.id))
    kinds = sorted(p.kind.value for p in proposals)
    assert kinds == ["create", "merge"]
    merge = next(p for p in proposals if p.kind is ProposalKind.MERGE)
    assert merge.source_ids == ["p1", "p2"]
    assert merge.payload["contact"] == {"phone": "555-0100"}
    draft = store.records[merge.target_id]
    assert draft.status is RecordStatus.PENDING
    assert batch.status is BatchStatus.PENDING


def test_identical_text_skips_the_judge(backend, store, clock):
    posts = [_post("Food Shelf", "Weekly groceries"), _post("food shelf", "Weekly  groceries")]
    batch = asyncio.run(_engine(backend, store, clock).stage("s1", posts))
    assert backend.judge_calls == []
    assert len(batch.proposal_ids) == 1


def test_dissimilar_posts_are_not_judged(backend, store, clock):
    posts = [_post("Food Shelf", "Weekly groceries"), _post("Tutoring", "Homework help")]
    batch = asyncio.run(_engine(backend, store, clock).stage("s1", posts))
    assert backend.judge_calls == []
    assert len(batch.proposal_ids) == 2


# --- phase 2 ------------------------------------------------------------------


def test_match_against_existing_record_is_an_update(backend, store, clock):
    existing = _record(store, summary="old summary", source_page_ids=["old"])
    post = _post("Food Shelf", "Weekly groceries at Northside", summary="new summary", schedule="Tue 4-7",
                 source_page_ids=["p9"])
    batch = asyncio.run(_engine(backend, store, clock).stage("s1", [post]))
    [proposal] = asyncio.run(store.list_proposals(batch.id))
    assert proposal.kind is ProposalKind.UPDATE
    assert proposal.target_id == existing.id
    assert proposal.payload == {"summary": "new summary", "schedule": "Tue 4-7", "source_page_ids": ["old", "p9"]}
    # staging leaves the active record alone
    assert store.records[existing.id].summary == "old summary"


def test_similar_existing_record_needs_judge_approval(backend, store, clock):
    backend.vectors["Shelf"] = SHARED
    _record(store, title="Food Shelf", description="Weekly groceries")
    backend.judge_fn = lambda a, b: False
    batch = asyncio.run(_engine(backend, store, clock).stage("s1", [_post("Northside Shelf", "Groceries on Tuesdays")]))
    [proposal] = asyncio.run(store.list_proposals(batch.id))
    assert proposal.kind is ProposalKind.CREATE
    assert len(backend.judge_calls) == 1


def test_unchanged_listing_yields_no_proposal(backend, store, clock):
    _record(store, source_page_ids=["p1"])
    batch = asyncio.run(_engine(backend, store, clock).stage("s1", [_post("Food Shelf", "Weekly groceries at Northside")]))
    assert batch.proposal_ids == []
    assert batch.status is BatchStatus.COMPLETED


def test_records_of_other_sources_are_not_matched(backend, store, clock):
    _record(store, source_id="other")
    batch = asyncio.run(_engine(backend, store, clock).stage("s1", [_post("Food Shelf", "Weekly groceries at Northside")]))
    [proposal] = asyncio.run(store.list_proposals(batch.id))
    assert proposal.kind is ProposalKind.CREATE


# --- review -------------------------------------------------------------------


def _stage(engine, store, posts, source_id="s1"):
    batch = asyncio.run(engine.stage(source_id, posts))
    return batch, asyncio.run(store.list_proposals(batch.id))


def test_approve_create_activates_draft(backend, store, clock):
    engine = _engine(backend, store, clock)
    batch, [proposal] = _stage(engine, store, [_post("Food Shelf", "Weekly groceries")])
    reviewed = asyncio.run(engine.approve_proposal(proposal.id))
    assert reviewed.status is ProposalStatus.APPROVED
    assert store.records[proposal.target_id].status is RecordStatus.ACTIVE
    assert store.batches[batch.id].status is BatchStatus.COMPLETED
    with pytest.raises(ProposalStateError):
        asyncio.run(engine.approve_proposal(proposal.id))


def test_reject_create_discards_draft(backend, store, clock):
    engine = _engine(backend, store, clock)
    _, [proposal] = _stage(engine, store, [_post("Food Shelf", "Weekly groceries")])
    asyncio.run(engine.reject_proposal(proposal.id))
    draft = store.records[proposal.target_id]
    assert draft.status is RecordStatus.DELETED
    assert draft.deletion_reason == "proposal rejected"


def test_approve_update_patches_record(backend, store, clock):
    existing = _record(store, embedding=[0.5] * 64)
    engine = _engine(backend, store, clock)
    _, [proposal] = _stage(engine, store, [_post("Food Shelf", "Weekly groceries at Northside", summary="fresh")])
    asyncio.run(engine.approve_proposal(proposal.id))
    record = store.records[existing.id]
    assert record.summary == "fresh"
    assert record.status is RecordStatus.ACTIVE
    assert record.embedding is None


def test_unknown_proposal(backend, store, clock):
    with pytest.raises(NotFoundError):
        asyncio.run(_engine(backend, store, clock).approve_proposal("nope"))


def test_batch_approval_continues_past_failures(backend, store, clock):
    existing = _record(store)
    engine = _engine(backend, store, clock)
    batch, proposals = _stage(
        engine, store,
        [_post("Food Shelf", "Weekly groceries at Northside", summary="new"), _post("Tutoring", "Homework help")],
    )
    update = next(p for p in proposals if p.kind is ProposalKind.UPDATE)
    create = next(p for p in proposals if p.kind is ProposalKind.CREATE)
    gone = store.records[existing.id]
    gone.status = RecordStatus.DELETED

    out = asyncio.run(engine.approve_batch(batch.id))
    assert out["reviewed"] == [create.id]
    assert [f["proposal_id"] for f in out["failed"]] == [update.id]
    assert out["status"] == BatchStatus.PARTIALLY_REVIEWED.value


def test_reject_batch(backend, store, clock):
    engine = _engine(backend, store, clock)
    batch, proposals = _stage(engine, store, [_post("A", "aaa"), _post("B", "bbb")])
    out = asyncio.run(engine.reject_batch(batch.id))
    assert out["status"] == "completed"
    assert all(store.records[p.target_id].status is RecordStatus.DELETED for p in proposals)


# --- expiry -------------------------------------------------------------------


def test_new_run_expires_pending_batch(backend, store, clock):
    engine = _engine(backend, store, clock)
    old, [old_proposal] = _stage(engine, store, [_post("Food Shelf", "Weekly groceries")])
    clock.advance(hours=1)
    _stage(engine, store, [_post("Tutoring", "Homework help")])

    assert store.batches[old.id].status is BatchStatus.EXPIRED
    draft = store.records[old_proposal.target_id]
    assert draft.status is RecordStatus.DELETED
    assert draft.deletion_reason.startswith("superseded")
    with pytest.raises(ProposalStateError):
        asyncio.run(engine.approve_proposal(old_proposal.id))
    with pytest.raises(ProposalStateError):
        asyncio.run(engine.approve_batch(old.id))


def test_partially_reviewed_batch_is_not_expired(backend, store, clock):
    engine = _engine(backend, store, clock)
    old, proposals = _stage(engine, store, [_post("A", "aaa"), _post("B", "bbb")])
    asyncio.run(engine.approve_proposal(proposals[0].id))
    _stage(engine, store, [_post("C", "ccc")])
    assert store.batches[old.id].status is BatchStatus.PARTIALLY_REVIEWED
    asyncio.run(engine.approve_proposal(proposals[1].id))
    assert store.batches[old.id].status is BatchStatus.COMPLETED


def test_other_sources_keep_their_batches(backend, store, clock):
    engine = _engine(backend, store, clock)
    first, _ = _stage(engine, store, [_post("A", "aaa")], source_id="s1")
    _stage(engine, store, [_post("B", "bbb")], source_id="s2")
    assert store.batches[first.id].status is BatchStatus.PENDING


# --- cleanup ------------------------------------------------------------------


def test_cleanup_merges_active_duplicates(backend, store, clock):
    keep = _record(store, source_page_ids=["a", "b"])
    drop = _record(store, source_page_ids=["c"], schedule="Tue")
    engine = _engine(backend, store, clock)
    [batch] = asyncio.run(engine.cleanup())
    assert batch.kind == "cleanup"
    [proposal] = asyncio.run(store.list_proposals(batch.id))
    assert proposal.kind is ProposalKind.MERGE
    assert proposal.target_id == keep.id
    assert proposal.merge_source_ids == [drop.id]
    assert proposal.payload == {"schedule": "Tue", "source_page_ids": ["a", "b", "c"]}

    asyncio.run(engine.approve_proposal(proposal.id))
    assert store.records[keep.id].schedule == "Tue"
    assert store.records[drop.id].status is RecordStatus.DELETED
    assert store.records[drop.id].deletion_reason == f"merged into {keep.id}"


def test_cleanup_rejects_pending_duplicate_of_active(backend, store, clock):
    active = _record(store)
    pending = _record(store, status=RecordStatus.PENDING)
    engine = _engine(backend, store, clock)
    [batch] = asyncio.run(engine.cleanup("s1"))
    [proposal] = asyncio.run(store.list_proposals(batch.id))
    assert proposal.kind is ProposalKind.REJECT
    assert proposal.target_id == pending.id
    asyncio.run(engine.approve_proposal(proposal.id))
    assert store.records[pending.id].status is RecordStatus.DELETED
    assert store.records[active.id].status is RecordStatus.ACTIVE


def test_cleanup_uses_strong_judge_and_survives_later_sync(backend, store, clock):
    backend.vectors["Shelf"] = SHARED
    backend.judge_fn = lambda a, b: True
    _record(store, title="Food Shelf", description="Weekly groceries")
    _record(store, title="Northside Shelf", description="Groceries on Tuesdays")
    engine = _engine(backend, store, clock)
    [batch] = asyncio.run(engine.cleanup())
    assert backend.judge_calls[-1][2] is True
    _stage(engine, store, [_post("Tutoring", "Homework help")])
    assert store.batches[batch.id].status is BatchStatus.PENDING


def test_cleanup_without_duplicates_creates_nothing(backend, store, clock):
    _record(store, title="A", description="aaa")
    _record(store, title="B", description="bbb")
    assert asyncio.run(_engine(backend, store, clock).cleanup()) == []


def test_embedding_backfill_keeps_a_concurrent_approval(backend, store, clock):
    record = _record(store)
    batch = SyncBatch(source_id="s1", kind="cleanup", created_at=clock())
    proposal = SyncProposal(batch_id=batch.id, kind=ProposalKind.UPDATE,
                            payload={"schedule": "Tuesdays 4-7pm"}, target_id=record.id)
    batch.proposal_ids = [proposal.id]
    asyncio.run(store.save_batch(batch))
    asyncio.run(store.save_proposal(proposal))
    engine = _engine(backend, store, clock)
    embed = backend.embed

    async def run():
        entered, gate = asyncio.Event(), asyncio.Event()

        async def slow_embed(texts):
            entered.set()
            await gate.wait()
            return await embed(texts)

        backend.embed = slow_embed
        staging = asyncio.create_task(engine.stage("s1", []))
        await entered.wait()
        await engine.approve_proposal(proposal.id)
        gate.set()
        await staging

    asyncio.run(run())
    stored = store.records[record.id]
    assert stored.schedule == "Tuesdays 4-7pm"
    assert stored.embedding is not None


def test_embedding_backfill_skips_records_whose_text_changed(backend, store, clock):
    record = _record(store)
    engine = _engine(backend, store, clock)
    stale = asyncio.run(store.get_record(record.id))
    store.records[record.id].title = "Food Shelf (moved)"
    asyncio.run(engine._ensure_embeddings([stale]))
    assert store.records[record.id].embedding is None
    assert store.records[record.id].title == "Food Shelf (moved)"
