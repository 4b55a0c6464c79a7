import asyncio
from datetime import timedelta

import pytest

from crawlsync.errors import BackendError, ErrorKind, NotFoundError, PipelineError
from crawlsync.models.jobs import JobKind, JobStatus
from crawlsync.models.sources import Website
from crawlsync.services.jobs.queue import JobQueue, successor_payload
from crawlsync.services.jobs.scheduler import DISCOVERY_KEY, schedule_due_jobs
from crawlsync.services.jobs.worker import Worker
from crawlsync.services.results import Err, Ok


def _queue(store, clock, **kw):
    return JobQueue(store, clock=clock, backoff_base=30, backoff_cap=3600, **kw)


def test_backoff_doubles_and_caps(store, clock):
    q = _queue(store, clock)
    assert [q.backoff(n).total_seconds() for n in (1, 2, 3)] == [30, 60, 120]
    assert q.backoff(20).total_seconds() == 3600


def test_claim_honours_next_run_at_and_order(store, clock):
    q = _queue(store, clock)

    async def run():
        first = await q.enqueue(JobKind.CRAWL_WEBSITE, "w1")
        clock.advance(seconds=1)
        second = await q.enqueue(JobKind.CRAWL_WEBSITE, "w2")
        later = await q.enqueue(JobKind.CRAWL_WEBSITE, "w3")
        store.jobs[later.id].next_run_at = clock() + timedelta(minutes=5)
        a = await q.claim("worker-a")
        b = await q.claim("worker-a")
        c = await q.claim("worker-a")
        return first, second, a, b, c

    first, second, a, b, c = asyncio.run(run())
    assert (a.id, b.id, c) == (first.id, second.id, None)
    assert a.status is JobStatus.RUNNING and a.worker_id == "worker-a"


def test_same_source_jobs_are_serialized(store, clock):
    q = _queue(store, clock)

    async def run():
        await q.enqueue(JobKind.CRAWL_WEBSITE, "w1")
        await q.enqueue(JobKind.CRAWL_WEBSITE, "w1")
        await q.enqueue(JobKind.EXTRACT_POSTS, "w1")
        a = await q.claim("x")
        b = await q.claim("y")
        c = await q.claim("z")
        return a, b, c

    a, b, c = asyncio.run(run())
    assert a.kind is JobKind.CRAWL_WEBSITE
    assert b.kind is JobKind.EXTRACT_POSTS
    assert c is None


def test_transient_failure_retries_with_backoff_then_fails(store, clock):
    q = _queue(store, clock, max_retries=3)

    async def run():
        job = await q.enqueue(JobKind.CRAWL_WEBSITE, "w1")
        delays = []
        for _ in range(3):
            claimed = await q.claim("w")
            assert claimed is not None
            failed = await q.fail(claimed, Err(ErrorKind.TRANSIENT, "timeout"))
            if failed.status is JobStatus.PENDING:
                delays.append((failed.next_run_at - clock()).total_seconds())
                assert await q.claim("w") is None
                clock.now = failed.next_run_at
        return await q.store.get_job(job.id), delays

    job, delays = asyncio.run(run())
    assert delays == [30, 60]
    assert job.status is JobStatus.FAILED
    assert job.retry_count == 3
    assert job.error == "timeout"
    assert job.error_kind == "transient"


def test_permanent_failure_is_terminal(store, clock):
    q = _queue(store, clock)

    async def run():
        await q.enqueue(JobKind.CRAWL_WEBSITE, "w1")
        job = await q.claim("w")
        return await q.fail(job, Err(ErrorKind.PERMANENT, "not approved"))

    job = asyncio.run(run())
    assert job.status is JobStatus.FAILED
    assert job.retry_count == 1
    assert [j.id for j in asyncio.run(q.list_jobs(JobStatus.FAILED))] == [job.id]


def test_completion_chains_successor(store, clock):
    q = _queue(store, clock)

    async def run():
        await q.enqueue(JobKind.CRAWL_WEBSITE, "w1", {"website_id": "w1"})
        job = await q.claim("w")
        nxt = await q.complete(job, {"pages_crawled": 2, "page_ids": ["p1", "p2"]})
        return job, nxt

    job, nxt = asyncio.run(run())
    assert nxt.kind is JobKind.EXTRACT_POSTS
    assert nxt.payload == {"source_id": "w1", "page_ids": ["p1", "p2"]}
    assert nxt.parent_id == job.id
    assert store.jobs[job.id].result == {"pages_crawled": 2, "page_ids": ["p1", "p2"]}


def test_extract_result_keeps_posts_out_of_job_record(store, clock):
    q = _queue(store, clock)

    async def run():
        await q.enqueue(JobKind.EXTRACT_POSTS, "w1", {"source_id": "w1", "page_ids": ["p1"]})
        job = await q.claim("w")
        return job, await q.complete(job, {"narratives_count": 1, "posts": [{"title": "A"}]})

    job, nxt = asyncio.run(run())
    assert nxt.kind is JobKind.SYNC_POSTS
    assert nxt.payload["posts"] == [{"title": "A"}]
    assert "posts" not in store.jobs[job.id].result


def test_no_successor_without_output():
    from crawlsync.models.jobs import Job

    assert successor_payload(Job(kind=JobKind.CRAWL_WEBSITE, source_key="w"), {"page_ids": []}) is None
    assert successor_payload(Job(kind=JobKind.SYNC_POSTS, source_key="w"), {"batch_id": "b"}) is None


def test_stale_running_jobs_are_reclaimed(store, clock):
    q = _queue(store, clock, stale_after=60)

    async def run():
        await q.enqueue(JobKind.CRAWL_WEBSITE, "w1")
        job = await q.claim("dead-worker")
        clock.advance(seconds=30)
        assert await q.reclaim_stale() == []
        clock.advance(seconds=60)
        reclaimed = await q.reclaim_stale()
        again = await q.claim("live-worker")
        return job, reclaimed, again

    job, reclaimed, again = asyncio.run(run())
    assert [j.id for j in reclaimed] == [job.id]
    assert again.id == job.id and again.worker_id == "live-worker"
    assert again.retry_count == 0


def test_reclaimed_job_ignores_the_original_worker(store, clock):
    q = _queue(store, clock, stale_after=60)

    async def run():
        await q.enqueue(JobKind.CRAWL_WEBSITE, "w1")
        slow = await q.claim("slow-worker")
        clock.advance(seconds=120)
        await q.reclaim_stale()
        live = await q.claim("live-worker")
        nxt = await q.complete(live, {"page_ids": ["p1"]})
        late = await q.complete(slow, {"page_ids": ["p9"]})
        await q.fail(slow, Err(ErrorKind.PERMANENT, "too late"))
        return live, nxt, late

    live, nxt, late = asyncio.run(run())
    assert nxt is not None and late is None
    assert len([j for j in store.jobs.values() if j.kind is JobKind.EXTRACT_POSTS]) == 1
    stored = store.jobs[live.id]
    assert stored.status is JobStatus.COMPLETED
    assert stored.worker_id == "live-worker"
    assert stored.error is None
    assert nxt.payload["page_ids"] == ["p1"]


def test_heartbeat_keeps_job_alive(store, clock):
    q = _queue(store, clock, stale_after=60)

    async def run():
        await q.enqueue(JobKind.CRAWL_WEBSITE, "w1")
        job = await q.claim("w")
        clock.advance(seconds=50)
        await q.heartbeat(job)
        clock.advance(seconds=50)
        return await q.reclaim_stale()

    assert asyncio.run(run()) == []


def test_get_job_status_view(store, clock):
    q = _queue(store, clock)
    job = asyncio.run(q.enqueue(JobKind.RUN_DISCOVERY, DISCOVERY_KEY))
    view = asyncio.run(q.get_job(job.id))
    assert view["kind"] == "RunDiscovery"
    assert view["status"] == "pending"
    with pytest.raises(NotFoundError):
        asyncio.run(q.get_job("missing"))


# --- worker -------------------------------------------------------------------


def test_worker_runs_handlers_and_classifies_errors(store, clock):
    q = _queue(store, clock)

    async def ok(job):
        return Ok({"done": True})

    async def explode(job):
        raise RuntimeError("unexpected")

    async def permanent(job):
        raise PipelineError("bad input")

    worker = Worker(q, {JobKind.RUN_DISCOVERY: ok, JobKind.CRAWL_WEBSITE: explode, JobKind.SYNC_POSTS: permanent},
                    concurrency=5, worker_id="w")

    async def run():
        a = await q.enqueue(JobKind.RUN_DISCOVERY, DISCOVERY_KEY)
        b = await q.enqueue(JobKind.CRAWL_WEBSITE, "w1")
        c = await q.enqueue(JobKind.SYNC_POSTS, "w2")
        d = await q.enqueue(JobKind.EXTRACT_POSTS, "w3")
        ran = await worker.run_once()
        return ran, [await store.get_job(j.id) for j in (a, b, c, d)]

    ran, (a, b, c, d) = asyncio.run(run())
    assert ran == 4
    assert a.status is JobStatus.COMPLETED and a.result == {"done": True}
    assert b.status is JobStatus.PENDING and b.error_kind == "transient"
    assert c.status is JobStatus.FAILED and c.error == "bad input"
    assert d.status is JobStatus.FAILED and "no handler" in d.error


def test_worker_concurrency_limit(store, clock):
    q = _queue(store, clock)

    async def ok(job):
        return Ok({})

    worker = Worker(q, {JobKind.CRAWL_WEBSITE: ok}, concurrency=2)

    async def run():
        for i in range(3):
            await q.enqueue(JobKind.CRAWL_WEBSITE, f"w{i}")
        return await worker.run_once(), await worker.run_once()

    assert asyncio.run(run()) == (2, 1)


def test_worker_returns_err_result_from_handler(store, clock):
    q = _queue(store, clock)

    async def busy(job):
        return Err.from_exception(BackendError("503"))

    worker = Worker(q, {JobKind.CRAWL_WEBSITE: busy})

    async def run():
        job = await q.enqueue(JobKind.CRAWL_WEBSITE, "w1")
        await worker.run_once()
        return await store.get_job(job.id)

    job = asyncio.run(run())
    assert job.status is JobStatus.PENDING
    assert job.retry_count == 1


def test_run_forever_stops_on_event(store, clock):
    q = _queue(store, clock)
    seen = []

    async def ok(job):
        seen.append(job.id)
        stop.set()
        return Ok({})

    stop = None

    async def run():
        nonlocal stop
        stop = asyncio.Event()
        await q.enqueue(JobKind.CRAWL_WEBSITE, "w1")
        worker = Worker(q, {JobKind.CRAWL_WEBSITE: ok}, poll_interval=0.01)
        await asyncio.wait_for(worker.run_forever(stop), timeout=5)

    asyncio.run(run())
    assert len(seen) == 1


# --- scheduler ----------------------------------------------------------------


def test_scheduler_enqueues_due_crawls_once(store, clock):
    q = _queue(store, clock)

    async def run():
        due = Website.from_url("https://due.example", status="approved")
        fresh = Website.from_url("https://fresh.example", status="approved", last_crawled_at=clock() - timedelta(hours=1))
        pending = Website.from_url("https://pending.example")
        for site in (due, fresh, pending):
            await store.save_website(site)
        first = await schedule_due_jobs(q, store, crawl_interval=timedelta(hours=24), discovery_interval=timedelta(days=7))
        second = await schedule_due_jobs(q, store, crawl_interval=timedelta(hours=24), discovery_interval=timedelta(days=7))
        return due, first, second

    due, first, second = asyncio.run(run())
    assert sorted((j.kind.value, j.source_key) for j in first) == [("CrawlWebsite", due.id), ("RunDiscovery", DISCOVERY_KEY)]
    assert second == []


def test_scheduler_waits_for_discovery_interval(store, clock):
    q = _queue(store, clock)

    async def run():
        await q.enqueue(JobKind.RUN_DISCOVERY, DISCOVERY_KEY)
        job = await q.claim("w")
        await q.complete(job, {"queries_executed": 1})
        clock.advance(days=1)
        soon = await schedule_due_jobs(q, store, crawl_interval=timedelta(hours=24), discovery_interval=timedelta(days=7))
        clock.advance(days=7)
        later = await schedule_due_jobs(q, store, crawl_interval=timedelta(hours=24), discovery_interval=timedelta(days=7))
        return soon, later

    soon, later = asyncio.run(run())
    assert soon == []
    assert [j.kind for j in later] == [JobKind.RUN_DISCOVERY]
