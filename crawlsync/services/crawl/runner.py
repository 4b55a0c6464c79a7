from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
from datetime import timedelta
from typing import Any, Dict, Optional

from crawlsync.models.jobs import JobKind
from crawlsync.models.sources import Website
from crawlsync.services import pipeline_service
from crawlsync.services.jobs.scheduler import schedule_due_jobs
from crawlsync.services.jobs.worker import Worker
from crawlsync.services.pipeline_service import PipelineDeps, build_deps

logger = logging.getLogger(__name__)


async def run_worker(deps: PipelineDeps, stop: asyncio.Event, *, schedule: bool = True) -> None:
    """Run the job worker, and optionally the periodic scheduler, until stop is set."""
    s = deps.settings
    worker = Worker(
        deps.queue,
        pipeline_service.job_handlers(deps),
        concurrency=s.worker_concurrency,
        poll_interval=s.worker_poll_seconds,
    )

    async def scheduler_loop() -> None:
        while not stop.is_set():
            await schedule_due_jobs(
                deps.queue,
                deps.sources,
                crawl_interval=timedelta(hours=s.crawl_interval_hours),
                discovery_interval=timedelta(hours=s.discovery_interval_hours),
            )
            try:
                await asyncio.wait_for(stop.wait(), timeout=s.worker_poll_seconds * 12)
            except asyncio.TimeoutError:
                pass

    tasks = [worker.run_forever(stop)]
    if schedule:
        tasks.append(scheduler_loop())
    await asyncio.gather(*tasks)


async def add_website(deps: PipelineDeps, url: str, *, approve: bool, max_pages: Optional[int]) -> Dict[str, Any]:
    site = Website.from_url(url)
    existing = await deps.sources.get_website_by_domain(site.domain)
    if existing is not None:
        site = existing
    if approve:
        site.status = "approved"
    if max_pages:
        site.max_pages = max_pages
    await deps.sources.save_website(site)
    return site.to_dict()


async def _worker_main(deps: PipelineDeps, schedule: bool) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops
            pass
    await run_worker(deps, stop, schedule=schedule)


def _print(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, default=str))


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Crawl, extract and sync community posts")
    sub = parser.add_subparsers(dest="cmd", required=True)

    w = sub.add_parser("worker", help="Run the job worker and scheduler")
    w.add_argument("--no-schedule", action="store_true", help="Only process queued jobs")

    sub.add_parser("discover", help="Run discovery queries once")

    site = sub.add_parser("add-site", help="Register a website for crawling")
    site.add_argument("url")
    site.add_argument("--approve", action="store_true", help="Mark approved so it can be crawled")
    site.add_argument("--max-pages", type=int, default=None)

    crawl = sub.add_parser("crawl", help="Enqueue a crawl for an approved website")
    crawl.add_argument("website_id")

    job = sub.add_parser("job", help="Show a job's status")
    job.add_argument("job_id")

    clean = sub.add_parser("cleanup", help="Propose merges for duplicate canonical records")
    clean.add_argument("--source-id", default=None)

    purge = sub.add_parser("purge-cache", help="Delete cached pages older than N days")
    purge.add_argument("--days", type=int, default=None)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    deps = build_deps()

    if args.cmd == "worker":
        asyncio.run(_worker_main(deps, schedule=not args.no_schedule))
        return 0
    if args.cmd == "discover":
        _print(asyncio.run(pipeline_service.run_discovery(deps)))
        return 0
    if args.cmd == "add-site":
        _print(asyncio.run(add_website(deps, args.url, approve=args.approve, max_pages=args.max_pages)))
        return 0
    if args.cmd == "crawl":
        queued = asyncio.run(
            deps.queue.enqueue(JobKind.CRAWL_WEBSITE, args.website_id, {"website_id": args.website_id})
        )
        _print(queued.status_view())
        return 0
    if args.cmd == "job":
        _print(asyncio.run(pipeline_service.get_job(deps, args.job_id)))
        return 0
    if args.cmd == "cleanup":
        _print(asyncio.run(pipeline_service.cleanup(deps, args.source_id)))
        return 0
    if args.cmd == "purge-cache":
        _print(asyncio.run(pipeline_service.purge_cache(deps, args.days)))
        return 0

    parser.error("unknown command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
