from __future__ import annotations

import asyncio
import logging
import socket
import uuid
from typing import Awaitable, Callable, Dict, List, Optional

from crawlsync.errors import ErrorKind
from crawlsync.models.jobs import Job, JobKind
from crawlsync.services.results import Err, Result

from .queue import JobQueue

logger = logging.getLogger(__name__)

Handler = Callable[[Job], Awaitable[Result]]


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


class Worker:
    """Claims jobs and runs their handlers, at most `concurrency` at a time."""

    def __init__(
        self,
        queue: JobQueue,
        handlers: Dict[JobKind, Handler],
        *,
        concurrency: int = 2,
        poll_interval: float = 5.0,
        heartbeat_interval: Optional[float] = None,
        worker_id: Optional[str] = None,
    ) -> None:
        self.queue = queue
        self.handlers = handlers
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.heartbeat_interval = heartbeat_interval or max(1.0, queue.stale_after / 3)
        self.worker_id = worker_id or default_worker_id()

    async def _beat(self, job: Job) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            await self.queue.heartbeat(job)

    async def execute(self, job: Job) -> Result:
        handler = self.handlers.get(job.kind)
        if handler is None:
            result: Result = Err(ErrorKind.PERMANENT, f"no handler for job kind {job.kind.value}")
        else:
            beat = asyncio.create_task(self._beat(job))
            try:
                result = await handler(job)
            except Exception as exc:
                logger.exception("Handler for %s job %s raised", job.kind.value, job.id)
                result = Err.from_exception(exc)
            finally:
                beat.cancel()
        if result.ok:
            await self.queue.complete(job, result.fact)
        else:
            await self.queue.fail(job, result)
        return result

    async def run_once(self) -> int:
        """Claim up to `concurrency` jobs, run them concurrently, return how many ran."""
        claimed: List[Job] = []
        while len(claimed) < self.concurrency:
            job = await self.queue.claim(self.worker_id)
            if job is None:
                break
            claimed.append(job)
        if claimed:
            await asyncio.gather(*(self.execute(job) for job in claimed))
        return len(claimed)

    async def run_forever(self, stop: Optional[asyncio.Event] = None) -> None:
        stop = stop or asyncio.Event()
        logger.info("Worker %s started (concurrency=%d)", self.worker_id, self.concurrency)
        while not stop.is_set():
            await self.queue.reclaim_stale()
            ran = await self.run_once()
            if ran == 0:
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        logger.info("Worker %s stopped", self.worker_id)
