from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Dict, Optional

from ..base import Ingestor, RawPage, host_of


class RateLimitedIngestor:
    """Wraps an ingestor with a global in-flight cap and a per-host spacing.

    Excess requests wait for a slot instead of being rejected. The per-host
    delay can be raised at runtime (e.g. from a robots.txt Crawl-delay).
    """

    def __init__(
        self,
        inner: Ingestor,
        *,
        max_concurrent: int = 4,
        per_host_delay: float = 1.0,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.inner = inner
        self.name = getattr(inner, "name", "unknown")
        self.per_host_delay = max(0.0, float(per_host_delay))
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._host_locks: Dict[str, asyncio.Lock] = {}
        self._last_request: Dict[str, float] = {}
        self._host_delay: Dict[str, float] = {}
        self._monotonic = monotonic
        self._sleep = sleep

    def set_host_delay(self, host: str, delay: Optional[float]) -> None:
        if delay is None:
            return
        host = host.lower()
        self._host_delay[host] = max(self._host_delay.get(host, 0.0), float(delay))

    def delay_for(self, host: str) -> float:
        return max(self.per_host_delay, self._host_delay.get(host.lower(), 0.0))

    async def _wait_turn(self, host: str) -> None:
        lock = self._host_locks.setdefault(host, asyncio.Lock())
        async with lock:
            last = self._last_request.get(host)
            if last is not None:
                wait = self.delay_for(host) - (self._monotonic() - last)
                if wait > 0:
                    await self._sleep(wait)
            self._last_request[host] = self._monotonic()

    async def fetch(self, url: str) -> RawPage:
        async with self._semaphore:
            await self._wait_turn(host_of(url))
            return await self.inner.fetch(url)
