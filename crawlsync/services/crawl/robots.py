"""robots.txt policies and a per-run policy cache.

Parsing is done by `urllib.robotparser`; on top of it, a matching Allow rule
always wins over a matching Disallow rule regardless of order. A policy is
fetched once per host for the lifetime of a `RobotsCache` (one crawl run). If
robots.txt cannot be fetched at all the host is treated as allow-all and a
warning is logged.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional
from urllib.parse import quote, urlsplit
from urllib.robotparser import RobotFileParser

import httpx

logger = logging.getLogger(__name__)


class RobotsPolicy:
    def __init__(self, parser: Optional[RobotFileParser] = None) -> None:
        self.parser = parser

    @classmethod
    def allow_all(cls) -> "RobotsPolicy":
        return cls()

    @classmethod
    def parse(cls, content: str) -> "RobotsPolicy":
        parser = RobotFileParser()
        parser.parse((content or "").splitlines())
        return cls(parser)

    def _entry(self, user_agent: str):
        for entry in self.parser.entries:
            if entry.applies_to(user_agent):
                return entry
        return self.parser.default_entry

    def is_allowed(self, user_agent: str, path: str) -> bool:
        if self.parser is None:
            return True
        entry = self._entry(user_agent)
        if entry is None:
            return True
        target = quote(path or "/")
        matching = [line for line in entry.rulelines if line.applies_to(target)]
        if any(line.allowance for line in matching):
            return True
        return not matching

    def crawl_delay(self, user_agent: str) -> Optional[float]:
        if self.parser is None:
            return None
        delay = self.parser.crawl_delay(user_agent)
        return float(delay) if delay is not None else None


class RobotsCache:
    def __init__(self, client: httpx.AsyncClient, user_agent: str) -> None:
        self.client = client
        self.user_agent = user_agent
        self._policies: Dict[str, RobotsPolicy] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def policy_for(self, url: str) -> RobotsPolicy:
        parts = urlsplit(url)
        origin = f"{parts.scheme}://{parts.netloc}".lower()
        if origin in self._policies:
            return self._policies[origin]
        lock = self._locks.setdefault(origin, asyncio.Lock())
        async with lock:
            if origin not in self._policies:
                self._policies[origin] = await self._fetch(origin)
        return self._policies[origin]

    async def _fetch(self, origin: str) -> RobotsPolicy:
        robots_url = f"{origin}/robots.txt"
        try:
            resp = await self.client.get(robots_url, headers={"User-Agent": self.user_agent})
        except httpx.HTTPError as exc:
            # TODO: decide whether repeated unreachable robots.txt should pause the host instead of allowing
            logger.warning("robots.txt unreachable for %s, allowing crawl: %s", origin, exc)
            return RobotsPolicy.allow_all()
        if resp.status_code != 200:
            return RobotsPolicy.allow_all()
        return RobotsPolicy.parse(resp.text)

    async def is_allowed(self, url: str) -> bool:
        policy = await self.policy_for(url)
        parts = urlsplit(url)
        path = parts.path or "/"
        if parts.query:
            path = f"{path}?{parts.query}"
        return policy.is_allowed(self.user_agent, path)

    async def crawl_delay(self, url: str) -> Optional[float]:
        policy = await self.policy_for(url)
        return policy.crawl_delay(self.user_agent)
