from __future__ import annotations

import fnmatch
import logging
from collections import deque
from typing import Deque, List, Optional, Set, Tuple
from urllib.parse import urldefrag, urlsplit

from crawlsync.errors import FetchError, FetchFailure

from .base import DiscoverConfig, Ingestor, RawPage, host_of
from .ingestors.rate_limited import RateLimitedIngestor
from .robots import RobotsCache

logger = logging.getLogger(__name__)

_SKIP_EXTENSIONS = (
    ".pdf", ".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".zip",
    ".mp3", ".mp4", ".mov", ".doc", ".docx", ".xls", ".xlsx", ".ics",
)


def _normalize(url: str) -> str:
    url, _frag = urldefrag(url)
    parts = urlsplit(url)
    path = parts.path or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path[:-1]
    query = f"?{parts.query}" if parts.query else ""
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}{path}{query}"


def _same_host(a: str, b: str) -> bool:
    ha, hb = host_of(a), host_of(b)
    strip = lambda h: h[4:] if h.startswith("www.") else h  # noqa: E731
    return strip(ha) == strip(hb)


def path_matches(url: str, include: List[str], exclude: List[str]) -> bool:
    """Glob-match the URL path: excluded wins, and an empty include list admits all."""
    path = urlsplit(url).path or "/"
    if any(fnmatch.fnmatch(path, pat) for pat in exclude):
        return False
    if not include:
        return True
    return any(fnmatch.fnmatch(path, pat) for pat in include)


async def discover_site(
    ingestor: Ingestor,
    config: DiscoverConfig,
    *,
    robots: Optional[RobotsCache] = None,
) -> List[RawPage]:
    """Breadth-first same-host crawl from config.url.

    Pages are fetched one level at a time through `ingestor`, so wrapping it in
    RateLimitedIngestor/ValidatedIngestor applies to every request. Fetch
    failures of follow-up pages are logged and skipped; a failure on the start
    URL propagates.
    """
    start = _normalize(config.url)
    queue: Deque[Tuple[str, int]] = deque([(start, 0)])
    seen: Set[str] = {start}
    pages: List[RawPage] = []

    if robots is not None and isinstance(ingestor, RateLimitedIngestor):
        delay = await robots.crawl_delay(start)
        if delay:
            ingestor.set_host_delay(host_of(start), delay)

    while queue and len(pages) < config.limit:
        url, depth = queue.popleft()
        if robots is not None and not await robots.is_allowed(url):
            if url == start:
                raise FetchError(url, FetchFailure.BLOCKED, "disallowed by robots.txt")
            logger.info("robots.txt disallows %s; skipping", url)
            continue
        try:
            page = await ingestor.fetch(url)
        except FetchError as exc:
            if url == start:
                raise
            logger.warning("Skipping %s: %s", url, exc.message)
            continue
        pages.append(page)

        if depth >= config.max_depth:
            continue
        for link in page.links:
            norm = _normalize(link)
            if norm in seen or not norm.startswith(("http://", "https://")):
                continue
            if not _same_host(start, norm):
                continue
            if urlsplit(norm).path.lower().endswith(_SKIP_EXTENSIONS):
                continue
            if not path_matches(norm, config.include_patterns, config.exclude_patterns):
                continue
            seen.add(norm)
            queue.append((norm, depth + 1))

    logger.info("Discovered %d page(s) from %s", len(pages), config.url)
    return pages
