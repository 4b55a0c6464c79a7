"""Recent posts from Instagram / Facebook / X profiles via the Apify scraping API.

Each post becomes one RawPage whose content is a small markdown document
(caption, location, posted date, permalink) so it flows through the same
cache/extract path as website pages.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

import httpx

from crawlsync.errors import BackendError, FetchError, FetchFailure, PipelineError
from crawlsync.models.common import Clock, parse_datetime, utcnow
from crawlsync.models.sources import SocialSource

from ..base import RawPage

logger = logging.getLogger(__name__)

_APIFY_URL = "https://api.apify.com/v2/acts/{actor}/run-sync-get-dataset-items"
_ACTORS = {
    "instagram": "apify~instagram-post-scraper",
    "facebook": "apify~facebook-posts-scraper",
    "x": "apidojo~tweet-scraper",
}
RECENT_DAYS = 30


def _first(item: Dict[str, Any], *keys: str) -> Optional[Any]:
    for key in keys:
        val = item.get(key)
        if val not in (None, ""):
            return val
    return None


def _actor_input(source: SocialSource, limit: int) -> Dict[str, Any]:
    handle = source.handle.lstrip("@")
    if source.platform == "instagram":
        return {"username": [handle], "resultsLimit": limit}
    if source.platform == "facebook":
        return {"startUrls": [{"url": source.profile_url()}], "resultsLimit": limit}
    return {"twitterHandles": [handle], "maxItems": limit, "sort": "Latest"}


def render_post(source: SocialSource, item: Dict[str, Any]) -> Optional[RawPage]:
    """Markdown page for one scraped post, or None when the post has no text."""
    text = _first(item, "caption", "text", "fullText", "full_text")
    if not text or not str(text).strip():
        return None
    url = _first(item, "url", "postUrl", "twitterUrl", "permalink")
    if not url:
        return None
    posted = parse_datetime(_first(item, "timestamp", "time", "createdAt"))

    if source.platform == "facebook":
        heading = f"# Facebook Post by {item.get('pageName') or source.handle}"
    elif source.platform == "instagram":
        heading = f"# Instagram Post by @{source.handle.lstrip('@')}"
    else:
        heading = f"# X Post by @{source.handle.lstrip('@')}"

    lines = [heading, "", str(text).strip(), "", "---", ""]
    location = _first(item, "locationName", "location")
    if location:
        lines.append(f"**Location**: {location}")
    if posted is not None:
        lines.append(f"**Posted**: {posted.strftime('%B %d, %Y')}")
    lines.append(f"**Link**: {url}")

    return RawPage(
        url=str(url),
        content="\n".join(lines),
        title=heading.lstrip("# "),
        content_type="text/markdown",
        metadata={
            "platform": source.platform,
            "profile_url": source.profile_url(),
            "posted_at": posted.isoformat() if posted else "",
        },
    )


class SocialIngestor:
    """SourceIngestor for social profiles."""

    name = "social"

    def __init__(
        self,
        *,
        token: Optional[str],
        client: Optional[httpx.AsyncClient] = None,
        clock: Clock = utcnow,
        limit: int = 50,
        timeout: float = 120.0,
    ) -> None:
        self.token = token
        self.limit = limit
        self.timeout = timeout
        self._client = client
        self._clock: Callable = clock

    async def _run_actor(self, source: SocialSource) -> List[Dict[str, Any]]:
        actor = _ACTORS.get(source.platform)
        if actor is None:
            raise PipelineError(f"Social platform '{source.platform}' is not supported")
        if not self.token:
            raise PipelineError("Apify token not configured (APIFY_TOKEN)")
        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            resp = await client.post(
                _APIFY_URL.format(actor=actor),
                params={"token": self.token},
                json=_actor_input(source, self.limit),
            )
        except httpx.HTTPError as exc:
            raise FetchError(source.profile_url(), FetchFailure.NETWORK, str(exc)) from exc
        finally:
            if self._client is None:
                await client.aclose()
        if resp.status_code == 429 or resp.status_code >= 500:
            raise BackendError(f"Apify returned HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise PipelineError(f"Apify rejected request: HTTP {resp.status_code}")
        data = resp.json()
        return data if isinstance(data, list) else []

    async def fetch_source(self, source: SocialSource) -> List[RawPage]:
        logger.info("Scraping %s posts for %s", source.platform, source.handle)
        items = await self._run_actor(source)
        cutoff = self._clock() - timedelta(days=RECENT_DAYS)
        pages: List[RawPage] = []
        for item in items:
            page = render_post(source, item)
            if page is None:
                continue
            posted = page.metadata.get("posted_at")
            if posted and parse_datetime(posted) < cutoff:
                continue
            pages.append(page)
        logger.info(
            "Converted %d of %d %s post(s) to pages", len(pages), len(items), source.platform
        )
        return pages
