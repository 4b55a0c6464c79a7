from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from crawlsync.db.stores import PageStore
from crawlsync.models.common import Clock, utcnow
from crawlsync.services.locks import KeyedLocks

from .base import CachedPage, Ingestor, RawPage, content_hash, normalize_text

logger = logging.getLogger(__name__)


class ContentCache:
    """Content-addressed page cache.

    Every stored page carries the SHA-256 of its normalized text. A page whose
    hash already has a valid summary anywhere in the store (same URL or not)
    inherits that summary and embedding, so unchanged or duplicated content
    never costs a second summarization.
    """

    def __init__(
        self,
        store: PageStore,
        *,
        prompt_hash: str,
        min_summary_chars: int = 50,
        max_age: Optional[timedelta] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.prompt_hash = prompt_hash
        self.min_summary_chars = min_summary_chars
        self.max_age = max_age
        self._clock = clock
        self._locks = KeyedLocks()

    def _fresh(self, page: CachedPage) -> bool:
        if self.max_age is None:
            return False
        return self._clock() - page.fetched_at < self.max_age

    async def get_or_fetch(self, url: str, ingestor: Ingestor, *, source_id: Optional[str] = None) -> CachedPage:
        existing = await self.store.get_page_by_url(url)
        if existing is not None and self._fresh(existing):
            logger.debug("Cache hit for %s", url)
            return existing
        raw = await ingestor.fetch(url)
        return await self.ingest(raw, source_id=source_id)

    async def ingest(self, raw: RawPage, *, source_id: Optional[str] = None) -> CachedPage:
        """Store a fetched page, reusing any summary already produced for its content."""
        digest = content_hash(raw.content)
        async with self._locks.hold(raw.url):
            page = await self.store.get_page_by_url(raw.url)
            if page is None:
                page = CachedPage(
                    url=raw.url,
                    content_hash=digest,
                    content=raw.content,
                    fetched_at=raw.fetched_at,
                    source_id=source_id,
                    title=raw.title,
                )
            else:
                if page.content_hash != digest:
                    logger.info("Content changed for %s", raw.url)
                page.content = raw.content
                page.content_hash = digest
                page.fetched_at = raw.fetched_at
                page.title = raw.title or page.title
                page.source_id = source_id or page.source_id

            page.summarizable = len(normalize_text(raw.content)) >= self.min_summary_chars
            if page.summarizable and not page.summary_is_valid(self.prompt_hash):
                donor = await self.store.find_summary_by_hash(digest, self.prompt_hash)
                if donor is not None:
                    page.summary = donor.summary
                    page.embedding = donor.embedding
                    page.prompt_hash = donor.prompt_hash
                    page.summary_content_hash = donor.summary_content_hash
            await self.store.save_page(page)
            return page

    async def purge_older_than(self, age: timedelta) -> int:
        """Retention purge: the only path that deletes cached pages."""
        cutoff = self._clock() - age
        removed = await self.store.purge_pages_before(cutoff)
        if removed:
            logger.info("Purged %d cached page(s) fetched before %s", removed, cutoff.isoformat())
        return removed
