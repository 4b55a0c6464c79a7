from __future__ import annotations

import asyncio
import logging
from typing import List, Sequence

from crawlsync.db.stores import PageStore
from crawlsync.services.crawl.base import CachedPage, sha256_hexdigest
from crawlsync.services.llm_client import AIBackend
from crawlsync.services.locks import KeyedLocks

logger = logging.getLogger(__name__)


def compute_prompt_hash(prompt_version: str, model: str) -> str:
    return sha256_hexdigest(f"{prompt_version}\x00{model}")


class Summarizer:
    """Summary + embedding per page, versioned by prompt hash.

    Work for one content hash happens under a per-hash lock and re-checks the
    store inside it, so identical pages processed concurrently cost one call.
    Backend errors propagate; the job layer decides about retries.
    """

    def __init__(
        self,
        backend: AIBackend,
        store: PageStore,
        *,
        prompt_version: str = "v1",
        concurrency: int = 4,
    ) -> None:
        self.backend = backend
        self.store = store
        self.prompt_hash = compute_prompt_hash(prompt_version, backend.model)
        self._semaphore = asyncio.Semaphore(concurrency)
        self._locks = KeyedLocks()

    async def summarize(self, page: CachedPage) -> CachedPage:
        if not page.needs_summary(self.prompt_hash):
            return page
        async with self._locks.hold(page.content_hash):
            donor = await self.store.find_summary_by_hash(page.content_hash, self.prompt_hash)
            if donor is not None:
                summary, embedding = donor.summary, donor.embedding
            else:
                async with self._semaphore:
                    logger.debug("Summarizing %s", page.url)
                    summary = await self.backend.summarize(page.content)
                    vectors = await self.backend.embed([summary])
                embedding = vectors[0] if vectors else None
            page.summary = summary
            page.embedding = embedding
            page.prompt_hash = self.prompt_hash
            page.summary_content_hash = page.content_hash
            await self.store.save_page(page)
        return page

    async def summarize_all(self, pages: Sequence[CachedPage]) -> List[CachedPage]:
        return list(await asyncio.gather(*(self.summarize(p) for p in pages)))
