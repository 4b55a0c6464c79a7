from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Sequence

from crawlsync.models.posts import ExtractedPost
from crawlsync.services.crawl.base import CachedPage
from crawlsync.services.llm_client import AIBackend

from .enrichment import Enricher
from .merge import merge_candidates
from .narrative import build_batches, extract_batch

logger = logging.getLogger(__name__)


class ExtractionEngine:
    """Runs the three extraction passes over one set of cached pages.

    Pass 1 batches run concurrently; Pass 2 waits for all of them; Pass 3 runs
    per surviving candidate.
    """

    def __init__(
        self,
        backend: AIBackend,
        enricher: Optional[Enricher] = None,
        *,
        batch_char_budget: int = 60_000,
        page_char_limit: int = 12_000,
        concurrency: int = 3,
    ) -> None:
        self.backend = backend
        self.enricher = enricher
        self.batch_char_budget = batch_char_budget
        self.page_char_limit = page_char_limit
        self._semaphore = asyncio.Semaphore(concurrency)

    async def _run_batch(self, batch: List[CachedPage]) -> List[ExtractedPost]:
        async with self._semaphore:
            return await extract_batch(
                self.backend,
                batch,
                char_budget=self.batch_char_budget,
                page_char_limit=self.page_char_limit,
            )

    async def extract(self, pages: Sequence[CachedPage]) -> List[ExtractedPost]:
        usable = [p for p in pages if p.summarizable]
        if not usable:
            return []
        batches = build_batches(usable, char_budget=self.batch_char_budget, page_char_limit=self.page_char_limit)
        logger.info("Extracting from %d page(s) in %d batch(es)", len(usable), len(batches))
        results = await asyncio.gather(*(self._run_batch(b) for b in batches))
        candidates = [post for batch_posts in results for post in batch_posts]

        merged = await merge_candidates(self.backend, candidates)
        if self.enricher is None:
            return merged
        return list(await asyncio.gather(*(self.enricher.enrich(p) for p in merged)))
