"""Pass 1: batch narrative extraction."""
from __future__ import annotations

import logging
from typing import List, Sequence

from crawlsync.models.posts import ContactInfo, ExtractedPost, NarrativeBatchResponse, NarrativeCandidate
from crawlsync.services.crawl.base import CachedPage
from crawlsync.services.llm_client import AIBackend

from .prompts import NARRATIVE_SYSTEM, sanitize_prompt_input

logger = logging.getLogger(__name__)

MAX_TITLE_CHARS = 200


def build_batches(pages: Sequence[CachedPage], *, char_budget: int, page_char_limit: int) -> List[List[CachedPage]]:
    """Greedy batching in page order.

    Page text counts at most page_char_limit toward the budget. A page that is
    larger than the whole budget forms its own batch (and is truncated when the
    prompt is rendered).
    """
    batches: List[List[CachedPage]] = []
    current: List[CachedPage] = []
    used = 0
    for page in pages:
        size = min(len(page.content), page_char_limit)
        if size >= char_budget:
            if current:
                batches.append(current)
                current, used = [], 0
            batches.append([page])
            continue
        if current and used + size > char_budget:
            batches.append(current)
            current, used = [], 0
        current.append(page)
        used += size
    if current:
        batches.append(current)
    return batches


def render_batch(pages: Sequence[CachedPage], *, char_budget: int, page_char_limit: int) -> str:
    limit = min(page_char_limit, char_budget)
    parts = []
    for i, page in enumerate(pages):
        body = sanitize_prompt_input(page.content, limit=limit)
        title = sanitize_prompt_input(page.title or "", limit=300)
        parts.append(f"[Page {i}] URL: {page.url}\nTitle: {title}\n\n{body}")
    return "\n\n-----\n\n".join(parts)


def _to_post(candidate: NarrativeCandidate, pages: Sequence[CachedPage]) -> ExtractedPost:
    source = pages[candidate.source_index]
    contact = ContactInfo(phone=candidate.phone, email=candidate.email, website=candidate.website)
    return ExtractedPost(
        title=candidate.title.strip(),
        summary=candidate.summary.strip(),
        description=candidate.description.strip(),
        contact=None if contact.is_empty() else contact,
        schedule=(candidate.schedule or "").strip() or None,
        tags=[t.strip().lower() for t in candidate.tags if t.strip()],
        source_page_ids=[source.id],
        source_urls=[source.url],
    )


async def extract_batch(
    backend: AIBackend,
    pages: Sequence[CachedPage],
    *,
    char_budget: int,
    page_char_limit: int,
) -> List[ExtractedPost]:
    user = render_batch(pages, char_budget=char_budget, page_char_limit=page_char_limit)
    response = await backend.extract(NARRATIVE_SYSTEM, user, NarrativeBatchResponse)
    posts: List[ExtractedPost] = []
    for candidate in response.posts:
        if not candidate.title.strip() or not candidate.description.strip():
            logger.warning("Dropping candidate with empty title or description: %r", candidate.title)
            continue
        if len(candidate.title) > MAX_TITLE_CHARS:
            logger.warning("Dropping candidate with oversized title (%d chars)", len(candidate.title))
            continue
        if not 0 <= candidate.source_index < len(pages):
            logger.warning("Dropping candidate %r citing unknown page %d", candidate.title, candidate.source_index)
            continue
        posts.append(_to_post(candidate, pages))
    logger.info("Batch of %d page(s) produced %d candidate(s)", len(pages), len(posts))
    return posts
