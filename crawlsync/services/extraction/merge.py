"""Pass 2: cross-batch merge of Pass-1 candidates."""
from __future__ import annotations

import json
import logging
from typing import Iterable, List, Optional, Set, TypeVar

from crawlsync.models.posts import ContactInfo, ExtractedPost, MergeGroup, MergeResponse
from crawlsync.services.llm_client import AIBackend

from .prompts import MERGE_SYSTEM, sanitize_prompt_input

logger = logging.getLogger(__name__)

V = TypeVar("V")


def _union(lists: Iterable[List[V]]) -> List[V]:
    out: List[V] = []
    for items in lists:
        for item in items:
            if item not in out:
                out.append(item)
    return out


def _merge_contact(members: List[ExtractedPost]) -> Optional[ContactInfo]:
    merged = ContactInfo()
    for post in members:
        if post.contact is None:
            continue
        for name in ("phone", "email", "website", "intake_form_url"):
            if getattr(merged, name) is None and getattr(post.contact, name):
                setattr(merged, name, getattr(post.contact, name))
    return None if merged.is_empty() else merged


def fold_posts(
    members: List[ExtractedPost],
    *,
    title: str = "",
    summary: str = "",
    description: str = "",
) -> ExtractedPost:
    """One post from several duplicates: unioned pages and tags, first non-empty contact fields."""
    base = max(members, key=lambda m: len(m.description))
    return ExtractedPost(
        title=title.strip() or base.title,
        summary=summary.strip() or base.summary,
        description=description.strip() or base.description,
        contact=_merge_contact(members),
        schedule=next((m.schedule for m in members if m.schedule), None),
        tags=_union(m.tags for m in members),
        source_page_ids=_union(m.source_page_ids for m in members),
        source_urls=_union(m.source_urls for m in members),
    )


def fold_group(group: MergeGroup, members: List[ExtractedPost]) -> ExtractedPost:
    return fold_posts(members, title=group.title, summary=group.summary, description=group.description)


def _render(candidates: List[ExtractedPost]) -> str:
    rows = [
        {"index": i, "title": c.title, "summary": c.summary, "description": c.description[:800]}
        for i, c in enumerate(candidates)
    ]
    return sanitize_prompt_input(json.dumps(rows, ensure_ascii=False, indent=1))


async def merge_candidates(backend: AIBackend, candidates: List[ExtractedPost]) -> List[ExtractedPost]:
    """Fold duplicates across batches; candidates the response does not mention pass through."""
    if len(candidates) < 2:
        return list(candidates)
    response = await backend.extract(MERGE_SYSTEM, _render(candidates), MergeResponse)

    used: Set[int] = set()
    merged: List[ExtractedPost] = []
    for group in response.groups:
        indices = [i for i in dict.fromkeys(group.member_indices) if 0 <= i < len(candidates) and i not in used]
        if len(indices) < 2:
            continue
        used.update(indices)
        merged.append(fold_group(group, [candidates[i] for i in indices]))

    kept = [c for i, c in enumerate(candidates) if i not in used]
    if merged:
        logger.info("Merged %d candidate(s) into %d", len(used), len(merged))
    return merged + kept
