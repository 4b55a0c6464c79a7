"""Pass 3: agentic enrichment of candidates missing contact info or schedule.

The model drives a small tool loop. The loop ends when the model calls
finalize, stops calling tools, runs out of turns, or runs out of wall-clock
time. None of those is an error: whatever is still missing is listed in
`absent_fields`.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol

from crawlsync.errors import FetchError, PipelineError
from crawlsync.models.posts import ContactInfo, ExtractedPost
from crawlsync.services.crawl.validator import UrlValidator
from crawlsync.services.llm_client import AIBackend, ToolCall

from .prompts import ENRICH_SYSTEM, sanitize_prompt_input

logger = logging.getLogger(__name__)


class EnrichmentSearch(Protocol):
    async def search(self, query: str, k: int = 5) -> List[Dict[str, Optional[str]]]: ...

    async def fetch_content(self, url: str) -> Optional[str]: ...


def _fn(name: str, description: str, properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {"type": "object", "properties": properties, "required": required},
        },
    }


_STR = {"type": "string"}

ENRICHMENT_TOOLS: List[Dict[str, Any]] = [
    _fn("web_search", "Search the web.", {"query": _STR}, ["query"]),
    _fn("fetch_page", "Fetch the text of a web page.", {"url": _STR}, ["url"]),
    _fn(
        "record_contact",
        "Record contact details found for the listing.",
        {"phone": _STR, "email": _STR, "website": _STR, "intake_form_url": _STR},
        [],
    ),
    _fn("record_schedule", "Record when the offering happens or is open.", {"schedule": _STR}, ["schedule"]),
    _fn("finalize", "Finish enrichment.", {"notes": _STR}, []),
]


@dataclass
class _LoopState:
    post: ExtractedPost
    finalized: bool = False


class Enricher:
    def __init__(
        self,
        backend: AIBackend,
        search: Optional[EnrichmentSearch] = None,
        *,
        max_turns: int = 8,
        time_budget: float = 90.0,
        validator: Optional[UrlValidator] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backend = backend
        self.search = search
        self.max_turns = max_turns
        self.time_budget = time_budget
        self.validator = validator or UrlValidator()
        self._monotonic = monotonic

    async def enrich(self, post: ExtractedPost) -> ExtractedPost:
        missing = post.missing_fields()
        if not missing:
            return post
        state = _LoopState(post=post.model_copy(deep=True))
        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": ENRICH_SYSTEM},
            {
                "role": "user",
                "content": sanitize_prompt_input(
                    json.dumps(
                        {
                            "listing": post.model_dump(include={"title", "summary", "description", "source_urls"}),
                            "missing": missing,
                        },
                        ensure_ascii=False,
                    )
                ),
            },
        ]
        deadline = self._monotonic() + self.time_budget
        turns = 0
        try:
            while turns < self.max_turns and not state.finalized:
                remaining = deadline - self._monotonic()
                if remaining <= 0:
                    logger.info("Enrichment time budget spent for %r", post.title)
                    break
                turns += 1
                try:
                    turn = await asyncio.wait_for(
                        self.backend.complete_with_tools(messages, ENRICHMENT_TOOLS), timeout=remaining
                    )
                except asyncio.TimeoutError:
                    logger.info("Enrichment timed out for %r", post.title)
                    break
                messages.append(turn.as_message())
                if not turn.tool_calls:
                    break
                spent = False
                for call in turn.tool_calls:
                    try:
                        output = await asyncio.wait_for(
                            self._dispatch(call, state), timeout=max(0.0, deadline - self._monotonic())
                        )
                    except asyncio.TimeoutError:
                        logger.info("Enrichment time budget spent in %s for %r", call.name, post.title)
                        spent = True
                        break
                    messages.append({"role": "tool", "tool_call_id": call.id, "content": output})
                if spent:
                    break
        except PipelineError as exc:
            logger.warning("Enrichment stopped for %r: %s", post.title, exc.message)

        enriched = state.post
        enriched.absent_fields = enriched.missing_fields()
        return enriched

    async def _dispatch(self, call: ToolCall, state: _LoopState) -> str:
        args = call.arguments or {}
        if call.name == "web_search":
            if self.search is None:
                return "web search is unavailable"
            try:
                results = await self.search.search(str(args.get("query", "")), k=5)
            except PipelineError as exc:
                return f"search failed: {exc.message}"
            return json.dumps(results, ensure_ascii=False)
        if call.name == "fetch_page":
            url = str(args.get("url", ""))
            if self.search is None:
                return "page fetch is unavailable"
            try:
                await self.validator.validate_with_dns(url)
            except FetchError as exc:
                return f"cannot fetch: {exc.message}"
            text = await self.search.fetch_content(url)
            return sanitize_prompt_input(text, limit=4000) if text else "page unavailable"
        if call.name == "record_contact":
            contact = state.post.contact or ContactInfo()
            for name in ("phone", "email", "website", "intake_form_url"):
                value = args.get(name)
                if value and str(value).strip():
                    setattr(contact, name, str(value).strip())
            state.post.contact = None if contact.is_empty() else contact
            return "recorded"
        if call.name == "record_schedule":
            schedule = str(args.get("schedule") or "").strip()
            if schedule:
                state.post.schedule = schedule
            return "recorded"
        if call.name == "finalize":
            state.finalized = True
            return "done"
        return f"unknown tool {call.name}"
