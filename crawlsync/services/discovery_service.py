from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol, Set

from crawlsync.db.stores import SourceStore
from crawlsync.errors import PipelineError
from crawlsync.models.sources import Website, domain_of

logger = logging.getLogger(__name__)

DEFAULT_LOCATION = "Twin Cities, Minnesota"


class SearchService(Protocol):
    async def search(self, query: str, k: int = 5) -> List[Dict[str, Optional[str]]]: ...


async def run_discovery(
    sources: SourceStore,
    search: SearchService,
    *,
    location: str = DEFAULT_LOCATION,
    results_per_query: int = 10,
) -> Dict[str, Any]:
    """Search every active discovery query and register unseen domains for review.

    A failing query is logged and skipped. New websites start in
    pending_review; nothing is crawled until someone approves them.
    """
    queries = await sources.list_discovery_queries(active_only=True)
    if not queries:
        logger.info("No active discovery queries")
        return {"queries_executed": 0, "total_results": 0, "websites_created": 0}

    seen: Set[str] = set()
    total_results = 0
    created = 0
    for query in queries:
        text = query.render(location)
        logger.info("Running discovery search: %s", text)
        try:
            results = await search.search(text, k=results_per_query)
        except PipelineError as exc:
            logger.warning("Search failed for %r, skipping: %s", text, exc.message)
            continue
        total_results += len(results)

        for result in results:
            url = result.get("url") or ""
            domain = domain_of(url)
            if not domain or domain in seen:
                continue
            seen.add(domain)
            if await sources.get_website_by_domain(domain) is not None:
                continue
            site = Website.from_url(
                f"https://{domain}",
                submission_context=f"Discovery: {text}",
            )
            await sources.save_website(site)
            created += 1
            logger.info("Created website %s from discovery", domain)

    return {"queries_executed": len(queries), "total_results": total_results, "websites_created": created}
