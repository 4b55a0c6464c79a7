"""Lightweight async web search + page fetch.

- Search providers: DuckDuckGo HTML (no API key) by default, or Bing Web Search API when configured.
- HTTP client: httpx (with short timeouts)
- Extraction: the crawler's html_to_text

Returned result schema:
{
    "title": str | None,
    "url": str,
    "snippet": str | None,
    "content": str | None,  # only from fetch_content
}

Used by discovery (find new websites) and by enrichment (the web_search and
fetch_page tools). Not a crawler: no robots handling, small k, short timeouts.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Dict, List, Literal, Optional
from urllib.parse import parse_qs, urlsplit

import httpx
from bs4 import BeautifulSoup

from crawlsync.errors import BackendError
from crawlsync.services.crawl.ingestors.http_ingestor import html_to_text

logger = logging.getLogger(__name__)

_DDG_SEARCH_URL = "https://html.duckduckgo.com/html/"
_BING_ENDPOINT_DEFAULT = "https://api.bing.microsoft.com/v7.0/search"


Provider = Literal["auto", "ddg", "bing"]


def _unwrap_ddg(url: str) -> str:
    """DuckDuckGo HTML results link through /l/?uddg=<target>."""
    parts = urlsplit(url)
    if parts.path.startswith("/l/"):
        target = parse_qs(parts.query).get("uddg")
        if target:
            return target[0]
    if url.startswith("//"):
        return "https:" + url
    return url


@dataclass
class WebSearch:
    timeout: float = 8.0
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
    )
    max_content_chars: int = 4000
    provider: Provider = "auto"
    transport: Optional[httpx.AsyncBaseTransport] = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            headers={"User-Agent": self.user_agent, "Accept-Language": "en"},
            follow_redirects=True,
            transport=self.transport,
        )

    def _which_provider(self) -> str:
        if self.provider in ("ddg", "bing"):
            return self.provider
        if os.getenv("BING_SEARCH_API_KEY"):
            return "bing"
        return "ddg"

    async def search(self, query: str, k: int = 5) -> List[Dict[str, Optional[str]]]:
        """Top k results from the configured provider; raises BackendError when the provider fails."""
        if self._which_provider() == "bing":
            return await self._search_bing(query, k=k)
        return await self._search_ddg(query, k=k)

    async def _search_ddg(self, query: str, k: int) -> List[Dict[str, Optional[str]]]:
        out: List[Dict[str, Optional[str]]] = []
        async with self._client() as client:
            try:
                r = await client.post(_DDG_SEARCH_URL, data={"q": query})
                r.raise_for_status()
            except httpx.HTTPError as exc:
                raise BackendError(f"DuckDuckGo search failed: {exc}") from exc
        soup = BeautifulSoup(r.text, "html.parser")
        for a in soup.select("a.result__a"):
            url = a.get("href")
            if not url:
                continue
            snippet = None
            body = a.find_parent("div", class_="result__body")
            if body:
                sn = body.select_one(".result__snippet")
                if sn:
                    snippet = sn.get_text(" ", strip=True)
            out.append({"title": a.get_text(strip=True) or None, "url": _unwrap_ddg(url), "snippet": snippet})
            if len(out) >= k:
                break
        return out

    async def _search_bing(self, query: str, k: int) -> List[Dict[str, Optional[str]]]:
        """Bing Web Search API. Requires BING_SEARCH_API_KEY; BING_SEARCH_ENDPOINT overrides the endpoint."""
        key = os.getenv("BING_SEARCH_API_KEY")
        if not key:
            return await self._search_ddg(query, k=k)
        endpoint = os.getenv("BING_SEARCH_ENDPOINT") or _BING_ENDPOINT_DEFAULT
        params = {"q": query, "mkt": "en-US", "count": max(10, k)}
        async with self._client() as client:
            try:
                r = await client.get(endpoint, params=params, headers={"Ocp-Apim-Subscription-Key": key})
                r.raise_for_status()
                data = r.json()
            except (httpx.HTTPError, ValueError) as exc:
                raise BackendError(f"Bing search failed: {exc}") from exc
        out: List[Dict[str, Optional[str]]] = []
        for item in (data or {}).get("webPages", {}).get("value", [])[:k]:
            if item.get("url"):
                out.append({"title": item.get("name"), "url": item["url"], "snippet": item.get("snippet")})
        return out

    async def fetch_content(self, url: str) -> Optional[str]:
        """Page text clipped to max_content_chars, or None when the page is unavailable."""
        try:
            async with self._client() as client:
                r = await client.get(url)
                r.raise_for_status()
        except httpx.HTTPError as exc:
            logger.info("fetch_content failed for %s: %s", url, exc)
            return None
        txt = html_to_text(r.text)
        if not txt:
            return None
        return txt[: self.max_content_chars]
