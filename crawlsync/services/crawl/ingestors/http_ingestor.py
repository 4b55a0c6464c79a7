from __future__ import annotations

import logging
import re
from typing import List, Optional
from urllib.parse import urldefrag, urljoin

import httpx
from bs4 import BeautifulSoup
from selectolax.lexbor import LexborHTMLParser

from crawlsync.errors import FetchError, FetchFailure
from crawlsync.models.common import utcnow

from ..base import RawPage

logger = logging.getLogger(__name__)

_SKIP_LINK_PREFIXES = ("#", "javascript:", "mailto:", "tel:", "data:")
_TEXTUAL_TYPES = ("text/", "application/xhtml", "application/xml", "application/json")


def html_to_text(html: str) -> str:
    """Readable text from an HTML document: headings and list items on their own lines."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript", "template", "svg", "iframe", "nav"]):
        tag.decompose()
    for level in range(1, 4):
        for h in soup.find_all(f"h{level}"):
            h.insert_before("\n" + "#" * level + " ")
            h.insert_after("\n")
    for li in soup.find_all("li"):
        li.insert_before("\n- ")
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for block in soup.find_all(["p", "div", "section", "article", "tr"]):
        block.insert_after("\n")
    text = soup.get_text("")
    lines = [re.sub(r"[ \t ]+", " ", ln).strip() for ln in text.splitlines()]
    out: List[str] = []
    for ln in lines:
        if ln or (out and out[-1]):
            out.append(ln)
    return "\n".join(out).strip()


def extract_links(base_url: str, html: str) -> List[str]:
    links: List[str] = []
    seen = set()
    doc = LexborHTMLParser(html)
    for a in doc.css("a[href]"):
        href = (a.attributes.get("href") or "").strip()
        if not href or href.lower().startswith(_SKIP_LINK_PREFIXES):
            continue
        resolved, _frag = urldefrag(urljoin(base_url, href))
        if resolved not in seen:
            seen.add(resolved)
            links.append(resolved)
    return links


def extract_title(html: str) -> Optional[str]:
    node = LexborHTMLParser(html).css_first("title")
    if node is None:
        return None
    return node.text(strip=True) or None


class HttpIngestor:
    """Direct HTTP fetch strategy backed by httpx."""

    name = "http"

    def __init__(
        self,
        *,
        client: Optional[httpx.AsyncClient] = None,
        user_agent: str = "crawlsync-bot/0.1",
        timeout: float = 20.0,
    ) -> None:
        self.user_agent = user_agent
        self.timeout = float(timeout)
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"User-Agent": self.user_agent, "Accept-Language": "en"},
                follow_redirects=True,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def fetch(self, url: str) -> RawPage:
        client = self._get_client()
        logger.debug("HTTP fetch starting: %s", url)
        try:
            resp = await client.get(url, headers={"User-Agent": self.user_agent})
        except httpx.InvalidURL as exc:
            raise FetchError(url, FetchFailure.INVALID_URL, str(exc)) from exc
        except httpx.HTTPError as exc:
            logger.warning("HTTP request failed for %s: %s", url, exc)
            raise FetchError(url, FetchFailure.NETWORK, str(exc)) from exc

        status = resp.status_code
        if status == 429 or status >= 500:
            raise FetchError(url, FetchFailure.NETWORK, f"HTTP {status}")
        if status in (401, 403):
            raise FetchError(url, FetchFailure.BLOCKED, f"HTTP {status}")
        if status >= 400:
            raise FetchError(url, FetchFailure.INVALID_URL, f"HTTP {status}")

        content_type = resp.headers.get("content-type", "")
        if content_type and not content_type.lower().startswith(_TEXTUAL_TYPES):
            raise FetchError(url, FetchFailure.INVALID_URL, f"unsupported content type {content_type}")

        html = resp.text
        final_url = str(resp.url)
        is_html = "html" in content_type.lower() or "<html" in html[:2000].lower()
        if is_html:
            text = html_to_text(html)
            title = extract_title(html)
            links = extract_links(final_url, html)
        else:
            text, title, links = html, None, []

        page = RawPage(
            url=url,
            content=text,
            fetched_at=utcnow(),
            title=title,
            content_type=content_type or None,
            metadata={"http_status": str(status), "final_url": final_url},
            links=links,
        )
        return page
