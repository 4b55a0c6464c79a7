from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable
from urllib.parse import urlsplit

from crawlsync.models.common import new_id, utcnow

_WS_RE = re.compile(r"\s+")


def sha256_hexdigest(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def normalize_text(text: str) -> str:
    """Collapse whitespace and trim; the basis for content hashing."""
    return _WS_RE.sub(" ", text or "").strip()


def content_hash(text: str) -> str:
    return sha256_hexdigest(normalize_text(text))


def host_of(url: str) -> str:
    return (urlsplit(url).hostname or "").lower()


@dataclass
class RawPage:
    url: str
    content: str
    fetched_at: datetime = field(default_factory=utcnow)
    title: Optional[str] = None
    content_type: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    links: List[str] = field(default_factory=list)

    def has_content(self) -> bool:
        return bool((self.content or "").strip())


@dataclass
class CachedPage:
    url: str
    content_hash: str
    content: str
    fetched_at: datetime
    source_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    title: Optional[str] = None
    summarizable: bool = True
    summary: Optional[str] = None
    embedding: Optional[List[float]] = None
    prompt_hash: Optional[str] = None
    summary_content_hash: Optional[str] = None

    def summary_is_valid(self, current_prompt_hash: str) -> bool:
        """A summary holds only for the content and prompt version that produced it."""
        return (
            self.summary is not None
            and self.prompt_hash == current_prompt_hash
            and self.summary_content_hash == self.content_hash
        )

    def needs_summary(self, current_prompt_hash: str) -> bool:
        return self.summarizable and not self.summary_is_valid(current_prompt_hash)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "source_id": self.source_id,
            "title": self.title,
            "content_hash": self.content_hash,
            "summarizable": self.summarizable,
            "summary": self.summary,
            "fetched_at": self.fetched_at.isoformat(),
        }


@dataclass
class DiscoverConfig:
    url: str
    limit: int = 20
    max_depth: int = 2
    include_patterns: List[str] = field(default_factory=list)
    exclude_patterns: List[str] = field(default_factory=list)


@runtime_checkable
class Ingestor(Protocol):
    """Single-URL fetch strategy: returns a RawPage or raises FetchError."""

    name: str

    async def fetch(self, url: str) -> RawPage: ...


@runtime_checkable
class SourceIngestor(Protocol):
    """Fetch strategy for sources that yield many pages (social profiles)."""

    name: str

    async def fetch_source(self, source: Any) -> List[RawPage]: ...
