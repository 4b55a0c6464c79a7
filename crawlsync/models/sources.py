from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from .common import new_id


def domain_of(url_or_domain: str) -> str:
    """Bare lowercase domain without a leading www."""
    text = (url_or_domain or "").strip()
    if "://" not in text:
        text = f"https://{text}"
    host = (urlsplit(text).hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    return host


@dataclass
class Website:
    domain: str
    url: str
    id: str = field(default_factory=new_id)
    status: str = "pending_review"  # pending_review | approved | rejected
    max_pages: Optional[int] = None
    submission_context: Optional[str] = None
    last_crawled_at: Optional[datetime] = None

    @classmethod
    def from_url(cls, url_or_domain: str, **kwargs: Any) -> "Website":
        domain = domain_of(url_or_domain)
        url = url_or_domain if "://" in url_or_domain else f"https://{domain}"
        return cls(domain=domain, url=url, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["last_crawled_at"] = self.last_crawled_at.isoformat() if self.last_crawled_at else None
        return d


@dataclass
class SocialSource:
    platform: str  # instagram | facebook | x
    handle: str
    id: str = field(default_factory=new_id)
    url: Optional[str] = None

    def profile_url(self) -> str:
        if self.url:
            return self.url
        handle = self.handle.lstrip("@")
        if self.platform == "instagram":
            return f"https://www.instagram.com/{handle}/"
        if self.platform == "facebook":
            return f"https://www.facebook.com/{handle}"
        return f"https://x.com/{handle}"


@dataclass
class DiscoveryQuery:
    query_text: str
    id: str = field(default_factory=new_id)
    active: bool = True

    def render(self, location: str) -> str:
        return self.query_text.replace("{location}", location)
