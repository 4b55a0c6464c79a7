from __future__ import annotations

import logging
from typing import Optional

from ..base import Ingestor, RawPage
from ..validator import UrlValidator

logger = logging.getLogger(__name__)


class ValidatedIngestor:
    """Runs every URL through UrlValidator (with DNS resolution) before fetching.

    The final URL after redirects is validated too, statically, so a public
    page cannot redirect the crawler into a private range.
    """

    def __init__(self, inner: Ingestor, validator: Optional[UrlValidator] = None) -> None:
        self.inner = inner
        self.validator = validator or UrlValidator()
        self.name = getattr(inner, "name", "unknown")

    async def fetch(self, url: str) -> RawPage:
        await self.validator.validate_with_dns(url)
        page = await self.inner.fetch(url)
        final_url = page.metadata.get("final_url")
        if final_url and final_url != url:
            self.validator.validate(final_url)
        return page
