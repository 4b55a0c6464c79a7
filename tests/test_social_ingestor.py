import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest

from crawlsync.errors import BackendError, FetchError, PipelineError
from crawlsync.models.sources import SocialSource
from crawlsync.services.crawl.ingestors.social_ingestor import SocialIngestor, render_post

NOW = datetime(2025, 3, 1, tzinfo=timezone.utc)


def _ingestor(handler, token="tok"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SocialIngestor(token=token, client=client, clock=lambda: NOW)


def test_render_post_markdown():
    source = SocialSource(platform="instagram", handle="@northside_pantry")
    page = render_post(
        source,
        {
            "caption": "Free groceries this Saturday!",
            "url": "https://www.instagram.com/p/abc/",
            "timestamp": "2025-02-20T15:00:00Z",
            "locationName": "Northside Community Center",
        },
    )
    assert page.content.startswith("# Instagram Post by @northside_pantry")
    assert "Free groceries this Saturday!" in page.content
    assert "**Location**: Northside Community Center" in page.content
    assert "**Posted**: February 20, 2025" in page.content
    assert page.metadata["platform"] == "instagram"
    assert page.metadata["profile_url"] == "https://www.instagram.com/northside_pantry/"


def test_render_post_skips_posts_without_text_or_link():
    source = SocialSource(platform="x", handle="pantry")
    assert render_post(source, {"text": "  ", "url": "https://x.com/p/1"}) is None
    assert render_post(source, {"text": "hello"}) is None


def test_fetch_source_calls_actor_and_filters_old_posts():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json=[
                {"text": "Recent post", "url": "https://x.com/p/1", "createdAt": "2025-02-25T10:00:00Z"},
                {"text": "Old post", "url": "https://x.com/p/2", "createdAt": "2024-11-01T10:00:00Z"},
                {"text": "", "url": "https://x.com/p/3"},
            ],
        )

    pages = asyncio.run(_ingestor(handler).fetch_source(SocialSource(platform="x", handle="@pantry")))
    assert [p.url for p in pages] == ["https://x.com/p/1"]
    assert "apidojo~tweet-scraper" in seen["url"]
    assert "token=tok" in seen["url"]
    assert seen["body"]["twitterHandles"] == ["pantry"]


@pytest.mark.parametrize("status,exc", [(503, BackendError), (429, BackendError), (400, PipelineError)])
def test_error_statuses(status, exc):
    ing = _ingestor(lambda request: httpx.Response(status))
    with pytest.raises(exc):
        asyncio.run(ing.fetch_source(SocialSource(platform="facebook", handle="pantry")))


def test_network_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("down", request=request)

    with pytest.raises(FetchError) as ei:
        asyncio.run(_ingestor(handler).fetch_source(SocialSource(platform="instagram", handle="pantry")))
    assert ei.value.retryable


def test_missing_token_and_unknown_platform_are_permanent():
    ing = _ingestor(lambda request: httpx.Response(200, json=[]), token=None)
    with pytest.raises(PipelineError) as ei:
        asyncio.run(ing.fetch_source(SocialSource(platform="instagram", handle="pantry")))
    assert not ei.value.retryable
    with pytest.raises(PipelineError):
        asyncio.run(_ingestor(lambda r: httpx.Response(200)).fetch_source(SocialSource(platform="myspace", handle="x")))
