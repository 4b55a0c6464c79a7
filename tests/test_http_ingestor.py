import asyncio

import httpx
import pytest

from crawlsync.errors import FetchError, FetchFailure
from crawlsync.services.crawl.ingestors.http_ingestor import HttpIngestor, extract_links, html_to_text

PAGE = """
<html><head><title>Food Shelf</title><style>.x{}</style></head>
<body>
<nav><a href="/skip">menu</a></nav>
<h1>Weekly Food Shelf</h1>
<p>Open Tuesdays 4-7pm.</p>
<ul><li>Fresh produce</li><li>Diapers</li></ul>
<a href="/contact#form">Contact</a>
<a href="mailto:info@example.org">Mail</a>
<a href="https://other.example/x">Partner</a>
</body></html>
"""


def _ingestor(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpIngestor(client=client)


def test_html_to_text_keeps_structure():
    text = html_to_text(PAGE)
    assert "# Weekly Food Shelf" in text
    assert "- Fresh produce" in text
    assert "Open Tuesdays 4-7pm." in text
    assert ".x{}" not in text
    assert "menu" not in text


def test_extract_links_resolves_and_filters():
    links = extract_links("https://example.org/food", PAGE)
    assert "https://example.org/contact" in links
    assert "https://other.example/x" in links
    assert not any(l.startswith("mailto:") for l in links)


def test_fetch_html_page():
    ing = _ingestor(lambda request: httpx.Response(200, html=PAGE))
    page = asyncio.run(ing.fetch("https://example.org/food"))
    assert page.title == "Food Shelf"
    assert "Weekly Food Shelf" in page.content
    assert page.metadata["http_status"] == "200"
    assert "https://example.org/contact" in page.links


@pytest.mark.parametrize(
    "status,failure",
    [
        (503, FetchFailure.NETWORK),
        (429, FetchFailure.NETWORK),
        (403, FetchFailure.BLOCKED),
        (404, FetchFailure.INVALID_URL),
    ],
)
def test_http_status_mapping(status, failure):
    ing = _ingestor(lambda request: httpx.Response(status))
    with pytest.raises(FetchError) as ei:
        asyncio.run(ing.fetch("https://example.org/x"))
    assert ei.value.failure is failure


def test_transport_error_is_network():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(FetchError) as ei:
        asyncio.run(_ingestor(handler).fetch("https://example.org/x"))
    assert ei.value.failure is FetchFailure.NETWORK
    assert ei.value.retryable


def test_binary_content_rejected():
    ing = _ingestor(lambda request: httpx.Response(200, content=b"%PDF", headers={"content-type": "application/pdf"}))
    with pytest.raises(FetchError) as ei:
        asyncio.run(ing.fetch("https://example.org/flyer.pdf"))
    assert ei.value.failure is FetchFailure.INVALID_URL
