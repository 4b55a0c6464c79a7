import asyncio

import httpx

from crawlsync.services.crawl.robots import RobotsCache, RobotsPolicy

ROBOTS = """
User-agent: *
Disallow: /private
Allow: /private/open
Crawl-delay: 3

User-agent: badbot
User-agent: worsebot
Disallow: /

Sitemap: https://example.org/sitemap.xml
"""


def test_parse_default_rules():
    p = RobotsPolicy.parse(ROBOTS)
    assert p.is_allowed("crawlsync-bot/0.1", "/events")
    assert not p.is_allowed("crawlsync-bot/0.1", "/private/notes")
    assert p.is_allowed("crawlsync-bot/0.1", "/private/open/page")
    assert p.crawl_delay("crawlsync-bot/0.1") == 3.0


def test_allow_wins_regardless_of_rule_order():
    p = RobotsPolicy.parse("User-agent: *\nDisallow: /events\nAllow: /events/public\n")
    assert p.is_allowed("crawlsync-bot/0.1", "/events/public/spring")
    assert not p.is_allowed("crawlsync-bot/0.1", "/events/members")


def test_empty_policy_allows_everything():
    p = RobotsPolicy.allow_all()
    assert p.is_allowed("crawlsync-bot/0.1", "/private")
    assert p.crawl_delay("crawlsync-bot/0.1") is None


def test_grouped_user_agents_share_rules():
    p = RobotsPolicy.parse(ROBOTS)
    assert not p.is_allowed("badbot", "/anything")
    assert not p.is_allowed("WorseBot/2.0", "/anything")


def _cache(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RobotsCache(client, "crawlsync-bot/0.1")


def test_cache_fetches_once_per_origin():
    calls = []

    def handler(request):
        calls.append(str(request.url))
        return httpx.Response(200, text="User-agent: *\nDisallow: /admin\n")

    cache = _cache(handler)

    async def run():
        a = await cache.is_allowed("https://example.org/admin/x")
        b = await cache.is_allowed("https://example.org/events")
        return a, b

    assert asyncio.run(run()) == (False, True)
    assert calls == ["https://example.org/robots.txt"]


def test_missing_robots_allows_everything():
    cache = _cache(lambda request: httpx.Response(404))
    assert asyncio.run(cache.is_allowed("https://example.org/private")) is True


def test_unreachable_robots_fails_open():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    cache = _cache(handler)
    assert asyncio.run(cache.is_allowed("https://example.org/")) is True
    assert asyncio.run(cache.crawl_delay("https://example.org/")) is None
