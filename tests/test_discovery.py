"""Tests for oEmbed discovery and document fetching."""

import asyncio

import httpx

from oembed_snap.discovery import OEmbedDiscoverer, OEmbedFetcher, scan_oembed_link
from oembed_snap.models import EmbedType

OEMBED_LINK = '<link rel="alternate" type="application/json+oembed" href="https://provider.test/oembed?id=1">'


def _client(routes: dict) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        route = routes.get(str(request.url))
        if route is None:
            return httpx.Response(404, text="not found")
        if isinstance(route, Exception):
            raise route
        return route

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def _aiter(chunks):
    for chunk in chunks:
        yield chunk


async def _slow_body():
    yield b"<html><head>"
    await asyncio.sleep(5)
    yield OEMBED_LINK.encode()


class TestScanOEmbedLink:
    async def test_finds_link_in_head(self):
        html = f"<html><head><title>x</title>{OEMBED_LINK}</head><body></body></html>"
        assert await scan_oembed_link(_aiter([html])) == "https://provider.test/oembed?id=1"

    async def test_tag_split_across_chunks(self):
        chunks = ["<html><head><link rel=\"alter", "nate\" type=\"application/json+oembed\" ", 'href="/o.json"></head>']
        assert await scan_oembed_link(_aiter(chunks)) == "/o.json"

    async def test_stops_reading_after_match(self):
        consumed = []

        async def chunks():
            for c in ["<html><head>", OEMBED_LINK, "<body>", "</body></html>"]:
                consumed.append(c)
                yield c

        assert await scan_oembed_link(chunks()) == "https://provider.test/oembed?id=1"
        assert len(consumed) == 2

    async def test_ignores_other_link_types(self):
        html = (
            '<link rel="stylesheet" href="/a.css">'
            '<link rel="alternate" type="text/xml+oembed" href="/o.xml">'
            '<link rel="alternate" type="application/rss+xml" href="/feed">'
        )
        assert await scan_oembed_link(_aiter([html])) is None

    async def test_first_match_wins(self):
        html = (
            '<link rel="alternate" type="application/json+oembed" href="/first">'
            '<link rel="alternate" type="application/json+oembed" href="/second">'
        )
        assert await scan_oembed_link(_aiter([html])) == "/first"

    async def test_attribute_case_and_entities(self):
        html = '<LINK REL="Alternate" TYPE="application/json+oembed" HREF="/o?a=1&amp;b=2">'
        assert await scan_oembed_link(_aiter([html])) == "/o?a=1&b=2"

    async def test_empty_document(self):
        assert await scan_oembed_link(_aiter([])) is None


class TestOEmbedDiscoverer:
    async def test_returns_discovery_url(self):
        page = httpx.Response(200, html=f"<head>{OEMBED_LINK}</head>")
        async with _client({"https://site.test/post/1": page}) as client:
            url = await OEmbedDiscoverer(client).discover("https://site.test/post/1")
        assert url == "https://provider.test/oembed?id=1"

    async def test_relative_href_is_resolved(self):
        page = httpx.Response(
            200, html='<link rel="alternate" type="application/json+oembed" href="/oembed.json?u=1">'
        )
        async with _client({"https://site.test/post/1": page}) as client:
            url = await OEmbedDiscoverer(client).discover("https://site.test/post/1")
        assert url == "https://site.test/oembed.json?u=1"

    async def test_no_link(self):
        page = httpx.Response(200, html="<html><head></head><body>hi</body></html>")
        async with _client({"https://site.test/": page}) as client:
            assert await OEmbedDiscoverer(client).discover("https://site.test/") is None

    async def test_error_status(self):
        async with _client({}) as client:
            assert await OEmbedDiscoverer(client).discover("https://site.test/missing") is None

    async def test_transport_error(self):
        request = httpx.Request("GET", "https://site.test/")
        routes = {"https://site.test/": httpx.ConnectError("connection refused", request=request)}
        async with _client(routes) as client:
            assert await OEmbedDiscoverer(client).discover("https://site.test/") is None

    async def test_trickling_page_is_cut_off(self):
        page = httpx.Response(200, content=_slow_body())
        async with _client({"https://site.test/slow": page}) as client:
            discoverer = OEmbedDiscoverer(client, timeout_ms=200)
            assert await discoverer.discover("https://site.test/slow") is None

    async def test_body_after_link_is_never_read(self):
        async def body():
            yield f"<html><head>{OEMBED_LINK}".encode()
            raise RuntimeError("read past the discovery link")

        page = httpx.Response(200, content=body())
        async with _client({"https://site.test/post/1": page}) as client:
            url = await OEmbedDiscoverer(client).discover("https://site.test/post/1")
        assert url == "https://provider.test/oembed?id=1"


class TestOEmbedFetcher:
    async def test_parses_document(self):
        body = {"type": "rich", "version": "1.0", "html": "<div>hi</div>", "cache_age": 7200, "title": "T"}
        async with _client({"https://provider.test/o": httpx.Response(200, json=body)}) as client:
            doc = await OEmbedFetcher(client).fetch("https://provider.test/o")
        assert doc is not None
        assert doc.embed_type is EmbedType.RICH
        assert doc.html == "<div>hi</div>"
        assert doc.cache_age == 7200
        assert doc.raw()["title"] == "T"

    async def test_unknown_type_is_preserved(self):
        body = {"type": "embed", "html": "<p></p>"}
        async with _client({"https://provider.test/o": httpx.Response(200, json=body)}) as client:
            doc = await OEmbedFetcher(client).fetch("https://provider.test/o")
        assert doc.type == "embed"
        assert doc.embed_type is EmbedType.UNKNOWN

    async def test_non_success_status(self):
        routes = {"https://provider.test/o": httpx.Response(500, json={"type": "rich"})}
        async with _client(routes) as client:
            assert await OEmbedFetcher(client).fetch("https://provider.test/o") is None

    async def test_malformed_body(self):
        routes = {"https://provider.test/o": httpx.Response(200, text="<html>nope</html>")}
        async with _client(routes) as client:
            assert await OEmbedFetcher(client).fetch("https://provider.test/o") is None

    async def test_non_object_body(self):
        routes = {"https://provider.test/o": httpx.Response(200, json=[{"type": "rich"}])}
        async with _client(routes) as client:
            assert await OEmbedFetcher(client).fetch("https://provider.test/o") is None

    async def test_missing_type(self):
        routes = {"https://provider.test/o": httpx.Response(200, json={"html": "<div></div>"})}
        async with _client(routes) as client:
            assert await OEmbedFetcher(client).fetch("https://provider.test/o") is None

    async def test_transport_error(self):
        request = httpx.Request("GET", "https://provider.test/o")
        routes = {"https://provider.test/o": httpx.ReadTimeout("timed out", request=request)}
        async with _client(routes) as client:
            assert await OEmbedFetcher(client).fetch("https://provider.test/o") is None

    async def test_slow_document_is_cut_off(self):
        routes = {"https://provider.test/o": httpx.Response(200, content=_slow_body())}
        async with _client(routes) as client:
            assert await OEmbedFetcher(client, timeout_ms=200).fetch("https://provider.test/o") is None

    async def test_infinite_cache_age_is_dropped(self):
        body = b'{"type": "rich", "html": "<div>x</div>", "cache_age": 1e999}'
        routes = {
            "https://provider.test/o": httpx.Response(
                200, content=body, headers={"content-type": "application/json"}
            )
        }
        async with _client(routes) as client:
            doc = await OEmbedFetcher(client).fetch("https://provider.test/o")
        assert doc is not None
        assert doc.cache_age is None

    async def test_raw_is_the_provider_json(self):
        body = {
            "type": "rich",
            "version": "1.0",
            "html": "<div></div>",
            "cache_age": "3600",
            "thumbnail_url": None,
        }
        async with _client({"https://provider.test/o": httpx.Response(200, json=body)}) as client:
            doc = await OEmbedFetcher(client).fetch("https://provider.test/o")
        assert doc.cache_age == 3600
        assert doc.raw() == body
