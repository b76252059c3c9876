from __future__ import annotations

import asyncio
import logging
from html.parser import HTMLParser
from typing import AsyncIterator
from urllib.parse import urljoin

import httpx
from pydantic import ValidationError

from .models import OEmbedDocument

log = logging.getLogger(__name__)

OEMBED_JSON_TYPE = "application/json+oembed"


class _OEmbedLinkScanner(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.href: str | None = None

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if self.href is not None or tag != "link":
            return
        values = {name: (value or "") for name, value in attrs}
        rel = values.get("rel", "").strip().lower()
        link_type = values.get("type", "").strip().lower()
        href = values.get("href", "").strip()
        if rel == "alternate" and link_type == OEMBED_JSON_TYPE and href:
            self.href = href


async def scan_oembed_link(chunks: AsyncIterator[str]) -> str | None:
    """Return the first oEmbed JSON discovery href in ``chunks``, reading no further."""
    scanner = _OEmbedLinkScanner()
    async for chunk in chunks:
        scanner.feed(chunk)
        if scanner.href is not None:
            return scanner.href
    scanner.close()
    return scanner.href


class OEmbedDiscoverer:
    def __init__(self, client: httpx.AsyncClient, *, timeout_ms: int = 8000, user_agent: str | None = None):
        self._client = client
        self._timeout = timeout_ms / 1000
        self._headers = {"accept": "text/html,application/xhtml+xml,*/*;q=0.8"}
        if user_agent:
            self._headers["user-agent"] = user_agent

    async def discover(self, source_url: str) -> str | None:
        # httpx's timeout only bounds each read; a trickling page needs an overall cap.
        try:
            found = await asyncio.wait_for(self._scan(source_url), timeout=self._timeout)
        except asyncio.TimeoutError:
            log.info("Discovery fetch for %s exceeded %.1fs", source_url, self._timeout)
            return None
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            log.info("Discovery fetch for %s failed: %s", source_url, e)
            return None

        if found is None:
            return None
        href, base_url = found
        if not href:
            log.info("No oEmbed discovery link on %s", source_url)
            return None
        return urljoin(base_url, href)

    async def _scan(self, source_url: str) -> tuple[str | None, str] | None:
        async with self._client.stream(
            "GET", source_url, headers=self._headers, timeout=self._timeout
        ) as res:
            if res.status_code >= 400:
                log.info("Discovery fetch for %s returned HTTP %s", source_url, res.status_code)
                return None
            href = await scan_oembed_link(res.aiter_text())
            return href, str(res.url)


class OEmbedFetcher:
    def __init__(self, client: httpx.AsyncClient, *, timeout_ms: int = 8000, user_agent: str | None = None):
        self._client = client
        self._timeout = timeout_ms / 1000
        self._headers = {"accept": "application/json"}
        if user_agent:
            self._headers["user-agent"] = user_agent

    async def fetch(self, discovery_url: str) -> OEmbedDocument | None:
        try:
            res = await asyncio.wait_for(
                self._client.get(discovery_url, headers=self._headers, timeout=self._timeout),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            log.warning("oEmbed fetch %s exceeded %.1fs", discovery_url, self._timeout)
            return None
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            log.warning("oEmbed fetch %s failed: %s", discovery_url, e)
            return None
        if not res.is_success:
            log.warning("oEmbed fetch %s returned HTTP %s", discovery_url, res.status_code)
            return None

        try:
            return OEmbedDocument.from_json(res.content)
        except ValidationError as e:
            log.warning("oEmbed document at %s is invalid: %s", discovery_url, e.error_count())
            return None
        except ValueError as e:
            log.warning("oEmbed document at %s is unusable: %s", discovery_url, e)
            return None
