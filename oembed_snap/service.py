from __future__ import annotations

import logging
from typing import Protocol

from .cache import RenderCache, cache_key
from .discovery import OEmbedDiscoverer, OEmbedFetcher
from .errors import DiscoveryFailed, OEmbedFetchFailed, RenderError, UnsupportedEmbedType
from .models import (
    MISSING_URL,
    NO_OEMBED,
    RENDER_FAILED,
    UNSUPPORTED_TYPE,
    EmbedType,
    ImageOutcome,
    NotAvailableOutcome,
    OEmbedDocument,
    RedirectOutcome,
    SnapshotOutcome,
)

log = logging.getLogger(__name__)


class Renderer(Protocol):
    async def render(self, doc: OEmbedDocument) -> bytes:
        ...


class SnapshotService:
    def __init__(
        self,
        discoverer: OEmbedDiscoverer,
        fetcher: OEmbedFetcher,
        renderer: Renderer,
        cache: RenderCache,
    ):
        self.discoverer = discoverer
        self.fetcher = fetcher
        self.renderer = renderer
        self.cache = cache

    async def resolve(self, source_url: str) -> OEmbedDocument:
        discovery_url = await self.discoverer.discover(source_url)
        if not discovery_url:
            raise DiscoveryFailed(f"no oEmbed discovery link for {source_url}")
        doc = await self.fetcher.fetch(discovery_url)
        if doc is None:
            raise OEmbedFetchFailed(f"could not fetch oEmbed document {discovery_url}")
        return doc

    async def get_oembed_raw(self, source_url: str) -> bytes | None:
        try:
            doc = await self.resolve(source_url)
        except (DiscoveryFailed, OEmbedFetchFailed) as e:
            log.info("%s", e)
            return None
        return doc.raw_json()

    async def get_snapshot(self, source_url: str) -> SnapshotOutcome:
        try:
            doc = await self.resolve(source_url)
        except (DiscoveryFailed, OEmbedFetchFailed) as e:
            log.info("%s", e)
            return NotAvailableOutcome(reason=NO_OEMBED)

        try:
            return await self._dispatch(source_url, doc)
        except UnsupportedEmbedType as e:
            log.info("%s for %s", e, source_url)
            return NotAvailableOutcome(reason=UNSUPPORTED_TYPE, detail=e.embed_type)

    async def _dispatch(self, source_url: str, doc: OEmbedDocument) -> SnapshotOutcome:
        embed_type = doc.embed_type
        if embed_type is EmbedType.RICH:
            return await self._snapshot_rich(source_url, doc)
        if embed_type is EmbedType.PHOTO:
            if doc.url:
                return RedirectOutcome(url=doc.url)
            return NotAvailableOutcome(reason=MISSING_URL)
        # video, link and anything unrecognised
        raise UnsupportedEmbedType(doc.type)

    async def _snapshot_rich(self, source_url: str, doc: OEmbedDocument) -> SnapshotOutcome:
        key = cache_key(source_url)

        async def render() -> bytes:
            return await self.renderer.render(doc)

        try:
            image = await self.cache.get_or_render(key, doc.cache_age, render)
        except RenderError as e:
            log.warning("Snapshot of %s failed: %s", source_url, e)
            return NotAvailableOutcome(reason=RENDER_FAILED, detail=e.cause.value)
        log.info("Snapshot of %s served (%s)", source_url, "hit" if image.cache_hit else "miss")
        return ImageOutcome(image=image)
