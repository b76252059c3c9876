from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Callable

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from .config import Settings
from .errors import RenderError, RenderFailure
from .models import EmbedType, OEmbedDocument

log = logging.getLogger(__name__)

_CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
]


class NetworkIdleWatcher:
    # attach before set_content so early requests are counted

    def __init__(self, page: Any):
        self._page = page
        self._inflight = 0
        self._changed = asyncio.Event()
        page.on("request", self._on_request)
        page.on("requestfinished", self._on_done)
        page.on("requestfailed", self._on_done)

    @property
    def inflight(self) -> int:
        return self._inflight

    def _on_request(self, _request: Any) -> None:
        self._inflight += 1
        self._changed.set()

    def _on_done(self, _request: Any) -> None:
        self._inflight = max(0, self._inflight - 1)
        self._changed.set()

    async def wait(self, idle_ms: int) -> None:
        # Any network activity restarts the quiet window. Unbounded on its own:
        # callers wrap it in a timeout.
        idle_s = idle_ms / 1000
        while True:
            self._changed.clear()
            if self._inflight == 0:
                try:
                    await asyncio.wait_for(self._changed.wait(), timeout=idle_s)
                except asyncio.TimeoutError:
                    return
            else:
                await self._changed.wait()

    def detach(self) -> None:
        self._page.remove_listener("request", self._on_request)
        self._page.remove_listener("requestfinished", self._on_done)
        self._page.remove_listener("requestfailed", self._on_done)


class RenderOrchestrator:
    def __init__(self, settings: Settings, *, playwright_factory: Callable[[], Any] = async_playwright):
        self._settings = settings
        self._playwright_factory = playwright_factory
        self._semaphore = asyncio.Semaphore(settings.browser_concurrency)

    @asynccontextmanager
    async def _browser_slot(self):
        try:
            await asyncio.wait_for(
                self._semaphore.acquire(), timeout=self._settings.browser_acquire_timeout_s
            )
        except asyncio.TimeoutError:
            raise RenderError(
                RenderFailure.LAUNCH_FAILED, "too many concurrent browser jobs"
            ) from None
        try:
            yield
        finally:
            self._semaphore.release()

    async def render(self, doc: OEmbedDocument) -> bytes:
        """Render the embed markup of a ``rich`` oEmbed document to PNG bytes."""
        if doc.embed_type is not EmbedType.RICH:
            raise RenderError(RenderFailure.CONTENT_LOAD_FAILED, f"cannot render type {doc.type!r}")
        if not doc.html:
            raise RenderError(RenderFailure.CONTENT_LOAD_FAILED, "rich oEmbed has no html")

        timeout_ms = self._settings.render_timeout_ms
        async with self._browser_slot():
            log.info("Rendering embed (%d chars of html)", len(doc.html))
            try:
                data = await asyncio.wait_for(self._render_html(doc.html), timeout=timeout_ms / 1000)
            except asyncio.TimeoutError:
                log.warning("Render exceeded %d ms", timeout_ms)
                raise RenderError(RenderFailure.TIMEOUT, f"render exceeded {timeout_ms} ms") from None
            except RenderError as e:
                log.warning("Render failed: %s", e)
                raise
        log.info("Rendered embed (%d bytes of png)", len(data))
        return data

    async def _render_html(self, html: str) -> bytes:
        try:
            async with self._playwright_factory() as p:
                try:
                    browser = await p.chromium.launch(headless=True, args=_CHROMIUM_ARGS)
                except PlaywrightError as e:
                    raise RenderError(RenderFailure.LAUNCH_FAILED, str(e)) from e
                try:
                    try:
                        context = await browser.new_context(
                            viewport={
                                "width": self._settings.viewport_width,
                                "height": self._settings.viewport_height,
                            },
                            user_agent=self._settings.user_agent,
                            java_script_enabled=True,
                            # embed markup pulls scripts and iframes from the provider
                            bypass_csp=True,
                        )
                        page = await context.new_page()
                    except PlaywrightError as e:
                        raise RenderError(RenderFailure.LAUNCH_FAILED, str(e)) from e
                    try:
                        return await self._load_and_capture(page, html)
                    finally:
                        await context.close()
                finally:
                    await browser.close()
        except PlaywrightError as e:
            # driver start/stop failures surface from the context manager itself
            raise RenderError(RenderFailure.LAUNCH_FAILED, str(e)) from e

    async def _load_and_capture(self, page: Any, html: str) -> bytes:
        s = self._settings
        watcher = NetworkIdleWatcher(page)
        try:
            try:
                await page.set_content(html, wait_until="load", timeout=s.render_timeout_ms)
            except PlaywrightTimeoutError as e:
                raise RenderError(RenderFailure.TIMEOUT, str(e)) from e
            except PlaywrightError as e:
                raise RenderError(RenderFailure.CONTENT_LOAD_FAILED, str(e)) from e

            await watcher.wait(s.network_idle_ms)
            try:
                await page.wait_for_timeout(s.settle_ms)
            except PlaywrightError as e:
                raise RenderError(RenderFailure.CONTENT_LOAD_FAILED, str(e)) from e
        finally:
            watcher.detach()

        try:
            data = await self._capture(page)
        except PlaywrightTimeoutError as e:
            raise RenderError(RenderFailure.TIMEOUT, str(e)) from e
        except PlaywrightError as e:
            raise RenderError(RenderFailure.CAPTURE_FAILED, str(e)) from e
        if not data:
            raise RenderError(RenderFailure.CAPTURE_FAILED, "empty screenshot")
        return data

    async def _capture(self, page: Any) -> bytes:
        timeout = self._settings.render_timeout_ms
        target = await page.query_selector(self._settings.content_selector)
        if target is not None:
            box = await target.bounding_box()
            if box and box["width"] > 0 and box["height"] > 0:
                return await target.screenshot(type="png", timeout=timeout)
            log.debug("Content element has no visible box, capturing full page")
        # No usable element: grab everything, including overflow past the viewport.
        return await page.screenshot(type="png", full_page=True, timeout=timeout)
