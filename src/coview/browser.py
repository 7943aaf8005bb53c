"""Playwright-driven leader browser hosting capture pipelines."""

import importlib.util
from collections.abc import Callable
from typing import Any

import structlog

from .capture import (
    CapturePipeline,
    Click,
    LocationChange,
    MutationBatch,
    MutationRecord,
    PointerMove,
    ScrollChange,
)
from .capture.events import PageEvent, PageListener
from .config import BrowserSettings, CaptureTimings
from .surfaces import InjectionError, Surface, SurfaceListener, SurfaceUnreachableError

# Check if playwright is available
_PLAYWRIGHT_AVAILABLE = importlib.util.find_spec("playwright") is not None

if _PLAYWRIGHT_AVAILABLE:
    from playwright.async_api import async_playwright

logger = structlog.get_logger()

BINDING_NAME = "__coviewEmit"

# Observer bridge evaluated in the leader page; reports raw events to Python
BRIDGE_SCRIPT = """
(() => {
  if (window.__coviewBridge) return;
  window.__coviewBridge = true;
  const emit = (event) => { window.__coviewEmit(event).catch(() => {}); };
  const attributeFilter = ['class', 'style', 'hidden', 'aria-hidden', 'aria-expanded',
                           'open', 'data-state', 'data-open', 'data-visible'];
  new MutationObserver((mutations) => {
    emit({
      kind: 'mutations',
      records: mutations.map((m) => ({
        type: m.type,
        attribute: m.attributeName,
        added: m.addedNodes.length,
        removed: m.removedNodes.length,
      })),
    });
  }).observe(document.body || document.documentElement, {
    childList: true, subtree: true, attributes: true, attributeFilter, characterData: true,
  });
  document.addEventListener('mousemove', (e) => emit({kind: 'pointer', x: e.clientX, y: e.clientY}),
                            {passive: true});
  window.addEventListener('scroll', () => emit({kind: 'scroll', x: window.scrollX, y: window.scrollY}),
                          {passive: true});
  document.addEventListener('click', (e) => emit({kind: 'click', x: e.clientX, y: e.clientY}),
                            {passive: true});
  const notify = () => emit({kind: 'location', url: window.location.href});
  for (const name of ['pushState', 'replaceState']) {
    const original = history[name];
    history[name] = function (...args) {
      const result = original.apply(this, args);
      notify();
      return result;
    };
  }
  window.addEventListener('popstate', notify);
})()
"""


# Installed in every tab; reports when the user brings a tab to the foreground
FOCUS_SCRIPT = """
(() => {
  const report = () => {
    if (document.visibilityState === 'visible') window.__coviewEmit({kind: 'focus'}).catch(() => {});
  };
  document.addEventListener('visibilitychange', report);
  window.addEventListener('focus', report);
})()
"""

def parse_bridge_event(raw: Any) -> PageEvent | None:
    """Convert a bridge payload into a page event."""
    if not isinstance(raw, dict):
        return None
    kind = raw.get("kind")
    if kind == "mutations":
        return MutationBatch(
            records=[
                MutationRecord(
                    kind=r.get("type"),
                    attribute=r.get("attribute"),
                    added=int(r.get("added") or 0),
                    removed=int(r.get("removed") or 0),
                )
                for r in raw.get("records", [])
                if isinstance(r, dict)
            ]
        )
    if kind == "pointer":
        return PointerMove(x=raw.get("x", 0), y=raw.get("y", 0))
    if kind == "scroll":
        return ScrollChange(x=raw.get("x", 0), y=raw.get("y", 0))
    if kind == "click":
        return Click(x=raw.get("x", 0), y=raw.get("y", 0))
    if kind == "location":
        return LocationChange(url=str(raw.get("url", "")))
    return None


class BrowserPage:
    """A Playwright page seen as a live document."""

    def __init__(self, surface_id: int, page: Any) -> None:
        self.id = surface_id
        self.page = page
        self._listeners: list[PageListener] = []

    @property
    def url(self) -> str:
        return str(self.page.url)

    @property
    def viewport(self) -> tuple[int, int]:
        size = self.page.viewport_size or {}
        return int(size.get("width", 0)), int(size.get("height", 0))

    async def content(self) -> str:
        return str(await self.page.content())

    async def scroll_to(self, x: float, y: float) -> None:
        await self.page.evaluate("([x, y]) => window.scrollTo(x, y)", [x, y])

    def subscribe(self, listener: PageListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def dispatch(self, event: PageEvent) -> None:
        for listener in list(self._listeners):
            listener(event)


class BrowserHost:
    """Leader browser whose tabs are capture surfaces.

    Features:
    - Tab management with a single active tab, following the user's focus
    - Capture pipeline injection per tab
    - Tab close and full-load notifications for the relay
    """

    def __init__(
        self,
        settings: BrowserSettings | None = None,
        timings: CaptureTimings | None = None,
    ) -> None:
        self.settings = settings or BrowserSettings()
        self.timings = timings or CaptureTimings()
        self._playwright: Any = None
        self._browser: Any = None
        self._context: Any = None
        self._pages: dict[int, BrowserPage] = {}
        self._pipelines: dict[int, CapturePipeline] = {}
        self._listeners: list[SurfaceListener] = []
        self._active_id: int | None = None
        self._next_id = 1

    async def start(self) -> bool:
        """Launch the browser.

        Returns:
            True if started successfully
        """
        if not _PLAYWRIGHT_AVAILABLE:
            logger.warning("Playwright not installed. Leader browser unavailable.")
            return False

        try:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(headless=self.settings.headless)
            self._context = await self._browser.new_context(
                viewport={
                    "width": self.settings.viewport_width,
                    "height": self.settings.viewport_height,
                }
            )
            await self._context.expose_binding(BINDING_NAME, self._on_binding)
            await self._context.add_init_script(FOCUS_SCRIPT)
            self._context.on("page", self._on_new_page)
            logger.info("Leader browser started", headless=self.settings.headless)
            return True
        except Exception as e:
            logger.error("Failed to start browser", error=str(e))
            return False

    async def stop(self) -> None:
        for pipeline in self._pipelines.values():
            pipeline.stop()
        self._pipelines.clear()
        try:
            if self._context:
                await self._context.close()
            if self._browser:
                await self._browser.close()
            if self._playwright:
                await self._playwright.stop()
            logger.info("Leader browser stopped")
        except Exception as e:
            logger.error("Error stopping browser", error=str(e))

    async def open(self, url: str) -> Surface:
        """Open a tab, navigate it and make it the active one."""
        page = await self._context.new_page()
        surface_id = self._track(page)
        await page.goto(url, wait_until="load")
        logger.info("Opened tab", surface_id=surface_id, url=url)
        self._set_active(surface_id)
        return Surface(id=surface_id, url=str(page.url))

    async def activate(self, surface_id: int) -> None:
        browser_page = self._pages.get(surface_id)
        if browser_page is None:
            raise SurfaceUnreachableError(surface_id, "no such tab")
        await browser_page.page.bring_to_front()
        self._set_active(surface_id)

    # SurfaceHost

    async def active_surface(self) -> Surface | None:
        browser_page = self._pages.get(self._active_id) if self._active_id is not None else None
        if browser_page is None:
            return None
        return Surface(id=browser_page.id, url=browser_page.url)

    async def inject(self, surface_id: int) -> None:
        browser_page = self._pages.get(surface_id)
        if browser_page is None:
            raise InjectionError(f"No tab {surface_id}")
        try:
            await browser_page.page.evaluate(BRIDGE_SCRIPT)
        except Exception as e:
            raise InjectionError(f"Cannot inject into tab {surface_id}: {e}") from e

        previous = self._pipelines.pop(surface_id, None)
        if previous is not None:
            previous.stop()
        self._pipelines[surface_id] = CapturePipeline(
            browser_page,
            emit=lambda message: self._emit(surface_id, message),
            timings=self.timings,
        )
        logger.debug("Capture pipeline injected", surface_id=surface_id)

    async def send(self, surface_id: int, message: dict[str, Any]) -> dict[str, Any]:
        pipeline = self._pipelines.get(surface_id)
        if pipeline is None:
            raise SurfaceUnreachableError(surface_id)
        return await pipeline.handle_message(message)

    def add_listener(self, listener: SurfaceListener) -> None:
        self._listeners.append(listener)

    # Internals

    def _track(self, page: Any) -> int:
        """Register a tab, returning its surface id."""
        for browser_page in self._pages.values():
            if browser_page.page is page:
                return browser_page.id
        surface_id = self._next_id
        self._next_id += 1
        self._pages[surface_id] = BrowserPage(surface_id, page)
        page.on("close", lambda _page: self._on_page_closed(surface_id))
        page.on("load", lambda _page: self._on_page_loaded(surface_id))
        return surface_id

    def _set_active(self, surface_id: int) -> None:
        if surface_id == self._active_id or surface_id not in self._pages:
            return
        self._active_id = surface_id
        logger.info("Active tab changed", surface_id=surface_id)
        for listener in list(self._listeners):
            listener.on_surface_activated(surface_id)

    def _on_new_page(self, page: Any) -> None:
        surface_id = self._track(page)
        logger.debug("Tracking new tab", surface_id=surface_id)

    def _emit(self, surface_id: int, message: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            listener.on_capture_message(surface_id, message)

    def _on_binding(self, source: dict[str, Any], payload: Any) -> None:
        page = source.get("page")
        frame = source.get("frame")
        if page is None or frame is not page.main_frame:
            return
        browser_page = next((p for p in self._pages.values() if p.page is page), None)
        if browser_page is None:
            return
        if isinstance(payload, dict) and payload.get("kind") == "focus":
            self._set_active(browser_page.id)
            return
        event = parse_bridge_event(payload)
        if event is not None:
            browser_page.dispatch(event)

    def _drop_pipeline(self, surface_id: int) -> None:
        pipeline = self._pipelines.pop(surface_id, None)
        if pipeline is not None:
            pipeline.stop()

    def _on_page_loaded(self, surface_id: int) -> None:
        # A new document replaced the one the pipeline was attached to
        self._drop_pipeline(surface_id)
        for listener in list(self._listeners):
            listener.on_surface_loaded(surface_id)

    def _on_page_closed(self, surface_id: int) -> None:
        self._drop_pipeline(surface_id)
        self._pages.pop(surface_id, None)
        if self._active_id == surface_id:
            self._active_id = None
        logger.info("Tab closed", surface_id=surface_id)
        for listener in list(self._listeners):
            listener.on_surface_closed(surface_id)
