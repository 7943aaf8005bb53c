"""Viewer-side rendering of mirrored updates onto an isolated surface."""

import asyncio
import copy
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog
from bs4 import BeautifulSoup, Tag

from .morph import morph

logger = structlog.get_logger()

# Seconds a click ripple stays on the overlay
CLICK_RIPPLE_TTL = 0.6


class SurfaceState(str, Enum):
    LOADING = "loading"
    READY = "ready"


@dataclass
class ClickRipple:
    x: float
    y: float
    expires_at: float


class RenderSurface:
    """An isolated document plus the overlay state drawn over it.

    ``load`` replaces the document wholesale and reports completion through
    ``on_load`` on a later loop iteration, like a frame finishing a load.
    """

    def __init__(self) -> None:
        self.document = BeautifulSoup("", "html.parser")
        self.on_load: Callable[[], None] | None = None
        self.active_element: Tag | None = None
        self.scroll_x = 0.0
        self.scroll_y = 0.0
        self.cursor: tuple[float, float] | None = None
        self.leader_viewport: tuple[int, int] | None = None
        self.clicks: list[ClickRipple] = []
        self.accessible = True

    def load(self, html: str) -> None:
        self.document = BeautifulSoup(html, "html.parser")
        self.active_element = None
        self.scroll_x = self.scroll_y = 0.0
        if self.on_load is not None:
            asyncio.get_running_loop().call_soon(self.on_load)

    def focus(self, element: Tag | None) -> None:
        """Mark an element of the current document as focused by the local user."""
        self.active_element = element

    def scroll_to(self, x: float, y: float) -> None:
        if not self.accessible:
            raise RuntimeError("surface document is not accessible")
        self.scroll_x = x
        self.scroll_y = y

    def html(self) -> str:
        return str(self.document)


class Renderer:
    """Applies full and incremental updates to one render surface.

    Incremental updates are held back until the surface finishes its
    current load; only the most recent one is kept.
    """

    def __init__(self, surface: RenderSurface | None = None) -> None:
        self.surface = surface or RenderSurface()
        self.surface.on_load = self.surface_loaded
        self.state = SurfaceState.LOADING
        self.pending_update: str | None = None

        self._handlers: dict[str, Callable[[dict[str, Any]], None]] = {
            "dom_update": self._on_dom_update,
            "scroll_to": self._on_scroll_to,
            "cursor_move": self._on_cursor_move,
            "click": self._on_click,
        }

    @property
    def ready(self) -> bool:
        return self.state == SurfaceState.READY

    def handle_event(self, event: str, payload: Any) -> None:
        handler = self._handlers.get(event)
        if handler is None:
            logger.debug("Ignoring viewer event", viewer_event=event)
            return
        handler(payload if isinstance(payload, dict) else {})

    def handle_dom_update(self, html: str, is_full_page: bool) -> None:
        """Apply a ``dom_update``: replace on full pages, patch or queue otherwise."""
        if is_full_page:
            logger.debug("Full page update, replacing surface content", size=len(html))
            self.state = SurfaceState.LOADING
            self.pending_update = None
            try:
                self.surface.load(html)
            except Exception as e:
                logger.error("Failed to load full page update", error=str(e))
            return

        if not self.ready:
            logger.debug("Surface not ready, queuing update")
            self.pending_update = html
            return

        self.apply_patch(html)

    def surface_loaded(self) -> None:
        """Load signal from the surface: become ready and flush the pending update once."""
        logger.debug("Surface loaded, ready for incremental updates")
        self.state = SurfaceState.READY
        pending, self.pending_update = self.pending_update, None
        if pending is not None:
            logger.debug("Applying pending update")
            self.apply_patch(pending)

    def apply_patch(self, html: str) -> bool:
        """Patch the surface toward ``html``, keeping the old content on failure.

        Returns:
            True if the patch was applied
        """
        current = self.surface.document
        if current.head is None and current.body is None:
            logger.warning("Surface document not accessible, cannot apply patch")
            return False

        try:
            incoming = BeautifulSoup(html, "html.parser")
            focus_path = _path_of(self.surface.active_element, current)
            working = copy.copy(current)
            focused = _resolve_path(working, focus_path)

            def should_update(from_el: Tag, _to_el: Tag) -> bool:
                # Scripts never re-run, the local user's focus is left alone
                return from_el.name != "script" and from_el is not focused

            if working.head is not None and incoming.head is not None:
                morph(working.head, incoming.head, should_update)
            if working.body is not None and incoming.body is not None:
                morph(working.body, incoming.body, should_update)
        except Exception as e:
            logger.error("Patch update failed", error=str(e))
            return False

        self.surface.document = working
        self.surface.active_element = focused if focused is not None and focused.parent is not None else None
        logger.debug("Patch update applied")
        return True

    def _on_dom_update(self, payload: dict[str, Any]) -> None:
        html = payload.get("html")
        if not isinstance(html, str):
            logger.warning("Dropping dom_update without html")
            return
        self.handle_dom_update(html, bool(payload.get("is_full_page", True)))

    def _on_scroll_to(self, payload: dict[str, Any]) -> None:
        try:
            self.surface.scroll_to(float(payload.get("x", 0)), float(payload.get("y", 0)))
        except Exception as e:
            logger.debug("Could not scroll surface", error=str(e))

    def _on_cursor_move(self, payload: dict[str, Any]) -> None:
        self.surface.cursor = (float(payload.get("x", 0)), float(payload.get("y", 0)))
        width, height = payload.get("viewportWidth"), payload.get("viewportHeight")
        if isinstance(width, int) and isinstance(height, int):
            self.surface.leader_viewport = (width, height)

    def _on_click(self, payload: dict[str, Any]) -> None:
        now = asyncio.get_running_loop().time()
        self.surface.clicks = [c for c in self.surface.clicks if c.expires_at > now]
        self.surface.clicks.append(
            ClickRipple(
                x=float(payload.get("x", 0)),
                y=float(payload.get("y", 0)),
                expires_at=now + CLICK_RIPPLE_TTL,
            )
        )


def _path_of(element: Tag | None, root: BeautifulSoup) -> list[int] | None:
    """Child-index path from the document root to an element."""
    if element is None:
        return None
    path: list[int] = []
    node: Tag = element
    while node.parent is not None:
        # Tags compare structurally, so match siblings by identity
        path.append(next(i for i, child in enumerate(node.parent.contents) if child is node))
        node = node.parent
    if node is not root:
        return None
    return list(reversed(path))


def _resolve_path(root: BeautifulSoup, path: list[int] | None) -> Tag | None:
    if path is None:
        return None
    node: Tag = root
    for index in path:
        if index >= len(node.contents) or not isinstance(node.contents[index], Tag):
            return None
        node = node.contents[index]
    return node
