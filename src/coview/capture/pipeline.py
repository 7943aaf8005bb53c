"""Capture pipeline: turns a live page into a stream of sanitized updates.

The pipeline snapshots its page on start, then watches for mutations,
pointer activity and client-side navigation. Mutations are classified per
flush window into visibility or structural changes, each with its own quiet
period; structural changes dominate. Messages go to an ``emit`` callable in
the same shape the relay consumes:

- ``DOM_UPDATE`` {html, viewportWidth, viewportHeight, isFullPage, mutation}
- ``CURSOR_MOVE`` / ``SCROLL`` / ``CLICK`` {position}
- ``NAVIGATION`` {url}
"""

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from enum import Enum
from typing import Any

import structlog

from coview.config import CaptureTimings

from .events import (
    Click,
    LivePage,
    LocationChange,
    MutationBatch,
    PageEvent,
    PointerMove,
    ScrollChange,
)
from .sanitize import sanitize_document
from .scheduling import Debouncer, Throttle

logger = structlog.get_logger()

# Attributes tied to show/hide affordances (popovers, modals, dropdowns)
VISIBILITY_ATTRIBUTES = frozenset(
    {
        "class",
        "style",
        "hidden",
        "aria-hidden",
        "aria-expanded",
        "open",
        "data-state",
        "data-open",
        "data-visible",
    }
)


class MutationTier(str, Enum):
    """Classification of a flush window; later members dominate earlier ones."""

    NONE = "none"
    VISIBILITY = "visibility"
    STRUCTURAL = "structural"


def classify(batch: MutationBatch) -> MutationTier:
    """Classify a batch of mutation records."""
    tier = MutationTier.NONE
    for record in batch.records:
        if record.kind == "characterData":
            return MutationTier.STRUCTURAL
        if record.kind == "childList" and (record.added or record.removed):
            return MutationTier.STRUCTURAL
        if record.kind == "attributes" and record.attribute in VISIBILITY_ATTRIBUTES:
            tier = MutationTier.VISIBILITY
    return tier


Emitter = Callable[[dict[str, Any]], None]


class CapturePipeline:
    """Capture session for one leader page."""

    def __init__(self, page: LivePage, emit: Emitter, timings: CaptureTimings | None = None) -> None:
        """Initialize the pipeline.

        Args:
            page: The live document to mirror
            emit: Receives every outgoing capture message
            timings: Rate limits and quiet periods
        """
        self.page = page
        self.timings = timings or CaptureTimings()
        self.capturing = False
        self.last_snapshot: str | None = None

        self._emit = emit
        self._listeners: list[Callable[[], None]] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._lock = asyncio.Lock()

        self._visibility = Debouncer(
            self.timings.visibility_quiet, lambda: self._flush(MutationTier.VISIBILITY)
        )
        self._structural = Debouncer(
            self.timings.structural_quiet, lambda: self._flush(MutationTier.STRUCTURAL)
        )
        self._navigation = Debouncer(self.timings.navigation_settle, self._flush_navigation)
        self._pointer = Throttle(self.timings.pointer_interval, self._send_cursor)
        self._scroll = Throttle(self.timings.scroll_interval, self._send_scroll)

        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]] = {
            "START_CAPTURE": self._start_capture,
            "STOP_CAPTURE": self._stop_capture,
            "GET_DOM": self._get_dom,
            "SCROLL_TO": self._scroll_to,
        }

    async def handle_message(self, message: dict[str, Any]) -> dict[str, Any]:
        """Dispatch an instruction from the relay.

        Raises:
            ValueError: If the instruction type is unknown
        """
        message_type = message.get("type")
        handler = self._handlers.get(message_type) if isinstance(message_type, str) else None
        if handler is None:
            raise ValueError(f"Unknown capture instruction: {message_type}")
        logger.debug("Capture instruction", instruction=message_type)
        return await handler(message)

    async def start(self) -> None:
        """Emit a full snapshot and begin observing. No-op while capturing."""
        if self.capturing:
            return
        logger.info("Starting capture", url=self.page.url)
        self.capturing = True

        await self.send_dom_update(full_page=True, kind="initial")
        if not self.capturing:
            return
        self._listeners = [self.page.subscribe(self._on_page_event)]

    def stop(self) -> None:
        """Detach from the page and drop pending work. No-op while stopped."""
        if not self.capturing:
            return
        logger.info("Stopping capture", url=self.page.url)
        self.capturing = False

        for unsubscribe in self._listeners:
            unsubscribe()
        self._listeners = []

        self._visibility.cancel()
        self._structural.cancel()
        self._navigation.cancel()
        self._pointer.reset()
        self._scroll.reset()
        for task in list(self._tasks):
            task.cancel()

    async def snapshot(self) -> str:
        html = await self.page.content()
        return sanitize_document(html, self.page.url)

    async def send_dom_update(self, full_page: bool = True, kind: str = "initial") -> None:
        """Snapshot the page and emit it unless identical to the last emission."""
        if not self.capturing:
            return
        async with self._lock:
            try:
                html = await self.snapshot()
            except Exception as e:
                logger.warning("Snapshot failed, skipping update", error=str(e))
                return

            if not self.capturing:
                return
            if not full_page and self._navigation.pending:
                # A full post-navigation snapshot is on its way
                return
            if html == self.last_snapshot:
                logger.debug("Snapshot unchanged, not sending", kind=kind)
                return

            self.last_snapshot = html
            width, height = self.page.viewport
            logger.debug("Sending DOM update", size=len(html), full_page=full_page, kind=kind)
            self._send(
                {
                    "type": "DOM_UPDATE",
                    "html": html,
                    "viewportWidth": width,
                    "viewportHeight": height,
                    "isFullPage": full_page,
                    "mutation": kind,
                }
            )

    def _on_page_event(self, event: PageEvent) -> None:
        if not self.capturing:
            return
        if isinstance(event, MutationBatch):
            self._observe_mutations(event)
        elif isinstance(event, PointerMove):
            self._pointer(event)
        elif isinstance(event, ScrollChange):
            self._scroll(event)
        elif isinstance(event, Click):
            self._send({"type": "CLICK", "position": {"x": event.x, "y": event.y}})
        elif isinstance(event, LocationChange):
            self._on_navigation(event.url)

    def _observe_mutations(self, batch: MutationBatch) -> None:
        tier = classify(batch)
        if tier == MutationTier.STRUCTURAL:
            self._visibility.cancel()
            self._structural.schedule()
        elif tier == MutationTier.VISIBILITY and not self._structural.pending:
            self._visibility.schedule()

    def _on_navigation(self, url: str) -> None:
        logger.info("Page navigated", url=url)
        self.last_snapshot = None
        self._send({"type": "NAVIGATION", "url": url})
        self._visibility.cancel()
        self._structural.cancel()
        self._navigation.schedule()

    def _flush(self, tier: MutationTier) -> None:
        self._spawn(self.send_dom_update(full_page=False, kind=tier.value))

    def _flush_navigation(self) -> None:
        self._spawn(self.send_dom_update(full_page=True, kind="navigation"))

    def _send_cursor(self, event: PointerMove) -> None:
        width, height = self.page.viewport
        self._send(
            {
                "type": "CURSOR_MOVE",
                "position": {"x": event.x, "y": event.y, "viewportWidth": width, "viewportHeight": height},
            }
        )

    def _send_scroll(self, event: ScrollChange) -> None:
        self._send({"type": "SCROLL", "position": {"x": event.x, "y": event.y}})

    def _send(self, message: dict[str, Any]) -> None:
        try:
            self._emit(message)
        except Exception as e:
            logger.warning("Failed to emit capture message", type=message.get("type"), error=str(e))

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _start_capture(self, _message: dict[str, Any]) -> dict[str, Any]:
        await self.start()
        return {"success": True}

    async def _stop_capture(self, _message: dict[str, Any]) -> dict[str, Any]:
        self.stop()
        return {"success": True}

    async def _get_dom(self, _message: dict[str, Any]) -> dict[str, Any]:
        return {"html": await self.snapshot()}

    async def _scroll_to(self, message: dict[str, Any]) -> dict[str, Any]:
        await self.page.scroll_to(float(message.get("x", 0)), float(message.get("y", 0)))
        return {"success": True}
