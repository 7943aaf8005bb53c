"""Viewer client: joins a room and feeds mirrored updates to a renderer."""

import asyncio
import contextlib
from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog

from .config import CoViewConfig
from .render import Renderer
from .transport import Channel, Rejoiner, Socket

logger = structlog.get_logger()

VIEWER_EVENTS = ("dom_update", "scroll_to", "cursor_move", "click")


class ViewerError(RuntimeError):
    """Raised when a viewer cannot join its room."""


class ViewerClient:
    """Mirror of a room rendered locally."""

    def __init__(
        self,
        config: CoViewConfig | None = None,
        renderer: Renderer | None = None,
        *,
        socket_factory: Callable[[str], Socket] | None = None,
    ) -> None:
        self.config = config or CoViewConfig()
        self.renderer = renderer or Renderer()
        self.socket: Socket | None = None
        self.channel: Channel | None = None
        self.rejoiner: Rejoiner | None = None
        self._socket_factory = socket_factory or self._build_socket

    async def join(self, room_code: str, server_url: str | None = None) -> None:
        """Connect and join a room as a viewer.

        Raises:
            ViewerError: If the join is rejected or times out
        """
        endpoint = self.config.socket_endpoint(server_url)
        socket = self._socket_factory(endpoint)
        channel = socket.channel(f"room:{room_code}", {"role": "viewer"})
        for event in VIEWER_EVENTS:
            channel.on(event, self._bind(event))
        # Leader pushes relayed verbatim carry the same content
        channel.on("dom_full", self._bind("dom_update"))
        socket.on_open(self._on_socket_open)

        self.socket = socket
        self.channel = channel
        rejoiner = Rejoiner(channel, self.config.reconnect_after)
        self.rejoiner = rejoiner
        join = channel.join()
        socket.connect()

        reply = await join.wait()
        if reply.status != "ok":
            logger.error("Failed to join room as viewer", room_code=room_code, status=reply.status)
            await self.leave()
            raise ViewerError(f"Failed to join room {room_code}: {reply.status}")
        rejoiner.enabled = True
        logger.info("Viewing room", room_code=room_code)

    async def leave(self) -> None:
        if self.rejoiner is not None:
            self.rejoiner.cancel()
            self.rejoiner = None
        channel, socket = self.channel, self.socket
        self.channel = None
        self.socket = None
        if channel is not None:
            leave = channel.leave()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(leave.wait(), 1.0)
        if socket is not None:
            await socket.disconnect()

    def write_snapshot(self, path: Path) -> None:
        """Write the currently rendered document to a file."""
        path.write_text(self.renderer.surface.html(), encoding="utf-8")

    def _bind(self, event: str) -> Callable[[Any], None]:
        def deliver(payload: Any) -> None:
            self.renderer.handle_event(event, payload)

        return deliver

    def _on_socket_open(self) -> None:
        if self.rejoiner is not None:
            self.rejoiner.rejoin_now()

    def _build_socket(self, endpoint: str) -> Socket:
        return Socket(
            endpoint,
            timeout=self.config.push_timeout,
            heartbeat_interval=self.config.heartbeat_interval,
            reconnect_after=self.config.reconnect_after,
        )
