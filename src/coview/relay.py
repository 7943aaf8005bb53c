"""Relay between the leader's capture pipeline and the session channel.

The relay owns one socket and one active capture target. It forwards
capture messages to the room channel and control events from the channel
back to the target surface, and tears everything down on stop or when the
target goes away.
"""

import asyncio
import contextlib
import secrets
from collections.abc import Callable, Coroutine
from enum import Enum
from typing import Any

import structlog

from .config import CoViewConfig
from .state_store import SessionStateStore
from .surfaces import InjectionError, SurfaceHost, SurfaceUnreachableError, is_capturable
from .transport import Channel, Push, Rejoiner, Socket

logger = structlog.get_logger()

# Seconds to wait for a surface to answer an instruction
MESSAGE_TIMEOUT = 5.0

# Seconds to wait for the server to acknowledge a leave
LEAVE_GRACE = 1.0

UNSHAREABLE_PAGE = "Cannot share this page. Try a regular website."

StatusCallback = Callable[[str, dict[str, Any]], None]


class RelayState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"


class RelayError(RuntimeError):
    """Raised when a sharing session cannot be started or changed."""


def generate_user_id() -> str:
    return secrets.token_hex(8)


class Relay:
    """Mediates between a surface host and the session channel."""

    def __init__(
        self,
        host: SurfaceHost,
        config: CoViewConfig | None = None,
        *,
        store: SessionStateStore | None = None,
        socket_factory: Callable[[str], Socket] | None = None,
    ) -> None:
        """Initialize the relay.

        Args:
            host: Host owning the leader surfaces
            config: Relay configuration
            store: Persisted session state
            socket_factory: Builds the socket for an endpoint
        """
        self.host = host
        self.config = config or CoViewConfig()
        self.store = store or SessionStateStore(self.config.state_file)
        self.state = RelayState.IDLE
        self.socket: Socket | None = None
        self.channel: Channel | None = None
        self.rejoiner: Rejoiner | None = None
        self.room_code: str | None = None
        self.server_url: str | None = None
        self.target_id: int | None = None
        self.viewer_count = 0

        self._socket_factory = socket_factory or self._build_socket
        self._status_callbacks: list[StatusCallback] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._start_failure: asyncio.Future[Exception] | None = None

        self._handlers: dict[str, Callable[[dict[str, Any]], object]] = {
            "DOM_UPDATE": self._forward_dom_update,
            "CURSOR_MOVE": lambda m: self._forward("cursor_move", m.get("position", {})),
            "SCROLL": lambda m: self._forward("scroll", m.get("position", {})),
            "CLICK": lambda m: self._forward("click", m.get("position", {})),
            "NAVIGATION": lambda m: self._forward("navigation", {"url": m.get("url")}),
        }

        host.add_listener(self)
        # A previous process cannot hand over its surfaces, so never resume
        self.store.clear_stale()

    def on_status(self, callback: StatusCallback) -> None:
        self._status_callbacks.append(callback)

    def status(self) -> dict[str, Any]:
        return {
            "is_sharing": self.state == RelayState.ACTIVE,
            "room_code": self.room_code,
            "server_url": self.server_url,
            "viewer_count": self.viewer_count,
        }

    async def start(self, room_code: str, server_url: str) -> None:
        """Start sharing the active surface into a room.

        Args:
            room_code: Room (session) code
            server_url: CoView server URL

        Raises:
            RelayError: If no capturable surface is available, the room
                cannot be joined, or capture cannot be started
        """
        if self.state != RelayState.IDLE:
            raise RelayError("Already sharing; stop the current session first")

        logger.info("Starting sharing", room_code=room_code, server_url=server_url)
        self.state = RelayState.STARTING
        try:
            surface = await self.host.active_surface()
            if surface is None:
                raise RelayError("No active tab found")
            if not is_capturable(surface.url):
                raise RelayError(UNSHAREABLE_PAGE)

            self.room_code = room_code
            self.server_url = server_url
            self.target_id = surface.id

            await self._connect(room_code, server_url)
            await self._start_capture(surface.id)
            if self.state != RelayState.STARTING:
                raise RelayError("Sharing was stopped while starting")
        except RelayError:
            await self.stop()
            raise
        except Exception as e:
            logger.exception("Start sharing failed", error=str(e))
            await self.stop()
            raise RelayError(str(e)) from e

        self.state = RelayState.ACTIVE
        if self.rejoiner is not None:
            self.rejoiner.enabled = True
        self._save_state(is_sharing=True, room_code=room_code, server_url=server_url)
        self._notify("CONNECTION_STATUS", status="connected")

    async def stop(self) -> None:
        """Tear the session down. Every step is attempted even if one fails."""
        if self.state == RelayState.IDLE and self.socket is None and self.target_id is None:
            return

        logger.info("Stopping sharing", room_code=self.room_code)
        self.state = RelayState.IDLE
        if self.rejoiner is not None:
            self.rejoiner.cancel()
            self.rejoiner = None
        target, channel, socket = self.target_id, self.channel, self.socket
        self.target_id = None
        self.channel = None
        self.socket = None
        if self._start_failure is not None and not self._start_failure.done():
            self._start_failure.set_result(RelayError("Sharing stopped"))

        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()

        if target is not None:
            try:
                await self._message(target, {"type": "STOP_CAPTURE"})
            except Exception as e:
                logger.debug("Could not stop capture on surface", surface_id=target, error=str(e))

        if channel is not None:
            try:
                leave = channel.leave()
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(leave.wait(), LEAVE_GRACE)
            except Exception as e:
                logger.warning("Error leaving channel", error=str(e))

        if socket is not None:
            try:
                await socket.disconnect()
            except Exception as e:
                logger.warning("Error disconnecting socket", error=str(e))

        self.room_code = None
        self.server_url = None
        self.viewer_count = 0
        self._save_state(is_sharing=False)
        self._notify("CONNECTION_STATUS", status="disconnected")

    async def retarget(self, surface_id: int) -> None:
        """Move capture to another surface, stopping it on the current one.

        Raises:
            RelayError: If not sharing, or capture cannot start on the new surface
        """
        if self.state != RelayState.ACTIVE:
            raise RelayError("Not sharing")
        if surface_id == self.target_id:
            return

        previous = self.target_id
        self.target_id = surface_id
        if previous is not None:
            try:
                await self._message(previous, {"type": "STOP_CAPTURE"})
            except Exception as e:
                logger.debug("Could not stop capture on previous surface", surface_id=previous, error=str(e))

        logger.info("Switching capture target", previous=previous, surface_id=surface_id)
        try:
            await self._start_capture(surface_id)
        except RelayError:
            await self.stop()
            raise

    # SurfaceListener

    def on_capture_message(self, surface_id: int, message: dict[str, Any]) -> None:
        """Forward a capture message from the target surface to the channel."""
        if self.state == RelayState.IDLE or self.channel is None or surface_id != self.target_id:
            logger.debug("Ignoring capture message", type=message.get("type"), surface_id=surface_id)
            return
        handler = self._handlers.get(message.get("type", ""))
        if handler is None:
            logger.debug("Unknown capture message", type=message.get("type"))
            return
        handler(message)

    def on_surface_closed(self, surface_id: int) -> None:
        if self.state != RelayState.IDLE and surface_id == self.target_id:
            logger.info("Active tab closed, stopping sharing", surface_id=surface_id)
            self._spawn(self.stop())

    def on_surface_loaded(self, surface_id: int) -> None:
        if self.state == RelayState.ACTIVE and surface_id == self.target_id:
            logger.info("Tab navigated, re-capturing DOM", surface_id=surface_id)
            self._spawn(self._recapture(surface_id))

    def on_surface_activated(self, surface_id: int) -> None:
        if self.state == RelayState.ACTIVE and surface_id != self.target_id:
            self._spawn(self._follow(surface_id))

    # Connection

    def _build_socket(self, endpoint: str) -> Socket:
        return Socket(
            endpoint,
            timeout=self.config.push_timeout,
            heartbeat_interval=self.config.heartbeat_interval,
            reconnect_after=self.config.reconnect_after,
        )

    async def _connect(self, room_code: str, server_url: str) -> None:
        endpoint = self.config.socket_endpoint(server_url)
        logger.info("Connecting to server", endpoint=endpoint)

        socket = self._socket_factory(endpoint)
        self.socket = socket
        failure: asyncio.Future[Exception] = asyncio.get_running_loop().create_future()
        self._start_failure = failure

        socket.on_open(self._on_socket_open)
        socket.on_close(self._on_socket_close)
        socket.on_error(self._on_socket_error)

        channel = socket.channel(f"room:{room_code}", {"role": "leader", "user_id": generate_user_id()})
        channel.on("presence_state", self._on_presence_state)
        channel.on("presence_diff", lambda diff: logger.debug("Presence diff", diff=diff))
        channel.on("scroll_to", self._on_scroll_to)
        self.channel = channel
        self.rejoiner = Rejoiner(channel, self.config.reconnect_after)

        join = channel.join()
        socket.connect()

        joined = asyncio.ensure_future(join.wait())
        try:
            await asyncio.wait({joined, failure}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            self._start_failure = None
            if not joined.done():
                joined.cancel()

        if not joined.done() or joined.cancelled():
            error = failure.result() if failure.done() else None
            raise RelayError("Failed to connect to server") from error

        reply = joined.result()
        if reply.status == "ok":
            logger.info("Joined channel", topic=channel.topic)
            return
        if reply.status == "error":
            self._notify("CONNECTION_STATUS", status="error", message="Failed to join room")
            raise RelayError("Failed to join room")
        self._notify("CONNECTION_STATUS", status="error", message="Connection timeout")
        raise RelayError("Connection timeout")

    def _on_socket_open(self) -> None:
        if self.state != RelayState.IDLE and self.rejoiner is not None:
            self.rejoiner.rejoin_now()

    def _on_socket_close(self, code: int | None, reason: str) -> None:
        if self.state != RelayState.IDLE:
            logger.warning("Socket closed", code=code, reason=reason)
            self._notify("CONNECTION_STATUS", status="disconnected", message="Connection lost")

    def _on_socket_error(self, error: Exception) -> None:
        logger.warning("Socket error", error=str(error))
        self._notify("CONNECTION_STATUS", status="error", message="Connection error")
        if self._start_failure is not None and not self._start_failure.done():
            self._start_failure.set_result(error)

    def _on_presence_state(self, presence: Any) -> None:
        self.viewer_count = len(presence) if isinstance(presence, dict) else 0
        logger.debug("Presence state", viewer_count=self.viewer_count)
        self._notify("VIEWER_COUNT_UPDATE", count=self.viewer_count)

    def _on_scroll_to(self, payload: Any) -> None:
        if self.state != RelayState.ACTIVE or self.target_id is None or not isinstance(payload, dict):
            return
        message = {"type": "SCROLL_TO", "x": payload.get("x", 0), "y": payload.get("y", 0)}
        self._spawn(self._deliver(self.target_id, message))

    # Capture

    async def _start_capture(self, surface_id: int) -> None:
        try:
            await self._message(surface_id, {"type": "START_CAPTURE"})
            logger.info("Capture started", surface_id=surface_id)
            return
        except SurfaceUnreachableError:
            logger.info("Capture pipeline not ready, injecting it now", surface_id=surface_id)

        try:
            await self.host.inject(surface_id)
            await asyncio.sleep(self.config.inject_settle)
            await self._message(surface_id, {"type": "START_CAPTURE"})
        except (InjectionError, SurfaceUnreachableError) as e:
            logger.error("Failed to inject capture pipeline", surface_id=surface_id, error=str(e))
            raise RelayError(UNSHAREABLE_PAGE) from e
        logger.info("Capture started after injection", surface_id=surface_id)

    async def _recapture(self, surface_id: int) -> None:
        try:
            await self._start_capture(surface_id)
        except RelayError as e:
            logger.error("Failed to re-capture after navigation", surface_id=surface_id, error=str(e))

    async def _follow(self, surface_id: int) -> None:
        surface = await self.host.active_surface()
        if surface is None or surface.id != surface_id or self.state != RelayState.ACTIVE:
            return
        if not is_capturable(surface.url):
            logger.info("Active tab cannot be shared, keeping target", surface_id=surface_id, url=surface.url)
            return
        try:
            await self.retarget(surface_id)
        except RelayError as e:
            logger.error("Failed to follow active tab", surface_id=surface_id, error=str(e))

    async def _message(self, surface_id: int, message: dict[str, Any]) -> dict[str, Any]:
        """Send an instruction to a surface; no answer in time counts as unreachable."""
        try:
            return await asyncio.wait_for(self.host.send(surface_id, message), MESSAGE_TIMEOUT)
        except TimeoutError as e:
            raise SurfaceUnreachableError(surface_id, "no response") from e

    async def _deliver(self, surface_id: int, message: dict[str, Any]) -> None:
        try:
            await self._message(surface_id, message)
        except Exception as e:
            logger.debug("Control message not delivered", type=message.get("type"), error=str(e))

    def _forward_dom_update(self, message: dict[str, Any]) -> None:
        html = message.get("html") or ""
        logger.debug(
            "Sending DOM update",
            size=len(html),
            full_page=message.get("isFullPage"),
            mutation=message.get("mutation"),
        )
        push = self._forward(
            "dom_full",
            {
                "html": html,
                "viewport_width": message.get("viewportWidth"),
                "viewport_height": message.get("viewportHeight"),
                "is_full_page": message.get("isFullPage") is not False,
            },
        )
        if push is not None:
            push.receive("error", lambda err: logger.error("DOM send error", error=err))
            push.receive("timeout", lambda _: logger.error("DOM send timeout"))

    def _forward(self, event: str, payload: dict[str, Any]) -> Push | None:
        if self.channel is None:
            return None
        return self.channel.push(event, payload)

    # Helpers

    def _notify(self, kind: str, **data: Any) -> None:
        for callback in list(self._status_callbacks):
            try:
                callback(kind, data)
            except Exception as e:
                logger.warning("Status callback failed", kind=kind, error=str(e))

    def _save_state(self, **changes: Any) -> None:
        try:
            self.store.update(**changes)
        except OSError as e:
            logger.warning("Failed to persist session state", error=str(e))

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
