"""Phoenix channel socket over a reconnecting WebSocket link."""

import asyncio
import contextlib
from collections.abc import AsyncIterator, Awaitable, Callable
from enum import Enum
from typing import Any, Protocol
from urllib.parse import urlencode

import structlog
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidURI
from websockets.uri import parse_uri

from .channel import Channel, ChannelError, ChannelState
from .serializer import Message, decode, encode

logger = structlog.get_logger()

VSN = "2.0.0"
PHOENIX_TOPIC = "phoenix"
DEFAULT_RECONNECT_DELAYS = (1.0, 2.0, 5.0, 10.0)


class SocketState(str, Enum):
    """State of the physical link."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class Link(Protocol):
    """Minimal full-duplex text link the socket runs on."""

    async def send(self, message: str) -> None: ...
    async def close(self, code: int = 1000, reason: str = "") -> None: ...
    def __aiter__(self) -> AsyncIterator[str | bytes]: ...


Connector = Callable[[str], Awaitable[Link]]


async def websocket_connector(url: str) -> Link:
    """Open a WebSocket link; liveness is handled by protocol heartbeats."""
    return await ws_connect(url, ping_interval=None, max_size=None)


def default_reconnect_after(tries: int) -> float:
    """Backoff for the given attempt: 1s, 2s, 5s, 10s, then 10s."""
    if 1 <= tries <= len(DEFAULT_RECONNECT_DELAYS):
        return DEFAULT_RECONNECT_DELAYS[tries - 1]
    return DEFAULT_RECONNECT_DELAYS[-1]


class Socket:
    """Connection to a channel server.

    Owns the link, the deferred send buffer, the monotonic ref counter,
    heartbeats and reconnection. Channels are kept in an id-keyed registry.
    Reconnection never rejoins channels by itself; owners call
    ``Channel.rejoin`` from an ``on_open`` callback.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        timeout: float = 10.0,
        heartbeat_interval: float = 30.0,
        reconnect_after: Callable[[int], float] | None = None,
        params: dict[str, Any] | None = None,
        connector: Connector | None = None,
    ) -> None:
        """Initialize the socket.

        Args:
            endpoint: WebSocket endpoint (ws:// or wss://)
            timeout: Default push timeout in seconds
            heartbeat_interval: Seconds between heartbeats
            reconnect_after: Maps attempt number to reconnect delay
            params: Extra query parameters for the endpoint
            connector: Coroutine opening the underlying link
        """
        self.endpoint = endpoint
        self.timeout = timeout
        self.heartbeat_interval = heartbeat_interval
        self.reconnect_after = reconnect_after or default_reconnect_after
        self.params = params or {}
        self.state = SocketState.CLOSED
        self.reconnect_tries = 0
        self.pending_heartbeat_ref: str | None = None

        self._connector = connector or websocket_connector
        self._channels: dict[int, Channel] = {}
        self._next_channel_id = 0
        self._send_buffer: list[str] = []
        self._ref = 0
        self._link: Link | None = None
        self._link_task: asyncio.Task[None] | None = None
        self._outbox: asyncio.Queue[str] | None = None
        self._writer_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._reconnect_timer: asyncio.TimerHandle | None = None

        self._open_callbacks: list[Callable[[], None]] = []
        self._close_callbacks: list[Callable[[int | None, str], None]] = []
        self._error_callbacks: list[Callable[[Exception], None]] = []
        self._message_callbacks: list[Callable[[Message], None]] = []

    @property
    def channels(self) -> list[Channel]:
        return list(self._channels.values())

    def endpoint_url(self) -> str:
        query = urlencode({**self.params, "vsn": VSN})
        separator = "&" if "?" in self.endpoint else "?"
        return f"{self.endpoint}{separator}{query}"

    def on_open(self, callback: Callable[[], None]) -> None:
        self._open_callbacks.append(callback)

    def on_close(self, callback: Callable[[int | None, str], None]) -> None:
        self._close_callbacks.append(callback)

    def on_error(self, callback: Callable[[Exception], None]) -> None:
        self._error_callbacks.append(callback)

    def on_message(self, callback: Callable[[Message], None]) -> None:
        self._message_callbacks.append(callback)

    def connect(self) -> None:
        """Open the link. No-op while a link exists or is being opened.

        If the endpoint cannot even be turned into a link, error callbacks run
        and no reconnect is scheduled.
        """
        if self._link_task is not None:
            logger.debug("Socket already connected", endpoint=self.endpoint)
            return

        url = self.endpoint_url()
        try:
            parse_uri(url)
        except InvalidURI as e:
            logger.error("Invalid socket endpoint", url=url, error=str(e))
            self._run_callbacks(self._error_callbacks, e)
            return

        self.state = SocketState.CONNECTING
        logger.info("Connecting socket", url=url)
        self._link_task = asyncio.create_task(self._run_link(url))

    async def disconnect(self, code: int = 1000, reason: str = "") -> None:
        """Close the link for good: no reconnect, timers cancelled."""
        self._cancel_reconnect()
        self._stop_heartbeat()
        self.pending_heartbeat_ref = None

        link, task = self._link, self._link_task
        self._link = None
        self._link_task = None
        self.state = SocketState.CLOSING
        self._stop_writer()

        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if link is not None:
            try:
                await link.close(code, reason)
            except Exception as e:
                logger.debug("Error closing link", error=str(e))

        self.state = SocketState.CLOSED
        logger.info("Socket disconnected", endpoint=self.endpoint)

    def is_connected(self) -> bool:
        return self.state == SocketState.OPEN and self._link is not None

    def channel(self, topic: str, params: dict[str, Any] | None = None) -> Channel:
        """Create and register a channel for a topic without joining it.

        Raises:
            ChannelError: If a channel for the topic is already registered
        """
        if any(ch.topic == topic for ch in self._channels.values()):
            raise ChannelError(f"a channel for '{topic}' already exists")
        channel_id = self._next_channel_id
        self._next_channel_id += 1
        chan = Channel(topic, params, self, channel_id)
        self._channels[channel_id] = chan
        return chan

    def remove(self, channel: Channel) -> None:
        self._channels.pop(channel.id, None)

    def push(self, message: Message) -> None:
        """Send a frame now, or defer it until the next open."""
        frame = encode(message)
        if self.is_connected() and self._outbox is not None:
            self._outbox.put_nowait(frame)
        else:
            self._send_buffer.append(frame)

    def make_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    def send_heartbeat(self) -> None:
        """Probe liveness; an unanswered previous probe closes the link."""
        if not self.is_connected():
            return
        if self.pending_heartbeat_ref is not None:
            self.pending_heartbeat_ref = None
            logger.warning("Heartbeat timeout, closing socket", endpoint=self.endpoint)
            self._close_link(1000, "heartbeat timeout")
            return
        self.pending_heartbeat_ref = self.make_ref()
        self.push(
            Message(topic=PHOENIX_TOPIC, event="heartbeat", payload={}, ref=self.pending_heartbeat_ref)
        )

    async def _run_link(self, url: str) -> None:
        try:
            link = await self._connector(url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Socket connection failed", url=url, error=str(e))
            self._run_callbacks(self._error_callbacks, e)
            self._handle_close(None, str(e))
            return

        self._link = link
        self._handle_open(link)

        code: int | None = None
        reason = ""
        try:
            async for raw in link:
                self._handle_frame(raw)
            code = getattr(link, "close_code", None)
            reason = getattr(link, "close_reason", None) or ""
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as e:
            code = e.rcvd.code if e.rcvd else None
            reason = e.rcvd.reason if e.rcvd else str(e)
        except Exception as e:
            logger.warning("Socket read failed", error=str(e))
            self._run_callbacks(self._error_callbacks, e)
            reason = str(e)

        self._handle_close(code, reason)

    def _handle_open(self, link: Link) -> None:
        self.state = SocketState.OPEN
        self.reconnect_tries = 0
        self.pending_heartbeat_ref = None
        self._outbox = asyncio.Queue()
        self._writer_task = asyncio.create_task(self._write_loop(link, self._outbox))
        self._flush_send_buffer()
        self._reset_heartbeat()
        logger.info("Socket open", endpoint=self.endpoint)
        self._run_callbacks(self._open_callbacks)

    def _handle_close(self, code: int | None, reason: str) -> None:
        logger.info("Socket closed", code=code, reason=reason)
        self._link = None
        self._link_task = None
        self.state = SocketState.CLOSED
        self._stop_writer()
        self._stop_heartbeat()
        self._trigger_channel_errors()
        self._schedule_reconnect()
        self._run_callbacks(self._close_callbacks, code, reason)

    def _handle_frame(self, raw: str | bytes) -> None:
        try:
            message = decode(raw)
        except ValueError as e:
            logger.warning("Dropping undecodable frame", error=str(e))
            return

        if message.ref is not None and message.ref == self.pending_heartbeat_ref:
            self.pending_heartbeat_ref = None

        for chan in self.channels:
            if chan.is_member(message.topic, message.join_ref):
                chan.trigger(message.event, message.payload, message.ref)

        self._run_callbacks(self._message_callbacks, message)

    async def _write_loop(self, link: Link, outbox: asyncio.Queue[str]) -> None:
        while True:
            frame = await outbox.get()
            try:
                await link.send(frame)
            except ConnectionClosed:
                logger.debug("Dropping frame on closed link")
                return
            except Exception as e:
                logger.warning("Socket send failed", error=str(e))
                return

    def _flush_send_buffer(self) -> None:
        if not self.is_connected() or self._outbox is None:
            return
        deferred, self._send_buffer = self._send_buffer, []
        for frame in deferred:
            self._outbox.put_nowait(frame)

    def _close_link(self, code: int, reason: str) -> None:
        link = self._link
        if link is None:
            return
        self.state = SocketState.CLOSING
        self._stop_writer()
        task = asyncio.create_task(link.close(code, reason))
        task.add_done_callback(_log_close_failure)

    def _trigger_channel_errors(self) -> None:
        for chan in self.channels:
            if chan.state != ChannelState.CLOSED:
                chan.trigger("phx_error")

    def _reset_heartbeat(self) -> None:
        self._stop_heartbeat()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            self.send_heartbeat()

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_task is not None and not self._heartbeat_task.done():
            if self._heartbeat_task is not asyncio.current_task():
                self._heartbeat_task.cancel()
        self._heartbeat_task = None

    def _stop_writer(self) -> None:
        if self._writer_task is not None and not self._writer_task.done():
            self._writer_task.cancel()
        self._writer_task = None
        self._outbox = None

    def _schedule_reconnect(self) -> None:
        self._cancel_reconnect()
        self.reconnect_tries += 1
        delay = self.reconnect_after(self.reconnect_tries)
        logger.info("Scheduling reconnect", delay=delay, attempt=self.reconnect_tries)
        loop = asyncio.get_running_loop()
        self._reconnect_timer = loop.call_later(delay, self._reconnect)

    def _cancel_reconnect(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    def _reconnect(self) -> None:
        self._reconnect_timer = None
        self.connect()

    def _run_callbacks(self, callbacks: list[Callable[..., None]], *args: Any) -> None:
        for callback in list(callbacks):
            try:
                callback(*args)
            except Exception as e:
                logger.exception("Socket callback failed", error=str(e))


def _log_close_failure(task: "asyncio.Task[None]") -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Error closing link", error=str(task.exception()))
