"""Pushes: requests sent on a channel that resolve to ok, error or timeout."""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from .serializer import Message

if TYPE_CHECKING:
    from .channel import Channel

logger = structlog.get_logger()

ReplyCallback = Callable[[Any], None]


@dataclass
class Reply:
    """Terminal outcome of a push."""

    status: str
    response: Any = field(default_factory=dict)


class Push:
    """A single request awaiting at most one terminal outcome per send.

    Outcome callbacks may be registered before or after the reply arrives;
    registering for an outcome that already happened runs the callback
    immediately. Callbacks stay registered across ``resend`` so a join push
    notifies its hooks on every rejoin.
    """

    def __init__(self, channel: "Channel", event: str, payload: Any, timeout: float) -> None:
        self.channel = channel
        self.event = event
        self.payload = payload if payload is not None else {}
        self.timeout = timeout
        self.ref: str | None = None
        self.sent = False
        self._received: Reply | None = None
        self._hooks: list[tuple[str, ReplyCallback]] = []
        self._waiters: list[asyncio.Future[Reply]] = []
        self._timeout_timer: asyncio.TimerHandle | None = None

    @property
    def received(self) -> Reply | None:
        """The terminal result of the current send, if any."""
        return self._received

    def resend(self, timeout: float) -> None:
        self.timeout = timeout
        self.reset()
        self.send()

    def send(self) -> None:
        """Mint a fresh ref and hand the frame to the socket."""
        if self.has_received("timeout"):
            return
        self.start_timeout()
        self.sent = True
        socket = self.channel.socket
        self.ref = socket.make_ref()
        self.channel.track_reply(self)
        socket.push(
            Message(
                topic=self.channel.topic,
                event=self.event,
                payload=self.payload,
                ref=self.ref,
                join_ref=self.channel.join_ref,
            )
        )

    def receive(self, status: str, callback: ReplyCallback) -> "Push":
        """Register a callback for an outcome; replays it if already received."""
        if self.has_received(status) and self._received is not None:
            callback(self._received.response)
        self._hooks.append((status, callback))
        return self

    async def wait(self) -> Reply:
        """Wait for the terminal result of the current send."""
        if self._received is not None:
            return self._received
        future: asyncio.Future[Reply] = asyncio.get_running_loop().create_future()
        self._waiters.append(future)
        return await future

    def reset(self) -> None:
        self.cancel_timeout()
        if self.ref is not None:
            self.channel.forget_reply(self.ref)
        self._received = None
        self.sent = False

    def start_timeout(self) -> None:
        if self._timeout_timer is not None:
            return
        loop = asyncio.get_running_loop()
        self._timeout_timer = loop.call_later(self.timeout, self._on_timeout)

    def cancel_timeout(self) -> None:
        if self._timeout_timer is not None:
            self._timeout_timer.cancel()
            self._timeout_timer = None

    def has_received(self, status: str) -> bool:
        return self._received is not None and self._received.status == status

    def trigger(self, status: str, response: Any = None) -> None:
        """Record the terminal result and notify matching callbacks.

        Only the first outcome of a send is kept; later ones are ignored.
        """
        if self._received is not None:
            logger.debug(
                "Ignoring outcome for settled push",
                topic=self.channel.topic,
                push_event=self.event,
                status=status,
            )
            return
        reply = Reply(status=status, response=response if response is not None else {})
        self._received = reply
        self.cancel_timeout()
        if self.ref is not None:
            self.channel.forget_reply(self.ref)

        for hook_status, callback in list(self._hooks):
            if hook_status != status:
                continue
            try:
                callback(reply.response)
            except Exception as e:
                logger.exception("Push callback failed", push_event=self.event, error=str(e))

        waiters, self._waiters = self._waiters, []
        for future in waiters:
            if not future.done():
                future.set_result(reply)

    def _on_timeout(self) -> None:
        self._timeout_timer = None
        logger.debug("Push timed out", topic=self.channel.topic, push_event=self.event, ref=self.ref)
        self.trigger("timeout", {})
