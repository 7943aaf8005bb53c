"""Logical channels multiplexed over a socket by topic."""

import weakref
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog

from .push import Push

if TYPE_CHECKING:
    from .socket import Socket

logger = structlog.get_logger()

EVENT_CLOSE = "phx_close"
EVENT_ERROR = "phx_error"
EVENT_JOIN = "phx_join"
EVENT_REPLY = "phx_reply"
EVENT_LEAVE = "phx_leave"


class ChannelState(str, Enum):
    """Join lifecycle of a channel."""

    CLOSED = "closed"
    ERRORED = "errored"
    JOINED = "joined"
    JOINING = "joining"
    LEAVING = "leaving"


class ChannelError(RuntimeError):
    """Raised when a channel is used out of protocol order."""


@dataclass
class Binding:
    event: str
    ref: int
    callback: Callable[[Any], None]


class Channel:
    """A topic-scoped channel.

    Channels are registered with their socket under a stable integer id and
    hold only a weak reference back to it.
    """

    def __init__(self, topic: str, params: dict[str, Any] | None, socket: "Socket", channel_id: int) -> None:
        self.id = channel_id
        self.topic = topic
        self.params = params or {}
        self.timeout = socket.timeout
        self.state = ChannelState.CLOSED
        self.joined_once = False
        self._socket_ref = weakref.ref(socket)
        self._bindings: list[Binding] = []
        self._binding_ref = 0
        self._push_buffer: list[Push] = []
        self._replies: dict[str, Push] = {}
        self._removed = False

        self.join_push = Push(self, EVENT_JOIN, self.params, self.timeout)
        self.join_push.receive("ok", self._on_join_ok)
        self.join_push.receive("error", self._on_join_error)
        self.join_push.receive("timeout", self._on_join_timeout)

        self.on_close(self._on_close)
        self.on_error(self._on_error)

    @property
    def socket(self) -> "Socket":
        socket = self._socket_ref()
        if socket is None:
            raise ChannelError(f"socket for '{self.topic}' is gone")
        return socket

    @property
    def join_ref(self) -> str | None:
        """Ref of the most recent join attempt."""
        return self.join_push.ref

    def join(self, timeout: float | None = None) -> Push:
        """Join the topic. May be called once per channel; use ``rejoin`` to retry.

        Raises:
            ChannelError: If the channel was already joined once
        """
        if self.joined_once:
            raise ChannelError(f"tried to join '{self.topic}' multiple times")
        self.joined_once = True
        self.rejoin(timeout)
        return self.join_push

    def rejoin(self, timeout: float | None = None) -> None:
        if self.state == ChannelState.LEAVING or self._removed:
            return
        self.state = ChannelState.JOINING
        self.join_push.resend(timeout if timeout is not None else self.timeout)

    def leave(self, timeout: float | None = None) -> Push:
        """Leave the topic.

        Resolves on server acknowledgement or timeout, or immediately when the
        channel cannot currently push.
        """
        could_push = self.can_push()
        self.join_push.cancel_timeout()
        self.state = ChannelState.LEAVING
        leave_push = Push(self, EVENT_LEAVE, {}, timeout if timeout is not None else self.timeout)
        leave_push.receive("ok", self._close_after_leave)
        leave_push.receive("timeout", self._close_after_leave)
        if could_push:
            leave_push.send()
        else:
            leave_push.trigger("ok", {})
        return leave_push

    def push(self, event: str, payload: Any = None, timeout: float | None = None) -> Push:
        """Push an event; buffered locally until the channel is joined.

        Raises:
            ChannelError: If called before ``join``
        """
        if not self.joined_once:
            raise ChannelError(f"tried to push '{event}' to '{self.topic}' before joining")
        push = Push(self, event, payload, timeout if timeout is not None else self.timeout)
        if self.can_push():
            push.send()
        else:
            push.start_timeout()
            self._push_buffer.append(push)
        return push

    def can_push(self) -> bool:
        return self.socket.is_connected() and self.state == ChannelState.JOINED

    def on(self, event: str, callback: Callable[[Any], None]) -> int:
        ref = self._binding_ref
        self._binding_ref += 1
        self._bindings.append(Binding(event=event, ref=ref, callback=callback))
        return ref

    def off(self, event: str, ref: int | None = None) -> None:
        self._bindings = [
            b for b in self._bindings if not (b.event == event and (ref is None or ref == b.ref))
        ]

    def on_close(self, callback: Callable[[Any], None]) -> int:
        return self.on(EVENT_CLOSE, callback)

    def on_error(self, callback: Callable[[Any], None]) -> int:
        return self.on(EVENT_ERROR, callback)

    def is_member(self, topic: str, join_ref: str | None) -> bool:
        """Whether an inbound frame belongs to this channel incarnation."""
        if self.topic != topic:
            return False
        if join_ref is not None and join_ref != self.join_ref:
            logger.debug(
                "Dropping message with stale join ref",
                topic=topic,
                join_ref=join_ref,
                current_join_ref=self.join_ref,
            )
            return False
        return True

    def track_reply(self, push: Push) -> None:
        if push.ref is not None:
            self._replies[push.ref] = push

    def forget_reply(self, ref: str) -> None:
        self._replies.pop(ref, None)

    def trigger(self, event: str, payload: Any = None, ref: str | None = None) -> None:
        """Deliver an inbound event: replies resolve their push, the rest go to bindings."""
        if event == EVENT_REPLY and ref is not None:
            push = self._replies.get(ref)
            if push is not None:
                reply = payload if isinstance(payload, dict) else {}
                push.trigger(reply.get("status", "error"), reply.get("response", {}))
                return

        for binding in [b for b in self._bindings if b.event == event]:
            try:
                binding.callback(payload)
            except Exception as e:
                logger.exception("Channel binding failed", topic=self.topic, binding=event, error=str(e))

    def _on_join_ok(self, _response: Any) -> None:
        self.state = ChannelState.JOINED
        logger.debug("Channel joined", topic=self.topic, buffered=len(self._push_buffer))
        buffered, self._push_buffer = self._push_buffer, []
        for push in buffered:
            push.send()

    def _on_join_error(self, response: Any) -> None:
        self.state = ChannelState.ERRORED
        logger.warning("Channel join rejected", topic=self.topic, response=response)

    def _on_join_timeout(self, _response: Any) -> None:
        if self.state == ChannelState.JOINING:
            self.state = ChannelState.ERRORED
            logger.warning("Channel join timed out", topic=self.topic)

    def _close_after_leave(self, _response: Any) -> None:
        self.trigger(EVENT_CLOSE, "leave")

    def _on_close(self, _payload: Any) -> None:
        self.state = ChannelState.CLOSED
        self.join_push.cancel_timeout()
        for push in self._push_buffer:
            push.cancel_timeout()
        self._push_buffer = []
        if not self._removed:
            self._removed = True
            socket = self._socket_ref()
            if socket is not None:
                socket.remove(self)

    def _on_error(self, _payload: Any) -> None:
        if self.state in (ChannelState.LEAVING, ChannelState.CLOSED):
            return
        self.state = ChannelState.ERRORED
