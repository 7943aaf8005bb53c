"""Join retries for channels left errored while their socket stays up."""

import asyncio
from collections.abc import Callable
from typing import Any

import structlog

from .channel import Channel, ChannelError, ChannelState

logger = structlog.get_logger()


class Rejoiner:
    """Rejoins an errored channel with backoff.

    A join ``error`` or ``timeout``, or a server ``phx_error``, schedules a
    rejoin while the socket is connected. A closed socket is left to its
    owner, which calls ``rejoin_now`` from an ``on_open`` callback. Retries
    stay off until the owner sets ``enabled`` after its first successful join.
    """

    def __init__(self, channel: Channel, backoff: Callable[[int], float]) -> None:
        """Initialize the rejoiner.

        Args:
            channel: Channel to keep joined
            backoff: Maps attempt number to delay in seconds
        """
        self.channel = channel
        self.backoff = backoff
        self.enabled = False
        self.tries = 0
        self._timer: asyncio.TimerHandle | None = None

        channel.join_push.receive("ok", self._on_joined)
        channel.join_push.receive("error", self._on_failed)
        channel.join_push.receive("timeout", self._on_failed)
        channel.on_error(self._on_failed)

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def rejoin_now(self) -> None:
        """Rejoin immediately if the channel is errored."""
        self._cancel_timer()
        if self.channel.state == ChannelState.ERRORED:
            logger.info("Rejoining channel", topic=self.channel.topic, attempt=self.tries)
            self.channel.rejoin()

    def cancel(self) -> None:
        self.enabled = False
        self._cancel_timer()

    def _on_joined(self, _response: Any) -> None:
        self.tries = 0
        self._cancel_timer()

    def _on_failed(self, _payload: Any) -> None:
        if not self.enabled or self._timer is not None or not self._socket_connected():
            return
        self.tries += 1
        delay = self.backoff(self.tries)
        logger.warning(
            "Channel errored, scheduling rejoin",
            topic=self.channel.topic,
            delay=delay,
            attempt=self.tries,
        )
        self._timer = asyncio.get_running_loop().call_later(delay, self._fire)

    def _fire(self) -> None:
        self._timer = None
        if self.enabled and self._socket_connected():
            self.rejoin_now()

    def _socket_connected(self) -> bool:
        try:
            return self.channel.socket.is_connected()
        except ChannelError:
            return False

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
