"""Tests for the channel socket."""

import asyncio
from unittest.mock import MagicMock

import pytest
from websockets.exceptions import InvalidURI

from coview.transport import ChannelError, ChannelState, Message, Socket, SocketState, default_reconnect_after

from .conftest import FakeConnector, settle

ENDPOINT = "ws://localhost:4000/socket/websocket"


class TestSocketBasics:
    """Tests for socket construction and bookkeeping."""

    def test_endpoint_url_adds_protocol_version(self) -> None:
        socket = Socket(ENDPOINT, params={"token": "abc"})
        assert socket.endpoint_url() == ENDPOINT + "?token=abc&vsn=2.0.0"

    def test_make_ref_monotonic(self) -> None:
        socket = Socket(ENDPOINT)
        assert [socket.make_ref() for _ in range(3)] == ["1", "2", "3"]

    def test_duplicate_topic_rejected(self) -> None:
        socket = Socket(ENDPOINT)
        socket.channel("room:abc")

        with pytest.raises(ChannelError):
            socket.channel("room:abc")

    def test_channel_ids_are_distinct(self) -> None:
        socket = Socket(ENDPOINT)
        first = socket.channel("room:a")
        second = socket.channel("room:b")
        assert first.id != second.id
        assert socket.channels == [first, second]

    def test_default_backoff_schedule(self) -> None:
        assert [default_reconnect_after(n) for n in range(1, 7)] == [1.0, 2.0, 5.0, 10.0, 10.0, 10.0]


class TestSocketConnection:
    """Tests for opening and closing the link."""

    @pytest.mark.asyncio
    async def test_deferred_frames_flushed_in_order(self) -> None:
        connector = FakeConnector()
        socket = Socket(ENDPOINT, connector=connector)
        for n in range(3):
            socket.push(Message(topic="room:abc", event=f"e{n}", ref=socket.make_ref()))

        socket.connect()
        await settle()

        assert connector.link.events() == ["e0", "e1", "e2"]
        assert connector.urls == [ENDPOINT + "?vsn=2.0.0"]
        await socket.disconnect()

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self) -> None:
        connector = FakeConnector()
        socket = Socket(ENDPOINT, connector=connector)

        socket.connect()
        socket.connect()
        await settle()

        assert len(connector.links) == 1
        assert socket.is_connected()
        await socket.disconnect()

    @pytest.mark.asyncio
    async def test_open_callbacks(self) -> None:
        socket = Socket(ENDPOINT, connector=FakeConnector())
        on_open = MagicMock()
        socket.on_open(on_open)

        socket.connect()
        await settle()

        on_open.assert_called_once()
        assert socket.state == SocketState.OPEN
        await socket.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_does_not_reconnect(self) -> None:
        connector = FakeConnector()
        socket = Socket(ENDPOINT, reconnect_after=lambda _tries: 0.01, connector=connector)
        socket.connect()
        await settle()

        await socket.disconnect()
        await asyncio.sleep(0.05)

        assert len(connector.links) == 1
        assert connector.link.closed
        assert socket.state == SocketState.CLOSED

    @pytest.mark.asyncio
    async def test_server_close_reports_code_and_errors_channels(self) -> None:
        connector = FakeConnector(replies={"phx_join": "ok"})
        socket = Socket(ENDPOINT, reconnect_after=lambda _tries: 10.0, connector=connector)
        on_close = MagicMock()
        socket.on_close(on_close)
        channel = socket.channel("room:abc")
        channel.join()
        socket.connect()
        await settle()
        assert channel.state == ChannelState.JOINED

        await connector.link.close(4000, "going away")
        await settle()

        on_close.assert_called_once_with(4000, "going away")
        assert channel.state == ChannelState.ERRORED
        assert not socket.is_connected()
        await socket.disconnect()

    @pytest.mark.asyncio
    async def test_invalid_endpoint_reports_error_without_retry(self) -> None:
        connector = FakeConnector()
        socket = Socket("not a socket url", connector=connector)
        errors: list[Exception] = []
        socket.on_error(errors.append)

        socket.connect()
        await asyncio.sleep(0.02)

        assert len(errors) == 1
        assert isinstance(errors[0], InvalidURI)
        assert connector.urls == []
        assert socket.state == SocketState.CLOSED


class TestSocketReconnect:
    """Tests for reconnection backoff."""

    @pytest.mark.asyncio
    async def test_backoff_attempts_increase_until_connected(self) -> None:
        connector = FakeConnector(failures=3)
        attempts: list[int] = []

        def reconnect_after(tries: int) -> float:
            attempts.append(tries)
            return 0.01

        socket = Socket(ENDPOINT, reconnect_after=reconnect_after, connector=connector)
        errors = MagicMock()
        socket.on_error(errors)

        socket.connect()
        await asyncio.sleep(0.15)

        assert attempts == [1, 2, 3]
        assert errors.call_count == 3
        assert socket.is_connected()
        assert socket.reconnect_tries == 0
        await socket.disconnect()

    @pytest.mark.asyncio
    async def test_tries_reset_after_open(self) -> None:
        connector = FakeConnector(failures=2)
        attempts: list[int] = []

        def reconnect_after(tries: int) -> float:
            attempts.append(tries)
            return 0.01

        socket = Socket(ENDPOINT, reconnect_after=reconnect_after, connector=connector)
        socket.connect()
        await asyncio.sleep(0.1)
        assert socket.is_connected()

        await connector.link.close(1006, "dropped")
        await asyncio.sleep(0.05)

        # Counting restarts from the first attempt after a successful open
        assert attempts == [1, 2, 1]
        assert len(connector.links) == 2
        await socket.disconnect()


class TestSocketHeartbeat:
    """Tests for heartbeat liveness."""

    @pytest.mark.asyncio
    async def test_heartbeat_sent_on_phoenix_topic(self) -> None:
        connector = FakeConnector(replies={"heartbeat": "ok"})
        socket = Socket(ENDPOINT, heartbeat_interval=0.02, connector=connector)
        socket.connect()

        await asyncio.sleep(0.1)

        frames = [f for f in connector.link.frames() if f[3] == "heartbeat"]
        assert len(frames) >= 2
        assert all(f[2] == "phoenix" and f[0] is None for f in frames)
        # Answered heartbeats keep the link up
        assert len(connector.links) == 1
        assert not connector.link.closed
        await socket.disconnect()

    @pytest.mark.asyncio
    async def test_unanswered_heartbeat_closes_and_reconnects(self) -> None:
        connector = FakeConnector()
        socket = Socket(
            ENDPOINT,
            heartbeat_interval=0.02,
            reconnect_after=lambda _tries: 0.01,
            connector=connector,
        )
        socket.connect()

        await asyncio.sleep(0.1)

        first = connector.links[0]
        assert first.closed
        assert first.close_reason == "heartbeat timeout"
        assert len(connector.links) >= 2
        await socket.disconnect()

    @pytest.mark.asyncio
    async def test_heartbeat_timeout_reconnects_with_growing_backoff(self) -> None:
        connector = FakeConnector()
        attempts: list[int] = []
        delays: list[float] = []

        def backoff(tries: int) -> float:
            attempts.append(tries)
            delays.append(default_reconnect_after(tries) / 500)
            return delays[-1]

        socket = Socket(ENDPOINT, heartbeat_interval=0.02, reconnect_after=backoff, connector=connector)
        socket.connect()
        await settle()
        # The server stays unreachable for the next five attempts
        connector.failures = 5

        await asyncio.sleep(0.3)

        assert connector.links[0].close_reason == "heartbeat timeout"
        assert attempts[:6] == [1, 2, 3, 4, 5, 6]
        assert delays[0] < delays[1] < delays[2] < delays[3]
        assert delays[3] == delays[4] == delays[5] == default_reconnect_after(10) / 500
        assert len(connector.links) >= 2
        await socket.disconnect()

    @pytest.mark.asyncio
    async def test_send_heartbeat_noop_when_disconnected(self) -> None:
        socket = Socket(ENDPOINT, connector=FakeConnector())

        socket.send_heartbeat()

        assert socket.pending_heartbeat_ref is None
