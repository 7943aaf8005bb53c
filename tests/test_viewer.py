"""Tests for the viewer client."""

import asyncio

import pytest

from coview.render import SurfaceState
from coview.transport import ChannelState, Socket
from coview.viewer import ViewerClient, ViewerError

from .conftest import FakeConnector, settle

ROOM = "abc123"
PAGE = "<!DOCTYPE html><html><head></head><body><p>shared</p></body></html>"


@pytest.fixture
def client(config, socket_factory):
    return ViewerClient(config, socket_factory=socket_factory)


class TestViewerJoin:
    """Tests for joining a room as a viewer."""

    @pytest.mark.asyncio
    async def test_join_as_viewer(self, client, connector) -> None:
        await asyncio.wait_for(client.join(ROOM, "https://coview.example.com"), 1.0)

        assert connector.urls == ["wss://coview.example.com/socket/websocket?vsn=2.0.0"]
        join = connector.link.find("phx_join")
        assert join[2] == f"room:{ROOM}"
        assert join[4] == {"role": "viewer"}
        await client.leave()

    @pytest.mark.asyncio
    async def test_rejected_join_raises(self, config) -> None:
        connector = FakeConnector(replies={"phx_join": "error"})
        client = ViewerClient(config, socket_factory=lambda endpoint: Socket(endpoint, connector=connector))

        with pytest.raises(ViewerError):
            await asyncio.wait_for(client.join(ROOM), 1.0)

        assert client.socket is None
        assert connector.link.closed


class TestViewerUpdates:
    """Tests for updates reaching the renderer."""

    @pytest.mark.asyncio
    async def test_dom_update_rendered(self, client, connector) -> None:
        await asyncio.wait_for(client.join(ROOM), 1.0)

        connector.link.feed([None, None, f"room:{ROOM}", "dom_update", {"html": PAGE, "is_full_page": True}])
        await settle()

        assert client.renderer.state == SurfaceState.READY
        assert "shared" in client.renderer.surface.html()
        await client.leave()

    @pytest.mark.asyncio
    async def test_leader_dom_full_rendered(self, client, connector) -> None:
        await asyncio.wait_for(client.join(ROOM), 1.0)

        connector.link.feed([None, None, f"room:{ROOM}", "dom_full", {"html": PAGE, "is_full_page": True}])
        await settle()

        assert "shared" in client.renderer.surface.html()
        await client.leave()

    @pytest.mark.asyncio
    async def test_scroll_and_cursor(self, client, connector) -> None:
        await asyncio.wait_for(client.join(ROOM), 1.0)

        connector.link.feed([None, None, f"room:{ROOM}", "scroll_to", {"x": 0, "y": 120}])
        connector.link.feed([None, None, f"room:{ROOM}", "cursor_move", {"x": 4, "y": 5}])
        await settle()

        assert client.renderer.surface.scroll_y == 120.0
        assert client.renderer.surface.cursor == (4.0, 5.0)
        await client.leave()

    @pytest.mark.asyncio
    async def test_write_snapshot(self, client, connector, tmp_path) -> None:
        await asyncio.wait_for(client.join(ROOM), 1.0)
        connector.link.feed([None, None, f"room:{ROOM}", "dom_update", {"html": PAGE, "is_full_page": True}])
        await settle()
        output = tmp_path / "mirror.html"

        client.write_snapshot(output)

        assert "<p>shared</p>" in output.read_text(encoding="utf-8")
        await client.leave()

    @pytest.mark.asyncio
    async def test_leave_disconnects(self, client, connector) -> None:
        await asyncio.wait_for(client.join(ROOM), 1.0)
        link = connector.link

        await client.leave()

        assert "phx_leave" in link.events()
        assert link.closed
        assert client.channel is None


class TestViewerRejoin:
    """Tests for recovering the room channel after a failed rejoin."""

    @pytest.mark.asyncio
    async def test_timed_out_rejoin_retried(self, config) -> None:
        connector = FakeConnector(replies={"phx_join": "ok", "phx_leave": "ok"})
        client = ViewerClient(
            config.model_copy(update={"reconnect_delays": [0.01, 0.02]}),
            socket_factory=lambda endpoint: Socket(
                endpoint, timeout=0.05, reconnect_after=lambda _tries: 0.01, connector=connector
            ),
        )
        await asyncio.wait_for(client.join(ROOM), 1.0)

        connector.replies.pop("phx_join")
        await connector.link.close(1006, "dropped")
        await asyncio.sleep(0.15)
        assert connector.link.events().count("phx_join") >= 2

        connector.replies["phx_join"] = "ok"
        await asyncio.sleep(0.2)

        assert client.channel.state == ChannelState.JOINED
        assert len(connector.links) == 2
        rejoiner = client.rejoiner
        await client.leave()
        assert not rejoiner.pending
