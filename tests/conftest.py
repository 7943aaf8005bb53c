"""Pytest fixtures for CoView tests."""

import asyncio
import json
from typing import Any

import pytest

from coview.capture import MutationBatch, MutationRecord
from coview.config import CaptureTimings, CoViewConfig
from coview.state_store import SessionStateStore
from coview.surfaces import InjectionError, Surface, SurfaceListener, SurfaceUnreachableError
from coview.transport import Socket


async def settle(rounds: int = 20) -> None:
    """Let scheduled callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeLink:
    """In-memory link standing in for a server WebSocket.

    ``replies`` maps an outbound event to the reply status the fake server
    sends back for it.
    """

    def __init__(self, replies: dict[str, str] | None = None) -> None:
        self.replies = replies or {}
        self.sent: list[str] = []
        self.closed = False
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self._inbox: asyncio.Queue[str | None] = asyncio.Queue()

    async def send(self, message: str) -> None:
        self.sent.append(message)
        join_ref, ref, topic, event, _payload = json.loads(message)
        status = self.replies.get(event)
        if status is not None:
            self.feed([join_ref, ref, topic, "phx_reply", {"status": status, "response": {}}])

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed:
            return
        self.closed = True
        self.close_code = code
        self.close_reason = reason
        self._inbox.put_nowait(None)

    def feed(self, frame: list[Any]) -> None:
        """Deliver a frame from the server."""
        self._inbox.put_nowait(json.dumps(frame))

    def frames(self) -> list[list[Any]]:
        return [json.loads(raw) for raw in self.sent]

    def events(self) -> list[str]:
        return [frame[3] for frame in self.frames()]

    def find(self, event: str) -> list[Any]:
        """Last sent frame for an event."""
        return [frame for frame in self.frames() if frame[3] == event][-1]

    def __aiter__(self) -> "FakeLink":
        return self

    async def __anext__(self) -> str:
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item


class FakeConnector:
    """Connector handing out ``FakeLink``s; can refuse the first attempts."""

    def __init__(self, replies: dict[str, str] | None = None, failures: int = 0) -> None:
        self.replies = replies
        self.failures = failures
        self.urls: list[str] = []
        self.links: list[FakeLink] = []

    async def __call__(self, url: str) -> FakeLink:
        self.urls.append(url)
        if self.failures:
            self.failures -= 1
            raise ConnectionRefusedError("connection refused")
        link = FakeLink(self.replies)
        self.links.append(link)
        return link

    @property
    def link(self) -> FakeLink:
        return self.links[-1]


class FakePage:
    """Live page driven by the test."""

    def __init__(
        self,
        html: str = "<html><head><title>Home</title></head><body><p>Hello</p></body></html>",
        url: str = "https://example.com/",
    ) -> None:
        self.html = html
        self.url = url
        self.viewport = (1280, 720)
        self.listeners: list[Any] = []
        self.scrolled: list[tuple[float, float]] = []
        self.fail_content = False

    async def content(self) -> str:
        if self.fail_content:
            raise RuntimeError("page crashed")
        return self.html

    async def scroll_to(self, x: float, y: float) -> None:
        self.scrolled.append((x, y))

    def subscribe(self, listener: Any) -> Any:
        self.listeners.append(listener)
        return lambda: self.listeners.remove(listener)

    def fire(self, event: Any) -> None:
        for listener in list(self.listeners):
            listener(event)


class FakeHost:
    """Surface host with one capturable tab."""

    def __init__(
        self,
        url: str | None = "https://example.com/",
        pipeline_ready: bool = True,
        injectable: bool = True,
        inject_makes_ready: bool = True,
    ) -> None:
        self.surface = Surface(id=1, url=url) if url is not None else None
        self.ready: set[int] = {1} if pipeline_ready else set()
        self.injectable = injectable
        self.inject_makes_ready = inject_makes_ready
        self.fail_stop = False
        self.listeners: list[SurfaceListener] = []
        self.sent: list[tuple[int, dict[str, Any]]] = []
        self.injected: list[int] = []

    async def active_surface(self) -> Surface | None:
        return self.surface

    async def inject(self, surface_id: int) -> None:
        self.injected.append(surface_id)
        if not self.injectable:
            raise InjectionError("cannot script this page")
        if self.inject_makes_ready:
            self.ready.add(surface_id)

    async def send(self, surface_id: int, message: dict[str, Any]) -> dict[str, Any]:
        self.sent.append((surface_id, message))
        if surface_id not in self.ready:
            raise SurfaceUnreachableError(surface_id)
        if self.fail_stop and message.get("type") == "STOP_CAPTURE":
            raise RuntimeError("tab crashed")
        return {"success": True}

    def add_listener(self, listener: SurfaceListener) -> None:
        self.listeners.append(listener)

    def emit(self, surface_id: int, message: dict[str, Any]) -> None:
        for listener in self.listeners:
            listener.on_capture_message(surface_id, message)

    def activate(self, surface_id: int, url: str = "https://example.com/other") -> None:
        """Bring another tab to the foreground."""
        self.surface = Surface(id=surface_id, url=url)
        for listener in self.listeners:
            listener.on_surface_activated(surface_id)

    def instructions(self, surface_id: int = 1) -> list[str]:
        return [m["type"] for sid, m in self.sent if sid == surface_id]


def structural() -> MutationBatch:
    return MutationBatch(records=[MutationRecord(kind="childList", added=1)])


def visibility() -> MutationBatch:
    return MutationBatch(records=[MutationRecord(kind="attributes", attribute="class")])


@pytest.fixture
def fast_timings():
    """Capture timings short enough for tests."""
    return CaptureTimings(
        pointer_interval=0.05,
        scroll_interval=0.05,
        visibility_quiet=0.01,
        structural_quiet=0.03,
        navigation_settle=0.01,
    )


@pytest.fixture
def fake_page():
    return FakePage()


@pytest.fixture
def fake_host():
    return FakeHost()


@pytest.fixture
def connector():
    """Connector whose server accepts joins and leaves."""
    return FakeConnector(replies={"phx_join": "ok", "phx_leave": "ok"})


@pytest.fixture
def config(tmp_path):
    """Configuration isolated from the user's home directory."""
    return CoViewConfig(
        push_timeout=1.0,
        inject_settle=0,
        state_file=tmp_path / "session.toml",
    )


@pytest.fixture
def store(config):
    return SessionStateStore(config.state_file)


@pytest.fixture
def socket_factory(connector):
    """Build sockets running on the fake connector with fast reconnects."""

    def factory(endpoint: str) -> Socket:
        return Socket(endpoint, timeout=1.0, reconnect_after=lambda _tries: 0.01, connector=connector)

    return factory
