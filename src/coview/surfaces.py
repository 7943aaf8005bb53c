"""Leader surfaces (tabs) and the host that manages them for the relay."""

from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import urlparse

# Schemes no capture pipeline can be injected into
RESTRICTED_SCHEMES = frozenset(
    {
        "about",
        "chrome",
        "chrome-extension",
        "chrome-search",
        "devtools",
        "edge",
        "moz-extension",
        "view-source",
    }
)


class SurfaceUnreachableError(RuntimeError):
    """Raised when a surface has no capture pipeline to receive a message."""

    def __init__(self, surface_id: int, reason: str = "no capture pipeline") -> None:
        super().__init__(f"Surface {surface_id} unreachable: {reason}")
        self.surface_id = surface_id


class InjectionError(RuntimeError):
    """Raised when a capture pipeline cannot be installed in a surface."""


@dataclass(frozen=True)
class Surface:
    """A leader browsing context that may be captured."""

    id: int
    url: str


def is_capturable(url: str) -> bool:
    """Whether a pipeline may run on a page at this address."""
    scheme = urlparse(url).scheme.lower()
    return bool(scheme) and scheme not in RESTRICTED_SCHEMES


class SurfaceListener(Protocol):
    """Receives surface events from a host."""

    def on_capture_message(self, surface_id: int, message: dict[str, Any]) -> None: ...
    def on_surface_closed(self, surface_id: int) -> None: ...
    def on_surface_loaded(self, surface_id: int) -> None: ...
    def on_surface_activated(self, surface_id: int) -> None: ...


class SurfaceHost(Protocol):
    """Owns leader surfaces and the capture pipelines injected into them."""

    async def active_surface(self) -> Surface | None: ...
    async def inject(self, surface_id: int) -> None: ...
    async def send(self, surface_id: int, message: dict[str, Any]) -> dict[str, Any]: ...
    def add_listener(self, listener: SurfaceListener) -> None: ...
