"""Events a live page reports to its capture pipeline."""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal, Protocol

MutationKind = Literal["childList", "attributes", "characterData"]


@dataclass
class MutationRecord:
    """One observed DOM change."""

    kind: MutationKind
    attribute: str | None = None
    added: int = 0
    removed: int = 0


@dataclass
class MutationBatch:
    """Changes delivered together by the page's mutation observer."""

    records: list[MutationRecord] = field(default_factory=list)


@dataclass
class PointerMove:
    x: float
    y: float


@dataclass
class ScrollChange:
    x: float
    y: float


@dataclass
class Click:
    x: float
    y: float


@dataclass
class LocationChange:
    """The page's client-side address changed (history API or back/forward)."""

    url: str


PageEvent = MutationBatch | PointerMove | ScrollChange | Click | LocationChange
PageListener = Callable[[PageEvent], None]


class LivePage(Protocol):
    """A leader document the capture pipeline can snapshot and observe."""

    @property
    def url(self) -> str: ...

    @property
    def viewport(self) -> tuple[int, int]: ...

    async def content(self) -> str: ...
    async def scroll_to(self, x: float, y: float) -> None: ...
    def subscribe(self, listener: PageListener) -> Callable[[], None]: ...
