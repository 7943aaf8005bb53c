"""Leader-side capture: snapshot, sanitize and stream page updates."""

from .events import (
    Click,
    LivePage,
    LocationChange,
    MutationBatch,
    MutationRecord,
    PointerMove,
    ScrollChange,
)
from .pipeline import CapturePipeline, MutationTier, classify
from .sanitize import sanitize_document

__all__ = [
    "CapturePipeline",
    "Click",
    "LivePage",
    "LocationChange",
    "MutationBatch",
    "MutationRecord",
    "MutationTier",
    "PointerMove",
    "ScrollChange",
    "classify",
    "sanitize_document",
]
