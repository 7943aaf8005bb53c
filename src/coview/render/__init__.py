"""Viewer-side rendering: readiness-gated full and incremental updates."""

from .morph import morph
from .renderer import RenderSurface, Renderer, SurfaceState

__all__ = ["RenderSurface", "Renderer", "SurfaceState", "morph"]
