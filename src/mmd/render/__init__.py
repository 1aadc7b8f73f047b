"""Rendering: engines, the per-diagram orchestrator and the batch coordinator."""

from mmd.render.batch import BatchCoordinator
from mmd.render.engine import (
    BrowserEngine,
    CliEngine,
    EngineOptions,
    SessionPool,
    create_engine,
)
from mmd.render.orchestrator import RenderOrchestrator, RenderState, render_with_retry

__all__ = [
    "BatchCoordinator",
    "BrowserEngine",
    "CliEngine",
    "EngineOptions",
    "RenderOrchestrator",
    "RenderState",
    "SessionPool",
    "create_engine",
    "render_with_retry",
]
