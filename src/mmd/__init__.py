"""mmd - MCP server that renders Mermaid diagrams and publishes the results.

Features:
- render_mermaid / batch_render_mermaid tools (PNG, SVG, PDF)
- Warm headless Chromium engine, or the mmdc CLI
- Delivery via a local static file server or remote upload
  (MinIO, Imgur, SM.MS, custom endpoint) with retention windows

Usage:
    # Start MCP server (stdio transport)
    mmd-serve

    # With config
    mmd-serve --config .mmd/mmd-serve.yaml

    # Delete expired uploads
    mmd-serve sweep
"""

from importlib.metadata import version
from typing import Any

__version__ = version("mmd-render-mcp")

__all__ = ["__version__", "main"]


def __getattr__(name: str) -> Any:
    """Lazy import for server module to avoid loading config at import time."""
    if name == "main":
        from mmd.server import main

        return main
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
