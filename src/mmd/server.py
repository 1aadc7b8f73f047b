"""FastMCP server exposing Mermaid rendering tools.

Tools:
  render_mermaid(code, options?)                 -> RenderResult
  batch_render_mermaid(requests, globalOptions?) -> BatchResult
  start_static_server(port?, host?)              -> {success, baseUrl}
  stop_static_server()                           -> {success}
  update_config(config)                          -> {success, config}
  get_config()                                   -> {config, staticServerRunning}
  cleanup_expired_uploads()                      -> SweepReport

Every tool returns JSON text. Failures come back as {"success": false, ...};
no exception escapes a tool call.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from fastmcp import FastMCP

from mmd.config import get_config
from mmd.errors import MermaidRenderError
from mmd.logging import LogSpan, configure_logging, logger
from mmd.service import RenderService
from mmd.utils.format import error_payload, serialize_result

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

INSTRUCTIONS = """\
Render Mermaid diagrams to PNG (raster), SVG (vector) or PDF (document).

- render_mermaid renders one diagram; batch_render_mermaid renders many and
  reports per-item results in input order.
- Set options.deliveryMode to "localServer" or "remoteUpload" (or
  generateOnlineLink: true) to get an onlineUrl for the artifact.
- Failed results carry errorKind: invalid_diagram means fix the source;
  engine_unavailable or engine_timeout means retry later; a deliveryError
  next to success=true means the file exists but could not be published.
"""

# Global service instance
_service: RenderService | None = None


def _get_service() -> RenderService:
    """Get or create the render service from the loaded config."""
    global _service

    if _service is None:
        _service = RenderService(get_config())

    return _service


@asynccontextmanager
async def _lifespan(_server: FastMCP) -> AsyncIterator[None]:
    """Manage server lifecycle - startup and shutdown."""
    global _service

    with LogSpan(span="mcp.server.start") as start_span:
        service = _get_service()
        service.start_background_tasks()
        start_span.add(engine=service.engine.name, outputDir=str(service.config.get_output_dir()))

    try:
        yield
    finally:
        with LogSpan(span="mcp.server.stop"):
            await service.aclose()
            _service = None


mcp = FastMCP(
    name="mmd",
    instructions=INSTRUCTIONS,
    lifespan=_lifespan,
)


async def _run_tool(tool: str, call: Callable[[RenderService], Awaitable[Any]]) -> str:
    """Run a tool body against the service and serialize the outcome."""
    try:
        result = await call(_get_service())
    except MermaidRenderError as e:
        logger.info(f"{tool}: {e.user_message}")
        return serialize_result(error_payload(e.user_message, e.kind))
    except Exception as e:
        logger.exception(f"{tool} failed")
        return serialize_result(
            error_payload(f"Internal error: {type(e).__name__}: {e}", "internal_error")
        )
    return serialize_result(result)


async def render_mermaid(code: str, options: dict[str, Any] | None = None) -> str:
    """Render a Mermaid diagram to an image file.

    Args:
        code: Mermaid diagram source (e.g. "graph TD\\nA-->B")
        options: format (png|svg|pdf), outputPath, width, height,
            backgroundColor, theme (default|dark|forest|neutral),
            resolutionScale (or dpi), deliveryMode (none|localServer|remoteUpload),
            generateOnlineLink, uploadRetentionDays (1-30, default 7)

    Returns:
        RenderResult JSON: success, artifactPath, onlineUrl, errorMessage,
        errorKind, deliveryError, format, pixelSize, elapsedMs, byteSize
    """
    return await _run_tool("render_mermaid", lambda s: s.render(code, options))


async def batch_render_mermaid(
    requests: list[dict[str, Any]],
    globalOptions: dict[str, Any] | None = None,  # noqa: N803
) -> str:
    """Render several Mermaid diagrams.

    Args:
        requests: Items of the form {"code": "...", "options": {...}}
        globalOptions: Options applied to every item; item options win

    Returns:
        BatchResult JSON: results (input order), successCount, failureCount,
        totalElapsedMs
    """

    async def call(service: RenderService) -> dict[str, Any]:
        batch = await service.render_batch(requests, globalOptions)
        return {"success": True, **batch.to_wire()}

    return await _run_tool("batch_render_mermaid", call)


async def start_static_server(port: int | None = None, host: str | None = None) -> str:
    """Start the local file server for rendered artifacts.

    Args:
        port: Port to bind (default from config, 0 picks a free port)
        host: Host to bind (default from config)

    Returns:
        JSON with success and baseUrl; files are served under {baseUrl}/files/
    """

    async def call(service: RenderService) -> dict[str, Any]:
        base_url = await service.start_static_server(port=port, host=host)
        return {"success": True, "baseUrl": base_url, "filesUrl": f"{base_url}/files"}

    return await _run_tool("start_static_server", call)


async def stop_static_server() -> str:
    """Stop the local file server.

    Returns:
        JSON with success and whether the server was running
    """

    async def call(service: RenderService) -> dict[str, Any]:
        was_running = await service.stop_static_server()
        return {"success": True, "wasRunning": was_running}

    return await _run_tool("stop_static_server", call)


async def update_config(config: dict[str, Any]) -> str:
    """Update server configuration at runtime.

    Args:
        config: Partial configuration, e.g. {"outputDir": "./diagrams",
            "delivery": {"remoteBackend": "minio"}}. Invalid updates are
            rejected and the previous configuration is kept.

    Returns:
        JSON with success and the effective configuration (secrets masked)
    """

    async def call(service: RenderService) -> dict[str, Any]:
        updated = await service.update_config(config)
        return {"success": True, "config": updated.to_public_dict()}

    return await _run_tool("update_config", call)


async def get_config_tool() -> str:
    """Get the current server configuration (secrets masked).

    Returns:
        JSON with config and staticServerRunning
    """

    async def call(service: RenderService) -> dict[str, Any]:
        return {"success": True, **service.get_config()}

    return await _run_tool("get_config", call)


async def cleanup_expired_uploads() -> str:
    """Delete uploaded artifacts whose retention window has passed (minio backend).

    Returns:
        JSON with deletedCount, deleted keys and per-object errors
    """

    async def call(service: RenderService) -> dict[str, Any]:
        report = await service.cleanup_expired_uploads()
        return {"success": True, **report.to_wire()}

    return await _run_tool("cleanup_expired_uploads", call)


mcp.tool(
    annotations={
        "title": "Render Mermaid Diagram",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": True,
    }
)(render_mermaid)

mcp.tool(
    annotations={
        "title": "Batch Render Mermaid Diagrams",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": True,
    }
)(batch_render_mermaid)

mcp.tool(
    annotations={
        "title": "Start Static File Server",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False,
    }
)(start_static_server)

mcp.tool(
    annotations={
        "title": "Stop Static File Server",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False,
    }
)(stop_static_server)

mcp.tool(
    annotations={
        "title": "Update Server Config",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False,
    }
)(update_config)

mcp.tool(
    name="get_config",
    annotations={
        "title": "Get Server Config",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False,
    },
)(get_config_tool)

mcp.tool(
    annotations={
        "title": "Clean Up Expired Uploads",
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
        "openWorldHint": True,
    }
)(cleanup_expired_uploads)


def main() -> None:
    """Run the MCP server over stdio transport."""
    config = get_config()
    configure_logging(log_name="serve", level=config.log_level, log_dir=config.get_log_dir_path())
    mcp.run(show_banner=False)
