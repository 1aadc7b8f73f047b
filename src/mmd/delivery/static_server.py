"""Local static file server for rendered artifacts.

A small Starlette app served by uvicorn inside the running event loop:
``/health``, ``/files`` over the output directory, and ``/api/files`` to
list or delete artifacts. The listening socket is bound up front so bind
errors surface as DeliveryError instead of uvicorn exiting the process.
"""

from __future__ import annotations

import asyncio
import contextlib
import socket
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import quote

import uvicorn
from starlette.applications import Starlette
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route
from starlette.staticfiles import StaticFiles

from mmd.errors import DeliveryError
from mmd.logging import LogSpan, logger

if TYPE_CHECKING:
    from collections.abc import Iterator

    from starlette.requests import Request

__all__ = ["StaticFileServer"]

SERVER_UNAVAILABLE = "File server unavailable"
STARTUP_TIMEOUT_SECONDS = 5.0
SHUTDOWN_TIMEOUT_SECONDS = 5.0

ARTIFACT_SUFFIXES = frozenset({".png", ".svg", ".pdf"})

_WILDCARD_HOSTS = frozenset({"", "0.0.0.0", "::"})


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the host."""

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield

    def install_signal_handlers(self) -> None:
        return None


class StaticFileServer:
    """Serves the output directory under ``/files``.

    Args:
        root: Directory to expose
        host: Bind host
        port: Bind port (0 picks a free port)
    """

    def __init__(self, root: Path, *, host: str = "localhost", port: int = 3000) -> None:
        self.root = root
        self.host = host
        self.port = port
        self._server: _EmbeddedServer | None = None
        self._task: asyncio.Task[None] | None = None
        self._socket: socket.socket | None = None
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def base_url(self) -> str:
        host = "localhost" if self.host in _WILDCARD_HOSTS else self.host
        if ":" in host:
            host = f"[{host}]"
        return f"http://{host}:{self.port}"

    def build_app(self) -> Starlette:
        async def health(request: Request) -> JSONResponse:
            return JSONResponse({"status": "ok", "root": str(self.root)})

        async def list_files(request: Request) -> JSONResponse:
            try:
                paths = await asyncio.to_thread(self._list_artifacts)
            except OSError as e:
                return JSONResponse(
                    {"error": "cannot list files", "details": str(e)}, status_code=500
                )
            files = [{"name": p.name, "url": self.file_url(p), "path": str(p)} for p in paths]
            return JSONResponse({"files": files})

        async def delete_file(request: Request) -> JSONResponse:
            filename = request.path_params["filename"]
            try:
                relative, target = self._relative_to_root(self.root / filename)
            except DeliveryError:
                return JSONResponse({"error": "invalid file path"}, status_code=400)
            if relative == Path(".") or target.is_dir():
                return JSONResponse({"error": "not a file"}, status_code=400)
            try:
                await asyncio.to_thread(target.unlink)
            except FileNotFoundError:
                return JSONResponse({"error": "file not found"}, status_code=404)
            except OSError as e:
                return JSONResponse(
                    {"error": "cannot delete file", "details": str(e)}, status_code=500
                )
            logger.info(f"Deleted served file {target}")
            return JSONResponse({"success": True, "name": filename})

        return Starlette(
            routes=[
                Route("/health", health),
                Route("/api/files", list_files, methods=["GET"]),
                Route("/api/files/{filename:path}", delete_file, methods=["DELETE"]),
                Mount("/files", app=StaticFiles(directory=self.root, check_dir=False), name="files"),
            ]
        )

    def _list_artifacts(self) -> list[Path]:
        if not self.root.is_dir():
            return []
        return sorted(
            p for p in self.root.iterdir() if p.is_file() and p.suffix.lower() in ARTIFACT_SUFFIXES
        )

    def _relative_to_root(self, path: Path) -> tuple[Path, Path]:
        resolved = path.resolve()
        try:
            return resolved.relative_to(self.root.resolve()), resolved
        except ValueError as e:
            raise DeliveryError(
                f"{path} is outside the served directory {self.root}",
                prefix=SERVER_UNAVAILABLE,
            ) from e

    def file_url(self, path: Path) -> str:
        """URL of an artifact under the served root.

        Raises:
            DeliveryError: If the path is outside the served directory
        """
        relative = self._relative_to_root(path)[0]
        return f"{self.base_url}/files/{quote(relative.as_posix())}"

    def _bind(self, host: str, port: int) -> socket.socket:
        try:
            family = socket.AF_INET6 if ":" in host else socket.AF_INET
            sock = socket.create_server((host, port), family=family)
        except OSError as e:
            raise DeliveryError(f"cannot bind {host}:{port}: {e}", prefix=SERVER_UNAVAILABLE) from e
        sock.setblocking(False)
        return sock

    async def start(self, *, host: str | None = None, port: int | None = None) -> str:
        """Start serving (restarting if host or port changed).

        Returns:
            Base URL of the running server
        """
        async with self._lock:
            requested_host = host or self.host
            requested_port = self.port if port is None else port
            if self.is_running:
                if requested_host == self.host and (port is None or requested_port == self.port):
                    return self.base_url
                await self._stop_locked()

            with LogSpan(span="static_server.start", host=requested_host, port=requested_port) as span:
                self.root.mkdir(parents=True, exist_ok=True)
                sock = self._bind(requested_host, requested_port)
                config = uvicorn.Config(
                    self.build_app(), log_level="warning", access_log=False, lifespan="off"
                )
                server = _EmbeddedServer(config)
                task = asyncio.create_task(server.serve(sockets=[sock]))

                deadline = asyncio.get_running_loop().time() + STARTUP_TIMEOUT_SECONDS
                while not server.started:
                    if task.done() or asyncio.get_running_loop().time() > deadline:
                        server.should_exit = True
                        sock.close()
                        reason = "startup timed out"
                        if task.done():
                            error = None if task.cancelled() else task.exception()
                            reason = f"server exited during startup: {error}"
                        raise DeliveryError(reason, prefix=SERVER_UNAVAILABLE)
                    await asyncio.sleep(0.01)

                self.host = requested_host
                self.port = sock.getsockname()[1]
                self._server, self._task, self._socket = server, task, sock
                span.add(url=self.base_url)

        logger.info(f"Static file server at {self.base_url}/files -> {self.root}")
        return self.base_url

    async def stop(self) -> bool:
        """Stop serving. Returns False if the server was not running."""
        async with self._lock:
            if not self.is_running:
                return False
            with LogSpan(span="static_server.stop", port=self.port):
                await self._stop_locked()
            return True

    async def _stop_locked(self) -> None:
        server, task, sock = self._server, self._task, self._socket
        self._server = self._task = self._socket = None
        if server is not None:
            server.should_exit = True
        if task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=SHUTDOWN_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                if server is not None:
                    server.force_exit = True
                await task
        if sock is not None:
            sock.close()
