"""Render service - owns configuration and every long-lived component.

The MCP tools and the CLI talk only to RenderService. Configuration is held
here (not in module globals) and replaced as a whole by update_config().
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from mmd.delivery.resolver import DeliveryResolver
from mmd.delivery.static_server import StaticFileServer
from mmd.errors import DeliveryError, InputError
from mmd.logging import LogSpan, logger
from mmd.models import BatchRequest, RenderOptions, RenderRequest, RenderResult
from mmd.render.batch import BatchCoordinator
from mmd.render.engine import create_engine
from mmd.render.orchestrator import RenderOrchestrator, render_with_retry

if TYPE_CHECKING:
    from mmd.config import ServerConfig
    from mmd.delivery.resolver import Uploader
    from mmd.models import BatchResult, SweepReport
    from mmd.render.engine import RenderEngine

__all__ = ["RenderService"]


class RenderService:
    """Facade over engine, orchestrator, batch coordinator and delivery.

    Args:
        config: Initial configuration
        engine: Engine to use instead of the configured one (tests)
        uploader: Remote backend to use instead of the configured one (tests)
    """

    def __init__(
        self,
        config: ServerConfig,
        *,
        engine: RenderEngine | None = None,
        uploader: Uploader | None = None,
    ) -> None:
        self._config = config
        self._owns_engine = engine is None
        self._engine: RenderEngine = engine or create_engine(config.engine)
        self._uploader_override = uploader
        self._sweeper: asyncio.Task[None] | None = None
        self.static_server = self._new_static_server(config)
        self._wire()

    @property
    def config(self) -> ServerConfig:
        return self._config

    @property
    def engine(self) -> RenderEngine:
        return self._engine

    @staticmethod
    def _new_static_server(config: ServerConfig) -> StaticFileServer:
        return StaticFileServer(config.get_output_dir(), host=config.host, port=config.port)

    def _wire(self, uploader: Uploader | None = None) -> None:
        config = self._config
        self.resolver = DeliveryResolver(
            config.delivery,
            static_server=self.static_server,
            uploader=uploader or self._uploader_override,
        )
        self.orchestrator = RenderOrchestrator(
            self._engine,
            output_dir=config.get_output_dir(),
            temp_dir=config.get_temp_dir(),
            timeout=config.engine.timeout_seconds,
            resolver=self.resolver,
        )
        self.batch = BatchCoordinator(
            self._render_request, max_concurrent=config.batch.max_concurrent
        )

    async def _render_request(self, request: RenderRequest) -> RenderResult:
        engine_config = self._config.engine
        if engine_config.retry_attempts > 1:
            return await render_with_retry(
                self.orchestrator,
                request,
                attempts=engine_config.retry_attempts,
                backoff=engine_config.retry_backoff_seconds,
            )
        return await self.orchestrator.render(request)

    # -- rendering -----------------------------------------------------------

    async def render(self, code: Any, options: dict[str, Any] | None = None) -> RenderResult:
        """Render one diagram.

        Raises:
            InputError: If code or options are invalid
        """
        if not isinstance(code, str) or not code.strip():
            raise InputError("'code' is required and must be a non-empty string")
        if options is not None and not isinstance(options, dict):
            raise InputError("'options' must be an object")
        try:
            parsed = RenderOptions.model_validate(options or {})
        except ValidationError as e:
            raise InputError(_describe(e)) from e
        return await self._render_request(RenderRequest(code=code, options=parsed))

    async def render_batch(
        self, requests: Any, global_options: dict[str, Any] | None = None
    ) -> BatchResult:
        """Render many diagrams; per-item failures stay in the results.

        Raises:
            InputError: If requests is not a list
        """
        if not isinstance(requests, list):
            raise InputError("'requests' must be an array")
        if global_options is not None and not isinstance(global_options, dict):
            raise InputError("'globalOptions' must be an object")
        batch = BatchRequest(requests=requests, global_options=global_options)
        return await self.batch.render_batch(batch)

    # -- delivery ------------------------------------------------------------

    async def start_static_server(self, port: int | None = None, host: str | None = None) -> str:
        if port is not None and not 0 <= port <= 65535:
            raise InputError("port must be between 0 and 65535")
        return await self.static_server.start(host=host, port=port)

    async def stop_static_server(self) -> bool:
        return await self.static_server.stop()

    async def cleanup_expired_uploads(self) -> SweepReport:
        with LogSpan(span="delivery.sweep", backend=self._config.delivery.remote_backend) as span:
            report = await self.resolver.sweep_expired()
            span.add(deleted=report.deleted_count, errors=len(report.errors))
        return report

    def start_background_tasks(self) -> None:
        """Start the periodic expired-upload sweep if configured."""
        interval = self._config.delivery.sweep_interval_minutes
        if interval <= 0 or self._sweeper is not None:
            return
        self._sweeper = asyncio.create_task(self._sweep_loop(interval * 60))
        logger.info(f"Expired-upload sweep every {interval} min")

    async def _sweep_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.cleanup_expired_uploads()
            except DeliveryError as e:
                logger.warning(f"Scheduled sweep failed: {e.user_message}")

    # -- configuration -------------------------------------------------------

    def get_config(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "config": self._config.to_public_dict(),
            "staticServerRunning": self.static_server.is_running,
        }
        if self.static_server.is_running:
            payload["staticServerUrl"] = self.static_server.base_url
        return payload

    async def update_config(self, changes: Any) -> ServerConfig:
        """Apply a partial config update.

        The previous configuration stays in place if validation fails.

        Raises:
            InputError: If the update is invalid
        """
        keys = sorted(changes) if isinstance(changes, dict) else []
        with LogSpan(span="config.update", keys=keys):
            try:
                updated = self._config.with_updates(changes)
            except ValueError as e:
                raise InputError(str(e)) from e

            previous = self._config
            self._config = updated

            old_resolver = self.resolver
            old_engine = self._engine
            if self._owns_engine and updated.engine != previous.engine:
                self._engine = create_engine(updated.engine)

            server_changed = (
                updated.get_output_dir() != previous.get_output_dir()
                or updated.host != previous.host
                or updated.port != previous.port
            )
            if server_changed:
                old_server = self.static_server
                was_running = await old_server.stop()
                self.static_server = self._new_static_server(updated)
                if was_running:
                    same_address = updated.host == previous.host and updated.port == previous.port
                    await self._restart_static_server(old_server, same_address=same_address)

            delivery_changed = updated.delivery != previous.delivery
            self._wire(None if delivery_changed else old_resolver.built_uploader)
            if delivery_changed and old_resolver.built_uploader is not self._uploader_override:
                await old_resolver.aclose()
            if old_engine is not self._engine:
                await old_engine.aclose()
        return updated

    async def _restart_static_server(self, old_server: StaticFileServer, *, same_address: bool) -> None:
        # Keep the bound port (possibly picked by the OS) when only the root moved
        port = old_server.port if same_address else None
        try:
            await self.static_server.start(host=old_server.host if same_address else None, port=port)
        except DeliveryError as e:
            logger.warning(f"Static file server not restarted: {e.user_message}")

    # -- lifecycle -----------------------------------------------------------

    async def aclose(self) -> None:
        """Stop accepting work and release every resource."""
        with LogSpan(span="service.close"):
            self.batch.shutdown()
            if self._sweeper is not None:
                self._sweeper.cancel()
                try:
                    await self._sweeper
                except asyncio.CancelledError:
                    pass
                self._sweeper = None
            await self.static_server.stop()
            await self.resolver.aclose()
            if self._owns_engine:
                await self._engine.aclose()
            removed = await asyncio.to_thread(self.orchestrator.remove_staged)
            if removed:
                logger.debug(f"Removed {removed} stale staging files")


def _describe(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item["loc"])
        parts.append(f"{loc}: {item['msg']}" if loc else item["msg"])
    return "; ".join(parts)
