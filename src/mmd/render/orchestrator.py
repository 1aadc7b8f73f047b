"""Render orchestrator - one diagram from source text to artifact.

State machine per request::

    PENDING -> STAGING_INPUT -> INVOKING -> EXTRACTING_OUTPUT -> CLEANING_UP -> DONE

The staged source file is removed on every exit path. Output bytes go to a
hidden sibling file first and are renamed into place, so a caller never sees
a partial artifact. Errors become failure results; nothing is raised past
render().
"""

from __future__ import annotations

import asyncio
import contextlib
import time
import uuid
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

import aiofiles

from mmd.errors import (
    DeliveryError,
    EngineError,
    EngineStartupFailure,
    EngineTimeout,
    ExtractionError,
    InputError,
    MermaidRenderError,
)
from mmd.logging import LogSpan, logger
from mmd.models import DeliveryMode, OutputFormat, PixelSize, RenderResult
from mmd.paths import resolve_path
from mmd.render.engine import EngineOptions
from mmd.render.raster import fit_to_canvas

if TYPE_CHECKING:
    from mmd.delivery.resolver import DeliveryResolver
    from mmd.models import RenderOptions, RenderRequest
    from mmd.render.engine import EngineOutcome, RenderEngine

__all__ = ["RETRYABLE_KINDS", "RenderOrchestrator", "RenderState", "render_with_retry"]

RETRYABLE_KINDS = frozenset({EngineStartupFailure.kind, EngineTimeout.kind})


class RenderState(str, Enum):
    PENDING = "pending"
    STAGING_INPUT = "staging_input"
    INVOKING = "invoking"
    EXTRACTING_OUTPUT = "extracting_output"
    CLEANING_UP = "cleaning_up"
    DONE = "done"


class RenderOrchestrator:
    """Stage, invoke, extract, clean up, then optionally deliver."""

    def __init__(
        self,
        engine: RenderEngine,
        *,
        output_dir: Path,
        temp_dir: Path,
        timeout: float = 60.0,
        resolver: DeliveryResolver | None = None,
    ) -> None:
        self.engine = engine
        self.output_dir = output_dir
        self.temp_dir = temp_dir
        self.timeout = timeout
        self.resolver = resolver
        self._staged: set[Path] = set()

    async def render(self, request: RenderRequest) -> RenderResult:
        """Render one request. Always returns a result, never raises."""
        start = time.perf_counter()
        fmt = request.options.format
        render_id = uuid.uuid4().hex[:8]

        with LogSpan(span="render.single", renderId=render_id, format=fmt.value) as span:
            try:
                result = await self._run(request, render_id, start)
            except MermaidRenderError as e:
                result = RenderResult(
                    success=False,
                    format=fmt.value,
                    elapsed_ms=_elapsed_ms(start),
                    error_message=e.user_message,
                    error_kind=e.kind,
                )
                span.add(error=e.user_message, errorKind=e.kind)
            except Exception as e:
                logger.exception(f"render {render_id}: unexpected failure")
                error = EngineError(f"{type(e).__name__}: {e}")
                result = RenderResult(
                    success=False,
                    format=fmt.value,
                    elapsed_ms=_elapsed_ms(start),
                    error_message=error.user_message,
                    error_kind=error.kind,
                )
                span.add(error=error.user_message, errorKind=error.kind)
            span.add(success=result.success, elapsedMs=result.elapsed_ms)
            if result.byte_size is not None:
                span.add(bytes=result.byte_size)
            if result.delivery_error:
                span.add(deliveryError=result.delivery_error)
        return result

    async def _run(self, request: RenderRequest, render_id: str, start: float) -> RenderResult:
        options = request.options
        self._transition(render_id, RenderState.PENDING)
        if not request.code or not request.code.strip():
            raise InputError("diagram code must not be empty")

        output_path = self.resolve_output_path(options)
        staged = self.temp_dir / f"mmd-{uuid.uuid4().hex}.mmd"
        engine_options = EngineOptions.from_render_options(options, self.timeout)

        self._staged.add(staged)
        try:
            self._transition(render_id, RenderState.STAGING_INPUT)
            await self._stage(staged, request.code)

            self._transition(render_id, RenderState.INVOKING)
            async with self.engine.invoke(staged, engine_options) as outcome:
                self._transition(render_id, RenderState.EXTRACTING_OUTPUT)
                payload, pixel_size = await self._extract(outcome, engine_options)
                await self._write_atomic(output_path, payload)
        finally:
            self._transition(render_id, RenderState.CLEANING_UP)
            await asyncio.to_thread(self._discard, staged)

        online_url, delivery_error = await self._deliver(output_path, options)
        self._transition(render_id, RenderState.DONE)

        return RenderResult(
            success=True,
            format=options.format.value,
            elapsed_ms=_elapsed_ms(start),
            artifact_path=str(output_path),
            online_url=online_url,
            delivery_error=delivery_error,
            pixel_size=pixel_size,
            byte_size=len(payload),
        )

    def resolve_output_path(self, options: RenderOptions) -> Path:
        """Explicit outputPath, or a unique name in the output directory."""
        generated = f"mermaid-{uuid.uuid4().hex}{options.format.extension}"
        if not options.output_path:
            return self.output_dir / generated
        path = resolve_path(options.output_path)
        if path.is_dir():
            return path / generated
        return path

    def remove_staged(self) -> int:
        """Remove staging files left by renders that never reached cleanup."""
        staged = list(self._staged)
        for path in staged:
            self._discard(path)
        return len(staged)

    def _discard(self, staged: Path) -> None:
        self._staged.discard(staged)
        try:
            staged.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove staging file {staged}: {e}")

    @staticmethod
    def _transition(render_id: str, state: RenderState) -> None:
        logger.debug(f"render {render_id}: {state.value}")

    async def _stage(self, staged: Path, code: str) -> None:
        try:
            await asyncio.to_thread(staged.parent.mkdir, parents=True, exist_ok=True)
            async with aiofiles.open(staged, "w", encoding="utf-8") as f:
                await f.write(code)
        except OSError as e:
            raise EngineStartupFailure(f"cannot stage diagram source in {staged.parent}: {e}") from e

    async def _extract(
        self, outcome: EngineOutcome, options: EngineOptions
    ) -> tuple[bytes, PixelSize | None]:
        try:
            if options.output_format is OutputFormat.VECTOR:
                markup = await outcome.svg_markup()
                if not markup or "<svg" not in markup:
                    raise ExtractionError("rendered root element has no vector markup")
                payload = markup.encode("utf-8")
                pixel_size = outcome.bounding_box
            elif options.output_format is OutputFormat.DOCUMENT:
                payload = await outcome.pdf_document()
                pixel_size = PixelSize(width=options.width, height=options.height)
            else:
                captured = await outcome.raster_png()
                if not captured:
                    raise ExtractionError("engine returned an empty image")
                payload, width, height = await asyncio.to_thread(
                    fit_to_canvas,
                    captured,
                    options.width,
                    options.height,
                    options.background_color,
                )
                pixel_size = PixelSize(width=width, height=height)
        except MermaidRenderError:
            raise
        except Exception as e:
            raise ExtractionError(f"{type(e).__name__}: {e}") from e

        if not payload:
            raise ExtractionError("zero-byte output")
        return payload, pixel_size

    async def _write_atomic(self, path: Path, payload: bytes) -> None:
        partial = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.part")
        try:
            await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
            async with aiofiles.open(partial, "wb") as f:
                await f.write(payload)
            await asyncio.to_thread(partial.replace, path)
        except OSError as e:
            await asyncio.to_thread(_unlink_quietly, partial)
            raise ExtractionError(f"cannot write {path}: {e}") from e
        except BaseException:
            await asyncio.to_thread(_unlink_quietly, partial)
            raise

    async def _deliver(
        self, artifact: Path, options: RenderOptions
    ) -> tuple[str | None, str | None]:
        if self.resolver is None:
            mode = options.effective_delivery_mode(DeliveryMode.NONE)
            if mode is DeliveryMode.NONE:
                return None, None
            return None, DeliveryError("delivery is not configured").user_message

        mode = self.resolver.mode_for(options)
        if mode is DeliveryMode.NONE:
            return None, None
        try:
            return await self.resolver.resolve_url(artifact, options, mode=mode), None
        except DeliveryError as e:
            return None, e.user_message
        except Exception as e:
            logger.exception(f"Delivery of {artifact.name} failed")
            return None, DeliveryError(f"{type(e).__name__}: {e}").user_message


async def render_with_retry(
    orchestrator: RenderOrchestrator,
    request: RenderRequest,
    *,
    attempts: int = 3,
    backoff: float = 1.0,
) -> RenderResult:
    """Retry whole renders that failed on an unavailable or timed-out engine.

    Invalid diagrams and extraction failures are returned immediately.
    Backoff is linear: attempt * backoff seconds.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        result = await orchestrator.render(request)
        if result.success or result.error_kind not in RETRYABLE_KINDS or attempt == attempts:
            return result
        logger.warning(
            f"Render attempt {attempt}/{attempts} failed ({result.error_kind}); retrying"
        )
        await asyncio.sleep(attempt * backoff)
    return result  # pragma: no cover


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _unlink_quietly(path: Path) -> None:
    with contextlib.suppress(OSError):
        path.unlink(missing_ok=True)
