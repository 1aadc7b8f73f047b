"""Batch coordinator - many renders, one aggregated result.

Items run with bounded concurrency and their results are returned in input
order. One item's failure never aborts the batch.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from mmd.errors import EngineError, InputError
from mmd.logging import LogSpan, logger
from mmd.models import BatchResult, OutputFormat, RenderOptions, RenderRequest, RenderResult

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from mmd.models import BatchRequest

__all__ = ["BatchCoordinator"]

CANCELLED_KIND = "cancelled"


class BatchCoordinator:
    """Runs batch items through a render callable.

    Args:
        render: Coroutine function rendering a single request (usually
            RenderOrchestrator.render, possibly wrapped with retry)
        max_concurrent: Concurrent renders per batch (1 = sequential)
    """

    def __init__(
        self,
        render: Callable[[RenderRequest], Awaitable[RenderResult]],
        *,
        max_concurrent: int = 2,
    ) -> None:
        self._render = render
        self.max_concurrent = max(1, max_concurrent)
        self._shutdown = asyncio.Event()

    @property
    def accepting(self) -> bool:
        return not self._shutdown.is_set()

    def shutdown(self) -> None:
        """Stop starting new items. In-flight renders run to completion."""
        if not self._shutdown.is_set():
            logger.info("Batch coordinator shutting down")
        self._shutdown.set()

    async def render_batch(self, batch: BatchRequest) -> BatchResult:
        start = time.perf_counter()
        semaphore = asyncio.Semaphore(self.max_concurrent)

        with LogSpan(
            span="render.batch", items=len(batch.requests), concurrency=self.max_concurrent
        ) as span:
            global_error: InputError | None = None
            try:
                global_options = self._parse_global(batch.global_options)
            except InputError as e:
                global_options, global_error = None, e

            async def run(index: int, item: dict[str, Any]) -> RenderResult:
                async with semaphore:
                    if self._shutdown.is_set():
                        return _failure(item, "batch cancelled before this item started", CANCELLED_KIND)
                    if global_error is not None:
                        return _failure(item, global_error.user_message, global_error.kind)
                    try:
                        request = self._build_request(item, global_options)
                        return await self._render(request)
                    except InputError as e:
                        logger.debug(f"batch item {index} rejected: {e.detail}")
                        return _failure(item, e.user_message, e.kind)
                    except Exception as e:
                        logger.exception(f"batch item {index} failed")
                        error = EngineError(f"{type(e).__name__}: {e}")
                        return _failure(item, error.user_message, error.kind)

            results = list(
                await asyncio.gather(
                    *(run(i, item) for i, item in enumerate(batch.requests))
                )
            )

            success_count = sum(1 for r in results if r.success)
            result = BatchResult(
                results=results,
                success_count=success_count,
                failure_count=len(results) - success_count,
                total_elapsed_ms=int((time.perf_counter() - start) * 1000),
            )
            span.add(succeeded=result.success_count, failed=result.failure_count)
        return result

    @staticmethod
    def _parse_global(options: dict[str, Any] | None) -> RenderOptions | None:
        if not options:
            return None
        try:
            return RenderOptions.model_validate(options)
        except ValidationError as e:
            raise InputError(f"globalOptions: {_first_error(e)}") from e

    @staticmethod
    def _build_request(item: Any, global_options: RenderOptions | None) -> RenderRequest:
        if not isinstance(item, dict):
            raise InputError("each request must be an object with a 'code' field")
        code = item.get("code")
        if not isinstance(code, str) or not code.strip():
            raise InputError("'code' is required and must be a non-empty string")
        try:
            item_options = RenderOptions.model_validate(item.get("options") or {})
        except ValidationError as e:
            raise InputError(f"options: {_first_error(e)}") from e
        try:
            options = RenderOptions.merged(global_options, item_options)
        except ValidationError as e:
            raise InputError(f"options: {_first_error(e)}") from e
        return RenderRequest(code=code, options=options)


def _failure(item: Any, message: str, kind: str) -> RenderResult:
    fmt = OutputFormat.RASTER.value
    if isinstance(item, dict) and isinstance(item.get("options"), dict):
        raw = item["options"].get("format") or item["options"].get("outputFormat")
        if raw is not None:
            try:
                fmt = OutputFormat.parse(raw).value
            except ValueError:
                fmt = str(raw)
    return RenderResult(success=False, format=fmt, error_message=message, error_kind=kind)


def _first_error(error: ValidationError) -> str:
    first = error.errors()[0]
    loc = ".".join(str(p) for p in first["loc"])
    return f"{loc}: {first['msg']}" if loc else first["msg"]
