"""Structured logging for mmd.

Loguru is configured once per process via configure_logging(). Operations
are wrapped in LogSpan context managers that emit a single structured entry
with timing, attributes and any error raised inside the span.

Example:
    with LogSpan(span="render.single", format="vector") as span:
        result = await orchestrator.render(request)
        span.add(success=result.success, bytes=result.byte_size)
"""

from __future__ import annotations

import os
import sys
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

from loguru import logger

if TYPE_CHECKING:
    from types import TracebackType

__all__ = ["LogSpan", "configure_logging", "logger"]

# Remove Loguru's default stderr handler at import time; stdout/stderr
# belong to the MCP transport until configure_logging() says otherwise.
logger.remove()

_configured: set[str] = set()

_STDERR_FORMAT = "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <7}</level> | {message}"
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <7} | {message} | {extra}"


def configure_logging(
    log_name: str,
    *,
    level: str | None = None,
    log_dir: Path | str | None = None,
    stderr: bool = True,
) -> None:
    """Configure loguru sinks for a process.

    Args:
        log_name: Base name of the log file (e.g., "serve" -> serve.log)
        level: Log level (default: MMD_LOG_LEVEL env var or INFO)
        log_dir: Directory for the rotating file sink (None disables it)
        stderr: Also log to stderr (stdout is reserved for JSON-RPC)
    """
    if log_name in _configured:
        return

    level = (level or os.getenv("MMD_LOG_LEVEL") or "INFO").upper()

    if stderr:
        logger.add(sys.stderr, level=level, format=_STDERR_FORMAT, colorize=False)

    if log_dir is not None:
        log_path = Path(log_dir).expanduser()
        log_path.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_path / f"{log_name}.log",
            level=level,
            format=_FILE_FORMAT,
            rotation="10 MB",
            retention=5,
            enqueue=True,
        )

    _configured.add(log_name)


class LogSpan:
    """A structured logging span with timing and attributes."""

    def __init__(self, span: str, **attrs: Any) -> None:
        """Initialize a log span.

        Args:
            span: Span name (e.g., "render.single")
            **attrs: Initial attributes to log
        """
        self.span = span
        self.attrs: dict[str, Any] = dict(attrs)
        self.start_time = time.perf_counter()
        self.error: str | None = None

    def add(self, key: str | None = None, value: Any = None, **attrs: Any) -> LogSpan:
        """Add attributes to the span.

        Supports both positional and keyword argument styles.

        Returns:
            Self for method chaining
        """
        if key is not None:
            self.attrs[key] = value
        self.attrs.update(attrs)
        return self

    @property
    def elapsed_ms(self) -> float:
        """Milliseconds since the span started."""
        return (time.perf_counter() - self.start_time) * 1000

    def __enter__(self) -> LogSpan:
        self.start_time = time.perf_counter()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc is not None:
            self.error = f"{type(exc).__name__}: {exc}"
        self._emit()

    def _emit(self) -> None:
        """Emit the span as a single log entry."""
        entry = {"span": self.span, "elapsedMs": round(self.elapsed_ms, 2), **self.attrs}
        bound = logger.bind(**entry)
        if self.error:
            bound.error(f"{self.span} failed: {self.error}")
        elif "error" in self.attrs:
            bound.warning(f"{self.span} error={self.attrs['error']}")
        else:
            bound.info(self.span)
