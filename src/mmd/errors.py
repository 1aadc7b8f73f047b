"""Error taxonomy for rendering and delivery.

Every error carries a machine-readable ``kind`` and a user-facing message
whose prefix tells the caller whether to fix the diagram, retry later, or
look at the storage backend.
"""

from __future__ import annotations

__all__ = [
    "DeliveryError",
    "EngineError",
    "EngineRuntimeError",
    "EngineStartupFailure",
    "EngineTimeout",
    "ExtractionError",
    "InputError",
    "MermaidRenderError",
]


class MermaidRenderError(Exception):
    """Base class for all mmd errors."""

    kind = "error"
    prefix = ""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.detail = message

    @property
    def user_message(self) -> str:
        """Message shown to the tool caller."""
        if self.prefix:
            return f"{self.prefix}: {self.detail}"
        return self.detail


class InputError(MermaidRenderError):
    """Missing or invalid request fields. Never retried."""

    kind = "input_error"
    prefix = "Invalid request"


class EngineError(MermaidRenderError):
    """Rendering engine failure."""

    kind = "engine_error"
    prefix = "Rendering backend error"


class EngineStartupFailure(EngineError):
    """Engine binary or browser session is unavailable."""

    kind = "engine_unavailable"
    prefix = "Rendering backend unavailable"


class EngineTimeout(EngineError):
    """No readiness signal within the timeout bound."""

    kind = "engine_timeout"

    def __init__(self, timeout: float) -> None:
        super().__init__(f"no completion signal within {timeout:g}s")
        self.timeout = timeout

    @property
    def user_message(self) -> str:
        return f"Rendering timed out after {self.timeout:g}s (rendering backend busy or diagram too complex)"


class EngineRuntimeError(EngineError):
    """The engine rejected the diagram source (parse or layout error)."""

    kind = "invalid_diagram"
    prefix = "Invalid diagram source"


class ExtractionError(MermaidRenderError):
    """Expected output artifact is absent or empty."""

    kind = "extraction_error"
    prefix = "Output extraction failed"


class DeliveryError(MermaidRenderError):
    """Upload or file-server failure, independent of the render outcome."""

    kind = "delivery_error"
    prefix = "Upload failed"

    def __init__(
        self, message: str, *, transient: bool = False, prefix: str | None = None
    ) -> None:
        super().__init__(message)
        self.transient = transient
        if prefix is not None:
            self.prefix = prefix
