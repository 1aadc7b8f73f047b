"""Data model - Pydantic models for render requests, results and uploads.

Wire names are camelCase (MCP clients send ``outputPath``, ``globalOptions``),
Python attributes are snake_case. Results are frozen once created.
"""

from __future__ import annotations

import math
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

__all__ = [
    "DEFAULT_RETENTION_DAYS",
    "MAX_RETENTION_DAYS",
    "MIN_RETENTION_DAYS",
    "BatchRequest",
    "BatchResult",
    "DeliveryMode",
    "OutputFormat",
    "PixelSize",
    "RenderOptions",
    "RenderRequest",
    "RenderResult",
    "SweepReport",
    "Theme",
    "UploadRecord",
    "clamp_retention_days",
]

DEFAULT_RETENTION_DAYS = 7
MIN_RETENTION_DAYS = 1
MAX_RETENTION_DAYS = 30

# dpi -> resolution scale conversion (CSS reference pixel density)
CSS_DPI = 96
MAX_RESOLUTION_SCALE = 8.0

Theme = Literal["default", "dark", "forest", "neutral"]


def clamp_retention_days(days: int | float | None) -> int:
    """Clamp an upload retention window into [1, 30] days.

    Zero, missing or NaN values fall back to the 7 day default; everything
    else (infinities included) is clamped, never rejected.
    """
    if not days or math.isnan(days):
        return DEFAULT_RETENTION_DAYS
    if math.isinf(days):
        return MAX_RETENTION_DAYS if days > 0 else MIN_RETENTION_DAYS
    return max(MIN_RETENTION_DAYS, min(MAX_RETENTION_DAYS, int(days)))


class OutputFormat(str, Enum):
    """Artifact format."""

    RASTER = "raster"
    VECTOR = "vector"
    DOCUMENT = "document"

    @classmethod
    def parse(cls, value: Any) -> OutputFormat:
        """Parse a format name, accepting file-extension aliases."""
        if isinstance(value, cls):
            return value
        name = str(value).strip().lower().lstrip(".")
        alias = _FORMAT_ALIASES.get(name)
        if alias is None:
            raise ValueError(
                f"Unknown format '{value}'. Supported: raster (png), vector (svg), document (pdf)"
            )
        return alias

    @property
    def extension(self) -> str:
        """File extension including the dot."""
        return _FORMAT_EXTENSIONS[self]

    @property
    def mime_type(self) -> str:
        return _FORMAT_MIME_TYPES[self]


_FORMAT_ALIASES = {
    "raster": OutputFormat.RASTER,
    "png": OutputFormat.RASTER,
    "vector": OutputFormat.VECTOR,
    "svg": OutputFormat.VECTOR,
    "document": OutputFormat.DOCUMENT,
    "pdf": OutputFormat.DOCUMENT,
}

_FORMAT_EXTENSIONS = {
    OutputFormat.RASTER: ".png",
    OutputFormat.VECTOR: ".svg",
    OutputFormat.DOCUMENT: ".pdf",
}

_FORMAT_MIME_TYPES = {
    OutputFormat.RASTER: "image/png",
    OutputFormat.VECTOR: "image/svg+xml",
    OutputFormat.DOCUMENT: "application/pdf",
}


class DeliveryMode(str, Enum):
    """How a rendered artifact is made reachable by URL."""

    NONE = "none"
    LOCAL_SERVER = "localServer"
    REMOTE_UPLOAD = "remoteUpload"


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Serialize for an MCP response (camelCase, no nulls)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class RenderOptions(_WireModel):
    """Per-request rendering options. Missing fields take defaults."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    format: OutputFormat = Field(default=OutputFormat.RASTER, description="Output format")
    output_path: str | None = Field(
        default=None, description="Explicit destination (auto-generated if omitted)"
    )
    width: int = Field(default=1200, gt=0, le=10000, description="Target width in pixels")
    height: int = Field(default=800, gt=0, le=10000, description="Target height in pixels")
    background_color: str = Field(default="white", description="CSS background colour")
    theme: Theme = Field(default="default", description="Mermaid theme")
    resolution_scale: float = Field(
        default=2.0,
        ge=1.0,
        le=MAX_RESOLUTION_SCALE,
        description="Supersampling multiplier for raster output",
    )
    delivery_mode: DeliveryMode | None = Field(
        default=None, description="none, localServer or remoteUpload"
    )
    generate_online_link: bool | None = Field(
        default=None, description="Legacy switch: deliver with the default link mode"
    )
    upload_retention_days: int = Field(
        default=DEFAULT_RETENTION_DAYS,
        description="Days before an uploaded artifact expires (clamped to 1-30)",
    )

    @model_validator(mode="before")
    @classmethod
    def _map_legacy_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "outputFormat" in data and "format" not in data:
            data["format"] = data.pop("outputFormat")
        if "minioExpiryDays" in data:
            expiry = data.pop("minioExpiryDays")
            data.setdefault("uploadRetentionDays", expiry)
        if "dpi" in data:
            dpi = data.pop("dpi")
            if (
                dpi is not None
                and "resolutionScale" not in data
                and "resolution_scale" not in data
            ):
                data["resolutionScale"] = min(
                    MAX_RESOLUTION_SCALE, max(1.0, float(dpi) / CSS_DPI)
                )
        return data

    @field_validator("format", mode="before")
    @classmethod
    def _parse_format(cls, value: Any) -> OutputFormat:
        return OutputFormat.parse(value)

    @field_validator("upload_retention_days", mode="before")
    @classmethod
    def _clamp_retention(cls, value: Any) -> int:
        if value is None:
            return DEFAULT_RETENTION_DAYS
        return clamp_retention_days(float(value))

    @field_validator("background_color")
    @classmethod
    def _check_background(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("backgroundColor must not be empty")
        return value

    def effective_delivery_mode(self, default_link_mode: DeliveryMode) -> DeliveryMode:
        """Resolve the delivery mode, honouring the legacy generateOnlineLink flag."""
        if self.delivery_mode is not None:
            return self.delivery_mode
        if self.generate_online_link:
            return default_link_mode
        return DeliveryMode.NONE

    @classmethod
    def merged(
        cls, global_options: RenderOptions | None, item_options: RenderOptions | None
    ) -> RenderOptions:
        """Merge item options over global options, key by key."""
        data: dict[str, Any] = {}
        if global_options is not None:
            data.update(global_options.model_dump(exclude_unset=True))
        if item_options is not None:
            data.update(item_options.model_dump(exclude_unset=True))
        return cls.model_validate(data)


class RenderRequest(_WireModel):
    """Diagram source plus options. Immutable once submitted."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    code: str = Field(description="Mermaid diagram source")
    options: RenderOptions = Field(default_factory=RenderOptions)


class PixelSize(_WireModel):
    """Pixel dimensions of an artifact."""

    width: int
    height: int


class RenderResult(_WireModel):
    """Outcome of one render request."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    success: bool
    format: str
    elapsed_ms: int = 0
    artifact_path: str | None = None
    online_url: str | None = None
    error_message: str | None = None
    error_kind: str | None = None
    delivery_error: str | None = None
    pixel_size: PixelSize | None = None
    byte_size: int | None = None


class BatchRequest(_WireModel):
    """Ordered render requests with optional shared options."""

    requests: list[Any] = Field(default_factory=list)
    global_options: dict[str, Any] | None = None


class BatchResult(_WireModel):
    """Aggregated batch outcome; results keep input order."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    results: list[RenderResult]
    success_count: int
    failure_count: int
    total_elapsed_ms: int

    @model_validator(mode="after")
    def _check_counts(self) -> BatchResult:
        if self.success_count + self.failure_count != len(self.results):
            raise ValueError("successCount + failureCount must equal len(results)")
        return self


class UploadRecord(_WireModel):
    """A stored artifact and its retention window."""

    object_key: str
    size_bytes: int
    uploaded_at: datetime
    expires_at: datetime
    public_url: str
    retention_days: int
    backend: str


class SweepReport(_WireModel):
    """Result of an expired-object sweep."""

    deleted_count: int = 0
    deleted: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
