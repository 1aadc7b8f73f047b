"""Shared fakes for unit tests that exercise rendering without a browser."""

from __future__ import annotations

from contextlib import asynccontextmanager
from io import BytesIO
from pathlib import Path

import pytest
from PIL import Image

from mmd.models import PixelSize

SVG_MARKUP = '<svg id="mmd-diagram" xmlns="http://www.w3.org/2000/svg" width="320" height="180"><g/></svg>'
PDF_BYTES = b"%PDF-1.4\n%fake\n"


def make_png(width: int = 640, height: int = 360, color: str = "navy") -> bytes:
    out = BytesIO()
    Image.new("RGBA", (width, height), color).save(out, format="PNG")
    return out.getvalue()


class FakeOutcome:
    def __init__(self, engine: FakeEngine) -> None:
        self._engine = engine
        self.bounding_box = PixelSize(width=320, height=180)

    async def svg_markup(self) -> str:
        return self._engine.svg

    async def raster_png(self) -> bytes:
        return self._engine.png

    async def pdf_document(self) -> bytes:
        return self._engine.pdf


class FakeEngine:
    """Engine double that records staged sources and can fail on demand.

    ``errors`` is consumed one entry per call; ``None`` entries succeed.
    """

    name = "fake"

    def __init__(self) -> None:
        self.svg = SVG_MARKUP
        self.png = make_png()
        self.pdf = PDF_BYTES
        self.errors: list[Exception | None] = []
        self.calls: list[tuple[Path, object]] = []
        self.staged_sources: list[str] = []
        self.closed = False

    @asynccontextmanager
    async def invoke(self, input_path: Path, options):
        self.calls.append((input_path, options))
        self.staged_sources.append(input_path.read_text(encoding="utf-8"))
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        yield FakeOutcome(self)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def make_engine():
    return FakeEngine


@pytest.fixture
def service_config(tmp_path):
    from mmd.config import ServerConfig

    return ServerConfig(
        host="127.0.0.1",
        port=3000,
        output_dir=str(tmp_path / "output"),
        temp_dir=str(tmp_path / "staging"),
        batch={"max_concurrent": 1},
        delivery={"retry_backoff_seconds": 0},
    )
