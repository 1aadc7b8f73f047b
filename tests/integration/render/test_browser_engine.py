"""Integration tests for real rendering engines.

The browser tests need Chromium (``playwright install chromium``) and network
access to the mermaid.js bundle; the CLI test needs ``mmdc`` on PATH. Tests
skip when those are missing.
"""

from __future__ import annotations

import shutil
from io import BytesIO
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
import pytest_asyncio
from PIL import Image

from mmd.config import EngineConfig
from mmd.errors import EngineStartupFailure
from mmd.models import RenderOptions, RenderRequest
from mmd.render.engine import CliEngine, create_engine
from mmd.render.orchestrator import RenderOrchestrator

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from mmd.render.engine import BrowserEngine


@pytest_asyncio.fixture
async def browser_engine() -> AsyncIterator[BrowserEngine]:
    engine = create_engine(EngineConfig(type="browser", timeout_seconds=30))
    try:
        await engine.pool._ensure_browser()
    except EngineStartupFailure as e:
        await engine.aclose()
        pytest.skip(f"Chromium unavailable: {e.detail}")
    yield engine
    await engine.aclose()


def _orchestrator(engine, tmp_path: Path) -> RenderOrchestrator:
    return RenderOrchestrator(
        engine, output_dir=tmp_path / "out", temp_dir=tmp_path / "staging", timeout=30
    )


async def _render(orchestrator: RenderOrchestrator, code: str, **options):
    result = await orchestrator.render(
        RenderRequest(code=code, options=RenderOptions.model_validate(options))
    )
    if result.error_kind == "engine_unavailable":
        pytest.skip(f"mermaid.js unavailable: {result.error_message}")
    return result


@pytest.mark.integration
@pytest.mark.render
class TestBrowserEngine:
    @pytest.mark.asyncio
    async def test_vector_render(self, browser_engine, tmp_path):
        result = await _render(_orchestrator(browser_engine, tmp_path), "graph TD\nA-->B", format="vector")

        assert result.success is True
        markup = Path(result.artifact_path).read_text()
        assert markup.lstrip().startswith("<svg")
        assert result.pixel_size is not None
        assert list((tmp_path / "staging").iterdir()) == []

    @pytest.mark.asyncio
    async def test_invalid_diagram_reports_parse_failure(self, browser_engine, tmp_path):
        result = await _render(_orchestrator(browser_engine, tmp_path), "not a valid diagram")

        assert result.success is False
        assert result.error_kind == "invalid_diagram"
        assert "Exception" not in result.error_message
        assert list((tmp_path / "staging").iterdir()) == []

    @pytest.mark.asyncio
    async def test_raster_render(self, browser_engine, tmp_path):
        result = await _render(
            _orchestrator(browser_engine, tmp_path),
            "sequenceDiagram\nAlice->>Bob: Hi",
            format="png",
            width=600,
            height=400,
            backgroundColor="transparent",
        )

        assert result.success is True
        with Image.open(BytesIO(Path(result.artifact_path).read_bytes())) as image:
            assert image.size == (600, 400)
            assert image.mode == "RGBA"

    @pytest.mark.asyncio
    async def test_document_render(self, browser_engine, tmp_path):
        result = await _render(_orchestrator(browser_engine, tmp_path), "graph LR\nA-->B", format="pdf")

        assert result.success is True
        assert Path(result.artifact_path).read_bytes().startswith(b"%PDF")


@pytest.mark.integration
@pytest.mark.render
@pytest.mark.skipif(shutil.which("mmdc") is None, reason="mmdc not installed")
@pytest.mark.asyncio
async def test_cli_engine_vector_render(tmp_path) -> None:
    result = await _render(_orchestrator(CliEngine(), tmp_path), "graph TD\nA-->B", format="svg")

    assert result.success is True
    assert "<svg" in Path(result.artifact_path).read_text()
