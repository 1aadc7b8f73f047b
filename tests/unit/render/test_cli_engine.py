"""Tests for the mmdc subprocess engine with a mocked subprocess."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from mmd.config import EngineConfig
from mmd.errors import EngineRuntimeError, EngineStartupFailure, EngineTimeout, ExtractionError
from mmd.models import OutputFormat
from mmd.render.engine import BrowserEngine, CliEngine, EngineOptions, create_engine


def _options(fmt: OutputFormat = OutputFormat.VECTOR, timeout: float = 30.0) -> EngineOptions:
    return EngineOptions(output_format=fmt, width=1200, height=800, timeout=timeout)


def _process(returncode: int = 0, stderr: bytes = b"", writes: tuple[Path, bytes] | None = None):
    proc = MagicMock()
    proc.returncode = returncode

    async def communicate():
        if writes is not None:
            writes[0].write_bytes(writes[1])
        return b"", stderr

    proc.communicate = communicate
    proc.wait = AsyncMock(return_value=returncode)
    return proc


@pytest.mark.unit
@pytest.mark.render
class TestCliEngine:
    def test_build_args(self, tmp_path):
        engine = CliEngine("npx -y mmdc")
        options = EngineOptions(
            output_format=OutputFormat.RASTER,
            width=640,
            height=480,
            background_color="transparent",
            theme="dark",
            resolution_scale=1.5,
        )

        args = engine.build_args(tmp_path / "in.mmd", tmp_path / "out.png", options)

        assert args[:3] == ["npx", "-y", "mmdc"]
        assert args[args.index("-t") + 1] == "dark"
        assert args[args.index("-b") + 1] == "transparent"
        assert args[args.index("-w") + 1] == "640"
        assert args[args.index("-H") + 1] == "480"
        assert args[args.index("-s") + 1] == "1.5"

    @pytest.mark.asyncio
    async def test_success_reads_output_and_cleans_up(self, tmp_path):
        source = tmp_path / "diagram.mmd"
        source.write_text("graph TD\nA-->B")
        output = source.with_suffix(".out.svg")
        proc = _process(writes=(output, b"<svg></svg>"))

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)) as spawn:
            async with CliEngine().invoke(source, _options()) as outcome:
                markup = await outcome.svg_markup()

        assert markup == "<svg></svg>"
        assert spawn.call_args.args[0] == "mmdc"
        assert not output.exists()

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_invalid_diagram(self, tmp_path):
        source = tmp_path / "diagram.mmd"
        source.write_text("not a diagram")
        proc = _process(returncode=1, stderr=b"Error: Parse error on line 1:\nnot a diagram\n")

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            with pytest.raises(EngineRuntimeError, match="Parse error on line 1"):
                async with CliEngine().invoke(source, _options()):
                    pass

    @pytest.mark.asyncio
    async def test_missing_binary_is_startup_failure(self, tmp_path):
        source = tmp_path / "diagram.mmd"
        source.write_text("graph TD\nA-->B")

        with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError("mmdc"))):
            with pytest.raises(EngineStartupFailure, match="mermaid-cli"):
                async with CliEngine().invoke(source, _options()):
                    pass

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, tmp_path):
        source = tmp_path / "diagram.mmd"
        source.write_text("graph TD\nA-->B")
        proc = _process()

        async def hang():
            await asyncio.sleep(10)

        proc.communicate = hang

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            with pytest.raises(EngineTimeout):
                async with CliEngine().invoke(source, _options(timeout=0.05)):
                    pass

        proc.kill.assert_called_once()

    @pytest.mark.asyncio
    async def test_wrong_format_request_is_extraction_error(self, tmp_path):
        source = tmp_path / "diagram.mmd"
        source.write_text("graph TD\nA-->B")
        output = source.with_suffix(".out.svg")
        proc = _process(writes=(output, b"<svg></svg>"))

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            async with CliEngine().invoke(source, _options()) as outcome:
                with pytest.raises(ExtractionError):
                    await outcome.raster_png()


@pytest.mark.unit
@pytest.mark.render
def test_create_engine_selects_type() -> None:
    assert isinstance(create_engine(EngineConfig(type="cli")), CliEngine)
    browser = create_engine(EngineConfig(max_sessions=3))
    assert isinstance(browser, BrowserEngine)
    assert browser.pool.max_sessions == 3
