"""Tests for RenderOrchestrator: staging, extraction, cleanup and delivery."""

from __future__ import annotations

from io import BytesIO
from pathlib import Path

import pytest
from PIL import Image

from mmd.config import DeliveryConfig
from mmd.delivery import DeliveryResolver, StaticFileServer
from mmd.errors import (
    DeliveryError,
    EngineRuntimeError,
    EngineStartupFailure,
    EngineTimeout,
)
from mmd.models import RenderOptions, RenderRequest
from mmd.render.orchestrator import RenderOrchestrator, render_with_retry


def _request(code: str = "graph TD\nA-->B", **options) -> RenderRequest:
    return RenderRequest(code=code, options=RenderOptions.model_validate(options))


@pytest.fixture
def dirs(tmp_path: Path) -> tuple[Path, Path]:
    return tmp_path / "output", tmp_path / "staging"


@pytest.fixture
def orchestrator(fake_engine, dirs) -> RenderOrchestrator:
    output_dir, temp_dir = dirs
    return RenderOrchestrator(fake_engine, output_dir=output_dir, temp_dir=temp_dir, timeout=30)


def _staging_files(temp_dir: Path) -> list[Path]:
    return list(temp_dir.iterdir()) if temp_dir.exists() else []


class _FailingUploader:
    backend = "minio"

    def __init__(self) -> None:
        self.calls = 0

    async def upload(self, path, *, object_name, content_type, retention_days):
        self.calls += 1
        raise DeliveryError("connection refused", transient=True)

    async def aclose(self) -> None:
        return None


class _MalformedResponseUploader:
    backend = "smms"

    async def upload(self, path, *, object_name, content_type, retention_days):
        return {}["url"]

    async def aclose(self) -> None:
        return None


@pytest.mark.unit
@pytest.mark.render
class TestRenderSuccess:
    @pytest.mark.asyncio
    async def test_vector_render_writes_markup(self, orchestrator, fake_engine, dirs):
        result = await orchestrator.render(_request(format="vector"))

        assert result.success is True
        assert result.format == "vector"
        artifact = Path(result.artifact_path)
        assert artifact.suffix == ".svg"
        assert artifact.parent == dirs[0]
        assert "<svg" in artifact.read_text()
        assert result.byte_size == artifact.stat().st_size
        assert result.pixel_size.width == 320
        assert result.online_url is None
        assert result.delivery_error is None
        # Engine saw the exact source text
        assert fake_engine.staged_sources == ["graph TD\nA-->B"]

    @pytest.mark.asyncio
    async def test_raster_fits_requested_canvas(self, orchestrator):
        result = await orchestrator.render(_request(format="png", width=800, height=600))

        assert result.success is True
        with Image.open(Path(result.artifact_path)) as image:
            assert image.size == (800, 600)
            assert image.format == "PNG"
        assert (result.pixel_size.width, result.pixel_size.height) == (800, 600)

    @pytest.mark.asyncio
    async def test_document_render(self, orchestrator):
        result = await orchestrator.render(_request(format="pdf"))

        assert result.success is True
        assert Path(result.artifact_path).read_bytes().startswith(b"%PDF")

    @pytest.mark.asyncio
    async def test_explicit_output_path(self, orchestrator, tmp_path):
        target = tmp_path / "nested" / "chart.svg"
        result = await orchestrator.render(_request(format="svg", outputPath=str(target)))

        assert result.artifact_path == str(target.resolve())
        assert target.exists()

    @pytest.mark.asyncio
    async def test_output_path_directory_gets_generated_name(self, orchestrator, tmp_path):
        target_dir = tmp_path / "charts"
        target_dir.mkdir()
        result = await orchestrator.render(_request(format="svg", outputPath=str(target_dir)))

        artifact = Path(result.artifact_path)
        assert artifact.parent == target_dir.resolve()
        assert artifact.name.startswith("mermaid-")

    @pytest.mark.asyncio
    async def test_generated_names_are_unique(self, orchestrator):
        first = await orchestrator.render(_request(format="svg"))
        second = await orchestrator.render(_request(format="svg"))
        assert first.artifact_path != second.artifact_path

    @pytest.mark.asyncio
    @pytest.mark.parametrize("fmt", ["png", "svg", "pdf"])
    async def test_identical_requests_give_identical_bytes(self, orchestrator, fmt):
        request = _request(format=fmt, width=800, height=600, backgroundColor="white")

        first = await orchestrator.render(request)
        second = await orchestrator.render(request)

        assert first.success is True
        assert second.success is True
        assert first.artifact_path != second.artifact_path
        assert Path(first.artifact_path).read_bytes() == Path(second.artifact_path).read_bytes()

    @pytest.mark.asyncio
    async def test_staged_source_removed_after_success(self, orchestrator, dirs):
        await orchestrator.render(_request(format="svg"))

        assert _staging_files(dirs[1]) == []
        assert orchestrator.remove_staged() == 0


@pytest.mark.unit
@pytest.mark.render
class TestRenderFailure:
    @pytest.mark.asyncio
    async def test_empty_code_is_input_error(self, orchestrator, fake_engine):
        result = await orchestrator.render(_request(code="   "))

        assert result.success is False
        assert result.error_kind == "input_error"
        assert fake_engine.calls == []

    @pytest.mark.asyncio
    async def test_invalid_diagram_reports_engine_message(self, orchestrator, fake_engine, dirs):
        fake_engine.errors = [EngineRuntimeError("Parse error on line 1: not a valid diagram")]

        result = await orchestrator.render(_request(code="not a valid diagram"))

        assert result.success is False
        assert result.error_kind == "invalid_diagram"
        assert "Parse error on line 1" in result.error_message
        assert result.artifact_path is None
        assert _staging_files(dirs[1]) == []

    @pytest.mark.asyncio
    async def test_timeout(self, orchestrator, fake_engine, dirs):
        fake_engine.errors = [EngineTimeout(30)]

        result = await orchestrator.render(_request())

        assert result.success is False
        assert result.error_kind == "engine_timeout"
        assert "timed out after 30s" in result.error_message
        assert _staging_files(dirs[1]) == []

    @pytest.mark.asyncio
    async def test_markup_without_root_element(self, orchestrator, fake_engine, dirs):
        fake_engine.svg = "<div>nothing</div>"

        result = await orchestrator.render(_request(format="svg"))

        assert result.success is False
        assert result.error_kind == "extraction_error"
        # No artifact and no partial file left behind
        assert not dirs[0].exists() or list(dirs[0].iterdir()) == []

    @pytest.mark.asyncio
    async def test_zero_byte_output(self, orchestrator, fake_engine):
        fake_engine.pdf = b""

        result = await orchestrator.render(_request(format="pdf"))

        assert result.success is False
        assert result.error_kind == "extraction_error"

    @pytest.mark.asyncio
    async def test_corrupt_capture_is_extraction_error(self, orchestrator, fake_engine):
        fake_engine.png = b"not a png"

        result = await orchestrator.render(_request(format="png"))

        assert result.success is False
        assert result.error_kind == "extraction_error"

    @pytest.mark.asyncio
    async def test_unexpected_engine_exception_becomes_failure(self, orchestrator, fake_engine, dirs):
        fake_engine.errors = [RuntimeError("page crashed")]

        result = await orchestrator.render(_request())

        assert result.success is False
        assert result.error_kind == "engine_error"
        assert result.error_message == "Rendering backend error: RuntimeError: page crashed"
        assert _staging_files(dirs[1]) == []

    @pytest.mark.asyncio
    async def test_unwritable_staging_dir(self, fake_engine, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("file, not a directory")
        orchestrator = RenderOrchestrator(
            fake_engine, output_dir=tmp_path / "out", temp_dir=blocker / "staging"
        )

        result = await orchestrator.render(_request())

        assert result.success is False
        assert result.error_kind == "engine_unavailable"
        assert fake_engine.calls == []


@pytest.mark.unit
@pytest.mark.render
class TestDelivery:
    @pytest.mark.asyncio
    async def test_upload_failure_keeps_render_success(self, fake_engine, dirs):
        """Storage unreachable: the artifact exists, the URL does not."""
        uploader = _FailingUploader()
        resolver = DeliveryResolver(
            DeliveryConfig(retry_attempts=2, retry_backoff_seconds=0),
            static_server=StaticFileServer(dirs[0]),
            uploader=uploader,
        )
        orchestrator = RenderOrchestrator(
            fake_engine, output_dir=dirs[0], temp_dir=dirs[1], resolver=resolver
        )

        result = await orchestrator.render(
            _request(deliveryMode="remoteUpload", uploadRetentionDays=7)
        )

        assert result.success is True
        assert Path(result.artifact_path).exists()
        assert result.online_url is None
        assert result.delivery_error == "Upload failed: connection refused"
        assert uploader.calls == 2

    @pytest.mark.asyncio
    async def test_unexpected_upload_exception_keeps_render_success(self, fake_engine, dirs):
        resolver = DeliveryResolver(
            DeliveryConfig(retry_backoff_seconds=0),
            static_server=StaticFileServer(dirs[0]),
            uploader=_MalformedResponseUploader(),
        )
        orchestrator = RenderOrchestrator(
            fake_engine, output_dir=dirs[0], temp_dir=dirs[1], resolver=resolver
        )

        result = await orchestrator.render(_request(format="svg", deliveryMode="remoteUpload"))

        assert result.success is True
        assert Path(result.artifact_path).exists()
        assert result.online_url is None
        assert result.delivery_error == "Upload failed: KeyError: 'url'"

    @pytest.mark.asyncio
    async def test_no_resolver_with_delivery_requested(self, orchestrator):
        result = await orchestrator.render(_request(deliveryMode="localServer"))

        assert result.success is True
        assert result.delivery_error == "Upload failed: delivery is not configured"

    @pytest.mark.asyncio
    async def test_delivery_none_skips_resolver(self, fake_engine, dirs):
        uploader = _FailingUploader()
        resolver = DeliveryResolver(
            DeliveryConfig(), static_server=StaticFileServer(dirs[0]), uploader=uploader
        )
        orchestrator = RenderOrchestrator(
            fake_engine, output_dir=dirs[0], temp_dir=dirs[1], resolver=resolver
        )

        result = await orchestrator.render(_request(deliveryMode="none"))

        assert result.success is True
        assert result.delivery_error is None
        assert uploader.calls == 0


@pytest.mark.unit
@pytest.mark.render
class TestRenderWithRetry:
    @pytest.mark.asyncio
    async def test_retries_unavailable_engine(self, orchestrator, fake_engine):
        fake_engine.errors = [EngineStartupFailure("no chromium"), EngineTimeout(30), None]

        result = await render_with_retry(orchestrator, _request(), attempts=3, backoff=0)

        assert result.success is True
        assert len(fake_engine.calls) == 3

    @pytest.mark.asyncio
    async def test_invalid_diagram_not_retried(self, orchestrator, fake_engine):
        fake_engine.errors = [EngineRuntimeError("Parse error"), None]

        result = await render_with_retry(orchestrator, _request(), attempts=3, backoff=0)

        assert result.success is False
        assert result.error_kind == "invalid_diagram"
        assert len(fake_engine.calls) == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self, orchestrator, fake_engine):
        fake_engine.errors = [EngineTimeout(30)] * 5

        result = await render_with_retry(orchestrator, _request(), attempts=2, backoff=0)

        assert result.success is False
        assert result.error_kind == "engine_timeout"
        assert len(fake_engine.calls) == 2
