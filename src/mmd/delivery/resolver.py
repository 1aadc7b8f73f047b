"""Delivery resolver - turns a rendered artifact into a URL.

localServer mode serves the file from the local static server (started on
demand). remoteUpload mode pushes it to the configured backend with
retention metadata, retrying transient failures with linear backoff.
"""

from __future__ import annotations

import asyncio
import mimetypes
import uuid
from typing import TYPE_CHECKING, Protocol

from mmd.delivery.image_hosting import CustomUploader, ImgurUploader, SmmsUploader
from mmd.delivery.storage import MinioObjectStore
from mmd.errors import DeliveryError
from mmd.logging import LogSpan, logger
from mmd.models import DeliveryMode, OutputFormat, clamp_retention_days

if TYPE_CHECKING:
    from pathlib import Path

    from mmd.config import DeliveryConfig
    from mmd.delivery.static_server import StaticFileServer
    from mmd.models import RenderOptions, SweepReport, UploadRecord

__all__ = ["DeliveryResolver", "Uploader", "content_type_for", "create_uploader"]

_CONTENT_TYPES = {fmt.extension: fmt.mime_type for fmt in OutputFormat}


class Uploader(Protocol):
    """A remote backend that stores a file and returns its public URL."""

    backend: str

    async def upload(
        self,
        path: Path,
        *,
        object_name: str,
        content_type: str,
        retention_days: int,
    ) -> UploadRecord: ...

    async def aclose(self) -> None: ...


def content_type_for(path: Path) -> str:
    """MIME type derived from the file extension."""
    suffix = path.suffix.lower()
    if suffix in _CONTENT_TYPES:
        return _CONTENT_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or "application/octet-stream"


def create_uploader(config: DeliveryConfig) -> Uploader:
    """Build the uploader for ``config.remote_backend``."""
    if config.remote_backend == "minio":
        return MinioObjectStore(config.minio, public_base_url=config.public_base_url)
    if config.remote_backend == "smms":
        return SmmsUploader(config.image_hosting)
    if config.remote_backend == "custom":
        return CustomUploader(config.image_hosting)
    return ImgurUploader(config.image_hosting)


class DeliveryResolver:
    """Resolves artifact URLs for localServer and remoteUpload delivery.

    Args:
        config: Delivery settings
        static_server: Server used for localServer mode
        uploader: Remote backend (built from config when omitted)
    """

    def __init__(
        self,
        config: DeliveryConfig,
        *,
        static_server: StaticFileServer,
        uploader: Uploader | None = None,
    ) -> None:
        self.config = config
        self.static_server = static_server
        self._uploader = uploader

    @property
    def uploader(self) -> Uploader:
        if self._uploader is None:
            self._uploader = create_uploader(self.config)
        return self._uploader

    @property
    def built_uploader(self) -> Uploader | None:
        """The uploader if one has been created, without creating it."""
        return self._uploader

    def mode_for(self, options: RenderOptions) -> DeliveryMode:
        return options.effective_delivery_mode(self.config.online_link_mode)

    def retention_for(self, options: RenderOptions) -> int:
        """Request retention if set explicitly, else the configured default."""
        if "upload_retention_days" in options.model_fields_set:
            return clamp_retention_days(options.upload_retention_days)
        return self.config.default_retention_days

    async def resolve_url(
        self,
        artifact_path: Path,
        options: RenderOptions,
        *,
        mode: DeliveryMode | None = None,
    ) -> str:
        """Return a URL for the artifact.

        Raises:
            DeliveryError: If the artifact cannot be served or uploaded
        """
        mode = mode or self.mode_for(options)
        with LogSpan(span="delivery.resolve", mode=mode.value, artifact=artifact_path.name) as span:
            if mode is DeliveryMode.LOCAL_SERVER:
                url = await self._local_url(artifact_path)
            elif mode is DeliveryMode.REMOTE_UPLOAD:
                record = await self.upload(
                    artifact_path, retention_days=self.retention_for(options)
                )
                url = record.public_url
            else:
                raise DeliveryError("no delivery mode requested")
            span.add(url=url)
        return url

    async def _local_url(self, artifact_path: Path) -> str:
        if not self.static_server.is_running:
            await self.static_server.start()
        return self.static_server.file_url(artifact_path)

    async def upload(
        self,
        artifact_path: Path,
        *,
        retention_days: int | None = None,
        object_name: str | None = None,
    ) -> UploadRecord:
        """Upload with bounded retries on transient failures.

        Raises:
            DeliveryError: After the last attempt, or immediately when the
                failure is not transient
        """
        if not artifact_path.is_file():
            raise DeliveryError(f"artifact not found: {artifact_path}")

        days = clamp_retention_days(
            self.config.default_retention_days if retention_days is None else retention_days
        )
        name = object_name or f"mermaid-{uuid.uuid4().hex}{artifact_path.suffix.lower()}"
        content_type = content_type_for(artifact_path)
        attempts = self.config.retry_attempts
        uploader = self.uploader

        for attempt in range(1, attempts + 1):
            try:
                return await uploader.upload(
                    artifact_path,
                    object_name=name,
                    content_type=content_type,
                    retention_days=days,
                )
            except DeliveryError as e:
                if not e.transient or attempt == attempts:
                    raise
                delay = attempt * self.config.retry_backoff_seconds
                logger.warning(
                    f"Upload attempt {attempt}/{attempts} to {uploader.backend} failed: "
                    f"{e.detail}; retrying in {delay:g}s"
                )
                await asyncio.sleep(delay)
        raise DeliveryError("upload was not attempted")  # pragma: no cover

    async def sweep_expired(self) -> SweepReport:
        """Delete expired uploads (minio backend only).

        Raises:
            DeliveryError: If the backend has no sweepable storage
        """
        uploader = self.uploader
        if not isinstance(uploader, MinioObjectStore):
            raise DeliveryError(
                f"expired-upload cleanup needs the minio backend, not {self.config.remote_backend}",
                prefix="Cleanup unavailable",
            )
        return await uploader.sweep_expired()

    async def aclose(self) -> None:
        if self._uploader is not None:
            await self._uploader.aclose()
