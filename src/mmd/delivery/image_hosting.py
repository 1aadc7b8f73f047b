"""Image-hosting upload clients (Imgur, SM.MS, custom endpoint).

All three post the artifact over httpx and return an UploadRecord. Hosts
do not honour our retention window; expires_at is informational.

Error classification:
- missing credentials or endpoint: DeliveryError (not transient)
- connection errors, timeouts, HTTP 5xx/429: DeliveryError(transient=True)
- other HTTP errors or an unusable response body: DeliveryError
"""

from __future__ import annotations

import base64
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import aiofiles
import httpx

from mmd.errors import DeliveryError
from mmd.logging import LogSpan
from mmd.models import UploadRecord

if TYPE_CHECKING:
    from pathlib import Path

    from mmd.config import ImageHostingConfig

__all__ = ["CustomUploader", "ImgurUploader", "SmmsUploader"]

IMGUR_UPLOAD_URL = "https://api.imgur.com/3/image"
SMMS_UPLOAD_URL = "https://sm.ms/api/v2/upload"


class _HttpUploader(ABC):
    backend = "http"

    def __init__(
        self, config: ImageHostingConfig, *, client: httpx.AsyncClient | None = None
    ) -> None:
        self.config = config
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
        return self._client

    async def _post(self, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._get_client().post(url, **kwargs)
        except httpx.RequestError as e:
            raise DeliveryError(f"{self.backend} unreachable: {e}", transient=True) from e

        if response.status_code >= 500 or response.status_code == 429:
            raise DeliveryError(
                f"{self.backend} returned HTTP {response.status_code}", transient=True
            )
        if response.status_code >= 400:
            raise DeliveryError(
                f"{self.backend} returned HTTP {response.status_code}: {response.text[:200]}"
            )
        try:
            data = response.json()
        except ValueError as e:
            raise DeliveryError(f"{self.backend} returned a non-JSON response") from e
        if not isinstance(data, dict):
            raise DeliveryError(f"{self.backend} returned an unexpected response")
        return data

    def _record(
        self, url: str, size: int, object_name: str, retention_days: int
    ) -> UploadRecord:
        uploaded_at = datetime.now(timezone.utc)
        return UploadRecord(
            object_key=object_name,
            size_bytes=size,
            uploaded_at=uploaded_at,
            expires_at=uploaded_at + timedelta(days=retention_days),
            public_url=url,
            retention_days=retention_days,
            backend=self.backend,
        )

    async def upload(
        self,
        path: Path,
        *,
        object_name: str,
        content_type: str,
        retention_days: int,
    ) -> UploadRecord:
        try:
            async with aiofiles.open(path, "rb") as f:
                content = await f.read()
        except OSError as e:
            raise DeliveryError(f"cannot read artifact {path}: {e}") from e
        with LogSpan(span=f"upload.{self.backend}", key=object_name, bytes=len(content)) as span:
            url = await self._send(content, object_name, content_type)
            span.add(url=url)
        return self._record(url, len(content), object_name, retention_days)

    @abstractmethod
    async def _send(self, content: bytes, object_name: str, content_type: str) -> str:
        """Post the bytes and return the public URL."""

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


class ImgurUploader(_HttpUploader):
    """Anonymous Imgur upload (Client-ID auth, base64 JSON body)."""

    backend = "imgur"

    async def _send(self, content: bytes, object_name: str, content_type: str) -> str:
        client_id = self.config.resolved_imgur_client_id()
        if not client_id:
            raise DeliveryError("Imgur client id not configured (IMGUR_CLIENT_ID)")
        data = await self._post(
            IMGUR_UPLOAD_URL,
            headers={"Authorization": f"Client-ID {client_id}"},
            json={
                "image": base64.b64encode(content).decode("ascii"),
                "type": "base64",
                "name": object_name,
            },
        )
        link = _field(data.get("data"), "link")
        if not data.get("success") or not link:
            raise DeliveryError(f"imgur rejected the upload: {data.get('data')}")
        return str(link)


class SmmsUploader(_HttpUploader):
    """SM.MS upload (multipart field ``smfile``)."""

    backend = "smms"

    async def _send(self, content: bytes, object_name: str, content_type: str) -> str:
        token = self.config.resolved_smms_token()
        if not token:
            raise DeliveryError("SM.MS token not configured (SMMS_API_TOKEN)")
        data = await self._post(
            SMMS_UPLOAD_URL,
            headers={"Authorization": token},
            files={"smfile": (object_name, content, content_type)},
        )
        if data.get("success"):
            url = _field(data.get("data"), "url")
            if not url:
                raise DeliveryError("sm.ms response has no image url")
            return str(url)
        # Same image uploaded before: SM.MS answers with the existing URL
        if data.get("code") == "image_repeated" and data.get("images"):
            return str(data["images"])
        raise DeliveryError(f"sm.ms rejected the upload: {data.get('message', data)}")


class CustomUploader(_HttpUploader):
    """Generic multipart upload; the endpoint must answer ``{"url": ...}``."""

    backend = "custom"

    async def _send(self, content: bytes, object_name: str, content_type: str) -> str:
        if not self.config.upload_url:
            raise DeliveryError("custom upload_url not configured")
        data = await self._post(
            self.config.upload_url,
            headers=dict(self.config.headers),
            files={"file": (object_name, content, content_type)},
        )
        url = data.get("url")
        if not url:
            raise DeliveryError("custom endpoint response has no 'url' field")
        return str(url)


def _field(payload: Any, key: str) -> Any:
    """Read a key from a nested response object that may not be a mapping."""
    if isinstance(payload, dict):
        return payload.get(key)
    return None
