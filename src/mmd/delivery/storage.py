"""Object storage for uploaded artifacts (MinIO or any S3-compatible store).

Objects carry their retention window as user metadata (``expires-at``,
ISO-8601 UTC), so an expired-object sweep needs nothing but the bucket.
boto3 is synchronous; every call runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    NoCredentialsError,
    PartialCredentialsError,
)

from mmd.errors import DeliveryError
from mmd.logging import LogSpan, logger
from mmd.models import SweepReport, UploadRecord, clamp_retention_days

if TYPE_CHECKING:
    from mmd.config import MinioConfig

__all__ = ["MinioObjectStore", "public_object_url"]

EXPIRES_AT_KEY = "expires-at"
UPLOADED_AT_KEY = "uploaded-at"
RETENTION_DAYS_KEY = "retention-days"

_TRANSIENT_CODES = frozenset(
    {"InternalError", "RequestTimeout", "ServiceUnavailable", "SlowDown", "503", "500"}
)


def public_object_url(config: MinioConfig, key: str, public_base_url: str | None = None) -> str:
    """Public URL of an object.

    ``public_base_url`` is used as a prefix when set; otherwise the URL is
    built from the endpoint, omitting the scheme's default port.
    """
    if public_base_url:
        return f"{public_base_url.rstrip('/')}/{key}"
    scheme = "https" if config.secure else "http"
    default_port = 443 if config.secure else 80
    host = config.endpoint
    if config.port and config.port != default_port:
        host = f"{host}:{config.port}"
    return f"{scheme}://{host}/{config.bucket}/{key}"


def _read_only_policy(bucket: str) -> str:
    return json.dumps(
        {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"AWS": ["*"]},
                    "Action": ["s3:GetObject"],
                    "Resource": [f"arn:aws:s3:::{bucket}/*"],
                }
            ],
        }
    )


def _as_delivery_error(action: str, error: Exception) -> DeliveryError:
    if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
        return DeliveryError(f"{action}: storage credentials missing or incomplete")
    if isinstance(error, ClientError):
        info = error.response.get("Error", {})
        code = str(info.get("Code", "Unknown"))
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
        transient = code in _TRANSIENT_CODES or status >= 500
        return DeliveryError(f"{action}: {code} {info.get('Message', '')}".rstrip(), transient=transient)
    if isinstance(error, BotoCoreError):
        return DeliveryError(f"{action}: {error}", transient=True)
    return DeliveryError(f"{action}: {error}", transient=isinstance(error, OSError))


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class MinioObjectStore:
    """Uploads artifacts to a bucket and sweeps expired ones.

    Args:
        config: MinIO connection settings
        public_base_url: Optional public URL prefix for objects
        client: Pre-built S3 client (tests inject a stub)
    """

    backend = "minio"

    def __init__(
        self,
        config: MinioConfig,
        *,
        public_base_url: str | None = None,
        client: Any | None = None,
    ) -> None:
        self.config = config
        self.bucket = config.bucket
        self.public_base_url = public_base_url
        self._client = client
        self._bucket_ready = False

    def _get_client(self) -> Any:
        if self._client is None:
            access_key = self.config.resolved_access_key()
            secret_key = self.config.resolved_secret_key()
            if not access_key or not secret_key:
                raise DeliveryError(
                    "MinIO credentials not configured (MINIO_ACCESS_KEY / MINIO_SECRET_KEY)"
                )
            scheme = "https" if self.config.secure else "http"
            endpoint = self.config.endpoint
            if self.config.port:
                endpoint = f"{endpoint}:{self.config.port}"
            self._client = boto3.client(
                "s3",
                endpoint_url=f"{scheme}://{endpoint}",
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=self.config.region or "us-east-1",
                config=BotoConfig(
                    signature_version="s3v4",
                    s3={"addressing_style": "path"},
                    retries={"max_attempts": 1},
                ),
            )
        return self._client

    def public_url(self, key: str) -> str:
        return public_object_url(self.config, key, self.public_base_url)

    def _ensure_bucket_sync(self) -> None:
        if self._bucket_ready:
            return
        client = self._get_client()
        try:
            client.head_bucket(Bucket=self.bucket)
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code not in ("404", "NoSuchBucket", "NotFound"):
                raise
            kwargs: dict[str, Any] = {"Bucket": self.bucket}
            if self.config.region and self.config.region != "us-east-1":
                kwargs["CreateBucketConfiguration"] = {
                    "LocationConstraint": self.config.region
                }
            client.create_bucket(**kwargs)
            logger.info(f"Created bucket {self.bucket}")
        client.put_bucket_policy(Bucket=self.bucket, Policy=_read_only_policy(self.bucket))
        self._bucket_ready = True

    async def ensure_bucket(self) -> None:
        """Create the bucket if missing and make its objects publicly readable."""
        try:
            await asyncio.to_thread(self._ensure_bucket_sync)
        except DeliveryError:
            raise
        except (BotoCoreError, ClientError, OSError) as e:
            raise _as_delivery_error(f"bucket {self.bucket}", e) from e

    def _upload_sync(
        self, path: Path, object_name: str, content_type: str, retention_days: int
    ) -> UploadRecord:
        self._ensure_bucket_sync()
        body = path.read_bytes()
        uploaded_at = datetime.now(timezone.utc)
        expires_at = uploaded_at + timedelta(days=retention_days)
        self._get_client().put_object(
            Bucket=self.bucket,
            Key=object_name,
            Body=body,
            ContentType=content_type,
            CacheControl=f"public, max-age={retention_days * 86400}",
            Expires=expires_at,
            Metadata={
                EXPIRES_AT_KEY: expires_at.isoformat(),
                UPLOADED_AT_KEY: uploaded_at.isoformat(),
                RETENTION_DAYS_KEY: str(retention_days),
            },
        )
        return UploadRecord(
            object_key=object_name,
            size_bytes=len(body),
            uploaded_at=uploaded_at,
            expires_at=expires_at,
            public_url=self.public_url(object_name),
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
        """Upload a file with retention metadata.

        Raises:
            DeliveryError: transient for network and 5xx failures
        """
        days = clamp_retention_days(retention_days)
        with LogSpan(span="storage.upload", bucket=self.bucket, key=object_name) as span:
            try:
                record = await asyncio.to_thread(
                    self._upload_sync, path, object_name, content_type, days
                )
            except DeliveryError:
                raise
            except (BotoCoreError, ClientError, OSError) as e:
                raise _as_delivery_error("upload", e) from e
            span.add(bytes=record.size_bytes, expiresAt=record.expires_at.isoformat())
        return record

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(
                self._get_client().delete_object, Bucket=self.bucket, Key=key
            )
        except (BotoCoreError, ClientError, OSError) as e:
            raise _as_delivery_error(f"delete {key}", e) from e

    def _list_keys_sync(self, prefix: str) -> list[str]:
        paginator = self._get_client().get_paginator("list_objects_v2")
        keys: list[str] = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            keys.extend(item["Key"] for item in page.get("Contents", []))
        return keys

    async def list_keys(self, prefix: str = "") -> list[str]:
        try:
            return await asyncio.to_thread(self._list_keys_sync, prefix)
        except DeliveryError:
            raise
        except (BotoCoreError, ClientError, OSError) as e:
            raise _as_delivery_error("list objects", e) from e

    def _expires_at_sync(self, key: str) -> datetime | None:
        head = self._get_client().head_object(Bucket=self.bucket, Key=key)
        metadata = {k.lower(): v for k, v in (head.get("Metadata") or {}).items()}
        raw = metadata.get(EXPIRES_AT_KEY)
        return _parse_timestamp(raw) if raw else None

    async def sweep_expired(self, now: datetime | None = None) -> SweepReport:
        """Delete objects whose expires-at metadata is in the past.

        Objects without retention metadata are left alone. Per-object
        failures are collected, never fatal.
        """
        now = now or datetime.now(timezone.utc)
        report = SweepReport()

        with LogSpan(span="storage.sweep", bucket=self.bucket) as span:
            keys = await self.list_keys()
            span.add(scanned=len(keys))
            for key in keys:
                try:
                    expires_at = await asyncio.to_thread(self._expires_at_sync, key)
                except (BotoCoreError, ClientError, OSError, ValueError) as e:
                    logger.warning(f"Cannot read retention metadata for {key}: {e}")
                    report.errors.append(f"{key}: {e}")
                    continue
                if expires_at is None or expires_at > now:
                    continue
                try:
                    await self.delete(key)
                except DeliveryError as e:
                    logger.warning(f"Cannot delete expired object {key}: {e.detail}")
                    report.errors.append(f"{key}: {e.detail}")
                    continue
                report.deleted.append(key)
            report.deleted_count = len(report.deleted)
            span.add(deleted=report.deleted_count, errors=len(report.errors))
        return report

    async def aclose(self) -> None:
        self._client = None
        self._bucket_ready = False
