"""Tests for image-hosting uploaders over httpx.MockTransport."""

from __future__ import annotations

import base64
import json

import httpx
import pytest

from mmd.config import ImageHostingConfig
from mmd.delivery.image_hosting import (
    IMGUR_UPLOAD_URL,
    SMMS_UPLOAD_URL,
    CustomUploader,
    ImgurUploader,
    SmmsUploader,
)
from mmd.errors import DeliveryError


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def artifact(tmp_path):
    path = tmp_path / "chart.png"
    path.write_bytes(b"\x89PNG fake image")
    return path


async def _upload(uploader, artifact):
    return await uploader.upload(
        artifact, object_name="mermaid-1.png", content_type="image/png", retention_days=7
    )


@pytest.mark.unit
@pytest.mark.delivery
class TestImgur:
    @pytest.mark.asyncio
    async def test_success(self, artifact):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200, json={"success": True, "data": {"link": "https://i.imgur.com/abc.png"}}
            )

        uploader = ImgurUploader(ImageHostingConfig(imgur_client_id="cid"), client=_client(handler))
        record = await _upload(uploader, artifact)

        assert record.public_url == "https://i.imgur.com/abc.png"
        assert record.backend == "imgur"
        assert record.retention_days == 7
        assert seen["url"] == IMGUR_UPLOAD_URL
        assert seen["auth"] == "Client-ID cid"
        assert base64.b64decode(seen["body"]["image"]) == artifact.read_bytes()

    @pytest.mark.asyncio
    async def test_missing_client_id(self, artifact, monkeypatch):
        monkeypatch.setattr("mmd.config.loader.get_secret", lambda name: None)
        uploader = ImgurUploader(ImageHostingConfig(), client=_client(lambda r: httpx.Response(200)))

        with pytest.raises(DeliveryError, match="IMGUR_CLIENT_ID") as exc_info:
            await _upload(uploader, artifact)

        assert exc_info.value.transient is False

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, artifact):
        uploader = ImgurUploader(
            ImageHostingConfig(imgur_client_id="cid"),
            client=_client(lambda r: httpx.Response(502, text="bad gateway")),
        )

        with pytest.raises(DeliveryError) as exc_info:
            await _upload(uploader, artifact)

        assert exc_info.value.transient is True

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self, artifact):
        uploader = ImgurUploader(
            ImageHostingConfig(imgur_client_id="cid"),
            client=_client(lambda r: httpx.Response(429)),
        )

        with pytest.raises(DeliveryError) as exc_info:
            await _upload(uploader, artifact)

        assert exc_info.value.transient is True

    @pytest.mark.asyncio
    async def test_client_error_is_not_transient(self, artifact):
        uploader = ImgurUploader(
            ImageHostingConfig(imgur_client_id="cid"),
            client=_client(lambda r: httpx.Response(403, text="forbidden")),
        )

        with pytest.raises(DeliveryError, match="HTTP 403") as exc_info:
            await _upload(uploader, artifact)

        assert exc_info.value.transient is False

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, artifact):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        uploader = ImgurUploader(ImageHostingConfig(imgur_client_id="cid"), client=_client(handler))

        with pytest.raises(DeliveryError) as exc_info:
            await _upload(uploader, artifact)

        assert exc_info.value.transient is True

    @pytest.mark.asyncio
    async def test_non_json_response(self, artifact):
        uploader = ImgurUploader(
            ImageHostingConfig(imgur_client_id="cid"),
            client=_client(lambda r: httpx.Response(200, text="<html>")),
        )

        with pytest.raises(DeliveryError, match="non-JSON"):
            await _upload(uploader, artifact)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [{"success": True, "data": "oops"}, {"success": True}])
    async def test_malformed_data_field(self, artifact, payload):
        uploader = ImgurUploader(
            ImageHostingConfig(imgur_client_id="cid"),
            client=_client(lambda r: httpx.Response(200, json=payload)),
        )

        with pytest.raises(DeliveryError, match="imgur rejected"):
            await _upload(uploader, artifact)

    @pytest.mark.asyncio
    async def test_unreadable_artifact(self, tmp_path):
        uploader = ImgurUploader(
            ImageHostingConfig(imgur_client_id="cid"),
            client=_client(lambda r: httpx.Response(200)),
        )

        with pytest.raises(DeliveryError, match="cannot read artifact"):
            await _upload(uploader, tmp_path / "missing.png")

    def test_base_uploader_is_abstract(self):
        from mmd.delivery.image_hosting import _HttpUploader

        with pytest.raises(TypeError):
            _HttpUploader(ImageHostingConfig())  # type: ignore[abstract]



@pytest.mark.unit
@pytest.mark.delivery
class TestSmms:
    @pytest.mark.asyncio
    async def test_success(self, artifact):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = request.content
            return httpx.Response(
                200, json={"success": True, "data": {"url": "https://s2.loli.net/a.png"}}
            )

        uploader = SmmsUploader(ImageHostingConfig(smms_token="tok"), client=_client(handler))
        record = await _upload(uploader, artifact)

        assert record.public_url == "https://s2.loli.net/a.png"
        assert seen["url"] == SMMS_UPLOAD_URL
        assert seen["auth"] == "tok"
        assert b'name="smfile"' in seen["body"]

    @pytest.mark.asyncio
    async def test_repeated_image_returns_existing_url(self, artifact):
        uploader = SmmsUploader(
            ImageHostingConfig(smms_token="tok"),
            client=_client(
                lambda r: httpx.Response(
                    200,
                    json={
                        "success": False,
                        "code": "image_repeated",
                        "images": "https://s2.loli.net/existing.png",
                    },
                )
            ),
        )

        record = await _upload(uploader, artifact)

        assert record.public_url == "https://s2.loli.net/existing.png"

    @pytest.mark.asyncio
    async def test_rejection(self, artifact):
        uploader = SmmsUploader(
            ImageHostingConfig(smms_token="tok"),
            client=_client(lambda r: httpx.Response(200, json={"success": False, "message": "quota"})),
        )

        with pytest.raises(DeliveryError, match="quota"):
            await _upload(uploader, artifact)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload", [{"success": True, "data": {}}, {"success": True, "data": ["x"]}]
    )
    async def test_success_without_url(self, artifact, payload):
        uploader = SmmsUploader(
            ImageHostingConfig(smms_token="tok"),
            client=_client(lambda r: httpx.Response(200, json=payload)),
        )

        with pytest.raises(DeliveryError, match="no image url") as exc_info:
            await _upload(uploader, artifact)

        assert exc_info.value.transient is False



@pytest.mark.unit
@pytest.mark.delivery
class TestCustom:
    @pytest.mark.asyncio
    async def test_success_with_headers(self, artifact):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["key"] = request.headers.get("X-Api-Key")
            return httpx.Response(201, json={"url": "https://files.example.com/a.png"})

        config = ImageHostingConfig(
            upload_url="https://files.example.com/upload", headers={"X-Api-Key": "secret"}
        )
        record = await _upload(CustomUploader(config, client=_client(handler)), artifact)

        assert record.public_url == "https://files.example.com/a.png"
        assert record.backend == "custom"
        assert seen == {"url": "https://files.example.com/upload", "key": "secret"}

    @pytest.mark.asyncio
    async def test_missing_upload_url(self, artifact):
        uploader = CustomUploader(ImageHostingConfig(), client=_client(lambda r: httpx.Response(200)))

        with pytest.raises(DeliveryError, match="upload_url"):
            await _upload(uploader, artifact)

    @pytest.mark.asyncio
    async def test_response_without_url(self, artifact):
        uploader = CustomUploader(
            ImageHostingConfig(upload_url="https://files.example.com/upload"),
            client=_client(lambda r: httpx.Response(200, json={"ok": True})),
        )

        with pytest.raises(DeliveryError, match="no 'url' field"):
            await _upload(uploader, artifact)
