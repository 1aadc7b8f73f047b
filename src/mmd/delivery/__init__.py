"""Artifact delivery: local static server, object storage and image hosts."""

from mmd.delivery.image_hosting import CustomUploader, ImgurUploader, SmmsUploader
from mmd.delivery.resolver import DeliveryResolver, content_type_for, create_uploader
from mmd.delivery.static_server import StaticFileServer
from mmd.delivery.storage import MinioObjectStore, public_object_url

__all__ = [
    "CustomUploader",
    "DeliveryResolver",
    "ImgurUploader",
    "MinioObjectStore",
    "SmmsUploader",
    "StaticFileServer",
    "content_type_for",
    "create_uploader",
    "public_object_url",
]
