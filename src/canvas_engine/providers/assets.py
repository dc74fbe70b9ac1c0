"""
Asset Client - Upload media to the backend's asset storage.

Two upload paths are supported:
- Multipart upload through the app server (``/api/assets/upload``)
- Direct upload to cloud storage via a presigned PUT URL
  (``/api/assets/presign``), falling back to the multipart path when the
  backend has no cloud storage configured

Uploaded assets return a stable URL suitable for a media node's ``url``.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Any

import aiohttp
from PIL import Image, UnidentifiedImageError

from canvas_engine.providers.base import (
    AssetError,
    AuthenticationError,
    ProviderConfig,
    StorageNotConfiguredError,
)
from canvas_engine.providers.registry import get_registry


logger = logging.getLogger(__name__)

UPLOAD_PATH = "/api/assets/upload"
PRESIGN_PATH = "/api/assets/presign"

MAX_UPLOAD_BYTES = 50 * 1024 * 1024

MIME_TYPES: dict[str, str] = {
    # Images
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
    "svg": "image/svg+xml",
    # Videos
    "mp4": "video/mp4",
    "webm": "video/webm",
    "mov": "video/quicktime",
    # Audio
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "ogg": "audio/ogg",
    "m4a": "audio/mp4",
}

EXTENSIONS: dict[str, str] = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "video/quicktime": "mov",
    "audio/mpeg": "mp3",
    "audio/wav": "wav",
}


def get_mime_type(extension: str) -> str:
    """MIME type for a file extension (with or without the dot)."""
    ext = extension.lower().lstrip(".")
    return MIME_TYPES.get(ext) or mimetypes.types_map.get(f".{ext}", "application/octet-stream")


def get_extension(mime_type: str) -> str:
    return EXTENSIONS.get(mime_type, "bin")


def media_type_for(mime_type: str) -> str:
    """Media node type ("image", "video" or "audio") for a MIME type."""
    if mime_type.startswith("video/"):
        return "video"
    if mime_type.startswith("audio/"):
        return "audio"
    return "image"


@dataclass
class ImageInfo:
    """What Pillow could tell about an image payload."""
    mime_type: str
    width: int
    height: int
    format: str


def describe_image(data: bytes) -> ImageInfo | None:
    """
    Sniff format and dimensions of an image payload.

    Returns None if Pillow does not recognize the bytes as an image.
    """
    try:
        with Image.open(BytesIO(data)) as img:
            fmt = img.format or ""
            return ImageInfo(
                mime_type=Image.MIME.get(fmt, "application/octet-stream"),
                width=img.width,
                height=img.height,
                format=fmt,
            )
    except (UnidentifiedImageError, OSError):
        return None


@dataclass
class StoredAsset:
    """An asset persisted by the backend."""
    id: str
    url: str
    mime_type: str
    size_bytes: int
    width: int | None = None
    height: int | None = None

    @property
    def media_type(self) -> str:
        return media_type_for(self.mime_type)

    def to_media_data(self) -> dict[str, Any]:
        """Data for a media node showing this asset."""
        data: dict[str, Any] = {"url": self.url, "type": self.media_type}
        if self.width and self.height:
            data["width"] = self.width
            data["height"] = self.height
        return data


@dataclass
class PresignedUpload:
    """Target for a direct client-to-storage upload."""
    upload_url: str
    public_url: str
    key: str


class AssetClient:
    """Client for the backend's asset storage endpoints."""

    def __init__(self, config: ProviderConfig | None = None):
        self.config = config or get_registry().config

    @property
    def base_url(self) -> str:
        return self.config.base_url.rstrip("/")

    def get_headers(self) -> dict[str, str]:
        if self.config.api_key:
            return {"Authorization": f"Bearer {self.config.api_key}"}
        return {}

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.config.request_timeout)

    async def upload(
        self,
        data: bytes,
        filename: str,
        content_type: str | None = None,
        node_id: str | None = None,
        canvas_id: str | None = None,
    ) -> StoredAsset:
        """
        Upload a payload through the app server.

        Raises:
            AssetError: Payload too large, transport failure or error answer
        """
        if len(data) > MAX_UPLOAD_BYTES:
            raise AssetError(f"File too large (max {MAX_UPLOAD_BYTES // (1024 * 1024)}MB)")

        info = describe_image(data)
        if content_type is None:
            content_type = info.mime_type if info else get_mime_type(Path(filename).suffix)

        form = aiohttp.FormData()
        form.add_field("file", data, filename=filename, content_type=content_type)
        if node_id:
            form.add_field("nodeId", node_id)
        if canvas_id:
            form.add_field("canvasId", canvas_id)

        url = f"{self.base_url}{UPLOAD_PATH}"
        try:
            async with aiohttp.ClientSession(timeout=self._timeout()) as session:
                async with session.post(url, data=form, headers=self.get_headers()) as resp:
                    body = await self._read_json(resp)
                    self._check_error(resp.status, body)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise AssetError(f"Upload failed: {e}") from e

        if not body.get("url"):
            raise AssetError("Upload response has no url")

        return StoredAsset(
            id=body.get("id", ""),
            url=body["url"],
            mime_type=body.get("mimeType") or content_type,
            size_bytes=int(body.get("sizeBytes", len(data))),
            width=info.width if info else None,
            height=info.height if info else None,
        )

    async def presign(self, content_type: str, prefix: str | None = None) -> PresignedUpload:
        """
        Request a presigned PUT URL.

        Raises:
            StorageNotConfiguredError: The backend has no cloud storage
            AssetError: Any other failure
        """
        body: dict[str, Any] = {"contentType": content_type}
        if prefix:
            body["prefix"] = prefix

        url = f"{self.base_url}{PRESIGN_PATH}"
        try:
            async with aiohttp.ClientSession(timeout=self._timeout()) as session:
                async with session.post(url, json=body, headers=self.get_headers()) as resp:
                    data = await self._read_json(resp)
                    if resp.status == 501:
                        raise StorageNotConfiguredError(data.get("error", "Cloud storage not configured"))
                    self._check_error(resp.status, data)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise AssetError(f"Presign failed: {e}") from e

        try:
            return PresignedUpload(
                upload_url=data["uploadUrl"],
                public_url=data["publicUrl"],
                key=data.get("key", ""),
            )
        except KeyError as e:
            raise AssetError(f"Presign response missing {e}") from e

    async def upload_direct(
        self,
        data: bytes,
        filename: str,
        content_type: str | None = None,
    ) -> StoredAsset:
        """
        Upload straight to cloud storage, bypassing the app server.

        Falls back to :meth:`upload` when the backend reports that no
        cloud storage is configured.
        """
        info = describe_image(data)
        if content_type is None:
            content_type = info.mime_type if info else get_mime_type(Path(filename).suffix)

        try:
            target = await self.presign(content_type, media_type_for(content_type))
        except StorageNotConfiguredError:
            logger.info("Direct upload unavailable, uploading %s through the server", filename)
            return await self.upload(data, filename, content_type)

        try:
            async with aiohttp.ClientSession(timeout=self._timeout()) as session:
                async with session.put(
                    target.upload_url,
                    data=data,
                    headers={"Content-Type": content_type},
                ) as resp:
                    if resp.status >= 300:
                        raise AssetError(f"Direct upload failed: HTTP {resp.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise AssetError(f"Direct upload failed: {e}") from e

        return StoredAsset(
            id=target.key.rsplit(".", 1)[0],
            url=target.public_url,
            mime_type=content_type,
            size_bytes=len(data),
            width=info.width if info else None,
            height=info.height if info else None,
        )

    async def upload_file(self, path: Path, direct: bool = False) -> StoredAsset:
        """Upload a local file."""
        data = await asyncio.to_thread(path.read_bytes)
        content_type = get_mime_type(path.suffix)
        if content_type == "application/octet-stream":
            content_type = None
        if direct:
            return await self.upload_direct(data, path.name, content_type)
        return await self.upload(data, path.name, content_type)

    @staticmethod
    async def _read_json(resp: aiohttp.ClientResponse) -> dict[str, Any]:
        try:
            data = await resp.json(content_type=None)
        except ValueError:
            return {"error": (await resp.text()).strip() or resp.reason or "Invalid response"}
        return data if isinstance(data, dict) else {}

    def _check_error(self, status: int, data: dict[str, Any]) -> None:
        """Check for API errors."""
        if status == 401:
            raise AuthenticationError("Invalid or missing API key")
        elif status >= 400:
            raise AssetError(str(data.get("error") or f"HTTP {status}"))
