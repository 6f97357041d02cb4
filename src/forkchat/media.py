"""Concrete implementations for media stores."""

import asyncio
import base64
import binascii
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Tuple

import httpx

from . import config
from .exceptions import MediaError, MediaTooLargeError

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "image/heic": "heic",
    "image/heif": "heif",
    "application/pdf": "pdf",
    "video/mp4": "mp4",
}


def extension_for(mime_type: str) -> str:
    return _EXTENSIONS.get(mime_type, "jpg")


def to_data_url(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def parse_data_url(url: str) -> Tuple[bytes, str]:
    """Split ``data:<mime>;base64,<payload>`` into bytes and MIME type."""
    header, sep, payload = url.partition(";base64,")
    if not sep or not header.startswith("data:"):
        raise MediaError("Not a base64 data URL")
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MediaError(f"Invalid base64 payload: {e}") from e
    return data, header[len("data:") :]


def _check_size(data: bytes, max_bytes: Optional[int]) -> bytes:
    if max_bytes is not None and len(data) > max_bytes:
        raise MediaTooLargeError(len(data), max_bytes)
    return data


async def fetch_url(
    url: str, max_bytes: Optional[int] = None, client: Optional[httpx.AsyncClient] = None
) -> bytes:
    """Download an http(s) URL, aborting as soon as ``max_bytes`` is exceeded."""
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=60.0)
    try:
        async with client.stream("GET", url) as response:
            if response.status_code >= 400:
                raise MediaError(f"Download failed with status {response.status_code}")
            received = bytearray()
            async for chunk in response.aiter_bytes():
                received.extend(chunk)
                _check_size(received, max_bytes)
            return bytes(received)
    except httpx.HTTPError as e:
        raise MediaError(f"Download failed: {e}") from e
    finally:
        if owns_client:
            await client.aclose()


class Media(ABC):
    """Interface for uploading and downloading message media."""

    @abstractmethod
    async def upload(
        self, data: bytes, mime_type: str, *, conversation_id: str, message_id: str
    ) -> str:
        """Stores media and returns the path or URL that retrieves it."""
        pass

    @abstractmethod
    async def download(self, path_or_url: str, max_bytes: Optional[int] = None) -> bytes:
        """Retrieves media, failing closed when it exceeds ``max_bytes``."""
        pass

    @staticmethod
    def media_path(conversation_id: str, message_id: str, mime_type: str) -> str:
        return f"media/{conversation_id}/{message_id}.{extension_for(mime_type)}"


class InMemory(Media):
    """Keeps uploaded media in a dictionary keyed by its path."""

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}

    async def upload(self, data, mime_type, *, conversation_id, message_id):
        path = self.media_path(conversation_id, message_id, mime_type)
        self._blobs[path] = bytes(data)
        return path

    async def download(self, path_or_url, max_bytes=None):
        if path_or_url.startswith(("http://", "https://")):
            return await fetch_url(path_or_url, max_bytes)
        try:
            data = self._blobs[path_or_url]
        except KeyError:
            raise MediaError(f"Invalid media URL: {path_or_url}") from None
        return _check_size(data, max_bytes)


class Directory(Media):
    """Stores media as files below a base directory."""

    def __init__(self, base_dir: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        self.base_dir = Path(base_dir) if base_dir else config.DATA_DIR
        self._client = client

    async def upload(self, data, mime_type, *, conversation_id, message_id):
        path = self.media_path(conversation_id, message_id, mime_type)
        target = self.base_dir / path
        try:
            await asyncio.to_thread(self._write, target, data)
        except OSError as e:
            raise MediaError(f"Upload failed: {e}") from e
        logger.info("Stored %d bytes of %s at %s", len(data), mime_type, path)
        return path

    async def download(self, path_or_url, max_bytes=None):
        if path_or_url.startswith(("http://", "https://")):
            return await fetch_url(path_or_url, max_bytes, client=self._client)
        target = self.base_dir / path_or_url
        try:
            size = target.stat().st_size
            if max_bytes is not None and size > max_bytes:
                raise MediaTooLargeError(size, max_bytes)
            return await asyncio.to_thread(target.read_bytes)
        except OSError as e:
            raise MediaError(f"Storage download failed: {e}") from e

    @staticmethod
    def _write(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
