"""Secure streaming gateway.

Resolves playback requests to short-lived signed storage URLs and proxies
playlists, segments and keys so storage stays private.
"""

import logging
import posixpath
import uuid
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional

import httpx

from pitchstream.core.config import settings
from pitchstream.core.logging import log_warning
from pitchstream.core.storage import ObjectStorage, StorageError, content_type_for
from pitchstream.modules.pitch.deps import CurrentUser
from pitchstream.modules.pitch.models import ElevatorPitch, PitchStatus
from pitchstream.modules.pitch.repository import PitchRepository
from pitchstream.modules.pitch.service import (
    ConflictError,
    InvalidSegmentError,
    NotFoundError,
    ValidationError,
)
from pitchstream.modules.streaming.playlist import HLS_MIME_TYPE, rewrite_playlist

logger = logging.getLogger(__name__)


@dataclass
class PlaylistResult:
    """Either rewritten playlist text or a URL to redirect to."""
    content: Optional[str] = None
    redirect_url: Optional[str] = None


@dataclass
class AssetStream:
    content_type: str
    chunks: AsyncIterator[bytes]
    close: Callable[[], Awaitable[None]]
    content_length: Optional[int] = None


class AssetFetcher:
    """Reads objects through signed URLs with httpx."""

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout

    async def fetch_bytes(self, url: str) -> bytes:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(url)
            if response.status_code >= 400:
                raise StorageError(f"Storage returned {response.status_code}")
            return response.content

    async def fetch_text(self, url: str) -> str:
        data = await self.fetch_bytes(url)
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise StorageError(f"Playlist is not valid UTF-8: {e}") from e

    async def open_stream(self, url: str) -> tuple[AsyncIterator[bytes], Callable[[], Awaitable[None]], Optional[int]]:
        client = httpx.AsyncClient(timeout=self.timeout)
        try:
            response = await client.send(client.build_request("GET", url), stream=True)
        except httpx.HTTPError as e:
            await client.aclose()
            raise StorageError(f"Storage request failed: {e}") from e

        async def close() -> None:
            await response.aclose()
            await client.aclose()

        if response.status_code >= 400:
            await close()
            raise StorageError(f"Storage returned {response.status_code}")

        length = response.headers.get("content-length")
        return response.aiter_bytes(), close, int(length) if length and length.isdigit() else None


def clean_asset_name(name: str) -> str:
    """Normalize separators and reject names that could leave the asset directory.

    Raises:
        InvalidSegmentError: On ``..``, absolute paths or empty names.
    """
    cleaned = name.replace("\\", "/").strip()
    if not cleaned or ".." in cleaned or cleaned.startswith("/"):
        raise InvalidSegmentError("Invalid segment path")
    return cleaned


def segment_content_type(name: str) -> str:
    lowered = name.lower()
    if lowered.endswith(".ts"):
        return "video/mp2t"
    if lowered.endswith(".m3u8"):
        return HLS_MIME_TYPE
    return content_type_for(name)


class StreamingService:
    """Service for gated HLS playback."""

    def __init__(
        self,
        repository: PitchRepository,
        storage: ObjectStorage,
        fetcher: Optional[AssetFetcher] = None,
        private_bucket: bool = settings.is_private_bucket,
    ):
        self.pitch_repo = repository
        self.storage = storage
        self.fetcher = fetcher or AssetFetcher()
        self.private_bucket = private_bucket

    def _check_visible(self, pitch: ElevatorPitch, viewer: Optional[CurrentUser]) -> None:
        if pitch.status != PitchStatus.DEACTIVATE.value:
            return
        if viewer and (viewer.is_admin or viewer.user_id == pitch.owner_id):
            return
        raise NotFoundError("Elevator pitch not found")

    async def _ready_pitch(self, owner_id: str, viewer: Optional[CurrentUser]) -> ElevatorPitch:
        pitch = await self.pitch_repo.get_by_owner(owner_id)
        if pitch is None or not pitch.is_ready:
            raise NotFoundError("Elevator pitch not found")
        self._check_visible(pitch, viewer)
        return pitch

    async def get_master_playlist(
        self,
        pitch_id: uuid.UUID,
        viewer: Optional[CurrentUser] = None,
    ) -> PlaylistResult:
        pitch = await self.pitch_repo.get_by_id(pitch_id)
        if pitch is None:
            raise NotFoundError("Elevator pitch not found")
        if not pitch.is_ready:
            raise ConflictError("Elevator pitch is not ready for playback")
        self._check_visible(pitch, viewer)

        if not self.private_bucket:
            return PlaylistResult(redirect_url=pitch.hls_url)

        try:
            signed_url = await self.storage.presign_download(self.storage.key_from_url(pitch.hls_url))
            text = await self.fetcher.fetch_text(signed_url)
        except (StorageError, httpx.HTTPError) as e:
            log_warning(logger, f"Master playlist unavailable: {e}", owner_id=pitch.owner_id)
            raise NotFoundError("Playlist not found") from e

        return PlaylistResult(content=rewrite_playlist(text, pitch.owner_id))

    async def get_segment(
        self,
        owner_id: str,
        segment_name: str,
        viewer: Optional[CurrentUser] = None,
    ) -> AssetStream:
        """Stream a rendition playlist or segment from the pitch's HLS directory."""
        name = clean_asset_name(segment_name)
        pitch = await self._ready_pitch(owner_id, viewer)

        directory = posixpath.dirname(self.storage.key_from_url(pitch.hls_url))
        key = f"{directory}/{name}" if directory else name
        content_type = segment_content_type(name)

        try:
            signed_url = await self.storage.presign_download(key)
            if content_type == HLS_MIME_TYPE:
                text = rewrite_playlist(await self.fetcher.fetch_text(signed_url), owner_id)
                body = text.encode("utf-8")
                return AssetStream(
                    content_type=content_type,
                    chunks=_single_chunk(body),
                    close=_noop,
                    content_length=len(body),
                )
            chunks, close, length = await self.fetcher.open_stream(signed_url)
        except (StorageError, httpx.HTTPError) as e:
            log_warning(logger, f"Segment unavailable: {e}", owner_id=owner_id, segment=name)
            raise NotFoundError("Segment not found") from e

        return AssetStream(content_type=content_type, chunks=chunks, close=close, content_length=length)

    async def get_encryption_key(
        self,
        owner_id: str,
        key_name: str,
        viewer: Optional[CurrentUser] = None,
    ) -> bytes:
        name = clean_asset_name(key_name)
        pitch = await self._ready_pitch(owner_id, viewer)
        if not pitch.encryption_key_url:
            raise NotFoundError("Encryption key not found")

        key = self.storage.key_from_url(pitch.encryption_key_url)
        if posixpath.basename(key) != name:
            raise ValidationError("Invalid key request")

        try:
            signed_url = await self.storage.presign_download(key)
            return await self.fetcher.fetch_bytes(signed_url)
        except (StorageError, httpx.HTTPError) as e:
            log_warning(logger, f"Encryption key unavailable: {e}", owner_id=owner_id)
            raise NotFoundError("Encryption key not found") from e


async def _single_chunk(body: bytes) -> AsyncIterator[bytes]:
    yield body


async def _noop() -> None:
    return None
