"""Tests for the gated streaming gateway and its routes."""

import asyncio
import uuid

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from hypothesis import given, settings, strategies as st

from fakes import FakeFetcher, FakeRepository, FakeStorage, ready_pitch
from pitchstream.core.config import settings as app_settings
from pitchstream.modules.pitch.deps import CurrentUser
from pitchstream.modules.pitch.models import ElevatorPitch, PitchStatus
from pitchstream.modules.pitch.service import (
    ConflictError,
    InvalidSegmentError,
    NotFoundError,
    ValidationError,
)
from pitchstream.modules.streaming.playlist import HLS_MIME_TYPE, stream_path
from pitchstream.modules.streaming.router import get_streaming_service, router
from pitchstream.modules.streaming.service import StreamingService

OWNER = CurrentUser(user_id="user-1", role="candidate")
ADMIN = CurrentUser(user_id="admin-1", role="admin")
VIEWER = CurrentUser(user_id="viewer-1", role="recruiter")


@pytest.fixture
def pitch(storage, repository) -> ElevatorPitch:
    pitch = ready_pitch("user-1", storage)
    repository.pitches["user-1"] = pitch
    return pitch


@pytest.fixture
def streaming(repository, storage, fetcher) -> StreamingService:
    return StreamingService(repository, storage, fetcher, private_bucket=True)


async def _collect(stream) -> bytes:
    body = b"".join([chunk async for chunk in stream.chunks])
    await stream.close()
    return body


class TestMasterPlaylist:
    @pytest.mark.asyncio
    async def test_private_bucket_rewrites_to_proxy(self, streaming, pitch) -> None:
        result = await streaming.get_master_playlist(pitch.id, VIEWER)

        assert result.redirect_url is None
        assert stream_path("user-1", "480p.m3u8") in result.content
        assert "storage.example" not in result.content
        assert result.content.startswith("#EXTM3U\n")

    @pytest.mark.asyncio
    async def test_public_bucket_redirects(self, repository, storage, fetcher, pitch) -> None:
        service = StreamingService(repository, storage, fetcher, private_bucket=False)

        result = await service.get_master_playlist(pitch.id, VIEWER)

        assert result.redirect_url == pitch.hls_url
        assert result.content is None

    @pytest.mark.asyncio
    async def test_unknown_pitch(self, streaming) -> None:
        with pytest.raises(NotFoundError):
            await streaming.get_master_playlist(uuid.uuid4(), VIEWER)

    @pytest.mark.asyncio
    async def test_not_ready_conflicts(self, streaming, repository) -> None:
        pending = ElevatorPitch(owner_id="user-2", owner_role="candidate")
        repository.pitches["user-2"] = pending

        with pytest.raises(ConflictError):
            await streaming.get_master_playlist(pending.id, VIEWER)

    @pytest.mark.asyncio
    async def test_deactivated_pitch_hidden_from_others(self, streaming, pitch) -> None:
        pitch.deactivate()

        with pytest.raises(NotFoundError):
            await streaming.get_master_playlist(pitch.id, VIEWER)
        assert (await streaming.get_master_playlist(pitch.id, OWNER)).content
        assert (await streaming.get_master_playlist(pitch.id, ADMIN)).content

    @pytest.mark.asyncio
    async def test_missing_object_is_not_found(self, streaming, storage, pitch) -> None:
        storage.objects.pop(storage.key_from_url(pitch.hls_url))

        with pytest.raises(NotFoundError):
            await streaming.get_master_playlist(pitch.id, VIEWER)

    @pytest.mark.asyncio
    async def test_undecodable_playlist_is_not_found(self, streaming, storage, pitch) -> None:
        storage.objects[storage.key_from_url(pitch.hls_url)] = b"#EXTM3U\n\xff\xfe480p.m3u8\n"

        with pytest.raises(NotFoundError):
            await streaming.get_master_playlist(pitch.id, VIEWER)


class TestSegments:
    @pytest.mark.asyncio
    async def test_streams_segment_bytes(self, streaming, pitch) -> None:
        stream = await streaming.get_segment("user-1", "480p_000.ts", VIEWER)

        assert stream.content_type == "video/mp2t"
        assert stream.content_length == 376
        assert await _collect(stream) == b"\x47" * 376

    @pytest.mark.asyncio
    async def test_rendition_playlist_is_rewritten(self, streaming, pitch) -> None:
        stream = await streaming.get_segment("user-1", "480p.m3u8", VIEWER)

        assert stream.content_type == HLS_MIME_TYPE
        body = (await _collect(stream)).decode()
        assert stream_path("user-1", "480p_000.ts") in body

    @pytest.mark.asyncio
    async def test_missing_segment(self, streaming, pitch) -> None:
        with pytest.raises(NotFoundError):
            await streaming.get_segment("user-1", "480p_999.ts", VIEWER)

    @pytest.mark.asyncio
    async def test_undecodable_rendition_playlist(self, streaming, storage, pitch) -> None:
        directory = storage.key_from_url(pitch.hls_url).rsplit("/", 1)[0]
        storage.objects[f"{directory}/480p.m3u8"] = b"\x80\x81"

        with pytest.raises(NotFoundError):
            await streaming.get_segment("user-1", "480p.m3u8", VIEWER)

    @pytest.mark.asyncio
    async def test_pitch_not_ready(self, streaming, repository) -> None:
        repository.pitches["user-2"] = ElevatorPitch(owner_id="user-2")
        with pytest.raises(NotFoundError):
            await streaming.get_segment("user-2", "480p_000.ts", VIEWER)


class TestTraversal:
    """Escaping names are rejected before any storage access."""

    @given(
        prefix=st.sampled_from(["", "a/", "480p/", "/"]),
        suffix=st.sampled_from(["", "/encryption.key", "/../source/raw.mp4", "x.ts"]),
    )
    @settings(max_examples=50, deadline=None)
    def test_dot_dot_never_reaches_storage(self, prefix: str, suffix: str) -> None:
        storage = FakeStorage()
        repository = FakeRepository()
        repository.pitches["user-1"] = ready_pitch("user-1", storage)
        service = StreamingService(repository, storage, FakeFetcher(storage), private_bucket=True)

        with pytest.raises(InvalidSegmentError) as exc_info:
            asyncio.run(service.get_segment("user-1", f"{prefix}..{suffix}", VIEWER))

        assert exc_info.value.status_code == 400
        assert storage.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["", "   ", "/etc/passwd", "\\..\\raw.mp4"])
    async def test_other_escaping_names(self, streaming, storage, pitch, name) -> None:
        with pytest.raises(InvalidSegmentError):
            await streaming.get_segment("user-1", name, VIEWER)
        assert storage.calls == []


class TestEncryptionKey:
    @pytest.mark.asyncio
    async def test_returns_key_bytes(self, streaming, pitch) -> None:
        assert await streaming.get_encryption_key("user-1", "encryption.key", VIEWER) == b"0123456789abcdef"

    @pytest.mark.asyncio
    async def test_name_mismatch(self, streaming, pitch) -> None:
        with pytest.raises(ValidationError):
            await streaming.get_encryption_key("user-1", "other.key", VIEWER)

    @pytest.mark.asyncio
    async def test_unknown_owner(self, streaming) -> None:
        with pytest.raises(NotFoundError):
            await streaming.get_encryption_key("nobody", "encryption.key", VIEWER)


class TestRoutes:
    @pytest.fixture
    def client(self, streaming, pitch) -> TestClient:
        app = FastAPI()
        app.include_router(router, prefix=app_settings.API_V1_PREFIX)
        app.dependency_overrides[get_streaming_service] = lambda: streaming
        return TestClient(app)

    def test_requires_caller_identity(self, client, pitch) -> None:
        response = client.get(f"{app_settings.API_V1_PREFIX}/elevator-pitch/stream/{pitch.id}")
        assert response.status_code == 401

    def test_master_playlist(self, client, pitch) -> None:
        response = client.get(
            f"{app_settings.API_V1_PREFIX}/elevator-pitch/stream/{pitch.id}",
            headers={"X-User-Id": "viewer-1"},
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith(HLS_MIME_TYPE)
        assert stream_path("user-1", "480p.m3u8") in response.text

    def test_segment(self, client) -> None:
        response = client.get(
            f"{app_settings.API_V1_PREFIX}/elevator-pitch/stream/user-1/480p_000.ts",
            headers={"X-User-Id": "viewer-1"},
        )

        assert response.status_code == 200
        assert response.headers["content-type"] == "video/mp2t"
        assert response.headers["cache-control"] == "private, max-age=3600"
        assert response.content == b"\x47" * 376

    def test_key_is_never_cached(self, client) -> None:
        response = client.get(
            f"{app_settings.API_V1_PREFIX}/elevator-pitch/key/user-1/encryption.key",
            headers={"X-User-Id": "viewer-1"},
        )

        assert response.status_code == 200
        assert response.headers["cache-control"] == "no-store"
        assert response.content == b"0123456789abcdef"

    def test_service_errors_map_to_status(self, client) -> None:
        response = client.get(
            f"{app_settings.API_V1_PREFIX}/elevator-pitch/key/user-1/other.key",
            headers={"X-User-Id": "viewer-1"},
        )
        assert response.status_code == 400
