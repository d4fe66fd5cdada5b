"""In-memory stand-ins for storage, database, media tools and collaborators."""

import asyncio
import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from pitchstream.core.storage import (
    ObjectStorage,
    PresignedUpload,
    StorageConfig,
    StorageError,
    StorageResult,
)
from pitchstream.modules.pitch.collaborators import Notifier, SubscriptionLookup
from pitchstream.modules.pitch.entitlement import Subscription
from pitchstream.modules.pitch.models import ElevatorPitch, ProcessingState
from pitchstream.modules.streaming.service import AssetFetcher
from pitchstream.modules.transcoding.abr import RENDITION_CATALOGUE, plan_renditions
from pitchstream.modules.transcoding.ffmpeg import (
    KEY_FILE_NAME,
    KEY_INFO_FILE_NAME,
    MASTER_PLAYLIST_NAME,
    HLSOutput,
    write_master_playlist,
)
from pitchstream.modules.transcoding.probe import MediaMetadata

SIGNED_PREFIX = "https://signed.example/get/"


class FakeStorage(ObjectStorage):
    """Object storage backed by a dict; records every call."""

    def __init__(self):
        super().__init__(StorageConfig(bucket="test-bucket", endpoint_url="https://storage.example"))
        self.objects: dict[str, bytes] = {}
        self.calls: list[tuple[str, str]] = []

    def _get_client(self):
        raise AssertionError("FakeStorage never talks to S3")

    async def presign_upload(self, key, content_type, expires_in=900):
        self.calls.append(("presign_upload", key))
        return PresignedUpload(
            upload_url=f"https://signed.example/put/{key}",
            key=key,
            bucket=self.bucket,
        )

    async def presign_download(self, key, expires_in=3600):
        self.calls.append(("presign_download", key))
        return f"{SIGNED_PREFIX}{key}"

    async def upload_file(self, file_path, key):
        self.calls.append(("upload_file", key))
        with open(file_path, "rb") as f:
            data = f.read()
        self.objects[key] = data
        return StorageResult(key=key, url=self.public_url(key), file_size=len(data))

    async def download_to_file(self, key, destination):
        self.calls.append(("download", key))
        if key not in self.objects:
            raise StorageError(f"No such key: {key}", key=key)
        os.makedirs(os.path.dirname(destination), exist_ok=True)
        with open(destination, "wb") as f:
            f.write(self.objects[key])
        return destination

    async def delete(self, key):
        self.calls.append(("delete", key))
        self.objects.pop(key, None)

    async def delete_prefix(self, prefix):
        self.calls.append(("delete_prefix", prefix))
        doomed = [k for k in self.objects if k.startswith(prefix)]
        for key in doomed:
            del self.objects[key]
        return len(doomed)

    def keys_under(self, prefix: str) -> list[str]:
        return sorted(k for k in self.objects if k.startswith(prefix))


class FakeFetcher(AssetFetcher):
    """Resolves signed URLs issued by FakeStorage back to stored bytes."""

    def __init__(self, storage: FakeStorage):
        self.storage = storage

    def _lookup(self, url: str) -> bytes:
        key = url[len(SIGNED_PREFIX):] if url.startswith(SIGNED_PREFIX) else url
        if key not in self.storage.objects:
            raise StorageError(f"No such key: {key}", key=key)
        return self.storage.objects[key]

    async def fetch_bytes(self, url: str) -> bytes:
        return self._lookup(url)

    async def open_stream(self, url: str):
        data = self._lookup(url)
        closed = []

        async def chunks() -> AsyncIterator[bytes]:
            for start in range(0, len(data), 4):
                yield data[start:start + 4]

        async def close() -> None:
            closed.append(True)

        return chunks(), close, len(data)


class FakeRepository:
    """Dict-backed PitchRepository."""

    def __init__(self):
        self.pitches: dict[str, ElevatorPitch] = {}
        self.commits = 0
        self.rollbacks = 0

    def scope(self):
        @asynccontextmanager
        async def _scope():
            yield self

        return _scope

    async def get_by_owner(self, owner_id: str) -> Optional[ElevatorPitch]:
        return self.pitches.get(owner_id)

    async def get_by_id(self, pitch_id: uuid.UUID) -> Optional[ElevatorPitch]:
        return next((p for p in self.pitches.values() if p.id == pitch_id), None)

    async def create(self, owner_id, owner_role=None, raw_key=None, raw_bucket=None, file_name=None, file_size=None):
        assert owner_id not in self.pitches, "owner already has a pitch"
        pitch = ElevatorPitch(
            owner_id=owner_id,
            owner_role=owner_role,
            raw_key=raw_key,
            raw_bucket=raw_bucket,
            file_name=file_name,
            file_size=file_size,
        )
        pitch.created_at = datetime.now(timezone.utc)
        self.pitches[owner_id] = pitch
        return pitch

    async def delete(self, pitch: ElevatorPitch) -> None:
        self.pitches.pop(pitch.owner_id, None)

    async def list_ready_by_role(self, role: str):
        return [
            p for p in self.pitches.values()
            if p.owner_role == role and p.state == ProcessingState.READY
        ]

    async def list_stale(self):
        return [
            p for p in self.pitches.values()
            if p.state in (ProcessingState.QUEUED, ProcessingState.PROCESSING) and p.raw_key
        ]

    async def commit(self) -> None:
        self.commits += 1

    async def rollback(self) -> None:
        self.rollbacks += 1


class FakeInspector:
    """Returns canned metadata, or raises a canned error."""

    def __init__(self, metadata: Optional[MediaMetadata] = None, error: Optional[Exception] = None):
        self.metadata = metadata or MediaMetadata(
            duration_seconds=20.0,
            container_format="mov,mp4,m4a,3gp,3g2,mj2",
            video_codec="h264",
            rotation_degrees=0,
            width=1920,
            height=1080,
        )
        self.error = error
        self.sources: list[str] = []

    async def inspect(self, source: str) -> MediaMetadata:
        self.sources.append(source)
        if self.error:
            raise self.error
        return self.metadata


class FakeTranscoder:
    """Writes a small HLS package to disk and uploads it like HLSTranscoder."""

    def __init__(self, storage: FakeStorage, delay: float = 0.0, error: Optional[Exception] = None):
        self.storage = storage
        self.delay = delay
        self.error = error
        self.profiles = [RENDITION_CATALOGUE["480p"]]
        self.active = 0
        self.max_active = 0
        self.owners: list[str] = []

    async def process_hls(self, source_path, output_dir, owner_id, storage_prefix, metadata=None):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.owners.append(owner_id)
        try:
            assert os.path.exists(source_path), "source was not downloaded"
            await asyncio.sleep(self.delay)
            if self.error:
                raise self.error

            os.makedirs(output_dir, exist_ok=True)
            renditions = plan_renditions(metadata.display_width, metadata.display_height, self.profiles)
            for rendition in renditions:
                with open(os.path.join(output_dir, rendition.playlist_name), "w") as f:
                    f.write(f"#EXTM3U\n#EXTINF:8.0,\n{rendition.name}_000.ts\n#EXT-X-ENDLIST\n")
                with open(os.path.join(output_dir, f"{rendition.name}_000.ts"), "wb") as f:
                    f.write(b"\x47" * 188)
            with open(os.path.join(output_dir, KEY_FILE_NAME), "wb") as f:
                f.write(b"k" * 16)
            with open(os.path.join(output_dir, KEY_INFO_FILE_NAME), "w") as f:
                f.write("uri\npath\niv\n")
            write_master_playlist(output_dir, renditions)

            files = await self.storage.upload_directory(output_dir, storage_prefix)
            return HLSOutput(
                master_url=files[MASTER_PLAYLIST_NAME],
                key_url=files[KEY_FILE_NAME],
                files=files,
                renditions=renditions,
            )
        finally:
            self.active -= 1


class FakeSubscriptions(SubscriptionLookup):
    def __init__(self, subscription: Optional[Subscription] = None):
        self.subscription = subscription

    async def get_active_subscription(self, owner_id: str) -> Optional[Subscription]:
        return self.subscription


class FakeNotifier(Notifier):
    def __init__(self):
        self.sent: list[dict] = []

    async def notify(self, owner_id, message, type, reference_id=None) -> None:
        self.sent.append({
            "owner_id": owner_id,
            "message": message,
            "type": type,
            "reference_id": reference_id,
        })


def ready_pitch(
    owner_id: str = "user-1",
    storage: Optional[FakeStorage] = None,
    role: str = "candidate",
) -> ElevatorPitch:
    """A pitch that went through the whole pipeline, with its HLS objects stored."""
    prefix = f"elevator_pitches/{owner_id}/hls/1700000000000"
    hls_key = f"{prefix}/{MASTER_PLAYLIST_NAME}"
    key_key = f"{prefix}/{KEY_FILE_NAME}"
    raw_key = f"elevator_pitches/{owner_id}/source/1700000000000-abcd1234-pitch.mp4"

    pitch = ElevatorPitch(owner_id=owner_id, owner_role=role, raw_bucket="test-bucket")
    metadata = MediaMetadata(duration_seconds=20.0, video_codec="h264", width=1920, height=1080)
    pitch.mark_pending(raw_key=raw_key)
    pitch.mark_queued(metadata)
    pitch.mark_processing()

    if storage is not None:
        storage.objects[raw_key] = b"raw"
        storage.objects[hls_key] = (
            b"#EXTM3U\n#EXT-X-VERSION:3\n"
            b'#EXT-X-STREAM-INF:BANDWIDTH=3184000,RESOLUTION=854x480,CODECS="avc1.640029,mp4a.40.2"\n'
            b"480p.m3u8\n"
        )
        storage.objects[f"{prefix}/480p.m3u8"] = b"#EXTM3U\n#EXTINF:8.0,\n480p_000.ts\n#EXT-X-ENDLIST\n"
        storage.objects[f"{prefix}/480p_000.ts"] = b"\x47" * 376
        storage.objects[key_key] = b"0123456789abcdef"
        pitch.mark_ready(storage.public_url(hls_key), storage.public_url(key_key), metadata)
    else:
        pitch.mark_ready(
            f"https://storage.example/test-bucket/{hls_key}",
            f"https://storage.example/test-bucket/{key_key}",
            metadata,
        )
    return pitch


def queued_pitch(
    owner_id: str,
    storage: FakeStorage,
    repository: FakeRepository,
    role: str = "candidate",
    metadata: Optional[MediaMetadata] = None,
) -> ElevatorPitch:
    """A validated pitch waiting for the worker, with its raw upload stored."""
    raw_key = f"elevator_pitches/{owner_id}/source/1700000000000-abcd1234-pitch.mp4"
    pitch = ElevatorPitch(owner_id=owner_id, owner_role=role, raw_bucket=storage.bucket)
    pitch.mark_pending(raw_key=raw_key, file_name="pitch.mp4", file_size=3)
    pitch.mark_queued(metadata or FakeInspector().metadata)
    storage.objects[raw_key] = b"raw"
    repository.pitches[owner_id] = pitch
    return pitch
