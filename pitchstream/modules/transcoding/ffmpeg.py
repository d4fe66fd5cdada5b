"""FFmpeg HLS packaging.

Encodes a local source into one or more AES-128 encrypted HLS renditions
with a single ffmpeg invocation, writes the master playlist and uploads the
output directory to object storage.
"""

import asyncio
import logging
import os
import secrets
import shlex
from collections import deque
from dataclasses import dataclass, field
from typing import Optional, Sequence

from pitchstream.core.config import settings
from pitchstream.core.storage import ObjectStorage
from pitchstream.core.tracing import create_span
from pitchstream.modules.transcoding.abr import (
    PlannedRendition,
    RenditionProfile,
    plan_renditions,
    profiles_from_names,
)
from pitchstream.modules.transcoding.probe import MediaInspector, MediaMetadata, TranscodeError

logger = logging.getLogger(__name__)

KEY_FILE_NAME = "encryption.key"
KEY_INFO_FILE_NAME = "encryption.key.info"
MASTER_PLAYLIST_NAME = "master.m3u8"
HLS_CODECS = "avc1.640029,mp4a.40.2"
SEGMENT_SECONDS = 8
GOP_FRAMES = 48
AUDIO_SAMPLE_RATE = 48000
AUDIO_CHANNELS = 2

_ROTATION_FILTERS = {
    0: "null",
    90: "transpose=1",
    180: "hflip,vflip",
    270: "transpose=2",
}


def key_delivery_url(owner_id: str, key_name: str = KEY_FILE_NAME) -> str:
    """Same-origin URL players use to fetch the segment key."""
    return f"{settings.API_V1_PREFIX}/elevator-pitch/key/{owner_id}/{key_name}"


def build_filter_graph(rotation: int, renditions: Sequence[PlannedRendition]) -> str:
    """Rotate once, then split into one scaled branch per rendition.

    Branch ``i`` is labelled ``[vout{i}]``.
    """
    if not renditions:
        raise ValueError("At least one rendition is required")
    if rotation not in _ROTATION_FILTERS:
        raise ValueError(f"Unsupported rotation: {rotation}")

    count = len(renditions)
    branches = "".join(f"[split{i}]" for i in range(count))
    graph = [
        f"[0:v]{_ROTATION_FILTERS[rotation]}[rotated]",
        f"[rotated]split={count}{branches}",
    ]
    for i, rendition in enumerate(renditions):
        graph.append(
            f"[split{i}]scale={rendition.width}:{rendition.height}:flags=lanczos,"
            f"format=yuv420p[vout{i}]"
        )
    return ";".join(graph)


def build_command(
    source_path: str,
    output_dir: str,
    renditions: Sequence[PlannedRendition],
    rotation: int,
    key_info_path: str,
    ffmpeg_path: str = settings.FFMPEG_PATH,
    preset: str = settings.FFMPEG_PRESET,
    threads: int = settings.FFMPEG_THREADS,
) -> list[str]:
    """Build the single ffmpeg invocation that writes every rendition.

    Autorotation is disabled because the filter graph applies the rotation
    itself and the rotate flag is cleared on output.
    """
    cmd = [
        ffmpeg_path,
        "-hide_banner",
        "-nostats",
        "-y",
        "-noautorotate",
        "-i", source_path,
        "-filter_complex", build_filter_graph(rotation, renditions),
        "-threads", str(threads),
    ]

    for i, rendition in enumerate(renditions):
        profile = rendition.profile
        cmd.extend([
            "-map", f"[vout{i}]",
            "-map", "0:a:0?",
            # Video
            "-c:v", "libx264",
            "-preset", preset,
            "-profile:v", "high",
            "-level", "4.1",
            "-crf", str(profile.crf),
            "-maxrate", f"{profile.max_rate_kbps}k",
            "-bufsize", f"{profile.buf_size_kbps}k",
            "-g", str(GOP_FRAMES),
            "-keyint_min", str(GOP_FRAMES),
            "-pix_fmt", "yuv420p",
            "-map_metadata", "-1",
            "-metadata:s:v:0", "rotate=0",
            # Audio
            "-c:a", "aac",
            "-b:a", f"{profile.audio_bitrate_kbps}k",
            "-ac", str(AUDIO_CHANNELS),
            "-ar", str(AUDIO_SAMPLE_RATE),
            # HLS
            "-f", "hls",
            "-hls_time", str(SEGMENT_SECONDS),
            "-hls_list_size", "0",
            "-hls_segment_type", "mpegts",
            "-hls_flags", "independent_segments",
            "-hls_segment_filename", os.path.join(output_dir, rendition.segment_pattern),
            "-hls_key_info_file", key_info_path,
            "-hls_playlist_type", "vod",
            os.path.join(output_dir, rendition.playlist_name),
        ])
    return cmd


def write_key_material(output_dir: str, owner_id: str) -> tuple[str, str]:
    """Write a fresh AES-128 key and its key-info descriptor.

    Returns:
        (key_path, key_info_path)
    """
    key_path = os.path.join(output_dir, KEY_FILE_NAME)
    key_info_path = os.path.join(output_dir, KEY_INFO_FILE_NAME)

    with open(key_path, "wb") as f:
        f.write(secrets.token_bytes(16))

    iv = secrets.token_hex(16)
    with open(key_info_path, "w", encoding="utf-8") as f:
        f.write(f"{key_delivery_url(owner_id)}\n{key_path}\n{iv}\n")

    return key_path, key_info_path


def render_master_playlist(renditions: Sequence[PlannedRendition]) -> str:
    lines = ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-INDEPENDENT-SEGMENTS"]
    for rendition in renditions:
        profile = rendition.profile
        lines.append(
            f"#EXT-X-STREAM-INF:BANDWIDTH={profile.bandwidth},"
            f"AVERAGE-BANDWIDTH={profile.average_bandwidth},"
            f"RESOLUTION={rendition.width}x{rendition.height},"
            f'CODECS="{HLS_CODECS}"'
        )
        lines.append(rendition.playlist_name)
    return "\n".join(lines) + "\n"


def write_master_playlist(output_dir: str, renditions: Sequence[PlannedRendition]) -> str:
    path = os.path.join(output_dir, MASTER_PLAYLIST_NAME)
    with open(path, "w", encoding="utf-8") as f:
        f.write(render_master_playlist(renditions))
    return path


async def run_ffmpeg(
    cmd: Sequence[str],
    timeout: Optional[float] = None,
    buffer_lines: int = settings.FFMPEG_LOG_BUFFER_LINES,
    tail_lines: int = settings.FFMPEG_LOG_TAIL_LINES,
) -> None:
    """Run an encoder process, keeping its recent stderr in a ring buffer.

    Raises:
        TranscodeError: On launch failure, timeout or nonzero exit. The
            message carries the last ``tail_lines`` diagnostic lines.
    """
    logger.info(f"Running encoder: {shlex.join(cmd)}")
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise TranscodeError(f"Unable to start encoder: {e}") from e

    log_buffer: deque[str] = deque(maxlen=buffer_lines)

    async def _drain() -> int:
        async for raw in process.stderr:
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                log_buffer.append(line)
                logger.debug(line)
        return await process.wait()

    def _tail() -> str:
        return "\n".join(list(log_buffer)[-tail_lines:])

    try:
        returncode = await asyncio.wait_for(_drain(), timeout=timeout)
    except asyncio.TimeoutError as e:
        process.kill()
        await process.wait()
        tail = _tail()
        raise TranscodeError(
            f"Encoder timed out after {timeout}s:\n{tail}",
            returncode=process.returncode,
            log_tail=tail,
        ) from e

    if returncode != 0:
        tail = _tail()
        raise TranscodeError(
            f"Encoder exited with code {returncode}:\n{tail}",
            returncode=returncode,
            log_tail=tail,
        )


@dataclass
class HLSOutput:
    """Uploaded HLS package."""
    master_url: str
    key_url: str
    files: dict[str, str] = field(default_factory=dict)
    renditions: list[PlannedRendition] = field(default_factory=list)


class HLSTranscoder:
    """Encrypted multi-rendition HLS packager."""

    def __init__(
        self,
        storage: ObjectStorage,
        inspector: Optional[MediaInspector] = None,
        profiles: Optional[Sequence[RenditionProfile]] = None,
        ffmpeg_path: str = settings.FFMPEG_PATH,
        preset: str = settings.FFMPEG_PRESET,
        threads: int = settings.FFMPEG_THREADS,
        timeout: Optional[float] = settings.TRANSCODE_TIMEOUT_SECONDS,
    ):
        self.storage = storage
        self.inspector = inspector or MediaInspector()
        self.profiles = list(profiles) if profiles else profiles_from_names(settings.HLS_RENDITIONS)
        self.ffmpeg_path = ffmpeg_path
        self.preset = preset
        self.threads = threads
        self.timeout = timeout

    async def encode(
        self,
        source_path: str,
        output_dir: str,
        owner_id: str,
        metadata: Optional[MediaMetadata] = None,
    ) -> list[PlannedRendition]:
        """Write playlists, segments, key and master playlist to ``output_dir``."""
        if metadata is None:
            metadata = await self.inspector.inspect(source_path)

        os.makedirs(output_dir, exist_ok=True)
        renditions = plan_renditions(metadata.display_width, metadata.display_height, self.profiles)
        _, key_info_path = write_key_material(output_dir, owner_id)

        cmd = build_command(
            source_path,
            output_dir,
            renditions,
            metadata.rotation_degrees,
            key_info_path,
            ffmpeg_path=self.ffmpeg_path,
            preset=self.preset,
            threads=self.threads,
        )
        await run_ffmpeg(cmd, timeout=self.timeout)
        write_master_playlist(output_dir, renditions)
        return renditions

    async def process_hls(
        self,
        source_path: str,
        output_dir: str,
        owner_id: str,
        storage_prefix: str,
        metadata: Optional[MediaMetadata] = None,
    ) -> HLSOutput:
        """Encode ``source_path`` and upload the package under ``storage_prefix``."""
        with create_span("transcode.encode", attributes={"owner_id": owner_id}):
            renditions = await self.encode(source_path, output_dir, owner_id, metadata)

        with create_span("transcode.upload", attributes={"prefix": storage_prefix}):
            files = await self.storage.upload_directory(output_dir, storage_prefix)

        if MASTER_PLAYLIST_NAME not in files or KEY_FILE_NAME not in files:
            raise TranscodeError("Encoder output is missing the master playlist or key")

        logger.info(
            f"Uploaded {len(files)} HLS files",
            extra={"prefix": storage_prefix, "renditions": [r.name for r in renditions]},
        )
        return HLSOutput(
            master_url=files[MASTER_PLAYLIST_NAME],
            key_url=files[KEY_FILE_NAME],
            files=files,
            renditions=renditions,
        )
