"""Media inspection with ffprobe.

Extracts duration, container, codec, dimensions and rotation from a local
file or a signed URL.
"""

import asyncio
import json
import logging
import math
import re
from collections import deque
from dataclasses import dataclass
from typing import Any, Optional, Union

from pitchstream.core.config import settings

logger = logging.getLogger(__name__)

VALID_ROTATIONS = (0, 90, 180, 270)
DISPLAY_MATRIX = "Display Matrix"
MATRIX_ROTATION_RE = re.compile(r"rotation(?:\s+of)?\s*\(?(-?\d+(?:\.\d+)?)\)?", re.IGNORECASE)


class TranscodeError(Exception):
    """Raised when an external media process fails."""

    def __init__(self, message: str, returncode: Optional[int] = None, log_tail: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.log_tail = log_tail


class ProbeError(TranscodeError):
    """Raised when ffprobe fails or finds no usable video stream."""

    pass


@dataclass(frozen=True)
class MediaMetadata:
    """Probed properties of a source video."""
    duration_seconds: float
    container_format: Optional[str] = None
    video_codec: Optional[str] = None
    rotation_degrees: int = 0
    width: Optional[int] = None
    height: Optional[int] = None

    @property
    def is_rotated_sideways(self) -> bool:
        return self.rotation_degrees in (90, 270)

    @property
    def display_width(self) -> Optional[int]:
        """Width after the rotation is applied."""
        return self.height if self.is_rotated_sideways else self.width

    @property
    def display_height(self) -> Optional[int]:
        """Height after the rotation is applied."""
        return self.width if self.is_rotated_sideways else self.height


def normalize_rotation(degrees: Union[int, float, str, None]) -> int:
    """Snap any angle to the nearest of 0, 90, 180 or 270.

    Unparseable and non-finite values are treated as no rotation.
    """
    try:
        value = float(degrees)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(value):
        return 0
    return (int(round(value / 90.0)) * 90) % 360


def resolve_rotation(stream: dict[str, Any]) -> int:
    """Rotation of a video stream in clockwise degrees.

    The ``rotate`` tag is clockwise. Display matrix side data reports the
    counter-clockwise angle, either as a number or inside the matrix dump,
    so it is negated. Side data of other types is ignored.
    """
    tags = stream.get("tags") or {}
    if tags.get("rotate") not in (None, ""):
        return normalize_rotation(tags["rotate"])

    for side_data in stream.get("side_data_list") or []:
        if not isinstance(side_data, dict):
            continue
        if side_data.get("side_data_type") not in (None, DISPLAY_MATRIX):
            continue

        rotation = _negated(side_data.get("rotation"))
        if rotation:
            return rotation

        matrix = side_data.get("displaymatrix")
        if isinstance(matrix, str):
            match = MATRIX_ROTATION_RE.search(matrix)
            if match:
                rotation = _negated(match.group(1))
                if rotation:
                    return rotation
    return 0


def _negated(value: Any) -> int:
    try:
        return normalize_rotation(-float(value))
    except (TypeError, ValueError):
        return 0


def _to_int(value: Any) -> Optional[int]:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def _to_float(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def parse_probe_output(data: dict[str, Any]) -> MediaMetadata:
    """Build :class:`MediaMetadata` from ffprobe's JSON document.

    Raises:
        ProbeError: If there is no video stream.
    """
    streams = data.get("streams") or []
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    if video is None:
        raise ProbeError("No video stream found in source")

    fmt = data.get("format") or {}
    duration = _to_float(fmt.get("duration"))
    if duration is None:
        duration = _to_float(video.get("duration"))

    return MediaMetadata(
        duration_seconds=duration or 0.0,
        container_format=fmt.get("format_name"),
        video_codec=video.get("codec_name"),
        rotation_degrees=resolve_rotation(video),
        width=_to_int(video.get("width")),
        height=_to_int(video.get("height")),
    )


class MediaInspector:
    """Runs ffprobe and parses its output."""

    def __init__(
        self,
        ffprobe_path: str = settings.FFPROBE_PATH,
        timeout: Optional[float] = settings.PROBE_TIMEOUT_SECONDS,
    ):
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout

    def build_command(self, source: str) -> list[str]:
        return [
            self.ffprobe_path,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            source,
        ]

    async def inspect(self, source: str) -> MediaMetadata:
        """Probe a local path or URL.

        Raises:
            ProbeError: On nonzero exit, timeout, unreadable output or a
                missing video stream.
        """
        cmd = self.build_command(source)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProbeError(f"Unable to start ffprobe: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise ProbeError(f"ffprobe timed out after {self.timeout}s") from e

        if process.returncode != 0:
            lines = deque(
                stderr.decode("utf-8", errors="replace").splitlines(),
                maxlen=settings.FFMPEG_LOG_TAIL_LINES,
            )
            tail = "\n".join(lines)
            raise ProbeError(
                f"ffprobe exited with code {process.returncode}: {tail}",
                returncode=process.returncode,
                log_tail=tail,
            )

        try:
            data = json.loads(stdout.decode("utf-8", errors="replace") or "{}")
        except json.JSONDecodeError as e:
            raise ProbeError(f"ffprobe returned invalid JSON: {e}") from e

        metadata = parse_probe_output(data)
        logger.debug(
            "Probed media",
            extra={
                "duration": metadata.duration_seconds,
                "codec": metadata.video_codec,
                "rotation": metadata.rotation_degrees,
                "width": metadata.width,
                "height": metadata.height,
            },
        )
        return metadata
