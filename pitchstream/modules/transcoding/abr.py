"""Adaptive bitrate (ABR) rendition ladder.

Static rendition profiles and the rules for choosing which of them to
encode for a given source.
"""

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

# Sources taller than this are scaled as if they were 1080p
MAX_SOURCE_HEIGHT = 1080
DEFAULT_ASPECT_RATIO = 16 / 9


@dataclass(frozen=True)
class RenditionProfile:
    """One quality variant of the ladder."""
    name: str
    target_height: int
    video_bitrate_kbps: int
    max_rate_kbps: int
    buf_size_kbps: int
    audio_bitrate_kbps: int
    crf: int

    @property
    def bandwidth(self) -> int:
        """Peak bandwidth advertised in the master playlist, in bps."""
        return (self.max_rate_kbps + self.audio_bitrate_kbps) * 1000

    @property
    def average_bandwidth(self) -> int:
        return (self.video_bitrate_kbps + self.audio_bitrate_kbps) * 1000


@dataclass(frozen=True)
class PlannedRendition:
    """A profile resolved against a concrete source."""
    profile: RenditionProfile
    name: str
    width: int
    height: int

    @property
    def playlist_name(self) -> str:
        return f"{self.name}.m3u8"

    @property
    def segment_pattern(self) -> str:
        return f"{self.name}_%03d.ts"


RENDITION_CATALOGUE: dict[str, RenditionProfile] = {
    "360p": RenditionProfile(
        name="360p",
        target_height=360,
        video_bitrate_kbps=1200,
        max_rate_kbps=1440,
        buf_size_kbps=2400,
        audio_bitrate_kbps=64,
        crf=23,
    ),
    "480p": RenditionProfile(
        name="480p",
        target_height=480,
        video_bitrate_kbps=2600,
        max_rate_kbps=3120,
        buf_size_kbps=5200,
        audio_bitrate_kbps=64,
        crf=22,
    ),
    "720p": RenditionProfile(
        name="720p",
        target_height=720,
        video_bitrate_kbps=4500,
        max_rate_kbps=5400,
        buf_size_kbps=9000,
        audio_bitrate_kbps=96,
        crf=21,
    ),
    "1080p": RenditionProfile(
        name="1080p",
        target_height=1080,
        video_bitrate_kbps=7800,
        max_rate_kbps=9360,
        buf_size_kbps=15600,
        audio_bitrate_kbps=128,
        crf=20,
    ),
}


def profiles_from_names(names: Iterable[str]) -> list[RenditionProfile]:
    """Look up configured profile names, lowest first.

    Raises:
        ValueError: If a name is not in the catalogue or no names are given.
    """
    profiles = []
    for name in names:
        profile = RENDITION_CATALOGUE.get(name)
        if profile is None:
            raise ValueError(
                f"Unknown rendition '{name}'. Available: {', '.join(RENDITION_CATALOGUE)}"
            )
        profiles.append(profile)
    if not profiles:
        raise ValueError("At least one rendition profile is required")
    return sorted(set(profiles), key=lambda p: p.target_height)


def ensure_even(value: float) -> int:
    """Round down to an even integer, never below 2."""
    number = int(value)
    number -= number % 2
    return max(2, number)


def select_renditions(
    source_height: Optional[int],
    profiles: Sequence[RenditionProfile],
) -> list[RenditionProfile]:
    """Profiles no taller than the source, or the lowest one if none fit.

    ``source_height`` must already account for rotation. An unknown height
    selects the lowest profile only.
    """
    if not profiles:
        raise ValueError("At least one rendition profile is required")

    ordered = sorted(profiles, key=lambda p: p.target_height)
    if not source_height or source_height <= 0:
        return [ordered[0]]

    selected = [p for p in ordered if p.target_height <= source_height]
    return selected or [ordered[0]]


def compute_resolution(
    target_height: int,
    source_width: Optional[int],
    source_height: Optional[int],
) -> tuple[int, int]:
    """Even (width, height) at ``target_height`` keeping the source aspect.

    Unknown source dimensions assume 16:9.
    """
    height = ensure_even(target_height)
    if source_width and source_height and source_width > 0 and source_height > 0:
        aspect = source_width / source_height
    else:
        aspect = DEFAULT_ASPECT_RATIO
    width = ensure_even(round(height * aspect))
    return width, height


def plan_renditions(
    source_width: Optional[int],
    source_height: Optional[int],
    profiles: Sequence[RenditionProfile],
) -> list[PlannedRendition]:
    """Resolve selected profiles to concrete output sizes.

    Dimensions are the display (post-rotation) size. A profile taller than
    the source is scaled to the source height and renamed after it.
    """
    selected = select_renditions(source_height, profiles)
    clamp = min(source_height, MAX_SOURCE_HEIGHT) if source_height else MAX_SOURCE_HEIGHT

    planned: list[PlannedRendition] = []
    seen: set[str] = set()
    for profile in selected:
        height = ensure_even(min(profile.target_height, clamp))
        width, height = compute_resolution(height, source_width, source_height)
        name = profile.name if height == profile.target_height else f"{height}p"
        if name in seen:
            continue
        seen.add(name)
        planned.append(PlannedRendition(profile=profile, name=name, width=width, height=height))
    return planned
