"""Elevator pitch record.

One row per owner holding the storage references, probed media metadata and
the processing lifecycle of that owner's pitch video.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Float, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from pitchstream.core.database import Base
from pitchstream.modules.transcoding.probe import MediaMetadata


class ProcessingState(str, Enum):
    """Lifecycle of a pitch video."""

    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class PitchStatus(str, Enum):
    """Whether playback is exposed to other users."""

    ACTIVE = "active"
    DEACTIVATE = "deactivate"


class OwnerRole(str, Enum):
    CANDIDATE = "candidate"
    RECRUITER = "recruiter"
    COMPANY = "company"
    ADMIN = "admin"


ALLOWED_TRANSITIONS: dict[ProcessingState, frozenset[ProcessingState]] = {
    ProcessingState.PENDING: frozenset({
        ProcessingState.PENDING,
        ProcessingState.QUEUED,
        ProcessingState.FAILED,
    }),
    ProcessingState.QUEUED: frozenset({
        ProcessingState.QUEUED,
        ProcessingState.PROCESSING,
        ProcessingState.FAILED,
    }),
    ProcessingState.PROCESSING: frozenset({
        ProcessingState.READY,
        ProcessingState.FAILED,
        ProcessingState.QUEUED,
    }),
    ProcessingState.FAILED: frozenset({ProcessingState.PENDING}),
    ProcessingState.READY: frozenset(),
}


class InvalidStateTransition(Exception):
    """Raised when a processing state change is not allowed."""

    def __init__(self, current: ProcessingState, target: ProcessingState):
        super().__init__(f"Cannot move pitch from {current.value} to {target.value}")
        self.current = current
        self.target = target


@dataclass(frozen=True)
class VideoRefs:
    """Object storage references of a pitch."""
    raw_key: Optional[str]
    raw_bucket: Optional[str]
    hls_url: Optional[str]
    encryption_key_url: Optional[str]


@dataclass(frozen=True)
class ProcessingInfo:
    state: ProcessingState
    started_at: Optional[datetime]
    updated_at: Optional[datetime]
    completed_at: Optional[datetime]
    retries: int
    error: Optional[str]
    file_name: Optional[str]
    file_size: Optional[int]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ElevatorPitch(Base):
    """Elevator pitch video owned by a single user."""

    __tablename__ = "elevator_pitches"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    owner_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    owner_role: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(20), default=PitchStatus.DEACTIVATE.value)

    # Video references
    raw_key: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    raw_bucket: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    hls_url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    encryption_key_url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)

    # Media metadata
    duration_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    container_format: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    video_codec: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    rotation_degrees: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    width: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    height: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Processing
    processing_state: Mapped[str] = mapped_column(
        String(20), default=ProcessingState.PENDING.value, index=True
    )
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processing_updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processing_completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    retries: Mapped[int] = mapped_column(Integer, default=0)
    processing_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    file_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    file_size: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    modified_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __init__(self, **kwargs):
        kwargs.setdefault("id", uuid.uuid4())
        kwargs.setdefault("status", PitchStatus.DEACTIVATE.value)
        kwargs.setdefault("processing_state", ProcessingState.PENDING.value)
        kwargs.setdefault("retries", 0)
        super().__init__(**kwargs)

    def __repr__(self) -> str:
        return f"<ElevatorPitch {self.owner_id} - {self.processing_state}>"

    # ------------------------------------------------------------------
    # Value views
    # ------------------------------------------------------------------

    @property
    def state(self) -> ProcessingState:
        return ProcessingState(self.processing_state)

    @property
    def video(self) -> VideoRefs:
        return VideoRefs(
            raw_key=self.raw_key,
            raw_bucket=self.raw_bucket,
            hls_url=self.hls_url,
            encryption_key_url=self.encryption_key_url,
        )

    @property
    def media(self) -> Optional[MediaMetadata]:
        if self.duration_seconds is None:
            return None
        return MediaMetadata(
            duration_seconds=self.duration_seconds,
            container_format=self.container_format,
            video_codec=self.video_codec,
            rotation_degrees=self.rotation_degrees or 0,
            width=self.width,
            height=self.height,
        )

    @property
    def processing(self) -> ProcessingInfo:
        return ProcessingInfo(
            state=self.state,
            started_at=self.processing_started_at,
            updated_at=self.processing_updated_at,
            completed_at=self.processing_completed_at,
            retries=self.retries or 0,
            error=self.processing_error,
            file_name=self.file_name,
            file_size=self.file_size,
        )

    @property
    def is_ready(self) -> bool:
        return self.state == ProcessingState.READY and bool(self.hls_url)

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def _transition(self, target: ProcessingState, now: Optional[datetime] = None) -> datetime:
        current = self.state
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidStateTransition(current, target)
        now = now or utcnow()
        self.processing_state = target.value
        self.processing_updated_at = now
        return now

    def apply_metadata(self, metadata: MediaMetadata) -> None:
        self.duration_seconds = metadata.duration_seconds
        self.container_format = metadata.container_format
        self.video_codec = metadata.video_codec
        self.rotation_degrees = metadata.rotation_degrees
        self.width = metadata.width
        self.height = metadata.height

    def mark_pending(
        self,
        raw_key: str,
        raw_bucket: Optional[str] = None,
        file_name: Optional[str] = None,
        file_size: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Record the uploaded source and reset processing fields.

        Playback stays hidden until the new source is ready.
        """
        self._transition(ProcessingState.PENDING, now)
        self.status = PitchStatus.DEACTIVATE.value
        self.raw_key = raw_key
        if raw_bucket:
            self.raw_bucket = raw_bucket
        if file_name:
            self.file_name = file_name
        if file_size is not None:
            self.file_size = file_size
        self.processing_error = None
        self.processing_started_at = None
        self.processing_completed_at = None

    def mark_queued(self, metadata: MediaMetadata, now: Optional[datetime] = None) -> None:
        self._transition(ProcessingState.QUEUED, now)
        self.apply_metadata(metadata)

    def mark_processing(self, now: Optional[datetime] = None) -> None:
        now = self._transition(ProcessingState.PROCESSING, now)
        self.processing_started_at = now

    def mark_ready(
        self,
        hls_url: str,
        encryption_key_url: str,
        metadata: MediaMetadata,
        now: Optional[datetime] = None,
    ) -> None:
        now = self._transition(ProcessingState.READY, now)
        self.hls_url = hls_url
        self.encryption_key_url = encryption_key_url
        self.apply_metadata(metadata)
        self.processing_completed_at = now
        self.processing_error = None
        self.status = PitchStatus.ACTIVE.value

    def mark_failed(self, error: str, now: Optional[datetime] = None) -> None:
        self._transition(ProcessingState.FAILED, now)
        self.processing_error = error
        self.retries = (self.retries or 0) + 1

    def requeue(self, now: Optional[datetime] = None) -> None:
        """Put a stranded queued/processing record back in the queue."""
        self._transition(ProcessingState.QUEUED, now)
        self.processing_started_at = None

    def deactivate(self) -> None:
        self.status = PitchStatus.DEACTIVATE.value
