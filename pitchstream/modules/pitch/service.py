"""Pitch service for business logic.

Issues upload URLs, finalizes uploads (probe, entitlement check, enqueue),
and reads or removes pitch records together with their stored artifacts.
"""

import logging
import re
import secrets
import time
from datetime import datetime
from typing import Callable, Optional, Sequence

from pitchstream.core.config import settings
from pitchstream.core.logging import log_info, log_warning
from pitchstream.core.metrics import MEDIA_PROBE_FAILURES_TOTAL, UPLOAD_VALIDATION_REJECTIONS_TOTAL
from pitchstream.core.storage import ObjectStorage, PresignedUpload, StorageError
from pitchstream.modules.pitch.collaborators import (
    PITCH_REMOVED_MESSAGE,
    PITCH_UPDATE_TYPE,
    Notifier,
    SubscriptionLookup,
)
from pitchstream.modules.pitch.deps import CurrentUser
from pitchstream.modules.pitch.entitlement import Violation, check_duration
from pitchstream.modules.pitch.models import ElevatorPitch, ProcessingState
from pitchstream.modules.pitch.repository import PitchRepository
from pitchstream.modules.transcoding.probe import MediaInspector, ProbeError, TranscodeError
from pitchstream.modules.transcoding.schemas import TranscodeJob

logger = logging.getLogger(__name__)

KEY_ROOT = "elevator_pitches"
LISTABLE_ROLES = ("candidate", "recruiter", "company")

MIME_EXTENSIONS = {
    "video/mp4": ".mp4",
    "video/quicktime": ".mov",
    "video/x-msvideo": ".avi",
    "video/webm": ".webm",
    "video/ogg": ".ogv",
    "video/x-matroska": ".mkv",
}
DEFAULT_EXTENSION = ".mp4"

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9.\-_]+")
_REPEATED_UNDERSCORES = re.compile(r"_{2,}")


class PitchServiceError(Exception):
    """Base exception for pitch service errors."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PitchServiceError):
    """Raised when input or media fails validation."""

    status_code = 400


class PaymentRequiredError(ValidationError):
    """Raised when a free-tier owner exceeds the free allowance."""

    status_code = 402


class SubscriptionExpiredError(PitchServiceError):
    """Raised when the owner's plan has lapsed."""

    status_code = 403


class NotFoundError(PitchServiceError):
    """Raised when a pitch or asset is not found."""

    status_code = 404


class ConflictError(PitchServiceError):
    """Raised when the pitch is in the wrong state for the request."""

    status_code = 409


class InvalidSegmentError(ConflictError):
    """Raised when a segment name tries to escape its directory."""

    status_code = 400


# ============================================
# Naming
# ============================================

def sanitize_file_name(name: str) -> str:
    """Reduce a client file name to ``[a-z0-9._-]``."""
    cleaned = _UNSAFE_CHARS.sub("_", name)
    cleaned = _REPEATED_UNDERSCORES.sub("_", cleaned)
    return cleaned.strip("_").lower()


def build_file_name(file_name: str, mime_type: str) -> str:
    """Sanitized name, with an extension inferred from the MIME type if absent."""
    name = sanitize_file_name(file_name) or "pitch"
    stem, dot, ext = name.rpartition(".")
    if not dot or not stem or not ext:
        name = name.rstrip(".") + MIME_EXTENSIONS.get(mime_type.lower(), DEFAULT_EXTENSION)
    return name


def source_prefix(owner_id: str) -> str:
    return f"{KEY_ROOT}/{owner_id}/source/"


def hls_root_prefix(owner_id: str) -> str:
    return f"{KEY_ROOT}/{owner_id}/hls/"


def hls_job_prefix(owner_id: str, started_ms: int) -> str:
    return f"{hls_root_prefix(owner_id)}{started_ms}"


def build_source_key(owner_id: str, file_name: str, now_ms: Optional[int] = None) -> str:
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{source_prefix(owner_id)}{now_ms}-{secrets.token_hex(4)}-{file_name}"


# ============================================
# Entitlement
# ============================================

async def enforce_entitlement(
    pitch: ElevatorPitch,
    duration_seconds: float,
    subscriptions: SubscriptionLookup,
    now: Optional[datetime] = None,
) -> int:
    """Return the owner's cap or raise if the duration is not allowed.

    An expired subscription also deactivates the pitch; the caller persists it.
    """
    subscription = await subscriptions.get_active_subscription(pitch.owner_id)
    check = check_duration(pitch.owner_role, subscription, duration_seconds, now)
    if check.allowed:
        return check.max_seconds

    UPLOAD_VALIDATION_REJECTIONS_TOTAL.labels(reason=check.violation.value).inc()
    if check.violation == Violation.SUBSCRIPTION_EXPIRED:
        pitch.deactivate()
        raise SubscriptionExpiredError(check.message)
    if check.violation == Violation.FREE_ALLOWANCE_EXCEEDED:
        raise PaymentRequiredError(check.message)
    raise ValidationError(check.message)


async def remove_artifacts(storage: ObjectStorage, owner_id: str, raw_key: Optional[str]) -> None:
    """Delete every HLS object of the owner, then the raw upload."""
    await storage.delete_prefix(hls_root_prefix(owner_id))
    if raw_key:
        await storage.delete(raw_key)


class PitchService:
    """Service for elevator pitch operations."""

    def __init__(
        self,
        repository: PitchRepository,
        storage: ObjectStorage,
        subscriptions: SubscriptionLookup,
        notifier: Notifier,
        enqueue: Callable[[TranscodeJob], None],
        inspector: Optional[MediaInspector] = None,
    ):
        self.pitch_repo = repository
        self.storage = storage
        self.subscriptions = subscriptions
        self.notifier = notifier
        self.enqueue = enqueue
        self.inspector = inspector or MediaInspector()

    async def request_upload_url(
        self,
        owner_id: str,
        file_name: Optional[str],
        mime_type: Optional[str],
        file_size: Optional[int] = None,
        owner_role: Optional[str] = None,
    ) -> tuple[PresignedUpload, str]:
        """Replace any existing pitch with a fresh pending one and presign its upload.

        Returns:
            (presigned upload, sanitized file name)

        Raises:
            ValidationError: If the name or MIME type is missing or not a video.
        """
        if not file_name or not mime_type:
            raise ValidationError("fileName and mimeType are required")
        if not mime_type.lower().startswith("video/"):
            raise ValidationError("Only video uploads are allowed")

        existing = await self.pitch_repo.get_by_owner(owner_id)
        if existing:
            log_info(logger, "Replacing existing pitch", owner_id=owner_id)
            await remove_artifacts(self.storage, owner_id, existing.raw_key)
            await self.pitch_repo.delete(existing)

        name = build_file_name(file_name, mime_type)
        key = build_source_key(owner_id, name)
        presigned = await self.storage.presign_upload(
            key, mime_type, expires_in=settings.STORAGE_UPLOAD_URL_EXPIRES
        )

        await self.pitch_repo.create(
            owner_id=owner_id,
            owner_role=owner_role,
            raw_bucket=self.storage.bucket,
            file_name=name,
            file_size=file_size,
        )
        await self.pitch_repo.commit()
        return presigned, name

    async def finalize_upload(
        self,
        owner_id: str,
        file_key: str,
        file_name: Optional[str] = None,
        file_size: Optional[int] = None,
    ) -> ElevatorPitch:
        """Probe and validate an uploaded source, then queue it for transcoding.

        Validation happens before anything is queued. On failure the pitch is
        marked failed, the upload is deleted and the error is re-raised.
        """
        pitch = await self.pitch_repo.get_by_owner(owner_id)
        if pitch is None:
            raise NotFoundError("Elevator pitch not found")
        if pitch.is_ready:
            raise ConflictError("Elevator pitch is already processed. Re-upload to replace it.")
        if pitch.state in (ProcessingState.QUEUED, ProcessingState.PROCESSING):
            raise ConflictError("Elevator pitch is already being processed")
        if not file_key.startswith(source_prefix(owner_id)) or ".." in file_key:
            raise ValidationError("fileKey does not belong to this pitch")

        pitch.mark_pending(
            raw_key=file_key,
            raw_bucket=self.storage.bucket,
            file_name=file_name,
            file_size=file_size,
        )
        await self.pitch_repo.commit()

        try:
            probe_url = await self.storage.presign_download(
                file_key, expires_in=settings.STORAGE_PROBE_URL_EXPIRES
            )
            metadata = await self.inspector.inspect(probe_url)
            await enforce_entitlement(pitch, metadata.duration_seconds, self.subscriptions)
        except Exception as e:
            if isinstance(e, ProbeError):
                MEDIA_PROBE_FAILURES_TOTAL.labels(stage="finalize").inc()
            pitch.mark_failed(str(e))
            await self.pitch_repo.commit()
            await self._discard_upload(owner_id, file_key)
            log_warning(logger, f"Upload rejected: {e}", owner_id=owner_id)
            if isinstance(e, TranscodeError):
                raise ValidationError(f"Uploaded file is not a readable video: {e}") from e
            raise

        pitch.mark_queued(metadata)
        await self.pitch_repo.commit()

        self.enqueue(TranscodeJob(
            owner_id=owner_id,
            source_key=file_key,
            file_name=pitch.file_name,
            file_size=pitch.file_size,
            owner_role=pitch.owner_role,
        ))
        log_info(logger, "Pitch queued for transcoding", owner_id=owner_id, duration=metadata.duration_seconds)
        return pitch

    async def _discard_upload(self, owner_id: str, file_key: str) -> None:
        try:
            await remove_artifacts(self.storage, owner_id, file_key)
        except StorageError as e:
            log_warning(logger, f"Failed to remove rejected upload: {e}", owner_id=owner_id)

    async def get_pitch(self, owner_id: str) -> Optional[ElevatorPitch]:
        return await self.pitch_repo.get_by_owner(owner_id)

    async def delete_pitch(self, owner_id: str, requested_by: CurrentUser) -> None:
        """Delete the pitch and all its stored objects.

        Owners are notified when an admin removes their pitch.
        """
        pitch = await self.pitch_repo.get_by_owner(owner_id)
        if pitch is None:
            raise NotFoundError("Elevator pitch not found")

        await remove_artifacts(self.storage, owner_id, pitch.raw_key)
        pitch_id = str(pitch.id)
        await self.pitch_repo.delete(pitch)
        await self.pitch_repo.commit()
        log_info(logger, "Pitch deleted", owner_id=owner_id, requested_by=requested_by.user_id)

        if requested_by.is_admin and requested_by.user_id != owner_id:
            await self.notifier.notify(
                owner_id,
                PITCH_REMOVED_MESSAGE,
                type=PITCH_UPDATE_TYPE,
                reference_id=pitch_id,
            )

    async def list_ready_pitches(self, role: Optional[str]) -> Sequence[ElevatorPitch]:
        role = (role or "").lower()
        if role not in LISTABLE_ROLES:
            raise ValidationError(f"type must be one of: {', '.join(LISTABLE_ROLES)}")
        return await self.pitch_repo.list_ready_by_role(role)
