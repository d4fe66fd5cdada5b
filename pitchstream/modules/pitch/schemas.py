"""Pydantic schemas for the pitch API.

Field names on the wire are camelCase to match the existing web clients.
"""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from pitchstream.modules.pitch.models import ElevatorPitch


class UploadUrlRequest(BaseModel):
    """Request for a presigned upload URL."""

    file_name: Optional[str] = Field(None, alias="fileName", max_length=255)
    mime_type: Optional[str] = Field(None, alias="mimeType", max_length=127)
    file_size: Optional[int] = Field(None, alias="fileSize", ge=0)

    class Config:
        populate_by_name = True


class UploadUrlResponse(BaseModel):
    upload_url: str = Field(..., alias="uploadUrl")
    key: str
    bucket: str
    file_name: str = Field(..., alias="fileName")

    class Config:
        populate_by_name = True


class CompleteUploadRequest(BaseModel):
    """Finalize an upload that the client PUT to the presigned URL."""

    file_key: str = Field(..., alias="fileKey", min_length=1, max_length=1024)
    file_name: Optional[str] = Field(None, alias="fileName", max_length=255)
    file_size: Optional[int] = Field(None, alias="fileSize", ge=0)

    class Config:
        populate_by_name = True


class CompleteUploadResponse(BaseModel):
    message: str = "Processing started"
    processing_state: str = Field(..., alias="processingState")

    class Config:
        populate_by_name = True


class VideoRefsResponse(BaseModel):
    raw_key: Optional[str] = Field(None, alias="rawKey")
    raw_bucket: Optional[str] = Field(None, alias="rawBucket")
    hls_url: Optional[str] = Field(None, alias="hlsUrl")
    encryption_key_url: Optional[str] = Field(None, alias="encryptionKeyUrl")

    class Config:
        populate_by_name = True


class MediaMetadataResponse(BaseModel):
    duration_seconds: Optional[float] = Field(None, alias="durationSeconds")
    container_format: Optional[str] = Field(None, alias="containerFormat")
    video_codec: Optional[str] = Field(None, alias="videoCodec")
    rotation_degrees: Optional[int] = Field(None, alias="rotationDegrees")
    width: Optional[int] = None
    height: Optional[int] = None

    class Config:
        populate_by_name = True


class ProcessingResponse(BaseModel):
    state: str
    started_at: Optional[datetime] = Field(None, alias="startedAt")
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")
    completed_at: Optional[datetime] = Field(None, alias="completedAt")
    retries: int = 0
    error: Optional[str] = None
    file_name: Optional[str] = Field(None, alias="fileName")
    file_size: Optional[int] = Field(None, alias="fileSize")

    class Config:
        populate_by_name = True


class PitchResponse(BaseModel):
    """A pitch record as returned to clients."""

    id: uuid.UUID
    owner_id: str = Field(..., alias="ownerId")
    owner_role: Optional[str] = Field(None, alias="ownerRole")
    status: str
    video: VideoRefsResponse
    metadata: MediaMetadataResponse
    processing: ProcessingResponse
    created_at: Optional[datetime] = Field(None, alias="createdAt")

    class Config:
        populate_by_name = True

    @classmethod
    def from_pitch(cls, pitch: ElevatorPitch) -> "PitchResponse":
        refs = pitch.video
        info = pitch.processing
        return cls(
            id=pitch.id,
            owner_id=pitch.owner_id,
            owner_role=pitch.owner_role,
            status=pitch.status,
            video=VideoRefsResponse(
                raw_key=refs.raw_key,
                raw_bucket=refs.raw_bucket,
                hls_url=refs.hls_url,
                encryption_key_url=refs.encryption_key_url,
            ),
            metadata=MediaMetadataResponse(
                duration_seconds=pitch.duration_seconds,
                container_format=pitch.container_format,
                video_codec=pitch.video_codec,
                rotation_degrees=pitch.rotation_degrees,
                width=pitch.width,
                height=pitch.height,
            ),
            processing=ProcessingResponse(
                state=info.state.value,
                started_at=info.started_at,
                updated_at=info.updated_at,
                completed_at=info.completed_at,
                retries=info.retries,
                error=info.error,
                file_name=info.file_name,
                file_size=info.file_size,
            ),
            created_at=pitch.created_at,
        )


class PitchListResponse(BaseModel):
    items: list[PitchResponse]
    total: int


class MessageResponse(BaseModel):
    message: str
