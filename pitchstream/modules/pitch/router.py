"""Elevator pitch API router.

Upload URL issuance, upload finalization, retrieval and deletion.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from pitchstream.core.database import get_db
from pitchstream.core.storage import get_storage
from pitchstream.modules.pitch.collaborators import HttpNotifier, HttpSubscriptionLookup
from pitchstream.modules.pitch.deps import CurrentUser, get_admin_user, get_current_user, resolve_owner_id
from pitchstream.modules.pitch.repository import PitchRepository
from pitchstream.modules.pitch.schemas import (
    CompleteUploadRequest,
    CompleteUploadResponse,
    MessageResponse,
    PitchListResponse,
    PitchResponse,
    UploadUrlRequest,
    UploadUrlResponse,
)
from pitchstream.modules.pitch.service import PitchService, PitchServiceError
from pitchstream.modules.transcoding.worker import get_worker

router = APIRouter(prefix="/elevator-pitch", tags=["elevator-pitch"])


def get_pitch_service(db: AsyncSession = Depends(get_db)) -> PitchService:
    return PitchService(
        repository=PitchRepository(db),
        storage=get_storage(),
        subscriptions=HttpSubscriptionLookup(),
        notifier=HttpNotifier(),
        enqueue=get_worker().enqueue,
    )


def _http_error(e: PitchServiceError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/upload-url", response_model=UploadUrlResponse)
async def request_upload_url(
    data: UploadUrlRequest,
    owner_id: str = Depends(resolve_owner_id),
    user: CurrentUser = Depends(get_current_user),
    service: PitchService = Depends(get_pitch_service),
):
    """Issue a presigned PUT for a new pitch, replacing any existing one."""
    try:
        presigned, file_name = await service.request_upload_url(
            owner_id=owner_id,
            file_name=data.file_name,
            mime_type=data.mime_type,
            file_size=data.file_size,
            owner_role=user.role if owner_id == user.user_id else None,
        )
    except PitchServiceError as e:
        raise _http_error(e)

    return UploadUrlResponse(
        upload_url=presigned.upload_url,
        key=presigned.key,
        bucket=presigned.bucket,
        file_name=file_name,
    )


@router.post(
    "/complete-upload",
    response_model=CompleteUploadResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def complete_upload(
    data: CompleteUploadRequest,
    owner_id: str = Depends(resolve_owner_id),
    service: PitchService = Depends(get_pitch_service),
):
    """Validate the uploaded video and queue it for transcoding."""
    try:
        pitch = await service.finalize_upload(
            owner_id=owner_id,
            file_key=data.file_key,
            file_name=data.file_name,
            file_size=data.file_size,
        )
    except PitchServiceError as e:
        raise _http_error(e)

    return CompleteUploadResponse(processing_state=pitch.state.value)


@router.get("", response_model=Optional[PitchResponse])
async def get_pitch(
    owner_id: str = Depends(resolve_owner_id),
    service: PitchService = Depends(get_pitch_service),
):
    pitch = await service.get_pitch(owner_id)
    return PitchResponse.from_pitch(pitch) if pitch else None


@router.delete("", response_model=MessageResponse)
async def delete_pitch(
    owner_id: str = Depends(resolve_owner_id),
    user: CurrentUser = Depends(get_current_user),
    service: PitchService = Depends(get_pitch_service),
):
    try:
        await service.delete_pitch(owner_id, requested_by=user)
    except PitchServiceError as e:
        raise _http_error(e)
    return MessageResponse(message="Elevator pitch deleted")


@router.get("/all", response_model=PitchListResponse)
async def list_ready_pitches(
    type: Optional[str] = Query(None),
    _admin: CurrentUser = Depends(get_admin_user),
    service: PitchService = Depends(get_pitch_service),
):
    """Ready pitches of one owner role (admin only)."""
    try:
        pitches = await service.list_ready_pitches(type)
    except PitchServiceError as e:
        raise _http_error(e)

    items = [PitchResponse.from_pitch(p) for p in pitches]
    return PitchListResponse(items=items, total=len(items))
