"""Playback routes for encrypted HLS pitches."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Response
from fastapi.responses import RedirectResponse, StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.background import BackgroundTask

from pitchstream.core.database import get_db
from pitchstream.core.storage import get_storage
from pitchstream.modules.pitch.deps import CurrentUser, get_current_user
from pitchstream.modules.pitch.repository import PitchRepository
from pitchstream.modules.pitch.service import PitchServiceError
from pitchstream.modules.streaming.playlist import HLS_MIME_TYPE
from pitchstream.modules.streaming.service import StreamingService

router = APIRouter(prefix="/elevator-pitch", tags=["elevator-pitch-streaming"])

PLAYLIST_CACHE_CONTROL = "no-cache"
SEGMENT_CACHE_CONTROL = "private, max-age=3600"
KEY_CACHE_CONTROL = "no-store"


def get_streaming_service(db: AsyncSession = Depends(get_db)) -> StreamingService:
    return StreamingService(repository=PitchRepository(db), storage=get_storage())


@router.get("/stream/{pitch_id}")
async def get_master_playlist(
    pitch_id: uuid.UUID,
    viewer: CurrentUser = Depends(get_current_user),
    service: StreamingService = Depends(get_streaming_service),
):
    """Master playlist with asset lines rewritten to the proxy route."""
    try:
        result = await service.get_master_playlist(pitch_id, viewer)
    except PitchServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    if result.redirect_url:
        return RedirectResponse(result.redirect_url)
    return Response(
        content=result.content,
        media_type=HLS_MIME_TYPE,
        headers={"Cache-Control": PLAYLIST_CACHE_CONTROL},
    )


@router.get("/stream/{owner_id}/{segment:path}")
async def get_segment(
    owner_id: str,
    segment: str,
    viewer: CurrentUser = Depends(get_current_user),
    service: StreamingService = Depends(get_streaming_service),
):
    try:
        stream = await service.get_segment(owner_id, segment, viewer)
    except PitchServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    headers = {
        "Cache-Control": PLAYLIST_CACHE_CONTROL
        if stream.content_type == HLS_MIME_TYPE
        else SEGMENT_CACHE_CONTROL,
    }
    if stream.content_length is not None:
        headers["Content-Length"] = str(stream.content_length)

    return StreamingResponse(
        stream.chunks,
        media_type=stream.content_type,
        headers=headers,
        background=BackgroundTask(stream.close),
    )


@router.get("/key/{owner_id}/{key_name}")
async def get_encryption_key(
    owner_id: str,
    key_name: str,
    viewer: CurrentUser = Depends(get_current_user),
    service: StreamingService = Depends(get_streaming_service),
):
    try:
        key_bytes = await service.get_encryption_key(owner_id, key_name, viewer)
    except PitchServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    return Response(
        content=key_bytes,
        media_type="application/octet-stream",
        headers={"Cache-Control": KEY_CACHE_CONTROL},
    )
