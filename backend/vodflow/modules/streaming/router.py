"""Streaming API router.

Thin HTTP adapter over StreamingGateway.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse, Response

from vodflow.core.database import async_session_maker
from vodflow.core.redis import get_redis_client
from vodflow.core.storage import SigningError, Storage
from vodflow.modules.catalog.service import CatalogService
from vodflow.modules.streaming.cache import SegmentCache
from vodflow.modules.streaming.schemas import (
    RedirectTarget,
    VideoDetailResponse,
    VideoListResponse,
)
from vodflow.modules.streaming.service import (
    InvalidStreamRequestError,
    StreamingGateway,
    VideoNotFoundError,
)

router = APIRouter(prefix="/videos", tags=["streaming"])


async def get_streaming_gateway() -> StreamingGateway:
    """Build the gateway from the process-wide clients."""
    return StreamingGateway(
        catalog=CatalogService(async_session_maker),
        storage=Storage.get_instance(),
        cache=SegmentCache(await get_redis_client()),
    )


@router.get("", response_model=VideoListResponse)
async def list_videos(
    limit: Optional[int] = Query(None),
    offset: int = Query(0),
    gateway: StreamingGateway = Depends(get_streaming_gateway),
):
    """List videos, newest first."""
    return await gateway.list_videos(limit=limit, offset=offset)


@router.get("/{video_id}", response_model=VideoDetailResponse)
async def get_video(
    video_id: str,
    gateway: StreamingGateway = Depends(get_streaming_gateway),
):
    """Get a video with its renditions and master manifest URLs."""
    try:
        return await gateway.get_video_detail(video_id)
    except VideoNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("/{video_id}/{stream_format}/{filename}")
async def get_stream_file(
    video_id: str,
    stream_format: str,
    filename: str,
    gateway: StreamingGateway = Depends(get_streaming_gateway),
):
    """Serve a manifest or segment, or redirect to its signed URL."""
    try:
        result = await gateway.get_manifest_or_segment(video_id, stream_format, filename)
    except InvalidStreamRequestError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except SigningError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to generate stream URL",
        )

    if isinstance(result, RedirectTarget):
        return RedirectResponse(url=result.url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
    return Response(content=result.content, media_type=result.content_type)
