"""Streaming cache gateway.

Read path for players: cached bytes when Redis has them, otherwise a
time-limited signed URL straight to the object store.
"""

import asyncio
import logging
from typing import Optional, Union

from vodflow.core.config import settings
from vodflow.core.metrics import SIGNED_URLS_TOTAL
from vodflow.core.storage import SigningError, Storage, guess_content_type
from vodflow.modules.catalog.models import ProcessingState, StreamFormat
from vodflow.modules.catalog.service import CatalogStore
from vodflow.modules.streaming.cache import SegmentCache
from vodflow.modules.streaming.schemas import (
    Pagination,
    RedirectTarget,
    RenditionResponse,
    ServedFile,
    VideoDetailResponse,
    VideoListResponse,
    VideoSummary,
)

logger = logging.getLogger(__name__)

MASTER_MANIFEST_NAMES = {
    StreamFormat.HLS.value: "master.m3u8",
    StreamFormat.DASH.value: "manifest.mpd",
}


class StreamingGatewayError(Exception):
    """Base exception for gateway errors."""
    pass


class VideoNotFoundError(StreamingGatewayError):
    """Exception raised when a video is not in the catalog."""
    pass


class InvalidStreamRequestError(StreamingGatewayError):
    """Exception raised for an unknown format or an unsafe filename."""
    pass


def _is_safe_component(value: str) -> bool:
    return bool(value) and "/" not in value and "\\" not in value and ".." not in value


class StreamingGateway:
    """Serves manifests, segments, video detail and listings."""

    def __init__(
        self,
        catalog: CatalogStore,
        storage: Storage,
        cache: SegmentCache,
        segment_url_ttl: Optional[int] = None,
        master_url_ttl: Optional[int] = None,
        reference_resolution: Optional[str] = None,
    ):
        self.catalog = catalog
        self.storage = storage
        self.cache = cache
        self.segment_url_ttl = segment_url_ttl or settings.SEGMENT_URL_TTL_SECONDS
        self.master_url_ttl = master_url_ttl or settings.MASTER_URL_TTL_SECONDS
        self.reference_resolution = reference_resolution or settings.MASTER_REFERENCE_RESOLUTION

    async def _sign(self, key: str, expires_in: int, purpose: str) -> str:
        url = await asyncio.to_thread(self.storage.sign, key, expires_in)
        SIGNED_URLS_TOTAL.labels(purpose=purpose).inc()
        return url

    async def get_manifest_or_segment(
        self,
        video_id: str,
        stream_format: str,
        filename: str,
    ) -> Union[ServedFile, RedirectTarget]:
        """Serve a manifest or segment from cache, or redirect to a signed URL.

        Raises:
            InvalidStreamRequestError: unknown format or unsafe path component
            SigningError: the object store could not sign the URL
        """
        if stream_format not in MASTER_MANIFEST_NAMES:
            raise InvalidStreamRequestError(f"unsupported format: {stream_format}")
        if not _is_safe_component(video_id) or not _is_safe_component(filename):
            raise InvalidStreamRequestError("invalid video id or filename")

        key = f"videos/{video_id}/{stream_format}/{filename}"

        data = await self.cache.get(stream_format, key)
        if data is not None:
            return ServedFile(content=data, content_type=guess_content_type(filename))

        try:
            url = await self._sign(key, self.segment_url_ttl, purpose="segment")
        except SigningError:
            logger.error("Failed to sign stream object", extra={"object_key": key}, exc_info=True)
            raise
        return RedirectTarget(url=url, expires_in=self.segment_url_ttl)

    async def get_video_detail(self, video_id: str) -> VideoDetailResponse:
        """Video record, its renditions and signed master manifest URLs.

        Raises:
            VideoNotFoundError: no such video
        """
        video = await self.catalog.get_video(video_id)
        if video is None:
            raise VideoNotFoundError(f"Video {video_id} not found")

        streams = await self.catalog.get_streams(video_id)

        formats: list[str] = []
        with_reference: set[str] = set()
        for stream in streams:
            fmt = stream.format.value
            if fmt not in formats:
                formats.append(fmt)
            if stream.resolution == self.reference_resolution:
                with_reference.add(fmt)

        master_urls: dict[str, str] = {}
        # A failed run may have left rendition rows behind; only finished videos are playable.
        playable = video.processing_state == ProcessingState.COMPLETED
        for fmt in formats:
            if not playable or fmt not in with_reference:
                continue
            key = f"videos/{video_id}/{fmt}/{MASTER_MANIFEST_NAMES[fmt]}"
            try:
                master_urls[fmt] = await self._sign(key, self.master_url_ttl, purpose="master")
            except SigningError as e:
                logger.warning(
                    "Omitting master manifest URL",
                    extra={"video_id": video_id, "stream_format": fmt, "error": str(e)},
                )

        return VideoDetailResponse(
            video_id=video.id,
            title=video.title,
            duration=video.duration,
            status=video.processing_state,
            formats=formats,
            master_manifest_urls=master_urls,
            renditions=[
                RenditionResponse(
                    resolution=s.resolution,
                    bitrate=s.bitrate,
                    format=s.format.value,
                    path=s.path,
                    size=s.size,
                    segment_size=s.segment_size,
                )
                for s in streams
            ],
            created_at=video.created_at,
        )

    async def list_videos(
        self,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> VideoListResponse:
        """Newest first. limit is clamped to [1, LIST_MAX_LIMIT], offset to >= 0."""
        if limit is None:
            limit = settings.LIST_DEFAULT_LIMIT
        limit = max(1, min(limit, settings.LIST_MAX_LIMIT))
        offset = max(0, offset or 0)

        videos = await self.catalog.list_videos(limit, offset)
        return VideoListResponse(
            videos=[
                VideoSummary(
                    id=v.id,
                    title=v.title,
                    duration=v.duration,
                    status=v.processing_state,
                    size=v.size,
                    content_type=v.content_type,
                    created_at=v.created_at,
                    updated_at=v.updated_at,
                )
                for v in videos
            ],
            pagination=Pagination(limit=limit, offset=offset),
        )
