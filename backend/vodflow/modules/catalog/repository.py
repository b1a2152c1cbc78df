"""Repositories for catalog database operations."""

from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import NoResultFound
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import func

from vodflow.modules.catalog.models import (
    ProcessingState,
    Video,
    VideoStream,
    allowed_predecessors,
)
from vodflow.modules.catalog.schemas import RenditionDescriptor, VideoCreate


def _dialect_insert(dialect_name: str):
    if dialect_name == "sqlite":
        return sqlite.insert
    return postgresql.insert


def build_video_insert_if_missing(dialect_name: str, data: VideoCreate):
    """INSERT ... ON CONFLICT (id) DO NOTHING for the initial video row."""
    stmt = _dialect_insert(dialect_name)(Video).values(
        id=data.id,
        title=data.title,
        original_name=data.original_name,
        original_path=data.original_path,
        content_type=data.content_type,
        size=data.size,
        processing_state=ProcessingState.RECEIVED.value,
    )
    return stmt.on_conflict_do_nothing(index_elements=[Video.id])


def build_stream_upsert(dialect_name: str, rendition: RenditionDescriptor):
    """INSERT ... ON CONFLICT (video_id, resolution, format) DO UPDATE.

    Re-publishing a rendition replaces its path, size, bitrate and segment
    size; the row id and created_at of the first publish are kept.
    """
    values: dict[str, Any] = rendition.model_dump()
    values["format"] = rendition.format.value
    stmt = _dialect_insert(dialect_name)(VideoStream).values(**values)
    return stmt.on_conflict_do_update(
        index_elements=[VideoStream.video_id, VideoStream.resolution, VideoStream.format],
        set_={
            "bitrate": stmt.excluded.bitrate,
            "path": stmt.excluded.path,
            "size": stmt.excluded.size,
            "segment_size": stmt.excluded.segment_size,
        },
    )


class VideoRepository:
    """Repository for Video operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    @property
    def dialect_name(self) -> str:
        return self.session.get_bind().dialect.name

    async def create_if_missing(self, data: VideoCreate) -> Video:
        """Create the video row unless it already exists; return the row."""
        await self.session.execute(build_video_insert_if_missing(self.dialect_name, data))
        video = await self.get_by_id(data.id)
        if video is None:
            raise NoResultFound(f"video {data.id} missing after insert")
        return video

    async def get_by_id(self, video_id: str) -> Optional[Video]:
        result = await self.session.execute(select(Video).where(Video.id == video_id))
        return result.scalar_one_or_none()

    async def transition(
        self,
        video_id: str,
        target: ProcessingState,
        error_message: Optional[str] = None,
    ) -> bool:
        """Move a video to ``target`` if its current state allows it.

        The WHERE clause carries the allowed predecessors, so concurrent or
        replayed writers can never move a video backwards.

        Returns:
            True if a row was updated
        """
        values: dict[str, Any] = {
            "processing_state": target.value,
            "updated_at": func.now(),
        }
        if target == ProcessingState.ERROR:
            values["error_message"] = error_message
        stmt = (
            update(Video)
            .where(Video.id == video_id)
            .where(Video.processing_state.in_([s.value for s in allowed_predecessors(target)]))
            .values(**values)
        )
        result = await self.session.execute(stmt)
        return result.rowcount > 0

    async def update_media_info(
        self,
        video_id: str,
        size: Optional[int] = None,
        duration: Optional[float] = None,
    ) -> None:
        values: dict[str, Any] = {"updated_at": func.now()}
        if size is not None:
            values["size"] = size
        if duration is not None:
            values["duration"] = duration
        await self.session.execute(update(Video).where(Video.id == video_id).values(**values))

    async def list_videos(self, limit: int, offset: int) -> list[Video]:
        result = await self.session.execute(
            select(Video)
            .order_by(Video.created_at.desc(), Video.id)
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())


class VideoStreamRepository:
    """Repository for VideoStream operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def upsert(self, rendition: RenditionDescriptor) -> None:
        dialect_name = self.session.get_bind().dialect.name
        await self.session.execute(build_stream_upsert(dialect_name, rendition))

    async def get_for_video(self, video_id: str) -> list[VideoStream]:
        result = await self.session.execute(
            select(VideoStream)
            .where(VideoStream.video_id == video_id)
            .order_by(VideoStream.created_at, VideoStream.id)
        )
        return list(result.scalars().all())
