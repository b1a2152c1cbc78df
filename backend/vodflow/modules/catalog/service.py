"""Catalog store used by the pipeline and the streaming gateway.

Each call runs in its own short transaction so a long pipeline run never
holds a database session open across stages.
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from vodflow.modules.catalog.models import ProcessingState
from vodflow.modules.catalog.repository import VideoRepository, VideoStreamRepository
from vodflow.modules.catalog.schemas import (
    RenditionDescriptor,
    RenditionRecord,
    VideoCreate,
    VideoRecord,
)

logger = logging.getLogger(__name__)


class InvalidTransitionError(Exception):
    """Raised when a processing state change would move a video backwards,
    out of a terminal state, or the video does not exist."""

    def __init__(
        self,
        video_id: str,
        target: ProcessingState,
        current: Optional[ProcessingState] = None,
    ):
        self.video_id = video_id
        self.target = target
        self.current = current
        if current is None:
            message = f"video {video_id} not found (target state {target.value})"
        else:
            message = f"video {video_id}: cannot move from {current.value} to {target.value}"
        super().__init__(message)


class CatalogStore(ABC):
    """Catalog operations consumed by the pipeline and the gateway."""

    @abstractmethod
    async def create_video_if_missing(self, data: VideoCreate) -> VideoRecord:
        ...

    @abstractmethod
    async def get_video(self, video_id: str) -> Optional[VideoRecord]:
        ...

    @abstractmethod
    async def update_status(
        self,
        video_id: str,
        target: ProcessingState,
        error_message: Optional[str] = None,
    ) -> None:
        """Raises InvalidTransitionError if ``target`` is not reachable."""

    @abstractmethod
    async def update_media_info(
        self,
        video_id: str,
        size: Optional[int] = None,
        duration: Optional[float] = None,
    ) -> None:
        ...

    @abstractmethod
    async def upsert_stream(self, rendition: RenditionDescriptor) -> None:
        ...

    @abstractmethod
    async def get_streams(self, video_id: str) -> list[RenditionRecord]:
        ...

    @abstractmethod
    async def list_videos(self, limit: int, offset: int) -> list[VideoRecord]:
        ...


class CatalogService(CatalogStore):
    """SQLAlchemy-backed catalog store."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def create_video_if_missing(self, data: VideoCreate) -> VideoRecord:
        async with self.session_factory() as session:
            async with session.begin():
                video = await VideoRepository(session).create_if_missing(data)
                return VideoRecord.model_validate(video)

    async def get_video(self, video_id: str) -> Optional[VideoRecord]:
        async with self.session_factory() as session:
            video = await VideoRepository(session).get_by_id(video_id)
            return VideoRecord.model_validate(video) if video else None

    async def update_status(
        self,
        video_id: str,
        target: ProcessingState,
        error_message: Optional[str] = None,
    ) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                repo = VideoRepository(session)
                if await repo.transition(video_id, target, error_message):
                    return
                video = await repo.get_by_id(video_id)

        current = ProcessingState(video.processing_state) if video else None
        logger.warning(
            "Rejected processing state change",
            extra={
                "video_id": video_id,
                "target_state": target.value,
                "current_state": current.value if current else None,
            },
        )
        raise InvalidTransitionError(video_id, target, current)

    async def update_media_info(
        self,
        video_id: str,
        size: Optional[int] = None,
        duration: Optional[float] = None,
    ) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await VideoRepository(session).update_media_info(video_id, size=size, duration=duration)

    async def upsert_stream(self, rendition: RenditionDescriptor) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await VideoStreamRepository(session).upsert(rendition)

    async def get_streams(self, video_id: str) -> list[RenditionRecord]:
        async with self.session_factory() as session:
            streams = await VideoStreamRepository(session).get_for_video(video_id)
            return [RenditionRecord.model_validate(s) for s in streams]

    async def list_videos(self, limit: int, offset: int) -> list[VideoRecord]:
        async with self.session_factory() as session:
            videos = await VideoRepository(session).list_videos(limit, offset)
            return [VideoRecord.model_validate(v) for v in videos]
