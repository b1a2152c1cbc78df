"""Catalog models: videos and their transcoded streams.

A Video's processing_state only moves forward through ProcessingState, or to
ERROR from any non-terminal state.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Float, ForeignKey, Integer, BigInteger, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from vodflow.core.database import Base


class ProcessingState(str, Enum):
    """Processing state of a video."""

    RECEIVED = "received"
    DOWNLOADING = "downloading"
    ANALYZING = "analyzing"
    TRANSCODING = "transcoding"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessingState.COMPLETED, ProcessingState.ERROR)


# Forward path; ERROR is reachable from any non-terminal state.
STATE_ORDER = (
    ProcessingState.RECEIVED,
    ProcessingState.DOWNLOADING,
    ProcessingState.ANALYZING,
    ProcessingState.TRANSCODING,
    ProcessingState.COMPLETED,
)


def allowed_predecessors(target: ProcessingState) -> tuple[ProcessingState, ...]:
    """States from which a video may move to ``target``.

    Re-asserting the current non-terminal state is allowed so a stage replayed
    after a crash does not fail on its own status write.
    """
    if target == ProcessingState.ERROR:
        return tuple(s for s in STATE_ORDER if not s.is_terminal)
    index = STATE_ORDER.index(target)
    predecessors = STATE_ORDER[:index]
    if not target.is_terminal:
        predecessors = predecessors + (target,)
    return predecessors


def can_transition(current: ProcessingState, target: ProcessingState) -> bool:
    return current in allowed_predecessors(target)


class StreamFormat(str, Enum):
    """Packaging format of a rendition."""

    HLS = "hls"
    DASH = "dash"


class Video(Base):
    """One uploaded asset."""

    __tablename__ = "videos"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    original_name: Mapped[str] = mapped_column(Text, nullable=False)
    original_path: Mapped[str] = mapped_column(Text, nullable=False)
    processing_state: Mapped[str] = mapped_column(
        String(32), nullable=False, default=ProcessingState.RECEIVED.value, index=True
    )
    duration: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    content_type: Mapped[str] = mapped_column(String(255), nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    streams: Mapped[list["VideoStream"]] = relationship(
        back_populates="video",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Video(id={self.id}, state={self.processing_state})>"


class VideoStream(Base):
    """One produced rendition of a video, unique per (video, resolution, format)."""

    __tablename__ = "video_streams"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    video_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("videos.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    resolution: Mapped[str] = mapped_column(String(32), nullable=False)
    bitrate: Mapped[str] = mapped_column(String(32), nullable=False)
    format: Mapped[str] = mapped_column(String(16), nullable=False)
    path: Mapped[str] = mapped_column(Text, nullable=False)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    segment_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    video: Mapped[Video] = relationship(back_populates="streams")

    __table_args__ = (
        UniqueConstraint("video_id", "resolution", "format", name="uq_video_streams_natural_key"),
    )

    def __repr__(self) -> str:
        return f"<VideoStream {self.video_id} {self.resolution} {self.format}>"
