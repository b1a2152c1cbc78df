"""Pydantic schemas for the streaming gateway."""

from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, Field

from vodflow.modules.catalog.models import ProcessingState


class RenditionResponse(BaseModel):
    """One rendition of a video."""
    resolution: str
    bitrate: str
    format: str
    path: str
    size: int
    segment_size: int


class VideoDetailResponse(BaseModel):
    """Video with its renditions and signed master manifest URLs."""
    video_id: str
    title: str
    duration: float
    status: ProcessingState
    formats: list[str] = Field(default_factory=list, description="Formats in first-seen order")
    master_manifest_urls: dict[str, str] = Field(default_factory=dict)
    renditions: list[RenditionResponse] = Field(default_factory=list)
    created_at: datetime


class VideoSummary(BaseModel):
    """Video entry in a listing."""
    id: str
    title: str
    duration: float
    status: ProcessingState
    size: int
    content_type: str
    created_at: datetime
    updated_at: datetime


class Pagination(BaseModel):
    limit: int
    offset: int


class VideoListResponse(BaseModel):
    videos: list[VideoSummary]
    pagination: Pagination


@dataclass
class ServedFile:
    """Cached manifest or segment bytes."""
    content: bytes
    content_type: str


@dataclass
class RedirectTarget:
    """Signed URL the player should fetch directly from the object store."""
    url: str
    expires_in: int
