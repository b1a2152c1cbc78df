"""Pydantic schemas for catalog records.

Records are detached copies of rows, safe to pass between the pipeline,
the engine and the streaming gateway after the session is closed.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from vodflow.modules.catalog.models import ProcessingState, StreamFormat


class VideoCreate(BaseModel):
    """Initial catalog record written by the download stage."""
    id: str
    title: str
    original_name: str
    original_path: str
    content_type: str
    size: int = 0


class VideoRecord(BaseModel):
    """Catalog view of a video."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    original_name: str
    original_path: str
    processing_state: ProcessingState
    duration: float = 0.0
    size: int = 0
    content_type: str
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class RenditionDescriptor(BaseModel):
    """One rendition produced by the transcode engine, ready to upsert."""
    id: str
    video_id: str
    resolution: str = Field(..., description="WxH label, e.g. 1920x1080")
    bitrate: str = Field(..., description="Ladder bitrate label, e.g. 5000k")
    format: StreamFormat = StreamFormat.HLS
    path: str = Field(..., description="Object key of the rendition playlist")
    size: int = Field(0, ge=0, description="Encoded bytes (playlist + segments)")
    segment_size: int = Field(0, ge=0, description="Segment duration in seconds")


class RenditionRecord(RenditionDescriptor):
    """Catalog view of a rendition."""
    model_config = ConfigDict(from_attributes=True)

    created_at: datetime
