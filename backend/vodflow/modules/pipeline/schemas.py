"""Pydantic schemas for pipeline runs."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from vodflow.modules.pipeline.models import RunStatus


class StartRunRequest(BaseModel):
    """Request from ingestion to process an uploaded file."""
    video_id: str = Field(..., min_length=1, max_length=255)
    object_key: str = Field(..., min_length=1, description="Source object key, e.g. uploads/<id>/<file>")
    filename: str = Field(..., min_length=1)
    content_type: str = "application/octet-stream"


class RunRecord(BaseModel):
    """Detached copy of a pipeline run row."""
    model_config = ConfigDict(from_attributes=True)

    video_id: str
    object_key: str
    filename: str
    content_type: str
    status: RunStatus = RunStatus.ACTIVE
    current_stage: Optional[str] = None
    completed_stages: list[str] = Field(default_factory=list)
    attempts: dict[str, int] = Field(default_factory=dict)
    last_error: Optional[str] = None
    cancel_requested: bool = False
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    work_dir: Optional[str] = None
    local_path: Optional[str] = None
    output_dir: Optional[str] = None
    duration: Optional[float] = None
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class RunHandle(BaseModel):
    """Returned by start_run."""
    video_id: str
    workflow_id: str
    status: RunStatus
    coalesced: bool = Field(False, description="True when an active run already existed")
