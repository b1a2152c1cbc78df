"""Pipeline run bookkeeping.

One pipeline_runs row per video id holds the stage progress needed to resume
a re-delivered run, plus the execution lease that keeps two workers from
running the same video at once.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from vodflow.core.database import Base


class RunStatus(str, Enum):
    """Status of a pipeline run."""

    ACTIVE = "active"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self != RunStatus.ACTIVE


class Stage(str, Enum):
    """Pipeline stages, in execution order."""

    DOWNLOAD = "download"
    ANALYZE = "analyze"
    TRANSCODE = "transcode"
    PUBLISH = "publish"
    CLEANUP = "cleanup"


# Cleanup runs after success and failure alike, so it is not part of this list.
MAIN_STAGES = (Stage.DOWNLOAD, Stage.ANALYZE, Stage.TRANSCODE, Stage.PUBLISH)


class PipelineRun(Base):
    """Durable state of the run processing one video."""

    __tablename__ = "pipeline_runs"

    video_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    object_key: Mapped[str] = mapped_column(Text, nullable=False)
    filename: Mapped[str] = mapped_column(Text, nullable=False)
    content_type: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=RunStatus.ACTIVE.value, index=True
    )
    current_stage: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    completed_stages: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    attempts: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Execution lease held by the worker currently running the stages
    lease_owner: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Scratch locations on the worker host
    work_dir: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    local_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    output_dir: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    duration: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<PipelineRun(video_id={self.video_id}, status={self.status}, stage={self.current_stage})>"
