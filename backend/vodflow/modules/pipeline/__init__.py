"""Transcoding pipeline orchestration module."""

from vodflow.modules.pipeline.exceptions import (
    ConfigurationError,
    DispatchError,
    InvalidTransitionError,
    PipelineError,
    RunAlreadyFinishedError,
    RunNotFoundError,
    StageFailedError,
    TransientStageError,
)
from vodflow.modules.pipeline.models import MAIN_STAGES, PipelineRun, RunStatus, Stage
from vodflow.modules.pipeline.orchestrator import PipelineOrchestrator, PipelineWorkerPool
from vodflow.modules.pipeline.repository import RunStore, RunStoreService
from vodflow.modules.pipeline.retry import RetryConfig, StagePolicy, build_policies
from vodflow.modules.pipeline.schemas import RunHandle, RunRecord, StartRunRequest
from vodflow.modules.pipeline.service import PipelineService, workflow_id
from vodflow.modules.pipeline.stages import PipelineDependencies

__all__ = [
    # Exceptions
    "ConfigurationError",
    "DispatchError",
    "InvalidTransitionError",
    "PipelineError",
    "RunAlreadyFinishedError",
    "RunNotFoundError",
    "StageFailedError",
    "TransientStageError",
    # Models
    "MAIN_STAGES",
    "PipelineRun",
    "RunStatus",
    "Stage",
    # Orchestration
    "PipelineOrchestrator",
    "PipelineWorkerPool",
    "PipelineDependencies",
    "RetryConfig",
    "StagePolicy",
    "build_policies",
    # Store and service
    "RunStore",
    "RunStoreService",
    "RunHandle",
    "RunRecord",
    "StartRunRequest",
    "PipelineService",
    "workflow_id",
]
