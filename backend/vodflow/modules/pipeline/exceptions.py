"""Pipeline error taxonomy."""

from typing import Optional

from vodflow.modules.catalog.service import InvalidTransitionError


class PipelineError(Exception):
    """Base exception for pipeline errors."""
    pass


class TransientStageError(PipelineError):
    """Network, timeout or tool failure; the stage is retried."""
    pass


class ConfigurationError(PipelineError):
    """Invalid ladder, missing media stream or a permanent tool diagnostic.

    Never retried.
    """
    pass


class StageFailedError(PipelineError):
    """A stage exhausted its retry budget or hit a configuration error."""

    def __init__(self, stage: str, reason: str, attempts: int = 0, permanent: bool = False):
        self.stage = stage
        self.reason = reason
        self.attempts = attempts
        self.permanent = permanent
        super().__init__(reason)


class RunNotFoundError(PipelineError):
    """No pipeline run exists for the video."""
    pass


class DispatchError(PipelineError):
    """The run could not be handed to a worker; its claim was released."""
    pass


class RunAlreadyFinishedError(PipelineError):
    """A start was requested for a video whose run already finished."""

    def __init__(self, video_id: str, status: Optional[str] = None):
        self.video_id = video_id
        self.status = status
        super().__init__(f"run for video {video_id} already finished ({status})")


__all__ = [
    "PipelineError",
    "TransientStageError",
    "ConfigurationError",
    "StageFailedError",
    "RunNotFoundError",
    "RunAlreadyFinishedError",
    "DispatchError",
    "InvalidTransitionError",
]
