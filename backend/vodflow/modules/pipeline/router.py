"""Pipeline API router.

Start, inspect and cancel transcoding runs.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from vodflow.core.database import async_session_maker
from vodflow.modules.pipeline.exceptions import (
    DispatchError,
    RunAlreadyFinishedError,
    RunNotFoundError,
)
from vodflow.modules.pipeline.repository import RunStoreService
from vodflow.modules.pipeline.schemas import RunHandle, RunRecord, StartRunRequest
from vodflow.modules.pipeline.service import PipelineService

router = APIRouter(prefix="/pipeline", tags=["pipeline"])


def get_pipeline_service() -> PipelineService:
    return PipelineService(RunStoreService(async_session_maker))


@router.post("/runs", response_model=RunHandle, status_code=status.HTTP_202_ACCEPTED)
async def start_run(
    request: StartRunRequest,
    service: PipelineService = Depends(get_pipeline_service),
):
    """Start (or join) the transcoding run of an uploaded video."""
    try:
        return await service.start_run(request)
    except RunAlreadyFinishedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except DispatchError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.get("/runs/{video_id}", response_model=RunRecord)
async def get_run(
    video_id: str,
    service: PipelineService = Depends(get_pipeline_service),
):
    try:
        return await service.get_run(video_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.delete("/runs/{video_id}", response_model=RunHandle, status_code=status.HTTP_202_ACCEPTED)
async def cancel_run(
    video_id: str,
    service: PipelineService = Depends(get_pipeline_service),
):
    """Request cancellation of an active run."""
    try:
        return await service.cancel_run(video_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except RunAlreadyFinishedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
