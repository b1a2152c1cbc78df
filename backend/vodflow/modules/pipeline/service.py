"""Pipeline service: starting and cancelling runs."""

import logging
from typing import Callable, Optional

from redis.asyncio import Redis
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from vodflow.core.storage import Storage
from vodflow.modules.catalog.service import CatalogService
from vodflow.modules.pipeline.exceptions import (
    DispatchError,
    RunAlreadyFinishedError,
    RunNotFoundError,
)
from vodflow.modules.pipeline.models import RunStatus
from vodflow.modules.pipeline.repository import RunStore, RunStoreService
from vodflow.modules.pipeline.schemas import RunHandle, RunRecord, StartRunRequest
from vodflow.modules.pipeline.stages import PipelineDependencies
from vodflow.modules.streaming.cache import SegmentCache
from vodflow.modules.transcoding.engine import TranscodeEngine
from vodflow.modules.transcoding.ffmpeg import FFmpegRunner

logger = logging.getLogger(__name__)


def workflow_id(video_id: str) -> str:
    """Stable id of the run of a video, also used as the Celery task id."""
    return f"transcode-{video_id}"


def dispatch_pipeline_task(video_id: str) -> None:
    """Queue the Celery task executing the run."""
    from vodflow.modules.pipeline.tasks import run_pipeline_task

    run_pipeline_task.apply_async(args=[video_id], task_id=workflow_id(video_id))


def build_pipeline_dependencies(
    session_factory: Callable[[], AsyncSession],
    redis_client: Optional[Redis] = None,
) -> PipelineDependencies:
    """Wire the production capabilities."""
    storage = Storage.get_instance()
    catalog = CatalogService(session_factory)
    runner = FFmpegRunner()
    cache = SegmentCache(redis_client) if redis_client is not None else None
    return PipelineDependencies(
        storage=storage,
        catalog=catalog,
        runner=runner,
        engine=TranscodeEngine(runner=runner, storage=storage, catalog=catalog, cache=cache),
        runs=RunStoreService(session_factory),
    )


class PipelineService:
    """Entry point used by ingestion."""

    def __init__(
        self,
        runs: RunStore,
        dispatch: Optional[Callable[[str], None]] = None,
    ):
        self.runs = runs
        self.dispatch = dispatch or dispatch_pipeline_task

    async def start_run(self, request: StartRunRequest) -> RunHandle:
        """Start processing a video, or join the run already active for it.

        Raises:
            RunAlreadyFinishedError: the video's run already reached a terminal status
            DispatchError: the run could not be queued; nothing was left claimed
        """
        run, created = await self.runs.claim(request)

        if created:
            try:
                self.dispatch(request.video_id)
            except Exception as e:
                logger.error(
                    "Failed to dispatch pipeline run",
                    extra={"video_id": request.video_id, "error": str(e)},
                )
                await self._release_claim(request.video_id)
                raise DispatchError(f"could not queue run for video {request.video_id}: {e}") from e
            logger.info(
                "Pipeline run started",
                extra={"video_id": request.video_id, "object_key": request.object_key},
            )
        elif run.status.is_terminal:
            raise RunAlreadyFinishedError(request.video_id, run.status.value)
        else:
            logger.info("Pipeline run already active", extra={"video_id": request.video_id})

        return RunHandle(
            video_id=run.video_id,
            workflow_id=workflow_id(run.video_id),
            status=run.status,
            coalesced=not created,
        )

    async def _release_claim(self, video_id: str) -> None:
        try:
            await self.runs.release(video_id)
        except SQLAlchemyError:
            logger.exception("Failed to release undispatched run", extra={"video_id": video_id})

    async def get_run(self, video_id: str) -> RunRecord:
        run = await self.runs.get(video_id)
        if run is None:
            raise RunNotFoundError(f"no pipeline run for video {video_id}")
        return run

    async def cancel_run(self, video_id: str) -> RunHandle:
        """Request cancellation of the active run of a video.

        The worker executing the run picks the request up, kills any running
        codec process, reclaims scratch and marks the run cancelled.

        Raises:
            RunNotFoundError: no run for this video
            RunAlreadyFinishedError: the run already finished
        """
        run = await self.get_run(video_id)
        if run.status.is_terminal or not await self.runs.request_cancel(video_id):
            raise RunAlreadyFinishedError(video_id, run.status.value)

        logger.info("Pipeline run cancellation requested", extra={"video_id": video_id})
        return RunHandle(
            video_id=video_id,
            workflow_id=workflow_id(video_id),
            status=RunStatus.ACTIVE,
            coalesced=False,
        )
