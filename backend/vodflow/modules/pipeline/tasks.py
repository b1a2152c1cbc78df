"""Celery task executing pipeline runs."""

import asyncio
import logging

import redis.asyncio as redis

from vodflow.core.celery_app import celery_app
from vodflow.core.config import settings
from vodflow.core.database import async_session_maker, engine

logger = logging.getLogger(__name__)

DEFERRED = "deferred"


async def execute_run(video_id: str) -> dict:
    """Run the pipeline for one video inside a fresh event loop."""
    from vodflow.modules.pipeline.orchestrator import PipelineOrchestrator, PipelineWorkerPool
    from vodflow.modules.pipeline.service import build_pipeline_dependencies

    redis_client = redis.from_url(settings.REDIS_URL, decode_responses=False)
    try:
        deps = build_pipeline_dependencies(async_session_maker, redis_client)
        pool = PipelineWorkerPool(PipelineOrchestrator(deps), max_concurrent=1)
        try:
            run = await pool.submit(video_id)
        except asyncio.CancelledError:
            return {"video_id": video_id, "status": "cancelled"}
        if not run.status.is_terminal:
            # Another worker holds the execution lease.
            return {"video_id": video_id, "status": DEFERRED, "lease_owner": run.lease_owner}
        return {
            "video_id": video_id,
            "status": run.status.value,
            "last_error": run.last_error,
        }
    finally:
        await redis_client.aclose()
        # Pooled connections belong to this loop; the next task gets a new one.
        await engine.dispose()


@celery_app.task(bind=True, max_retries=None, name="pipeline.run_pipeline")
def run_pipeline_task(self, video_id: str) -> dict:
    """Execute or resume the pipeline run of a video.

    Args:
        video_id: Video whose run was created by start_run

    Returns:
        dict with the run outcome
    """
    logger.info("Pipeline task received", extra={"video_id": video_id, "task_id": self.request.id})
    result = asyncio.run(execute_run(video_id))
    if result["status"] == DEFERRED:
        # Check back once the holder's lease would have expired if it died.
        raise self.retry(countdown=settings.PIPELINE_LEASE_SECONDS)
    return result
