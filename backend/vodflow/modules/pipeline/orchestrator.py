"""Transcoding pipeline orchestrator.

Drives one video through download, analyze, transcode and publish, then
always runs cleanup. Stage attempts are bounded by per-stage retry and
timeout policies; progress is persisted after every attempt so a
re-delivered run resumes from the first incomplete stage.
"""

import asyncio
import logging
import os
import socket
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from vodflow.core.config import settings
from vodflow.core.logging import correlation_scope
from vodflow.core.metrics import (
    PIPELINE_ACTIVE_RUNS,
    PIPELINE_RUNS_TOTAL,
    STAGE_ATTEMPTS_TOTAL,
    STAGE_DURATION_SECONDS,
)
from vodflow.core.tracing import add_span_attributes, create_span
from vodflow.modules.catalog.models import ProcessingState
from vodflow.modules.pipeline.exceptions import (
    ConfigurationError,
    InvalidTransitionError,
    RunNotFoundError,
    StageFailedError,
    TransientStageError,
)
from vodflow.modules.pipeline.models import MAIN_STAGES, RunStatus, Stage
from vodflow.modules.pipeline.retry import STATUS_POLICY, StagePolicy, build_policies
from vodflow.modules.pipeline.schemas import RunRecord
from vodflow.modules.pipeline.stages import (
    STAGE_HANDLERS,
    PipelineDependencies,
    StageContext,
    missing_artifacts,
)

logger = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled"


class PipelineOrchestrator:
    """Runs the stage state machine for one video at a time."""

    def __init__(
        self,
        deps: PipelineDependencies,
        policies: Optional[dict[str, StagePolicy]] = None,
        owner: Optional[str] = None,
        lease_seconds: Optional[float] = None,
    ):
        self.deps = deps
        self.policies = policies or build_policies()
        self.owner = owner or f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"
        self.lease_seconds = lease_seconds or settings.PIPELINE_LEASE_SECONDS

    async def run(self, video_id: str) -> RunRecord:
        """Execute (or resume) the run of ``video_id`` to a terminal status.

        Raises:
            RunNotFoundError: start_run was never called for this video
            asyncio.CancelledError: the run was cancelled; it is recorded as such
        """
        run = await self.deps.runs.get(video_id)
        if run is None:
            raise RunNotFoundError(f"no pipeline run for video {video_id}")
        if run.status.is_terminal:
            logger.info("Run already finished", extra={"video_id": video_id, "run_status": run.status.value})
            return run

        if not await self.deps.runs.acquire_lease(video_id, self.owner, self.lease_seconds):
            logger.info(
                "Run is being executed by another worker",
                extra={"video_id": video_id, "lease_owner": run.lease_owner},
            )
            return run

        heartbeat = asyncio.create_task(self._heartbeat(video_id))
        try:
            run = await self.deps.runs.get(video_id)
            with correlation_scope(video_id), create_span(
                "pipeline.run", attributes={"video.id": video_id, "pipeline.owner": self.owner}
            ):
                PIPELINE_ACTIVE_RUNS.inc()
                try:
                    return await self._execute(run)
                finally:
                    PIPELINE_ACTIVE_RUNS.dec()
        finally:
            heartbeat.cancel()
            await self._release_lease(video_id)

    async def _heartbeat(self, video_id: str) -> None:
        """Keep the execution lease alive while the run is in progress."""
        while True:
            await asyncio.sleep(self.lease_seconds / 3)
            try:
                if not await self.deps.runs.renew_lease(video_id, self.owner, self.lease_seconds):
                    logger.error("Execution lease lost", extra={"video_id": video_id, "owner": self.owner})
            except SQLAlchemyError:
                logger.warning("Lease renewal failed", extra={"video_id": video_id}, exc_info=True)

    async def _release_lease(self, video_id: str) -> None:
        try:
            await self.deps.runs.release_lease(video_id, self.owner)
        except SQLAlchemyError:
            logger.warning("Lease release failed", extra={"video_id": video_id}, exc_info=True)

    async def _execute(self, run: RunRecord) -> RunRecord:
        ctx = StageContext(run=run, deps=self.deps, set_status=self._stage_status_writer(run))

        if run.cancel_requested:
            await self._finish_failed(run, RunStatus.CANCELLED, CANCELLED_REASON)
            await self._cleanup(ctx)
            return run

        pending = self._pending_stages(run)
        logger.info(
            "Starting pipeline run",
            extra={"video_id": run.video_id, "pending_stages": [s.value for s in pending]},
        )

        try:
            for stage in pending:
                await self._run_stage(stage, ctx)
            await self._finish_succeeded(run)
        except StageFailedError as e:
            logger.error(
                "Pipeline run failed",
                extra={"video_id": run.video_id, "stage": e.stage, "reason": e.reason},
            )
            await self._finish_failed(run, RunStatus.FAILED, e.reason)
        except asyncio.CancelledError:
            logger.warning("Pipeline run cancelled", extra={"video_id": run.video_id})
            await self._finish_failed(run, RunStatus.CANCELLED, CANCELLED_REASON)
            await self._cleanup(ctx)
            raise
        except Exception as e:
            logger.exception("Unexpected pipeline error", extra={"video_id": run.video_id})
            await self._finish_failed(run, RunStatus.FAILED, f"{run.current_stage}: {e}")

        await self._cleanup(ctx)
        return run

    def _pending_stages(self, run: RunRecord) -> list[Stage]:
        """Stages still to run; restarts from download if scratch is gone."""
        completed = set(run.completed_stages)
        pending = [s for s in MAIN_STAGES if s.value not in completed]
        if pending and pending[0] != Stage.DOWNLOAD:
            missing = missing_artifacts(run, pending[0])
            if missing:
                logger.warning(
                    "Scratch artifacts missing, restarting from download",
                    extra={"video_id": run.video_id, "missing": missing},
                )
                run.completed_stages = []
                run.local_path = None
                run.output_dir = None
                return list(MAIN_STAGES)
        return pending

    async def _run_stage(self, stage: Stage, ctx: StageContext) -> None:
        """Run one stage under its retry and timeout policy.

        Raises:
            StageFailedError: configuration error or retry budget exhausted
        """
        run = ctx.run
        policy = self.policies[stage.value]
        handler = STAGE_HANDLERS[stage]
        attempt = 0

        while True:
            attempt += 1
            run.current_stage = stage.value
            run.attempts = dict(run.attempts, **{stage.value: run.attempts.get(stage.value, 0) + 1})
            await self._save(run)

            started = time.monotonic()
            with create_span(
                f"pipeline.stage.{stage.value}",
                attributes={"pipeline.stage": stage.value, "pipeline.attempt": attempt},
            ):
                try:
                    await asyncio.wait_for(handler(ctx), timeout=policy.timeout)
                except ConfigurationError as e:
                    STAGE_ATTEMPTS_TOTAL.labels(stage=stage.value, result="configuration_error").inc()
                    logger.error(
                        "Stage configuration failure",
                        extra={"stage": stage.value, "attempt": attempt, "error": str(e)},
                    )
                    raise StageFailedError(stage.value, f"{stage.value}: {e}", attempt, permanent=True) from e
                except asyncio.TimeoutError:
                    reason = f"timed out after {policy.timeout:g}s"
                    add_span_attributes({"pipeline.timeout": True})
                except (TransientStageError, SQLAlchemyError, OSError) as e:
                    reason = str(e)
                else:
                    STAGE_ATTEMPTS_TOTAL.labels(stage=stage.value, result="success").inc()
                    STAGE_DURATION_SECONDS.labels(stage=stage.value).observe(time.monotonic() - started)
                    if stage.value not in run.completed_stages:
                        run.completed_stages = run.completed_stages + [stage.value]
                    run.last_error = None
                    await self._save(run)
                    logger.info("Stage completed", extra={"stage": stage.value, "attempt": attempt})
                    return

            STAGE_ATTEMPTS_TOTAL.labels(stage=stage.value, result="failure").inc()
            STAGE_DURATION_SECONDS.labels(stage=stage.value).observe(time.monotonic() - started)
            run.last_error = f"{stage.value}: {reason}"
            await self._save(run)

            if attempt >= policy.retry.max_attempts:
                raise StageFailedError(stage.value, run.last_error, attempt)

            delay = policy.retry.calculate_delay(attempt)
            logger.warning(
                "Stage attempt failed, retrying",
                extra={"stage": stage.value, "attempt": attempt, "retry_in": delay, "error": reason},
            )
            await self.deps.sleep(delay)

    async def _update_status(
        self,
        video_id: str,
        target: ProcessingState,
        error_message: Optional[str] = None,
    ) -> None:
        """Write a processing state under the status-update policy.

        Raises:
            ConfigurationError: the transition is not allowed
            TransientStageError: every attempt failed
        """
        policy = self.policies[STATUS_POLICY]
        last_error = ""
        for attempt in range(1, policy.retry.max_attempts + 1):
            try:
                await asyncio.wait_for(
                    self.deps.catalog.update_status(video_id, target, error_message),
                    timeout=policy.timeout,
                )
                return
            except InvalidTransitionError as e:
                raise ConfigurationError(str(e)) from e
            except asyncio.TimeoutError:
                last_error = f"timed out after {policy.timeout:g}s"
            except (SQLAlchemyError, OSError) as e:
                last_error = str(e)

            if attempt < policy.retry.max_attempts:
                await self.deps.sleep(policy.retry.calculate_delay(attempt))

        raise TransientStageError(f"status update to {target.value} failed: {last_error}")

    def _stage_status_writer(self, run: RunRecord):
        async def set_status(target: ProcessingState) -> None:
            try:
                await self._update_status(run.video_id, target)
            except ConfigurationError as e:
                # A restarted run re-enters earlier stages; the catalog keeps
                # the further state unless the video already finished.
                cause = e.__cause__
                if (
                    isinstance(cause, InvalidTransitionError)
                    and cause.current is not None
                    and not cause.current.is_terminal
                ):
                    logger.info(
                        "Keeping further processing state",
                        extra={
                            "video_id": run.video_id,
                            "current_state": cause.current.value,
                            "target_state": target.value,
                        },
                    )
                    return
                raise
        return set_status

    async def _finish_succeeded(self, run: RunRecord) -> None:
        try:
            await self._update_status(run.video_id, ProcessingState.COMPLETED)
        except (ConfigurationError, TransientStageError) as e:
            raise StageFailedError(Stage.PUBLISH.value, f"{Stage.PUBLISH.value}: {e}") from e
        run.status = RunStatus.SUCCEEDED
        run.current_stage = None
        run.finished_at = datetime.now(timezone.utc)
        await self._save(run)
        PIPELINE_RUNS_TOTAL.labels(outcome=RunStatus.SUCCEEDED.value).inc()
        logger.info("Pipeline run succeeded", extra={"video_id": run.video_id})

    async def _finish_failed(self, run: RunRecord, status: RunStatus, reason: str) -> None:
        """Record a fatal outcome; the error status write is best effort."""
        run.status = status
        run.last_error = reason
        run.finished_at = datetime.now(timezone.utc)
        await self._save(run)
        PIPELINE_RUNS_TOTAL.labels(outcome=status.value).inc()

        try:
            await self._update_status(run.video_id, ProcessingState.ERROR, reason)
        except (ConfigurationError, TransientStageError) as e:
            logger.error(
                "Failed to record video error status",
                extra={"video_id": run.video_id, "reason": reason, "error": str(e)},
            )

    async def _cleanup(self, ctx: StageContext) -> None:
        """Remove scratch; failures are logged and swallowed."""
        policy = self.policies[Stage.CLEANUP.value]
        handler = STAGE_HANDLERS[Stage.CLEANUP]
        error = ""
        for attempt in range(1, policy.retry.max_attempts + 1):
            try:
                await asyncio.wait_for(handler(ctx), timeout=policy.timeout)
                STAGE_ATTEMPTS_TOTAL.labels(stage=Stage.CLEANUP.value, result="success").inc()
                return
            except (TransientStageError, OSError, asyncio.TimeoutError) as e:
                STAGE_ATTEMPTS_TOTAL.labels(stage=Stage.CLEANUP.value, result="failure").inc()
                error = str(e) or type(e).__name__
            if attempt < policy.retry.max_attempts:
                await self.deps.sleep(policy.retry.calculate_delay(attempt))

        logger.warning(
            "Cleanup failed, scratch left behind",
            extra={"video_id": ctx.run.video_id, "work_dir": ctx.run.work_dir, "error": error},
        )

    async def _save(self, run: RunRecord) -> None:
        try:
            await self.deps.runs.save(run)
        except SQLAlchemyError:
            logger.error("Failed to persist run progress", extra={"video_id": run.video_id}, exc_info=True)


class PipelineWorkerPool:
    """Bounded in-process pool; at most one task per video id.

    Duplicate submissions for a video whose task is still running return the
    existing task. Cancellation requests recorded in the run store are
    picked up by polling.
    """

    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        max_concurrent: int = 2,
        cancel_poll_interval: float = 2.0,
    ):
        self.orchestrator = orchestrator
        self.max_concurrent = max_concurrent
        self.cancel_poll_interval = cancel_poll_interval
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._tasks: dict[str, asyncio.Task] = {}

    def submit(self, video_id: str) -> asyncio.Task:
        existing = self._tasks.get(video_id)
        if existing is not None and not existing.done():
            logger.info("Coalescing duplicate run", extra={"video_id": video_id})
            return existing

        task = asyncio.create_task(self._run_bounded(video_id), name=f"transcode-{video_id}")
        self._tasks[video_id] = task
        task.add_done_callback(lambda t, vid=video_id: self._forget(vid, t))
        return task

    def _forget(self, video_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(video_id) is task:
            del self._tasks[video_id]

    async def _run_bounded(self, video_id: str) -> RunRecord:
        async with self._semaphore:
            run_task = asyncio.create_task(self.orchestrator.run(video_id))
            watcher = asyncio.create_task(self._watch_cancel(video_id, run_task))
            try:
                return await run_task
            finally:
                watcher.cancel()

    async def _watch_cancel(self, video_id: str, run_task: asyncio.Task) -> None:
        while not run_task.done():
            await asyncio.sleep(self.cancel_poll_interval)
            try:
                run = await self.orchestrator.deps.runs.get(video_id)
            except SQLAlchemyError:
                logger.warning("Cancel poll failed", extra={"video_id": video_id}, exc_info=True)
                continue
            if run is not None and run.cancel_requested and not run_task.done():
                logger.info("Cancelling run on request", extra={"video_id": video_id})
                run_task.cancel()
                return

    def cancel(self, video_id: str) -> bool:
        task = self._tasks.get(video_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    @property
    def active(self) -> list[str]:
        return [vid for vid, task in self._tasks.items() if not task.done()]

    async def join(self) -> None:
        """Wait for every submitted run, cancelled ones included."""
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
