"""Pipeline stage implementations.

Every stage is safe to re-execute. Store, database and tool failures are
normalized here to TransientStageError or ConfigurationError so the
orchestrator only deals with the pipeline taxonomy.
"""

import asyncio
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from vodflow.core.config import settings
from vodflow.core.storage import Storage, StorageError
from vodflow.modules.catalog.models import ProcessingState
from vodflow.modules.catalog.schemas import VideoCreate
from vodflow.modules.catalog.service import CatalogStore
from vodflow.modules.pipeline.exceptions import ConfigurationError, TransientStageError
from vodflow.modules.pipeline.models import Stage
from vodflow.modules.pipeline.repository import RunStore
from vodflow.modules.pipeline.schemas import RunRecord
from vodflow.modules.transcoding.engine import TranscodeEngine
from vodflow.modules.transcoding.ffmpeg import FFmpegRunner, TranscodeError
from vodflow.modules.transcoding.ladder import InvalidLadderError

logger = logging.getLogger(__name__)


@dataclass
class PipelineDependencies:
    """Capabilities the pipeline consumes."""
    storage: Storage
    catalog: CatalogStore
    runner: FFmpegRunner
    engine: TranscodeEngine
    runs: RunStore
    work_root: str = field(default_factory=lambda: settings.PIPELINE_WORK_DIR or tempfile.gettempdir())
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep


@dataclass
class StageContext:
    """What a stage attempt needs: the run, the dependencies and a status writer."""
    run: RunRecord
    deps: PipelineDependencies
    set_status: Callable[[ProcessingState], Awaitable[None]]


def scratch_dir(work_root: str, video_id: str) -> str:
    return os.path.join(work_root, f"transcode-{video_id}")


def _title_from_filename(filename: str) -> str:
    return os.path.splitext(os.path.basename(filename))[0] or filename


def _tool_error(error: TranscodeError) -> Exception:
    if error.permanent:
        return ConfigurationError(str(error))
    return TransientStageError(str(error))


async def download(ctx: StageContext) -> None:
    """Create the catalog row and fetch the source object into scratch."""
    run, deps = ctx.run, ctx.deps
    try:
        await deps.catalog.create_video_if_missing(
            VideoCreate(
                id=run.video_id,
                title=_title_from_filename(run.filename),
                original_name=run.filename,
                original_path=run.object_key,
                content_type=run.content_type,
            )
        )
    except SQLAlchemyError as e:
        raise TransientStageError(f"catalog unavailable: {e}") from e

    await ctx.set_status(ProcessingState.DOWNLOADING)

    work_dir = scratch_dir(deps.work_root, run.video_id)
    extension = os.path.splitext(run.filename)[1]
    local_path = os.path.join(work_dir, f"source{extension}")
    try:
        os.makedirs(work_dir, exist_ok=True)
        await asyncio.to_thread(deps.storage.download, run.object_key, local_path)
        size = os.path.getsize(local_path)
    except (StorageError, OSError) as e:
        raise TransientStageError(str(e)) from e

    try:
        await deps.catalog.update_media_info(run.video_id, size=size)
    except SQLAlchemyError as e:
        raise TransientStageError(f"catalog unavailable: {e}") from e

    run.work_dir = work_dir
    run.local_path = local_path
    logger.info("Downloaded source", extra={"object_key": run.object_key, "size_bytes": size})


async def analyze(ctx: StageContext) -> None:
    """Probe the source; a file without video or audio cannot be transcoded."""
    run, deps = ctx.run, ctx.deps
    await ctx.set_status(ProcessingState.ANALYZING)

    if not run.local_path or not os.path.isfile(run.local_path):
        raise TransientStageError(f"source file missing from scratch: {run.local_path}")

    try:
        info = await deps.runner.probe(run.local_path)
    except TranscodeError as e:
        raise _tool_error(e) from e

    if not info.has_video:
        raise ConfigurationError("source has no video stream")
    if not info.has_audio:
        raise ConfigurationError("source has no audio stream")

    try:
        await deps.catalog.update_media_info(run.video_id, duration=info.duration)
    except SQLAlchemyError as e:
        raise TransientStageError(f"catalog unavailable: {e}") from e

    run.duration = info.duration
    logger.info(
        "Analyzed source",
        extra={"duration": info.duration, "width": info.width, "height": info.height},
    )


async def transcode(ctx: StageContext) -> None:
    """Encode the whole ladder into a fresh output directory."""
    run, deps = ctx.run, ctx.deps
    await ctx.set_status(ProcessingState.TRANSCODING)

    if not run.local_path or not os.path.isfile(run.local_path):
        raise TransientStageError(f"source file missing from scratch: {run.local_path}")

    output_dir = os.path.join(run.work_dir or os.path.dirname(run.local_path), "hls")
    try:
        # Partial output from an earlier attempt must not leak into publish.
        if os.path.isdir(output_dir):
            shutil.rmtree(output_dir)
        os.makedirs(output_dir)
    except OSError as e:
        raise TransientStageError(str(e)) from e

    try:
        await deps.engine.encode(run.local_path, output_dir, run.video_id)
    except InvalidLadderError as e:
        raise ConfigurationError(f"invalid ladder: {e}") from e
    except TranscodeError as e:
        raise _tool_error(e) from e
    except OSError as e:
        raise TransientStageError(str(e)) from e

    run.output_dir = output_dir


async def publish(ctx: StageContext) -> None:
    """Upload renditions and master manifest, then upsert rendition rows."""
    run, deps = ctx.run, ctx.deps
    if not run.output_dir or not os.path.isdir(run.output_dir):
        raise TransientStageError(f"transcode output missing from scratch: {run.output_dir}")

    try:
        await deps.engine.publish(run.video_id, run.output_dir)
    except InvalidLadderError as e:
        raise ConfigurationError(f"invalid ladder: {e}") from e
    except (StorageError, TranscodeError, SQLAlchemyError, OSError) as e:
        raise TransientStageError(str(e)) from e


async def cleanup(ctx: StageContext) -> None:
    """Remove the run's scratch directory."""
    run, deps = ctx.run, ctx.deps
    work_dir = run.work_dir or scratch_dir(deps.work_root, run.video_id)
    if not os.path.exists(work_dir):
        return
    try:
        await asyncio.to_thread(shutil.rmtree, work_dir)
    except OSError as e:
        raise TransientStageError(f"failed to remove {work_dir}: {e}") from e


STAGE_HANDLERS: dict[Stage, Callable[[StageContext], Awaitable[None]]] = {
    Stage.DOWNLOAD: download,
    Stage.ANALYZE: analyze,
    Stage.TRANSCODE: transcode,
    Stage.PUBLISH: publish,
    Stage.CLEANUP: cleanup,
}


def missing_artifacts(run: RunRecord, stage: Stage) -> Optional[str]:
    """Scratch artifact ``stage`` needs that is absent on this host, if any."""
    if stage in (Stage.ANALYZE, Stage.TRANSCODE):
        if not run.local_path or not os.path.isfile(run.local_path):
            return run.local_path or "source file"
    if stage == Stage.PUBLISH:
        if not run.output_dir or not os.path.isdir(run.output_dir):
            return run.output_dir or "output directory"
    return None
