"""Repository and store for pipeline runs."""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import func

from vodflow.modules.pipeline.models import PipelineRun, RunStatus
from vodflow.modules.pipeline.schemas import RunRecord, StartRunRequest

# Fields the orchestrator writes back after every attempt.
PROGRESS_FIELDS = (
    "status",
    "current_stage",
    "completed_stages",
    "attempts",
    "last_error",
    "work_dir",
    "local_path",
    "output_dir",
    "duration",
    "finished_at",
)


def build_run_insert_if_missing(dialect_name: str, request: StartRunRequest):
    """INSERT ... ON CONFLICT (video_id) DO NOTHING."""
    insert = sqlite.insert if dialect_name == "sqlite" else postgresql.insert
    stmt = insert(PipelineRun).values(
        video_id=request.video_id,
        object_key=request.object_key,
        filename=request.filename,
        content_type=request.content_type,
        status=RunStatus.ACTIVE.value,
        completed_stages=[],
        attempts={},
        cancel_requested=False,
    )
    return stmt.on_conflict_do_nothing(index_elements=[PipelineRun.video_id])


class PipelineRunRepository:
    """Repository for PipelineRun operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def insert_if_missing(self, request: StartRunRequest) -> bool:
        """Insert a new active run. Returns True if this call created it."""
        dialect_name = self.session.get_bind().dialect.name
        result = await self.session.execute(build_run_insert_if_missing(dialect_name, request))
        return result.rowcount > 0

    async def get_by_video_id(self, video_id: str) -> Optional[PipelineRun]:
        result = await self.session.execute(
            select(PipelineRun).where(PipelineRun.video_id == video_id)
        )
        return result.scalar_one_or_none()

    async def update_progress(self, video_id: str, values: dict) -> None:
        values = dict(values, updated_at=func.now())
        await self.session.execute(
            update(PipelineRun).where(PipelineRun.video_id == video_id).values(**values)
        )

    async def request_cancel(self, video_id: str) -> bool:
        result = await self.session.execute(
            update(PipelineRun)
            .where(PipelineRun.video_id == video_id)
            .where(PipelineRun.status == RunStatus.ACTIVE.value)
            .values(cancel_requested=True, updated_at=func.now())
        )
        return result.rowcount > 0

    async def delete_unstarted(self, video_id: str) -> bool:
        """Remove an active run that no worker has picked up yet."""
        result = await self.session.execute(
            delete(PipelineRun)
            .where(PipelineRun.video_id == video_id)
            .where(PipelineRun.status == RunStatus.ACTIVE.value)
            .where(PipelineRun.current_stage.is_(None))
            .where(PipelineRun.lease_owner.is_(None))
        )
        return result.rowcount > 0

    async def acquire_lease(self, video_id: str, owner: str, now: datetime, expires_at: datetime) -> bool:
        """Take the execution lease of an active run if it is free, expired or already ours."""
        result = await self.session.execute(
            update(PipelineRun)
            .where(PipelineRun.video_id == video_id)
            .where(PipelineRun.status == RunStatus.ACTIVE.value)
            .where(
                or_(
                    PipelineRun.lease_owner.is_(None),
                    PipelineRun.lease_owner == owner,
                    PipelineRun.lease_expires_at < now,
                )
            )
            .values(lease_owner=owner, lease_expires_at=expires_at, updated_at=func.now())
        )
        return result.rowcount > 0

    async def renew_lease(self, video_id: str, owner: str, expires_at: datetime) -> bool:
        result = await self.session.execute(
            update(PipelineRun)
            .where(PipelineRun.video_id == video_id)
            .where(PipelineRun.lease_owner == owner)
            .values(lease_expires_at=expires_at)
        )
        return result.rowcount > 0

    async def release_lease(self, video_id: str, owner: str) -> None:
        await self.session.execute(
            update(PipelineRun)
            .where(PipelineRun.video_id == video_id)
            .where(PipelineRun.lease_owner == owner)
            .values(lease_owner=None, lease_expires_at=None)
        )


class RunStore(ABC):
    """Durable pipeline run bookkeeping."""

    @abstractmethod
    async def claim(self, request: StartRunRequest) -> tuple[RunRecord, bool]:
        """Create the run unless one exists. Returns (run, created)."""

    @abstractmethod
    async def get(self, video_id: str) -> Optional[RunRecord]:
        ...

    @abstractmethod
    async def save(self, run: RunRecord) -> None:
        """Persist the progress fields of ``run``."""

    @abstractmethod
    async def request_cancel(self, video_id: str) -> bool:
        """Flag an active run for cancellation. Returns False if not active."""

    @abstractmethod
    async def release(self, video_id: str) -> bool:
        """Drop a claimed run that never started. Returns False if it had started."""

    @abstractmethod
    async def acquire_lease(self, video_id: str, owner: str, ttl_seconds: float) -> bool:
        """Take the execution lease of an active run. Returns False if another owner holds it."""

    @abstractmethod
    async def renew_lease(self, video_id: str, owner: str, ttl_seconds: float) -> bool:
        """Extend a lease held by ``owner``. Returns False if it was lost."""

    @abstractmethod
    async def release_lease(self, video_id: str, owner: str) -> None:
        ...


class RunStoreService(RunStore):
    """SQLAlchemy-backed run store; one short transaction per call."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def claim(self, request: StartRunRequest) -> tuple[RunRecord, bool]:
        async with self.session_factory() as session:
            async with session.begin():
                repo = PipelineRunRepository(session)
                created = await repo.insert_if_missing(request)
                run = await repo.get_by_video_id(request.video_id)
                return RunRecord.model_validate(run), created

    async def get(self, video_id: str) -> Optional[RunRecord]:
        async with self.session_factory() as session:
            run = await PipelineRunRepository(session).get_by_video_id(video_id)
            return RunRecord.model_validate(run) if run else None

    async def save(self, run: RunRecord) -> None:
        values = run.model_dump(include=set(PROGRESS_FIELDS))
        values["status"] = run.status.value
        async with self.session_factory() as session:
            async with session.begin():
                await PipelineRunRepository(session).update_progress(run.video_id, values)

    async def request_cancel(self, video_id: str) -> bool:
        async with self.session_factory() as session:
            async with session.begin():
                return await PipelineRunRepository(session).request_cancel(video_id)

    async def release(self, video_id: str) -> bool:
        async with self.session_factory() as session:
            async with session.begin():
                return await PipelineRunRepository(session).delete_unstarted(video_id)

    async def acquire_lease(self, video_id: str, owner: str, ttl_seconds: float) -> bool:
        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            async with session.begin():
                return await PipelineRunRepository(session).acquire_lease(
                    video_id, owner, now, now + timedelta(seconds=ttl_seconds)
                )

    async def renew_lease(self, video_id: str, owner: str, ttl_seconds: float) -> bool:
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
        async with self.session_factory() as session:
            async with session.begin():
                return await PipelineRunRepository(session).renew_lease(video_id, owner, expires_at)

    async def release_lease(self, video_id: str, owner: str) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await PipelineRunRepository(session).release_lease(video_id, owner)
