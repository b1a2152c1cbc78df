"""Shared fakes for the external capabilities: object store, catalog, codec
runner, run store and Redis."""

import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from vodflow.core.storage import SigningError, StorageError, StorageResult
from vodflow.modules.catalog.models import ProcessingState, can_transition
from vodflow.modules.catalog.schemas import (
    RenditionDescriptor,
    RenditionRecord,
    VideoCreate,
    VideoRecord,
)
from vodflow.modules.catalog.service import CatalogStore, InvalidTransitionError
from vodflow.modules.pipeline.repository import RunStore
from vodflow.modules.pipeline.retry import RetryConfig, StagePolicy, STATUS_POLICY
from vodflow.modules.pipeline.schemas import RunRecord, StartRunRequest
from vodflow.modules.transcoding.ffmpeg import CodecResult, MediaInfo, variant_name


class FakeStorage:
    """In-memory object store recording the order of writes."""

    def __init__(self, events: Optional[list] = None):
        self.objects: dict[str, bytes] = {}
        self.events = events if events is not None else []
        self.download_failures = 0
        self.sign_error = False
        self.signed: list[tuple[str, int]] = []

    def upload(self, file_path: str, key: str, content_type: Optional[str] = None) -> StorageResult:
        with open(file_path, "rb") as f:
            data = f.read()
        self.objects[key] = data
        self.events.append(("upload", key))
        return StorageResult(success=True, key=key, file_size=len(data))

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> StorageResult:
        self.objects[key] = data
        self.events.append(("upload", key))
        return StorageResult(success=True, key=key, file_size=len(data))

    def get(self, key: str) -> bytes:
        if key not in self.objects:
            raise StorageError(f"object not found: {key}")
        return self.objects[key]

    def download(self, key: str, destination: str) -> None:
        if self.download_failures > 0:
            self.download_failures -= 1
            raise StorageError("connection reset by peer")
        data = self.get(key)
        os.makedirs(os.path.dirname(destination), exist_ok=True)
        with open(destination, "wb") as f:
            f.write(data)

    def delete(self, key: str) -> bool:
        return self.objects.pop(key, None) is not None

    def exists(self, key: str) -> bool:
        return key in self.objects

    def sign(self, key: str, expires_in: int = 3600) -> str:
        if self.sign_error:
            raise SigningError(f"failed to sign {key}")
        self.signed.append((key, expires_in))
        return f"https://objects.test/{key}?expires_in={expires_in}"

    def list_files(self, prefix: str = "") -> list[str]:
        return [k for k in self.objects if k.startswith(prefix)]


class FakeCatalog(CatalogStore):
    """In-memory catalog enforcing forward-only transitions and the
    (video_id, resolution, format) natural key."""

    def __init__(self, events: Optional[list] = None):
        self.videos: dict[str, VideoRecord] = {}
        self.streams: dict[tuple[str, str, str], RenditionRecord] = {}
        self.history: dict[str, list[ProcessingState]] = {}
        self.events = events if events is not None else []
        self.status_failures = 0
        self._clock = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def _now(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    async def create_video_if_missing(self, data: VideoCreate) -> VideoRecord:
        if data.id not in self.videos:
            now = self._now()
            self.videos[data.id] = VideoRecord(
                **data.model_dump(),
                processing_state=ProcessingState.RECEIVED,
                created_at=now,
                updated_at=now,
            )
            self.history[data.id] = [ProcessingState.RECEIVED]
        return self.videos[data.id]

    async def get_video(self, video_id: str) -> Optional[VideoRecord]:
        return self.videos.get(video_id)

    async def update_status(self, video_id, target, error_message=None) -> None:
        if self.status_failures > 0:
            self.status_failures -= 1
            raise OSError("database unavailable")
        video = self.videos.get(video_id)
        if video is None:
            raise InvalidTransitionError(video_id, target)
        if not can_transition(video.processing_state, target):
            raise InvalidTransitionError(video_id, target, video.processing_state)
        update = {"processing_state": target, "updated_at": self._now()}
        if target == ProcessingState.ERROR:
            update["error_message"] = error_message
        self.videos[video_id] = video.model_copy(update=update)
        if self.history[video_id][-1] != target:
            self.history[video_id].append(target)

    async def update_media_info(self, video_id, size=None, duration=None) -> None:
        video = self.videos[video_id]
        update = {}
        if size is not None:
            update["size"] = size
        if duration is not None:
            update["duration"] = duration
        self.videos[video_id] = video.model_copy(update=update)

    async def upsert_stream(self, rendition: RenditionDescriptor) -> None:
        key = (rendition.video_id, rendition.resolution, rendition.format.value)
        created_at = self.streams[key].created_at if key in self.streams else self._now()
        self.streams[key] = RenditionRecord(**rendition.model_dump(), created_at=created_at)
        self.events.append(("upsert", rendition.id))

    async def get_streams(self, video_id: str) -> list[RenditionRecord]:
        streams = [s for s in self.streams.values() if s.video_id == video_id]
        return sorted(streams, key=lambda s: (s.created_at, s.id))

    async def list_videos(self, limit: int, offset: int) -> list[VideoRecord]:
        ordered = sorted(self.videos.values(), key=lambda v: v.created_at, reverse=True)
        return ordered[offset:offset + limit]


class FakeRunStore(RunStore):
    """In-memory run store keeping detached copies."""

    def __init__(self):
        self.runs: dict[str, RunRecord] = {}
        self.saves = 0

    async def claim(self, request: StartRunRequest) -> tuple[RunRecord, bool]:
        if request.video_id in self.runs:
            return self.runs[request.video_id].model_copy(deep=True), False
        run = RunRecord(**request.model_dump())
        self.runs[request.video_id] = run
        return run.model_copy(deep=True), True

    async def get(self, video_id: str) -> Optional[RunRecord]:
        run = self.runs.get(video_id)
        return run.model_copy(deep=True) if run else None

    async def save(self, run: RunRecord) -> None:
        self.saves += 1
        stored = self.runs[run.video_id]
        self.runs[run.video_id] = run.model_copy(
            deep=True,
            update={
                "cancel_requested": stored.cancel_requested,
                "lease_owner": stored.lease_owner,
                "lease_expires_at": stored.lease_expires_at,
            },
        )

    async def request_cancel(self, video_id: str) -> bool:
        run = self.runs.get(video_id)
        if run is None or run.status.is_terminal:
            return False
        self.runs[video_id] = run.model_copy(update={"cancel_requested": True})
        return True

    async def release(self, video_id: str) -> bool:
        run = self.runs.get(video_id)
        if run is None or run.status.is_terminal or run.current_stage or run.lease_owner:
            return False
        del self.runs[video_id]
        return True

    async def acquire_lease(self, video_id: str, owner: str, ttl_seconds: float) -> bool:
        run = self.runs.get(video_id)
        if run is None or run.status.is_terminal:
            return False
        now = datetime.now(timezone.utc)
        held = run.lease_owner not in (None, owner) and run.lease_expires_at and run.lease_expires_at >= now
        if held:
            return False
        self.runs[video_id] = run.model_copy(
            update={"lease_owner": owner, "lease_expires_at": now + timedelta(seconds=ttl_seconds)}
        )
        return True

    async def renew_lease(self, video_id: str, owner: str, ttl_seconds: float) -> bool:
        run = self.runs.get(video_id)
        if run is None or run.lease_owner != owner:
            return False
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
        self.runs[video_id] = run.model_copy(update={"lease_expires_at": expires_at})
        return True

    async def release_lease(self, video_id: str, owner: str) -> None:
        run = self.runs.get(video_id)
        if run is not None and run.lease_owner == owner:
            self.runs[video_id] = run.model_copy(update={"lease_owner": None, "lease_expires_at": None})


class FakeRunner:
    """Codec runner writing small playlists and segments instead of encoding.

    ``results`` is consumed one entry per run() call; an exhausted queue means
    success. ``hang`` makes run() block until cancelled; ``delay`` keeps each
    invocation busy for that many seconds. ``max_active`` records the highest
    number of overlapping invocations.
    """

    def __init__(self, media: Optional[MediaInfo] = None):
        self.media = media or MediaInfo(duration=42.5, has_video=True, has_audio=True, width=1920, height=1080)
        self.results: list[CodecResult] = []
        self.hang = False
        self.calls = 0
        self.cancelled = 0
        self.delay = 0.0
        self.active = 0
        self.max_active = 0

    async def probe(self, input_path: str) -> MediaInfo:
        return self.media

    async def run(self, input_path, output_dir, ladder, base_name) -> CodecResult:
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            return await self._run(output_dir, ladder, base_name)
        finally:
            self.active -= 1

    async def _run(self, output_dir, ladder, base_name) -> CodecResult:
        if self.hang:
            try:
                await asyncio.sleep(3600)
            except asyncio.CancelledError:
                self.cancelled += 1
                raise
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.results:
            result = self.results.pop(0)
            if result.exit_status != 0:
                return result
        for index, _entry in enumerate(ladder):
            name = variant_name(base_name, index)
            segments = [f"{name}_{n:03d}.ts" for n in range(2)]
            for segment in segments:
                with open(os.path.join(output_dir, segment), "wb") as f:
                    f.write(b"\x47" * 188)
            with open(os.path.join(output_dir, f"{name}.m3u8"), "w") as f:
                f.write("#EXTM3U\n#EXT-X-VERSION:3\n#EXT-X-TARGETDURATION:10\n")
                for segment in segments:
                    f.write(f"#EXTINF:10.0,\n{segment}\n")
                f.write("#EXT-X-ENDLIST\n")
        return CodecResult(exit_status=0, stdout="", stderr="")


class FakeRedis:
    """Minimal async Redis stand-in; ``broken`` makes every call fail."""

    def __init__(self):
        self.data: dict[str, bytes] = {}
        self.broken = False
        self.ttls: dict[str, Optional[int]] = {}

    async def get(self, key: str) -> Optional[bytes]:
        if self.broken:
            raise RedisConnectionError("connection refused")
        return self.data.get(key)

    async def set(self, key: str, value: bytes, ex: Optional[int] = None) -> bool:
        if self.broken:
            raise RedisConnectionError("connection refused")
        self.data[key] = value
        self.ttls[key] = ex
        return True


def fast_policies(timeout: float = 5.0, transcode_timeout: Optional[float] = None) -> dict[str, StagePolicy]:
    """Production-shaped policies with short timeouts for tests."""
    def stage() -> RetryConfig:
        return RetryConfig(max_attempts=3, initial_delay=60.0, max_delay=600.0, backoff_multiplier=2.0)

    return {
        STATUS_POLICY: StagePolicy(RetryConfig(max_attempts=5, initial_delay=1.0, max_delay=10.0), timeout),
        "download": StagePolicy(stage(), timeout),
        "analyze": StagePolicy(stage(), timeout),
        "transcode": StagePolicy(stage(), transcode_timeout or timeout),
        "publish": StagePolicy(stage(), timeout),
        "cleanup": StagePolicy(RetryConfig(max_attempts=3, initial_delay=1.0, max_delay=10.0), timeout),
    }


class RecordingSleep:
    """Replacement for asyncio.sleep recording requested backoff delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def events() -> list:
    return []


@pytest.fixture
def storage(events) -> FakeStorage:
    return FakeStorage(events)


@pytest.fixture
def catalog(events) -> FakeCatalog:
    return FakeCatalog(events)


@pytest.fixture
def run_store() -> FakeRunStore:
    return FakeRunStore()


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()
