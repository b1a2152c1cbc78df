"""Tests for the streaming cache gateway.

**Property: A manifest or segment is served from cache when present and
otherwise redirected to a signed URL; a cache outage never fails a read.**
"""

import asyncio
from urllib.parse import parse_qs, urlparse

import pytest
from hypothesis import given, settings, strategies as st

from conftest import FakeCatalog, FakeRedis, FakeStorage
from vodflow.core.storage import SigningError, Storage, StorageConfig
from vodflow.modules.catalog.models import ProcessingState, StreamFormat
from vodflow.modules.catalog.schemas import RenditionDescriptor, VideoCreate
from vodflow.modules.streaming.cache import SegmentCache, cache_key
from vodflow.modules.streaming.schemas import RedirectTarget, ServedFile
from vodflow.modules.streaming.service import (
    InvalidStreamRequestError,
    StreamingGateway,
    VideoNotFoundError,
)

SEGMENT_KEY = "videos/vid-1/hls/vid-1_v0_000.ts"


def make_gateway(catalog, storage, redis) -> StreamingGateway:
    return StreamingGateway(
        catalog=catalog,
        storage=storage,
        cache=SegmentCache(redis, ttl_seconds=3600),
        segment_url_ttl=3600,
        master_url_ttl=86400,
        reference_resolution="1920x1080",
    )


async def add_video(
    catalog,
    video_id: str = "vid-1",
    resolutions=("1920x1080", "1280x720"),
    state: ProcessingState = ProcessingState.COMPLETED,
) -> None:
    await catalog.create_video_if_missing(
        VideoCreate(
            id=video_id,
            title=f"title {video_id}",
            original_name="movie.mp4",
            original_path=f"uploads/{video_id}/movie.mp4",
            content_type="video/mp4",
            size=2048,
        )
    )
    for index, resolution in enumerate(resolutions):
        await catalog.upsert_stream(
            RenditionDescriptor(
                id=f"{video_id}-v{index}",
                video_id=video_id,
                resolution=resolution,
                bitrate="5000k",
                format=StreamFormat.HLS,
                path=f"videos/{video_id}/hls/{video_id}_v{index}.m3u8",
                size=4096,
                segment_size=10,
            )
        )
    await catalog.update_status(video_id, state, "publish failed" if state == ProcessingState.ERROR else None)


class TestManifestOrSegment:
    @pytest.mark.asyncio
    async def test_cache_hit_served_inline(self, catalog, storage, fake_redis) -> None:
        fake_redis.data[cache_key("hls", SEGMENT_KEY)] = b"\x47" * 188
        gateway = make_gateway(catalog, storage, fake_redis)

        result = await gateway.get_manifest_or_segment("vid-1", "hls", "vid-1_v0_000.ts")

        assert result == ServedFile(content=b"\x47" * 188, content_type="video/MP2T")
        assert storage.signed == []

    @pytest.mark.asyncio
    async def test_cached_playlist_content_type(self, catalog, storage, fake_redis) -> None:
        fake_redis.data[cache_key("hls", "videos/vid-1/hls/master.m3u8")] = b"#EXTM3U\n"
        gateway = make_gateway(catalog, storage, fake_redis)

        result = await gateway.get_manifest_or_segment("vid-1", "hls", "master.m3u8")

        assert result.content_type == "application/x-mpegURL"

    @pytest.mark.asyncio
    async def test_cache_miss_redirects_to_signed_url(self, catalog, storage, fake_redis) -> None:
        gateway = make_gateway(catalog, storage, fake_redis)

        result = await gateway.get_manifest_or_segment("vid-1", "hls", "vid-1_v0_000.ts")

        assert isinstance(result, RedirectTarget)
        assert result.expires_in == 3600
        assert storage.signed == [(SEGMENT_KEY, 3600)]

    @pytest.mark.asyncio
    async def test_cache_outage_falls_through(self, catalog, storage, fake_redis) -> None:
        fake_redis.broken = True
        gateway = make_gateway(catalog, storage, fake_redis)

        result = await gateway.get_manifest_or_segment("vid-1", "hls", "vid-1_v0_000.ts")

        assert isinstance(result, RedirectTarget)

    @pytest.mark.asyncio
    async def test_signing_failure_propagates(self, catalog, storage, fake_redis) -> None:
        storage.sign_error = True
        gateway = make_gateway(catalog, storage, fake_redis)

        with pytest.raises(SigningError):
            await gateway.get_manifest_or_segment("vid-1", "hls", "vid-1_v0_000.ts")

    @pytest.mark.asyncio
    async def test_s3_signed_url_carries_expiry(self, catalog, fake_redis) -> None:
        storage = Storage(
            StorageConfig(
                backend="minio",
                bucket="videos",
                access_key="minio-access",
                secret_key="minio-secret",
                endpoint_url="http://minio:9000",
                use_ssl=False,
            )
        )
        gateway = make_gateway(catalog, storage, fake_redis)

        result = await gateway.get_manifest_or_segment("vid-1", "hls", "vid-1_v0_000.ts")

        url = urlparse(result.url)
        assert f"{url.scheme}://{url.netloc}" == "http://minio:9000"
        assert url.path == f"/videos/{SEGMENT_KEY}"
        assert parse_qs(url.query)["X-Amz-Expires"] == ["3600"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "video_id,stream_format,filename",
        [
            ("vid-1", "mp4", "vid-1_v0_000.ts"),
            ("vid-1", "hls", "..secret"),
            ("vid-1", "hls", "a\\b.ts"),
            ("..", "hls", "master.m3u8"),
            ("vid-1", "hls", ""),
        ],
    )
    async def test_invalid_requests_rejected(
        self, catalog, storage, fake_redis, video_id, stream_format, filename
    ) -> None:
        gateway = make_gateway(catalog, storage, fake_redis)
        with pytest.raises(InvalidStreamRequestError):
            await gateway.get_manifest_or_segment(video_id, stream_format, filename)
        assert storage.signed == []


class TestVideoDetail:
    @pytest.mark.asyncio
    async def test_detail_with_reference_resolution(self, catalog, storage, fake_redis) -> None:
        await add_video(catalog)
        gateway = make_gateway(catalog, storage, fake_redis)

        detail = await gateway.get_video_detail("vid-1")

        assert detail.status == ProcessingState.COMPLETED
        assert detail.formats == ["hls"]
        assert [r.resolution for r in detail.renditions] == ["1920x1080", "1280x720"]
        assert detail.master_manifest_urls == {
            "hls": "https://objects.test/videos/vid-1/hls/master.m3u8?expires_in=86400"
        }

    @pytest.mark.asyncio
    async def test_no_master_url_without_reference_resolution(self, catalog, storage, fake_redis) -> None:
        await add_video(catalog, resolutions=("1280x720", "854x480"))
        gateway = make_gateway(catalog, storage, fake_redis)

        detail = await gateway.get_video_detail("vid-1")

        assert detail.formats == ["hls"]
        assert detail.master_manifest_urls == {}

    @pytest.mark.asyncio
    async def test_signing_failure_omits_master_url(self, catalog, storage, fake_redis) -> None:
        await add_video(catalog)
        storage.sign_error = True
        gateway = make_gateway(catalog, storage, fake_redis)

        detail = await gateway.get_video_detail("vid-1")

        assert detail.master_manifest_urls == {}
        assert len(detail.renditions) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", [ProcessingState.ERROR, ProcessingState.TRANSCODING])
    async def test_unfinished_video_gets_no_master_url(self, catalog, storage, fake_redis, state) -> None:
        await add_video(catalog, state=state)
        gateway = make_gateway(catalog, storage, fake_redis)

        detail = await gateway.get_video_detail("vid-1")

        assert detail.status == state
        assert detail.master_manifest_urls == {}
        assert [r.resolution for r in detail.renditions] == ["1920x1080", "1280x720"]
        assert storage.signed == []

    @pytest.mark.asyncio
    async def test_unknown_video(self, catalog, storage, fake_redis) -> None:
        gateway = make_gateway(catalog, storage, fake_redis)
        with pytest.raises(VideoNotFoundError):
            await gateway.get_video_detail("missing")


class TestListVideos:
    @pytest.mark.asyncio
    async def test_empty_catalog(self, catalog, storage, fake_redis) -> None:
        gateway = make_gateway(catalog, storage, fake_redis)

        listing = await gateway.list_videos()

        assert listing.model_dump() == {"videos": [], "pagination": {"limit": 10, "offset": 0}}

    @pytest.mark.asyncio
    async def test_newest_first(self, catalog, storage, fake_redis) -> None:
        for video_id in ("vid-1", "vid-2", "vid-3"):
            await add_video(catalog, video_id)
        gateway = make_gateway(catalog, storage, fake_redis)

        listing = await gateway.list_videos(limit=2, offset=0)

        assert [v.id for v in listing.videos] == ["vid-3", "vid-2"]

    @given(limit=st.integers(min_value=-1000, max_value=1000), offset=st.integers(min_value=-50, max_value=50))
    @settings(max_examples=100)
    def test_pagination_is_clamped(self, limit: int, offset: int) -> None:
        gateway = make_gateway(FakeCatalog(), FakeStorage(), FakeRedis())
        listing = asyncio.run(gateway.list_videos(limit=limit, offset=offset))

        assert 1 <= listing.pagination.limit <= 100
        assert listing.pagination.offset >= 0
        if 1 <= limit <= 100:
            assert listing.pagination.limit == limit
