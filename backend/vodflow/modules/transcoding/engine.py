"""ABR ladder transcode engine.

Encodes the whole ladder with one codec invocation, writes the master
manifest and publishes the renditions: objects first, master manifest last,
catalog rows only after every object is in place.
"""

import asyncio
import logging
import os
from typing import Optional, Sequence

from vodflow.core.config import settings
from vodflow.core.storage import Storage, StorageError, guess_content_type
from vodflow.modules.catalog.models import StreamFormat
from vodflow.modules.catalog.schemas import RenditionDescriptor
from vodflow.modules.catalog.service import CatalogStore
from vodflow.modules.streaming.cache import SegmentCache
from vodflow.modules.transcoding.ffmpeg import (
    FFmpegRunner,
    TranscodeError,
    classify_failure,
    variant_name,
)
from vodflow.modules.transcoding.ladder import LadderEntry, ladder_from_settings, validate_ladder

logger = logging.getLogger(__name__)

MASTER_MANIFEST_NAME = "master.m3u8"


def object_prefix(video_id: str, stream_format: StreamFormat = StreamFormat.HLS) -> str:
    return f"videos/{video_id}/{stream_format.value}"


def object_key(video_id: str, filename: str, stream_format: StreamFormat = StreamFormat.HLS) -> str:
    return f"{object_prefix(video_id, stream_format)}/{filename}"


def build_master_manifest(ladder: Sequence[LadderEntry], base_name: str) -> str:
    """Master playlist listing every variant in ladder order."""
    lines = ["#EXTM3U", "#EXT-X-VERSION:3"]
    for index, entry in enumerate(ladder):
        lines.append(
            f"#EXT-X-STREAM-INF:BANDWIDTH={entry.bandwidth},RESOLUTION={entry.resolution}"
        )
        lines.append(f"{variant_name(base_name, index)}.m3u8")
    return "\n".join(lines) + "\n"


def _write_text(path: str, content: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)


def _read_bytes(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def variant_files(output_dir: str, base_name: str, index: int) -> tuple[str, list[str]]:
    """Playlist path and sorted segment paths of one variant.

    Raises:
        TranscodeError: the variant playlist is missing
    """
    name = variant_name(base_name, index)
    playlist = os.path.join(output_dir, f"{name}.m3u8")
    if not os.path.isfile(playlist):
        raise TranscodeError(f"missing playlist {os.path.basename(playlist)} in {output_dir}")
    prefix = f"{name}_"
    segments = sorted(
        os.path.join(output_dir, f)
        for f in os.listdir(output_dir)
        if f.startswith(prefix) and f.endswith(".ts")
    )
    return playlist, segments


class TranscodeEngine:
    """Turns one source file into published HLS renditions."""

    def __init__(
        self,
        runner: FFmpegRunner,
        storage: Storage,
        catalog: CatalogStore,
        cache: Optional[SegmentCache] = None,
        ladder: Optional[Sequence[LadderEntry]] = None,
        segment_seconds: Optional[int] = None,
        warm_cache: Optional[bool] = None,
    ):
        self.runner = runner
        self.storage = storage
        self.catalog = catalog
        self.cache = cache
        self._ladder = list(ladder) if ladder is not None else None
        self.segment_seconds = segment_seconds or settings.HLS_SEGMENT_SECONDS
        self.warm_cache = settings.CACHE_WARM_PLAYLISTS if warm_cache is None else warm_cache

    @property
    def ladder(self) -> list[LadderEntry]:
        """The validated ladder. Raises InvalidLadderError."""
        if self._ladder is None:
            return ladder_from_settings()
        return validate_ladder(self._ladder)

    async def encode(self, input_path: str, output_dir: str, video_id: str) -> str:
        """Run the ladder encode and write the master manifest.

        Returns:
            Path of the master manifest

        Raises:
            InvalidLadderError: the ladder is not encodable
            TranscodeError: the codec tool failed
        """
        ladder = self.ladder
        result = await self.runner.run(input_path, output_dir, ladder, video_id)
        if not result.succeeded:
            raise classify_failure(result)

        master_path = os.path.join(output_dir, MASTER_MANIFEST_NAME)
        await asyncio.to_thread(_write_text, master_path, build_master_manifest(ladder, video_id))
        return master_path

    async def _upload(self, local_path: str, key: str) -> int:
        result = await asyncio.to_thread(
            self.storage.upload, local_path, key, guess_content_type(local_path)
        )
        if not result.success:
            raise StorageError(f"upload of {key} failed: {result.error_message}")
        return result.file_size

    async def publish(self, video_id: str, output_dir: str) -> list[RenditionDescriptor]:
        """Upload every variant, then the master manifest, then upsert renditions.

        Safe to repeat: uploads overwrite and renditions are upserted on
        (video_id, resolution, format).
        """
        ladder = self.ladder
        renditions: list[RenditionDescriptor] = []
        playlists: list[tuple[str, str]] = []

        for index, entry in enumerate(ladder):
            playlist, segments = variant_files(output_dir, video_id, index)
            size = 0
            for segment in segments:
                size += await self._upload(segment, object_key(video_id, os.path.basename(segment)))
            playlist_key = object_key(video_id, os.path.basename(playlist))
            size += await self._upload(playlist, playlist_key)
            playlists.append((playlist, playlist_key))

            renditions.append(
                RenditionDescriptor(
                    id=f"{video_id}-v{index}",
                    video_id=video_id,
                    resolution=entry.resolution,
                    bitrate=entry.bitrate,
                    format=StreamFormat.HLS,
                    path=playlist_key,
                    size=size,
                    segment_size=self.segment_seconds,
                )
            )

        master_path = os.path.join(output_dir, MASTER_MANIFEST_NAME)
        if not os.path.isfile(master_path):
            raise TranscodeError(f"missing {MASTER_MANIFEST_NAME} in {output_dir}")
        master_key = object_key(video_id, MASTER_MANIFEST_NAME)
        await self._upload(master_path, master_key)
        playlists.append((master_path, master_key))

        for rendition in renditions:
            await self.catalog.upsert_stream(rendition)

        if self.warm_cache and self.cache is not None:
            for local_path, key in playlists:
                content = await asyncio.to_thread(_read_bytes, local_path)
                await self.cache.set(StreamFormat.HLS.value, key, content)

        logger.info(
            "Published renditions",
            extra={"video_id": video_id, "renditions": len(renditions), "master_key": master_key},
        )
        return renditions
