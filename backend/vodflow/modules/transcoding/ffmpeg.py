"""FFmpeg codec runner.

Produces every rendition of the ladder in a single ffmpeg invocation (one
demux, N encodes) and reads technical metadata with ffprobe. Processes are
killed when the awaiting task is cancelled, which is how stage timeouts
and run cancellation reach the external tool.
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from typing import Optional, Sequence

from vodflow.core.config import settings
from vodflow.modules.transcoding.ladder import LadderEntry

logger = logging.getLogger(__name__)

# Diagnostics that will not change on retry.
PERMANENT_FAILURE_PATTERNS = (
    "matches no streams",
    "Invalid data found when processing input",
    "Unknown encoder",
    "Encoder not found",
    "No such file or directory",
)

STDERR_TAIL_CHARS = 2000


class TranscodeError(Exception):
    """Raised when the codec tool fails.

    ``permanent`` is set for diagnostics that retrying cannot fix.
    """

    def __init__(self, message: str, permanent: bool = False, stderr: str = ""):
        super().__init__(message)
        self.permanent = permanent
        self.stderr = stderr


@dataclass
class CodecResult:
    """Outcome of one codec tool invocation."""
    exit_status: int
    stdout: str
    stderr: str

    @property
    def succeeded(self) -> bool:
        return self.exit_status == 0

    @property
    def killed_by_signal(self) -> bool:
        return self.exit_status < 0

    def stderr_tail(self, limit: int = STDERR_TAIL_CHARS) -> str:
        return self.stderr[-limit:].strip()


@dataclass
class MediaInfo:
    """Technical metadata of a media file."""
    duration: float
    has_video: bool
    has_audio: bool
    width: int = 0
    height: int = 0
    format_name: str = ""


def variant_name(base_name: str, index: int) -> str:
    return f"{base_name}_v{index}"


def classify_failure(result: CodecResult, tool: str = "ffmpeg") -> TranscodeError:
    """Turn a failed invocation into a TranscodeError.

    A kill by signal is transient; known diagnostics in stderr are permanent;
    anything else is treated as transient.
    """
    tail = result.stderr_tail()
    if result.killed_by_signal:
        return TranscodeError(
            f"{tool} killed by signal {-result.exit_status}", permanent=False, stderr=result.stderr
        )
    permanent = any(pattern in result.stderr for pattern in PERMANENT_FAILURE_PATTERNS)
    return TranscodeError(
        f"{tool} exited with status {result.exit_status}: {tail}",
        permanent=permanent,
        stderr=result.stderr,
    )


class FFmpegRunner:
    """Async wrapper around the ffmpeg and ffprobe binaries."""

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        ffprobe_path: Optional[str] = None,
        preset: Optional[str] = None,
        threads: Optional[int] = None,
        segment_seconds: Optional[int] = None,
        audio_bitrate: Optional[str] = None,
    ):
        self.ffmpeg_path = ffmpeg_path or settings.FFMPEG_PATH
        self.ffprobe_path = ffprobe_path or settings.FFPROBE_PATH
        self.preset = preset or settings.FFMPEG_PRESET
        self.threads = settings.FFMPEG_THREADS if threads is None else threads
        self.segment_seconds = segment_seconds or settings.HLS_SEGMENT_SECONDS
        self.audio_bitrate = audio_bitrate or settings.AUDIO_BITRATE

    def build_hls_command(
        self,
        input_path: str,
        output_dir: str,
        ladder: Sequence[LadderEntry],
        base_name: str,
    ) -> list[str]:
        """Build one ffmpeg command producing an HLS rendition per ladder entry.

        Args:
            input_path: Local source file
            output_dir: Directory receiving playlists and segments
            ladder: Renditions, in manifest order
            base_name: Prefix of every variant name (the video id)

        Returns:
            FFmpeg command as list of arguments
        """
        cmd = [self.ffmpeg_path, "-y", "-hide_banner", "-i", input_path]

        for index, entry in enumerate(ladder):
            name = variant_name(base_name, index)
            cmd.extend([
                "-map", "0:v:0",
                "-map", "0:a:0",
                # Video
                "-c:v", "libx264",
                "-preset", self.preset,
                "-b:v", entry.bitrate,
                "-s", entry.resolution,
            ])
            if self.threads > 0:
                cmd.extend(["-threads", str(self.threads)])
            cmd.extend([
                # Audio
                "-c:a", "aac",
                "-b:a", self.audio_bitrate,
                # Packaging
                "-f", "hls",
                "-hls_time", str(self.segment_seconds),
                "-hls_list_size", "0",
                "-hls_playlist_type", "vod",
                "-hls_segment_filename", os.path.join(output_dir, f"{name}_%03d.ts"),
                os.path.join(output_dir, f"{name}.m3u8"),
            ])

        return cmd

    def build_probe_command(self, input_path: str) -> list[str]:
        return [
            self.ffprobe_path,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            input_path,
        ]

    async def _execute(self, cmd: list[str]) -> CodecResult:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                logger.warning("Killing codec process", extra={"pid": process.pid, "tool": cmd[0]})
                process.kill()
                await process.wait()
            raise

        return CodecResult(
            exit_status=process.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    async def run(
        self,
        input_path: str,
        output_dir: str,
        ladder: Sequence[LadderEntry],
        base_name: str,
    ) -> CodecResult:
        """Run the whole ladder encode. The caller inspects exit_status."""
        os.makedirs(output_dir, exist_ok=True)
        cmd = self.build_hls_command(input_path, output_dir, ladder, base_name)
        logger.info(
            "Starting ffmpeg",
            extra={"input_path": input_path, "output_dir": output_dir, "variants": len(ladder)},
        )
        result = await self._execute(cmd)
        if not result.succeeded:
            logger.error(
                "ffmpeg failed",
                extra={"exit_status": result.exit_status, "stderr": result.stderr},
            )
        return result

    async def probe(self, input_path: str) -> MediaInfo:
        """Read duration and stream layout with ffprobe.

        Raises:
            TranscodeError: ffprobe failed or produced unreadable output
        """
        result = await self._execute(self.build_probe_command(input_path))
        if not result.succeeded:
            raise classify_failure(result, tool="ffprobe")
        try:
            info = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise TranscodeError(f"ffprobe returned invalid JSON: {e}") from e
        return parse_probe_output(info)


def parse_probe_output(info: dict) -> MediaInfo:
    """Extract MediaInfo from ffprobe's JSON document."""
    streams = info.get("streams", [])
    fmt = info.get("format", {})

    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    has_audio = any(s.get("codec_type") == "audio" for s in streams)

    try:
        duration = float(fmt.get("duration") or 0)
    except (TypeError, ValueError):
        duration = 0.0

    return MediaInfo(
        duration=duration,
        has_video=video is not None,
        has_audio=has_audio,
        width=int(video.get("width", 0)) if video else 0,
        height=int(video.get("height", 0)) if video else 0,
        format_name=fmt.get("format_name", ""),
    )
