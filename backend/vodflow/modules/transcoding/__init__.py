"""ABR ladder transcoding module."""

from vodflow.modules.transcoding.engine import (
    MASTER_MANIFEST_NAME,
    TranscodeEngine,
    build_master_manifest,
    object_key,
)
from vodflow.modules.transcoding.ffmpeg import (
    CodecResult,
    FFmpegRunner,
    MediaInfo,
    TranscodeError,
    classify_failure,
)
from vodflow.modules.transcoding.ladder import (
    InvalidLadderError,
    LadderEntry,
    ladder_from_settings,
    parse_bitrate,
    validate_ladder,
)

__all__ = [
    "MASTER_MANIFEST_NAME",
    "TranscodeEngine",
    "build_master_manifest",
    "object_key",
    "CodecResult",
    "FFmpegRunner",
    "MediaInfo",
    "TranscodeError",
    "classify_failure",
    "InvalidLadderError",
    "LadderEntry",
    "ladder_from_settings",
    "parse_bitrate",
    "validate_ladder",
]
