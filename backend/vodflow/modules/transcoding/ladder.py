"""ABR ladder definition and validation.

The ladder is configured, never inferred from the source. Upscaling is
allowed: a 1080p rung is produced even for a 720p upload.
"""

import re
from dataclasses import dataclass
from typing import Iterable, Optional

from vodflow.core.config import LadderEntrySetting, settings


class InvalidLadderError(ValueError):
    """Raised when the configured ladder cannot be encoded."""


_BITRATE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kKmM]?)\s*$")
_MULTIPLIERS = {"": 1, "k": 1_000, "m": 1_000_000}


def parse_bitrate(label: str) -> int:
    """Convert an ffmpeg bitrate label to bits per second.

    "5000k" -> 5000000, "5M" -> 5000000, "800000" -> 800000.
    """
    match = _BITRATE_PATTERN.match(label or "")
    if not match:
        raise InvalidLadderError(f"unparseable bitrate label: {label!r}")
    value, suffix = match.groups()
    bps = int(float(value) * _MULTIPLIERS[suffix.lower()])
    if bps <= 0:
        raise InvalidLadderError(f"bitrate must be positive: {label!r}")
    return bps


@dataclass(frozen=True)
class LadderEntry:
    """One rendition of the ladder."""
    width: int
    height: int
    bitrate: str

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"

    @property
    def bandwidth(self) -> int:
        """Peak bandwidth advertised in the master manifest, in bps."""
        return parse_bitrate(self.bitrate)


def validate_ladder(entries: Iterable[LadderEntry]) -> list[LadderEntry]:
    """Validate a ladder and return it as a list, preserving order.

    Raises:
        InvalidLadderError: empty ladder, non-positive dimensions,
            unparseable bitrate or duplicate resolution
    """
    ladder = list(entries)
    if not ladder:
        raise InvalidLadderError("ladder must contain at least one rendition")

    seen: set[str] = set()
    for entry in ladder:
        if entry.width <= 0 or entry.height <= 0:
            raise InvalidLadderError(f"invalid dimensions {entry.resolution}")
        parse_bitrate(entry.bitrate)
        if entry.resolution in seen:
            raise InvalidLadderError(f"duplicate resolution {entry.resolution}")
        seen.add(entry.resolution)
    return ladder


def ladder_from_settings(
    configured: Optional[list[LadderEntrySetting]] = None,
) -> list[LadderEntry]:
    """Build the validated ladder from TRANSCODE_LADDER."""
    configured = settings.TRANSCODE_LADDER if configured is None else configured
    return validate_ladder(
        LadderEntry(width=e.width, height=e.height, bitrate=e.bitrate) for e in configured
    )
