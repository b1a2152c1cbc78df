"""Streaming cache gateway module."""

from vodflow.modules.streaming.cache import SegmentCache, cache_key
from vodflow.modules.streaming.schemas import (
    Pagination,
    RedirectTarget,
    RenditionResponse,
    ServedFile,
    VideoDetailResponse,
    VideoListResponse,
    VideoSummary,
)
from vodflow.modules.streaming.service import (
    InvalidStreamRequestError,
    StreamingGateway,
    StreamingGatewayError,
    VideoNotFoundError,
)

__all__ = [
    "SegmentCache",
    "cache_key",
    "Pagination",
    "RedirectTarget",
    "RenditionResponse",
    "ServedFile",
    "VideoDetailResponse",
    "VideoListResponse",
    "VideoSummary",
    "InvalidStreamRequestError",
    "StreamingGateway",
    "StreamingGatewayError",
    "VideoNotFoundError",
]
