"""Catalog of videos and their transcoded streams."""

from vodflow.modules.catalog.models import (
    ProcessingState,
    StreamFormat,
    Video,
    VideoStream,
    allowed_predecessors,
    can_transition,
)
from vodflow.modules.catalog.schemas import (
    RenditionDescriptor,
    RenditionRecord,
    VideoCreate,
    VideoRecord,
)
from vodflow.modules.catalog.service import (
    CatalogService,
    CatalogStore,
    InvalidTransitionError,
)

__all__ = [
    "ProcessingState",
    "StreamFormat",
    "Video",
    "VideoStream",
    "allowed_predecessors",
    "can_transition",
    "RenditionDescriptor",
    "RenditionRecord",
    "VideoCreate",
    "VideoRecord",
    "CatalogService",
    "CatalogStore",
    "InvalidTransitionError",
]
