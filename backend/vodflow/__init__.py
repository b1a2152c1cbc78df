"""vodflow backend application.

Ingested videos are transcoded into adaptive-bitrate HLS and served to
players through a cache-accelerated gateway.

Modules:
    - core: Configuration, database, Redis, Celery, storage, logging, tracing, metrics
    - modules.catalog: Videos and their renditions
    - modules.transcoding: ABR ladder, ffmpeg runner and transcode engine
    - modules.pipeline: Transcoding run orchestration
    - modules.streaming: Manifest/segment delivery, video detail and listing
"""

__version__ = "0.1.0"
