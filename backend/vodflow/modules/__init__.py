"""Application modules.

- catalog: Video and rendition records
- transcoding: ABR ladder transcode engine
- pipeline: Transcoding pipeline orchestrator
- streaming: Streaming cache gateway
"""
