"""Chunk scheduling: ties the front end, encoder and decode loop together."""

from whisper_loop.pipeline.chunk_scheduler import ChunkScheduler, TranscriptionOptions

__all__ = ["ChunkScheduler", "TranscriptionOptions"]
