"""Offline Whisper transcription - log-mel front end, cached decode loop, chunk scheduler."""

from whisper_loop.pipeline import ChunkScheduler, TranscriptionOptions
from whisper_loop.service import TranscriptionService

__all__ = ["ChunkScheduler", "TranscriptionOptions", "TranscriptionService"]
