"""Transcription service: model discovery, lifecycle, and transcription entry points.

Interface:
  service = TranscriptionService(["~/models/whisper"])
  if service.initialize():
      for fragment in service.transcribe_stream(audio, sample_rate=44100):
          print(fragment, end="", flush=True)
  service.deinitialize()
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional

import numpy as np

from whisper_loop.audio.features import LogMelExtractor
from whisper_loop.decoder.decode_loop import DecodingEngine, GuardConfig
from whisper_loop.decoder.token_policy import TokenPolicy
from whisper_loop.models.discovery import WhisperModelInfo, discover_models
from whisper_loop.models.onnx_model import WhisperOnnxModel, load_onnx_whisper
from whisper_loop.pipeline.chunk_scheduler import ChunkScheduler, TranscriptionOptions

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_DIRS = (Path("models"),)

ModelLoader = Callable[[WhisperModelInfo], WhisperOnnxModel]


class TranscriptionService:
    """Owns one loaded model and the scheduler built around it."""

    def __init__(
        self,
        search_dirs: Optional[Iterable[str | Path]] = None,
        loader: ModelLoader = load_onnx_whisper,
        policy: Optional[TokenPolicy] = None,
        guard_config: Optional[GuardConfig] = None,
    ):
        self.search_dirs: List[Path] = [Path(d).expanduser() for d in (search_dirs or DEFAULT_SEARCH_DIRS)]
        self.loader = loader
        self.policy = policy
        self.guard_config = guard_config
        self.available_models: List[WhisperModelInfo] = []
        self.current_model: Optional[WhisperModelInfo] = None
        self._scheduler: Optional[ChunkScheduler] = None
        self.discover()

    def discover(self) -> List[WhisperModelInfo]:
        self.available_models = discover_models(self.search_dirs)
        return self.available_models

    @property
    def is_initialized(self) -> bool:
        return self._scheduler is not None

    @property
    def scheduler(self) -> Optional[ChunkScheduler]:
        return self._scheduler

    @property
    def progress(self) -> Optional[float]:
        return self._scheduler.progress if self._scheduler is not None else None

    def initialize(self, model: Optional[WhisperModelInfo] = None) -> bool:
        """Load `model` (or the first discovered one). False when nothing could be loaded."""
        if model is None or not model.root.is_dir() or not model.encoder.is_file():
            if not self.available_models:
                self.discover()
            if not self.available_models:
                logger.warning("No Whisper model available in %s", [str(d) for d in self.search_dirs])
                return False
            model = self.available_models[0]

        self.deinitialize()
        try:
            loaded = self.loader(model)
            engine = DecodingEngine(
                loaded.decoder,
                loaded.tokenizer,
                loaded.token_map,
                policy=self.policy,
                guard_config=self.guard_config,
            )
            self._scheduler = ChunkScheduler(
                loaded.encoder, engine, LogMelExtractor(loaded.spectral_config)
            )
        except Exception:
            logger.error("Failed to initialize Whisper model '%s'", model.name, exc_info=True)
            self._scheduler = None
            return False
        self.current_model = model
        logger.info("Whisper model '%s' ready", model.name)
        return True

    def deinitialize(self) -> None:
        if self._scheduler is not None:
            self._scheduler.cancel()
        self._scheduler = None
        self.current_model = None

    def cancel(self) -> None:
        if self._scheduler is not None:
            self._scheduler.cancel()

    def transcribe_stream(
        self,
        audio: np.ndarray,
        sample_rate: Optional[int] = None,
        options: Optional[TranscriptionOptions] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Iterator[str]:
        """Fragment iterator; empty (and logged) when no model is loaded."""
        scheduler = self._scheduler
        if scheduler is None:
            logger.warning("Transcription requested but no Whisper model is initialized")
            return iter(())
        return scheduler.transcribe_stream(audio, sample_rate, options, cancel)

    def transcribe(
        self,
        audio: np.ndarray,
        sample_rate: Optional[int] = None,
        options: Optional[TranscriptionOptions] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Optional[str]:
        """Whole transcript, or None when no model is loaded."""
        scheduler = self._scheduler
        if scheduler is None:
            logger.warning("Transcription requested but no Whisper model is initialized")
            return None
        return scheduler.transcribe(audio, sample_rate, options, cancel)
