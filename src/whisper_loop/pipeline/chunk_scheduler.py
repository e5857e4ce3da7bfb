"""Offline chunk loop: audio -> 30 s windows -> mel -> encoder -> decode loop -> fragments.

Glue that wires the front end and decoding engine. Sessions are injected
(ONNX Runtime or anything with the same run() shape), so tests can drive the
whole loop with fakes.

Chunks do not overlap; the last one is zero-padded. Silent, NaN/Inf and
collapsed chunks are skipped; encoder/decoder failures end only the
current chunk.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Tuple

import numpy as np

from whisper_loop.audio.features import LogMelExtractor
from whisper_loop.audio.io import prepare_audio, to_mono
from whisper_loop.decoder.decode_loop import MAX_TOKENS, DecodeOptions, DecodingEngine
from whisper_loop.decoder.session import EncoderSchema, InferenceSession
from whisper_loop.postprocess import join_fragments

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


@dataclass
class TranscriptionOptions:
    """Options for one transcription request."""

    language: Optional[str] = None
    translate: bool = False
    timestamps: bool = False
    silence_rms: float = 0.001  # chunks below this RMS are skipped
    max_tokens: int = MAX_TOKENS

    def decode_options(self) -> DecodeOptions:
        return DecodeOptions(
            language=self.language,
            translate=self.translate,
            timestamps=self.timestamps,
            max_tokens=self.max_tokens,
        )


def chunk_rms(chunk: np.ndarray, length: int) -> float:
    """RMS over the first `length` (unpadded) samples."""
    if length <= 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(chunk[:length], dtype=np.float64))))


def mel_rejection_reason(mel: np.ndarray) -> Optional[str]:
    """Why a mel tensor must not reach the encoder, or None if it is usable."""
    if not np.isfinite(mel).all():
        return "mel tensor contains NaN/Inf"
    if abs(float(mel.max()) - float(mel.min())) < 1e-6:
        return "mel tensor collapsed (min == max)"
    return None


class ChunkScheduler:
    """Runs the whole transcription one chunk at a time, lazily.

    Interface:
      scheduler = ChunkScheduler(encoder_session, DecodingEngine(...), on_progress=print)
      for fragment in scheduler.transcribe_stream(audio, sample_rate=44100):
          ...
      scheduler.cancel()   # from another thread or a callback; stops cleanly
    """

    def __init__(
        self,
        encoder_session: InferenceSession,
        engine: DecodingEngine,
        extractor: Optional[LogMelExtractor] = None,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.encoder_session = encoder_session
        self.encoder_schema = EncoderSchema.from_session(encoder_session)
        self.engine = engine
        self.extractor = extractor or LogMelExtractor()
        self.on_progress = on_progress or (lambda p: None)

        self._cancel = threading.Event()
        self._running = threading.Lock()
        self._progress: Optional[float] = None

    @property
    def progress(self) -> Optional[float]:
        """Fraction of audio processed in [0, 1]; None when idle."""
        return self._progress

    def cancel(self) -> None:
        """Signal the loop to stop (checked per chunk and per decode step)."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _set_progress(self, value: float) -> None:
        self._progress = value
        self.on_progress(value)

    def iter_chunks(self, audio: np.ndarray) -> Iterator[Tuple[int, int, np.ndarray, int]]:
        """Yield (index, position, zero-padded chunk, true length)."""
        chunk_samples = self.extractor.config.chunk_length_samples
        for index, position in enumerate(range(0, audio.shape[0], chunk_samples)):
            window = audio[position : position + chunk_samples]
            chunk = np.zeros(chunk_samples, dtype=np.float32)
            chunk[: window.shape[0]] = window
            yield index, position, chunk, window.shape[0]

    def _transcribe_chunk(
        self,
        index: int,
        chunk: np.ndarray,
        length: int,
        options: TranscriptionOptions,
        cancel: threading.Event,
    ) -> Iterator[str]:
        rms = chunk_rms(chunk, length)
        logger.info("Chunk %d: samples=%d/%d rms=%.6f", index, length, chunk.shape[0], rms)
        if rms < options.silence_rms:
            logger.info("Chunk %d: silence (rms < %s), skipping", index, options.silence_rms)
            return

        start = time.perf_counter()
        mel = self.extractor.extract(chunk)
        logger.debug("Chunk %d: mel extraction %.0f ms", index, (time.perf_counter() - start) * 1000)
        reason = mel_rejection_reason(mel)
        if reason is not None:
            logger.warning("Chunk %d: %s, skipping", index, reason)
            return
        if cancel.is_set():
            return

        start = time.perf_counter()
        try:
            hidden = self.encoder_schema.run(self.encoder_session, mel)
        except Exception:
            logger.warning("Chunk %d: encoder failed, skipping", index, exc_info=True)
            return
        logger.debug(
            "Chunk %d: encoder %.0f ms, hidden=%s",
            index,
            (time.perf_counter() - start) * 1000,
            list(hidden.shape),
        )

        count = 0
        for fragment in self.engine.decode_chunk(hidden, options.decode_options(), cancel=cancel):
            count += 1
            yield fragment
        logger.info("Chunk %d: finished, %d fragments", index, count)

    def transcribe_stream(
        self,
        audio: np.ndarray,
        sample_rate: Optional[int] = None,
        options: Optional[TranscriptionOptions] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Iterator[str]:
        """Yield text fragments in chunk order, then token order.

        The run's cancel event is bound when this is called, so cancel()
        issued before the first fragment is pulled still stops the run.

        Args:
            audio: (samples,) or (samples, channels) float buffer; not modified.
            sample_rate: Rate of `audio`; if it differs from the model rate the
                audio is downmixed/resampled first. None means already prepared.
            options: Language/task/timestamps and silence threshold.
            cancel: Event to stop this run; cancel() sets it too. A fresh one
                is created when omitted.
        """
        if self._running.locked():
            raise RuntimeError("A transcription is already running on this scheduler")
        self._cancel = cancel if cancel is not None else threading.Event()
        return self._run(audio, sample_rate, options or TranscriptionOptions(), self._cancel)

    def _run(
        self,
        audio: np.ndarray,
        sample_rate: Optional[int],
        options: TranscriptionOptions,
        cancel: threading.Event,
    ) -> Iterator[str]:
        if not self._running.acquire(blocking=False):
            raise RuntimeError("A transcription is already running on this scheduler")
        try:
            config = self.extractor.config
            if sample_rate is not None:
                audio = prepare_audio(audio, sample_rate, config.sample_rate)
            else:
                audio = to_mono(audio)
            total = audio.shape[0]
            logger.info(
                "Audio: %d samples, %.1f s, chunk=%d samples",
                total,
                total / config.sample_rate,
                config.chunk_length_samples,
            )
            self._set_progress(0.0)
            if total == 0:
                return

            for index, position, chunk, length in self.iter_chunks(audio):
                if cancel.is_set():
                    logger.info("Transcription cancelled before chunk %d", index)
                    return
                yield from self._transcribe_chunk(index, chunk, length, options, cancel)
                self._set_progress(min(position + chunk.shape[0], total) / total)
            self._set_progress(1.0)
        finally:
            self._progress = None
            self._running.release()

    def transcribe(
        self,
        audio: np.ndarray,
        sample_rate: Optional[int] = None,
        options: Optional[TranscriptionOptions] = None,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        """Collect the whole stream into one string."""
        return join_fragments(self.transcribe_stream(audio, sample_rate, options, cancel))
