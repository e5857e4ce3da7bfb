"""Spectral front-end configuration.

Encoding standards (Whisper defaults):
- Audio: mono 16 kHz
- Features: 80-bin log-Mel (Slaney scale + Slaney normalization)
- STFT: 400-point window / 160-sample hop, exact 400-point DFT
- Chunks: 30 s (480000 samples) -> 3000 frames
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpectralConfig:
    """Immutable log-Mel extraction parameters."""

    sample_rate: int = 16_000
    n_fft: int = 400
    hop_length: int = 160
    n_mels: int = 80
    chunk_length_samples: int = 480_000  # 30 s * 16000
    n_frames: int = 3000  # chunk_length_samples / hop_length

    @property
    def chunk_seconds(self) -> float:
        """Chunk duration in seconds."""
        return self.chunk_length_samples / self.sample_rate

    @property
    def freq_bins(self) -> int:
        """Number of one-sided DFT bins."""
        return self.n_fft // 2 + 1

    def with_overrides(
        self,
        n_mels: Optional[int] = None,
        n_frames: Optional[int] = None,
        n_fft: Optional[int] = None,
        hop_length: Optional[int] = None,
        sample_rate: Optional[int] = None,
        chunk_length_samples: Optional[int] = None,
    ) -> "SpectralConfig":
        """Return a copy with the positive overrides applied.

        Setting n_frames without chunk_length_samples re-derives the chunk
        length as n_frames * hop_length.
        """
        changes: dict[str, int] = {}
        for name, value in (
            ("n_mels", n_mels),
            ("n_frames", n_frames),
            ("n_fft", n_fft),
            ("hop_length", hop_length),
            ("sample_rate", sample_rate),
            ("chunk_length_samples", chunk_length_samples),
        ):
            if value is not None and value > 0:
                changes[name] = int(value)
        if "chunk_length_samples" not in changes and "n_frames" in changes:
            hop = changes.get("hop_length", self.hop_length)
            changes["chunk_length_samples"] = changes["n_frames"] * hop
        return replace(self, **changes)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SpectralConfig":
        """Build from a HuggingFace preprocessor_config.json mapping.

        chunk_length in preprocessor configs is in seconds, not samples.
        """

        def get_int(*keys: str) -> int:
            for key in keys:
                value = data.get(key)
                if isinstance(value, int) and not isinstance(value, bool):
                    return value
            return -1

        base = cls()
        sample_rate = get_int("sampling_rate", "sample_rate", "sampleRate", "sr")
        sample_rate = sample_rate if sample_rate > 0 else base.sample_rate
        hop_length = get_int("hop_length", "hopLength", "hop")
        hop_length = hop_length if hop_length > 0 else base.hop_length

        chunk_seconds = get_int("chunk_length")
        chunk_samples = (
            chunk_seconds * sample_rate if chunk_seconds > 0 else base.chunk_length_samples
        )
        n_frames = get_int("n_frames", "nFrames", "nb_max_frames")
        if n_frames <= 0:
            n_frames = max(1, chunk_samples // hop_length)

        n_fft = get_int("n_fft", "nFft")
        n_mels = get_int("feature_size", "n_mels", "nMels", "num_mel_bins")
        return cls(
            sample_rate=sample_rate,
            n_fft=n_fft if n_fft > 0 else base.n_fft,
            hop_length=hop_length,
            n_mels=n_mels if n_mels > 0 else base.n_mels,
            chunk_length_samples=chunk_samples,
            n_frames=n_frames,
        )

    @classmethod
    def from_preprocessor_config(cls, path: Optional[str | Path]) -> "SpectralConfig":
        """Load from preprocessor_config.json; defaults if missing or unreadable."""
        if path is None or not Path(path).is_file():
            return cls()
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as exc:
            logger.warning("Could not read preprocessor config %s: %s", path, exc)
            return cls()
        if not isinstance(data, dict):
            logger.warning("Preprocessor config %s is not a JSON object", path)
            return cls()
        return cls.from_mapping(data)


DEFAULT_SPECTRAL_CONFIG = SpectralConfig()
