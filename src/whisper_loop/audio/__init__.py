"""Audio preparation and log-Mel feature extraction."""

from whisper_loop.audio.config import DEFAULT_SPECTRAL_CONFIG, SpectralConfig
from whisper_loop.audio.features import (
    FilterBank,
    LogMelExtractor,
    build_filter_bank,
    compute_log_mel,
)
from whisper_loop.audio.io import load_wav, prepare_audio

__all__ = [
    "DEFAULT_SPECTRAL_CONFIG",
    "FilterBank",
    "LogMelExtractor",
    "SpectralConfig",
    "build_filter_bank",
    "compute_log_mel",
    "load_wav",
    "prepare_audio",
]
