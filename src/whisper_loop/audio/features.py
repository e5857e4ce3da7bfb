"""Feature extraction: Whisper log-Mel spectrogram with exact N-point STFT.

Matches openai/whisper `log_mel_spectrogram`: center=True reflect padding,
periodic Hann window, last STFT frame dropped, Slaney mel filterbank,
log10 with dynamic clamping to (max - 8) and (x + 4) / 4 normalization.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

import numpy as np
import scipy.fft

from whisper_loop.audio.config import SpectralConfig

logger = logging.getLogger(__name__)

LOG_FLOOR = 1e-10
DYNAMIC_RANGE_DB = 8.0

# Slaney mel scale (librosa htk=False)
_F_SP = 200.0 / 3.0
_MIN_LOG_HZ = 1000.0
_MIN_LOG_MEL = _MIN_LOG_HZ / _F_SP
_LOG_STEP = np.log(6.4) / 27.0


def hz_to_mel(hz):
    """Slaney mel: linear below 1 kHz, logarithmic above."""
    hz = np.asarray(hz, dtype=np.float64)
    linear = hz / _F_SP
    log = _MIN_LOG_MEL + np.log(np.maximum(hz, _MIN_LOG_HZ) / _MIN_LOG_HZ) / _LOG_STEP
    return np.where(hz >= _MIN_LOG_HZ, log, linear)


def mel_to_hz(mel):
    """Inverse of hz_to_mel."""
    mel = np.asarray(mel, dtype=np.float64)
    linear = _F_SP * mel
    log = _MIN_LOG_HZ * np.exp(_LOG_STEP * (np.maximum(mel, _MIN_LOG_MEL) - _MIN_LOG_MEL))
    return np.where(mel >= _MIN_LOG_MEL, log, linear)


def mel_band_edges(n_mels: int, sample_rate: float) -> np.ndarray:
    """n_mels + 2 boundary frequencies (Hz), equally spaced in mel."""
    mel_points = np.linspace(hz_to_mel(0.0), hz_to_mel(sample_rate / 2.0), n_mels + 2)
    return mel_to_hz(mel_points)


def _mel_filterbank(n_mels: int, n_fft: int, sample_rate: float) -> np.ndarray:
    """Build Mel filterbank matrix (librosa.filters.mel, norm="slaney")."""
    fft_freqs = np.arange(n_fft // 2 + 1, dtype=np.float64) * sample_rate / n_fft
    hz_points = mel_band_edges(n_mels, sample_rate)

    filters = np.zeros((n_mels, n_fft // 2 + 1), dtype=np.float64)
    for i in range(n_mels):
        lower, center, upper = hz_points[i], hz_points[i + 1], hz_points[i + 2]
        if center > lower:
            rising = (fft_freqs >= lower) & (fft_freqs <= center)
            filters[i, rising] = (fft_freqs[rising] - lower) / (center - lower)
        if upper > center:
            falling = (fft_freqs > center) & (fft_freqs <= upper)
            filters[i, falling] = (upper - fft_freqs[falling]) / (upper - center)
        bandwidth = upper - lower
        if bandwidth > 0:
            filters[i] *= 2.0 / bandwidth
    return filters.astype(np.float32)


def hann_window(n: int) -> np.ndarray:
    """Periodic Hann window (torch.hann_window default)."""
    i = np.arange(n, dtype=np.float64)
    return (0.5 * (1.0 - np.cos(2.0 * np.pi * i / n))).astype(np.float32)


@dataclass(frozen=True)
class FilterBank:
    """Mel weights + analysis window derived from one SpectralConfig. Read-only."""

    config: SpectralConfig
    mel_filters: np.ndarray  # (n_mels, n_fft // 2 + 1)
    window: np.ndarray  # (n_fft,)


@lru_cache(maxsize=8)
def build_filter_bank(config: SpectralConfig) -> FilterBank:
    """Build (or reuse) the filterbank for a configuration."""
    mel_filters = _mel_filterbank(config.n_mels, config.n_fft, float(config.sample_rate))
    window = hann_window(config.n_fft)
    mel_filters.setflags(write=False)
    window.setflags(write=False)
    logger.debug(
        "Built mel filterbank: n_mels=%d n_fft=%d sr=%d",
        config.n_mels,
        config.n_fft,
        config.sample_rate,
    )
    return FilterBank(config=config, mel_filters=mel_filters, window=window)


def reflect_pad(audio: np.ndarray, pad: int) -> np.ndarray:
    """Mirror `pad` samples around index 0 and around the last sample.

    Reflections that fall outside the buffer are filled with silence.
    """
    n = audio.shape[0]
    padded = np.zeros(n + 2 * pad, dtype=np.float32)
    padded[pad : pad + n] = audio
    if n == 0 or pad == 0:
        return padded
    left = np.arange(pad, 0, -1)
    valid = left < n
    padded[:pad][valid] = audio[left[valid]]
    right = n - 2 - np.arange(pad)
    valid = right >= 0
    padded[pad + n :][valid] = audio[right[valid]]
    return padded


def power_spectrum(
    audio: np.ndarray,
    filter_bank: FilterBank,
    workers: Optional[int] = -1,
) -> np.ndarray:
    """Power spectrum of every STFT frame, shape (n_frames, n_fft // 2 + 1).

    The DFT length is exactly n_fft; padding to a power of two would shift
    every bin frequency.
    """
    config = filter_bank.config
    n_fft = config.n_fft
    padded = reflect_pad(np.asarray(audio, dtype=np.float32), n_fft // 2)

    total_frames = (padded.shape[0] - n_fft) // config.hop_length + 1
    stft_frames = max(0, total_frames - 1)  # drop last frame like Whisper
    if stft_frames == 0:
        return np.zeros((0, config.freq_bins), dtype=np.float64)

    frames = np.lib.stride_tricks.sliding_window_view(padded, n_fft)[:: config.hop_length]
    frames = frames[:stft_frames].astype(np.float64) * filter_bank.window
    spectrum = scipy.fft.rfft(frames, n=n_fft, axis=-1, workers=workers)
    return spectrum.real**2 + spectrum.imag**2


def compute_log_mel(
    audio: np.ndarray,
    filter_bank: FilterBank,
    workers: Optional[int] = -1,
) -> np.ndarray:
    """Whisper log-Mel spectrogram of one fixed-length buffer.

    Returns:
        float32 array, shape (1, n_mels, n_frames).
    """
    config = filter_bank.config
    power = power_spectrum(audio, filter_bank, workers=workers)
    output_frames = min(power.shape[0], config.n_frames)

    log_spec = np.full((config.n_mels, config.n_frames), np.log10(LOG_FLOOR), dtype=np.float64)
    if output_frames > 0:
        mel = filter_bank.mel_filters.astype(np.float64) @ power[:output_frames].T
        log_spec[:, :output_frames] = np.log10(np.maximum(mel, LOG_FLOOR))

    log_spec = np.maximum(log_spec, log_spec.max() - DYNAMIC_RANGE_DB)
    log_spec = (log_spec + 4.0) / 4.0
    return log_spec.astype(np.float32)[np.newaxis]


class LogMelExtractor:
    """Holds the active filterbank and computes log-Mel tensors per chunk.

    Interface:
      extractor = LogMelExtractor(SpectralConfig())
      mel = extractor.extract(chunk)      # (1, 80, 3000)
      extractor.reconfigure(new_config)   # installs a new filterbank
    """

    def __init__(self, config: Optional[SpectralConfig] = None, workers: Optional[int] = -1):
        self._filter_bank = build_filter_bank(config or SpectralConfig())
        self.workers = workers

    @property
    def config(self) -> SpectralConfig:
        return self._filter_bank.config

    @property
    def filter_bank(self) -> FilterBank:
        return self._filter_bank

    def reconfigure(self, config: SpectralConfig) -> None:
        """Swap in the filterbank for `config` (single reference assignment)."""
        self._filter_bank = build_filter_bank(config)

    def extract(self, audio: np.ndarray) -> np.ndarray:
        """Compute the log-Mel tensor for one chunk."""
        mel = compute_log_mel(audio, self._filter_bank, workers=self.workers)
        if logger.isEnabledFor(logging.DEBUG):
            finite = mel[np.isfinite(mel)]
            if finite.size:
                logger.debug(
                    "Mel stats min=%.6f max=%.6f mean=%.6f dims=%s",
                    finite.min(),
                    finite.max(),
                    finite.mean(),
                    list(mel.shape),
                )
        return mel
