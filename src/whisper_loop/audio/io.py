"""Audio loading and conversion to mono float32 at the model sample rate."""

from __future__ import annotations

import logging
from math import gcd
from pathlib import Path

import numpy as np

logger = logging.getLogger(__name__)


def load_wav(path: str | Path) -> tuple[np.ndarray, int]:
    """Read a WAV file as float32 in [-1, 1].

    Returns:
        (audio, sample_rate); audio is (samples,) or (samples, channels).
    """
    import scipy.io.wavfile as wavfile

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Audio file not found: {path}")
    sr, audio = wavfile.read(str(path))
    if audio.dtype == np.int16:
        audio = audio.astype(np.float32) / 32768.0
    elif audio.dtype == np.int32:
        audio = audio.astype(np.float32) / 2147483648.0
    elif audio.dtype == np.uint8:
        audio = (audio.astype(np.float32) - 128.0) / 128.0
    return audio.astype(np.float32), int(sr)


def to_mono(audio: np.ndarray) -> np.ndarray:
    """Average channels of a (samples, channels) buffer."""
    audio = np.asarray(audio, dtype=np.float32)
    if audio.ndim > 1:
        return audio.mean(axis=1).astype(np.float32)
    return audio


def resample(audio: np.ndarray, orig_sr: int, target_sr: int) -> np.ndarray:
    """Polyphase resample of a mono buffer."""
    if orig_sr == target_sr:
        return np.asarray(audio, dtype=np.float32)
    from scipy.signal import resample_poly

    g = gcd(int(orig_sr), int(target_sr))
    out = resample_poly(audio, int(target_sr) // g, int(orig_sr) // g)
    return out.astype(np.float32)


def prepare_audio(audio: np.ndarray, sample_rate: int, target_rate: int) -> np.ndarray:
    """Downmix to mono and resample to `target_rate`. The input is not modified."""
    audio = np.asarray(audio)
    if audio.ndim > 1:
        logger.debug("Downmixing %d channels to mono", audio.shape[1])
    mono = to_mono(audio)
    if sample_rate != target_rate:
        logger.info("Resampling audio from %d Hz to %d Hz", sample_rate, target_rate)
    return resample(mono, sample_rate, target_rate)
