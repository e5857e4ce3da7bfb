"""ONNX Runtime Whisper loader.

Builds encoder/decoder sessions, the tokenizer and the token map from a
discovered model directory. onnxruntime and transformers are optional; they
are imported only when a model is actually loaded.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Sequence

from whisper_loop.audio.config import SpectralConfig
from whisper_loop.decoder.session import InferenceSession
from whisper_loop.decoder.token_map import TokenMap
from whisper_loop.models.discovery import WhisperModelInfo

logger = logging.getLogger(__name__)

_INSTALL_HINT = "ONNX Whisper support needs extra packages: pip install 'whisper-loop[onnx]'"


def _get_onnxruntime():
    try:
        import onnxruntime as ort
    except ImportError as exc:
        raise ImportError(_INSTALL_HINT) from exc
    return ort


def _get_auto_tokenizer():
    try:
        from transformers import AutoTokenizer
    except ImportError as exc:
        raise ImportError(_INSTALL_HINT) from exc
    return AutoTokenizer


class WhisperTokenizer:
    """Wraps a transformers tokenizer; decode() never raises."""

    def __init__(self, tokenizer: Any):
        self._tokenizer = tokenizer

    def decode(self, token_ids: Sequence[int]) -> str:
        try:
            return self._tokenizer.decode(list(token_ids), skip_special_tokens=True)
        except Exception:
            logger.debug("Could not decode %s", list(token_ids), exc_info=True)
            return ""

    def get_vocab(self) -> Dict[str, int]:
        return dict(self._tokenizer.get_vocab())


@dataclass
class WhisperOnnxModel:
    """Everything the chunk scheduler needs for one model."""

    info: WhisperModelInfo
    encoder: InferenceSession
    decoder: InferenceSession
    tokenizer: WhisperTokenizer
    token_map: TokenMap
    spectral_config: SpectralConfig


def read_json(path: str | Path) -> Dict[str, Any]:
    """Parse a JSON object file; missing, unreadable or non-object files give {}."""
    path = Path(path)
    if not path.is_file():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError):
        logger.warning("Could not read %s", path, exc_info=True)
        return {}
    if not isinstance(data, dict):
        logger.warning("%s is not a JSON object, ignoring", path)
        return {}
    return data


def load_token_map(tokenizer: WhisperTokenizer, generation_config: str | Path) -> TokenMap:
    return TokenMap.from_vocab(tokenizer.get_vocab(), read_json(generation_config))


def create_session(path: str | Path) -> InferenceSession:
    """CPU session with all graph optimisations enabled."""
    ort = _get_onnxruntime()
    options = ort.SessionOptions()
    options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
    return ort.InferenceSession(str(path), sess_options=options, providers=["CPUExecutionProvider"])


def load_onnx_whisper(info: WhisperModelInfo) -> WhisperOnnxModel:
    """Load sessions, tokenizer, token map and spectral config for `info`.

    Raises:
        FileNotFoundError: model directory or encoder/decoder file is gone.
        ImportError: onnxruntime or transformers is not installed.
    """
    for path in (info.root, info.encoder, info.decoder):
        if not Path(path).exists():
            raise FileNotFoundError(f"Whisper model file not found: {path}")

    start = time.perf_counter()
    encoder = create_session(info.encoder)
    decoder = create_session(info.decoder)
    tokenizer = WhisperTokenizer(_get_auto_tokenizer().from_pretrained(str(info.root)))
    token_map = load_token_map(tokenizer, info.generation_config)
    spectral_config = SpectralConfig.from_preprocessor_config(info.preprocessor_config)
    logger.info(
        "Loaded Whisper ONNX model '%s' in %.2f s (sot=%d eot=%d, %d languages, %d mel bins)",
        info.name,
        time.perf_counter() - start,
        token_map.sot,
        token_map.eot,
        len(token_map.languages),
        spectral_config.n_mels,
    )
    return WhisperOnnxModel(
        info=info,
        encoder=encoder,
        decoder=decoder,
        tokenizer=tokenizer,
        token_map=token_map,
        spectral_config=spectral_config,
    )
