"""Find exported Whisper ONNX model directories.

A model directory holds (HuggingFace optimum export layout):
  encoder_model.onnx, decoder_model_merged.onnx, tokenizer.json,
  preprocessor_config.json, config.json, generation_config.json
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

logger = logging.getLogger(__name__)

ENCODER_FILES = ("encoder_model.onnx", "encoder_model.onnx_data")
DECODER_FILES = ("decoder_model_merged.onnx", "decoder_model_merged.onnx_data")
TOKENIZER_FILES = ("tokenizer.json", "tokenizer_config.json", "tokenizer_config", "tokenizer")
PREPROCESSOR_FILES = ("preprocessor_config.json", "preprocessor_config")
CONFIG_FILES = ("config.json", "config")
GENERATION_FILES = ("generation_config.json", "generation_config")


@dataclass(frozen=True)
class WhisperModelInfo:
    """Paths of one usable model directory."""

    name: str
    root: Path
    encoder: Path
    decoder: Path
    tokenizer: Path
    preprocessor_config: Path
    config: Path
    generation_config: Path


def find_first_existing(directory: Path, candidates: Sequence[str]) -> Optional[Path]:
    """First candidate file present in `directory`.

    Exact names win; otherwise any file whose name starts with a candidate's
    stem (case-insensitive), e.g. 'tokenizer_config' without extension.
    """
    for name in candidates:
        path = directory / name
        if path.is_file():
            return path
    files = sorted(p for p in directory.iterdir() if p.is_file())
    for name in candidates:
        stem = Path(name).stem.lower()
        for path in files:
            if path.name.lower().startswith(stem):
                return path
    return None


def model_info(directory: str | Path) -> Optional[WhisperModelInfo]:
    """Model info for `directory`, or None when any required file is missing."""
    directory = Path(directory)
    if not directory.is_dir():
        return None
    found = [
        find_first_existing(directory, names)
        for names in (
            ENCODER_FILES,
            DECODER_FILES,
            TOKENIZER_FILES,
            PREPROCESSOR_FILES,
            CONFIG_FILES,
            GENERATION_FILES,
        )
    ]
    if any(path is None for path in found):
        return None
    encoder, decoder, tokenizer, preprocessor, config, generation = found
    return WhisperModelInfo(
        name=directory.name,
        root=directory,
        encoder=encoder,
        decoder=decoder,
        tokenizer=tokenizer,
        preprocessor_config=preprocessor,
        config=config,
        generation_config=generation,
    )


def discover_models(search_dirs: Iterable[str | Path]) -> List[WhisperModelInfo]:
    """Scan the immediate sub-directories of each search dir (not recursive)."""
    models: List[WhisperModelInfo] = []
    seen = set()
    for base in search_dirs:
        base = Path(base).expanduser()
        if not base.is_dir():
            logger.debug("Search dir %s does not exist", base)
            continue
        for sub in sorted(p for p in base.iterdir() if p.is_dir()):
            resolved = sub.resolve()
            if resolved in seen:
                continue
            info = model_info(sub)
            if info is not None:
                seen.add(resolved)
                models.append(info)
                logger.info("Whisper model found: %s (%s)", info.name, info.root)
    return models
