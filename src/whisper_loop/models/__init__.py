"""Model discovery and loaders (Whisper ONNX exports)."""

from whisper_loop.models.discovery import WhisperModelInfo, discover_models
from whisper_loop.models.onnx_model import WhisperOnnxModel, load_onnx_whisper

__all__ = ["WhisperModelInfo", "WhisperOnnxModel", "discover_models", "load_onnx_whisper"]
