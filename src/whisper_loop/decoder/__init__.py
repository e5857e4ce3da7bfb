"""Whisper decode loop: token map, token policy, cache-aware decoding engine."""

from whisper_loop.decoder.decode_loop import (
    DecodeGuards,
    DecodeOptions,
    DecodeState,
    DecodingEngine,
    GuardConfig,
    Transition,
)
from whisper_loop.decoder.session import DecoderSchema, EncoderSchema
from whisper_loop.decoder.token_map import TokenMap
from whisper_loop.decoder.token_policy import TokenPolicy

__all__ = [
    "DecodeGuards",
    "DecodeOptions",
    "DecodeState",
    "DecoderSchema",
    "DecodingEngine",
    "EncoderSchema",
    "GuardConfig",
    "TokenMap",
    "TokenPolicy",
    "Transition",
]
