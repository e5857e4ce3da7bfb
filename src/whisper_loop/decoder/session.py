"""Inference-session contract and fixed encoder/decoder I/O schemas.

Sessions follow the onnxruntime.InferenceSession shape:
  session.get_inputs() / session.get_outputs() -> items with .name, .shape, .type
  session.run(output_names, input_feed) -> list of numpy arrays

Any object with that shape works (ONNX Runtime, a test fake, a remote proxy).
The schemas resolve names once so the decode loop indexes cache slots by
position instead of looking up strings on every step.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Protocol, Sequence, Tuple

import numpy as np

INPUT_FEATURES = "input_features"
LAST_HIDDEN_STATE = "last_hidden_state"
INPUT_IDS = "input_ids"
ENCODER_HIDDEN_STATES = "encoder_hidden_states"
USE_CACHE_BRANCH = "use_cache_branch"
LOGITS = "logits"
PAST_PREFIX = "past_key_values"
PRESENT_PREFIX = "present"


class TensorInfo(Protocol):
    name: str
    shape: Sequence[Any]
    type: str


class InferenceSession(Protocol):
    def get_inputs(self) -> Sequence[TensorInfo]: ...

    def get_outputs(self) -> Sequence[TensorInfo]: ...

    def run(
        self, output_names: Optional[Sequence[str]], input_feed: Mapping[str, np.ndarray]
    ) -> List[np.ndarray]: ...


class Tokenizer(Protocol):
    """decode() must not raise for unknown ids; it returns '' instead."""

    def decode(self, token_ids: Sequence[int]) -> str: ...


def _is_dynamic(dim: Any) -> bool:
    return not isinstance(dim, (int, np.integer)) or dim <= 0


def empty_cache_shape(declared: Sequence[Any]) -> Tuple[int, ...]:
    """Zero-length cache shape: dynamic batch -> 1, other dynamic dims -> 0."""
    return tuple(
        (1 if idx == 0 else 0) if _is_dynamic(dim) else int(dim)
        for idx, dim in enumerate(declared or ())
    )


def numpy_dtype(tensor_type: Optional[str]) -> np.dtype:
    """Map an ONNX type string ('tensor(float16)') to a numpy dtype."""
    if tensor_type and "float16" in tensor_type:
        return np.dtype(np.float16)
    return np.dtype(np.float32)


@dataclass(frozen=True)
class CacheSlot:
    """One key/value cache tensor: fed as `input_name`, returned as `output_name`."""

    index: int
    input_name: str
    output_name: str
    empty_shape: Tuple[int, ...]
    dtype: np.dtype

    def empty(self) -> np.ndarray:
        return np.zeros(self.empty_shape, dtype=self.dtype)


@dataclass(frozen=True)
class EncoderSchema:
    input_name: str
    output_name: str

    @classmethod
    def from_session(cls, session: InferenceSession) -> "EncoderSchema":
        inputs = [i.name for i in session.get_inputs()]
        outputs = [o.name for o in session.get_outputs()]
        if not inputs or not outputs:
            raise ValueError("Encoder session declares no inputs or outputs")
        return cls(
            input_name=INPUT_FEATURES if INPUT_FEATURES in inputs else inputs[0],
            output_name=LAST_HIDDEN_STATE if LAST_HIDDEN_STATE in outputs else outputs[0],
        )

    def run(self, session: InferenceSession, features: np.ndarray) -> np.ndarray:
        (hidden,) = session.run([self.output_name], {self.input_name: features})
        return np.asarray(hidden)


@dataclass(frozen=True)
class DecoderSchema:
    input_ids: str
    encoder_hidden_states: str
    use_cache_branch: Optional[str]
    logits: str
    cache_slots: Tuple[CacheSlot, ...]

    @property
    def output_names(self) -> List[str]:
        return [self.logits] + [slot.output_name for slot in self.cache_slots]

    @classmethod
    def from_session(cls, session: InferenceSession) -> "DecoderSchema":
        inputs = {i.name: i for i in session.get_inputs()}
        outputs = [o.name for o in session.get_outputs()]
        for required in (INPUT_IDS, ENCODER_HIDDEN_STATES):
            if required not in inputs:
                raise ValueError(f"Decoder session has no '{required}' input")
        if not outputs:
            raise ValueError("Decoder session declares no outputs")

        presents = {
            PAST_PREFIX + name[len(PRESENT_PREFIX) :]: name
            for name in outputs
            if name.startswith(PRESENT_PREFIX)
        }
        slots = []
        for name, info in inputs.items():
            if not name.startswith(PAST_PREFIX):
                continue
            if name not in presents:
                raise ValueError(f"Decoder cache input '{name}' has no matching present output")
            slots.append(
                CacheSlot(
                    index=len(slots),
                    input_name=name,
                    output_name=presents[name],
                    empty_shape=empty_cache_shape(info.shape),
                    dtype=numpy_dtype(getattr(info, "type", None)),
                )
            )
        return cls(
            input_ids=INPUT_IDS,
            encoder_hidden_states=ENCODER_HIDDEN_STATES,
            use_cache_branch=USE_CACHE_BRANCH if USE_CACHE_BRANCH in inputs else None,
            logits=LOGITS if LOGITS in outputs else outputs[0],
            cache_slots=tuple(slots),
        )
