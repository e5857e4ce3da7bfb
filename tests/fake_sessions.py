"""In-memory encoder/decoder sessions and tokenizer for tests.

They follow the onnxruntime.InferenceSession shape (get_inputs, get_outputs,
run) so the engine code under test cannot tell them apart from real sessions.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

import numpy as np

from whisper_loop.decoder.token_map import TokenMap

# Tiny vocab: content ids 0..49, then the special tokens.
HELLO, WORLD, A, B, C = 0, 1, 2, 3, 4
ELLIPSIS = 40
EOT, SOT, EN, TRANSCRIBE, TRANSLATE, NO_TIMESTAMPS, DE = 50, 51, 52, 53, 54, 55, 56
VOCAB_SIZE = 57

TEXTS: Dict[int, str] = {i: f"Ġword{i}" for i in range(50)}
TEXTS.update(
    {
        HELLO: "Ġhello",
        WORLD: "Ġworld",
        A: "Ġa",
        B: "Ġb",
        C: "Ġc",
        ELLIPSIS: "...",
        41: "?!",
        42: "\ufffd",
    }
)

VOCAB: Dict[str, int] = {f"tok{i}": i for i in range(50)}
VOCAB.update(
    {
        "<|endoftext|>": EOT,
        "<|startoftranscript|>": SOT,
        "<|en|>": EN,
        "<|transcribe|>": TRANSCRIBE,
        "<|translate|>": TRANSLATE,
        "<|notimestamps|>": NO_TIMESTAMPS,
        "<|de|>": DE,
    }
)

TOKEN_MAP = TokenMap.from_vocab(VOCAB)
PROMPT = [SOT, EN, TRANSCRIBE, NO_TIMESTAMPS]

HIDDEN_SHAPE = (1, 1500, 8)
CACHE_HEADS = 2
CACHE_DIM = 4


@dataclass
class FakeTensorInfo:
    name: str
    shape: List[Any]
    type: str = "tensor(float)"


class FakeTokenizer:
    """Special ids and unknown ids decode to '' (skip_special_tokens behaviour)."""

    def __init__(self, texts: Optional[Dict[int, str]] = None):
        self.texts = dict(TEXTS if texts is None else texts)

    def decode(self, token_ids: Sequence[int]) -> str:
        return "".join(self.texts.get(int(t), "") for t in token_ids)

    def get_vocab(self) -> Dict[str, int]:
        return dict(VOCAB)


def scores(preferred: Dict[int, float], default: float = -10.0) -> np.ndarray:
    """Logit row with `preferred` ids set and everything else at `default`."""
    row = np.full(VOCAB_SIZE, default, dtype=np.float32)
    for token_id, value in preferred.items():
        row[token_id] = value
    return row


def pattern_script(pattern: Sequence[int], high: float = 10.0) -> Callable[[List[int]], np.ndarray]:
    """Always prefer pattern[len(generated) % len(pattern)]."""

    def script(history: List[int]) -> np.ndarray:
        generated = len(history) - len(PROMPT)
        return scores({pattern[generated % len(pattern)]: high})

    return script


class FakeEncoderSession:
    def __init__(self, fail_on: Optional[Set[int]] = None, input_name: str = "input_features"):
        self.fail_on = fail_on or set()
        self.input_name = input_name
        self.calls: List[tuple] = []

    def get_inputs(self) -> List[FakeTensorInfo]:
        return [FakeTensorInfo(self.input_name, ["batch", 80, 3000])]

    def get_outputs(self) -> List[FakeTensorInfo]:
        return [FakeTensorInfo("last_hidden_state", ["batch", 1500, 8])]

    def run(self, output_names, input_feed):
        index = len(self.calls)
        self.calls.append(tuple(input_feed[self.input_name].shape))
        if index in self.fail_on:
            raise RuntimeError(f"encoder failure on call {index}")
        return [np.zeros(HIDDEN_SHAPE, dtype=np.float32)]


class FakeDecoderSession:
    """Merged decoder with one layer of self/cross attention cache.

    Reconstructs the token history from the fed ids: a zero-length past means a
    new sequence, otherwise the fed id is appended. `script(history)` returns
    the logit row for the last position.
    """

    CACHE_NAMES = ("decoder.key", "decoder.value", "encoder.key", "encoder.value")

    def __init__(
        self,
        script: Callable[[List[int]], np.ndarray],
        use_cache_branch: bool = True,
        fail_at: Optional[int] = None,
    ):
        self.script = script
        self.use_cache_branch = use_cache_branch
        self.fail_at = fail_at
        self.history: List[int] = []
        self.feeds: List[Dict[str, np.ndarray]] = []
        self.cache_reused: List[bool] = []
        self._last_presents: List[np.ndarray] = []

    def get_inputs(self) -> List[FakeTensorInfo]:
        inputs = [
            FakeTensorInfo("input_ids", ["batch", "seq"], "tensor(int64)"),
            FakeTensorInfo("encoder_hidden_states", ["batch", 1500, 8]),
        ]
        inputs += [
            FakeTensorInfo(f"past_key_values.0.{name}", ["batch", CACHE_HEADS, "past", CACHE_DIM])
            for name in self.CACHE_NAMES
        ]
        if self.use_cache_branch:
            inputs.append(FakeTensorInfo("use_cache_branch", [1], "tensor(bool)"))
        return inputs

    def get_outputs(self) -> List[FakeTensorInfo]:
        outputs = [FakeTensorInfo("logits", ["batch", "seq", VOCAB_SIZE])]
        outputs += [
            FakeTensorInfo(f"present.0.{name}", ["batch", CACHE_HEADS, "total", CACHE_DIM])
            for name in self.CACHE_NAMES
        ]
        return outputs

    def run(self, output_names, input_feed):
        step = len(self.feeds)
        self.feeds.append(dict(input_feed))
        if self.fail_at is not None and step == self.fail_at:
            raise RuntimeError(f"decoder failure at step {step}")

        past = [input_feed[f"past_key_values.0.{name}"] for name in self.CACHE_NAMES]
        self.cache_reused.append(
            len(self._last_presents) == len(past)
            and all(p is q for p, q in zip(past, self._last_presents))
        )
        ids = [int(t) for t in input_feed["input_ids"][0]]
        past_len = past[0].shape[2]
        if past_len == 0:
            self.history = ids
        else:
            self.history = self.history + ids

        row = np.asarray(self.script(list(self.history)), dtype=np.float32)
        logits = np.zeros((1, len(ids), VOCAB_SIZE), dtype=np.float32)
        logits[0, -1] = row
        presents = [
            np.full((1, CACHE_HEADS, past_len + len(ids), CACHE_DIM), step, dtype=np.float32)
            for _ in self.CACHE_NAMES
        ]
        self._last_presents = presents
        by_name = {"logits": logits}
        by_name.update({f"present.0.{name}": p for name, p in zip(self.CACHE_NAMES, presents)})
        return [by_name[name] for name in output_names]
