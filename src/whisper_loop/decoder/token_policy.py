"""Per-step token scoring: suppression, repetition penalty, quality mask, selection.

The policy holds only parameters. Everything that changes during a chunk
(recent tokens, per-chunk bans) is owned by the caller and passed in, so the
same policy object can serve every chunk.

Defaults are the empirically tuned values that keep Whisper ONNX exports
from locking onto symbol tokens; treat them as knobs, not constants.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Sequence, Tuple

import numpy as np

from whisper_loop.decoder.session import Tokenizer
from whisper_loop.postprocess import alnum_ratio, clean_token_text, is_garbage_text

NEG_INF = -np.inf


def ranked_ids(scores: np.ndarray, k: int) -> np.ndarray:
    """Ids of the k highest scores, best first (ties by lower id)."""
    order = np.argsort(-scores, kind="stable")
    return order[: min(k, scores.shape[0])]


@dataclass(frozen=True)
class TokenPolicy:
    """Scoring parameters for one decode step."""

    repetition_penalty: float = 2.0
    repetition_window: int = 15
    quality_top_k: int = 64
    quality_mask_cap: int = 16
    sampling_steps: int = 3
    sampling_top_k: int = 50
    temperature: float = 0.8
    greedy_min_alnum_ratio: float = 0.25

    def suppress_special(self, scores: np.ndarray, eot: int) -> None:
        """Only end-of-transcript may be chosen among the special ids (all ids >= eot)."""
        scores[eot + 1 :] = NEG_INF

    def mask_banned(self, scores: np.ndarray, banned: Mapping[int, int]) -> None:
        for token_id in banned:
            if 0 <= token_id < scores.shape[0]:
                scores[token_id] = NEG_INF

    def apply_repetition_penalty(
        self, scores: np.ndarray, recent: Sequence[int], eot: int
    ) -> None:
        """HuggingFace-style: positive scores divided, negative multiplied."""
        window = list(recent)[-self.repetition_window :] if self.repetition_window > 0 else []
        for token_id in set(window):
            if 0 <= token_id <= eot and np.isfinite(scores[token_id]):
                if scores[token_id] > 0:
                    scores[token_id] /= self.repetition_penalty
                else:
                    scores[token_id] *= self.repetition_penalty

    def mask_low_quality(self, scores: np.ndarray, tokenizer: Tokenizer, eot: int) -> int:
        """Mask top candidates whose text is garbage. Returns how many were masked."""
        masked = 0
        for token_id in ranked_ids(scores, self.quality_top_k):
            if masked >= self.quality_mask_cap:
                break
            token_id = int(token_id)
            if token_id == eot or not np.isfinite(scores[token_id]):
                continue
            if is_garbage_text(clean_token_text(tokenizer.decode([token_id]))):
                scores[token_id] = NEG_INF
                masked += 1
        return masked

    def adjust(
        self,
        logits: np.ndarray,
        recent: Sequence[int],
        banned: Mapping[int, int],
        tokenizer: Tokenizer,
        eot: int,
    ) -> np.ndarray:
        """Adjusted copy of the last-step logits; NaN scores count as masked."""
        scores = np.array(logits, dtype=np.float64).reshape(-1)
        scores[np.isnan(scores)] = NEG_INF
        self.suppress_special(scores, eot)
        self.mask_banned(scores, banned)
        self.apply_repetition_penalty(scores, recent, eot)
        self.mask_low_quality(scores, tokenizer, eot)
        return scores

    def sample_top_k(self, scores: np.ndarray, rng: np.random.Generator) -> int:
        """Temperature sampling over the top-k finite scores."""
        candidates = [int(i) for i in ranked_ids(scores, self.sampling_top_k) if np.isfinite(scores[i])]
        if not candidates:
            return int(np.argmax(scores))
        logits = scores[candidates] / max(self.temperature, 1e-6)
        weights = np.exp(logits - logits.max())
        return int(rng.choice(candidates, p=weights / weights.sum()))

    def select(
        self,
        scores: np.ndarray,
        generated: int,
        tokenizer: Tokenizer,
        eot: int,
        rng: np.random.Generator,
    ) -> Tuple[int, bool]:
        """Pick the next token.

        Greedy, except for the first `sampling_steps` generated tokens or when
        the greedy candidate decodes to low-quality text.

        Returns:
            (token_id, sampled)
        """
        best = int(np.argmax(scores))
        sample = generated < self.sampling_steps
        if not sample and best != eot:
            text = clean_token_text(tokenizer.decode([best]))
            sample = not text or alnum_ratio(text) < self.greedy_min_alnum_ratio
        if not sample:
            return best, False
        return self.sample_top_k(scores, rng), True
