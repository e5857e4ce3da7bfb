"""Autoregressive Whisper decode loop over a key/value-cached decoder session.

One call to DecodingEngine.decode_chunk() decodes one encoder output:

  step 0:  input_ids = prompt, cache slots = zero-length tensors
  step t:  input_ids = [last token], cache slots = step t-1 "present" outputs
  each step: logits -> TokenPolicy.adjust -> TokenPolicy.select -> DecodeGuards.decide

Guards map a selected token to one of three transitions:
  accept               emit the token
  reject-and-resample  emit a replacement candidate instead
  terminate            end the chunk without emitting anything
"""

from __future__ import annotations

import enum
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterator, List, Optional, Tuple

import numpy as np

from whisper_loop.decoder.session import DecoderSchema, InferenceSession, Tokenizer
from whisper_loop.decoder.token_map import TokenMap
from whisper_loop.decoder.token_policy import NEG_INF, TokenPolicy, ranked_ids
from whisper_loop.postprocess import alnum_ratio, clean_token_text, normalize_token_text

logger = logging.getLogger(__name__)

MAX_TOKENS = 448  # Whisper decoder context (prompt included)


@dataclass
class DecodeOptions:
    """Per-request decoding options."""

    language: Optional[str] = None  # None -> "en"
    translate: bool = False
    timestamps: bool = False
    max_tokens: int = MAX_TOKENS


@dataclass(frozen=True)
class GuardConfig:
    """Thresholds for the reselection and termination guards."""

    min_tokens_before_eot: int = 3
    eot_reselect_min_length: int = 2
    eot_reselect_min_alnum: float = 0.4
    symbol_max_length: int = 3
    symbol_max_alnum: float = 0.25
    symbol_reselect_attempts: int = 3
    symbol_reselect_min_alnum: float = 0.35
    loop_ngram_min: int = 3
    loop_ngram_max: int = 6
    loop_min_history: int = 6


class Transition(enum.Enum):
    ACCEPT = "accept"
    RESAMPLE = "reject-and-resample"
    TERMINATE = "terminate"


@dataclass(frozen=True)
class Decision:
    transition: Transition
    token: int
    reason: str = ""
    ban: bool = False  # emit once, then mask for the rest of the chunk


@dataclass
class DecodeState:
    """Mutable state of one chunk's decode loop. Never shared across chunks."""

    tokens: List[int]
    prompt_length: int
    recent: Deque[int]
    cache: Optional[List[np.ndarray]] = None
    banned: Dict[int, int] = field(default_factory=dict)

    @classmethod
    def start(cls, prompt: List[int], window: int) -> "DecodeState":
        return cls(tokens=list(prompt), prompt_length=len(prompt), recent=deque(maxlen=window))

    @property
    def generated(self) -> int:
        """Number of content tokens accepted so far."""
        return len(self.tokens) - self.prompt_length

    @property
    def last_token(self) -> Optional[int]:
        return self.tokens[-1] if self.generated > 0 else None

    def input_ids(self) -> np.ndarray:
        """Whole prompt without a cache, otherwise only the last token."""
        ids = self.tokens if self.cache is None else self.tokens[-1:]
        return np.asarray([ids], dtype=np.int64)

    def accept(self, token: int) -> None:
        self.tokens.append(token)
        self.recent.append(token)

    def ban(self, token: int) -> None:
        self.banned[token] = self.banned.get(token, 0) + 1


class DecodeGuards:
    """Named transition guards applied to each selected token."""

    def __init__(self, tokenizer: Tokenizer, token_map: TokenMap, config: Optional[GuardConfig] = None):
        self.tokenizer = tokenizer
        self.token_map = token_map
        self.config = config or GuardConfig()

    def text(self, token: int) -> str:
        return clean_token_text(self.tokenizer.decode([token]))

    def is_symbol_like(self, text: str) -> bool:
        return len(text) <= self.config.symbol_max_length and alnum_ratio(text) < self.config.symbol_max_alnum

    def _qualifies(self, state: DecodeState, token: int, min_alnum: float) -> bool:
        if token in state.banned:
            return False
        text = self.text(token)
        return len(text) >= self.config.eot_reselect_min_length and alnum_ratio(text) >= min_alnum

    def end_of_transcript(self, state: DecodeState, scores: np.ndarray) -> Decision:
        """Accept EOT, or make one quality-gated reselection if it came too early."""
        eot = self.token_map.eot
        if state.generated >= self.config.min_tokens_before_eot:
            return Decision(Transition.TERMINATE, eot, "end of transcript")
        candidates = scores.copy()
        if 0 <= eot < candidates.shape[0]:
            candidates[eot] = NEG_INF
        best = int(np.argmax(candidates))
        if np.isfinite(candidates[best]) and self._qualifies(
            state, best, self.config.eot_reselect_min_alnum
        ):
            return Decision(Transition.RESAMPLE, best, "early end of transcript")
        return Decision(Transition.TERMINATE, eot, "early end of transcript, no viable candidate")

    def symbol_repeat(self, state: DecodeState, scores: np.ndarray, token: int) -> Decision:
        """Avoid emitting the same symbol-like token twice in a row."""
        if state.last_token != token or not self.is_symbol_like(self.text(token)):
            return Decision(Transition.ACCEPT, token)
        candidates = scores.copy()
        candidates[token] = NEG_INF
        for _ in range(self.config.symbol_reselect_attempts):
            cand = int(np.argmax(candidates))
            if not np.isfinite(candidates[cand]):
                break
            if self._qualifies(state, cand, self.config.symbol_reselect_min_alnum):
                return Decision(Transition.RESAMPLE, cand, "repeated symbol-like token")
            candidates[cand] = NEG_INF
        return Decision(Transition.ACCEPT, token, "repeated symbol-like token, banned", ban=True)

    def loop(self, state: DecodeState, token: int) -> Optional[Decision]:
        """Terminate if appending `token` makes the last n-gram equal the one before it."""
        history = list(state.recent) + [token]
        if len(history) < self.config.loop_min_history:
            return None
        for n in range(self.config.loop_ngram_min, min(self.config.loop_ngram_max, len(history) // 2) + 1):
            if history[-n:] == history[-2 * n : -n]:
                return Decision(Transition.TERMINATE, token, f"{n}-gram loop {history[-n:]}")
        return None

    def decide(self, state: DecodeState, scores: np.ndarray, token: int) -> Decision:
        if token == self.token_map.eot:
            decision = self.end_of_transcript(state, scores)
        else:
            decision = self.symbol_repeat(state, scores, token)
        if decision.transition is Transition.TERMINATE:
            return decision
        return self.loop(state, decision.token) or decision


class DecodingEngine:
    """Runs the decode loop for one encoder output at a time.

    Interface:
      engine = DecodingEngine(decoder_session, tokenizer, token_map)
      for fragment in engine.decode_chunk(hidden_states, DecodeOptions(language="de")):
          ...

    The decoder session is not reentrant; callers must not run two chunks
    through the same engine concurrently.
    """

    def __init__(
        self,
        decoder_session: InferenceSession,
        tokenizer: Tokenizer,
        token_map: TokenMap,
        policy: Optional[TokenPolicy] = None,
        guard_config: Optional[GuardConfig] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        self.session = decoder_session
        self.schema = DecoderSchema.from_session(decoder_session)
        self.tokenizer = tokenizer
        self.token_map = token_map
        self.policy = policy or TokenPolicy()
        self.guards = DecodeGuards(tokenizer, token_map, guard_config)
        self.rng = rng if rng is not None else np.random.default_rng()
        logger.debug(
            "Decoder: %d cache slots, use_cache_branch=%s",
            len(self.schema.cache_slots),
            self.schema.use_cache_branch is not None,
        )

    def build_prompt(self, options: DecodeOptions) -> List[int]:
        """<|startoftranscript|> <|lang|> <|task|> [<|notimestamps|>]"""
        tm = self.token_map
        prompt = [tm.sot, tm.language_id(options.language or "en"), tm.task_id(options.translate)]
        if not options.timestamps:
            prompt.append(tm.no_timestamps)
        return prompt

    def new_state(self, options: DecodeOptions) -> DecodeState:
        window = max(self.policy.repetition_window, 2 * self.guards.config.loop_ngram_max)
        return DecodeState.start(self.build_prompt(options), window)

    def run_step(
        self, state: DecodeState, encoder_hidden_states: np.ndarray
    ) -> Tuple[np.ndarray, Optional[List[np.ndarray]]]:
        """One decoder call. Returns (last-position logits, new cache or None)."""
        use_cache = state.cache is not None
        feed = {
            self.schema.input_ids: state.input_ids(),
            self.schema.encoder_hidden_states: encoder_hidden_states,
        }
        if self.schema.use_cache_branch is not None:
            feed[self.schema.use_cache_branch] = np.array([use_cache], dtype=bool)
        for slot in self.schema.cache_slots:
            feed[slot.input_name] = state.cache[slot.index] if use_cache else slot.empty()

        outputs = self.session.run(self.schema.output_names, feed)
        logits = np.asarray(outputs[0])
        last = logits.reshape(-1, logits.shape[-1])[-1]
        if not self.schema.cache_slots:
            return last, None
        return last, [np.asarray(present) for present in outputs[1:]]

    def decode_chunk(
        self,
        encoder_hidden_states: np.ndarray,
        options: Optional[DecodeOptions] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Iterator[str]:
        """Yield text fragments, one per accepted token, until the chunk ends.

        Never raises for decoder failures: the chunk just ends.
        """
        options = options or DecodeOptions()
        state = self.new_state(options)
        eot = self.token_map.eot
        logger.debug("Prompt tokens=%s", state.tokens)

        while len(state.tokens) < options.max_tokens:
            if cancel is not None and cancel.is_set():
                logger.info("Decode cancelled after %d tokens", state.generated)
                return
            step = state.generated
            try:
                logits, state.cache = self.run_step(state, encoder_hidden_states)
            except Exception:
                logger.warning("Decoder step %d failed; ending chunk", step, exc_info=True)
                state.cache = None
                return

            scores = self.policy.adjust(logits, state.recent, state.banned, self.tokenizer, eot)
            if not np.isfinite(scores).any():
                logger.warning("Decoder step %d: no finite score left; ending chunk", step)
                return
            token, sampled = self.policy.select(scores, step, self.tokenizer, eot, self.rng)
            if sampled:
                logger.debug("Step %d: sampled token %d", step, token)
            self._log_candidates(step, scores, token)

            decision = self.guards.decide(state, scores, token)
            if decision.transition is Transition.TERMINATE:
                logger.debug("Step %d: terminate (%s)", step, decision.reason)
                return
            if decision.transition is Transition.RESAMPLE:
                logger.debug("Step %d: reselected %d over %d (%s)", step, decision.token, token, decision.reason)
            if decision.ban:
                state.ban(decision.token)
                logger.debug("Step %d: banned token %d for this chunk", step, decision.token)

            state.accept(decision.token)
            yield normalize_token_text(self.tokenizer.decode([decision.token]))

        logger.info("Hit max token count %d", options.max_tokens)

    def _log_candidates(self, step: int, scores: np.ndarray, chosen: int) -> None:
        if not logger.isEnabledFor(logging.DEBUG) or (step > 5 and step % 20 != 0):
            return
        top = [
            f"{int(i)}:{scores[i]:.2f}:{self.tokenizer.decode([int(i)])!r}"
            for i in ranked_ids(scores, 5)
        ]
        logger.debug("Step %d: top5=[%s] chosen=%d", step, ", ".join(top), chosen)
