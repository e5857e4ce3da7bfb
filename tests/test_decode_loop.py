"""Unit tests and toy example for the cached Whisper decode loop."""

from __future__ import annotations

import threading
import unittest
from typing import List

import numpy as np

from fake_sessions import (
    A,
    B,
    C,
    DE,
    ELLIPSIS,
    EOT,
    HELLO,
    NO_TIMESTAMPS,
    PROMPT,
    SOT,
    TOKEN_MAP,
    TRANSCRIBE,
    TRANSLATE,
    WORLD,
    FakeDecoderSession,
    FakeTokenizer,
    HIDDEN_SHAPE,
    pattern_script,
    scores,
)
from whisper_loop.decoder import (
    DecodeGuards,
    DecodeOptions,
    DecodeState,
    DecodingEngine,
    TokenPolicy,
    Transition,
)

HIDDEN = np.zeros(HIDDEN_SHAPE, dtype=np.float32)


def _engine(script, policy: TokenPolicy = TokenPolicy(sampling_steps=0), **session_kwargs) -> DecodingEngine:
    session = FakeDecoderSession(script, **session_kwargs)
    return DecodingEngine(
        session,
        FakeTokenizer(),
        TOKEN_MAP,
        policy=policy,
        rng=np.random.default_rng(0),
    )


def _state(generated: List[int]) -> DecodeState:
    state = DecodeState.start(PROMPT, window=15)
    for token in generated:
        state.accept(token)
    return state


class TestPrompt(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = _engine(pattern_script([A]))

    def test_default_prompt(self) -> None:
        self.assertEqual(self.engine.build_prompt(DecodeOptions()), [SOT, TOKEN_MAP.english, TRANSCRIBE, NO_TIMESTAMPS])

    def test_translate_language_and_timestamps(self) -> None:
        prompt = self.engine.build_prompt(DecodeOptions(language="de", translate=True, timestamps=True))
        self.assertEqual(prompt, [SOT, DE, TRANSLATE])

    def test_unknown_language_falls_back_to_english(self) -> None:
        prompt = self.engine.build_prompt(DecodeOptions(language="xx"))
        self.assertEqual(prompt[1], TOKEN_MAP.english)


class TestDecodeGuards(unittest.TestCase):
    def setUp(self) -> None:
        self.guards = DecodeGuards(FakeTokenizer(), TOKEN_MAP)

    def test_late_eot_terminates(self) -> None:
        state = _state([HELLO, WORLD, A])
        decision = self.guards.decide(state, scores({EOT: 5.0, HELLO: 4.0}), EOT)
        self.assertIs(decision.transition, Transition.TERMINATE)

    def test_early_eot_reselects_quality_candidate(self) -> None:
        state = _state([])
        decision = self.guards.decide(state, scores({EOT: 5.0, WORLD: 4.0}), EOT)
        self.assertIs(decision.transition, Transition.RESAMPLE)
        self.assertEqual(decision.token, WORLD)

    def test_early_eot_without_candidate_terminates(self) -> None:
        state = _state([])
        # Best non-EOT candidate is a single letter: too short to qualify.
        decision = self.guards.decide(state, scores({EOT: 5.0, A: 4.0}), EOT)
        self.assertIs(decision.transition, Transition.TERMINATE)

    def test_symbol_repeat_reselects(self) -> None:
        state = _state([ELLIPSIS])
        decision = self.guards.decide(state, scores({ELLIPSIS: 5.0, HELLO: 1.0}), ELLIPSIS)
        self.assertIs(decision.transition, Transition.RESAMPLE)
        self.assertEqual(decision.token, HELLO)
        self.assertFalse(decision.ban)

    def test_symbol_repeat_without_alternative_bans(self) -> None:
        state = _state([ELLIPSIS])
        decision = self.guards.decide(state, scores({ELLIPSIS: 5.0}, default=-np.inf), ELLIPSIS)
        self.assertIs(decision.transition, Transition.ACCEPT)
        self.assertEqual(decision.token, ELLIPSIS)
        self.assertTrue(decision.ban)

    def test_repeated_word_is_not_symbol_repeat(self) -> None:
        state = _state([HELLO])
        decision = self.guards.decide(state, scores({HELLO: 5.0}), HELLO)
        self.assertIs(decision.transition, Transition.ACCEPT)

    def test_trigram_loop_terminates(self) -> None:
        state = _state([A, B, C, A, B])
        decision = self.guards.decide(state, scores({C: 5.0}), C)
        self.assertIs(decision.transition, Transition.TERMINATE)

    def test_short_history_is_not_a_loop(self) -> None:
        state = _state([A, B])
        self.assertIsNone(self.guards.loop(state, C))


class TestDecodingEngine(unittest.TestCase):
    def test_repeating_trigram_stops_before_duplicate(self) -> None:
        engine = _engine(pattern_script([A, B, C]))
        fragments = list(engine.decode_chunk(HIDDEN))
        self.assertEqual(fragments, [" a", " b", " c", " a", " b"])

    def test_longer_repeating_ngrams_stop_before_duplicate(self) -> None:
        for n in (4, 5, 6):
            with self.subTest(n=n):
                cycle = list(range(5, 5 + n))
                engine = _engine(pattern_script(cycle))
                fragments = list(engine.decode_chunk(HIDDEN))
                expected = [f" word{i}" for i in cycle + cycle[:-1]]
                self.assertEqual(fragments, expected)

    def test_seven_token_cycle_is_not_a_loop(self) -> None:
        cycle = list(range(5, 12))
        engine = _engine(pattern_script(cycle))
        fragments = list(engine.decode_chunk(HIDDEN, DecodeOptions(max_tokens=len(PROMPT) + 30)))
        self.assertEqual(len(fragments), 30)
        self.assertEqual(fragments[:14], [f" word{i}" for i in cycle * 2])

    def test_nan_logits_end_chunk(self) -> None:
        engine = _engine(lambda history: scores({}, default=np.nan))
        with self.assertLogs("whisper_loop.decoder.decode_loop", level="WARNING"):
            self.assertEqual(list(engine.decode_chunk(HIDDEN)), [])
        self.assertEqual(len(engine.session.feeds), 1)

    def test_all_masked_logits_end_chunk(self) -> None:
        engine = _engine(lambda history: scores({}, default=-np.inf))
        with self.assertLogs("whisper_loop.decoder.decode_loop", level="WARNING"):
            self.assertEqual(list(engine.decode_chunk(HIDDEN)), [])

    def test_nan_logits_after_some_tokens_keep_earlier_fragments(self) -> None:
        def script(history):
            if len(history) - len(PROMPT) < 2:
                return scores({HELLO: 10.0})
            return scores({}, default=np.nan)

        engine = _engine(script)
        with self.assertLogs("whisper_loop.decoder.decode_loop", level="WARNING"):
            fragments = list(engine.decode_chunk(HIDDEN))
        self.assertEqual(fragments, [" hello", " hello"])

    def test_eot_first_with_no_alternative_yields_nothing(self) -> None:
        engine = _engine(lambda history: scores({EOT: 10.0}, default=-np.inf))
        self.assertEqual(list(engine.decode_chunk(HIDDEN)), [])

    def test_eot_first_with_only_symbol_candidates_yields_nothing(self) -> None:
        session = FakeDecoderSession(lambda history: scores({EOT: 10.0}, default=-1e9))
        engine = DecodingEngine(session, FakeTokenizer({i: "..." for i in range(50)}), TOKEN_MAP)
        self.assertEqual(list(engine.decode_chunk(HIDDEN)), [])
        self.assertEqual(len(session.feeds), 1)

    def test_early_eot_is_replaced_until_minimum_length(self) -> None:
        engine = _engine(lambda history: scores({EOT: 10.0, HELLO: 5.0}))
        fragments = list(engine.decode_chunk(HIDDEN))
        self.assertEqual(fragments, [" hello", " hello", " hello"])

    def test_symbol_never_emitted_twice_in_a_row(self) -> None:
        engine = _engine(lambda history: scores({ELLIPSIS: 10.0, HELLO: -3.0}))
        fragments = list(engine.decode_chunk(HIDDEN))
        self.assertEqual(fragments[:2], ["...", " hello"])
        for prev, cur in zip(fragments, fragments[1:]):
            self.assertFalse(prev == cur == "...")
        self.assertLess(len(fragments), 20)

    def test_banned_symbol_is_masked_for_rest_of_chunk(self) -> None:
        engine = _engine(lambda history: scores({ELLIPSIS: 10.0, EOT: -10.0}, default=-np.inf))
        fragments = list(engine.decode_chunk(HIDDEN))
        self.assertEqual(fragments, ["...", "..."])

    def test_cache_is_fed_back_wholesale(self) -> None:
        engine = _engine(pattern_script([A, B, C]))
        list(engine.decode_chunk(HIDDEN))
        feeds = engine.session.feeds

        first = feeds[0]
        self.assertEqual(first["input_ids"].tolist(), [PROMPT])
        self.assertEqual(first["input_ids"].dtype, np.int64)
        self.assertEqual(first["past_key_values.0.decoder.key"].shape, (1, 2, 0, 4))
        self.assertFalse(bool(first["use_cache_branch"][0]))

        second = feeds[1]
        self.assertEqual(second["input_ids"].tolist(), [[A]])
        self.assertEqual(second["past_key_values.0.decoder.key"].shape, (1, 2, len(PROMPT), 4))
        self.assertTrue(bool(second["use_cache_branch"][0]))
        self.assertEqual(engine.session.cache_reused, [False] + [True] * (len(feeds) - 1))

    def test_decoder_without_cache_branch_input(self) -> None:
        engine = _engine(pattern_script([A, B, C]), use_cache_branch=False)
        self.assertIsNone(engine.schema.use_cache_branch)
        fragments = list(engine.decode_chunk(HIDDEN))
        self.assertEqual(len(fragments), 5)
        self.assertNotIn("use_cache_branch", engine.session.feeds[0])

    def test_decoder_failure_ends_chunk_keeping_earlier_fragments(self) -> None:
        engine = _engine(pattern_script([A, B, C]), fail_at=2)
        with self.assertLogs("whisper_loop.decoder.decode_loop", level="WARNING"):
            fragments = list(engine.decode_chunk(HIDDEN))
        self.assertEqual(fragments, [" a", " b"])
        # Next chunk starts from an empty cache.
        fragments = list(engine.decode_chunk(HIDDEN))
        self.assertEqual(engine.session.feeds[3]["input_ids"].tolist(), [PROMPT])
        self.assertEqual(len(fragments), 5)

    def test_cancel_stops_promptly(self) -> None:
        engine = _engine(pattern_script([HELLO, WORLD, A, B, C]))
        cancel = threading.Event()
        fragments = []
        for fragment in engine.decode_chunk(HIDDEN, cancel=cancel):
            fragments.append(fragment)
            cancel.set()
        self.assertEqual(fragments, [" hello"])
        self.assertEqual(len(engine.session.feeds), 1)

    def test_max_tokens_includes_prompt(self) -> None:
        engine = _engine(pattern_script(list(range(5, 35))))
        fragments = list(engine.decode_chunk(HIDDEN, DecodeOptions(max_tokens=len(PROMPT) + 7)))
        self.assertEqual(len(fragments), 7)

    def test_sampling_steps_follow_dominant_token(self) -> None:
        engine = _engine(pattern_script([A, B, C], high=30.0), policy=TokenPolicy())
        fragments = list(engine.decode_chunk(HIDDEN))
        self.assertEqual(fragments, [" a", " b", " c", " a", " b"])


def run_toy_example() -> None:
    """Toy: decode a scripted 'hello world' and show the loop guard in action."""
    print("=== Toy example: cached decode loop ===\n")
    engine = _engine(pattern_script([HELLO, WORLD, A, B, C, HELLO, WORLD, A, B, C]))
    fragments = list(engine.decode_chunk(HIDDEN))
    print(f"Fragments: {fragments}")
    print(f"Decoder calls: {len(engine.session.feeds)}")
    print("Done.")


if __name__ == "__main__":
    run_toy_example()
    print("\n--- Running unit tests ---")
    unittest.main(argv=[""], exit=False, verbosity=2)
