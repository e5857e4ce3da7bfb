"""Special-token ids of a Whisper vocabulary."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

# Whisper multilingual (v1/v2) ids, used when neither vocab nor config has them.
DEFAULT_EOT = 50257
DEFAULT_SOT = 50258
DEFAULT_ENGLISH = 50259
DEFAULT_TRANSLATE = 50358
DEFAULT_TRANSCRIBE = 50359
DEFAULT_NO_TIMESTAMPS = 50363

_LANGUAGE_TOKEN = re.compile(r"^<\|([a-z]{2,3})\|>$")


def _strip_marker(code: str) -> str:
    code = code.strip().lower()
    if code.startswith("<|") and code.endswith("|>"):
        code = code[2:-2]
    return code


@dataclass(frozen=True)
class TokenMap:
    """Immutable special-token ids; language ids keyed by code ('en', 'de', ...)."""

    sot: int = DEFAULT_SOT
    eot: int = DEFAULT_EOT
    transcribe: int = DEFAULT_TRANSCRIBE
    translate: int = DEFAULT_TRANSLATE
    no_timestamps: int = DEFAULT_NO_TIMESTAMPS
    languages: Mapping[str, int] = field(default_factory=lambda: {"en": DEFAULT_ENGLISH})

    @property
    def english(self) -> int:
        return self.languages.get("en", DEFAULT_ENGLISH)

    def language_id(self, code: Optional[str]) -> int:
        """Id of `<|code|>`; unknown or empty codes fall back to English."""
        if not code:
            return self.english
        return self.languages.get(_strip_marker(code), self.english)

    def task_id(self, translate: bool) -> int:
        return self.translate if translate else self.transcribe

    @classmethod
    def from_vocab(
        cls,
        vocab: Mapping[str, int],
        generation_config: Optional[Mapping[str, Any]] = None,
    ) -> "TokenMap":
        """Build from a token->id vocabulary, then apply generation_config.json values."""
        gen = generation_config or {}

        def lookup(token: str, default: int) -> int:
            value = vocab.get(token)
            return int(value) if value is not None else default

        languages: dict[str, int] = {}
        for token, token_id in vocab.items():
            match = _LANGUAGE_TOKEN.match(token)
            if match:
                languages[match.group(1)] = int(token_id)
        for token, token_id in (gen.get("lang_to_id") or {}).items():
            if isinstance(token_id, int):
                languages[_strip_marker(token)] = token_id
        languages.setdefault("en", DEFAULT_ENGLISH)

        sot = lookup("<|startoftranscript|>", DEFAULT_SOT)
        eot = lookup("<|endoftext|>", DEFAULT_EOT)
        transcribe = lookup("<|transcribe|>", DEFAULT_TRANSCRIBE)
        translate = lookup("<|translate|>", DEFAULT_TRANSLATE)
        no_timestamps = lookup("<|notimestamps|>", DEFAULT_NO_TIMESTAMPS)

        # generation_config wins: some checkpoints (large-v3-turbo) shift these ids.
        if isinstance(gen.get("decoder_start_token_id"), int):
            sot = gen["decoder_start_token_id"]
        eos = gen.get("eos_token_id")
        if isinstance(eos, int):
            eot = eos
        if isinstance(gen.get("no_timestamps_token_id"), int):
            no_timestamps = gen["no_timestamps_token_id"]
        task_to_id = {str(k).lower(): v for k, v in (gen.get("task_to_id") or {}).items()}
        if isinstance(task_to_id.get("transcribe"), int):
            transcribe = task_to_id["transcribe"]
        if isinstance(task_to_id.get("translate"), int):
            translate = task_to_id["translate"]

        return cls(
            sot=sot,
            eot=eot,
            transcribe=transcribe,
            translate=translate,
            no_timestamps=no_timestamps,
            languages=languages,
        )
