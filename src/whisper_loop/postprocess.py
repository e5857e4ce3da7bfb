"""Post-processing for decoded token text (byte-level BPE)."""

import re
import unicodedata

# GPT-2 byte-level BPE word-boundary marker
_BPE_SPACE = "\u0120"
_REPLACEMENT_CHAR = "\ufffd"


def normalize_token_text(raw: str) -> str:
    """Turn one decoded token into display text ('Ġ' -> space), keeping spacing."""
    if not raw:
        return ""
    return raw.replace(_BPE_SPACE, " ")


def clean_token_text(raw: str) -> str:
    """Normalized and stripped token text, used by the quality heuristics."""
    return normalize_token_text(raw).strip()


def alnum_ratio(text: str) -> float:
    """Share of letters/digits in `text` (0.0 for empty text)."""
    if not text:
        return 0.0
    return sum(ch.isalnum() for ch in text) / len(text)


def is_garbage_text(text: str) -> bool:
    """True for token text that should never be a top candidate.

    Handles:
    - empty text
    - very short text without letters/digits (e.g. '.', '>>')
    - non-ASCII symbol-only text (e.g. box-drawing, emoji fragments)
    - partial UTF-8 sequences (replacement char) and control characters
    """
    if not text:
        return True
    if len(text) <= 2 and not any(ch.isalnum() for ch in text):
        return True
    if _REPLACEMENT_CHAR in text:
        return True
    if any(unicodedata.category(ch).startswith("C") for ch in text):
        return True
    return all(
        ord(ch) > 127 and not ch.isalnum() and not unicodedata.category(ch).startswith("P")
        for ch in text
    )


def join_fragments(fragments) -> str:
    """Join streamed fragments into one transcript with tidy whitespace."""
    text = "".join(fragments)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    return text.strip()
