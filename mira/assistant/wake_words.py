"""
Wake phrase matching for noisy partial transcripts

Speech recognition rarely spells "hey mentra" the same way twice, so the
lexicon below lists the phonetic variants seen in practice. Matching is plain
substring containment against a normalized transcript: lower-cased, terminal
punctuation removed, whitespace collapsed. It is deliberately not
word-boundary aware.

Stripping removes everything up to and including the first wake phrase so
the remainder can be shown live and sent as the query.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable

LOGGER = logging.getLogger("mira-assistant.wake")

_WAKE_PHRASES_RAW = (
    "hey mentra", "he mentra", "hay mentra", "hai mentra", "hi mentra", "hei mentra",
    "hey mantra", "he mantra", "hey mentor", "he mentor", "hey menta", "he menta",
    "hey mental", "he mental", "hey center", "he center", "hey centro", "he centro",
    "hey menter", "he menter", "hey mentora", "he mentora", "hey mentro", "he mentro",
    "hey metra", "he metra", "hey metro", "he metro", "hey mentara", "he mentara",
    "hey mentrah", "he mentrah", "hey mentral", "he mentral", "hey mintra", "he mintra",
    "hey muntra", "he muntra", "hey montra", "he montra", "hey maintra", "he maintra",
    "hey motra", "he motra", "hey mencher", "he mencher", "hey mentcha", "he mentcha",
    "hey mentia", "he mentia", "hey mensra", "he mensra", "hey menstra", "he menstra",
    "hey menthra", "he menthra", "hey methera", "he methera", "hey menchera", "he menchera",
    "hey mentira", "he mentira", "hey mentore", "he mentore",
    "hey mentru", "he mentru", "hey mentri", "he mentri", "hey mentry", "he mentry",
    "hey mendtra", "he mendtra", "hey mentraw", "he mentraw", "hey mentree", "he mentree",
    "hey mentray", "he mentray", "hey mentera", "he mentera", "hey mentrala", "he mentrala",
    "hey mentula", "he mentula", "hey mentrali", "he mentrali",
    "hey-mentra", "he-mentra", "heymentra", "hementra", "ay mentra", "ey mentra",
    "yay mentra", "hey mentar", "he mentar", "hey mentir", "he mentir",
    "mentra", "menta",
)  # fmt: skip

_PUNCTUATION = re.compile(r"[.,!?;:]")
_WHITESPACE = re.compile(r"\s+")


def normalize(text: str | None) -> str:
    """Lower-case, drop punctuation, and collapse whitespace."""
    lowered = (text or "").lower()
    lowered = _PUNCTUATION.sub("", lowered)
    return _WHITESPACE.sub(" ", lowered).strip()


def _dedupe(phrases: Iterable[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for phrase in phrases:
        cleaned = normalize(phrase)
        if cleaned:
            seen.setdefault(cleaned, None)
    return tuple(seen)


DEFAULT_WAKE_PHRASES: tuple[str, ...] = _dedupe(_WAKE_PHRASES_RAW)


class WakeWordMatcher:
    """Matches and strips wake phrases from a fixed lexicon."""

    def __init__(self, phrases: Iterable[str] | None = None) -> None:
        self.phrases = _dedupe(phrases) if phrases else DEFAULT_WAKE_PHRASES
        if not self.phrases:
            raise ValueError("Wake phrase lexicon is empty")
        # Phrase words may be separated by spaces, commas or periods in raw text.
        patterns = ["[\\s,\\.]*".join(re.escape(word) for word in phrase.split(" ")) for phrase in self.phrases]
        self._strip_pattern = re.compile(rf"^.*?(?:{'|'.join(patterns)})[\s,\.!]*", re.IGNORECASE | re.DOTALL)

    def contains_wake_word(self, normalized: str) -> bool:
        lowered = normalized.lower()
        return any(phrase in lowered for phrase in self.phrases)

    def ends_with_wake_word(self, normalized: str) -> bool:
        cleaned = normalize(normalized)
        return any(cleaned.endswith(phrase) for phrase in self.phrases)

    def remainder_after_wake_word(self, text: str | None) -> str:
        """Text following the first wake phrase, or the trimmed input if none matched."""
        return self._strip_pattern.sub("", text or "", count=1).strip()

    def strip_wake_word(self, text: str | None) -> str:
        """Remove the wake phrase, never reducing non-empty input to nothing."""
        original = (text or "").strip()
        result = self.remainder_after_wake_word(text)
        if not result and original:
            LOGGER.debug("[wake] Wake phrase removal left nothing; keeping original text")
            return original
        if result != original:
            LOGGER.debug("[wake] Stripped wake phrase: %r -> %r", original, result)
        return result


_DEFAULT_MATCHER = WakeWordMatcher()


def contains_wake_word(normalized: str) -> bool:
    return _DEFAULT_MATCHER.contains_wake_word(normalized)


def ends_with_wake_word(normalized: str) -> bool:
    return _DEFAULT_MATCHER.ends_with_wake_word(normalized)


def strip_wake_word(text: str | None) -> str:
    return _DEFAULT_MATCHER.strip_wake_word(text)
