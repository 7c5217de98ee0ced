from __future__ import annotations

import re
from typing import Iterable


WAKE_PHRASES: tuple[str, ...] = ("hey mentra",)

CANCELLATION_PHRASES: tuple[str, ...] = (
    "never mind",
    "nevermind",
    "cancel",
    "stop",
    "ignore that",
    "that was a mistake",
    "didn't want to activate you",
    "didn't mean to activate you",
    "false alarm",
    "go away",
    "not you",
    "wasn't talking to you",
    "ignore",
    "disregard",
    "didn't mean to",
    "didn't want to",
    "wasn't for you",
)


_PUNCT_RE = re.compile(r"[.,!?;:]")
_WS_RE = re.compile(r"\s+")


def clean_text(text: str) -> str:
    t = text.lower()
    t = _PUNCT_RE.sub("", t)
    t = _WS_RE.sub(" ", t).strip()
    return t


def _phrase_pattern(phrase: str) -> str:
    # Tolerate commas, periods and extra spaces between the words of a phrase.
    words = [re.escape(w) for w in phrase.split()]
    return r"\b" + r"[\s,\.]*".join(words) + r"\b"


class WakePhraseMatcher:
    """Detect, and strip, wake phrases and cancellation phrases in an utterance."""

    def __init__(
        self,
        wake_phrases: Iterable[str] = WAKE_PHRASES,
        cancellation_phrases: Iterable[str] = CANCELLATION_PHRASES,
    ) -> None:
        self.wake_phrases = tuple(clean_text(p) for p in wake_phrases if p.strip())
        self.cancellation_phrases = tuple(clean_text(p) for p in cancellation_phrases if p.strip())
        if not self.wake_phrases:
            raise ValueError("At least one wake phrase is required.")

        alternatives = "|".join(_phrase_pattern(p) for p in self.wake_phrases)
        self._strip_re = re.compile(rf".*?(?:{alternatives})[\s,\.!]*", re.IGNORECASE | re.DOTALL)
        self._ends_re = re.compile(rf"(?:{alternatives})$", re.IGNORECASE)
        self._contains_re = re.compile(alternatives, re.IGNORECASE)

    def has_wake_phrase(self, text: str) -> bool:
        return bool(self._contains_re.search(clean_text(text)))

    def ends_with_wake_phrase(self, text: str) -> bool:
        return bool(self._ends_re.search(clean_text(text)))

    def strip_wake_phrase(self, text: str) -> str:
        """
        Remove everything up to and including the first wake phrase.
        Text without a wake phrase is returned trimmed but otherwise unchanged.
        """
        return self._strip_re.sub("", text, count=1).strip()

    def is_cancellation(self, text: str) -> bool:
        """
        Multi-word phrases may appear anywhere; single words ("stop", "cancel")
        only count when they are the whole utterance, so "stop recording" is a query.
        """
        cleaned = clean_text(text)
        if not cleaned:
            return False
        for phrase in self.cancellation_phrases:
            if " " in phrase:
                if re.search(rf"\b{re.escape(phrase)}\b", cleaned):
                    return True
            elif cleaned == phrase:
                return True
        return False
