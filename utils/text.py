"""
Shared text helpers — used by the slot extractor, the flow registry,
the rule layer and the response contract validator.

Phrase matching is token-bounded: "no" must not match "not", and the Hindi
"ना" must not match inside "नाम". Latin-script phrases use \\w boundaries;
other scripts use whitespace/punctuation boundaries because their vowel
signs are not \\w.
"""
from __future__ import annotations

import re
from typing import Any, Iterable, Mapping

_WS = re.compile(r"\s+")
_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")
_SENTENCE_END = re.compile(r"(?<=[.!?।])\s+")
_EDGE = r"\s,.!?।;:\"'()"


def normalize(text: str) -> str:
    """Lower-case and collapse whitespace."""
    return _WS.sub(" ", (text or "").strip().lower())


def collapse_ws(text: str) -> str:
    return _WS.sub(" ", text or "").strip()


def phrase_pattern(phrase: str) -> re.Pattern:
    needle = re.escape(normalize(phrase))
    if phrase.isascii():
        return re.compile(rf"(?<!\w){needle}(?!\w)")
    return re.compile(rf"(?<![^{_EDGE}]){needle}(?![^{_EDGE}])")


def contains_phrase(text: str, phrase: str) -> bool:
    """True if `phrase` occurs in `text` as whole tokens, case-insensitively."""
    if not normalize(phrase):
        return False
    return phrase_pattern(phrase).search(normalize(text)) is not None


def count_hits(text: str, phrases: Iterable[str]) -> int:
    return sum(1 for p in phrases if contains_phrase(text, p))


def any_phrase(text: str, phrases: Iterable[str]) -> bool:
    return any(contains_phrase(text, p) for p in phrases)


def remove_phrases(text: str, phrases: Iterable[str]) -> str:
    """Normalize `text` and delete every occurrence of `phrases`, longest first."""
    result = normalize(text)
    for phrase in sorted((p for p in phrases if p.strip()), key=len, reverse=True):
        result = phrase_pattern(phrase).sub(" ", result)
    return collapse_ws(result)


def fill_placeholders(template: str, values: Mapping[str, Any]) -> str:
    """
    Replace {{key}} with values[key]. Unknown or empty keys are left intact
    so a missing slot is visible instead of silently blank.
    """
    def replacer(match: re.Match) -> str:
        value = values.get(match.group(1))
        if value is None or value == "":
            return match.group(0)
        return str(value)
    return _PLACEHOLDER.sub(replacer, template or "")


def split_sentences(text: str) -> list[str]:
    """Split on terminal punctuation, keeping the terminator with its sentence."""
    parts = _SENTENCE_END.split(collapse_ws(text))
    return [p for p in parts if p]
