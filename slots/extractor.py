"""
Slot Extractor — turns an utterance into a partial map of slot values.

Given the slots the current step expects (slot name → validator id), the
extractor tries cue patterns for each validator first ("my number is …",
"pincode …", a bare 10-digit run) and validates every candidate substring;
when no cue yields a valid value it validates the whole utterance.

Contract, shared with any replacement extractor:
  - the result only contains slots that were found and validated
  - an absent key means "no information given", never an empty string

The same module carries the other utterance classifiers the engine needs:
confirmation (affirm / deny / unclear), ordered keyword intents, explicit
language requests and frustration.
"""
from __future__ import annotations

import re
import structlog
from enum import Enum
from typing import Iterable, Mapping, NamedTuple, Optional, Sequence, Union

from models.errors import ValidationError
from slots.lexicon import (
    AFFIRM_PHRASES, DENY_PHRASES, FRUSTRATION_PHRASES,
    LANGUAGE_FILLERS, LANGUAGE_REQUESTS,
)
from slots.validators import ValidatorRegistry
from utils.text import any_phrase, contains_phrase, count_hits, remove_phrases

logger = structlog.get_logger()

ExpectedSlots = Union[Mapping[str, str], Iterable[str]]


# ──────────────────────────────────────────────────────────────
#  Cue patterns per validator id
# ──────────────────────────────────────────────────────────────

DEFAULT_PATTERNS: dict[str, list[str]] = {
    "phone": [
        r"(?:my|mera|phone|mobile|number|contact|नंबर|फोन)\s*(?:number\s*)?"
        r"(?:(?:is|hai|h)\b|:)?\s*(\+?\d[\d\s\-]{8,14}\d)",
        r"(?<!\d)(\+?\d[\d\s\-]{8,14}\d)(?!\d)",
    ],
    "pincode": [
        r"(?:pin\s*code|pincode|pin|postal\s*code|zip|पिन)\s*(?:(?:is|hai|h)\b|:)?\s*(\d[\d\s]{4,7}\d)",
        r"(?<!\d)(\d{6})(?!\d)",
    ],
    "email": [
        r"([\w.+\-]+@[\w\-]+(?:\.[\w\-]+)+)",
    ],
    "name": [
        r"\b(?:my name is|i am|this is|mera naam|naam)\s*(?:(?:is|hai|h)\b|:)?\s*"
        r"([A-Za-z]+(?:\s+[A-Za-z]+){0,3}?)(?=\s+(?:and|from|here|speaking)\b|\s*[,.!?]|\s*$)",
        r"\b(?:i'm|im)\s+([A-Za-z]+(?:\s+[A-Za-z]+){0,3}?)(?=\s+(?:and|from|here|speaking)\b|\s*[,.!?]|\s*$)",
    ],
}


class Confirmation(str, Enum):
    AFFIRM = "affirm"
    DENY = "deny"
    UNCLEAR = "unclear"


class LanguageRequest(NamedTuple):
    language: str
    exclusive: bool     # the utterance asked for nothing else


# ──────────────────────────────────────────────────────────────
#  Classifiers
# ──────────────────────────────────────────────────────────────

def classify_confirmation(utterance: str) -> Confirmation:
    """
    Negations are removed before looking for affirmations, so "not correct"
    is a denial rather than both. An utterance carrying both is unclear.
    """
    text = utterance or ""
    denied = any_phrase(text, DENY_PHRASES)
    remainder = remove_phrases(text, DENY_PHRASES) if denied else text
    affirmed = any_phrase(remainder, AFFIRM_PHRASES)
    if affirmed and not denied:
        return Confirmation.AFFIRM
    if denied and not affirmed:
        return Confirmation.DENY
    return Confirmation.UNCLEAR


def match_intent(utterance: str, intents: Sequence[tuple[str, Sequence[str]]]) -> Optional[str]:
    """The first intent with the highest non-zero keyword hit count wins."""
    best: Optional[str] = None
    best_hits = 0
    for name, keywords in intents:
        hits = count_hits(utterance or "", keywords)
        if hits > best_hits:
            best, best_hits = name, hits
    return best


def detect_language_request(utterance: str) -> Optional[LanguageRequest]:
    """Only explicit request phrases count; a bare language name does not."""
    text = utterance or ""
    for code, phrases in LANGUAGE_REQUESTS.items():
        for phrase in sorted(phrases, key=len, reverse=True):
            if contains_phrase(text, phrase):
                residual = remove_phrases(text, [phrase, *LANGUAGE_FILLERS])
                residual = re.sub(r"[^\w]+", "", residual)
                return LanguageRequest(code, exclusive=not residual)
    return None


def detect_frustration(utterance: str) -> bool:
    return any_phrase(utterance or "", FRUSTRATION_PHRASES)


# ──────────────────────────────────────────────────────────────
#  Extractor
# ──────────────────────────────────────────────────────────────

class SlotExtractor:
    """
    Validator-backed slot extraction. Subclass or replace with any object
    exposing the same `extract()` and `require()` contract.
    """

    def __init__(
        self,
        validators: Optional[ValidatorRegistry] = None,
        patterns: Optional[Mapping[str, Sequence[str]]] = None,
    ):
        self.validators = validators or ValidatorRegistry()
        merged = {k: list(v) for k, v in DEFAULT_PATTERNS.items()}
        for validator_id, extra in (patterns or {}).items():
            merged.setdefault(validator_id, [])
            merged[validator_id] = list(extra) + merged[validator_id]
        self._patterns = {
            k: [re.compile(p, re.IGNORECASE) for p in v] for k, v in merged.items()
        }

    @staticmethod
    def _normalize_expected(expected: ExpectedSlots) -> dict[str, str]:
        if isinstance(expected, Mapping):
            return dict(expected)
        return {slot: slot for slot in expected}

    def extract(self, utterance: Optional[str], expected: ExpectedSlots) -> dict[str, str]:
        values, _ = self.extract_with_errors(utterance, expected)
        return values

    def extract_with_errors(
        self, utterance: Optional[str], expected: ExpectedSlots,
    ) -> tuple[dict[str, str], dict[str, str]]:
        """Returns (values, rejection reasons) keyed by slot name."""
        values: dict[str, str] = {}
        errors: dict[str, str] = {}
        if not utterance or not utterance.strip():
            return values, errors

        for slot, validator_id in self._normalize_expected(expected).items():
            value, reason = self._extract_one(utterance, validator_id)
            if value is not None:
                values[slot] = value
            else:
                errors[slot] = reason
                logger.debug("slot_not_extracted", slot=slot,
                             validator=validator_id, reason=reason)
        return values, errors

    def require(self, utterance: Optional[str], slot: str, validator_id: str) -> str:
        """The value for one slot, or ValidationError carrying the rejection reason."""
        values, errors = self.extract_with_errors(utterance, {slot: validator_id})
        if slot not in values:
            raise ValidationError(slot, errors.get(slot, ""), raw=utterance or "")
        return values[slot]

    def _extract_one(self, utterance: str, validator_id: str) -> tuple[Optional[str], str]:
        for pattern in self._patterns.get(validator_id, []):
            for match in pattern.finditer(utterance):
                candidate = match.group(1).strip()
                result = self.validators.validate(validator_id, candidate)
                if result:
                    return result.value, ""
        result = self.validators.validate(validator_id, utterance)
        if result:
            return result.value, ""
        return None, result.reason

    # Classifiers are exposed on the instance so a replacement extractor can
    # override them together with extraction.

    def classify_confirmation(self, utterance: str) -> Confirmation:
        return classify_confirmation(utterance)

    def match_intent(self, utterance: str, intents: Sequence[tuple[str, Sequence[str]]]) -> Optional[str]:
        return match_intent(utterance, intents)
