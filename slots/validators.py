"""
Validator Registry — named, pluggable field validators.

Each validator maps a raw utterance (or a substring of one) to either a
normalized value or a rejection reason:

    registry = ValidatorRegistry()
    registry.validate("phone", "my number is 98765 43210")
    # → <ValidatorResult ok value='9876543210'>
    registry.validate("phone", "98-765")
    # → <ValidatorResult rejected reason='Please provide a valid 10-digit ...'>

New locales or domains add validators with `register()`; the step executor
only ever refers to them by name.
"""
from __future__ import annotations

import re
import structlog
from typing import Callable, Optional

from slots.lexicon import SPOKEN_DIGITS, SPOKEN_MULTIPLIERS

logger = structlog.get_logger()


class ValidatorResult:
    """Outcome of validating one raw value."""

    __slots__ = ("ok", "value", "reason")

    def __init__(self, ok: bool, value: Optional[str] = None, reason: str = ""):
        self.ok = ok
        self.value = value
        self.reason = reason

    @classmethod
    def accept(cls, value: str) -> "ValidatorResult":
        return cls(True, value=value)

    @classmethod
    def reject(cls, reason: str) -> "ValidatorResult":
        return cls(False, reason=reason)

    def __bool__(self):
        return self.ok

    def __repr__(self):
        if self.ok:
            return f"<ValidatorResult ok value={self.value!r}>"
        return f"<ValidatorResult rejected reason={self.reason!r}>"


Validator = Callable[[str], ValidatorResult]


# ──────────────────────────────────────────────────────────────
#  Helpers
# ──────────────────────────────────────────────────────────────

_TOKEN_SPLIT = re.compile(r"[\s,.;:\-]+")


def spoken_to_digits(text: str) -> str:
    """
    Replace spoken digit words with numerals ("nine eight double seven" →
    "9877"). Only whole tokens are converted, so "someone" stays intact.
    """
    out: list[str] = []
    repeat = 1
    for token in _TOKEN_SPLIT.split((text or "").lower()):
        if not token:
            continue
        if token in SPOKEN_MULTIPLIERS:
            repeat = SPOKEN_MULTIPLIERS[token]
            continue
        if token in SPOKEN_DIGITS:
            out.append(SPOKEN_DIGITS[token] * repeat)
        elif token.isdigit() and len(token) == 1:
            out.append(token * repeat)
        else:
            out.append(token)
        repeat = 1
    return " ".join(out)


def digits_only(text: str) -> str:
    return re.sub(r"\D", "", spoken_to_digits(text))


# ──────────────────────────────────────────────────────────────
#  Built-in validators
# ──────────────────────────────────────────────────────────────

PHONE_REASON = "Please provide a valid 10-digit mobile number starting with 6, 7, 8, or 9."
PINCODE_REASON = "Please provide a valid 6-digit pincode."
EMAIL_REASON = "Please provide a valid email address."
NAME_REASON = "Please tell me your name."
ADDRESS_REASON = "Please provide your complete address."
MODEL_REASON = "Please tell me which model you are interested in."
TEXT_REASON = "I didn't catch that."

_MOBILE = re.compile(r"^[6-9]\d{9}$")
_PINCODE = re.compile(r"^[1-9]\d{5}$")
_EMAIL = re.compile(r"[\w.+\-]+@[\w\-]+(?:\.[\w\-]+)+")

_NAME_PREFIX = re.compile(
    r"^(?:my name is|my name's|name is|i am|i'm|im|this is|it's|its|"
    r"hello|hi|hey|mera naam|naam|मेरा नाम|नाम|मैं)(?=[\s,:]|$)[\s,:]*",
    re.IGNORECASE,
)
_NAME_SUFFIX = re.compile(
    r"[\s,]+(?:here|speaking|calling|from\s+.*|hai|hoon|hun|है|हूँ|हूं)$",
    re.IGNORECASE,
)
# Devanagari vowel signs are not \w, so the block is listed explicitly.
_LETTER = r"(?:[^\W\d_]|[ऀ-ॿ])"
_NAME_SHAPE = re.compile(rf"^{_LETTER}+(?:[\s.'\-]+{_LETTER}+)*$")

_MODEL_PREFIX = re.compile(
    r"^(?:i want|i need|i'd like|i would like|i am interested in|i'm interested in|"
    r"interested in|i am looking for|i'm looking for|looking for)\s+(?:an?\s+|the\s+)?",
    re.IGNORECASE,
)


def validate_phone(raw: str) -> ValidatorResult:
    digits = digits_only(raw)
    if len(digits) == 12 and digits.startswith("91"):
        digits = digits[2:]
    elif len(digits) == 11 and digits.startswith("0"):
        digits = digits[1:]
    if _MOBILE.match(digits):
        return ValidatorResult.accept(digits)
    return ValidatorResult.reject(PHONE_REASON)


def validate_pincode(raw: str) -> ValidatorResult:
    digits = digits_only(raw)
    if _PINCODE.match(digits):
        return ValidatorResult.accept(digits)
    return ValidatorResult.reject(PINCODE_REASON)


def validate_email(raw: str) -> ValidatorResult:
    text = (raw or "").strip().lower()
    text = re.sub(r"\s+(?:at|@)\s+", "@", text)
    text = re.sub(r"\s+dot\s+", ".", text)
    match = _EMAIL.search(text)
    if match:
        return ValidatorResult.accept(match.group(0).rstrip("."))
    return ValidatorResult.reject(EMAIL_REASON)


def validate_name(raw: str) -> ValidatorResult:
    name = (raw or "").strip().strip(".,!?")
    # "hi, my name is Asha" has two lead-ins
    for _ in range(3):
        stripped = _NAME_PREFIX.sub("", name).strip()
        if stripped == name:
            break
        name = stripped
    name = _NAME_SUFFIX.sub("", name).strip().strip(".,!?")
    if len(name) < 2 or len(name) > 50 or len(name.split()) > 4:
        return ValidatorResult.reject(NAME_REASON)
    if not _NAME_SHAPE.match(name):
        return ValidatorResult.reject(NAME_REASON)
    if name.isascii():
        name = " ".join(part.capitalize() for part in name.split())
    return ValidatorResult.accept(name)


def validate_address(raw: str) -> ValidatorResult:
    address = re.sub(r"\s+", " ", (raw or "").strip())
    if len(address) < 5:
        return ValidatorResult.reject(ADDRESS_REASON)
    return ValidatorResult.accept(address)


def validate_model(raw: str) -> ValidatorResult:
    model = _MODEL_PREFIX.sub("", (raw or "").strip()).strip(" .,!?")
    if len(model) < 2 or len(model) > 50:
        return ValidatorResult.reject(MODEL_REASON)
    return ValidatorResult.accept(model)


def validate_text(raw: str) -> ValidatorResult:
    text = re.sub(r"\s+", " ", (raw or "").strip())
    if not text:
        return ValidatorResult.reject(TEXT_REASON)
    return ValidatorResult.accept(text)


def default_validators() -> dict[str, Validator]:
    return {
        "phone": validate_phone,
        "pincode": validate_pincode,
        "email": validate_email,
        "name": validate_name,
        "address": validate_address,
        "model": validate_model,
        "text": validate_text,
    }


# ──────────────────────────────────────────────────────────────
#  Registry
# ──────────────────────────────────────────────────────────────

class ValidatorRegistry:
    """Named validators, looked up by the id a flow step declares."""

    def __init__(self, include_defaults: bool = True):
        self._validators: dict[str, Validator] = {}
        if include_defaults:
            self._validators.update(default_validators())

    def register(self, name: str, validator: Validator, replace: bool = False):
        if name in self._validators and not replace:
            raise ValueError(f"Validator '{name}' is already registered")
        self._validators[name] = validator
        logger.debug("validator_registered", name=name)

    def get(self, name: str) -> Validator:
        try:
            return self._validators[name]
        except KeyError:
            raise KeyError(f"Unknown validator '{name}'") from None

    def validate(self, name: str, raw: Optional[str]) -> ValidatorResult:
        if raw is None or not raw.strip():
            return ValidatorResult.reject(TEXT_REASON)
        return self.get(name)(raw)

    def names(self) -> list[str]:
        return sorted(self._validators)

    def __contains__(self, name: str) -> bool:
        return name in self._validators
