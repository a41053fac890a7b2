"""
Keyword tables for the slot layer.

Every table is plain data so a deployment can extend it (new locales,
new phrasings) without touching matcher code.
"""
from __future__ import annotations


# ──────────────────────────────────────────────────────────────
#  Confirmation
# ──────────────────────────────────────────────────────────────

AFFIRM_PHRASES: list[str] = [
    "yes", "yeah", "yep", "yea", "ya", "yup", "ok", "okay", "sure", "right",
    "correct", "confirm", "confirmed", "absolutely", "definitely", "of course",
    "alright", "that's right", "haan", "han", "ji", "ji haan", "theek hai",
    "हाँ", "हां", "जी", "जी हाँ", "सही", "ठीक", "बिल्कुल",
]

DENY_PHRASES: list[str] = [
    "no", "nope", "nah", "wrong", "incorrect", "not correct", "change", "edit",
    "redo", "cancel", "negative", "nahi", "nahin", "galat",
    "नहीं", "ना", "गलत", "बदलो",
]


# ──────────────────────────────────────────────────────────────
#  Frustration / human handoff
# ──────────────────────────────────────────────────────────────

# Requests and complaints only; a bare "manager" or "angry" is ordinary content.
FRUSTRATION_PHRASES: list[str] = [
    "talk to human", "talk to a human", "speak to a human", "real person",
    "human agent", "talk to customer care", "connect me to customer care",
    "agent please", "talk to a manager", "speak to a manager", "get me a manager",
    "talk to a supervisor", "speak to a supervisor", "get me a supervisor",
    "this is useless", "you are not helping", "i am frustrated", "i'm frustrated",
    "i am angry", "i'm angry", "stop asking", "already told you", "i already said",
    "how many times", "insaan se baat", "इंसान से बात", "असली व्यक्ति",
    "मदद नहीं कर रहे", "बेकार है",
]


# ──────────────────────────────────────────────────────────────
#  Language requests
# ──────────────────────────────────────────────────────────────

LANGUAGE_NAMES: dict[str, str] = {
    "en": "English",
    "hi": "Hindi",
    "ta": "Tamil",
    "te": "Telugu",
    "kn": "Kannada",
    "ml": "Malayalam",
    "bn": "Bengali",
    "mr": "Marathi",
    "gu": "Gujarati",
    "pa": "Punjabi",
}

_NATIVE_REQUESTS: dict[str, list[str]] = {
    "hi": ["हिंदी में", "हिन्दी में", "हिंदी में बात"],
    "en": ["अंग्रेज़ी में", "अंग्रेजी में", "इंग्लिश में"],
}


def _request_phrases(name: str) -> list[str]:
    n = name.lower()
    return [
        f"speak in {n}", f"talk in {n}", f"reply in {n}", f"respond in {n}",
        f"switch to {n}", f"change to {n}", f"change language to {n}",
        f"in {n} please", f"{n} please", f"{n} mein", f"{n} me",
        f"can we speak {n}", f"do you speak {n}",
    ]


LANGUAGE_REQUESTS: dict[str, list[str]] = {
    code: _request_phrases(name) + _NATIVE_REQUESTS.get(code, [])
    for code, name in LANGUAGE_NAMES.items()
}

# Words that may surround a language request without carrying other content.
LANGUAGE_FILLERS: list[str] = [
    "please", "can you", "could you", "can we", "let's", "lets", "now",
    "kindly", "ok", "okay", "actually", "bolo", "kijiye", "कीजिए", "बोलिए",
]


# ──────────────────────────────────────────────────────────────
#  Spoken digits (whole words only)
# ──────────────────────────────────────────────────────────────

SPOKEN_DIGITS: dict[str, str] = {
    "zero": "0", "oh": "0", "one": "1", "two": "2", "three": "3", "four": "4",
    "five": "5", "six": "6", "seven": "7", "eight": "8", "nine": "9",
    "शून्य": "0", "एक": "1", "दो": "2", "तीन": "3", "चार": "4",
    "पांच": "5", "पाँच": "5", "छह": "6", "सात": "7", "आठ": "8", "नौ": "9",
}

SPOKEN_MULTIPLIERS: dict[str, int] = {"double": 2, "triple": 3}
