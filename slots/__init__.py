"""
Slot layer: named field validators plus the extractor that applies them
to utterances, and the keyword classifiers (confirmation, intent,
language request, frustration) the engine consults every turn.
"""
from slots.validators import ValidatorRegistry, ValidatorResult, default_validators
from slots.extractor import (
    Confirmation, LanguageRequest, SlotExtractor,
    classify_confirmation, detect_frustration, detect_language_request, match_intent,
)
