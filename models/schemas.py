"""
Core data models for the FlowGuard turn engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


# Reserved transition targets. Every step transition resolves to a step id
# or one of these.
FLOW_COMPLETE = "flow_complete"
ESCALATE = "escalate"
TERMINAL_STEPS = frozenset({FLOW_COMPLETE, ESCALATE})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class TurnStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    ESCALATED = "escalated"
    NOT_FOUND = "not_found"


class EscalationReason(str, Enum):
    MAX_RETRIES = "max_retries"
    CUMULATIVE_FAILURES = "cumulative_failures"
    FRUSTRATION = "frustration"
    FLOW_DIRECTIVE = "flow_directive"        # a step transitioned to "escalate"
    FLOW_UNAVAILABLE = "flow_unavailable"
    INTERNAL_ERROR = "internal_error"


class ResponseKind(str, Enum):
    SPEAK = "SPEAK"
    SILENCE = "SILENCE"


class Violation(str, Enum):
    # Structural: the payload cannot be used at all
    NOT_JSON = "not_json"
    UNKNOWN_TYPE = "unknown_type"
    MISSING_TEXT = "missing_text"
    NOT_A_STRING = "not_a_string"
    EMPTY = "empty"
    TOO_LONG = "too_long"
    # Content: detectable after sanitizing, some are detachable
    GREETING = "greeting"
    CLOSING = "closing"
    MULTIPLE_QUESTIONS = "multiple_questions"
    AFTER_QUESTION = "text_after_question"
    TOO_MANY_SENTENCES = "too_many_sentences"
    MARKDOWN = "markdown"
    EXPLANATION = "explanation"


class TextSource(str, Enum):
    TEMPLATE = "template"       # trusted flow text, emitted as-is
    GENERATED = "generated"     # external generator output that passed the contract
    FALLBACK = "fallback"       # canonical text after the generator failed twice
    CANNED = "canned"           # fixed rule-layer message (handoff, closing, apology)


# ──────────────────────────────────────────────────────────────
#  Conversation State — one record per live conversation
# ──────────────────────────────────────────────────────────────

class ConversationState(BaseModel):
    """
    Explicit per-conversation state. Only the step executor and the rule
    layer mutate it, always on a private copy that is committed back to the
    store with a version check.
    """
    conversation_id: str
    flow_id: str
    current_step_id: str
    step_index: int = 0
    language: str = "en"
    language_locked: bool = False
    option_language: Optional[str] = None   # last language passed in TurnOptions

    completed_steps: list[str] = []
    forbidden_steps: set[str] = set()

    slots: dict[str, str] = {}
    confirmed: dict[str, bool] = {}

    step_retries: dict[str, int] = {}
    total_retries: int = 0
    confirmation_count: int = 0

    escalated: bool = False
    escalation_reason: Optional[str] = None
    escalated_at: Optional[datetime] = None
    completed: bool = False
    completed_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.escalated or self.completed

    @property
    def retry_count(self) -> int:
        return self.step_retries.get(self.current_step_id, 0)

    def is_forbidden(self, step_id: str) -> bool:
        return step_id in self.forbidden_steps

    def forbid(self, step_id: str) -> None:
        self.forbidden_steps.add(step_id)

    def mark_escalated(self, reason: str, now: Optional[datetime] = None) -> bool:
        """Returns False when the conversation was already terminal."""
        if self.is_terminal:
            return False
        self.escalated = True
        self.escalation_reason = reason
        self.escalated_at = now or utcnow()
        self.current_step_id = ESCALATE
        return True

    def mark_completed(self, now: Optional[datetime] = None) -> bool:
        if self.is_terminal:
            return False
        self.completed = True
        self.completed_at = now or utcnow()
        self.current_step_id = FLOW_COMPLETE
        return True

    def to_record(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        data["forbidden_steps"] = sorted(self.forbidden_steps)
        return data

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> "ConversationState":
        return cls.model_validate(data)


# ──────────────────────────────────────────────────────────────
#  Turn API
# ──────────────────────────────────────────────────────────────

class TurnOptions(BaseModel):
    flow_id: Optional[str] = None
    language: Optional[str] = None
    lock_language: bool = False


class TurnResult(BaseModel):
    text: str
    step_id: Optional[str] = None
    status: TurnStatus = TurnStatus.IN_PROGRESS
    slot_data: dict[str, str] = {}
    retry_count: int = 0
    language: str = "en"
    language_changed: bool = False
    escalation_reason: Optional[str] = None
    validation_error: Optional[str] = None
    actions: list[str] = []
    text_source: TextSource = TextSource.TEMPLATE


# ──────────────────────────────────────────────────────────────
#  Response Contract
# ──────────────────────────────────────────────────────────────

class ContractResult(BaseModel):
    """Outcome of checking one piece of text against the response contract."""
    kind: ResponseKind = ResponseKind.SPEAK
    text: str = ""                      # sanitized; empty unless valid
    raw: str = ""
    violations: list[Violation] = []    # everything detected
    remaining: list[Violation] = []     # still present after auto-fix
    sanitized: bool = False             # sanitizing changed the text
    auto_fixed: bool = False
    valid: bool = False
