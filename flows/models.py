"""
Flow Definition Models — declarative conversation scripts.

A flow is a graph of steps. Each step is one of five kinds, modelled as a
tagged union on `kind` so every variant carries exactly the fields its
semantics need:

  message:  say something, advance via `next`
  input:    collect one slot through a named validator
  confirm:  affirm → `confirm_next`, deny → `deny_next` (clears `slots`)
  intent:   ordered keyword table → per-intent target, else `default_next`
  action:   report an action name to the caller, advance via `next`

Flow document (YAML or JSON):

    id: lead_capture
    start_step: greeting
    default_language: en
    supported_languages: [en, hi]
    agent: {name: Ava, company: Acme Motors}
    steps:
      greeting:
        kind: message
        text: {en: "Hi, I'm {{agent_name}} from {{agent_company}}.", hi: "..."}
        next: collect_name
      collect_name:
        kind: input
        slot: name
        validator: name
        text: "May I know your name?"
        retry_text: "Sorry, could you tell me your name again?"
        next: collect_phone

`steps` may also be a list of step bodies carrying an `id`. Text may be a
plain string (any language) or a per-language map. `next` absent means
the flow completes after the step.
"""
from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models.schemas import ESCALATE, FLOW_COMPLETE, TERMINAL_STEPS
from slots.lexicon import LANGUAGE_NAMES

ANY_LANGUAGE = "*"


class StepKind(str, Enum):
    MESSAGE = "message"
    INPUT = "input"
    CONFIRM = "confirm"
    INTENT = "intent"
    ACTION = "action"


def _coerce_text(value: Any) -> Any:
    if value is None:
        return {}
    if isinstance(value, str):
        return {ANY_LANGUAGE: value}
    return value


def pick_language(variants: dict[str, str], language: str, default_language: str = "en") -> str:
    """Requested language, then the flow default, then English, then anything."""
    for code in (language, default_language, "en", ANY_LANGUAGE):
        if code and variants.get(code):
            return variants[code]
    for value in variants.values():
        if value:
            return value
    return ""


# ──────────────────────────────────────────────────────────────
#  Steps
# ──────────────────────────────────────────────────────────────

class BaseStep(BaseModel):
    """Fields shared by every step kind."""
    model_config = ConfigDict(extra="forbid")

    waits_for_input: ClassVar[bool] = True

    id: str = ""
    text: dict[str, str] = {}
    retry_text: dict[str, str] = {}
    next: Optional[str] = None
    generate: bool = False            # phrase via the external generator
    instruction: str = ""             # extra guidance for the generator
    description: str = ""

    @field_validator("text", "retry_text", mode="before")
    @classmethod
    def _coerce_variants(cls, value: Any) -> Any:
        return _coerce_text(value)

    @property
    def step_kind(self) -> StepKind:
        return StepKind(self.kind)

    @property
    def next_target(self) -> str:
        return self.next or FLOW_COMPLETE

    def transition_targets(self) -> list[str]:
        return [self.next_target]

    def skip_target(self) -> str:
        """Where to go when this step is forbidden but gets advanced into."""
        return self.next_target


class MessageStep(BaseStep):
    kind: Literal["message"] = "message"
    waits_for_input: ClassVar[bool] = False


class ActionStep(BaseStep):
    kind: Literal["action"] = "action"
    waits_for_input: ClassVar[bool] = False

    action: str
    params: dict[str, Any] = {}


class InputStep(BaseStep):
    kind: Literal["input"] = "input"

    slot: str
    validator: Optional[str] = None   # defaults to the slot name

    @property
    def validator_id(self) -> str:
        return self.validator or self.slot


class ConfirmStep(BaseStep):
    kind: Literal["confirm"] = "confirm"

    confirm_next: Optional[str] = None
    deny_next: str
    slots: list[str] = []             # empty = every unconfirmed collected slot

    @property
    def affirm_target(self) -> str:
        return self.confirm_next or self.next_target

    def transition_targets(self) -> list[str]:
        return [self.affirm_target, self.deny_next]

    def skip_target(self) -> str:
        return self.affirm_target


class IntentOption(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    keywords: list[str]
    next: str


class IntentStep(BaseStep):
    kind: Literal["intent"] = "intent"

    intents: list[IntentOption]
    default_next: str
    slot: Optional[str] = None        # store the matched intent name here

    @field_validator("intents", mode="before")
    @classmethod
    def _intents_from_mapping(cls, value: Any) -> Any:
        # {buy: {keywords: [...], next: x}} keeps declaration order
        if isinstance(value, dict):
            return [{"name": name, **body} for name, body in value.items()]
        return value

    def transition_targets(self) -> list[str]:
        return [opt.next for opt in self.intents] + [self.default_next]

    def skip_target(self) -> str:
        return self.default_next


Step = Annotated[
    Union[MessageStep, InputStep, ConfirmStep, IntentStep, ActionStep],
    Field(discriminator="kind"),
]


# ──────────────────────────────────────────────────────────────
#  Canned messages
# ──────────────────────────────────────────────────────────────

DEFAULT_MESSAGES: dict[str, dict[str, str]] = {
    "complete": {
        "en": "Thank you for your time. Is there anything else I can help you with?",
        "hi": "आपके समय के लिए धन्यवाद। क्या मैं आपकी और कोई मदद कर सकती हूँ?",
    },
    "escalated": {
        "en": "You're being transferred to a human agent. Please hold.",
        "hi": "आपको एक प्रतिनिधि से जोड़ा जा रहा है। कृपया प्रतीक्षा करें।",
    },
    "frustration": {
        "en": "I understand your frustration. Let me connect you with a human agent who can better assist you.",
        "hi": "मैं आपकी परेशानी समझती हूँ। मैं आपको एक प्रतिनिधि से जोड़ रही हूँ।",
    },
    "max_retries": {
        "en": "I'm having trouble understanding. Let me connect you with a human agent.",
        "hi": "मुझे समझने में कठिनाई हो रही है। मैं आपको एक प्रतिनिधि से जोड़ रही हूँ।",
    },
    "retry": {
        "en": "I didn't quite catch that. Could you please repeat?",
        "hi": "माफ़ कीजिए, मैं समझ नहीं पाई। क्या आप दोहरा सकते हैं?",
    },
    "unclear_confirmation": {
        "en": "I didn't understand. Please say yes or no.",
        "hi": "मैं समझ नहीं पाई। कृपया हाँ या नहीं कहें।",
    },
    "apology": {
        "en": "Sorry, something went wrong on our side. Let me connect you with a human agent.",
        "hi": "क्षमा करें, हमारी ओर से कुछ गड़बड़ हुई। मैं आपको एक प्रतिनिधि से जोड़ रही हूँ।",
    },
    "not_found": {
        "en": "This conversation has ended or expired. Please start a new one.",
        "hi": "यह बातचीत समाप्त हो चुकी है। कृपया नई बातचीत शुरू करें।",
    },
}


def default_message(key: str, language: str = "en") -> str:
    return pick_language(DEFAULT_MESSAGES.get(key, {}), language)


# ──────────────────────────────────────────────────────────────
#  Flow Definition
# ──────────────────────────────────────────────────────────────

class AgentPersona(BaseModel):
    """Who the agent is; every field is also a {{placeholder}}."""
    model_config = ConfigDict(extra="allow")

    name: str = "Ava"
    tone: str = "warm"
    style: str = "short"
    company: str = ""


class FlowDefinition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    name: str = ""
    description: str = ""
    version: str = "1"
    start_step: str
    default_language: str = "en"
    supported_languages: list[str] = []   # empty = any known language
    max_retries: Optional[int] = None
    max_confirmations: Optional[int] = None
    agent: AgentPersona = Field(default_factory=AgentPersona)
    messages: dict[str, dict[str, str]] = {}
    steps: dict[str, Step]

    @field_validator("messages", mode="before")
    @classmethod
    def _coerce_messages(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {k: _coerce_text(v) for k, v in value.items()}
        return value

    @field_validator("steps", mode="before")
    @classmethod
    def _steps_by_id(cls, value: Any) -> Any:
        if isinstance(value, list):
            by_id: dict[str, Any] = {}
            for body in value:
                step_id = body.get("id") if isinstance(body, dict) else None
                if not step_id:
                    raise ValueError("every step in a step list needs an 'id'")
                if step_id in by_id:
                    raise ValueError(f"duplicate step id '{step_id}'")
                by_id[step_id] = body
            return by_id
        if isinstance(value, dict):
            out = {}
            for step_id, body in value.items():
                if isinstance(body, dict):
                    if body.get("id") not in (None, "", step_id):
                        raise ValueError(
                            f"step '{step_id}' declares mismatched id '{body['id']}'"
                        )
                    body = {**body, "id": step_id}
                out[step_id] = body
            return out
        return value

    @model_validator(mode="after")
    def _resolve_any_language(self) -> "FlowDefinition":
        for step in self.steps.values():
            for variants in (step.text, step.retry_text):
                if ANY_LANGUAGE in variants:
                    variants.setdefault(self.default_language, variants.pop(ANY_LANGUAGE))
        for variants in self.messages.values():
            if ANY_LANGUAGE in variants:
                variants.setdefault(self.default_language, variants.pop(ANY_LANGUAGE))
        return self

    # ── Lookups ───────────────────────────────────────────

    @property
    def step_ids(self) -> list[str]:
        return list(self.steps)

    def step(self, step_id: str) -> BaseStep:
        return self.steps[step_id]

    def has_step(self, step_id: str) -> bool:
        return step_id in self.steps

    def index_of(self, step_id: str) -> int:
        """Declaration position; terminals sort after every step."""
        try:
            return self.step_ids.index(step_id)
        except ValueError:
            return len(self.steps)

    def supports_language(self, code: str) -> bool:
        if self.supported_languages:
            return code in self.supported_languages
        return code in LANGUAGE_NAMES

    def message(self, key: str, language: str) -> str:
        override = self.messages.get(key)
        if override:
            return pick_language(override, language, self.default_language)
        return default_message(key, language)

    @staticmethod
    def is_terminal(step_id: str) -> bool:
        return step_id in TERMINAL_STEPS


__all__ = [
    "ANY_LANGUAGE", "ESCALATE", "FLOW_COMPLETE", "TERMINAL_STEPS",
    "StepKind", "BaseStep", "MessageStep", "InputStep", "ConfirmStep",
    "IntentOption", "IntentStep", "ActionStep", "Step",
    "AgentPersona", "FlowDefinition", "DEFAULT_MESSAGES",
    "default_message", "pick_language",
]
