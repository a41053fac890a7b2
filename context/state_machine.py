"""
Step Executor — the conversation state machine.

States are the flow's step ids plus the terminals `flow_complete` and
`escalate`. Each step kind has one handler implementing

    evaluate(state, step, utterance) -> Transition

and the executor applies the transition to the state:

  ADVANCE  record slot updates/clears/confirmations, forbid the step if the
           handler asks for it, reset its retry counter, then enter the
           target. Entering a message or action step emits its text and
           chains onward until a step that waits for input (or a terminal)
           is reached. Entering a forbidden step skips along its skip target.
  FAIL     the step's input was unusable. At the retry ceiling the
           conversation escalates (the counter is never pushed past it);
           otherwise both counters increment and the retry prompt is sent.
  ESCALATE hand the conversation to the rule layer's escalation.

Terminal states are absorbing; the rule layer answers those turns before
the executor is ever called.

Flow:
    outcome = executor.start(state, flow)               # first turn
    outcome = executor.execute(state, flow, utterance)  # later turns
    outcome.segments → texts to speak, last one may be generated
"""
from __future__ import annotations

import structlog
from abc import ABC, abstractmethod
from typing import Any, Optional

from flows.models import (
    ActionStep, BaseStep, ConfirmStep, ESCALATE, FLOW_COMPLETE, FlowDefinition,
    InputStep, IntentStep, MessageStep, StepKind, pick_language,
)
from models.errors import ValidationError
from models.schemas import ConversationState, EscalationReason, TextSource
from rules.engine import RuleEnforcer
from slots.extractor import Confirmation, SlotExtractor
from utils.text import fill_placeholders

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Transition
# ──────────────────────────────────────────────────────────────

class Transition:
    """What a step handler decided for one utterance."""

    ADVANCE = "advance"
    FAIL = "fail"
    ESCALATE = "escalate"

    def __init__(
        self,
        kind: str,
        target: str = "",
        slot_updates: dict[str, str] = None,
        clear_slots: list[str] = None,
        confirm_slots: list[str] = None,
        forbid: bool = False,
        confirmation_attempt: bool = False,
        reason: str = "",
        matched: str = "",
    ):
        self.kind = kind
        self.target = target
        self.slot_updates = slot_updates or {}
        self.clear_slots = clear_slots or []
        self.confirm_slots = confirm_slots or []
        self.forbid = forbid
        self.confirmation_attempt = confirmation_attempt
        self.reason = reason
        self.matched = matched

    @classmethod
    def advance(cls, target: str, **kwargs) -> "Transition":
        return cls(cls.ADVANCE, target=target, **kwargs)

    @classmethod
    def fail(cls, reason: str = "") -> "Transition":
        return cls(cls.FAIL, reason=reason)

    @classmethod
    def escalate(cls, reason: str) -> "Transition":
        return cls(cls.ESCALATE, reason=reason)

    def __bool__(self):
        return self.kind == self.ADVANCE

    def __repr__(self):
        if self.kind == self.ADVANCE:
            return f"<Transition → {self.target}>"
        return f"<Transition {self.kind} reason={self.reason!r}>"


# ──────────────────────────────────────────────────────────────
#  Outcome
# ──────────────────────────────────────────────────────────────

class Segment:
    """One piece of reply text, tagged with the step that produced it."""

    __slots__ = ("step_id", "text", "source", "generate", "instruction")

    def __init__(self, step_id: str, text: str, source: TextSource = TextSource.TEMPLATE,
                 generate: bool = False, instruction: str = ""):
        self.step_id = step_id
        self.text = text
        self.source = source
        self.generate = generate
        self.instruction = instruction

    def __repr__(self):
        return f"<Segment {self.step_id} {self.source.value} {self.text[:30]!r}>"


class StepOutcome:
    """Everything one executor call produced for the caller."""

    def __init__(self):
        self.segments: list[Segment] = []
        self.actions: list[str] = []
        self.validation_error: Optional[str] = None
        self.retry_count: Optional[int] = None
        self.escalation_reason: Optional[str] = None

    @property
    def text(self) -> str:
        return " ".join(s.text for s in self.segments if s.text)

    @property
    def step_id(self) -> Optional[str]:
        return self.segments[-1].step_id if self.segments else None

    def emit(self, segment: Segment) -> None:
        if segment.text:
            self.segments.append(segment)


# ──────────────────────────────────────────────────────────────
#  Step handlers
# ──────────────────────────────────────────────────────────────

class StepHandler(ABC):
    kind: StepKind

    def __init__(self, extractor: SlotExtractor, rules: RuleEnforcer):
        self.extractor = extractor
        self.rules = rules

    @abstractmethod
    def evaluate(self, state: ConversationState, step: Any, utterance: str,
                 flow: FlowDefinition) -> Transition:
        ...


class MessageHandler(StepHandler):
    kind = StepKind.MESSAGE

    def evaluate(self, state, step: MessageStep, utterance, flow) -> Transition:
        return Transition.advance(step.next_target)


class ActionHandler(StepHandler):
    kind = StepKind.ACTION

    def evaluate(self, state, step: ActionStep, utterance, flow) -> Transition:
        return Transition.advance(step.next_target)


class InputHandler(StepHandler):
    kind = StepKind.INPUT

    def evaluate(self, state, step: InputStep, utterance, flow) -> Transition:
        try:
            value = self.extractor.require(utterance, step.slot, step.validator_id)
        except ValidationError as e:
            return Transition.fail(e.reason)
        return Transition.advance(step.next_target, slot_updates={step.slot: value}, forbid=True)


class ConfirmHandler(StepHandler):
    kind = StepKind.CONFIRM

    def evaluate(self, state, step: ConfirmStep, utterance, flow) -> Transition:
        answer = self.extractor.classify_confirmation(utterance)
        if answer == Confirmation.UNCLEAR:
            return Transition.fail("unclear_confirmation")

        slots = step.slots or [s for s in state.slots if not state.confirmed.get(s)]
        exhausted = state.confirmation_count + 1 >= self.rules.max_confirmations(flow)
        if answer == Confirmation.AFFIRM:
            return Transition.advance(step.affirm_target, confirm_slots=slots,
                                      confirmation_attempt=True, forbid=exhausted,
                                      matched=answer.value)
        return Transition.advance(step.deny_next, clear_slots=slots,
                                  confirmation_attempt=True, forbid=exhausted,
                                  matched=answer.value)


class IntentHandler(StepHandler):
    kind = StepKind.INTENT

    def evaluate(self, state, step: IntentStep, utterance, flow) -> Transition:
        table = [(opt.name, opt.keywords) for opt in step.intents]
        name = self.extractor.match_intent(utterance, table)
        if name is None:
            return Transition.advance(step.default_next)
        option = next(opt for opt in step.intents if opt.name == name)
        updates = {step.slot: name} if step.slot else {}
        return Transition.advance(option.next, slot_updates=updates, matched=name)


_HANDLER_TYPES: dict[StepKind, type[StepHandler]] = {
    handler.kind: handler
    for handler in (MessageHandler, ActionHandler, InputHandler, ConfirmHandler, IntentHandler)
}

_missing = set(StepKind) - set(_HANDLER_TYPES)
if _missing:
    raise RuntimeError(f"No step handler for kinds: {sorted(k.value for k in _missing)}")


# ──────────────────────────────────────────────────────────────
#  Executor
# ──────────────────────────────────────────────────────────────

class StepExecutor:
    """
    Applies step semantics to a conversation state. Mutates the state it
    is given; callers pass a private copy and commit it afterwards.
    """

    def __init__(self, rules: RuleEnforcer, extractor: Optional[SlotExtractor] = None):
        self.rules = rules
        self.extractor = extractor or SlotExtractor()
        self._handlers = {kind: cls(self.extractor, rules) for kind, cls in _HANDLER_TYPES.items()}

    # ── Entry points ──────────────────────────────────────

    def start(self, state: ConversationState, flow: FlowDefinition) -> StepOutcome:
        """First turn: enter the start step and emit the opening text."""
        outcome = StepOutcome()
        self._enter(state, flow, flow.start_step, outcome)
        logger.info("conversation_started", conversation_id=state.conversation_id,
                    flow_id=flow.id, step_id=state.current_step_id)
        return outcome

    def execute(self, state: ConversationState, flow: FlowDefinition, utterance: str,
                self_heal: bool = False) -> StepOutcome:
        outcome = StepOutcome()
        if state.is_terminal:
            return outcome

        if self_heal and state.is_forbidden(state.current_step_id):
            # Move off the forbidden step without speaking, then handle the
            # utterance where we land.
            step = flow.step(state.current_step_id)
            self._enter(state, flow, step.skip_target(), outcome, emit=False)
            if state.is_terminal:
                self._close_out(state, flow, outcome)
                return outcome

        step = flow.step(state.current_step_id)
        transition = self._handlers[step.step_kind].evaluate(state, step, utterance or "", flow)
        logger.debug("step_evaluated", conversation_id=state.conversation_id,
                     step_id=step.id, kind=step.kind, transition=repr(transition))

        if transition.kind == Transition.ADVANCE:
            self._apply_advance(state, flow, step, transition, outcome)
        elif transition.kind == Transition.FAIL:
            self._apply_failure(state, flow, step, transition, outcome)
        else:
            self._escalate(state, flow, transition.reason, outcome)
        return outcome

    def reprompt(self, state: ConversationState, flow: FlowDefinition) -> StepOutcome:
        """Repeat the current step's prompt without changing anything."""
        outcome = StepOutcome()
        if not state.is_terminal:
            step = flow.step(state.current_step_id)
            outcome.emit(self._segment(state, flow, step))
        return outcome

    # ── Transitions ───────────────────────────────────────

    def _apply_advance(self, state: ConversationState, flow: FlowDefinition, step: BaseStep,
                       transition: Transition, outcome: StepOutcome) -> None:
        for slot, value in transition.slot_updates.items():
            state.slots[slot] = value
            state.confirmed[slot] = False
            logger.info("slot_collected", conversation_id=state.conversation_id,
                        step_id=step.id, slot=slot)
        for slot in transition.clear_slots:
            state.slots.pop(slot, None)
            state.confirmed.pop(slot, None)
        for slot in transition.confirm_slots:
            if slot in state.slots:
                state.confirmed[slot] = True
        if transition.confirmation_attempt:
            state.confirmation_count += 1
        if transition.forbid:
            state.forbid(step.id)
        if transition.matched:
            logger.info("step_matched", conversation_id=state.conversation_id,
                        step_id=step.id, matched=transition.matched,
                        target=transition.target)

        state.step_retries.pop(step.id, None)
        state.completed_steps.append(step.id)
        self._enter(state, flow, transition.target, outcome)

    def _apply_failure(self, state: ConversationState, flow: FlowDefinition, step: BaseStep,
                       transition: Transition, outcome: StepOutcome) -> None:
        count = state.step_retries.get(step.id, 0)
        limit = self.rules.max_retries(flow)
        outcome.validation_error = transition.reason or None

        if count >= limit:
            outcome.retry_count = count
            logger.info("retry_limit_reached", conversation_id=state.conversation_id,
                        step_id=step.id, retries=count, limit=limit)
            self._escalate(state, flow, EscalationReason.MAX_RETRIES.value, outcome)
            return

        state.step_retries[step.id] = count + 1
        state.total_retries += 1
        outcome.retry_count = count + 1
        logger.info("step_retry", conversation_id=state.conversation_id,
                    step_id=step.id, retry=count + 1, limit=limit, reason=transition.reason)
        outcome.emit(self._retry_segment(state, flow, step))

    def _escalate(self, state: ConversationState, flow: FlowDefinition, reason: str,
                  outcome: StepOutcome) -> None:
        self.rules.escalate(state, reason)
        outcome.escalation_reason = state.escalation_reason
        if reason == EscalationReason.FLOW_DIRECTIVE.value and outcome.segments:
            # The step that routed here already said what happens next
            return
        outcome.emit(Segment(
            state.current_step_id,
            self.rules.escalation_message(flow, reason, state.language),
            source=TextSource.CANNED,
        ))

    def _enter(self, state: ConversationState, flow: FlowDefinition, target: str,
               outcome: StepOutcome, emit: bool = True) -> None:
        """Move to `target`, chaining through steps that don't wait for input."""
        seen: set[str] = set()
        while True:
            if target == FLOW_COMPLETE:
                state.mark_completed(self.rules.now())
                logger.info("conversation_completed", conversation_id=state.conversation_id,
                            flow_id=flow.id, slots=sorted(state.slots))
                return
            if target == ESCALATE:
                self._escalate(state, flow, EscalationReason.FLOW_DIRECTIVE.value, outcome)
                return
            if target in seen:
                # Every step on this chain is forbidden or passive
                logger.error("flow_dead_end", conversation_id=state.conversation_id,
                             flow_id=flow.id, step_id=target)
                self._escalate(state, flow, EscalationReason.INTERNAL_ERROR.value, outcome)
                return
            seen.add(target)

            step = flow.step(target)
            if state.is_forbidden(target):
                logger.info("forbidden_step_skipped", conversation_id=state.conversation_id,
                            step_id=target, skip_to=step.skip_target())
                target = step.skip_target()
                continue

            state.current_step_id = target
            state.step_index = flow.index_of(target)
            if emit:
                outcome.emit(self._segment(state, flow, step))
            if isinstance(step, ActionStep):
                outcome.actions.append(step.action)
                logger.info("action_triggered", conversation_id=state.conversation_id,
                            step_id=step.id, action=step.action)
            if step.waits_for_input:
                return
            state.completed_steps.append(target)
            target = step.next_target

    def _close_out(self, state: ConversationState, flow: FlowDefinition, outcome: StepOutcome) -> None:
        if state.completed and not outcome.segments:
            outcome.emit(Segment(state.current_step_id, flow.message("complete", state.language),
                                 source=TextSource.CANNED))

    # ── Rendering ─────────────────────────────────────────

    @staticmethod
    def render_values(state: ConversationState, flow: FlowDefinition) -> dict[str, Any]:
        values = {f"agent_{k}": v for k, v in flow.agent.model_dump().items()}
        values.update(state.slots)
        return values

    def render(self, state: ConversationState, flow: FlowDefinition, variants: dict[str, str]) -> str:
        template = pick_language(variants, state.language, flow.default_language)
        return fill_placeholders(template, self.render_values(state, flow))

    def _segment(self, state: ConversationState, flow: FlowDefinition, step: BaseStep) -> Segment:
        return Segment(step.id, self.render(state, flow, step.text),
                       generate=step.generate, instruction=step.instruction)

    def _retry_segment(self, state: ConversationState, flow: FlowDefinition, step: BaseStep) -> Segment:
        if step.retry_text:
            return Segment(step.id, self.render(state, flow, step.retry_text))
        if isinstance(step, ConfirmStep):
            return Segment(step.id, flow.message("unclear_confirmation", state.language),
                           source=TextSource.CANNED)
        text = f"{flow.message('retry', state.language)} {self.render(state, flow, step.text)}"
        return Segment(step.id, text.strip(), source=TextSource.CANNED)
