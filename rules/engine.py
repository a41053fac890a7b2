"""
Rule Enforcement Layer — cross-cutting policy checks run before every turn.

The step executor only knows how one step reacts to one utterance. Policies
that span steps live here and may short-circuit the executor entirely:

  1. Terminal      — escalated/completed conversations get the fixed
                     handoff/closing message; nothing else runs or changes.
  2. Frustration   — requests for a human or repeated complaints escalate
                     immediately, whatever the retry counters say.
  3. Language      — an explicit switch becomes the stated language unless
                     the conversation is language-locked or the flow does
                     not support it. A request phrase in the utterance wins
                     over the turn option, and a turn option repeated
                     unchanged is not a new request. An utterance that only
                     asks for a language re-prompts the current step.
  4. Self-heal     — a current step that is somehow forbidden is flagged so
                     the executor advances past it instead of looping.
  5. Cumulative    — too many failed turns across the whole conversation
                     escalate before any reply is produced.

Escalation is idempotent: the first reason sticks, later calls are no-ops.
"""
from __future__ import annotations

import structlog
from typing import Callable, Optional

from config.settings import EngineConfig
from flows.models import FlowDefinition
from models.schemas import ConversationState, EscalationReason, utcnow
from slots.extractor import detect_frustration, detect_language_request

logger = structlog.get_logger()

_ESCALATION_MESSAGES = {
    EscalationReason.FRUSTRATION.value: "frustration",
    EscalationReason.MAX_RETRIES.value: "max_retries",
    EscalationReason.CUMULATIVE_FAILURES.value: "max_retries",
    EscalationReason.INTERNAL_ERROR.value: "apology",
    EscalationReason.FLOW_UNAVAILABLE.value: "apology",
}


# ──────────────────────────────────────────────────────────────
#  Decision
# ──────────────────────────────────────────────────────────────

class RuleDecision:
    """What the rule layer wants done with this turn."""

    CONTINUE = "continue"   # run the step executor
    BLOCK = "block"         # reply with `message`, skip the executor
    REPROMPT = "reprompt"   # repeat the current step's prompt

    def __init__(
        self,
        action: str = CONTINUE,
        message: str = "",
        language_changed: bool = False,
        self_heal: bool = False,
        mutated: bool = True,
        reason: str = "",
    ):
        self.action = action
        self.message = message
        self.language_changed = language_changed
        self.self_heal = self_heal
        self.mutated = mutated          # False only for absorbing terminal turns
        self.reason = reason

    @property
    def blocked(self) -> bool:
        return self.action == self.BLOCK

    @property
    def reprompt(self) -> bool:
        return self.action == self.REPROMPT

    def __repr__(self):
        return f"<RuleDecision {self.action} reason={self.reason!r}>"


# ──────────────────────────────────────────────────────────────
#  Enforcer
# ──────────────────────────────────────────────────────────────

class RuleEnforcer:

    def __init__(self, config: Optional[EngineConfig] = None, clock: Optional[Callable] = None):
        self.config = config or EngineConfig()
        self._clock = clock or utcnow

    def now(self):
        return self._clock()

    def max_retries(self, flow: FlowDefinition) -> int:
        return flow.max_retries if flow.max_retries is not None else self.config.max_retries

    def max_confirmations(self, flow: FlowDefinition) -> int:
        if flow.max_confirmations is not None:
            return flow.max_confirmations
        return self.config.max_confirmations

    # ── Pre-checks ────────────────────────────────────────

    def enforce(
        self,
        state: ConversationState,
        flow: FlowDefinition,
        utterance: Optional[str],
        requested_language: Optional[str] = None,
        lock_language: bool = False,
    ) -> RuleDecision:
        cid = state.conversation_id

        if state.is_terminal:
            return RuleDecision(RuleDecision.BLOCK, self.terminal_message(state, flow),
                                mutated=False, reason="terminal")

        if utterance and detect_frustration(utterance):
            self.escalate(state, EscalationReason.FRUSTRATION.value)
            return RuleDecision(RuleDecision.BLOCK, flow.message("frustration", state.language),
                                reason=EscalationReason.FRUSTRATION.value)

        # A spoken request wins; a turn option only counts when it changes
        spoken = detect_language_request(utterance) if utterance else None
        wanted = spoken.language if spoken else None
        if wanted is None and requested_language and requested_language != state.option_language:
            wanted = requested_language
        if requested_language:
            state.option_language = requested_language
        changed = False
        if wanted and wanted != state.language:
            changed = self.switch_language(state, flow, wanted)
        if lock_language:
            self.lock_language(state)
        if spoken and spoken.exclusive:
            return RuleDecision(RuleDecision.REPROMPT, language_changed=changed,
                                reason="language_request")

        decision = RuleDecision(RuleDecision.CONTINUE, language_changed=changed)

        if state.is_forbidden(state.current_step_id):
            logger.warning("forbidden_current_step", conversation_id=cid,
                           step_id=state.current_step_id)
            decision.self_heal = True

        if state.total_retries >= self.config.max_total_retries:
            self.escalate(state, EscalationReason.CUMULATIVE_FAILURES.value)
            return RuleDecision(RuleDecision.BLOCK, flow.message("max_retries", state.language),
                                language_changed=changed,
                                reason=EscalationReason.CUMULATIVE_FAILURES.value)

        return decision

    # ── Language ──────────────────────────────────────────

    def switch_language(self, state: ConversationState, flow: FlowDefinition, language: str) -> bool:
        if state.language_locked:
            logger.info("language_switch_ignored", conversation_id=state.conversation_id,
                        requested=language, current=state.language, reason="locked")
            return False
        if not flow.supports_language(language):
            logger.info("language_switch_ignored", conversation_id=state.conversation_id,
                        requested=language, current=state.language, reason="unsupported")
            return False
        logger.info("language_switched", conversation_id=state.conversation_id,
                    from_language=state.language, to_language=language)
        state.language = language
        return True

    def lock_language(self, state: ConversationState) -> None:
        if not state.language_locked:
            state.language_locked = True
            logger.info("language_locked", conversation_id=state.conversation_id,
                        language=state.language)

    # ── Escalation ────────────────────────────────────────

    def escalate(self, state: ConversationState, reason: str) -> bool:
        """Escalate once. Returns False if the conversation was already terminal."""
        if not state.mark_escalated(reason, self.now()):
            logger.debug("escalation_ignored", conversation_id=state.conversation_id,
                         reason=reason, existing=state.escalation_reason,
                         completed=state.completed)
            return False
        logger.warning("conversation_escalated", conversation_id=state.conversation_id,
                       flow_id=state.flow_id, reason=reason,
                       total_retries=state.total_retries)
        return True

    # ── Canned responses ──────────────────────────────────

    @staticmethod
    def terminal_message(state: ConversationState, flow: FlowDefinition) -> str:
        key = "escalated" if state.escalated else "complete"
        return flow.message(key, state.language)

    @staticmethod
    def escalation_message(flow: FlowDefinition, reason: str, language: str) -> str:
        return flow.message(_ESCALATION_MESSAGES.get(reason, "escalated"), language)
