"""
Turn Orchestrator — the single entry point for a conversational turn.

Architecture:
  process_turn(cid, utterance, options)
    ├─ Decision phase (per-conversation lock held)
    │    load / create state → private copy
    │    → RuleEnforcer.enforce       (terminal, frustration, language,
    │                                  self-heal, cumulative failures)
    │    → StepExecutor.execute       (validate, advance, retry, escalate)
    │    → ConversationSessions.commit (liveness re-check + version CAS)
    │
    └─ Generation phase (no lock held)
         last segment marked `generate` → ContractNegotiator
         → generated text, or the canonical text as fallback

The executor and rules own every decision; generation can only reword the
sentence already chosen, so a slow or misbehaving generator never changes
where the conversation goes, and never stalls another turn for the same id.
"""
from __future__ import annotations

import structlog
from typing import Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from context.sessions import ConversationSessions
from context.state_machine import Segment, StepExecutor, StepOutcome
from core.contract import ContractNegotiator
from flows.models import FlowDefinition, default_message
from flows.registry import FlowRegistry
from models.errors import FlowNotFound, SessionNotFound, StaleStateError
from models.schemas import (
    ConversationState, EscalationReason, TextSource,
    TurnOptions, TurnResult, TurnStatus,
)
from rules.engine import RuleEnforcer

logger = structlog.get_logger()

STALE_STATE_ATTEMPTS = 3


class _Turn:
    """What the decision phase hands to the generation phase."""

    __slots__ = ("state", "flow", "outcome", "language_changed")

    def __init__(self, state: ConversationState, flow: Optional[FlowDefinition],
                 outcome: StepOutcome, language_changed: bool = False):
        self.state = state
        self.flow = flow
        self.outcome = outcome
        self.language_changed = language_changed


class TurnOrchestrator:

    def __init__(
        self,
        registry: FlowRegistry,
        sessions: ConversationSessions,
        executor: StepExecutor,
        rules: RuleEnforcer,
        negotiator: Optional[ContractNegotiator] = None,
        default_flow_id: Optional[str] = None,
    ):
        self.registry = registry
        self.sessions = sessions
        self.executor = executor
        self.rules = rules
        self.negotiator = negotiator
        self.default_flow_id = default_flow_id

    # ──────────────────────────────────────────────────────────
    #  Turn API
    # ──────────────────────────────────────────────────────────

    async def process_turn(
        self,
        conversation_id: str,
        utterance: Optional[str] = None,
        options: Optional[TurnOptions] = None,
    ) -> TurnResult:
        """
        Process one turn. A None utterance opens the conversation (or repeats
        the current prompt if it already exists).
        """
        options = options or TurnOptions()
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(STALE_STATE_ATTEMPTS),
                retry=retry_if_exception_type(StaleStateError),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.info("turn_retry_stale_state", conversation_id=conversation_id,
                                    attempt=attempt.retry_state.attempt_number)
                    turn = await self._decide(conversation_id, utterance, options)
        except SessionNotFound as e:
            logger.info("turn_not_found", conversation_id=conversation_id, reason=e.reason)
            language = self._fallback_language(options)
            return TurnResult(text=default_message("not_found", language),
                              status=TurnStatus.NOT_FOUND, language=language,
                              text_source=TextSource.CANNED)
        except FlowNotFound as e:
            logger.warning("turn_flow_not_found", conversation_id=conversation_id,
                           flow_id=e.flow_id)
            language = self._fallback_language(options)
            return TurnResult(text=default_message("apology", language),
                              status=TurnStatus.ESCALATED, language=language,
                              escalation_reason=EscalationReason.FLOW_UNAVAILABLE.value,
                              text_source=TextSource.CANNED)
        except Exception:
            logger.exception("turn_failed", conversation_id=conversation_id)
            return await self._fail_safe(conversation_id, options)

        await self._generate(turn)
        result = self._result(turn)
        logger.info("turn_processed", conversation_id=conversation_id,
                    step_id=result.step_id, status=result.status.value,
                    retry_count=result.retry_count, language=result.language,
                    text_source=result.text_source.value)
        return result

    async def end_conversation(self, conversation_id: str) -> bool:
        async with self.sessions.lock(conversation_id):
            return await self.sessions.teardown(conversation_id)

    # ──────────────────────────────────────────────────────────
    #  Decision phase
    # ──────────────────────────────────────────────────────────

    async def _decide(self, conversation_id: str, utterance: Optional[str],
                      options: TurnOptions) -> _Turn:
        async with self.sessions.lock(conversation_id):
            try:
                state = await self.sessions.load(conversation_id)
            except SessionNotFound as e:
                if utterance is not None or e.reason != "unknown":
                    raise
                return await self._open(conversation_id, options)

            flow = self.registry.get(state.flow_id)
            if flow is None:
                return await self._flow_gone(state)

            working = state.model_copy(deep=True)
            decision = self.rules.enforce(working, flow, utterance,
                                          requested_language=options.language,
                                          lock_language=options.lock_language)
            if decision.blocked:
                outcome = StepOutcome()
                outcome.emit(Segment(working.current_step_id, decision.message,
                                     source=TextSource.CANNED))
                outcome.escalation_reason = working.escalation_reason
            elif decision.reprompt or utterance is None:
                outcome = self.executor.reprompt(working, flow)
            else:
                outcome = self.executor.execute(working, flow, utterance,
                                                self_heal=decision.self_heal)

            if not outcome.segments and working.is_terminal:
                outcome.emit(Segment(working.current_step_id,
                                     self.rules.terminal_message(working, flow),
                                     source=TextSource.CANNED))

            if not decision.mutated:
                return _Turn(state, flow, outcome, decision.language_changed)
            committed = await self.sessions.commit(working, expected_version=state.version)
            return _Turn(committed, flow, outcome, decision.language_changed)

    async def _open(self, conversation_id: str, options: TurnOptions) -> _Turn:
        flow_id = options.flow_id or self.default_flow_id
        if not flow_id:
            raise FlowNotFound("")
        flow = self.registry.require(flow_id)

        language = flow.default_language
        if options.language and flow.supports_language(options.language):
            language = options.language
        state = await self.sessions.create(conversation_id, flow.id, flow.start_step,
                                           language=language,
                                           language_locked=options.lock_language)
        state.option_language = options.language
        outcome = self.executor.start(state, flow)
        committed = await self.sessions.commit(state, expected_version=0)
        return _Turn(committed, flow, outcome)

    async def _flow_gone(self, state: ConversationState) -> _Turn:
        """The conversation's flow was removed by a reload."""
        logger.error("flow_unavailable", conversation_id=state.conversation_id,
                     flow_id=state.flow_id)
        working = state.model_copy(deep=True)
        self.rules.escalate(working, EscalationReason.FLOW_UNAVAILABLE.value)
        outcome = StepOutcome()
        outcome.emit(Segment(working.current_step_id,
                             default_message("apology", working.language),
                             source=TextSource.CANNED))
        outcome.escalation_reason = working.escalation_reason
        committed = await self.sessions.commit(working, expected_version=state.version)
        return _Turn(committed, None, outcome)

    def _fallback_language(self, options: TurnOptions) -> str:
        """Language for replies given before any state or flow is known."""
        return options.language or self.rules.config.default_language

    async def _fail_safe(self, conversation_id: str, options: TurnOptions) -> TurnResult:
        """Escalate whatever is stored after an unexpected error, then apologize."""
        language = self._fallback_language(options)
        try:
            async with self.sessions.lock(conversation_id):
                state = await self.sessions.load(conversation_id)
                language = state.language
                working = state.model_copy(deep=True)
                if self.rules.escalate(working, EscalationReason.INTERNAL_ERROR.value):
                    await self.sessions.commit(working, expected_version=state.version)
        except SessionNotFound:
            logger.info("fail_safe_no_state", conversation_id=conversation_id)
        except Exception:
            logger.exception("fail_safe_failed", conversation_id=conversation_id)
        return TurnResult(text=default_message("apology", language),
                          status=TurnStatus.ESCALATED, language=language,
                          escalation_reason=EscalationReason.INTERNAL_ERROR.value,
                          text_source=TextSource.CANNED)

    # ──────────────────────────────────────────────────────────
    #  Generation phase
    # ──────────────────────────────────────────────────────────

    async def _generate(self, turn: _Turn) -> None:
        if not self.negotiator or not turn.flow or not turn.outcome.segments:
            return
        segment = turn.outcome.segments[-1]
        if not segment.generate or segment.source != TextSource.TEMPLATE:
            return
        try:
            negotiated = await self.negotiator.negotiate(
                segment.text,
                language=turn.state.language,
                agent=turn.flow.agent,
                instruction=segment.instruction,
                conversation_id=turn.state.conversation_id,
            )
        except Exception:
            # The decision is already committed; speak the canonical text
            logger.exception("generation_failed", conversation_id=turn.state.conversation_id,
                             step_id=segment.step_id)
            segment.source = TextSource.FALLBACK
            return
        segment.text = negotiated.text
        segment.source = negotiated.source

    # ──────────────────────────────────────────────────────────
    #  Result
    # ──────────────────────────────────────────────────────────

    @staticmethod
    def _status(state: ConversationState) -> TurnStatus:
        if state.escalated:
            return TurnStatus.ESCALATED
        if state.completed:
            return TurnStatus.COMPLETE
        return TurnStatus.IN_PROGRESS

    def _result(self, turn: _Turn) -> TurnResult:
        state, outcome = turn.state, turn.outcome
        retry_count = outcome.retry_count if outcome.retry_count is not None else state.retry_count
        return TurnResult(
            text=outcome.text,
            step_id=outcome.step_id or state.current_step_id,
            status=self._status(state),
            slot_data=dict(state.slots),
            retry_count=retry_count,
            language=state.language,
            language_changed=turn.language_changed,
            escalation_reason=state.escalation_reason,
            validation_error=outcome.validation_error,
            actions=list(outcome.actions),
            text_source=outcome.segments[-1].source if outcome.segments else TextSource.TEMPLATE,
        )
