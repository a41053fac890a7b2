"""
End-to-end tests for TurnOrchestrator.process_turn.

Covers:
  - Scripted conversations (collect, retry, escalate, complete)
  - Language switching and locking
  - Generated phrasing with contract auto-fix and fallback
  - Not-found, expiry, teardown and flow removal
  - Per-conversation serialization and internal error handling
"""
import asyncio
from pathlib import Path

import pytest

from config.settings import EngineConfig
from context.state_machine import StepExecutor
from core.orchestrator import TurnOrchestrator
from flows.models import DEFAULT_MESSAGES
from models.schemas import EscalationReason, TextSource, TurnOptions, TurnStatus
from rules.engine import RuleEnforcer
from slots.extractor import SlotExtractor
from slots.validators import PHONE_REASON

FLOWS_DIR = Path(__file__).resolve().parent.parent / "config" / "flows"

SIGNUP = TurnOptions(flow_id="signup")
LEAD = TurnOptions(flow_id="lead_capture")


async def _named(orchestrator, cid="c-1"):
    """Open a signup conversation and answer the name question."""
    await orchestrator.process_turn(cid, None, SIGNUP)
    return await orchestrator.process_turn(cid, "My name is Asha")


async def _at_phone(orchestrator, cid="c-1"):
    """Walk the lead flow up to the (generated) phone question."""
    await orchestrator.process_turn(cid, None, LEAD)
    await orchestrator.process_turn(cid, "I want to buy a car")
    return await orchestrator.process_turn(cid, "Asha")


# ──────────────────────────────────────────────────────────────
#  Scripted conversations
# ──────────────────────────────────────────────────────────────

class TestConversationFlow:
    @pytest.mark.asyncio
    async def test_happy_path_with_one_retry(self, orchestrator):
        opening = await orchestrator.process_turn("c-1", None, SIGNUP)
        assert opening.text == "Welcome to Acme. What is your name?"
        assert opening.step_id == "collect_name"
        assert opening.status == TurnStatus.IN_PROGRESS
        assert opening.text_source == TextSource.TEMPLATE

        named = await orchestrator.process_turn("c-1", "My name is Asha")
        assert named.slot_data == {"name": "Asha"}
        assert named.step_id == "collect_phone"
        assert named.text == "Thanks Asha. What is your mobile number?"

        bad = await orchestrator.process_turn("c-1", "not a number")
        assert bad.step_id == "collect_phone"
        assert bad.retry_count == 1
        assert bad.validation_error == PHONE_REASON
        assert bad.status == TurnStatus.IN_PROGRESS

        done = await orchestrator.process_turn("c-1", "9876543210")
        assert done.step_id == "closing"
        assert done.status == TurnStatus.COMPLETE
        assert done.text == "We will call you on 9876543210."
        assert done.slot_data == {"name": "Asha", "phone": "9876543210"}
        assert done.retry_count == 0

    @pytest.mark.asyncio
    async def test_completed_conversation_is_absorbing(self, orchestrator, store):
        await _named(orchestrator)
        await orchestrator.process_turn("c-1", "9876543210")
        version = (await store.get("c-1")).version

        after = await orchestrator.process_turn("c-1", "hello again")
        assert after.status == TurnStatus.COMPLETE
        assert after.text == DEFAULT_MESSAGES["complete"]["en"]
        assert after.text_source == TextSource.CANNED
        assert (await store.get("c-1")).version == version

    @pytest.mark.asyncio
    async def test_retry_ceiling_escalates(self, orchestrator, store):
        await _named(orchestrator)
        first = await orchestrator.process_turn("c-1", "not a number")
        second = await orchestrator.process_turn("c-1", "still not")
        third = await orchestrator.process_turn("c-1", "nope nothing")

        assert (first.retry_count, second.retry_count) == (1, 2)
        assert third.status == TurnStatus.ESCALATED
        assert third.escalation_reason == EscalationReason.MAX_RETRIES.value
        assert third.retry_count == 2
        assert third.text == DEFAULT_MESSAGES["max_retries"]["en"]

        stored = await store.get("c-1")
        assert stored.escalated
        assert stored.total_retries == 2

        later = await orchestrator.process_turn("c-1", "9876543210")
        assert later.status == TurnStatus.ESCALATED
        assert later.text == DEFAULT_MESSAGES["escalated"]["en"]
        assert "phone" not in later.slot_data

    @pytest.mark.asyncio
    async def test_frustration_escalates_immediately(self, orchestrator):
        await _named(orchestrator)
        result = await orchestrator.process_turn("c-1", "I want to talk to a human")
        assert result.status == TurnStatus.ESCALATED
        assert result.escalation_reason == EscalationReason.FRUSTRATION.value
        assert result.text == DEFAULT_MESSAGES["frustration"]["en"]

    @pytest.mark.asyncio
    async def test_malformed_number_changes_nothing(self, orchestrator, store):
        await _at_phone(orchestrator)
        before = await store.get("c-1")

        result = await orchestrator.process_turn("c-1", "98-765")
        assert result.step_id == "collect_phone"
        assert result.status == TurnStatus.IN_PROGRESS
        assert result.text == "Please say your 10-digit mobile number starting with 6, 7, 8 or 9."
        assert result.retry_count == 1
        assert result.validation_error == PHONE_REASON

        after = await store.get("c-1")
        assert "phone" not in after.slots
        assert after.slots == before.slots
        assert after.forbidden_steps == before.forbidden_steps
        assert after.completed_steps == before.completed_steps
        assert after.current_step_id == "collect_phone"
        assert after.step_retries == {"collect_phone": 1}

    @pytest.mark.asyncio
    async def test_mentioning_a_manager_is_not_frustration(self, orchestrator):
        await orchestrator.process_turn("c-1", None, SIGNUP)
        result = await orchestrator.process_turn("c-1", "My name is Asha, I am the store manager")
        assert result.status == TurnStatus.IN_PROGRESS
        assert result.slot_data == {"name": "Asha"}
        assert result.step_id == "collect_phone"

    @pytest.mark.asyncio
    async def test_lead_flow_correction_path(self, orchestrator):
        await orchestrator.process_turn("c-1", None, LEAD)
        await orchestrator.process_turn("c-1", "I want to buy a car")
        await orchestrator.process_turn("c-1", "Asha")
        await orchestrator.process_turn("c-1", "9876543210")
        confirm = await orchestrator.process_turn("c-1", "560001")
        assert confirm.step_id == "confirm_details"
        assert confirm.text == "I have Asha, mobile 9876543210, pincode 560001. Is that correct?"

        denied = await orchestrator.process_turn("c-1", "no")
        assert denied.step_id == "recollect_name"
        assert denied.slot_data == {}

        await orchestrator.process_turn("c-1", "Ravi")
        await orchestrator.process_turn("c-1", "9123456789")
        done = await orchestrator.process_turn("c-1", "560002")

        # The used-up confirmation step is skipped on the way back
        assert done.status == TurnStatus.COMPLETE
        assert done.actions == ["create_lead"]
        assert done.text == ("Thank you Ravi, I've noted your details. "
                             "Our team will call you on 9123456789 shortly.")
        assert done.slot_data == {"name": "Ravi", "phone": "9123456789", "pincode": "560002"}

    @pytest.mark.asyncio
    async def test_support_intent_hands_off(self, orchestrator):
        await orchestrator.process_turn("c-1", None, LEAD)
        result = await orchestrator.process_turn("c-1", "my car has a problem")
        assert result.status == TurnStatus.ESCALATED
        assert result.escalation_reason == EscalationReason.FLOW_DIRECTIVE.value
        assert result.actions == ["transfer_to_support"]
        assert result.text == "Let me connect you with our service team."

    @pytest.mark.asyncio
    async def test_none_utterance_repeats_prompt(self, orchestrator, store):
        await _named(orchestrator)
        again = await orchestrator.process_turn("c-1", None)
        assert again.text == "Thanks Asha. What is your mobile number?"
        assert again.step_id == "collect_phone"
        assert (await store.get("c-1")).version == 3

    @pytest.mark.asyncio
    async def test_default_flow(self, make_orchestrator):
        orchestrator = make_orchestrator(default_flow_id="signup")
        result = await orchestrator.process_turn("c-1")
        assert result.step_id == "collect_name"


# ──────────────────────────────────────────────────────────────
#  Language
# ──────────────────────────────────────────────────────────────

class TestLanguage:
    @pytest.mark.asyncio
    async def test_opening_language_option(self, orchestrator):
        result = await orchestrator.process_turn(
            "c-1", None, TurnOptions(flow_id="signup", language="hi"))
        assert result.language == "hi"
        assert result.text == "Acme में आपका स्वागत है। आपका नाम क्या है?"

    @pytest.mark.asyncio
    async def test_unsupported_opening_language_uses_flow_default(self, orchestrator):
        result = await orchestrator.process_turn(
            "c-1", None, TurnOptions(flow_id="signup", language="ta"))
        assert result.language == "en"

    @pytest.mark.asyncio
    async def test_spoken_request_switches_and_reprompts(self, orchestrator, store):
        await orchestrator.process_turn("c-1", None, SIGNUP)
        result = await orchestrator.process_turn("c-1", "speak in hindi")
        assert result.language == "hi"
        assert result.language_changed
        assert result.text == "आपका नाम क्या है?"
        assert result.retry_count == 0
        assert (await store.get("c-1")).language == "hi"

    @pytest.mark.asyncio
    async def test_locked_language_ignores_request(self, orchestrator):
        await orchestrator.process_turn(
            "c-1", None, TurnOptions(flow_id="signup", language="en", lock_language=True))
        result = await orchestrator.process_turn("c-1", "speak in hindi")
        assert result.language == "en"
        assert not result.language_changed
        assert result.text == "What is your name?"

    @pytest.mark.asyncio
    async def test_spoken_request_beats_repeated_option(self, orchestrator):
        english = TurnOptions(flow_id="signup", language="en")
        await orchestrator.process_turn("c-1", None, english)

        switched = await orchestrator.process_turn("c-1", "please speak in hindi", english)
        assert switched.language == "hi"
        assert switched.language_changed
        assert switched.text == "आपका नाम क्या है?"

        # The same option sent again is not a new request
        named = await orchestrator.process_turn("c-1", "My name is Asha", english)
        assert named.language == "hi"
        assert not named.language_changed
        assert named.text == "धन्यवाद Asha। आपका मोबाइल नंबर क्या है?"

    @pytest.mark.asyncio
    async def test_changed_option_switches_back(self, orchestrator):
        await orchestrator.process_turn("c-1", None, TurnOptions(flow_id="signup", language="hi"))
        result = await orchestrator.process_turn("c-1", None, TurnOptions(language="en"))
        assert result.language == "en"
        assert result.language_changed
        assert result.text == "What is your name?"

    @pytest.mark.asyncio
    async def test_turn_option_language(self, orchestrator):
        await orchestrator.process_turn("c-1", None, SIGNUP)
        result = await orchestrator.process_turn("c-1", "My name is Asha", TurnOptions(language="hi"))
        assert result.language_changed
        assert result.text == "धन्यवाद Asha। आपका मोबाइल नंबर क्या है?"


# ──────────────────────────────────────────────────────────────
#  Generation
# ──────────────────────────────────────────────────────────────

class TestGeneration:
    @pytest.mark.asyncio
    async def test_generated_text_is_auto_fixed(self, make_orchestrator, scripted):
        generator = scripted('{"type":"SPEAK","text":"Hello! Asha, what is your mobile number? Thanks!"}')
        orchestrator = make_orchestrator(generator)
        result = await _at_phone(orchestrator)

        assert result.step_id == "collect_phone"
        assert result.text_source == TextSource.GENERATED
        assert result.text == "Asha, what is your mobile number?"
        assert len(generator.prompts) == 1
        prompt = generator.prompts[0]
        assert 'Speak this: "Thanks Asha. What is your 10-digit mobile number?"' in prompt
        assert "Guidance: Address the customer by name." in prompt

    @pytest.mark.asyncio
    async def test_generator_failure_falls_back(self, make_orchestrator, scripted):
        generator = scripted(RuntimeError("upstream down"))
        orchestrator = make_orchestrator(generator)
        result = await _at_phone(orchestrator)

        assert result.text_source == TextSource.FALLBACK
        assert result.text == "Thanks Asha. What is your 10-digit mobile number?"
        assert result.status == TurnStatus.IN_PROGRESS
        assert len(generator.prompts) == 2

    @pytest.mark.asyncio
    async def test_only_marked_steps_are_generated(self, make_orchestrator, scripted):
        generator = scripted('{"type":"SPEAK","text":"Your mobile number?"}')
        orchestrator = make_orchestrator(generator)
        await _at_phone(orchestrator)

        retry = await orchestrator.process_turn("c-1", "I don't know")
        assert retry.text == "Please say your 10-digit mobile number starting with 6, 7, 8 or 9."
        assert retry.text_source == TextSource.TEMPLATE
        assert len(generator.prompts) == 1

    @pytest.mark.asyncio
    async def test_negotiator_crash_speaks_canonical_text(self, make_orchestrator, scripted,
                                                           store, monkeypatch):
        orchestrator = make_orchestrator(scripted('{"type":"SPEAK","text":"Your number?"}'))

        async def boom(*args, **kwargs):
            raise RuntimeError("prompt builder crashed")

        monkeypatch.setattr(orchestrator.negotiator, "negotiate", boom)
        result = await _at_phone(orchestrator)

        assert result.status == TurnStatus.IN_PROGRESS
        assert result.text_source == TextSource.FALLBACK
        assert result.text == "Thanks Asha. What is your 10-digit mobile number?"
        assert (await store.get("c-1")).current_step_id == "collect_phone"

    @pytest.mark.asyncio
    async def test_generation_never_changes_the_decision(self, make_orchestrator, scripted, store):
        generator = scripted('{"type":"SPEAK","text":"Let me explain our policy first."}')
        orchestrator = make_orchestrator(generator)
        result = await _at_phone(orchestrator)
        assert result.text_source == TextSource.FALLBACK
        assert (await store.get("c-1")).current_step_id == "collect_phone"


# ──────────────────────────────────────────────────────────────
#  Lifecycle
# ──────────────────────────────────────────────────────────────

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_unknown_id_with_utterance(self, orchestrator, store):
        result = await orchestrator.process_turn("ghost", "hello")
        assert result.status == TurnStatus.NOT_FOUND
        assert result.text == DEFAULT_MESSAGES["not_found"]["en"]
        assert await store.get("ghost") is None

    @pytest.mark.asyncio
    async def test_not_found_uses_configured_language(self, registry, sessions, validators, clock):
        rules = RuleEnforcer(EngineConfig(default_language="hi"), clock=clock)
        orchestrator = TurnOrchestrator(registry, sessions,
                                        StepExecutor(rules, SlotExtractor(validators)), rules)
        result = await orchestrator.process_turn("ghost", "hello")
        assert result.status == TurnStatus.NOT_FOUND
        assert result.language == "hi"
        assert result.text == DEFAULT_MESSAGES["not_found"]["hi"]

        explicit = await orchestrator.process_turn("ghost", "hello", TurnOptions(language="en"))
        assert explicit.text == DEFAULT_MESSAGES["not_found"]["en"]

    @pytest.mark.asyncio
    async def test_idle_conversation_expires(self, orchestrator, clock):
        await _named(orchestrator)
        clock.advance(1801)
        result = await orchestrator.process_turn("c-1", "9876543210")
        assert result.status == TurnStatus.NOT_FOUND

        # An expired id cannot be reopened by a fresh first turn
        reopened = await orchestrator.process_turn("c-1", None, SIGNUP)
        assert reopened.status == TurnStatus.NOT_FOUND

    @pytest.mark.asyncio
    async def test_end_conversation(self, orchestrator):
        await _named(orchestrator)
        assert await orchestrator.end_conversation("c-1") is True
        assert await orchestrator.end_conversation("c-1") is False
        result = await orchestrator.process_turn("c-1", "9876543210")
        assert result.status == TurnStatus.NOT_FOUND

    @pytest.mark.asyncio
    async def test_unknown_flow(self, orchestrator, store):
        result = await orchestrator.process_turn("c-1", None, TurnOptions(flow_id="nope"))
        assert result.status == TurnStatus.ESCALATED
        assert result.escalation_reason == EscalationReason.FLOW_UNAVAILABLE.value
        assert await store.get("c-1") is None

    @pytest.mark.asyncio
    async def test_no_flow_and_no_default(self, orchestrator):
        result = await orchestrator.process_turn("c-1")
        assert result.escalation_reason == EscalationReason.FLOW_UNAVAILABLE.value

    @pytest.mark.asyncio
    async def test_flow_removed_by_reload(self, orchestrator, registry, store):
        await _named(orchestrator)
        registry.reload(FLOWS_DIR)
        assert "signup" not in registry

        result = await orchestrator.process_turn("c-1", "9876543210")
        assert result.status == TurnStatus.ESCALATED
        assert result.escalation_reason == EscalationReason.FLOW_UNAVAILABLE.value
        assert result.text == DEFAULT_MESSAGES["apology"]["en"]
        assert (await store.get("c-1")).escalation_reason == EscalationReason.FLOW_UNAVAILABLE.value


# ──────────────────────────────────────────────────────────────
#  Concurrency and failures
# ──────────────────────────────────────────────────────────────

class TestConcurrency:
    @pytest.mark.asyncio
    async def test_same_conversation_turns_are_serialized(self, orchestrator, store):
        await orchestrator.process_turn("c-1", None, SIGNUP)
        await asyncio.gather(
            orchestrator.process_turn("c-1", "My name is Asha"),
            orchestrator.process_turn("c-1", "My name is Ravi"),
        )
        stored = await store.get("c-1")
        # One answer filled the name; the other landed on the phone step
        assert stored.version == 3
        assert stored.slots["name"] in ("Asha", "Ravi")
        assert stored.current_step_id == "collect_phone"
        assert stored.total_retries == 1

    @pytest.mark.asyncio
    async def test_different_conversations_are_independent(self, orchestrator, store):
        await asyncio.gather(
            orchestrator.process_turn("c-1", None, SIGNUP),
            orchestrator.process_turn("c-2", None, LEAD),
        )
        assert (await store.get("c-1")).flow_id == "signup"
        assert (await store.get("c-2")).flow_id == "lead_capture"


class TestFailures:
    @pytest.mark.asyncio
    async def test_internal_error_escalates_and_apologizes(self, orchestrator, store, monkeypatch):
        await _named(orchestrator)

        def boom(*args, **kwargs):
            raise RuntimeError("handler crashed")

        monkeypatch.setattr(orchestrator.executor, "execute", boom)
        result = await orchestrator.process_turn("c-1", "9876543210")

        assert result.status == TurnStatus.ESCALATED
        assert result.escalation_reason == EscalationReason.INTERNAL_ERROR.value
        assert result.text == DEFAULT_MESSAGES["apology"]["en"]
        stored = await store.get("c-1")
        assert stored.escalated
        assert stored.escalation_reason == EscalationReason.INTERNAL_ERROR.value

    @pytest.mark.asyncio
    async def test_internal_error_without_state(self, orchestrator, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("start crashed")

        monkeypatch.setattr(orchestrator.executor, "start", boom)
        result = await orchestrator.process_turn("c-1", None, SIGNUP)
        assert result.status == TurnStatus.ESCALATED
        assert result.escalation_reason == EscalationReason.INTERNAL_ERROR.value
