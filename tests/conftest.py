"""Shared test fixtures for FlowGuard."""
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from config.settings import ContractConfig, EngineConfig
from context.sessions import ConversationSessions
from context.state_machine import StepExecutor
from core.contract import ContractNegotiator, ResponseContractValidator
from core.orchestrator import TurnOrchestrator
from database.store_memory import InMemoryStateStore
from flows.models import FlowDefinition
from flows.registry import FlowRegistry
from models.schemas import ConversationState
from rules.engine import RuleEnforcer
from slots.extractor import SlotExtractor
from slots.validators import ValidatorRegistry

FLOWS_DIR = Path(__file__).resolve().parent.parent / "config" / "flows"


class FakeClock:
    """Manually advanced, timezone-aware clock."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class ScriptedGenerator:
    """
    Returns canned replies in order; an Exception instance is raised
    instead of returned. The last reply repeats once the script runs out.
    """

    def __init__(self, *replies: Any):
        self.replies = list(replies)
        self.prompts: list[str] = []

    async def __call__(self, prompt: str) -> str:
        self.prompts.append(prompt)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def scripted():
    """The ScriptedGenerator class, for tests that build their own replies."""
    return ScriptedGenerator


@pytest.fixture
def signup_flow_config() -> dict[str, Any]:
    """greeting → collect_name → collect_phone → closing."""
    return {
        "id": "signup",
        "name": "Signup",
        "start_step": "greeting",
        "supported_languages": ["en", "hi"],
        "max_retries": 2,
        "steps": [
            {
                "id": "greeting",
                "kind": "message",
                "text": {"en": "Welcome to Acme.", "hi": "Acme में आपका स्वागत है।"},
                "next": "collect_name",
            },
            {
                "id": "collect_name",
                "kind": "input",
                "slot": "name",
                "validator": "name",
                "text": {"en": "What is your name?", "hi": "आपका नाम क्या है?"},
                "next": "collect_phone",
            },
            {
                "id": "collect_phone",
                "kind": "input",
                "slot": "phone",
                "validator": "phone",
                "text": {"en": "Thanks {{name}}. What is your mobile number?",
                         "hi": "धन्यवाद {{name}}। आपका मोबाइल नंबर क्या है?"},
                "next": "closing",
            },
            {
                "id": "closing",
                "kind": "message",
                "text": "We will call you on {{phone}}.",
            },
        ],
    }


@pytest.fixture
def confirm_flow_config() -> dict[str, Any]:
    """Collect a pincode, confirm it, with a fresh step for corrections."""
    return {
        "id": "pincode_check",
        "start_step": "collect_pincode",
        "max_retries": 1,
        "steps": {
            "collect_pincode": {
                "kind": "input", "slot": "pincode", "validator": "pincode",
                "text": "Your pincode?", "next": "confirm",
            },
            "confirm": {
                "kind": "confirm", "slots": ["pincode"],
                "text": "Pincode {{pincode}}, right?",
                "confirm_next": "done", "deny_next": "recollect_pincode",
            },
            "recollect_pincode": {
                "kind": "input", "slot": "pincode", "validator": "pincode",
                "text": "Please say the pincode again.", "next": "confirm",
            },
            "done": {"kind": "message", "text": "Saved {{pincode}}."},
        },
    }


@pytest.fixture
def validators() -> ValidatorRegistry:
    return ValidatorRegistry()


@pytest.fixture
def registry(validators, signup_flow_config, confirm_flow_config) -> FlowRegistry:
    reg = FlowRegistry(validators)
    reg.register_from_config(signup_flow_config)
    reg.register_from_config(confirm_flow_config)
    reg.load_directory(FLOWS_DIR)
    return reg


@pytest.fixture
def signup_flow(registry) -> FlowDefinition:
    return registry.require("signup")


@pytest.fixture
def lead_flow(registry) -> FlowDefinition:
    return registry.require("lead_capture")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def rules(engine_config, clock) -> RuleEnforcer:
    return RuleEnforcer(engine_config, clock=clock)


@pytest.fixture
def executor(rules, validators) -> StepExecutor:
    return StepExecutor(rules, SlotExtractor(validators))


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def sessions(store, clock) -> ConversationSessions:
    return ConversationSessions(store, ttl_seconds=1800, tombstone_ttl_seconds=3600, clock=clock)


@pytest.fixture
def make_state():
    def _make(flow: FlowDefinition, step_id: str = None, **fields) -> ConversationState:
        return ConversationState(
            conversation_id=fields.pop("conversation_id", "c-test"),
            flow_id=flow.id,
            current_step_id=step_id or flow.start_step,
            **fields,
        )
    return _make


@pytest.fixture
def make_orchestrator(registry, sessions, executor, rules):
    """Factory: orchestrator over the shared fixtures, optionally with a generator."""
    def _make(generator=None, contract: ContractConfig = None, default_flow_id: str = None):
        negotiator = None
        if generator is not None:
            config = contract or ContractConfig(generation_timeout_seconds=1.0)
            negotiator = ContractNegotiator(
                generator, validator=ResponseContractValidator(config), config=config,
            )
        return TurnOrchestrator(registry, sessions, executor, rules,
                                negotiator=negotiator, default_flow_id=default_flow_id)
    return _make


@pytest.fixture
def orchestrator(make_orchestrator) -> TurnOrchestrator:
    return make_orchestrator()
