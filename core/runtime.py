"""
Runtime wiring — builds the turn engine from settings and owns its
lifecycle.

    async with flowguard_runtime() as runtime:
        result = await runtime.orchestrator.process_turn("c-1", None,
                                                         TurnOptions(flow_id="lead_capture"))

Startup connects the state store, loads every flow under `flows_dir`
(all-or-nothing) and starts the session sweeper. Shutdown reverses it and
flushes the store.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from dotenv import load_dotenv

from config.settings import Settings, load_settings
from context.sessions import ConversationSessions, SessionSweeper
from context.state_machine import StepExecutor
from core.contract import ContractNegotiator, ResponseContractValidator
from core.engine import LLMTextGenerator, TextGenerator
from core.orchestrator import TurnOrchestrator
from core.prompts import PromptBuilder
from database.store_base import BaseStateStore
from database.store_factory import create_store
from flows.registry import FlowRegistry
from rules.engine import RuleEnforcer
from slots.extractor import SlotExtractor
from slots.validators import ValidatorRegistry

logger = structlog.get_logger()


class FlowGuardRuntime:

    def __init__(
        self,
        settings: Settings,
        registry: FlowRegistry,
        store: BaseStateStore,
        sessions: ConversationSessions,
        sweeper: SessionSweeper,
        orchestrator: TurnOrchestrator,
    ):
        self.settings = settings
        self.registry = registry
        self.store = store
        self.sessions = sessions
        self.sweeper = sweeper
        self.orchestrator = orchestrator

    async def start(self, sweep: bool = True):
        await self.store.connect()
        if sweep:
            await self.sweeper.start_background()
        logger.info("flowguard_started", flows=self.registry.list_flows(),
                    store=type(self.store).__name__,
                    generation=self.orchestrator.negotiator is not None)

    async def stop(self):
        await self.sweeper.stop()
        await self.store.close()
        logger.info("flowguard_stopped")


def build_runtime(
    settings: Optional[Settings] = None,
    generator: Optional[TextGenerator] = None,
    store: Optional[BaseStateStore] = None,
    clock: Optional[Callable] = None,
    load_flows: bool = True,
) -> FlowGuardRuntime:
    """
    Wire every component. With no explicit generator, an LLM generator is
    used only when an API key is configured; otherwise steps marked
    `generate` speak their canonical text.
    """
    if settings is None:
        load_dotenv()
        settings = load_settings()

    validators = ValidatorRegistry()
    registry = FlowRegistry(validators)
    if load_flows:
        registry.load_directory(settings.flows_dir)

    store = store or create_store(settings.store)
    sessions = ConversationSessions(
        store,
        ttl_seconds=settings.engine.session_ttl_seconds,
        tombstone_ttl_seconds=settings.engine.tombstone_ttl_seconds,
        clock=clock,
    )
    sweeper = SessionSweeper(sessions, interval_seconds=settings.engine.sweep_interval_seconds)

    rules = RuleEnforcer(settings.engine, clock=clock)
    executor = StepExecutor(rules, SlotExtractor(validators))

    if generator is None and settings.llm.has_api_key:
        generator = LLMTextGenerator(settings.llm)
    negotiator = None
    if generator is not None:
        negotiator = ContractNegotiator(
            generator,
            validator=ResponseContractValidator(settings.contract),
            prompt_builder=PromptBuilder(),
            config=settings.contract,
        )

    flows = registry.list_flows()
    orchestrator = TurnOrchestrator(
        registry, sessions, executor, rules,
        negotiator=negotiator,
        default_flow_id=flows[0] if len(flows) == 1 else None,
    )
    return FlowGuardRuntime(settings, registry, store, sessions, sweeper, orchestrator)


@asynccontextmanager
async def flowguard_runtime(
    settings: Optional[Settings] = None,
    generator: Optional[TextGenerator] = None,
    sweep: bool = True,
) -> AsyncIterator[FlowGuardRuntime]:
    runtime = build_runtime(settings, generator=generator)
    await runtime.start(sweep=sweep)
    try:
        yield runtime
    finally:
        await runtime.stop()
