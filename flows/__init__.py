"""
Declarative conversation flows.

A flow is a graph of typed steps (message, input, confirm, intent, action)
loaded from YAML/JSON, validated once at load time, and served read-only
to every conversation that runs it.
"""
from flows.models import (
    ESCALATE, FLOW_COMPLETE, TERMINAL_STEPS,
    ActionStep, AgentPersona, BaseStep, ConfirmStep, FlowDefinition,
    InputStep, IntentOption, IntentStep, MessageStep, StepKind,
    default_message, pick_language,
)
from flows.registry import FlowRegistry, read_flow_document
