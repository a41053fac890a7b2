"""
Error taxonomy for the turn engine.

Recovered locally (never reach the caller):
  - ValidationError     slot input malformed → same-step retry prompt
  - ContractViolation   generated text breaks the output schema → sanitize,
                        regenerate once, else canonical text

Surfaced:
  - FlowConfigurationError  fatal at load time, the flow is never served
  - FlowNotFound            unknown flow id requested for a new conversation
  - SessionNotFound         unknown, expired or tombstoned conversation id
  - StaleStateError         compare-and-swap conflict against the state store

Escalation is not an exception; it is a terminal turn status.
"""
from __future__ import annotations

from typing import Optional


class FlowGuardError(Exception):
    """Base class for all engine errors."""


class ValidationError(FlowGuardError):
    def __init__(self, slot: str, reason: str, raw: str = ""):
        self.slot = slot
        self.reason = reason
        self.raw = raw
        super().__init__(f"Invalid value for slot '{slot}': {reason}")


class ContractViolation(FlowGuardError):
    def __init__(self, violations: Optional[list[str]] = None, message: str = ""):
        self.violations = list(violations or [])
        super().__init__(message or f"Response contract violated: {', '.join(self.violations) or 'unknown'}")


class GenerationFailed(ContractViolation):
    """The generator itself raised or timed out. Counts as a failed attempt."""

    def __init__(self, cause: str):
        self.cause = cause
        super().__init__(["generation_failed"], f"Text generator failed: {cause}")


class FlowConfigurationError(FlowGuardError):
    def __init__(self, flow_id: str, errors: list[str]):
        self.flow_id = flow_id
        self.errors = list(errors)
        super().__init__(f"Invalid flow '{flow_id}': {'; '.join(self.errors)}")


class FlowNotFound(FlowGuardError):
    def __init__(self, flow_id: str):
        self.flow_id = flow_id
        super().__init__(f"Flow '{flow_id}' is not registered")


class SessionNotFound(FlowGuardError):
    def __init__(self, conversation_id: str, reason: str = "unknown"):
        self.conversation_id = conversation_id
        self.reason = reason
        super().__init__(f"Conversation '{conversation_id}' not found ({reason})")


class StaleStateError(FlowGuardError):
    def __init__(self, conversation_id: str, expected: int, actual: Optional[int]):
        self.conversation_id = conversation_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Conversation '{conversation_id}' changed underneath: "
            f"expected version {expected}, found {actual}"
        )
