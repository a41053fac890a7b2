"""
Flow Registry — Loads, validates, and serves flow definitions.

Flows are loaded once at startup (YAML or JSON, one flow per file) and are
read-only afterwards, so concurrent turns can share the registry freely.
`reload()` builds a complete new index and swaps it in one assignment.

Validation happens here and only here. A flow that fails any check is
never served; the error is a FlowConfigurationError naming every problem:
  - the start step exists
  - step ids are unique (duplicate YAML keys included)
  - every transition target is a step id or a reserved terminal
  - every input step's validator is registered
  - every confirm step's slots are collected by some input step
  - every speaking step has a text template
  - message/action steps never form a loop (nothing would wait for input)

Unreachable steps are legal but logged.
"""
from __future__ import annotations

import json
import structlog
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from flows.models import (
    ActionStep, ConfirmStep, FlowDefinition, InputStep, TERMINAL_STEPS, pick_language,
)
from models.errors import FlowConfigurationError, FlowNotFound
from slots.validators import ValidatorRegistry

logger = structlog.get_logger()

FLOW_SUFFIXES = (".yaml", ".yml", ".json")


# ──────────────────────────────────────────────────────────────
#  YAML loader that refuses duplicate keys
# ──────────────────────────────────────────────────────────────

class _UniqueKeyLoader(yaml.SafeLoader):
    pass


def _construct_unique_mapping(loader: yaml.SafeLoader, node: yaml.MappingNode, deep: bool = False):
    seen = set()
    for key_node, _ in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in seen:
            raise yaml.constructor.ConstructorError(
                "while constructing a mapping", node.start_mark,
                f"found duplicate key '{key}'", key_node.start_mark,
            )
        seen.add(key)
    return loader.construct_mapping(node, deep=deep)


_UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG, _construct_unique_mapping,
)


def _reject_duplicate_pairs(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in pairs:
        if key in out:
            raise ValueError(f"duplicate key '{key}'")
        out[key] = value
    return out


def read_flow_document(path: Union[str, Path]) -> dict[str, Any]:
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            if path.suffix == ".json":
                raw = json.load(f, object_pairs_hook=_reject_duplicate_pairs)
            else:
                raw = yaml.load(f, Loader=_UniqueKeyLoader)
    except (yaml.YAMLError, ValueError) as e:
        raise FlowConfigurationError(path.stem, [f"{path.name}: {e}"]) from e
    if not isinstance(raw, dict):
        raise FlowConfigurationError(path.stem, [f"{path.name}: expected a mapping at top level"])
    return raw


# ──────────────────────────────────────────────────────────────
#  Registry
# ──────────────────────────────────────────────────────────────

class FlowRegistry:
    """Central registry for all flow definitions."""

    def __init__(self, validators: Optional[ValidatorRegistry] = None):
        self.validators = validators or ValidatorRegistry()
        self._flows: dict[str, FlowDefinition] = {}

    # ── Registration ──────────────────────────────────

    def register(self, flow: FlowDefinition, replace: bool = False) -> FlowDefinition:
        if flow.id in self._flows and not replace:
            raise FlowConfigurationError(flow.id, ["a flow with this id is already registered"])
        errors = self.validate(flow)
        if errors:
            logger.error("invalid_flow", flow_id=flow.id, errors=errors)
            raise FlowConfigurationError(flow.id, errors)

        for step_id in self.unreachable_steps(flow):
            logger.warning("flow_step_unreachable", flow_id=flow.id, step_id=step_id)

        self._flows[flow.id] = flow
        logger.info("flow_registered",
                    flow_id=flow.id,
                    steps=len(flow.steps),
                    languages=flow.supported_languages or "any")
        return flow

    def register_from_config(self, raw: dict[str, Any], replace: bool = False) -> FlowDefinition:
        return self.register(self.parse(raw), replace=replace)

    def load_file(self, path: Union[str, Path], replace: bool = False) -> FlowDefinition:
        return self.register_from_config(read_flow_document(path), replace=replace)

    def load_directory(self, directory: Union[str, Path]) -> list[FlowDefinition]:
        """Load every flow document in `directory`. All-or-nothing."""
        flows = self._load_all(Path(directory))
        for flow in flows:
            self.register(flow)
        logger.info("flows_loaded", directory=str(directory), count=len(flows))
        return flows

    def reload(self, directory: Union[str, Path]) -> list[FlowDefinition]:
        """Re-read `directory` and swap the whole index, or keep the old one on error."""
        staging = FlowRegistry(self.validators)
        flows = staging.load_directory(directory)
        self._flows = staging._flows
        logger.info("flows_reloaded", directory=str(directory), count=len(flows))
        return flows

    def _load_all(self, directory: Path) -> list[FlowDefinition]:
        if not directory.is_dir():
            raise FlowConfigurationError(str(directory), ["flows directory does not exist"])
        flows: list[FlowDefinition] = []
        seen: dict[str, str] = {}
        for path in sorted(directory.iterdir()):
            if path.suffix not in FLOW_SUFFIXES:
                continue
            flow = self.parse(read_flow_document(path))
            if flow.id in seen:
                raise FlowConfigurationError(
                    flow.id, [f"defined in both {seen[flow.id]} and {path.name}"],
                )
            seen[flow.id] = path.name
            errors = self.validate(flow)
            if errors:
                logger.error("invalid_flow", flow_id=flow.id, file=path.name, errors=errors)
                raise FlowConfigurationError(flow.id, errors)
            flows.append(flow)
        return flows

    # ── Lookup ────────────────────────────────────────

    def get(self, flow_id: str) -> Optional[FlowDefinition]:
        return self._flows.get(flow_id)

    def require(self, flow_id: str) -> FlowDefinition:
        flow = self._flows.get(flow_id)
        if flow is None:
            raise FlowNotFound(flow_id)
        return flow

    def list_flows(self) -> list[str]:
        return sorted(self._flows)

    def metadata(self, flow_id: str) -> dict[str, Any]:
        flow = self.require(flow_id)
        return {
            "id": flow.id,
            "name": flow.name,
            "description": flow.description,
            "version": flow.version,
            "start_step": flow.start_step,
            "default_language": flow.default_language,
            "supported_languages": list(flow.supported_languages),
            "steps": len(flow.steps),
            "slots": [s.slot for s in flow.steps.values() if isinstance(s, InputStep)],
        }

    def __contains__(self, flow_id: str) -> bool:
        return flow_id in self._flows

    def __len__(self) -> int:
        return len(self._flows)

    # ── Parsing & validation ──────────────────────────

    @staticmethod
    def parse(raw: dict[str, Any]) -> FlowDefinition:
        try:
            return FlowDefinition.model_validate(raw)
        except PydanticValidationError as e:
            errors = [
                f"{'.'.join(str(p) for p in err['loc']) or 'flow'}: {err['msg']}"
                for err in e.errors()
            ]
            raise FlowConfigurationError(str(raw.get("id", "<unnamed>")), errors) from e

    def validate(self, flow: FlowDefinition) -> list[str]:
        errors: list[str] = []
        step_ids = set(flow.steps)

        if not flow.steps:
            errors.append("flow must have at least one step")
        if flow.start_step not in step_ids:
            errors.append(f"start_step '{flow.start_step}' not found in steps")
        if flow.max_retries is not None and flow.max_retries < 0:
            errors.append("max_retries must be >= 0")
        if flow.max_confirmations is not None and flow.max_confirmations < 1:
            errors.append("max_confirmations must be >= 1")
        if flow.supported_languages and flow.default_language not in flow.supported_languages:
            errors.append(f"default_language '{flow.default_language}' not in supported_languages")

        collected = {s.slot for s in flow.steps.values() if isinstance(s, InputStep)}

        for step in flow.steps.values():
            if step.id in TERMINAL_STEPS:
                errors.append(f"step id '{step.id}' is reserved")
            for target in step.transition_targets():
                if target not in step_ids and target not in TERMINAL_STEPS:
                    errors.append(f"step '{step.id}' references unknown target '{target}'")

            if not isinstance(step, ActionStep) and not pick_language(step.text, flow.default_language):
                errors.append(f"step '{step.id}' has no text")

            if isinstance(step, InputStep) and step.validator_id not in self.validators:
                errors.append(f"step '{step.id}' uses unknown validator '{step.validator_id}'")

            if isinstance(step, ConfirmStep):
                for slot in step.slots:
                    if slot not in collected:
                        errors.append(f"confirm step '{step.id}' refers to uncollected slot '{slot}'")

        if not errors:
            loop = self._find_passive_loop(flow)
            if loop:
                errors.append(f"steps {' -> '.join(loop)} loop without waiting for input")
        return errors

    @staticmethod
    def _find_passive_loop(flow: FlowDefinition) -> Optional[list[str]]:
        """A cycle made only of steps that chain onward by themselves."""
        for start, step in flow.steps.items():
            if step.waits_for_input:
                continue
            path = [start]
            current = step
            while True:
                target = current.next_target
                if target in TERMINAL_STEPS:
                    break
                nxt = flow.steps[target]
                if nxt.waits_for_input:
                    break
                if target in path:
                    return path[path.index(target):] + [target]
                path.append(target)
                current = nxt
        return None

    @staticmethod
    def unreachable_steps(flow: FlowDefinition) -> list[str]:
        if flow.start_step not in flow.steps:
            return []
        seen = {flow.start_step}
        stack = [flow.start_step]
        while stack:
            step = flow.steps[stack.pop()]
            for target in step.transition_targets():
                if target in flow.steps and target not in seen:
                    seen.add(target)
                    stack.append(target)
        return [sid for sid in flow.steps if sid not in seen]
