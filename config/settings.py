"""
Configuration loader for the FlowGuard turn engine.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class EngineConfig:
    max_retries: int = 2                  # per step, before escalation
    max_total_retries: int = 6            # across the whole conversation
    max_confirmations: int = 1            # confirm attempts per confirm step
    default_language: str = "en"
    session_ttl_seconds: int = 1800       # idle time before a conversation expires
    sweep_interval_seconds: int = 60
    tombstone_ttl_seconds: int = 86400    # how long expired ids stay "not found"


@dataclass
class ContractConfig:
    max_length: int = 300
    max_sentences: int = 2
    max_questions: int = 1
    max_attempts: int = 2                 # generator calls per turn
    generation_timeout_seconds: float = 8.0


@dataclass
class LLMConfig:
    provider: str = "anthropic"           # "anthropic" | "openai"
    model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.3
    max_tokens: int = 150
    api_key: str = ""

    @property
    def has_api_key(self) -> bool:
        # An unset ${VAR} is left in place by the loader
        return bool(self.api_key) and not self.api_key.startswith("${")


@dataclass
class StoreConfig:
    backend: str = "memory"               # "memory" | "file"
    file_dir: str = "./data"


@dataclass
class Settings:
    app_name: str = "FlowGuard"
    debug: bool = False
    flows_dir: str = str(Path(__file__).parent / "flows")
    engine: EngineConfig = field(default_factory=EngineConfig)
    contract: ContractConfig = field(default_factory=ContractConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    store: StoreConfig = field(default_factory=StoreConfig)


_settings: Optional[Settings] = None


_ENV_VAR = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")


def _substitute_env_vars(value: str) -> str:
    """
    Replace ${VAR} and ${VAR:-default} with environment values. An unset
    variable without a default is left as written.
    """
    def replacer(match):
        var_name, default = match.group(1), match.group(2)
        if var_name in os.environ:
            return os.environ[var_name]
        return default if default is not None else match.group(0)
    return _ENV_VAR.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _section(cls, raw: Optional[dict[str, Any]]):
    """Build a config dataclass from a YAML section, ignoring unknown keys."""
    raw = raw or {}
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in raw.items() if k in known})


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FLOWGUARD_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "flows_dir" in raw:
            # Relative paths resolve against the settings file
            flows_dir = Path(raw["flows_dir"])
            if not flows_dir.is_absolute():
                flows_dir = Path(config_path).parent / flows_dir
            settings.flows_dir = str(flows_dir)

        if "engine" in raw:
            settings.engine = _section(EngineConfig, raw["engine"])
        if "contract" in raw:
            settings.contract = _section(ContractConfig, raw["contract"])
        if "llm" in raw:
            settings.llm = _section(LLMConfig, raw["llm"])
        if "store" in raw:
            settings.store = _section(StoreConfig, raw["store"])

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
