"""
Settings — engine, LLM, database, backend and channel configuration.

One YAML document, one section per dataclass below; `${VAR}` references are
expanded from the environment (the API loads .env first). Missing sections
and keys keep their defaults.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml


def _default_aliases() -> dict[str, str]:
    # Portuguese placeholder names used by flows authored in the builder
    return {"nome": "name", "telefone": "phone", "mensagem": "message", "data_hoje": "today"}


@dataclass
class EngineConfig:
    max_steps: int = 20                        # hard cap on graph steps per inbound message
    sync_delay_threshold_seconds: float = 30   # delay nodes above this pause the execution
    max_message_delay_seconds: float = 10      # upper bound for a message node's send delay
    default_contact_name: str = "Cliente"
    default_department: str = ""              # used by the WhatsApp webhook
    date_format: str = "%d/%m/%Y"
    timezone: str = "America/Sao_Paulo"        # used by time-window conditions
    variable_aliases: dict[str, str] = field(default_factory=_default_aliases)


@dataclass
class LLMConfig:
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    temperature: float = 0.0
    max_tokens: int = 10
    api_key: str = ""


@dataclass
class ChannelConfig:
    enabled: bool = False
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class BackendConfig:
    type: str = "rest"
    base_url: str = ""
    auth_type: str = "bearer"
    auth_credentials: dict[str, Any] = field(default_factory=dict)
    endpoints: dict[str, str] = field(default_factory=dict)


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./flow_engine.db"            # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                     # directory for file backend
    pool_size: int = 10                                # ignored for sqlite
    max_overflow: int = 20
    pool_recycle_seconds: int = 1800
    echo: bool = False


@dataclass
class Settings:
    app_name: str = "FlowEngine"
    debug: bool = False
    engine: EngineConfig = field(default_factory=EngineConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    channels: dict[str, ChannelConfig] = field(default_factory=dict)


_settings: Optional[Settings] = None

_ENV_REF = re.compile(r"\$\{(\w+)\}")


def _expand_env(obj: Any) -> Any:
    """Expand ${VAR} in every string of a parsed YAML tree. Unset variables are left as written."""
    if isinstance(obj, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), m.group(0)), obj)
    if isinstance(obj, dict):
        return {k: _expand_env(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_env(v) for v in obj]
    return obj


def _coerce(value: Any, default: Any) -> Any:
    # YAML values that went through ${VAR} expansion arrive as strings
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(default, (int, float)) and isinstance(value, str):
        return type(default)(value)
    return value


def _section(cls: type, raw: Optional[dict[str, Any]]) -> Any:
    """Build config dataclass `cls` from a YAML mapping, ignoring unknown keys."""
    defaults = cls()
    values = {}
    for f in fields(cls):
        if raw and f.name in raw and raw[f.name] is not None:
            values[f.name] = _coerce(raw[f.name], getattr(defaults, f.name))
    return cls(**values)


def load_settings(config_path: Optional[str] = None) -> Settings:
    """Load settings from YAML (FLOW_ENGINE_CONFIG or config/settings.yaml) and cache them."""
    global _settings

    path = Path(config_path or os.environ.get(
        "FLOW_ENGINE_CONFIG", str(Path(__file__).parent / "settings.yaml")))

    raw: dict[str, Any] = {}
    if path.exists():
        raw = _expand_env(yaml.safe_load(path.read_text()) or {})

    _settings = Settings(
        app_name=raw.get("app_name", Settings.app_name),
        debug=_coerce(raw.get("debug", False), False),
        engine=_section(EngineConfig, raw.get("engine")),
        llm=_section(LLMConfig, raw.get("llm")),
        database=_section(DatabaseConfig, raw.get("database")),
        backend=_section(BackendConfig, raw.get("backend")),
        channels={name: _section(ChannelConfig, data)
                  for name, data in (raw.get("channels") or {}).items()},
    )
    return _settings


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None
