"""Configuration system for persona-gate. YAML-based with env var expansion and env var overlay."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from persona_gate.models import API_AUDIENCE, EMBED_AUDIENCE


# --- Config Models ---


class AuthConfig(BaseModel):
    """Token validation tunables."""
    clock_skew_seconds: int = Field(default=0, ge=0)
    max_token_age_seconds: int = Field(default=86400, gt=0)  # 24h since iat, independent of exp
    embed_audience: str = EMBED_AUDIENCE
    api_audience: str = API_AUDIENCE


class NonceConfig(BaseModel):
    backend: str = "memory"  # "memory" or "redis"
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "persona_gate:nonce"
    prune_interval: int = 60
    max_entries: int = 1_000_000


class PartnersConfig(BaseModel):
    path: str = "~/.persona-gate/partners.yaml"


class ServeConfig(BaseModel):
    port: int = 8780
    host: str = "127.0.0.1"


class LoggingConfig(BaseModel):
    """Logging configuration."""
    format: str = "text"   # "text" or "json"
    level: str = "WARNING"


class Config(BaseModel):
    auth: AuthConfig = Field(default_factory=AuthConfig)
    nonce: NonceConfig = Field(default_factory=NonceConfig)
    partners: PartnersConfig = Field(default_factory=PartnersConfig)
    serve: ServeConfig = Field(default_factory=ServeConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# --- Helpers ---

_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


def get_config_dir() -> Path:
    """Get or create persona-gate config directory."""
    config_dir = Path.home() / ".persona-gate"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_config_path() -> Path:
    return get_config_dir() / "config.yaml"


def expand_env_vars(data: Any) -> Any:
    """Recursively expand ${VAR} in strings."""
    if isinstance(data, str):
        return _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), m.group(0)), data)
    if isinstance(data, dict):
        return {k: expand_env_vars(v) for k, v in data.items()}
    if isinstance(data, list):
        return [expand_env_vars(v) for v in data]
    return data


def expand_path(path: str) -> Path:
    """Expand ~ and env vars in path string."""
    return Path(os.path.expanduser(os.path.expandvars(path)))


# Mapping of PERSONA_GATE_* env var suffixes to (section, field) tuples.
_ENV_VAR_MAP: dict[str, tuple[str, str]] = {
    "SERVE_PORT": ("serve", "port"),
    "SERVE_HOST": ("serve", "host"),
    "AUTH_CLOCK_SKEW_SECONDS": ("auth", "clock_skew_seconds"),
    "AUTH_MAX_TOKEN_AGE_SECONDS": ("auth", "max_token_age_seconds"),
    "NONCE_BACKEND": ("nonce", "backend"),
    "NONCE_REDIS_URL": ("nonce", "redis_url"),
    "NONCE_PRUNE_INTERVAL": ("nonce", "prune_interval"),
    "NONCE_MAX_ENTRIES": ("nonce", "max_entries"),
    "PARTNERS_PATH": ("partners", "path"),
    "LOG_FORMAT": ("logging", "format"),
    "LOG_LEVEL": ("logging", "level"),
}

_SECTION_MODELS: dict[str, type[BaseModel]] = {
    "auth": AuthConfig,
    "nonce": NonceConfig,
    "partners": PartnersConfig,
    "serve": ServeConfig,
    "logging": LoggingConfig,
}


def _apply_env_overlay(data: dict[str, Any]) -> dict[str, Any]:
    """Apply PERSONA_GATE_* environment variables on top of YAML data dict.

    Converts values to the correct type based on Pydantic field annotations.
    """
    for env_suffix, (section, field) in _ENV_VAR_MAP.items():
        raw_val = os.environ.get(f"PERSONA_GATE_{env_suffix}")
        if raw_val is None:
            continue

        target_type: type = str
        model_cls = _SECTION_MODELS.get(section)
        if model_cls is not None:
            field_info = model_cls.model_fields.get(field)
            if field_info is not None and field_info.annotation in (int, bool, float):
                target_type = field_info.annotation

        try:
            if target_type is bool:
                typed_val: Any = raw_val.lower() in ("1", "true", "yes")
            else:
                typed_val = target_type(raw_val)
        except (ValueError, TypeError):
            typed_val = raw_val  # fall back to string; Pydantic will validate

        if section not in data or not isinstance(data[section], dict):
            data[section] = {}
        data[section][field] = typed_val

    return data


def load_config(path: Path | None = None) -> Config:
    """Load config from YAML, expanding env vars, then applying PERSONA_GATE_* env overlay."""
    config_path = path or get_config_path()
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        data = expand_env_vars(raw)
    else:
        data = {}
    data = _apply_env_overlay(data)
    return Config(**data)


def save_config(config: Config, path: Path | None = None) -> None:
    """Save config to YAML."""
    config_path = path or get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        yaml.dump(config.model_dump(), f, default_flow_style=False, sort_keys=False)


def set_config_value(key_path: str, value: str, path: Path | None = None) -> Config:
    """Set a value via dot notation (e.g. 'auth.clock_skew_seconds'), validate, save, and return the config.

    Raises KeyError for an unknown key and pydantic.ValidationError for a bad value.
    """
    config_path = path or get_config_path()
    section, _, field = key_path.partition(".")
    model_cls = _SECTION_MODELS.get(section)
    if model_cls is None or field not in model_cls.model_fields:
        raise KeyError(key_path)

    data = load_config(config_path).model_dump()
    data[section][field] = value
    config = Config(**data)
    save_config(config, config_path)
    return config


def get_config_value(config: Config, key_path: str) -> Any:
    """Get nested config value via dot notation (e.g. 'auth.clock_skew_seconds')."""
    obj: Any = config
    for part in key_path.split("."):
        if isinstance(obj, BaseModel):
            obj = getattr(obj, part, None)
        elif isinstance(obj, dict):
            obj = obj.get(part)
        else:
            return None
    return obj
