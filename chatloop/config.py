"""
Typed configuration model with precedence-based loader.

Precedence (lowest to highest):
    defaults < config file (YAML) < profile < env vars < CLI flags < per-session overrides
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any

import yaml


# ---------------------------------------------------------------------------
# Section dataclasses
# ---------------------------------------------------------------------------

@dataclass
class LLMConfig:
    provider: str = "openai-compat"
    model: str = "gpt-4o"
    api_base: str = "https://api.openai.com/v1/chat/completions"
    api_key_env: str = "OPENAI_API_KEY"
    temperature: float = 0.7
    max_tokens: int = 4_096
    request_timeout_seconds: float = 300.0
    max_retries: int = 2
    max_concurrent_requests: int = 5
    extra: dict = field(default_factory=dict)


@dataclass
class LoopConfig:
    max_iterations: int = 10
    max_clarifications: int = 10
    clarification_tool: str = "ask_user"
    system_prompt: str = ""


@dataclass
class AuditConfig:
    enabled: bool = True
    path: str = "~/.chatloop/interactions.jsonl"
    max_size_mb: int = 10
    keep_files: int = 5
    redaction_patterns: list[str] = field(default_factory=list)


@dataclass
class StoreConfig:
    db_path: str = "~/.chatloop/conversations.db"


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: str = ""


@dataclass
class LocalizationConfig:
    default_language: str = "en"


@dataclass
class PluginsConfig:
    enabled: bool = False
    allow_distributions: list[str] = field(default_factory=list)
    allow_tools: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------

@dataclass
class ChatloopConfig:
    llm: LLMConfig = field(default_factory=LLMConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    localization: LocalizationConfig = field(default_factory=LocalizationConfig)
    plugins: PluginsConfig = field(default_factory=PluginsConfig)
    profiles: dict[str, dict[str, Any]] = field(default_factory=dict)

    # ----- per-session overrides (applied last) ----
    _overrides: dict[str, Any] = field(default_factory=dict, repr=False)

    def set_override(self, dotpath: str, value: Any) -> None:
        """Set a per-session override using dot notation (e.g. 'loop.max_iterations')."""
        self._overrides[dotpath] = value
        _apply_dotpath(self, dotpath, value)

    def get_override(self, dotpath: str) -> Any | None:
        return self._overrides.get(dotpath)

    def to_dict(self) -> dict:
        d = asdict(self)
        d.pop("_overrides", None)
        return d

    def api_key(self) -> str:
        return os.environ.get(self.llm.api_key_env, "") if self.llm.api_key_env else ""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _apply_dotpath(obj: Any, dotpath: str, value: Any) -> None:
    """Walk obj via dotpath and set the final attribute."""
    parts = dotpath.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    if not hasattr(obj, parts[-1]):
        raise AttributeError(f"Unknown config key: {dotpath}")
    setattr(obj, parts[-1], value)


def _deep_merge(base: dict, overlay: dict) -> dict:
    """Recursively merge overlay into base, returning a new dict."""
    merged = dict(base)
    for k, v in overlay.items():
        if k in merged and isinstance(merged[k], dict) and isinstance(v, dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


def _coerce(value: str, target_type: type) -> Any:
    """Coerce a string env value to the target type."""
    if target_type is bool:
        return value.lower() in ("1", "true", "yes", "on")
    if target_type is int:
        return int(value)
    if target_type is float:
        return float(value)
    if target_type is list:
        return [s.strip() for s in value.split(",") if s.strip()]
    return value


def _build_section(cls: type, raw: dict) -> Any:
    """Build a dataclass section from a raw dict, ignoring unknown keys."""
    valid_fields = {f.name for f in fields(cls)}
    filtered = {k: v for k, v in (raw or {}).items() if k in valid_fields}
    return cls(**filtered)


# ---------------------------------------------------------------------------
# ENV var mapping
# ---------------------------------------------------------------------------

_ENV_MAP: dict[str, tuple[str, type]] = {
    "CHATLOOP_LLM_PROVIDER":          ("llm.provider", str),
    "CHATLOOP_LLM_MODEL":             ("llm.model", str),
    "CHATLOOP_LLM_API_BASE":          ("llm.api_base", str),
    "CHATLOOP_LLM_API_KEY_ENV":       ("llm.api_key_env", str),
    "CHATLOOP_LLM_TEMPERATURE":       ("llm.temperature", float),
    "CHATLOOP_LLM_MAX_TOKENS":        ("llm.max_tokens", int),
    "CHATLOOP_LLM_TIMEOUT":           ("llm.request_timeout_seconds", float),
    "CHATLOOP_LLM_MAX_RETRIES":       ("llm.max_retries", int),
    "CHATLOOP_LLM_MAX_CONCURRENT":    ("llm.max_concurrent_requests", int),
    "CHATLOOP_LOOP_MAX_ITERATIONS":   ("loop.max_iterations", int),
    "CHATLOOP_LOOP_MAX_CLARIFY":      ("loop.max_clarifications", int),
    "CHATLOOP_LOOP_CLARIFY_TOOL":     ("loop.clarification_tool", str),
    "CHATLOOP_AUDIT_ENABLED":         ("audit.enabled", bool),
    "CHATLOOP_AUDIT_PATH":            ("audit.path", str),
    "CHATLOOP_AUDIT_SIZE_MB":         ("audit.max_size_mb", int),
    "CHATLOOP_AUDIT_KEEP":            ("audit.keep_files", int),
    "CHATLOOP_AUDIT_REDACTION":       ("audit.redaction_patterns", list),
    "CHATLOOP_STORE_DB_PATH":         ("store.db_path", str),
    "CHATLOOP_LOG_LEVEL":             ("logging.level", str),
    "CHATLOOP_LOG_FILE":              ("logging.file", str),
    "CHATLOOP_DEFAULT_LANGUAGE":      ("localization.default_language", str),
    "CHATLOOP_PLUGINS_ENABLED":       ("plugins.enabled", bool),
}


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> ChatloopConfig:
    """
    Build a ChatloopConfig by layering sources in precedence order:

        defaults  <  config file  <  profile  <  env vars  <  CLI flags  <  per-session overrides

    Parameters
    ----------
    config_path : path to YAML config file (optional)
    profile : name of a profile to apply from the config file
    cli_overrides : dict of dotpath -> value CLI flag overrides
    """
    raw: dict[str, Any] = {}

    # --- 1. Config file ---
    if config_path is not None:
        p = Path(config_path).expanduser()
        if p.is_file():
            with p.open("r", encoding="utf-8") as f:
                file_data = yaml.safe_load(f) or {}
            raw = _deep_merge(raw, file_data)

    # --- 2. Profile overlay ---
    if profile and "profiles" in raw:
        profile_data = raw.get("profiles", {}).get(profile, {})
        if profile_data:
            raw = _deep_merge(raw, profile_data)

    # --- Build sections from raw ---
    cfg = ChatloopConfig(
        llm=_build_section(LLMConfig, raw.get("llm", {})),
        loop=_build_section(LoopConfig, raw.get("loop", {})),
        audit=_build_section(AuditConfig, raw.get("audit", {})),
        store=_build_section(StoreConfig, raw.get("store", {})),
        logging=_build_section(LoggingConfig, raw.get("logging", {})),
        localization=_build_section(LocalizationConfig, raw.get("localization", {})),
        plugins=_build_section(PluginsConfig, raw.get("plugins", {})),
        profiles=raw.get("profiles", {}),
    )

    # --- 3. Env var overrides ---
    for env_var, (dotpath, target_type) in _ENV_MAP.items():
        val = os.environ.get(env_var)
        if val is not None:
            _apply_dotpath(cfg, dotpath, _coerce(val, target_type))

    # --- 4. CLI flag overrides ---
    if cli_overrides:
        for dotpath, value in cli_overrides.items():
            _apply_dotpath(cfg, dotpath, value)

    return cfg


def validate_config(cfg: ChatloopConfig) -> list[str]:
    """Return a list of problems; empty when the config is usable."""
    problems: list[str] = []
    if cfg.llm.request_timeout_seconds <= 0:
        problems.append("llm.request_timeout_seconds must be positive")
    if cfg.llm.max_retries < 0:
        problems.append("llm.max_retries must not be negative")
    if cfg.llm.max_concurrent_requests < 1:
        problems.append("llm.max_concurrent_requests must be at least 1")
    if cfg.loop.max_iterations < 1:
        problems.append("loop.max_iterations must be at least 1")
    if cfg.loop.max_clarifications < 0:
        problems.append("loop.max_clarifications must not be negative")
    if not cfg.loop.clarification_tool:
        problems.append("loop.clarification_tool must not be empty")
    if cfg.audit.keep_files < 1:
        problems.append("audit.keep_files must be at least 1")
    for pattern in cfg.audit.redaction_patterns:
        try:
            re.compile(pattern)
        except re.error as e:
            problems.append(f"audit.redaction_patterns: invalid regex {pattern!r} ({e})")
    if cfg.logging.level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        problems.append(f"logging.level: unknown level {cfg.logging.level!r}")
    return problems
