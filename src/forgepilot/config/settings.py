"""
config/settings.py — ForgePilot Runtime Settings

Merges config.yaml (defaults/structure) with .env (secrets).
Pydantic-powered: all fields are validated and typed.

  - ComposerConfig bounds max_diff_lines to 10..500
  - validate_all() requires at least one model tier to be populated
  - validate_all() performs full startup validation and raises ConfigError
    with a human-readable message listing every problem found
  - load_settings() respects the FORGEPILOT_CONFIG env var as a fallback
    when no explicit config_path argument is given
"""

from __future__ import annotations

import os
import threading as _threading
from pathlib import Path
from typing import Any, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────


class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_KNOWN_PROVIDERS = {"openai", "openrouter"}


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────


class AgentConfig(BaseModel):
    name: str = "ForgePilot"
    max_retries: int = 3
    require_approval_for_writes: bool = True
    max_history_entries: int = 200

    @field_validator("max_retries")
    @classmethod
    def _non_negative_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("agent.max_retries must be >= 0")
        return v

    @field_validator("max_history_entries")
    @classmethod
    def _positive_history(cls, v: int) -> int:
        if v < 1:
            raise ValueError("agent.max_history_entries must be >= 1")
        return v


class ComposerConfig(BaseModel):
    atomic_mode: bool = False
    max_session_history: int = 10
    max_diff_lines: int = 100
    auto_detect_dependencies: bool = True
    preserve_originals: bool = True

    @field_validator("max_session_history")
    @classmethod
    def _positive_session_history(cls, v: int) -> int:
        if v < 1:
            raise ValueError("composer.max_session_history must be >= 1")
        return v

    @field_validator("max_diff_lines")
    @classmethod
    def _diff_lines_in_range(cls, v: int) -> int:
        if not (10 <= v <= 500):
            raise ValueError("composer.max_diff_lines must be between 10 and 500")
        return v


class LLMRetryConfig(BaseModel):
    """Exponential backoff config for transient LLM errors."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0


class LLMConfig(BaseModel):
    default_provider: str = "openrouter"
    default_model: str = "deepseek/deepseek-chat-v3-0324:free"
    planning_temperature: float = 0.3
    max_tokens: int = 2000
    retry: LLMRetryConfig = Field(default_factory=LLMRetryConfig)
    fallback_providers: List[str] = Field(default_factory=list)

    @field_validator("default_provider")
    @classmethod
    def _known_provider(cls, v: str) -> str:
        if v not in _KNOWN_PROVIDERS:
            raise ValueError(
                f"llm.default_provider '{v}' is not supported. "
                f"Supported: {sorted(_KNOWN_PROVIDERS)}"
            )
        return v

    @field_validator("fallback_providers")
    @classmethod
    def _known_fallbacks(cls, v: list[str]) -> list[str]:
        bad = [p for p in v if p not in _KNOWN_PROVIDERS]
        if bad:
            raise ValueError(
                f"llm.fallback_providers has unknown providers: {bad}. "
                f"Supported: {sorted(_KNOWN_PROVIDERS)}"
            )
        return v

    @field_validator("planning_temperature")
    @classmethod
    def _valid_temperature(cls, v: float) -> float:
        if not (0.0 <= v <= 2.0):
            raise ValueError("llm.planning_temperature must be between 0.0 and 2.0")
        return v

    @field_validator("max_tokens")
    @classmethod
    def _positive_tokens(cls, v: int) -> int:
        if v < 1:
            raise ValueError("llm.max_tokens must be >= 1")
        return v


class ModelsConfig(BaseModel):
    """Model tiers consulted by the ModelSelector, best candidates first."""
    fast: list[str] = Field(default_factory=lambda: [
        "nex-agi/deepseek-v3.1-nex-n1:free",
        "google/gemma-3-27b-it:free",
    ])
    standard: list[str] = Field(default_factory=lambda: [
        "nex-agi/deepseek-v3.1-nex-n1:free",
        "anthropic/claude-3-haiku",
        "openai/gpt-5-nano",
    ])
    powerful: list[str] = Field(default_factory=lambda: [
        "mistralai/devstral-2512:free",
        "anthropic/claude-3.5-sonnet",
        "openai/gpt-4o",
    ])
    failure_window_seconds: float = 60.0
    max_failures_before_skip: int = 3

    def tiers(self) -> dict[str, list[str]]:
        return {"fast": self.fast, "standard": self.standard, "powerful": self.powerful}


class TerminalToolConfig(BaseModel):
    working_dir: str = "."
    timeout_seconds: int = 60

    @field_validator("timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: int) -> int:
        if v < 1:
            raise ValueError("tools.terminal.timeout_seconds must be >= 1")
        return v


class ToolsConfig(BaseModel):
    terminal: TerminalToolConfig = Field(default_factory=TerminalToolConfig)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 50
    backup_count: int = 5
    console_output: bool = False
    json_format: bool = True

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

_key_map = {
    "openai":     ("OPENAI_API_KEY",     "openai_api_key"),
    "openrouter": ("OPENROUTER_API_KEY", "openrouter_api_key"),
}


class Settings(BaseSettings):
    """
    ForgePilot runtime settings.

    Priority (highest to lowest):
      1. Environment variables
      2. .env file
      3. config.yaml
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ):
        # YAML arrives as init kwargs and must rank below the environment
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    # -- Secrets from .env ---------------------------------------------------
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    openrouter_api_key: Optional[str] = Field(default=None, alias="OPENROUTER_API_KEY")
    openai_base_url: Optional[str] = Field(default=None, alias="OPENAI_BASE_URL")

    # -- Structured config (from config.yaml) --------------------------------
    agent: AgentConfig = Field(default_factory=AgentConfig)
    composer: ComposerConfig = Field(default_factory=ComposerConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("agent", mode="before")
    @classmethod
    def _coerce_agent(cls, v: Any) -> Any:
        return AgentConfig(**v) if isinstance(v, dict) else v

    @field_validator("composer", mode="before")
    @classmethod
    def _coerce_composer(cls, v: Any) -> Any:
        return ComposerConfig(**v) if isinstance(v, dict) else v

    @field_validator("llm", mode="before")
    @classmethod
    def _coerce_llm(cls, v: Any) -> Any:
        return LLMConfig(**v) if isinstance(v, dict) else v

    @field_validator("models", mode="before")
    @classmethod
    def _coerce_models(cls, v: Any) -> Any:
        return ModelsConfig(**v) if isinstance(v, dict) else v

    @field_validator("tools", mode="before")
    @classmethod
    def _coerce_tools(cls, v: Any) -> Any:
        return ToolsConfig(**v) if isinstance(v, dict) else v

    @field_validator("logging", mode="before")
    @classmethod
    def _coerce_logging(cls, v: Any) -> Any:
        return LoggingConfig(**v) if isinstance(v, dict) else v

    # -- Convenience properties ----------------------------------------------

    @property
    def default_llm_provider(self) -> str:
        return self.llm.default_provider

    @property
    def default_llm_model(self) -> str:
        return self.llm.default_model

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    def api_key_for(self, provider: str) -> Optional[str]:
        """Return the configured secret for a provider, or None."""
        entry = _key_map.get(provider)
        if entry is None:
            return None
        return getattr(self, entry[1])

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Pydantic field validators catch type/value errors at parse time; this
        catches cross-field problems (API key presence for the chosen provider
        and its fallbacks, an empty model table, a blank working dir).
        """
        errors: list[str] = []

        # ── LLM provider API key ─────────────────────────────────────────────
        provider = self.llm.default_provider
        if provider in _key_map and not self.api_key_for(provider):
            env_name = _key_map[provider][0]
            errors.append(
                f"LLM provider '{provider}' requires {env_name} to be set "
                f"in your .env file."
            )

        # ── Fallback providers also need their keys ──────────────────────────
        for fp in self.llm.fallback_providers:
            if fp in _key_map and not self.api_key_for(fp):
                env_name = _key_map[fp][0]
                errors.append(
                    f"Fallback provider '{fp}' requires {env_name} but it "
                    f"is not set. Remove '{fp}' from llm.fallback_providers "
                    f"or add the key to .env."
                )

        # ── At least one model tier ──────────────────────────────────────────
        if not any(self.models.tiers().values()):
            errors.append(
                "models: every tier (fast, standard, powerful) is empty. "
                "List at least one model id."
            )

        # ── Terminal working dir ─────────────────────────────────────────────
        if not self.tools.terminal.working_dir.strip():
            errors.append("tools.terminal.working_dir must not be empty.")

        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nForgePilot startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your .env file "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = _threading.Lock()

_KNOWN_SECTIONS = {"agent", "composer", "llm", "models", "tools", "logging"}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. FORGEPILOT_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("FORGEPILOT_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    global _singleton
    yaml_data = _load_yaml(_resolve_config_path(config_path))
    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    instance = Settings(**init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the global Settings singleton, loading from the default path
    on first use. Guarded by _singleton_lock against double-initialisation.
    """
    global _singleton
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is None:
            _singleton = Settings(
                **{
                    k: v
                    for k, v in _load_yaml(_resolve_config_path(None)).items()
                    if k in _KNOWN_SECTIONS
                }
            )
        return _singleton
