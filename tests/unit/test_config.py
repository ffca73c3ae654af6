"""
tests/unit/test_config.py — Settings validation

Covers:
  - Valid defaults load cleanly
  - Field validators: retries, history bounds, diff lines, provider,
    temperature, log level, terminal timeout
  - validate_all() raises ConfigError with a numbered list
  - validate_all() catches missing API key for chosen provider / fallback
  - FORGEPILOT_CONFIG env var is respected by load_settings()
  - Explicit config_path argument takes priority over env var
  - Environment variables override YAML and field defaults
"""

from __future__ import annotations

import os
import textwrap
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError


# ── Helpers ───────────────────────────────────────────────────────────────────

def _make_settings(**overrides):
    """Build a Settings object from keyword overrides (no YAML file needed)."""
    from forgepilot.config.settings import Settings
    return Settings(**overrides)


# ── Sub-models ────────────────────────────────────────────────────────────────

class TestAgentConfig:
    def test_defaults(self):
        from forgepilot.config.settings import AgentConfig
        cfg = AgentConfig()
        assert cfg.max_retries == 3
        assert cfg.require_approval_for_writes is True

    def test_negative_retries_rejected(self):
        from forgepilot.config.settings import AgentConfig
        with pytest.raises(ValidationError):
            AgentConfig(max_retries=-1)

    def test_zero_history_rejected(self):
        from forgepilot.config.settings import AgentConfig
        with pytest.raises(ValidationError):
            AgentConfig(max_history_entries=0)


class TestComposerConfig:
    def test_defaults(self):
        from forgepilot.config.settings import ComposerConfig
        cfg = ComposerConfig()
        assert cfg.atomic_mode is False
        assert cfg.max_session_history == 10
        assert cfg.max_diff_lines == 100

    @pytest.mark.parametrize("value", [9, 501])
    def test_diff_lines_out_of_range(self, value):
        from forgepilot.config.settings import ComposerConfig
        with pytest.raises(ValidationError) as exc_info:
            ComposerConfig(max_diff_lines=value)
        assert "max_diff_lines" in str(exc_info.value)

    def test_zero_session_history_rejected(self):
        from forgepilot.config.settings import ComposerConfig
        with pytest.raises(ValidationError):
            ComposerConfig(max_session_history=0)


class TestLLMConfig:
    def test_unknown_provider_rejected(self):
        from forgepilot.config.settings import LLMConfig
        with pytest.raises(ValidationError) as exc_info:
            LLMConfig(default_provider="bytez")
        assert "bytez" in str(exc_info.value)

    def test_unknown_fallback_rejected(self):
        from forgepilot.config.settings import LLMConfig
        with pytest.raises(ValidationError):
            LLMConfig(fallback_providers=["openai", "nope"])

    def test_temperature_bounds(self):
        from forgepilot.config.settings import LLMConfig
        with pytest.raises(ValidationError):
            LLMConfig(planning_temperature=2.5)


class TestMiscConfig:
    def test_invalid_log_level(self):
        from forgepilot.config.settings import LoggingConfig
        with pytest.raises(ValidationError):
            LoggingConfig(level="VERBOSE")

    def test_log_level_uppercased(self):
        from forgepilot.config.settings import LoggingConfig
        assert LoggingConfig(level="debug").level == "DEBUG"

    def test_terminal_timeout_positive(self):
        from forgepilot.config.settings import TerminalToolConfig
        with pytest.raises(ValidationError):
            TerminalToolConfig(timeout_seconds=0)

    def test_model_tiers(self):
        from forgepilot.config.settings import ModelsConfig
        tiers = ModelsConfig(fast=["a"], standard=[], powerful=["b"]).tiers()
        assert tiers == {"fast": ["a"], "standard": [], "powerful": ["b"]}


# ── Settings ──────────────────────────────────────────────────────────────────

class TestSettings:
    def test_defaults(self):
        s = _make_settings()
        assert s.default_llm_provider == "openrouter"
        assert s.log_level == "INFO"
        assert isinstance(s.log_dir, Path)
        assert s.openrouter_api_key is None

    def test_nested_dicts_coerced(self):
        s = _make_settings(agent={"max_retries": 5}, composer={"atomic_mode": True})
        assert s.agent.max_retries == 5
        assert s.composer.atomic_mode is True

    def test_api_key_for(self):
        s = _make_settings(OPENROUTER_API_KEY="sk-or")
        assert s.api_key_for("openrouter") == "sk-or"
        assert s.api_key_for("openai") is None
        assert s.api_key_for("unknown") is None

    def test_env_var_overrides_default(self, monkeypatch):
        monkeypatch.setenv("AGENT__MAX_RETRIES", "7")
        s = _make_settings()
        assert s.agent.max_retries == 7


class TestValidateAll:
    def test_passes_with_key(self):
        _make_settings(OPENROUTER_API_KEY="sk-or").validate_all()

    def test_missing_provider_key(self):
        from forgepilot.config.settings import ConfigError
        with pytest.raises(ConfigError) as exc_info:
            _make_settings().validate_all()
        assert "OPENROUTER_API_KEY" in str(exc_info.value)
        assert "1." in str(exc_info.value)

    def test_missing_fallback_key(self):
        from forgepilot.config.settings import ConfigError
        s = _make_settings(OPENROUTER_API_KEY="sk-or", llm={"fallback_providers": ["openai"]})
        with pytest.raises(ConfigError) as exc_info:
            s.validate_all()
        assert "OPENAI_API_KEY" in str(exc_info.value)

    def test_collects_every_problem(self):
        from forgepilot.config.settings import ConfigError
        s = _make_settings(
            llm={"fallback_providers": ["openai"]},
            models={"fast": [], "standard": [], "powerful": []},
            tools={"terminal": {"working_dir": "  "}},
        )
        with pytest.raises(ConfigError) as exc_info:
            s.validate_all()
        message = str(exc_info.value)
        for n in ("1.", "2.", "3.", "4."):
            assert n in message
        assert "4 configuration" in message


class TestConfigPath:
    def test_explicit_path_beats_env_var(self, tmp_path):
        from forgepilot.config.settings import _resolve_config_path
        cfg_file = tmp_path / "explicit.yaml"
        env_file = tmp_path / "env.yaml"
        with patch.dict(os.environ, {"FORGEPILOT_CONFIG": str(env_file)}):
            assert _resolve_config_path(str(cfg_file)) == Path(str(cfg_file))

    def test_env_var_used_when_no_explicit_path(self, tmp_path):
        from forgepilot.config.settings import _resolve_config_path
        env_file = tmp_path / "env_config.yaml"
        with patch.dict(os.environ, {"FORGEPILOT_CONFIG": str(env_file)}):
            assert _resolve_config_path(None) == Path(str(env_file))

    def test_default_path(self):
        from forgepilot.config.settings import _resolve_config_path
        assert _resolve_config_path(None) == Path("config/config.yaml")

    def test_load_settings_from_file(self, tmp_path):
        import forgepilot.config.settings as cs

        cfg_file = tmp_path / "test_config.yaml"
        cfg_file.write_text(textwrap.dedent("""
            agent:
              name: "TestAgent"
              max_retries: 1
            composer:
              atomic_mode: true
              max_diff_lines: 50
            unknown_section:
              ignored: true
        """))
        s = cs.load_settings(str(cfg_file))
        assert s.agent.name == "TestAgent"
        assert s.agent.max_retries == 1
        assert s.composer.atomic_mode is True
        assert s.composer.max_diff_lines == 50
        assert cs.get_settings() is s

    def test_missing_file_gives_defaults(self, tmp_path):
        from forgepilot.config.settings import load_settings
        s = load_settings(str(tmp_path / "absent.yaml"))
        assert s.agent.max_retries == 3

    def test_invalid_yaml_value_raises(self, tmp_path):
        from forgepilot.config.settings import load_settings
        cfg_file = tmp_path / "bad.yaml"
        cfg_file.write_text("composer:\n  max_diff_lines: 5000\n")
        with pytest.raises(ValidationError):
            load_settings(str(cfg_file))

    def test_env_var_beats_yaml(self, tmp_path, monkeypatch):
        from forgepilot.config.settings import load_settings
        cfg_file = tmp_path / "cfg.yaml"
        cfg_file.write_text("agent:\n  name: FromYaml\n  max_retries: 1\n")
        monkeypatch.setenv("AGENT__MAX_RETRIES", "9")
        s = load_settings(str(cfg_file))
        assert s.agent.max_retries == 9
        assert s.agent.name == "FromYaml"
