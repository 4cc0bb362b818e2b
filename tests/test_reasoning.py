"""ReasoningSettings and the engine factory.

Verifies:
  1. Provider names are case-insensitive; empty model names mean provider default
  2. The fast tier falls back to each provider's small model
  3. Per-call temperature is the only temperature knob (no settings default)
  4. A missing API key is collaborator-unavailable
  5. A missing SDK points at the package to install
"""

from __future__ import annotations

import sys

import pytest

from workflow_builder_agent.errors import CollaboratorUnavailableError, ErrorKind
from workflow_builder_agent.reasoning import ClaudeEngine, OpenAIEngine, ReasoningSettings, create_engine


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in ("REASONING_ENGINE", "REASONING_MODEL", "REASONING_FAST_MODEL",
                "ANTHROPIC_API_KEY", "OPENAI_API_KEY", "REASONING_MAX_TOKENS"):
        monkeypatch.delenv(var, raising=False)


def _settings(**env) -> ReasoningSettings:
    return ReasoningSettings(_env_file=None, **env)


def test_provider_and_model_normalisation(monkeypatch):
    monkeypatch.setenv("REASONING_ENGINE", "Claude")
    monkeypatch.setenv("REASONING_MODEL", "")
    settings = _settings()
    assert settings.provider == "claude"
    assert settings.model is None


@pytest.mark.parametrize(
    "provider, fast_model",
    [("openai", "gpt-4o-mini"), ("claude", "claude-haiku-4-5"), ("anthropic", "claude-haiku-4-5")],
)
def test_fast_tier_defaults(monkeypatch, provider, fast_model):
    monkeypatch.setenv("REASONING_ENGINE", provider)
    assert _settings().resolved_fast_model() == fast_model


def test_explicit_fast_model_wins(monkeypatch):
    monkeypatch.setenv("REASONING_FAST_MODEL", "gpt-4.1-nano")
    assert _settings().resolved_fast_model() == "gpt-4.1-nano"


def test_temperature_is_not_a_setting(monkeypatch):
    monkeypatch.setenv("REASONING_TEMPERATURE", "0.9")
    settings = _settings()
    assert "temperature" not in ReasoningSettings.model_fields
    assert not hasattr(settings, "temperature")


def test_missing_key_is_collaborator_unavailable():
    with pytest.raises(CollaboratorUnavailableError) as exc_info:
        create_engine(_settings())
    assert exc_info.value.kind is ErrorKind.COLLABORATOR_UNAVAILABLE
    assert "OPENAI_API_KEY" in exc_info.value.message


def test_factory_builds_configured_engine(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("REASONING_MODEL", "gpt-4.1")
    engine = create_engine(_settings())
    assert isinstance(engine, OpenAIEngine)
    assert engine.model_id == "openai/gpt-4.1"


def test_unknown_provider_is_rejected(monkeypatch):
    monkeypatch.setenv("REASONING_ENGINE", "mystery")
    with pytest.raises(ValueError, match="Unknown reasoning engine provider"):
        create_engine(_settings())


@pytest.mark.parametrize(
    "engine_cls, module",
    [(ClaudeEngine, "anthropic"), (OpenAIEngine, "openai")],
)
def test_missing_sdk_names_the_package(monkeypatch, engine_cls, module):
    monkeypatch.setitem(sys.modules, module, None)
    with pytest.raises(ImportError, match=f"pip install {module}$"):
        engine_cls(api_key="key")
