"""Tests for config storage: defaults, partial merges, key obfuscation, env fallback."""

import json

import pytest

from storyloom.config import (
    PROVIDERS,
    ConfigStore,
    model_config_from_env,
    obfuscate_key,
    reveal_key,
)


@pytest.fixture
def config_store(tmp_path) -> ConfigStore:
    return ConfigStore(tmp_path)


def test_get_config_empty(config_store):
    """Returns defaults when no config file exists."""
    config = config_store.get_config()
    assert config["active_provider"] == "openai"
    assert set(config["providers"]) == set(PROVIDERS)
    assert config["providers"]["anthropic"]["model"] == "claude-3-5-sonnet-latest"
    assert config["pacing"] == {"thinking_delay": 1.5, "min_display": 1.8, "watchdog_timeout": 30.0}
    assert config["history_cap"] == 20


def test_update_provider_fields_merge(config_store):
    """Partial provider updates keep the other fields."""
    config_store.update_config({"providers": {"openai": {"api_key": "sk-1"}}})
    config_store.update_config({"providers": {"openai": {"model": "gpt-4o"}}})

    openai = config_store.get_config()["providers"]["openai"]
    assert openai["api_key"] == "sk-1"
    assert openai["model"] == "gpt-4o"
    assert openai["temperature"] == 0.8


def test_update_pacing_partial(config_store):
    config_store.update_config({"pacing": {"thinking_delay": 0}})
    pacing = config_store.get_config()["pacing"]
    assert pacing["thinking_delay"] == 0
    assert pacing["min_display"] == 1.8


def test_unknown_provider_ignored(config_store):
    config = config_store.update_config({
        "active_provider": "nonsense",
        "providers": {"nonsense": {"model": "x"}},
    })
    assert config["active_provider"] == "openai"
    assert "nonsense" not in config["providers"]


def test_api_key_not_stored_in_plain_text(config_store):
    config_store.update_config({"providers": {"anthropic": {"api_key": "secret-key"}}})
    stored = json.loads(config_store.path.read_text())
    assert stored["providers"]["anthropic"]["api_key"].startswith("b64:")
    assert "secret-key" not in config_store.path.read_text()


def test_key_obfuscation():
    assert obfuscate_key("") == ""
    assert reveal_key(obfuscate_key("abc")) == "abc"
    assert reveal_key("plain") == "plain"
    assert reveal_key("b64:%%%") == ""


def test_model_config_uses_active_provider(config_store):
    config_store.update_config({
        "active_provider": "deepseek",
        "providers": {"deepseek": {"api_key": "k", "temperature": 0.5}},
    })
    model = config_store.model_config()
    assert model.provider == "deepseek"
    assert model.model == "deepseek-chat"
    assert model.temperature == 0.5
    assert model.has_credentials


def test_model_config_from_env(monkeypatch):
    assert model_config_from_env() is None

    monkeypatch.setenv("STORYLOOM_API_KEY", "env-key")
    monkeypatch.setenv("STORYLOOM_PROVIDER", "anthropic")
    config = model_config_from_env()
    assert config.provider == "anthropic"
    assert config.api_key == "env-key"
    assert config.model == "claude-3-5-sonnet-latest"


def test_model_config_from_env_unknown_provider(monkeypatch):
    monkeypatch.setenv("STORYLOOM_API_KEY", "env-key")
    monkeypatch.setenv("STORYLOOM_PROVIDER", "mystery-ai")
    assert model_config_from_env().provider == "openai"
