import json

import pytest
from pydantic import ValidationError

from pair_agent.services.config_manager import AgentSettings, ConfigManager

ENV_VARS = (
    "PAIR_AGENT_PROVIDER",
    "PAIR_AGENT_MODEL",
    "PAIR_AGENT_UNSAFE_AUTO_APPLY",
    "OPENAI_API_KEY",
    "GEMINI_API_KEY",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def manager(tmp_path):
    return ConfigManager(tmp_path / "cfg")


def test_defaults_when_no_file(manager):
    config = manager.get_config()
    assert config["provider"] == "openai"
    assert config["agent"]["unsafe_auto_apply"] is False
    assert manager.get_agent_settings() == AgentSettings()


def test_saved_values_survive_reload(manager, tmp_path):
    manager.save_config({"provider": "gemini"})
    reloaded = ConfigManager(tmp_path / "cfg")
    assert reloaded.get_config()["provider"] == "gemini"
    assert json.loads(manager.config_file.read_text())["provider"] == "gemini"


def test_partial_sections_are_merged_with_defaults(tmp_path):
    config_dir = tmp_path / "cfg"
    config_dir.mkdir()
    (config_dir / "config.json").write_text(json.dumps({"openai": {"apiKey": "sk-1"}, "agent": {"suggestion_cap": 2}}))
    manager = ConfigManager(config_dir)
    config = manager.get_config()
    assert config["openai"] == {"apiKey": "sk-1", "model": "gpt-4o"}
    settings = manager.get_agent_settings()
    assert settings.suggestion_cap == 2
    assert settings.min_similarity == 0.7


def test_malformed_file_falls_back_to_defaults(tmp_path):
    config_dir = tmp_path / "cfg"
    config_dir.mkdir()
    (config_dir / "config.json").write_text("{not json")
    assert ConfigManager(config_dir).get_config()["provider"] == "openai"


def test_environment_overrides_are_not_persisted(manager, monkeypatch):
    monkeypatch.setenv("PAIR_AGENT_PROVIDER", "gemini")
    monkeypatch.setenv("GEMINI_API_KEY", "g-env")
    monkeypatch.setenv("PAIR_AGENT_MODEL", "gemini-2.5-pro")
    monkeypatch.setenv("PAIR_AGENT_UNSAFE_AUTO_APPLY", "yes")
    config = manager.get_config()
    assert config["provider"] == "gemini"
    assert config["gemini"] == {"apiKey": "g-env", "model": "gemini-2.5-pro"}
    assert manager.get_agent_settings().unsafe_auto_apply is True
    assert manager.get("provider") == "openai"
    assert not manager.config_file.exists()


def test_set_writes_single_key(manager):
    manager.set("provider", "vllm")
    assert ConfigManager(manager.config_file.parent).get("provider") == "vllm"


def test_invalid_agent_values_rejected(manager):
    manager.set("agent", {"min_similarity": 1.5})
    with pytest.raises(ValidationError):
        manager.get_agent_settings()


@pytest.mark.parametrize(
    "overrides",
    [
        {"connect_timeout": 30, "request_timeout": 30},
        {"max_context_tokens": 1000, "reserve_output_tokens": 1000},
        {"queue_capacity": 0},
        {"retry": {"max_attempts": 0}},
    ],
)
def test_settings_limits(overrides):
    with pytest.raises(ValidationError):
        AgentSettings(**overrides)
