"""
Configuration Manager - provider settings and agent tunables persisted as JSON

Lookup order for the config directory: $PAIR_AGENT_CONFIG_DIR, ~/.pair_agent,
then a temp-dir fallback. Environment variables override the stored values
without being written back.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field, model_validator

from pair_agent.services.intent_recognizer import DEFAULT_DEBUG_KEYWORDS, DEFAULT_REVIEW_KEYWORDS
from pair_agent.services.retry import RetryPolicy

logger = structlog.get_logger(__name__)

CONFIG_DIR_ENV = "PAIR_AGENT_CONFIG_DIR"


def default_config_dir() -> Path:
    return Path(os.environ.get(CONFIG_DIR_ENV) or os.path.expanduser("~/.pair_agent"))


class AgentSettings(BaseModel):
    """Tunables for the conversation core (the `agent` config section)"""

    max_context_tokens: int = Field(default=4000, gt=0)
    reserve_output_tokens: int = Field(default=1000, ge=0)
    min_messages_to_keep: int = Field(default=5, ge=1)
    enable_summarization: bool = True

    min_similarity: float = Field(default=0.7, gt=0, le=1)
    suggestion_cap: int = Field(default=4, ge=0)
    directive_lookahead_chars: int = Field(default=1200, gt=0)
    max_file_bytes: int = Field(default=256 * 1024, gt=0)

    queue_capacity: int = Field(default=64, ge=1)
    poll_interval: float = Field(default=0.1, gt=0)
    connect_timeout: float = Field(default=10.0, gt=0)
    request_timeout: float = Field(default=120.0, gt=0)
    retry: RetryPolicy = RetryPolicy()

    temperature: float = Field(default=0.0, ge=0, le=2)
    max_output_tokens: int = Field(default=4096, gt=0)
    max_tool_rounds: int = Field(default=3, ge=0)

    review_keywords: list[str] = list(DEFAULT_REVIEW_KEYWORDS)
    debug_keywords: list[str] = list(DEFAULT_DEBUG_KEYWORDS)

    unsafe_auto_apply: bool = False

    @model_validator(mode="after")
    def _check_limits(self) -> "AgentSettings":
        if self.connect_timeout >= self.request_timeout:
            raise ValueError("connect_timeout must be shorter than request_timeout")
        if self.reserve_output_tokens >= self.max_context_tokens:
            raise ValueError("reserve_output_tokens must be smaller than max_context_tokens")
        return self


class ConfigManager:
    """Manage configuration persistence"""

    _instance = None
    _config_file = None

    def __init__(self, config_dir: str | Path | None = None):
        config_path = Path(config_dir) if config_dir else default_config_dir()
        try:
            config_path.mkdir(parents=True, exist_ok=True)
            self._config_file = config_path / "config.json"
        except OSError as e:
            logger.warning("config_dir_unwritable", path=str(config_path), error=str(e))
            tmp_dir = Path(tempfile.gettempdir()) / "pair_agent"
            tmp_dir.mkdir(parents=True, exist_ok=True)
            self._config_file = tmp_dir / "config.json"
            logger.info("config_using_temp_path", path=str(self._config_file))

        self._config = self._load_config()

    @classmethod
    def get_instance(cls) -> "ConfigManager":
        """Get singleton instance"""
        if cls._instance is None:
            cls._instance = ConfigManager()
        return cls._instance

    @property
    def config_file(self) -> Path:
        return self._config_file

    def _load_config(self) -> dict[str, Any]:
        """Load configuration from file, filling missing sections from the defaults"""
        config = self._default_config()
        if not self._config_file.exists():
            return config

        try:
            with open(self._config_file, encoding="utf-8") as f:
                stored = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.error("config_load_failed", path=str(self._config_file), error=str(e))
            return config

        for key, value in stored.items():
            if isinstance(value, dict) and isinstance(config.get(key), dict):
                config[key] = {**config[key], **value}
            else:
                config[key] = value
        return config

    def _default_config(self) -> dict[str, Any]:
        """Get default configuration"""
        return {
            "provider": "openai",
            "openai": {"apiKey": "", "model": "gpt-4o"},
            "vllm": {
                "endpoint": "http://localhost:8000",
                "apiKey": "",
                "model": "meta-llama/Llama-3.1-8B-Instruct",
            },
            "gemini": {"apiKey": "", "model": "gemini-2.5-flash"},
            "agent": AgentSettings().model_dump(),
        }

    def _apply_env_overrides(self, config: dict[str, Any]) -> dict[str, Any]:
        provider = os.environ.get("PAIR_AGENT_PROVIDER")
        if provider:
            config["provider"] = provider
        if os.environ.get("OPENAI_API_KEY"):
            config["openai"] = {**config.get("openai", {}), "apiKey": os.environ["OPENAI_API_KEY"]}
        if os.environ.get("GEMINI_API_KEY"):
            config["gemini"] = {**config.get("gemini", {}), "apiKey": os.environ["GEMINI_API_KEY"]}
        model = os.environ.get("PAIR_AGENT_MODEL")
        if model:
            section = config.get("provider", "openai")
            config[section] = {**config.get(section, {}), "model": model}
        auto_apply = os.environ.get("PAIR_AGENT_UNSAFE_AUTO_APPLY")
        if auto_apply is not None:
            config["agent"] = {
                **config.get("agent", {}),
                "unsafe_auto_apply": auto_apply.strip().lower() in ("1", "true", "yes", "on"),
            }
        return config

    def get_config(self) -> dict[str, Any]:
        """Get current configuration with environment overrides applied"""
        # Reload config from file to ensure we have the latest
        self._config = self._load_config()
        return self._apply_env_overrides(json.loads(json.dumps(self._config)))

    def get_agent_settings(self) -> AgentSettings:
        """Validated `agent` section; raises pydantic.ValidationError on bad values"""
        return AgentSettings.model_validate(self.get_config().get("agent", {}))

    def save_config(self, config: dict[str, Any]):
        """Save configuration to file"""
        # Merge with existing config
        self._config.update(config)

        # Ensure config directory exists
        self._config_file.parent.mkdir(parents=True, exist_ok=True)

        # Write to file
        try:
            with open(self._config_file, "w", encoding="utf-8") as f:
                json.dump(self._config, f, indent=2)
        except OSError as e:
            raise RuntimeError(f"Failed to save config: {e}")

    def get(self, key: str, default=None):
        """Get specific config value"""
        return self._config.get(key, default)

    def set(self, key: str, value: Any):
        """Set specific config value"""
        self._config[key] = value
        self.save_config(self._config)
