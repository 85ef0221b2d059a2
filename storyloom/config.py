"""App configuration: model connections per provider, pacing, history cap.

config.json layout:

    {
      "active_provider": "openai",
      "providers": {
        "openai": {"model": "gpt-4", "api_key": "b64:...", "base_url": null,
                   "temperature": 0.8, "max_tokens": 2000, "custom_prompt": null},
        ...
      },
      "pacing": {"thinking_delay": 1.5, "min_display": 1.8, "watchdog_timeout": 30},
      "history_cap": 20
    }

get_config() returns defaults merged with stored values (api keys decoded).
update_config() applies partial updates: providers merged per provider and
per field, pacing merged per field, scalars overwritten.
"""

import base64
import binascii
import json
import logging
import os
from pathlib import Path
from typing import Any, get_args

from storyloom.history import HISTORY_CAP
from storyloom.models import ModelConfig, Provider

logger = logging.getLogger(__name__)

PROVIDERS: tuple[str, ...] = get_args(Provider)

DEFAULT_MODELS: dict[str, str] = {
    "openai": "gpt-4",
    "anthropic": "claude-3-5-sonnet-latest",
    "google": "gemini-1.5-pro",
    "openrouter": "openai/gpt-4o",
    "deepseek": "deepseek-chat",
    "moonshot": "moonshot-v1-8k",
    "zhipu": "glm-4",
    "custom": "",
}

_PACING_DEFAULTS: dict[str, float] = {
    "thinking_delay": 1.5,
    "min_display": 1.8,
    "watchdog_timeout": 30.0,
}

_PROVIDER_FIELDS = ("model", "api_key", "base_url", "temperature", "max_tokens", "custom_prompt")

_KEY_PREFIX = "b64:"


def obfuscate_key(key: str) -> str:
    """Keep api keys out of plain sight in config.json. Not encryption."""
    if not key:
        return ""
    return _KEY_PREFIX + base64.b64encode(key.encode("utf-8")).decode("ascii")


def reveal_key(stored: str) -> str:
    if not stored.startswith(_KEY_PREFIX):
        return stored
    try:
        return base64.b64decode(stored[len(_KEY_PREFIX):]).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        logger.warning("Stored api key could not be decoded; ignoring it")
        return ""


def _provider_defaults(provider: str) -> dict[str, Any]:
    return {
        "model": DEFAULT_MODELS[provider],
        "api_key": "",
        "base_url": None,
        "temperature": 0.8,
        "max_tokens": 2000,
        "custom_prompt": None,
    }


def _merge_provider(target: dict[str, Any], vals: dict[str, Any]) -> None:
    for field in _PROVIDER_FIELDS:
        if field in vals:
            target[field] = vals[field]


class ConfigStore:
    def __init__(self, data_dir: Path) -> None:
        self._dir = Path(data_dir)
        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._dir / "config.json"

    def get_config(self) -> dict[str, Any]:
        """Read config, returning defaults merged with stored values."""
        config: dict[str, Any] = {
            "active_provider": "openai",
            "providers": {p: _provider_defaults(p) for p in PROVIDERS},
            "pacing": dict(_PACING_DEFAULTS),
            "history_cap": HISTORY_CAP,
        }
        if self.path.is_file():
            stored = json.loads(self.path.read_text())
            if stored.get("active_provider") in PROVIDERS:
                config["active_provider"] = stored["active_provider"]
            for provider, vals in stored.get("providers", {}).items():
                if provider in config["providers"] and isinstance(vals, dict):
                    _merge_provider(config["providers"][provider], vals)
            if isinstance(stored.get("pacing"), dict):
                for key, val in stored["pacing"].items():
                    if key in config["pacing"]:
                        config["pacing"][key] = val
            if "history_cap" in stored:
                config["history_cap"] = stored["history_cap"]
        for vals in config["providers"].values():
            vals["api_key"] = reveal_key(vals["api_key"] or "")
        return config

    def update_config(self, fields: dict[str, Any]) -> dict[str, Any]:
        """Merge fields into config and persist. Returns full config."""
        config = self.get_config()
        if fields.get("active_provider") in PROVIDERS:
            config["active_provider"] = fields["active_provider"]
        for provider, vals in fields.get("providers", {}).items():
            if provider in config["providers"] and isinstance(vals, dict):
                _merge_provider(config["providers"][provider], vals)
        if isinstance(fields.get("pacing"), dict):
            for key, val in fields["pacing"].items():
                if key in config["pacing"]:
                    config["pacing"][key] = val
        if "history_cap" in fields:
            config["history_cap"] = int(fields["history_cap"])

        stored = json.loads(json.dumps(config))
        for vals in stored["providers"].values():
            vals["api_key"] = obfuscate_key(vals["api_key"])
        self.path.write_text(json.dumps(stored, indent=2))
        logger.info("Config updated (active provider %s)", config["active_provider"])
        return config

    def model_config(self, provider: str | None = None) -> ModelConfig:
        """ModelConfig for the given (default: active) provider."""
        config = self.get_config()
        provider = provider or config["active_provider"]
        vals = config["providers"][provider]
        return ModelConfig(
            provider=provider,
            model=vals["model"] or DEFAULT_MODELS[provider],
            api_key=vals["api_key"],
            base_url=vals["base_url"],
            temperature=vals["temperature"],
            max_tokens=vals["max_tokens"],
            custom_prompt=vals["custom_prompt"],
        )


def model_config_from_env() -> ModelConfig | None:
    """ModelConfig from STORYLOOM_* env vars, or None when no key is set."""
    api_key = os.getenv("STORYLOOM_API_KEY", "")
    if not api_key:
        return None
    provider = os.getenv("STORYLOOM_PROVIDER", "openai")
    if provider not in PROVIDERS:
        logger.warning("Unknown STORYLOOM_PROVIDER %r, using openai", provider)
        provider = "openai"
    return ModelConfig(
        provider=provider,
        model=os.getenv("STORYLOOM_MODEL") or DEFAULT_MODELS[provider] or "gpt-4",
        api_key=api_key,
        base_url=os.getenv("STORYLOOM_BASE_URL") or None,
    )
