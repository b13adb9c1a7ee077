import copy
import os
from pathlib import Path
from typing import Optional

import yaml

from llmgate._logging import get_logger

logger = get_logger("LlmGate.Config")

# Built-in provider wiring. A config file only needs to list what it changes.
DEFAULT_PROVIDERS: dict[str, dict] = {
    "claude": {
        "type": "claude",
        "env_key": "ANTHROPIC_API_KEY",
        "parameters": {"max_tokens": 8192},
    },
    "openai": {
        "type": "openai",
        "endpoint": "https://api.openai.com/v1",
        "env_key": "OPENAI_API_KEY",
        "include_usage": True,
        "parameters": {"max_tokens": 8192},
    },
    "deepseek": {
        "type": "openai",
        "endpoint": "https://api.deepseek.com",
        "env_key": "DEEPSEEK_API_KEY",
        "include_usage": False,
        "parameters": {"max_tokens": 8192},
    },
    "google": {
        "type": "google",
        "env_key": "GOOGLE_AI_API_KEY",
        "parameters": {"max_tokens": 8192},
    },
    "gamma": {
        "type": "gamma",
        "endpoint": "https://api.gamma.app/v1",
        "env_key": "GAMMA_API_KEY",
    },
}


def _default_config_path() -> Path:
    return Path.home() / ".llmgate" / "llmgate.yaml"


def _merge(base: dict, override: dict) -> dict:
    """Recursively merge *override* into a copy of *base*."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class ConfigLoader:
    """Finds and loads llmgate.yaml.

    Searches --config, the LLMGATE_CONFIG env var, then
    ~/.llmgate/llmgate.yaml. With ``allow_missing=True`` a missing file
    yields an empty config, and every accessor falls back to built-in
    defaults.
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        allow_missing: bool = False,
    ):
        self._config_path: Optional[Path] = None
        self.config: dict = {}

        resolved = self._find_config(config_path)

        if not resolved:
            if allow_missing:
                return
            searched: list[str] = []
            if config_path:
                searched.append(
                    f"  - Command line (--config): {Path(config_path).resolve()}"
                )
            env_path = os.environ.get("LLMGATE_CONFIG")
            if env_path:
                searched.append(
                    f"  - Environment variable (LLMGATE_CONFIG): "
                    f"{Path(env_path).resolve()}"
                )
            searched.append(f"  - User home directory: {_default_config_path()}")
            raise FileNotFoundError(
                "Could not find 'llmgate.yaml'. "
                "Searched in the following locations:\n" + "\n".join(searched)
            )

        self._config_path = resolved
        with open(resolved, "r") as f:
            self.config = yaml.safe_load(f) or {}
        logger.info(f"Loaded configuration from: {resolved.resolve()}")

    @classmethod
    def from_dict(cls, data: dict) -> "ConfigLoader":
        """Build a loader around an in-memory config (tests, embedding)."""
        loader = cls.__new__(cls)
        loader._config_path = None
        loader.config = copy.deepcopy(data)
        return loader

    # ------------------------------------------------------------------
    # Config discovery
    # ------------------------------------------------------------------

    def _find_config(self, config_path: Optional[str]) -> Optional[Path]:
        """Search for llmgate.yaml in priority order."""
        if config_path:
            p = Path(config_path)
            if p.is_file():
                return p
            logger.warning(f"Config not found at --config path: {p.resolve()}")

        env = os.environ.get("LLMGATE_CONFIG")
        if env:
            p = Path(env)
            if p.is_file():
                return p
            logger.warning(f"Config not found at env var path: {p.resolve()}")

        home = _default_config_path()
        if home.is_file():
            return home

        return None

    @property
    def config_path(self) -> Optional[Path]:
        return self._config_path

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    def get_providers_config(self) -> dict[str, dict]:
        """Provider sections merged over ``DEFAULT_PROVIDERS``."""
        return _merge(DEFAULT_PROVIDERS, self.config.get("providers", {}))

    def get_provider_config(self, name: str) -> dict:
        return self.get_providers_config().get(name, {})

    def get_model_overrides(self) -> dict:
        """Return the ``models`` section (pricing / vendor-name overrides)."""
        return self.config.get("models", {}) or {}

    def get_tiers_config(self) -> dict:
        """Return the ``tiers`` section, or ``{}`` if absent."""
        return self.config.get("tiers", {}) or {}

    def get_overage_config(self) -> dict:
        """Return the ``overage`` section, or ``{}`` if absent."""
        return self.config.get("overage", {}) or {}

    def get_quota_config(self) -> dict:
        """Return the ``quota`` section, or ``{}`` if absent."""
        return self.config.get("quota", {}) or {}

    def get_alerts_config(self) -> dict:
        """Return the ``alerts`` section, or ``{}`` if absent."""
        return self.config.get("alerts", {}) or {}

    def to_yaml(self) -> str:
        """Return the effective config as YAML (for ``llmgate config``)."""
        effective = dict(self.config)
        providers = self.get_providers_config()
        for cfg in providers.values():
            if cfg.get("api_key"):
                cfg["api_key"] = "********"
        effective["providers"] = providers
        return yaml.dump(
            effective,
            default_flow_style=False,
            sort_keys=False,
            allow_unicode=True,
        )
