"""Configuration management for call-ai.

Config discovery (first match wins):
  1. Explicit ``path`` argument (``--config`` on the CLI)
  2. ``./call_ai.yaml``
  3. ``~/.config/call-ai/config.yaml``
  4. Built-in defaults

Environment variables are applied on top of whatever was loaded.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field

_logger = logging.getLogger(__name__)

DEFAULT_CHAT_URL = "https://vibes-diy-api.com"
DEFAULT_REFRESH_ENDPOINT = "https://vibecode.garden"
DEFAULT_REFRESH_TOKEN = "use-vibes"
PROXY_MANAGED_KEY = "sk-vibes-proxy-managed"
FALLBACK_MODEL = "openrouter/auto"


class CallAIConfig(BaseModel):
    api_key: str | None = None
    chat_url: str = DEFAULT_CHAT_URL
    img_url: str | None = None
    endpoint: str | None = None  # full chat-completions URL, overrides chat_url
    refresh_endpoint: str = DEFAULT_REFRESH_ENDPOINT
    refresh_token: str = DEFAULT_REFRESH_TOKEN
    proxy_managed_key: str | None = PROXY_MANAGED_KEY  # None disables the placeholder
    referer: str = "https://vibes.diy"
    title: str = "Vibes"
    fallback_model: str = FALLBACK_MODEL
    timeout: float = 120
    debug: bool = False
    extra_params: dict[str, Any] = Field(default_factory=dict)  # merged into every request


CONFIG_FILENAME = "call_ai.yaml"

_SEARCH_PATHS = [
    Path(CONFIG_FILENAME),
    Path.home() / ".config" / "call-ai" / "config.yaml",
]

# First non-empty variable wins for each field.
_ENV_VARS: dict[str, tuple[str, ...]] = {
    "api_key": ("CALLAI_API_KEY", "OPENROUTER_API_KEY", "LOW_BALANCE_OPENROUTER_API_KEY"),
    "chat_url": ("CALLAI_CHAT_URL",),
    "img_url": ("CALLAI_IMG_URL",),
    "refresh_endpoint": ("CALLAI_REFRESH_ENDPOINT",),
    "refresh_token": ("CALL_AI_REFRESH_TOKEN", "CALLAI_REFRESH_TOKEN"),
    "debug": ("CALLAI_DEBUG",),
}


def env_overrides(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Read config overrides from the environment.  Empty values are ignored."""
    env = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}
    for field_name, names in _ENV_VARS.items():
        for name in names:
            value = env.get(name)
            if value:
                overrides[field_name] = value
                break
    if "debug" in overrides:
        overrides["debug"] = overrides["debug"].lower() not in ("0", "false", "no")
    return overrides


def load_config(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> tuple[CallAIConfig, Path | None]:
    """Load configuration from YAML, then apply environment overrides.

    Returns ``(config, resolved_path)``.  *resolved_path* is ``None`` when
    no file was found and built-in defaults are used.
    """
    config_path: Path | None = None
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    raw: dict[str, Any] = {}
    if config_path is not None:
        _logger.info("Loading config from %s", config_path)
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        # Explicit nulls in YAML mean "use the default"
        raw = {k: v for k, v in raw.items() if v is not None}
    else:
        _logger.debug("No config file found, using defaults")

    raw.update(env_overrides(environ))
    resolved = config_path.resolve() if config_path is not None else None
    return CallAIConfig.model_validate(raw), resolved
