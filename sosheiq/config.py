"""Engine configuration: backend connections and tuning knobs.

Settings are resolved in three layers, later layers winning:

  1. _CONFIG_DEFAULTS
  2. a JSON file named by SOSHEIQ_CONFIG_FILE (optional)
  3. SOSHEIQ_* environment variables, with .env loaded by python-dotenv
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

ENV_PREFIX = "SOSHEIQ_"

_CONFIG_DEFAULTS: dict[str, Any] = {
    # text backend
    "llm_url": "http://localhost:5001",
    "llm_api_key": "",
    "llm_format": "koboldcpp",
    "llm_model": "",
    "llm_timeout": 120.0,
    "llm_max_tokens": None,
    "llm_temperature": None,
    # image backend
    "image_url": "",
    "image_api_key": "",
    "image_format": "openai",
    "image_model": "",
    "image_timeout": 120.0,
    "images_enabled": True,
    # engine
    "initial_engagement": 30,
    "engagement_decay_per_turn": 2,
    "max_zero_engagement_streak": 3,
    "history_window": 10,
    "analysis_history_window": 30,
    "retry_attempts": 3,
    "retry_backoff_seconds": 1.0,
    "call_timeout_seconds": 60.0,
}


class Settings(BaseModel):
    llm_url: str
    llm_api_key: str = ""
    llm_format: Literal["koboldcpp", "openai"] = "koboldcpp"
    llm_model: str = ""
    llm_timeout: float = Field(default=120.0, gt=0)
    llm_max_tokens: int | None = Field(default=None, gt=0)
    llm_temperature: float | None = Field(default=None, ge=0)

    image_url: str = ""
    image_api_key: str = ""
    image_format: Literal["openai", "automatic1111"] = "openai"
    image_model: str = ""
    image_timeout: float = Field(default=120.0, gt=0)
    images_enabled: bool = True

    initial_engagement: int = Field(default=30, ge=0, le=100)
    engagement_decay_per_turn: int = Field(default=2, ge=0)
    max_zero_engagement_streak: int = Field(default=3, ge=1)
    history_window: int = Field(default=10, ge=0)
    analysis_history_window: int = Field(default=30, ge=0)
    retry_attempts: int = Field(default=3, ge=1)
    retry_backoff_seconds: float = Field(default=1.0, ge=0)
    call_timeout_seconds: float = Field(default=60.0, gt=0)

    @property
    def image_backend_configured(self) -> bool:
        return self.images_enabled and bool(self.image_url)


def _read_config_file(path: Path) -> dict[str, Any]:
    stored = json.loads(path.read_text())
    if not isinstance(stored, dict):
        raise ValueError(f"{path}: config file must contain a JSON object")
    unknown = set(stored) - set(_CONFIG_DEFAULTS)
    if unknown:
        logger.warning("Ignoring unknown config keys in %s: %s", path, ", ".join(sorted(unknown)))
    return {k: v for k, v in stored.items() if k in _CONFIG_DEFAULTS}


def _read_env(environ: dict[str, str]) -> dict[str, str]:
    values = {}
    for key in _CONFIG_DEFAULTS:
        raw = environ.get(ENV_PREFIX + key.upper())
        if raw is not None and raw != "":
            values[key] = raw
    return values


def get_config(environ: dict[str, str] | None = None) -> dict[str, Any]:
    """Return defaults merged with the config file and the environment."""
    env = dict(os.environ if environ is None else environ)
    config = dict(_CONFIG_DEFAULTS)
    config_file = env.get(ENV_PREFIX + "CONFIG_FILE")
    if config_file:
        path = Path(config_file)
        if path.is_file():
            config.update(_read_config_file(path))
        else:
            logger.warning("Config file %s not found, using defaults", path)
    config.update(_read_env(env))
    return config


def get_settings(environ: dict[str, str] | None = None, env_file: Path | None = None) -> Settings:
    """Resolve Settings. Reads .env into the process environment first unless
    an explicit `environ` mapping is passed."""
    if environ is None:
        load_dotenv(env_file or Path.cwd() / ".env")
    return Settings.model_validate(get_config(environ))
