"""Tests for sosheiq.config."""

import json

import pytest
from pydantic import ValidationError

from sosheiq.config import _CONFIG_DEFAULTS, get_config, get_settings


def test_defaults_without_env() -> None:
    settings = get_settings(environ={})
    assert settings.initial_engagement == 30
    assert settings.engagement_decay_per_turn == 2
    assert settings.max_zero_engagement_streak == 3
    assert settings.history_window == 10
    assert settings.analysis_history_window == 30
    assert settings.retry_attempts == 3
    assert settings.retry_backoff_seconds == 1.0
    assert settings.llm_format == "koboldcpp"


def test_env_overrides_defaults() -> None:
    settings = get_settings(environ={
        "SOSHEIQ_LLM_URL": "http://llm:8080",
        "SOSHEIQ_LLM_FORMAT": "openai",
        "SOSHEIQ_RETRY_ATTEMPTS": "5",
        "SOSHEIQ_IMAGES_ENABLED": "false",
    })
    assert settings.llm_url == "http://llm:8080"
    assert settings.llm_format == "openai"
    assert settings.retry_attempts == 5
    assert settings.images_enabled is False


def test_config_file_then_env(tmp_path) -> None:
    path = tmp_path / "sosheiq.json"
    path.write_text(json.dumps({"history_window": 6, "image_url": "http://sd:7860", "bogus": 1}))
    config = get_config({"SOSHEIQ_CONFIG_FILE": str(path), "SOSHEIQ_HISTORY_WINDOW": "8"})
    assert config["history_window"] == "8"
    assert config["image_url"] == "http://sd:7860"
    assert "bogus" not in config


def test_missing_config_file_falls_back(tmp_path, caplog) -> None:
    config = get_config({"SOSHEIQ_CONFIG_FILE": str(tmp_path / "nope.json")})
    assert config == _CONFIG_DEFAULTS
    assert "not found" in caplog.text


def test_empty_env_value_ignored() -> None:
    assert get_config({"SOSHEIQ_LLM_URL": ""})["llm_url"] == _CONFIG_DEFAULTS["llm_url"]


def test_image_backend_needs_url() -> None:
    assert not get_settings(environ={}).image_backend_configured
    assert get_settings(environ={"SOSHEIQ_IMAGE_URL": "http://sd"}).image_backend_configured


def test_invalid_values_rejected() -> None:
    with pytest.raises(ValidationError):
        get_settings(environ={"SOSHEIQ_LLM_FORMAT": "gemini"})
    with pytest.raises(ValidationError):
        get_settings(environ={"SOSHEIQ_MAX_ZERO_ENGAGEMENT_STREAK": "0"})
