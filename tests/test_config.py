"""Tests for storyflow.config: Settings resolved from the environment."""

import os
from unittest.mock import patch

import pytest

from storyflow.config import Settings

ENV_VARS = [
    "OPENAI_API_KEY", "OPENAI_BASE_URL", "OPENAI_MODEL", "OPENAI_TIMEOUT",
    "OPENAI_RETRIES", "IMAGE_BACKEND", "STABLE_DIFFUSION_URL",
    "STABLE_DIFFUSION_TIMEOUT", "IMAGE_POLL_INTERVAL", "IMAGE_MAX_POLLS",
    "IMAGE_CHECKPOINT", "SERIALIZE_SESSIONS", "HOST", "PORT", "LOG_LEVEL",
]


@pytest.fixture
def env(tmp_path):
    """Clean environment and an empty .env file.

    load_dotenv writes into os.environ, so the whole mapping is restored
    afterwards.
    """
    with patch.dict(os.environ):
        for name in ENV_VARS:
            os.environ.pop(name, None)
        env_file = tmp_path / ".env"
        env_file.write_text("")
        yield env_file


def test_defaults(env) -> None:
    settings = Settings.from_env(env)
    assert settings.openai_api_key == ""
    assert settings.openai_base_url == "https://api.openai.com/v1"
    assert settings.openai_model == "deepseek-r1-distill-llama-8b"
    assert settings.openai_timeout_ms == 120_000
    assert settings.openai_retries == 3
    assert settings.image_backend == "none"
    assert settings.image_url == "http://localhost:7860"
    assert settings.serialize_sessions is False
    assert settings.port == 13013
    assert settings.log_level == "INFO"


def test_environment_overrides(env, monkeypatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("OPENAI_BASE_URL", "http://localhost:1234/v1")
    monkeypatch.setenv("OPENAI_MODEL", "llama")
    monkeypatch.setenv("OPENAI_TIMEOUT", "5000")
    monkeypatch.setenv("IMAGE_BACKEND", "Queued")
    monkeypatch.setenv("IMAGE_MAX_POLLS", "10")
    monkeypatch.setenv("SERIALIZE_SESSIONS", "yes")
    monkeypatch.setenv("PORT", "8080")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = Settings.from_env(env)
    assert settings.openai_api_key == "sk-test"
    assert settings.openai_base_url == "http://localhost:1234/v1"
    assert settings.openai_model == "llama"
    assert settings.openai_timeout_ms == 5000
    assert settings.image_backend == "queued"
    assert settings.image_max_polls == 10
    assert settings.serialize_sessions is True
    assert settings.port == 8080
    assert settings.log_level == "DEBUG"


def test_dotenv_file_loaded(env) -> None:
    env.write_text("OPENAI_MODEL=from-dotenv\nIMAGE_BACKEND=txt2img\n")
    settings = Settings.from_env(env)
    assert settings.openai_model == "from-dotenv"
    assert settings.image_backend == "txt2img"


def test_real_environment_wins_over_dotenv(env, monkeypatch) -> None:
    env.write_text("OPENAI_MODEL=from-dotenv\n")
    monkeypatch.setenv("OPENAI_MODEL", "from-env")
    assert Settings.from_env(env).openai_model == "from-env"


def test_unknown_image_backend_rejected(env, monkeypatch) -> None:
    monkeypatch.setenv("IMAGE_BACKEND", "dalle")
    with pytest.raises(ValueError):
        Settings.from_env(env)
