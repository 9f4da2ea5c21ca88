"""Process-wide settings, resolved once at startup from the environment.

A .env file at the repo root is loaded first (python-dotenv); real
environment variables win over it. Missing credentials are not an error
here: the text client raises ConfigError the first time it is used.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel

ROOT = Path(__file__).parent.parent

ImageBackend = Literal["none", "txt2img", "queued"]


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "deepseek-r1-distill-llama-8b"
    openai_timeout_ms: int = 120_000
    openai_retries: int = 3

    image_backend: ImageBackend = "none"
    image_url: str = "http://localhost:7860"
    image_timeout_ms: int = 60_000
    image_poll_interval: float = 1.0
    image_max_polls: int = 120
    image_checkpoint: str = ""

    serialize_sessions: bool = False

    host: str = "0.0.0.0"
    port: int = 13013
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env_file: Path | None = None) -> Settings:
        load_dotenv(env_file or ROOT / ".env")
        env = os.environ
        return cls(
            openai_api_key=env.get("OPENAI_API_KEY", ""),
            openai_base_url=env.get("OPENAI_BASE_URL") or cls.model_fields["openai_base_url"].default,
            openai_model=env.get("OPENAI_MODEL") or cls.model_fields["openai_model"].default,
            openai_timeout_ms=int(env.get("OPENAI_TIMEOUT", "120000")),
            openai_retries=int(env.get("OPENAI_RETRIES", "3")),
            image_backend=env.get("IMAGE_BACKEND", "none").lower(),
            image_url=env.get("STABLE_DIFFUSION_URL", "http://localhost:7860"),
            image_timeout_ms=int(env.get("STABLE_DIFFUSION_TIMEOUT", "60000")),
            image_poll_interval=float(env.get("IMAGE_POLL_INTERVAL", "1.0")),
            image_max_polls=int(env.get("IMAGE_MAX_POLLS", "120")),
            image_checkpoint=env.get("IMAGE_CHECKPOINT", ""),
            serialize_sessions=_flag(env.get("SERIALIZE_SESSIONS", "false")),
            host=env.get("HOST", "0.0.0.0"),
            port=int(env.get("PORT", "13013")),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )
