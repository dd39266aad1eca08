"""Study Quiz settings.

Values come from the environment (or a ``.env`` file) and are validated once
at import; the rest of the package imports ``settings``.
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import List, Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

# Relative paths resolve from the repository root
_PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..", ".."))

SUPPORTED_PROVIDERS = ("ANTHROPIC", "OLLAMA", "GOOGLE", "NVIDIA")

# Providers that need an API key (Ollama runs locally)
_PROVIDER_KEY_FIELDS = {
    "ANTHROPIC": "ANTHROPIC_API_KEY",
    "GOOGLE": "GOOGLE_API_KEY",
    "NVIDIA": "NVIDIA_API_KEY",
}


class Settings(BaseSettings):
    """Environment-backed configuration for the quiz service."""

    # ── Runtime ───────────────────────────────────────────
    ENVIRONMENT: Literal["development", "staging", "production"] = "development"
    DEBUG: bool = False
    LOG_DIR: str = "./logs"

    # ── Access tokens ─────────────────────────────────────
    JWT_SECRET_KEY: str = ""
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # ── Browser origins ───────────────────────────────────
    CORS_ORIGINS: List[str] = ["http://localhost:5173", "http://127.0.0.1:5173"]

    # ── Model provider ────────────────────────────────────
    LLM_PROVIDER: str = "ANTHROPIC"
    ANTHROPIC_MODEL: str = "claude-sonnet-4-5"
    ANTHROPIC_API_KEY: str = ""
    OLLAMA_MODEL: str = "llama3"
    GOOGLE_MODEL: str = "models/gemini-2.5-flash"
    GOOGLE_API_KEY: str = ""
    NVIDIA_MODEL: str = "qwen/qwen3.5-397b-a17b"
    NVIDIA_API_KEY: str = ""
    LLM_TIMEOUT: int = 120
    LLM_MAX_TOKENS: int = 8192

    # ── Sampling ──────────────────────────────────────────
    # Grading must score identical answers identically across calls.
    LLM_TEMPERATURE_GENERATION: float = 0.7
    LLM_TEMPERATURE_GRADING: float = 0.2

    # ── Quiz ──────────────────────────────────────────────
    MIN_QUESTION_COUNT: int = 1
    MAX_QUESTION_COUNT: int = 20
    SSE_SERVER_TIMEOUT_SECONDS: float = 180.0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _split_origins(cls, value):
        # Accept "a,b,c" from the environment
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("LLM_PROVIDER", mode="after")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        provider = value.upper()
        if provider not in SUPPORTED_PROVIDERS:
            raise ValueError(f"LLM_PROVIDER {value!r} is not one of {', '.join(SUPPORTED_PROVIDERS)}")
        return provider

    @field_validator("JWT_SECRET_KEY", mode="after")
    @classmethod
    def _require_jwt_secret(cls, value: str) -> str:
        if not value:
            raise ValueError("JWT_SECRET_KEY is required to verify access tokens")
        return value

    @model_validator(mode="after")
    def _check_cross_fields(self):
        if self.LOG_DIR and not os.path.isabs(self.LOG_DIR):
            object.__setattr__(self, "LOG_DIR", os.path.join(_PROJECT_ROOT, self.LOG_DIR))

        if not 1 <= self.MIN_QUESTION_COUNT <= self.MAX_QUESTION_COUNT:
            raise ValueError(
                "Question count bounds must satisfy 1 <= MIN_QUESTION_COUNT <= MAX_QUESTION_COUNT"
            )

        key_field = _PROVIDER_KEY_FIELDS.get(self.LLM_PROVIDER)
        if key_field and not getattr(self, key_field):
            logging.getLogger(__name__).warning(
                "LLM_PROVIDER=%s but %s is not set; model calls will fail", self.LLM_PROVIDER, key_field
            )
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
