"""Environment-driven settings (pydantic-settings).

get_settings() is cached: one Settings instance per process.
"""
from __future__ import annotations
from functools import lru_cache
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Requesting (bootstrap concept)
    requesting_base_url: str = "/api"
    requesting_timeout_ms: int = 10_000
    requesting_allowed_domain: str = "*"
    requesting_save_responses: bool = True
    requesting_sweep_interval_ms: int = 1_000

    # Engine
    engine_logging: str = "trace"
    engine_redact_keys: List[str] = ["password"]

    # Session concept
    session_ttl_minutes: int = 60

    # Observability
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("engine_logging")
    @classmethod
    def check_engine_logging(cls, v: str) -> str:
        v = v.lower()
        if v not in ("off", "trace", "verbose"):
            raise ValueError("engine_logging must be one of off, trace, verbose")
        return v

    @field_validator("requesting_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/") or ""

    @property
    def requesting_timeout(self) -> float:
        return self.requesting_timeout_ms / 1000.0


@lru_cache
def get_settings() -> Settings:
    return Settings()
