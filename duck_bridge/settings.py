from __future__ import annotations

import tempfile
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_MODEL = "mistralai/Mistral-Small-24B-Instruct-2501"
DEFAULT_MODELS = (
    "gpt-4o-mini",
    "gpt-5-mini",
    "claude-3-5-haiku-latest",
    "meta-llama/Llama-4-Scout-17B-16E-Instruct",
    "mistralai/Mistral-Small-24B-Instruct-2501",
    "openai/gpt-oss-120b",
)


class Settings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 3000
    server_api_key: str | None = None
    ingress_api_keys: str = ""
    upstream_base_url: str = "https://duckduckgo.com"
    upstream_fe_version: str = "serp_20250401_100419_ET-19d438eb199b2bf7c300"
    upstream_timeout_seconds: float = 120.0
    upstream_connect_timeout_seconds: float = 10.0
    challenge_timeout_seconds: float = 10.0
    default_model: str = DEFAULT_MODEL
    available_models: str = ""
    rate_limit_max_requests: int = 20
    rate_limit_window_ms: int = 60_000
    rate_limit_min_interval_ms: int = 1_000
    rate_limit_buffer_ms: int = 100
    rate_state_path: str = str(Path(tempfile.gettempdir()) / "duck-bridge-rate-limit.json")
    rate_state_redis_key: str = "duck_bridge:rate_limit"
    redis_url: str | None = None

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def ingress_api_keys_list(self) -> list[str]:
        keys = _split_csv(self.ingress_api_keys)
        if self.server_api_key and self.server_api_key.strip():
            keys.append(self.server_api_key.strip())
        return keys

    @property
    def available_models_list(self) -> list[str]:
        return _split_csv(self.available_models) or list(DEFAULT_MODELS)


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
