from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_UPSTREAM_HOST = "generativelanguage.googleapis.com"
DEFAULT_API_CLIENT = "google-genai-sdk/1.28.0"
DEFAULT_MAX_RETRIES = 3


class Settings(BaseSettings):
    google_gemini_api_keys: str = ""
    auth_code: str | None = None
    upstream_host: str = DEFAULT_UPSTREAM_HOST
    upstream_scheme: str = "https"
    upstream_port: int = 443
    max_retries: int = DEFAULT_MAX_RETRIES
    default_api_client: str = DEFAULT_API_CLIENT
    upstream_connect_timeout_seconds: float = 10.0
    upstream_read_timeout_seconds: float = 300.0
    upstream_write_timeout_seconds: float = 60.0
    upstream_pool_timeout_seconds: float = 10.0
    proxy_host: str = "0.0.0.0"
    proxy_port: int = 8000
    log_level: str = "info"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
        frozen=True,
    )

    @property
    def api_keys_list(self) -> list[str]:
        return _split_csv(self.google_gemini_api_keys)

    @property
    def expected_auth_code(self) -> str | None:
        return self.auth_code or None

    @property
    def retry_budget(self) -> int:
        return max(1, self.max_retries)

    @property
    def upstream_origin(self) -> str:
        return f"{self.upstream_scheme}://{self.upstream_host}:{self.upstream_port}"


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
