from functools import lru_cache
from typing import List

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    app_name: str = Field(default="Styleslot Booking Client")
    cors_origins: List[AnyHttpUrl] = Field(
        default_factory=lambda: [
            "http://localhost:8081",
            "http://127.0.0.1:8081",
            "http://localhost:19006",
        ]
    )
    api_base_url: AnyHttpUrl | None = Field(
        default=None
    )
    api_timeout: float = Field(
        default=10.0
    )
    api_token: str | None = Field(
        default=None
    )
    use_mock_data: bool = Field(
        default=True
    )
    cable_url: str | None = Field(
        default=None
    )
    push_enabled: bool = Field(
        default=True
    )
    poll_interval: float = Field(
        default=3.0, gt=0
    )

    model_config = SettingsConfigDict(env_prefix="STYLESLOT_", case_sensitive=False)

    @field_validator("cors_origins", mode="before")
    def _split_origins(cls, value):
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("api_token", mode="before")
    def _strip_bearer(cls, value):
        # Tokens copied from an Authorization header keep their prefix.
        if isinstance(value, str):
            value = value.strip()
            if value.lower().startswith("bearer "):
                value = value[7:].strip()
            return value or None
        return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()
