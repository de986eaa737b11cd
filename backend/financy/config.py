from functools import lru_cache
import json
from pathlib import Path
from typing import Annotated

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
from pydantic import Field, field_validator

_ENV_CANDIDATES = (
    Path(__file__).resolve().parent.parent.parent / ".env",
    Path(__file__).resolve().parent.parent / ".env",
    Path.cwd() / ".env",
)

for env_path in _ENV_CANDIDATES:
    if env_path.is_file():
        load_dotenv(env_path, override=False)
        break


class Settings(BaseSettings):
    """Application configuration sourced from environment variables."""

    database_url: str = "sqlite:///./financy.db"
    log_level: str = "INFO"

    telegram_bot_token: str | None = Field(default=None, alias="TELEGRAM_BOT_TOKEN")
    telegram_webhook_url: str | None = Field(default=None, alias="TELEGRAM_WEBHOOK_URL")
    telegram_webhook_secret: str | None = Field(default=None, alias="TELEGRAM_WEBHOOK_SECRET")
    frontend_url: str = Field(default="https://financy.app", alias="FRONTEND_URL")

    openrouter_api_key: str | None = Field(default=None, alias="OPENROUTER_API_KEY")
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    primary_model: str = Field(default="deepseek/deepseek-chat-v3.1:free", alias="PRIMARY_MODEL")
    secondary_model: str = Field(default="qwen/qwen3-coder:free", alias="SECONDARY_MODEL")
    tertiary_model: str = Field(default="google/gemini-2.5-flash-lite", alias="TERTIARY_MODEL")
    vision_model: str = Field(default="google/gemini-2.5-flash-lite", alias="VISION_MODEL")

    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    transcription_model: str = "whisper-1"

    exchange_rate_api_key: str | None = Field(default=None, alias="EXCHANGE_RATE_API_KEY")

    text_model_timeout: float = 10.0
    media_model_timeout: float = 30.0
    rate_provider_timeout: float = 10.0
    rate_cache_ttl: float = 60 * 60
    pending_ttl: float = 10 * 60
    setup_session_ttl: float = 15 * 60

    confidence_threshold: float = 0.6
    default_currency: str = "USD"
    supported_currencies: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: [
            "USD",
            "EUR",
            "GBP",
            "JPY",
            "BRL",
            "CAD",
            "AUD",
            "CHF",
            "INR",
            "RUB",
            "SEK",
            "NOK",
            "DKK",
        ]
    )

    model_config = SettingsConfigDict(env_file=None, populate_by_name=True)

    @field_validator("supported_currencies", mode="before")
    @classmethod
    def parse_supported_currencies(cls, value: object) -> list[str]:
        if isinstance(value, str):
            stripped = value.strip()
            if stripped.startswith("["):
                try:
                    return [str(item).upper() for item in json.loads(stripped)]
                except json.JSONDecodeError:
                    pass
            return [item.strip().upper() for item in stripped.split(",") if item.strip()]
        if isinstance(value, (list, tuple)):
            return [str(item).upper() for item in value]
        raise ValueError("Invalid supported_currencies format.")

    @field_validator("default_currency")
    @classmethod
    def normalise_default_currency(cls, value: str) -> str:
        code = value.strip().upper()
        if len(code) != 3:
            raise ValueError("default_currency must be a three-letter ISO code.")
        return code

    @property
    def ai_enabled(self) -> bool:
        return bool(self.openrouter_api_key) and self.openrouter_api_key != "placeholder"


@lru_cache
def get_settings() -> Settings:
    """Return cached settings to avoid repeated environment parsing."""
    return Settings()
