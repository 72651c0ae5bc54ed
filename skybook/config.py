# skybook/config.py
from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # App
    APP_ENV: Literal["dev", "prod", "staging"] = "dev"
    TZ: str = "Europe/London"

    # OpenAI (dialogue collaborator)
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_TEMPERATURE: float = 0.7

    # Duffel
    DUFFEL_API_KEY: str = ""
    DUFFEL_BASE_URL: str = "https://api.duffel.com"
    DUFFEL_API_VERSION: str = "v2"

    # Provider timeouts (seconds). Multi-city searches do more supplier-side work.
    SEARCH_TIMEOUT_SECONDS: float = 30.0
    MULTI_CITY_SEARCH_TIMEOUT_SECONDS: float = 45.0
    PROVIDER_TIMEOUT_SECONDS: float = 20.0

    # Search & presentation
    SEARCH_RESULT_LIMIT: int = 10
    FILTER_SEARCH_LIMIT: int = 20
    MORE_OPTIONS_SEARCH_LIMIT: int = 15
    DIVERSE_RESULT_COUNT: int = 3
    ENRICHMENT_CONCURRENCY: int = 5

    # Booking
    DEFAULT_PHONE_COUNTRY_CODE: str = "31"
    DEFAULT_PAYMENT_TYPE: str = "balance"

    # Sessions
    REDIS_URL: Optional[str] = None  # unset -> in-memory store
    CONVERSATION_TTL_SECONDS: int = 24 * 60 * 60  # rolling, extended on activity
    SESSION_LOCK_TIMEOUT_SECONDS: int = 120
    SEARCH_HISTORY_LIMIT: int = 10
    OFFER_TRACKING_LIMIT: int = 20

    # read .env and ignore any extra keys so this doesn't break again
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

settings = Settings()
