from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Service Info
    APP_NAME: str = "brinkbyte-vision-billing"
    APP_VERSION: str = "2.0.0"
    HOST: str = "0.0.0.0"
    PORT: int = 8081
    LOG_LEVEL: str = "INFO"

    # Storage: "sql" or "memory"
    STORAGE_BACKEND: str = "sql"
    DATABASE_URL: str = "sqlite:///./billing.db"

    # Auth
    REQUIRE_AUTH: bool = False
    REQUIRE_ADMIN_AUTH: bool = False
    ADMIN_API_KEY: str = ""

    # CORS
    CORS_ORIGINS: List[str] = ["*"]

    # Trial License
    TRIAL_MAX_CAMERAS: int = 2
    TRIAL_DURATION_DAYS: int = 90

    # Pricing (AUD)
    BASE_PER_CAMERA_RATE: float = 14.99
    CURRENCY: str = "AUD"

    # Paid plan defaults
    DEFAULT_PAID_CAMERAS: int = 10

    # Edge devices
    HEARTBEAT_INTERVAL_SECONDS: int = 900


settings = Settings()
