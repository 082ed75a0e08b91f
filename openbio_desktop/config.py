from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="OPENBIO_", env_file=".env", extra="ignore")

    # License Server Configuration
    LICENSE_API_URL: str = "https://your-vercel-app.vercel.app/api/license"
    LICENSE_API_TIMEOUT: float = 15.0

    # Grace Period
    OFFLINE_GRACE_PERIOD_DAYS: int = 30
    LICENSE_REVALIDATION_HOURS: int = 24

    # Storage (None means the per-user data directory)
    DATA_DIR: Optional[str] = None

    # Embedded service
    DEFAULT_SERVER_PORT: int = 3000
    SERVICE_START_TIMEOUT: float = 10.0

    # Control API used by the UI shell
    CONTROL_HOST: str = "127.0.0.1"
    CONTROL_PORT: int = 3999

    # Discovery
    DISCOVERY_SCAN_TIMEOUT: float = 5.0
    DISCOVERY_POLL_INTERVAL: float = 0.1

    LOG_LEVEL: str = "INFO"


settings = Settings()
