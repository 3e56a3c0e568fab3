from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    ENVIRONMENT: str = "development"  # "development" or "production"

    DATABASE_URL: str = "sqlite:///./recordexport.db"
    PREFERENCE_STORE_BACKEND: str = "database"  # "database" or "memory"

    # Upstream SaaS platform
    PLATFORM_API_BASE_URL: str = "https://api.planhat.com"
    PLATFORM_API_TOKEN: Optional[str] = None
    PLATFORM_API_TIMEOUT: float = 30.0

    # Pagination
    MAX_PAGE_SIZE: int = 2000  # hard platform ceiling per request
    DEFAULT_PAGE_SIZE: int = 1000

    # Exports
    EXPORT_BATCH_SIZE: int = 1000
    EXPORT_STREAMING_THRESHOLD: int = 5000
    EXPORT_JOB_MAX_AGE_SECONDS: int = 60 * 60
    EXPORT_XLSX_ENABLED: bool = True

    # Field detection
    DISCOVERY_SAMPLE_LIMIT: int = 100
    DISCOVERY_PRESENCE_RATIO: float = 0.10
    DETECTION_STALE_MINUTES: int = 20

    CORS_ORIGINS: List[str] = ["http://localhost:3000"]

    @property
    def is_production(self):
        return self.ENVIRONMENT == "production"

    @property
    def detection_stale_seconds(self):
        return self.DETECTION_STALE_MINUTES * 60

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

settings = Settings()
