from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional

class Settings(BaseSettings):
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "marketplace"
    POSTGRES_USER: str = "marketplace"
    POSTGRES_PASSWORD: str = "marketplace"
    # Full SQLAlchemy URL; overrides the POSTGRES_* settings when set
    DATABASE_URL: Optional[str] = None

    GATEWAY_BASE_URL: str = "https://api.razorpay.com/v1"
    GATEWAY_KEY_ID: str = ""
    GATEWAY_KEY_SECRET: str = ""
    GATEWAY_CURRENCY: str = "INR"
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    GATEWAY_MAX_RETRIES: int = 2
    GATEWAY_RETRY_BACKOFF_SECONDS: float = 0.5

    ESTIMATED_DELIVERY_DAYS: int = 7

    REDIS_URL: str = ""
    ORDER_LOCK_TIMEOUT_SECONDS: float = 10.0

    NOTIFICATION_QUEUE_SIZE: int = 1000
    NOTIFICATION_SETTINGS_TTL_SECONDS: int = 60

    SERVICE_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    RUN_MIGRATIONS: bool = True

    class Config:
        env_file = ".env"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

@lru_cache
def get_settings() -> Settings:
    return Settings()
