from pathlib import Path
from typing import Optional, Union
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Database
    DB_URL: str = "postgresql://postgres:password@db:5432/packtrip"
    DB_ECHO: bool = False  # Set to True for SQL query logging in development
    DB_CREATE_TABLES: bool = True  # create_all on startup when no migrations are run

    # Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Number of connections to maintain in pool
    DB_MAX_OVERFLOW: int = 20  # Maximum overflow connections beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Timeout in seconds to get connection from pool
    DB_POOL_RECYCLE: int = 3600  # Recycle connections after 1 hour

    # Payment gateway (Midtrans Snap)
    MIDTRANS_SERVER_KEY: str = ""
    MIDTRANS_IS_PRODUCTION: bool = False
    MIDTRANS_TIMEOUT_SECONDS: float = 15.0
    PAYMENT_CURRENCY: str = "IDR"

    # Booking policy
    BOOKING_CODE_PREFIX: str = "BK"
    CANCEL_BOOKING_ON_PAYMENT_FAILURE: bool = False
    BOOKING_NOTES_MAX_LENGTH: int = 500

    # Notifications
    NOTIFICATION_QUEUE_SIZE: int = 1000
    FCM_SERVER_KEY: str = ""
    FCM_ENDPOINT: str = "https://fcm.googleapis.com/fcm/send"

    # Rate Limiting
    ENABLE_RATE_LIMITING: bool = True
    RATE_LIMIT_BOOKING: str = "10/minute"
    RATE_LIMIT_READ: str = "60/minute"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = "app.log"

    # CORS
    ALLOWED_ORIGINS: Union[list, str] = ["http://localhost:3000", "http://localhost:3001"]

    @field_validator('ALLOWED_ORIGINS', mode='before')
    @classmethod
    def parse_allowed_origins(cls, v):
        """Parse ALLOWED_ORIGINS from comma-separated string or list"""
        if isinstance(v, str):
            # Split by comma and strip whitespace
            return [origin.strip() for origin in v.split(',') if origin.strip()]
        return v

    # Security
    JWT_SECRET: str = "change_me"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    @property
    def midtrans_base_url(self) -> str:
        if self.MIDTRANS_IS_PRODUCTION:
            return "https://app.midtrans.com"
        return "https://app.sandbox.midtrans.com"

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).parents[3] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Process-wide settings instance (FastAPI dependency)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
