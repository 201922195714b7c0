import os
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    PHARMACY_DB_USER: str      = os.getenv("PHARMACY_DB_USER", "")
    PHARMACY_DB_PASSWORD: str  = os.getenv("PHARMACY_DB_PASSWORD", "")
    PHARMACY_DB_NAME: str      = os.getenv("PHARMACY_DB_NAME", "")
    PHARMACY_DB_HOST: str      = os.getenv("PHARMACY_DB_HOST", "localhost")
    PHARMACY_DB_PORT: int      = int(os.getenv("PHARMACY_DB_PORT", "5432"))

    # overrides the postgres parts above, e.g. sqlite+aiosqlite:///:memory:
    DATABASE_URL: str          = ""
    DB_ECHO: bool              = False

    # M-Pesa STK push simulation, seconds
    PAYMENT_COMPLETION_DELAY: float = 5.0
    PAYMENT_POLL_INTERVAL: float    = 2.0
    PAYMENT_TIMEOUT: float          = 60.0
    GATEWAY_BASE_URL: str           = ""

    DELIVERY_FEE: int          = 200

    JWT_SECRET: str            = os.getenv("JWT_SECRET", "afyabora_secret_key_123")
    JWT_ALGORITHM: str         = "HS256"

    UPLOAD_DIR: str            = "uploads"
    PUBLIC_BASE_URL: str       = "http://localhost:8000"

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+asyncpg://"
            f"{self.PHARMACY_DB_USER}:"
            f"{self.PHARMACY_DB_PASSWORD}"
            f"@{self.PHARMACY_DB_HOST}:"
            f"{self.PHARMACY_DB_PORT}/"
            f"{self.PHARMACY_DB_NAME}"
        )

settings = Settings()
