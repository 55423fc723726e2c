"""
Configuration management for the Subsidy CRM backend
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "Subsidy CRM"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "sqlite:///./subsidy_crm.db"

    # Reject concurrent writes to the same project/invoice instead of last-write-wins
    STRICT_CONCURRENCY: bool = False

    # Security
    SECRET_KEY: str = "dev-secret-key-change-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7  # 7 days

    # CORS
    CORS_ORIGINS: list[str] = ["http://localhost:5173", "http://127.0.0.1:5173"]

    # Uploads (task attachments)
    UPLOAD_DIR: str = "uploads"
    MAX_UPLOAD_SIZE: int = 10 * 1024 * 1024  # 10 MB

    # Website contact form webhook
    WEBHOOK_KEY: str = ""

    # Invoicing
    DEFAULT_CURRENCY: str = "INR"

    # Seeded on startup when no admin exists
    DEFAULT_ADMIN_EMAIL: str = "admin@example.com"
    DEFAULT_ADMIN_NAME: str = "Administrator"
    DEFAULT_ADMIN_PASSWORD: str = "admin12345"

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    return Settings()
