# settings.py
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Project
    PROJECT_NAME: str = "Threely Backend"
    API_PREFIX: str = "/api"
    ENVIRONMENT: str = "development"

    # Security
    JWT_SECRET: str = "super-secret-key"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRY_DAYS: int = 7
    AUTH_COOKIE_NAME: str = "dalma_auth_token"
    BCRYPT_ROUNDS: int = 12
    ADMIN_EMAILS: List[str] = ["threely.service@gmail.com", "admin@threely.com"]

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./dev.db"  # default local SQLite

    # Meshy
    MESHY_API_KEY: str = ""
    MESHY_API_BASE: str = "https://api.meshy.ai/openapi/v1"
    MESHY_HTTP_TIMEOUT: float = 30.0
    MESHY_DOWNLOAD_TIMEOUT: float = 60.0

    # Uploads
    MAX_DIRECT_UPLOAD_BYTES: int = 10 * 1024 * 1024  # bigger files are served through the proxy
    MAX_IMAGE_UPLOAD_BYTES: int = 10 * 1024 * 1024
    PENDING_GENERATION_TTL_HOURS: int = 24  # unsaved generations are forgotten after this

    # Cloudinary
    CLOUDINARY_CLOUD_NAME: str = ""
    CLOUDINARY_API_KEY: str = ""
    CLOUDINARY_API_SECRET: str = ""

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_PUBLISHABLE_KEY: str = ""

    # Frontend / CORS
    FRONTEND_DIR: str = "frontend"
    CORS_ORIGINS: str = "*"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"


# ✅ Instantiate settings globally
settings = Settings()
