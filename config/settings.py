"""
config/settings.py
Application settings loaded from environment variables.
Uses Pydantic BaseSettings for validation and type safety.
"""

from functools import lru_cache
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    APP_NAME: str = "FachowcyNow API"
    APP_ENV: str = "development"
    APP_VERSION: str = "2.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    SECRET_KEY: str

    # ── Server ───────────────────────────────────────────────
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # ── Database ─────────────────────────────────────────────
    DATABASE_URL: str
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40
    DATABASE_POOL_TIMEOUT: int = 30

    # ── Redis ────────────────────────────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_CACHE_TTL: int = 300          # 5 minutes

    # ── JWT (issued by the identity provider) ────────────────
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # ── Razorpay ─────────────────────────────────────────────
    RAZORPAY_KEY_ID: str = ""
    RAZORPAY_KEY_SECRET: str = ""
    RAZORPAY_WEBHOOK_SECRET: str = ""
    PLATFORM_FEE_PERCENT: float = 10.0
    CURRENCY: str = "PLN"

    # ── Gemini ───────────────────────────────────────────────
    GEMINI_API_KEY: str = ""
    GEMINI_MODEL: str = "gemini-2.0-flash"
    AI_TIMEOUT_SECONDS: float = 15.0

    # ── Google Maps ──────────────────────────────────────────
    GOOGLE_MAPS_API_KEY: str = ""
    GEOCODING_URL: str = "https://maps.googleapis.com/maps/api/geocode/json"
    GEOCODING_CACHE_TTL: int = 3600
    GEOCODING_TIMEOUT_SECONDS: float = 10.0

    # ── Firebase ─────────────────────────────────────────────
    FIREBASE_CREDENTIALS_PATH: str = "./config/firebase-credentials.json"
    FIREBASE_PROJECT_ID: str = ""

    # ── Frontend ─────────────────────────────────────────────
    FRONTEND_URL: str = "http://localhost:3000"
    ALLOWED_ORIGINS: str = "http://localhost:3000"

    # ── Celery ───────────────────────────────────────────────
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"

    # ── Rate Limiting ────────────────────────────────────────
    RATE_LIMIT_UNAUTH_PER_MINUTE: int = 20

    # ── Search ───────────────────────────────────────────────
    SEARCH_DEFAULT_RADIUS_M: float = 10_000.0
    SEARCH_MAX_RADIUS_M: float = 100_000.0
    PROVIDER_GEOHASH_PRECISION: int = 9

    # ── Business Config ──────────────────────────────────────
    BOOKING_VALIDITY_DAYS: int = 7
    REVIEW_WINDOW_DAYS: int = 14
    REFERRAL_REFERRER_BONUS: float = 50.0
    REFERRAL_REFEREE_BONUS: float = 25.0
    REFERRAL_PRO_REFERRER_BONUS: float = 100.0

    # ── Live traffic simulation (dev) ────────────────────────
    SIMULATION_ENABLED: bool = False
    SIMULATION_INTERVAL_SECONDS: float = 2.5
    SIMULATION_BATCH_SIZE: int = 5
    SIMULATION_BUSY_PROBABILITY: float = 0.2

    INSTANCE_NAME: Optional[str] = None

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()


settings = get_settings()
