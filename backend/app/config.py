# backend/app/config.py
from __future__ import annotations

from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve repo root: repo/ (since this file is repo/backend/app/config.py)
REPO_ENV = Path(__file__).resolve().parents[2] / ".env"


class Settings(BaseSettings):
    """
    Central config for the LookEscolar API. Uses Pydantic v2 + pydantic-settings.

    - Loads env from the repo root .env if present
    - Ignores unknown env vars (the Next.js era .env has plenty of them)
    - Case-insensitive env keys
    - Sane defaults for local dev & tests (SQLite + local storage, no live services)
    """

    model_config = SettingsConfigDict(
        env_file=str(REPO_ENV),
        extra="ignore",
        case_sensitive=False,
    )

    # --- Runtime --------------------------------------------------------------
    ENVIRONMENT: str = "development"  # development|production|test
    APP_BASE_URL: str = "http://localhost:3000"
    CORS_ORIGINS: str = "http://localhost:3000,http://127.0.0.1:3000"

    # --- Database (Supabase Postgres in prod) ---------------------------------
    DATABASE_URL: str = "sqlite:///data/lookescolar.db"
    DB_ECHO: int = 0

    # --- Supabase -------------------------------------------------------------
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_ROLE_KEY: str = ""

    # --- Storage --------------------------------------------------------------
    STORAGE_BACKEND: str = "local"  # supabase|local
    LOCAL_STORAGE_DIR: str = "data/storage"
    STORAGE_BUCKET_ORIGINALS: str = "photo-private"
    STORAGE_BUCKET_PREVIEWS: str = "photos"
    STORAGE_SIGNING_SECRET: str = "dev-signing-secret-change-me"
    SIGNED_URL_TTL_SECONDS: int = 3600

    # --- Admin auth -----------------------------------------------------------
    ADMIN_API_TOKEN: str = ""
    ADMIN_EMAILS: str = ""  # comma-separated, checked against Supabase Auth users

    # --- Mercado Pago ---------------------------------------------------------
    MP_ACCESS_TOKEN: str = ""
    MP_WEBHOOK_SECRET: str = ""
    MP_API_URL: str = "https://api.mercadopago.com"
    MP_TIMEOUT_S: float = 10.0
    MP_NOTIFICATION_PATH: str = "/api/payments/webhook"

    # --- Rate limiting (slowapi; redis:// for Upstash in prod) ---------------
    RATE_LIMIT_ENABLED: int = 1
    RATE_LIMIT_STORAGE_URI: str = "memory://"
    RATE_LIMIT_CHECKOUT: str = "5/minute"
    RATE_LIMIT_GALLERY: str = "60/minute"
    RATE_LIMIT_PUBLIC: str = "30/minute"
    RATE_LIMIT_UPLOAD: str = "30/minute"
    RATE_LIMIT_WEBHOOK: str = "120/minute"

    # --- Watermark / previews -------------------------------------------------
    WATERMARK_TEXT: str = "LOOK ESCOLAR"
    PREVIEW_MAX_DIMENSION: int = 512
    PREVIEW_QUALITY: int = 60  # WebP quality 0-100
    PREVIEW_TARGET_KB: int = 35
    PREVIEW_MIN_QUALITY: int = 20

    # --- Uploads --------------------------------------------------------------
    MAX_UPLOAD_FILES: int = 20
    MAX_FILE_BYTES: int = 1024 * 1024 * 10  # 10 MiB per photo
    UPLOAD_CONCURRENCY: int = 3
    MAX_IMAGE_DIMENSION: int = 12000

    # --- Family tokens --------------------------------------------------------
    TOKEN_MIN_LENGTH: int = 20
    TOKEN_EXPIRY_DAYS: int = 30
    TOKEN_ROTATION_THRESHOLD_DAYS: int = 7
    TOKEN_MAX_FAILED_ATTEMPTS: int = 5
    TOKEN_BLACKLIST_TTL_HOURS: int = 24
    TOKEN_RATE_LIMIT_PER_MINUTE: int = 30

    # --- Store / pricing ------------------------------------------------------
    CURRENCY: str = "ARS"
    DEFAULT_PHOTO_PRICE_CENTS: int = 1000
    DEFAULT_PHOTO_LABEL: str = "Foto Digital"

    # --- Logs -----------------------------------------------------------------
    LOG_DIR: str = "data/logs"
    MAX_LOG_MB: int = 16
    AUDIT_RETENTION_DAYS: int = 90

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def cors_origins(self) -> List[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def admin_emails(self) -> List[str]:
        return [e.strip().lower() for e in self.ADMIN_EMAILS.split(",") if e.strip()]

    @property
    def supabase_configured(self) -> bool:
        return bool(self.SUPABASE_URL and self.SUPABASE_SERVICE_ROLE_KEY)


# Singleton-style instance used by the app/tests
settings = Settings()
