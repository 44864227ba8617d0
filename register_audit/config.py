"""
Application configuration using pydantic-settings.
All settings read from environment variables with sensible defaults.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Central configuration for the shareholder register audit pipeline."""

    # ── Application ──────────────────────────────────────────
    APP_NAME: str = "register-audit"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # ── Storage ──────────────────────────────────────────────
    # "local" writes JSON records under ARTIFACT_ROOT, "supabase" uses Storage REST
    STORAGE_BACKEND: str = "local"
    ARTIFACT_ROOT: str = "/data/register-audit"
    SUPABASE_URL: Optional[str] = None
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = None
    SUPABASE_BUCKET: str = "register-audit"
    STORAGE_CACHE_SIZE: int = 256
    HTTP_TIMEOUT_SECONDS: int = 30

    # ── Uploads ──────────────────────────────────────────────
    MAX_UPLOAD_SIZE_MB: int = 50
    ALLOWED_MIME_TYPES: str = "application/pdf,image/png,image/jpeg,image/webp,image/tiff"

    # ── Rasterization ────────────────────────────────────────
    RENDER_DPI: int = 200
    POPPLER_PATH: Optional[str] = None

    # ── Reasoning collaborator ───────────────────────────────
    LLM_API_KEY: Optional[str] = None
    LLM_BASE_URL: str = "https://api.openai.com/v1/chat/completions"
    LLM_MODEL: str = "gpt-4o"
    LLM_FALLBACK_MODEL: str = "gpt-4o-mini"
    LLM_TIMEOUT_SECONDS: int = 120
    LLM_MAX_RETRIES: int = 2

    # ── Pipeline policy ──────────────────────────────────────
    SESSION_LOCK_TTL_SECONDS: int = 300
    FAST_MAX_ATTEMPTS: int = 2
    STALENESS_DAYS: int = 365
    BENEFICIAL_OWNER_THRESHOLD: float = 25.0

    # ── Observability ────────────────────────────────────────
    SENTRY_DSN: Optional[str] = None
    PROMETHEUS_ENABLED: bool = True

    # ── Security ─────────────────────────────────────────────
    API_KEY: Optional[str] = None
    CORS_ORIGINS: str = "*"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
    }


# Singleton instance
settings = Settings()
