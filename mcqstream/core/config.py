from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Runtime ───────────────────────────────────────────────────────────────
    ENVIRONMENT: str = "production"

    # ── AI Providers ──────────────────────────────────────────────────────────
    AI_PROVIDER: str = "hybrid"

    @field_validator("AI_PROVIDER")
    @classmethod
    def validate_ai_provider(cls, v: str) -> str:
        allowed = {"hybrid", "groq", "gemini"}
        if v.lower() not in allowed:
            raise ValueError(f"AI_PROVIDER must be one of {allowed}, got '{v}'")
        return v.lower()

    # Google (Gemini - streamed cloud path)
    GOOGLE_API_KEY: Optional[str] = None
    GEMINI_MODEL: str = "gemini-2.5-flash-lite"
    GEMINI_VISION_MODEL: str = "gemini-2.0-flash"
    GEMINI_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta"
    GEMINI_MAX_OUTPUT_TOKENS: int = 8192
    GEMINI_TEMPERATURE: float = 0.4
    GEMINI_MAX_ATTEMPTS: int = 3

    # Groq (Llama - labeled-block path)
    GROQ_API_KEY: Optional[str] = None
    GROQ_MODEL: str = "llama-3.1-8b-instant"
    GROQ_MAX_TOKENS: int = 4096
    GROQ_TEMPERATURE: float = 0.7
    GROQ_TOP_P: float = 0.9
    GROQ_MAX_ATTEMPTS: int = 3

    # Supabase (identity + usage store)
    SUPABASE_URL: Optional[str] = None
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = None

    # ── Generation ────────────────────────────────────────────────────────────
    DEFAULT_TARGET_COUNT: int = 20
    MAX_TARGET_COUNT: int = 40
    MAX_INPUT_CHARS: int = 3000
    MAX_FILE_SIZE_MB: int = 20
    HTTP_CONNECT_TIMEOUT_SECONDS: float = 10.0
    RETRY_BACKOFF_SECONDS: float = 2.0

    # ── Cache ─────────────────────────────────────────────────────────────────
    CACHE_TTL_SECONDS: int = 2 * 60 * 60
    CACHE_MAX_ENTRIES: int = 200

    # ── Quotas ────────────────────────────────────────────────────────────────
    GLOBAL_MONTHLY_LIMIT: int = 10000
    GLOBAL_RESET_DAYS: int = 30
    FREE_DAILY_LIMIT: int = 10
    PRO_DAILY_LIMIT: int = 100
    PRO_HOURLY_LIMIT: int = 20
    PRO_ROLLING_DAILY_LIMIT: int = 100
    PRO_MIN_INTERVAL_SECONDS: int = 30

    # ── Core ──────────────────────────────────────────────────────────────────
    CORS_ORIGINS: List[str] = ["*"]

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"


settings = Settings()
