import os
from dataclasses import dataclass, field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    admin_key: Optional[str] = os.getenv("ADMIN_KEY")
    cors_origins: list = field(
        default_factory=lambda: [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
    )

    # Sessions and passwords
    session_ttl_minutes: int = int(os.getenv("SESSION_TTL_MINUTES", "10080"))  # 7 days
    password_reset_ttl_minutes: int = int(os.getenv("PASSWORD_RESET_TTL_MINUTES", "60"))
    password_hash_iterations: int = int(os.getenv("PASSWORD_HASH_ITERATIONS", "200000"))
    min_password_length: int = int(os.getenv("MIN_PASSWORD_LENGTH", "6"))

    # Google Books
    google_books_api_key: Optional[str] = os.getenv("GOOGLE_BOOKS_API_KEY")
    google_books_timeout: float = float(os.getenv("GOOGLE_BOOKS_TIMEOUT", "10"))

    # Open Library
    openlibrary_timeout: float = float(os.getenv("OPENLIBRARY_TIMEOUT", "10"))

    # ISBNdb
    isbndb_api_key: Optional[str] = os.getenv("ISBNDB_API_KEY")
    isbndb_timeout: float = float(os.getenv("ISBNDB_TIMEOUT", "10"))

    # NYT Books
    nyt_books_api_key: Optional[str] = os.getenv("NYT_BOOKS_API_KEY")

    # AI gateway (OpenAI compatible chat completions)
    ai_gateway_url: str = os.getenv("AI_GATEWAY_URL", "https://ai.gateway.lovable.dev/v1/chat/completions")
    ai_api_key: Optional[str] = os.getenv("AI_API_KEY")
    ai_model: str = os.getenv("AI_MODEL", "google/gemini-3-flash-preview")
    ai_quote_model: str = os.getenv("AI_QUOTE_MODEL", "google/gemini-2.5-flash")
    ai_timeout: float = float(os.getenv("AI_TIMEOUT", "30"))

    # Email (Resend)
    resend_api_key: Optional[str] = os.getenv("RESEND_API_KEY")
    email_from: str = os.getenv("EMAIL_FROM", "Shelvy <noreply@shelvybooks.com>")
    app_url: str = os.getenv("APP_URL", "https://shelvybooks.com")

    # Batch job pacing (seconds between upstream calls)
    backfill_delay: float = float(os.getenv("BACKFILL_DELAY", "0.2"))
    backfill_all_delay: float = float(os.getenv("BACKFILL_ALL_DELAY", "0.15"))
    backfill_all_batch_size: int = int(os.getenv("BACKFILL_ALL_BATCH_SIZE", "20"))
    isbndb_delay: float = float(os.getenv("ISBNDB_DELAY", "0.35"))
    isbndb_rate_limit_pause: float = float(os.getenv("ISBNDB_RATE_LIMIT_PAUSE", "2"))
    isbndb_backfill_batch_size: int = int(os.getenv("ISBNDB_BACKFILL_BATCH_SIZE", "100"))
    cover_refresh_delay: float = float(os.getenv("COVER_REFRESH_DELAY", "0.2"))
    announcement_batch_size: int = int(os.getenv("ANNOUNCEMENT_BATCH_SIZE", "50"))

    # Upstream response cache
    nyt_cache_ttl: int = int(os.getenv("NYT_CACHE_TTL", "3600"))

    # Application
    app_name: str = os.getenv("APP_NAME", "Shelvy")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Feature flags
    enable_ai_features: bool = _flag("ENABLE_AI_FEATURES", "True")
    enable_email_notifications: bool = _flag("ENABLE_EMAIL_NOTIFICATIONS", "True")


settings = Settings()
