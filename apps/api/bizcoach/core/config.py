from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env from apps/api so it works regardless of CWD
_env_file = Path(__file__).resolve().parent.parent.parent / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=_env_file, extra="ignore")

    database_url: str = "postgresql://localhost/bizcoach"
    sql_echo: bool = False
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"

    # OpenAI: Assistants (threads/runs) for coaching, chat completions for list extraction + titles
    openai_api_key: str | None = None
    assistants_api_base_url: str = "https://api.openai.com/v1"
    coach_assistant_id: str | None = None
    # Extraction runs on its own thread; falls back to the coach assistant when unset
    extraction_assistant_id: str | None = None
    chat_api_base_url: str | None = None
    chat_api_key: str | None = None
    chat_model: str | None = None

    # Run polling (30 x 1s by default; backoff multiplies the delay after each attempt)
    run_poll_max_attempts: int = 30
    run_poll_delay_seconds: float = 1.0
    run_poll_backoff: float = 1.0
    run_poll_max_delay_seconds: float = 5.0
    # requires_action is never answered here; True cancels it instead of waiting out the poll budget
    cancel_on_requires_action: bool = False

    session_cache_size: int = 512
    extraction_transcript_max_messages: int = 40

    # Rate limiting (per-user when key_func uses user id; multi-instance needs Redis later)
    coach_turn_rate_limit: str = "20/minute"
    extract_rate_limit: str = "10/minute"

    # CORS (comma-separated origins; * allows all)
    cors_origins: str = "*"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parsed CORS origins for middleware."""
        raw = self.cors_origins.strip()
        return ["*"] if not raw else [o.strip() for o in raw.split(",") if o.strip()]

    @property
    def async_database_url(self) -> str:
        """database_url rewritten for the asyncpg driver (Render hands out postgres://)."""
        url = self.database_url
        if url.startswith("postgres://"):
            return url.replace("postgres://", "postgresql+asyncpg://", 1)
        if url.startswith("postgresql://") and "asyncpg" not in url:
            return url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return url


@lru_cache
def get_settings() -> Settings:
    return Settings()
