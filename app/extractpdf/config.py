"""
Application configuration using Pydantic Settings.

Automatically loads environment variables from .env files. Processing knobs
keep the OPENROUTER_* environment names used by existing deployments.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_TOKEN_SAFETY_LIMIT = 1_000
MAX_TOKEN_SAFETY_LIMIT = 1_000_000
DEFAULT_TOKEN_SAFETY_LIMIT = 100_000


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = "sqlite:///./extractpdf.db"

    # Storage root for uploaded project files
    file_storage_root: Path = Path("uploads")

    # OpenRouter (OpenAI-compatible API)
    openrouter_api_key: str | None = None
    openrouter_api_url: str = "https://openrouter.ai/api/v1"
    openrouter_model: str = "google/gemini-2.5-flash"
    openrouter_temperature: float = 0.2
    openrouter_site_url: str | None = None
    openrouter_app_name: str | None = None
    llm_request_timeout_seconds: float = Field(
        default=120.0, alias="OPENROUTER_REQUEST_TIMEOUT_S", gt=0
    )

    # Scheduler
    processing_concurrency: int = Field(default=2, alias="OPENROUTER_CONCURRENCY")
    processing_max_attempts: int = Field(default=3, alias="OPENROUTER_MAX_ATTEMPTS")
    retry_base_delay_ms: int = Field(default=2000, alias="OPENROUTER_RETRY_BASE_MS")
    retry_max_delay_ms: int = Field(default=60000, alias="OPENROUTER_RETRY_MAX_MS")

    # Document loading and safety limits
    max_pages_per_run: int = Field(default=40, alias="OPENROUTER_MAX_PAGES_PER_RUN")
    max_page_chars: int = Field(default=8000, alias="OPENROUTER_MAX_PAGE_CHARS")
    default_token_safety_limit: int = Field(
        default=DEFAULT_TOKEN_SAFETY_LIMIT, alias="OPENROUTER_MAX_TOKENS_PER_RUN"
    )
    # A 100 dpi JPEG page estimates at 20k-40k tokens, so the default limit
    # admits only a few rendered pages; raise the project limit for long PDFs.
    pdf_render_dpi: int = Field(default=100, alias="OPENROUTER_PDF_RENDER_DPI")

    # Debug flags
    sql_debug: bool = False
    debug: bool = False

    model_config = SettingsConfigDict(
        # Load from .env file in the package directory
        env_file=Path(__file__).parent / ".env",
        env_file_encoding="utf-8",
        extra="ignore",
        # Case insensitive environment variable names
        case_sensitive=False,
        # Allow both the field name and the OPENROUTER_* alias
        populate_by_name=True,
    )

    @field_validator("processing_concurrency", "processing_max_attempts", "max_pages_per_run")
    @classmethod
    def at_least_one(cls, v: int) -> int:
        return max(1, v)

    @field_validator("retry_base_delay_ms")
    @classmethod
    def base_delay_floor(cls, v: int) -> int:
        return max(500, v)

    @field_validator("max_page_chars")
    @classmethod
    def page_chars_floor(cls, v: int) -> int:
        return max(500, v)

    @field_validator("default_token_safety_limit")
    @classmethod
    def clamp_token_limit(cls, v: int) -> int:
        return min(max(v, MIN_TOKEN_SAFETY_LIMIT), MAX_TOKEN_SAFETY_LIMIT)

    @model_validator(mode="after")
    def max_delay_not_below_base(self) -> "Settings":
        if self.retry_max_delay_ms < self.retry_base_delay_ms:
            self.retry_max_delay_ms = self.retry_base_delay_ms
        return self


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns:
        Settings: Application configuration loaded from environment.
    """
    return Settings()
