"""Extraction pipeline configuration settings."""

from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ExtractionSettings(BaseSettings):
    """Gemini credentials and pipeline tunables.

    None of the tunables affect correctness, only cost and latency.
    """

    # Gemini API Configuration
    gemini_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("GEMINI_API_KEY", "GOOGLE_AI_API_KEY"),
        description="Gemini API key",
    )
    pro_model: str = Field(
        default="gemini-2.5-pro",
        description="High-capability model used for structure analysis and enrichment",
    )
    flash_model: str = Field(
        default="gemini-2.5-flash",
        description="Default model for text extraction batches",
    )
    flash_lite_model: str = Field(
        default="gemini-2.5-flash-lite",
        description="Cheapest model for images and large text batches",
    )
    max_retries: int = Field(
        default=1,
        description="Attempts per model call; phases isolate failures instead of retrying",
    )

    # Rate Limits (requests per minute / in-flight calls)
    pro_requests_per_minute: int = Field(default=150, description="RPM ceiling for the pro tier")
    flash_requests_per_minute: int = Field(default=1000, description="RPM ceiling for the flash tier")
    flash_lite_requests_per_minute: int = Field(default=4000, description="RPM ceiling for the flash-lite tier")
    pro_max_concurrent: int = Field(default=5, description="Max in-flight pro calls")
    flash_max_concurrent: int = Field(default=10, description="Max in-flight flash calls")
    flash_lite_max_concurrent: int = Field(default=10, description="Max in-flight flash-lite calls")

    # Phase 0
    min_pdf_text_chars: int = Field(
        default=50,
        description="Below this many extracted characters a PDF is treated as an image",
    )
    pdf_per_page_text: bool = Field(
        default=False,
        description="Emit one text page per PDF page instead of one coarse page",
    )
    fetch_timeout_seconds: float = Field(default=60.0, description="Timeout for fetching documents by URL")

    # Phase 2 batching
    oversized_batch_tokens: int = Field(default=2000, description="Token budget for oversized sections")
    medium_batch_tokens: int = Field(default=4000, description="Token budget for sections with more than 50 items")
    small_batch_tokens: int = Field(default=8000, description="Token budget for small sections")
    cheap_tier_token_threshold: int = Field(
        default=4000,
        description="Text batches above this estimate are routed to flash-lite",
    )
    call_timeout_seconds: float = Field(default=120.0, description="Timeout for a single model call")

    # Phase 3 enrichment
    enrichment_batch_size: int = Field(default=30, description="Items per fallback enrichment batch")
    modifier_similarity_threshold: float = Field(
        default=0.8,
        description="Edit-distance ratio above which modifier group names are merged",
    )

    # Upload cache
    upload_concurrency: int = Field(default=3, description="Uploads per wave")
    upload_wave_pause_seconds: float = Field(default=0.5, description="Pause between upload waves")
    upload_cache_ttl_seconds: float = Field(
        default=0.0,
        description="Upload cache TTL; 0 keeps entries for the whole run",
    )

    # Orchestrator
    run_timeout_seconds: float = Field(
        default=0.0,
        description="Overall run timeout; 0 disables it",
    )
    log_level: str = Field(default="INFO", description="Log level for the run log collector")

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parent.parent.parent / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache()
def get_settings() -> ExtractionSettings:
    """Get cached settings instance."""
    return ExtractionSettings()
