# ============================================================================
# src/bloodgas_ingestion/config/provider_config.py
# ============================================================================
"""
Provider Settings
- Vision, interpretation and action-plan endpoints
- Per-call timeouts
- Retry/backoff policy for transient failures
- Fan-out concurrency bound
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="BGI_", env_file=".env", extra="ignore")

    # Endpoints
    VISION_ENDPOINT: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta/models",
        description="Base URL of the vision-capable generateContent API"
    )
    VISION_MODEL: str = Field(
        default="gemini-2.0-flash",
        description="Vision model name appended to the endpoint"
    )
    VISION_API_KEY: Optional[str] = Field(
        default=None,
        description="API key for the vision provider"
    )
    INTERPRETATION_ENDPOINT: Optional[str] = Field(
        default=None,
        description="URL of the clinical interpretation flow"
    )
    ACTION_PLAN_ENDPOINT: Optional[str] = Field(
        default=None,
        description="URL of the action-plan flow"
    )

    # Timeouts (seconds)
    VISION_TIMEOUT: float = Field(
        default=60.0,
        gt=0,
        description="Timeout for one vision extraction call"
    )
    INTERPRETATION_TIMEOUT: float = Field(
        default=120.0,
        gt=0,
        description="Timeout for one interpretation call"
    )
    ACTION_PLAN_TIMEOUT: float = Field(
        default=120.0,
        gt=0,
        description="Timeout for one action-plan call"
    )

    # Retry policy
    MAX_RETRIES: int = Field(
        default=2,
        ge=0,
        description="Retries after the first attempt for 429/503/network errors"
    )
    RETRY_INITIAL_DELAY: float = Field(
        default=2.0,
        ge=0,
        description="Delay before the first retry (seconds)"
    )
    RETRY_MULTIPLIER: float = Field(
        default=1.5,
        ge=1.0,
        description="Backoff multiplier between retries"
    )

    # Fan-out
    MAX_CONCURRENT_PLANS: Optional[int] = Field(
        default=None,
        ge=1,
        description="Upper bound on in-flight action-plan requests (None = unbounded)"
    )

    VISION_TEMPERATURE: float = Field(
        default=0.1,
        ge=0.0, le=2.0,
        description="Sampling temperature for vision transcription"
    )


provider_settings = ProviderSettings()
