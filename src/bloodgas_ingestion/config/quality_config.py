# ============================================================================
# src/bloodgas_ingestion/config/quality_config.py
# ============================================================================
"""
OCR Quality Thresholds
- Score penalties and bonuses
- Escalation triggers for the vision fallback
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class QualitySettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="BGI_", env_file=".env", extra="ignore")

    MIN_TEXT_LENGTH: int = Field(
        default=20,
        description="Below this stripped length the score is penalized"
    )
    SHORT_TEXT_PENALTY: float = Field(default=0.4, ge=0.0, le=1.0)

    NO_PARAMETER_PENALTY: float = Field(default=0.5, ge=0.0, le=1.0)
    MIN_PARAMETER_MATCHES: int = Field(
        default=3,
        description="Fewer parameter matches than this is penalized"
    )
    FEW_PARAMETER_PENALTY: float = Field(default=0.3, ge=0.0, le=1.0)

    MIN_NUMERIC_TOKENS: int = Field(
        default=3,
        description="Fewer numeric tokens than this is penalized"
    )
    FEW_NUMERIC_PENALTY: float = Field(default=0.3, ge=0.0, le=1.0)

    DEVICE_KEYWORD_BONUS: float = Field(
        default=0.1,
        ge=0.0, le=1.0,
        description="Bonus when an analyzer/report keyword is present"
    )

    NOISE_RATIO_PENALTY_THRESHOLD: float = Field(default=0.3, ge=0.0, le=1.0)
    NOISE_PENALTY: float = Field(default=0.2, ge=0.0, le=1.0)

    LONG_TOKEN_LENGTH: int = Field(
        default=25,
        description="Tokens this long or longer are treated as OCR garbage"
    )
    LONG_TOKEN_PENALTY: float = Field(default=0.2, ge=0.0, le=1.0)

    # Escalation
    ESCALATE_BELOW_SCORE: float = Field(
        default=0.5,
        ge=0.0, le=1.0,
        description="Escalate to vision when score is below this"
    )
    WEAK_SCORE: float = Field(
        default=0.7,
        ge=0.0, le=1.0,
        description="Escalate when score is below this and parameters are sparse"
    )
    WEAK_SCORE_MIN_PARAMETERS: int = Field(default=2)
    ESCALATE_BELOW_LENGTH: int = Field(
        default=30,
        description="Escalate when stripped text is shorter than this"
    )
    ESCALATE_NOISE_RATIO: float = Field(default=0.4, ge=0.0, le=1.0)

    # Edited-text checks before re-analysis
    MIN_EDITED_TEXT_LENGTH: int = Field(default=20)


quality_settings = QualitySettings()
