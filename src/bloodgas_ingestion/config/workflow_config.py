# ============================================================================
# src/bloodgas_ingestion/config/workflow_config.py
# ============================================================================
"""
Workflow Settings
- Canonical progress per step
- Phase weights for the progress aggregator
- Snapshot retention and autosave
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class WorkflowSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="BGI_", env_file=".env", extra="ignore")

    # Canonical progress per step; ActionPlan is optional and sits below Interpretation
    PROGRESS_UPLOAD: int = Field(default=0, ge=0, le=100)
    PROGRESS_ANALYSIS: int = Field(default=25, ge=0, le=100)
    PROGRESS_INTERPRETATION: int = Field(default=90, ge=0, le=100)
    PROGRESS_ACTION_PLAN: int = Field(default=75, ge=0, le=100)
    PROGRESS_COMPLETED: int = Field(default=100, ge=0, le=100)

    # Phase weights used while an analysis run is in flight
    EXTRACTION_WEIGHT: float = Field(
        default=50.0,
        gt=0,
        description="Share of the analysis bar spent on OCR + vision"
    )
    INTERPRETATION_WEIGHT: float = Field(
        default=50.0,
        gt=0,
        description="Share of the analysis bar spent on interpretation"
    )

    # Persistence
    SNAPSHOT_VERSION: str = Field(
        default="1.0",
        description="Snapshots written with another version are discarded on load"
    )
    SNAPSHOT_RETENTION_DAYS: float = Field(
        default=7.0,
        gt=0,
        description="Snapshots older than this are evicted"
    )
    MAX_SNAPSHOTS: int = Field(
        default=5,
        ge=1,
        description="Maximum number of stored snapshots; oldest evicted first"
    )
    AUTOSAVE_DEBOUNCE_SECONDS: float = Field(
        default=2.0,
        ge=0,
        description="Quiet period before a state change is written"
    )


workflow_settings = WorkflowSettings()
