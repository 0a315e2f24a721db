# ============================================================================
# src/bloodgas_ingestion/config/base_config.py
# ============================================================================
"""
Base Configuration
- Project root
- Snapshot directory for workflow recovery
- Scratch directory for rendered pages
"""

from pathlib import Path
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseSettingsConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="BGI_", env_file=".env", extra="ignore")

    PROJECT_ROOT: Path = Field(
        default_factory=lambda: Path(__file__).parent.parent.parent.parent,
        description="Root directory of the project"
    )

    SNAPSHOT_DIR: Path = Field(
        default=Path("data/snapshots"),
        description="Directory holding one JSON snapshot per workflow session"
    )

    DATA_DIR: Path = Field(
        default=Path("data"),
        description="Scratch space for uploads and rendered PDF pages"
    )

    def create_directories(self):
        """Create all necessary directories if they don't exist"""
        for directory in (self.SNAPSHOT_DIR, self.DATA_DIR):
            directory.mkdir(parents=True, exist_ok=True)


# Global instance
base_settings = BaseSettingsConfig()
