# ============================================================================
# src/bloodgas_ingestion/config/__init__.py
# ============================================================================
"""
Convenient imports for all settings
"""

from .base_config import base_settings
from .provider_config import provider_settings
from .quality_config import quality_settings
from .workflow_config import workflow_settings
from .logging_config import logging_settings
