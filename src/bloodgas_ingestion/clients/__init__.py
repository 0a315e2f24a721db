# ============================================================================
# src/bloodgas_ingestion/clients/__init__.py
# ============================================================================
"""
Provider clients: vision fallback, interpretation, action plans.
"""

from .base import BaseProviderClient
from .retry_policy import get_provider_retry_policy, is_transient_error
from .vision_client import VisionClient, VisionExtraction
from .interpretation_client import InterpretationClient, InterpretationOutput
from .action_plan_client import ActionPlanClient
