# ============================================================================
# src/bloodgas_ingestion/pipeline/__init__.py
# ============================================================================

from .action_plan_engine import ActionPlanFanOutEngine, combine_plan_text
from .orchestrator import BloodGasPipeline
