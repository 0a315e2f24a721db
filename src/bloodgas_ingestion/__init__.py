# ============================================================================
# src/bloodgas_ingestion/__init__.py
# ============================================================================
"""
Blood-gas report ingestion pipeline.

Turns a photographed or scanned arterial/venous blood-gas report into
structured clinical text: free OCR, quality gating, paid vision fallback,
clinical interpretation, issue decomposition and parallel action plans.
"""

__version__ = "0.1.0"
