# ============================================================================
# src/bloodgas_ingestion/utils/__init__.py
# ============================================================================
"""
Utility modules for the blood-gas ingestion pipeline.
"""

from .exceptions import (
    BloodGasIngestionError,
    ConfigurationError,
    InputValidationError,
    UnsupportedDocumentError,
    ExtractionFailedError,
    ProviderHTTPError,
    TransientProviderError,
    QuotaExceededError,
    InterpretationError,
    PipelineCancelledError,
    NavigationError,
    SnapshotError,
    normalize_error,
)

from .logging import (
    setup_logging,
    setup_logging_from_settings,
    get_logger,
    JsonFormatter,
    SessionLogAdapter,
    log_performance,
)

__all__ = [
    # Exceptions
    'BloodGasIngestionError',
    'ConfigurationError',
    'InputValidationError',
    'UnsupportedDocumentError',
    'ExtractionFailedError',
    'ProviderHTTPError',
    'TransientProviderError',
    'QuotaExceededError',
    'InterpretationError',
    'PipelineCancelledError',
    'NavigationError',
    'SnapshotError',
    'normalize_error',
    # Logging
    'setup_logging',
    'setup_logging_from_settings',
    'get_logger',
    'JsonFormatter',
    'SessionLogAdapter',
    'log_performance',
]
