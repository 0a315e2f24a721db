# ============================================================================
# src/bloodgas_ingestion/clients/retry_policy.py
# ============================================================================
"""
Retry policy for provider calls (tenacity).

Transient: HTTP 429, HTTP 503 and network errors. Everything else,
including other 4xx and timeouts, fails the call on the first attempt.
Default schedule: 2 retries, 2s then 3s (initial 2s, multiplier 1.5).
"""

import logging
from typing import Any, Dict, Optional

from tenacity import (
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..config import provider_settings
from ..utils.exceptions import TransientProviderError

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({429, 503})


def is_transient_error(exception: BaseException) -> bool:
    """True for errors worth another attempt."""
    return isinstance(exception, TransientProviderError)


def get_provider_retry_policy(
    max_retries: Optional[int] = None,
    initial_delay: Optional[float] = None,
    multiplier: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Tenacity keyword arguments for provider calls.

    Args:
        max_retries: Retries after the first attempt
        initial_delay: Wait before the first retry (seconds)
        multiplier: Growth factor between waits
    """
    max_retries = provider_settings.MAX_RETRIES if max_retries is None else max_retries
    initial_delay = provider_settings.RETRY_INITIAL_DELAY if initial_delay is None else initial_delay
    multiplier = provider_settings.RETRY_MULTIPLIER if multiplier is None else multiplier

    return {
        "stop": stop_after_attempt(max_retries + 1),
        # wait = initial_delay * multiplier ** (attempt - 1)
        "wait": wait_exponential(multiplier=initial_delay, exp_base=multiplier),
        "retry": retry_if_exception(is_transient_error),
        "before_sleep": before_sleep_log(logger, logging.WARNING),
        "reraise": True,
    }
