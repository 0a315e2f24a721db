# ============================================================================
# src/bloodgas_ingestion/clients/base.py
# ============================================================================
"""
Base HTTP client for provider capability endpoints.

Owns the aiohttp session (created lazily, tied to the running loop),
maps HTTP failures onto the error taxonomy, and runs every request under
the retry policy, a per-attempt timeout and the caller's cancellation
token.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp
from tenacity import AsyncRetrying

from ..core.cancellation import CancellationToken, run_cancellable
from ..utils.exceptions import (
    ConfigurationError,
    ProviderHTTPError,
    QuotaExceededError,
    TransientProviderError,
)
from .retry_policy import RETRYABLE_STATUSES, get_provider_retry_policy

# Raw provider bodies are logged, truncated to this many characters
_BODY_LOG_LIMIT = 500


class BaseProviderClient:
    """
    Shared plumbing for vision, interpretation and action-plan clients.

    Subclasses build the payload and interpret the response; they call
    ``_request`` which handles retries, timeouts and cancellation.
    """

    provider_name = "provider"

    def __init__(
        self,
        endpoint: Optional[str],
        timeout: float,
        retry_policy: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.endpoint = endpoint
        self.timeout = timeout
        self.retry_policy = retry_policy if retry_policy is not None else get_provider_retry_policy()
        self.headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if headers:
            self.headers.update(headers)

        self._session: Optional[aiohttp.ClientSession] = None
        self._session_loop: Optional[asyncio.AbstractEventLoop] = None
        self.logger = logging.getLogger(self.__class__.__module__)

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session for the current event loop."""
        current_loop = asyncio.get_running_loop()

        needs_new_session = (
            self._session is None
            or self._session.closed
            or self._session_loop is not current_loop
        )

        if needs_new_session:
            if self._session is not None and not self._session.closed:
                await self._session.close()
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=30)
            )
            self._session_loop = current_loop

        return self._session

    async def close(self):
        """Close HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
        self._session_loop = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def _require_endpoint(self) -> str:
        if not self.endpoint:
            raise ConfigurationError(f"No endpoint configured for {self.provider_name}")
        return self.endpoint

    # ------------------------------------------------------------------
    # Request pipeline
    # ------------------------------------------------------------------

    async def _post_json(
        self,
        url: str,
        payload: Dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> Any:
        """
        One POST attempt. Returns decoded JSON, or the body text when the
        response is not JSON.

        Raises:
            TransientProviderError: 429/503/network failure
            QuotaExceededError: 400 mentioning quota
            ProviderHTTPError: any other non-2xx
        """
        session = await self._get_session()
        headers = dict(self.headers)
        if correlation_id:
            headers["X-Correlation-ID"] = correlation_id

        try:
            async with session.post(url, json=payload, headers=headers) as response:
                body = await response.text()
                status = response.status
        except aiohttp.ClientError as e:
            raise TransientProviderError(
                f"{self.provider_name} network error: {e}"
            ) from e

        if status >= 400:
            self.logger.warning(
                f"{self.provider_name} error ({status}) [{correlation_id or '-'}]: "
                f"{body[:_BODY_LOG_LIMIT]}"
            )
            if status in RETRYABLE_STATUSES:
                raise TransientProviderError(
                    f"{self.provider_name} unavailable ({status})", status=status, body=body
                )
            if status == 400 and "quota" in body.lower():
                raise QuotaExceededError(
                    f"{self.provider_name} quota exceeded", status=status, body=body
                )
            raise ProviderHTTPError(
                f"{self.provider_name} error ({status})", status=status, body=body
            )

        try:
            return json.loads(body)
        except ValueError:
            return body

    async def _attempt(self, url: str, payload: Dict[str, Any], correlation_id: Optional[str]) -> Any:
        try:
            return await asyncio.wait_for(
                self._post_json(url, payload, correlation_id=correlation_id),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise ProviderHTTPError(
                f"{self.provider_name} timed out after {self.timeout:.0f}s",
                code="PROVIDER_TIMEOUT",
            ) from e

    async def _with_retries(self, url: str, payload: Dict[str, Any], correlation_id: Optional[str]) -> Any:
        async for attempt in AsyncRetrying(**self.retry_policy):
            with attempt:
                return await self._attempt(url, payload, correlation_id)

    async def _request(
        self,
        payload: Dict[str, Any],
        url: Optional[str] = None,
        correlation_id: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Any:
        """POST ``payload`` with retries, timeout and cancellation."""
        url = url or self._require_endpoint()
        if cancel_token is None:
            return await self._with_retries(url, payload, correlation_id)
        return await run_cancellable(
            self._with_retries(url, payload, correlation_id),
            token=cancel_token,
        )
