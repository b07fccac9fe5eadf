"""Signed request dispatcher for kalshi_gateway.

Executes authenticated, rate-limited REST calls over a pooled httpx client
and maps every failure to a KalshiError subtype. Only GET requests are ever
retried; order-mutating requests surface their first failure so the caller
decides whether resubmission is safe.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from .errors import (
    AuthenticationError,
    InvalidRequestError,
    KalshiError,
    NotFoundError,
    RateLimitedError,
    TransientError,
)
from .rate_limiter import GatewayRateLimiter, RetryPolicy
from .session import Session

logger = logging.getLogger("kalshi_gateway.dispatcher")

IDEMPOTENT_METHODS = frozenset({"GET"})


def _error_details(response: httpx.Response) -> Dict[str, str]:
    """Pull the exchange's error code/message out of a response body."""
    try:
        payload = response.json()
    except ValueError:
        return {}
    if not isinstance(payload, dict):
        return {}
    error = payload.get("error", payload)
    if not isinstance(error, dict):
        return {"message": str(error)}
    return {
        "code": str(error.get("code", "") or ""),
        "message": str(error.get("message", "") or ""),
    }


class RequestDispatcher:
    """Executes signed HTTP calls and classifies the outcome.

    Safe for concurrent use: each call is signed independently and the
    underlying httpx client pools connections.
    """

    def __init__(
        self,
        session: Session,
        limiter: Optional[GatewayRateLimiter] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            session: Session providing base URL and auth headers.
            limiter: Shared token bucket; a default one is created if omitted.
            retry_policy: Retry bounds for idempotent reads.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport (tests use httpx.MockTransport).
            sleep: Awaitable used between retries.
        """
        self._session = session
        self._limiter = limiter or GatewayRateLimiter()
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            transport=transport,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )

        # Health metrics
        self._requests_sent = 0
        self._retries = 0

    @property
    def session(self) -> Session:
        return self._session

    async def aclose(self) -> None:
        """Close pooled connections."""
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        method: str,
        path: str,
        body: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Make an authenticated, rate-limited REST request.

        Args:
            method: HTTP method
            path: API path without base URL (e.g. "/portfolio/balance")
            body: JSON body for POST/PUT/DELETE
            params: Query parameters (None values are dropped)

        Returns:
            Parsed JSON response dict.

        Raises:
            KalshiError subclass based on status code or transport failure.
        """
        method = method.upper()
        idempotent = method in IDEMPOTENT_METHODS
        if params:
            params = {k: v for k, v in params.items() if v is not None}

        transient_attempts = 0
        rate_limit_attempts = 0

        while True:
            try:
                return await self._send_once(method, path, body, params)
            except RateLimitedError as e:
                # A 429 inside a transient backoff series gets no extra attempt
                if (
                    not idempotent
                    or transient_attempts
                    or rate_limit_attempts >= self._retry_policy.rate_limit_retries
                ):
                    raise
                rate_limit_attempts += 1
                delay = e.retry_after
                logger.warning(f"429 on {method} {path}, retrying once in {delay:.2f}s")
            except TransientError as e:
                if not idempotent:
                    raise
                # After the 429 retry, whatever comes next is final
                if rate_limit_attempts or transient_attempts >= self._retry_policy.max_transient_retries:
                    e.retry_safe = True
                    raise
                transient_attempts += 1
                delay = self._retry_policy.backoff_delay(transient_attempts)
                logger.warning(
                    f"{e} (attempt {transient_attempts}/"
                    f"{self._retry_policy.max_transient_retries}), retrying in {delay:.2f}s"
                )

            self._retries += 1
            await self._sleep(delay)

    async def _send_once(
        self,
        method: str,
        path: str,
        body: Optional[Any],
        params: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        await self._limiter.acquire()

        # Fresh timestamp and signature on every attempt
        headers = self._session.authorize(method, path)
        url = self._session.url_for(path)

        try:
            self._requests_sent += 1
            response = await self._client.request(
                method,
                url,
                headers=headers,
                json=body,
                params=params,
            )
        except asyncio.CancelledError:
            if method not in IDEMPOTENT_METHODS:
                logger.warning(
                    f"{method} {path} abandoned by caller; remote outcome unknown, "
                    f"reconcile with a status read"
                )
            raise
        except httpx.HTTPError as e:
            raise TransientError(f"HTTP error on {method} {path}: {e!r}")

        if response.status_code >= 400:
            self._raise_for_status(response, method, path)

        self._session.mark_authenticated()
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            raise TransientError(
                f"Invalid JSON response on {method} {path}",
                status_code=response.status_code,
                response_body=response.text[:500],
            )

    def _raise_for_status(self, response: httpx.Response, method: str, path: str) -> None:
        """Map HTTP status codes to KalshiError subtypes."""
        code = response.status_code
        body = response.text[:500]
        msg = f"{method} {path} -> {code}: {body}"

        if code in (401, 403):
            self._session.mark_expired(f"{code} on {method} {path}")
            raise AuthenticationError(msg, status_code=code, response_body=body)

        if code == 429:
            retry_after = self._retry_policy.parse_retry_after(response.headers.get("Retry-After"))
            raise RateLimitedError(msg, retry_after=retry_after, status_code=code, response_body=body)

        if code >= 500:
            raise TransientError(msg, status_code=code, response_body=body)

        details = _error_details(response)
        if code == 404:
            raise NotFoundError(msg, status_code=code, response_body=body, error_code=details.get("code", ""))
        if 400 <= code < 500:
            raise InvalidRequestError(msg, status_code=code, response_body=body, error_code=details.get("code", ""))

        raise KalshiError(msg, status_code=code, response_body=body)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def get_health(self) -> Dict[str, Any]:
        return {
            "base_url": self._session.base_url,
            "session_state": self._session.state.value,
            "requests_sent": self._requests_sent,
            "retries": self._retries,
            "rate_limiter": self._limiter.get_health(),
        }
