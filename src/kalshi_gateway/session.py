"""Environment-aware session for kalshi_gateway.

Resolves the environment to a fixed base endpoint and turns request facts
into auth headers. Signatures are never cached: every call gets a fresh
timestamp and signature.
"""

import logging
import time
from enum import Enum
from typing import Callable, Dict, Optional
from urllib.parse import urlparse

from .auth import Signer
from .credentials import Credentials, Environment
from .errors import ConfigurationError

logger = logging.getLogger("kalshi_gateway.session")

API_PREFIX = "/trade-api/v2"
WS_PATH = "/trade-api/ws/v2"

BASE_URLS: Dict[Environment, str] = {
    Environment.DEMO: "https://demo-api.kalshi.co/trade-api/v2",
    Environment.PRODUCTION: "https://api.elections.kalshi.com/trade-api/v2",
}

WS_URLS: Dict[Environment, str] = {
    Environment.DEMO: "wss://demo-api.kalshi.co/trade-api/ws/v2",
    Environment.PRODUCTION: "wss://api.elections.kalshi.com/trade-api/ws/v2",
}

HEADER_KEY_ID = "KALSHI-ACCESS-KEY"
HEADER_TIMESTAMP = "KALSHI-ACCESS-TIMESTAMP"
HEADER_SIGNATURE = "KALSHI-ACCESS-SIGNATURE"


class SessionState(Enum):
    """Logical authentication state as last observed from the platform."""
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


def _now_ms() -> int:
    return int(time.time() * 1000)


class Session:
    """Signs outgoing requests for one environment.

    The base URL is resolved once at construction and is read-only
    afterwards. The only mutable fields are the observed state and the
    time of the last accepted call.
    """

    def __init__(
        self,
        credentials: Credentials,
        endpoint_override: Optional[str] = None,
        clock: Callable[[], int] = _now_ms,
    ):
        """
        Args:
            credentials: Loaded credential material.
            endpoint_override: Alternate REST base URL for testing. Only
                allowed in the demo environment.
            clock: Returns the current time in epoch milliseconds.
        """
        if not isinstance(credentials.environment, Environment):
            raise ConfigurationError(f"Unrecognized environment: {credentials.environment!r}")

        self._credentials = credentials
        self._environment = credentials.environment
        self._signer = Signer(credentials)
        self._clock = clock

        self._base_url = self._resolve_base_url(endpoint_override)
        self._ws_url = WS_URLS[self._environment]

        self._state = SessionState.UNAUTHENTICATED
        self._last_authenticated_at: Optional[float] = None

        # Fail on a broken key now rather than on the first order
        self._signer.self_test()
        logger.info(f"Session ready for {self._environment.value} at {self._base_url}")

    def _resolve_base_url(self, endpoint_override: Optional[str]) -> str:
        if not endpoint_override:
            return BASE_URLS[self._environment]

        if self._environment is Environment.PRODUCTION:
            raise ConfigurationError("Endpoint override is not allowed in the production environment")

        parsed = urlparse(endpoint_override)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError(f"Invalid endpoint override: {endpoint_override!r}")
        if parsed.netloc == urlparse(BASE_URLS[Environment.PRODUCTION]).netloc:
            raise ConfigurationError("Endpoint override cannot point at the production host")

        logger.warning(f"Using endpoint override for demo session: {endpoint_override}")
        return endpoint_override.rstrip("/")

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def environment(self) -> Environment:
        return self._environment

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def ws_url(self) -> str:
        return self._ws_url

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def last_authenticated_at(self) -> Optional[float]:
        return self._last_authenticated_at

    @property
    def signer(self) -> Signer:
        return self._signer

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    def url_for(self, path: str) -> str:
        """Absolute REST URL for an API path such as "/portfolio/orders"."""
        return f"{self._base_url}{path}"

    def authorize(self, method: str, path: str) -> Dict[str, str]:
        """Create auth headers for a REST request.

        Args:
            method: HTTP method (GET, POST, DELETE, etc.)
            path: API path WITHOUT the /trade-api/v2 prefix, e.g.
                  "/portfolio/orders". Query params are ignored for signing.

        Returns:
            Dict with key id, timestamp and signature headers.
        """
        return self._headers(method, f"{API_PREFIX}{path}")

    def authorize_ws(self) -> Dict[str, str]:
        """Create auth headers for the WebSocket handshake."""
        return self._headers("GET", WS_PATH)

    def _headers(self, method: str, full_path: str) -> Dict[str, str]:
        timestamp_ms = self._clock()
        signature = self._signer.sign_b64(method, full_path, timestamp_ms)
        logger.debug(f"Signed {method.upper()} {full_path.split('?')[0]}")
        return {
            HEADER_KEY_ID: self._credentials.key_id,
            HEADER_TIMESTAMP: str(timestamp_ms),
            HEADER_SIGNATURE: signature,
        }

    # ------------------------------------------------------------------
    # State tracking
    # ------------------------------------------------------------------

    def mark_authenticated(self) -> None:
        """Record that the platform accepted a signed call."""
        if self._state is not SessionState.AUTHENTICATED:
            logger.info(f"Session authenticated ({self._environment.value})")
        self._state = SessionState.AUTHENTICATED
        self._last_authenticated_at = time.time()

    def mark_expired(self, reason: str = "") -> None:
        """Record that the platform rejected a signature.

        The next request is signed afresh; nothing else needs resetting.
        """
        if self._state is not SessionState.EXPIRED:
            logger.warning(f"Session marked expired: {reason}")
        self._state = SessionState.EXPIRED
