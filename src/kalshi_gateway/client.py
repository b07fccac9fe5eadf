"""KalshiClient - unified REST + WebSocket client for the Kalshi API.

Wires credentials, signer, session, dispatcher, order manager, read APIs
and stream subscriber together. Uses httpx for REST, websockets for WS,
Pydantic v2 for typed responses, and aiolimiter for rate limiting.

Usage:
    config = GatewayConfig.from_env()
    async with KalshiClient.from_config(config) as client:
        status = await client.markets.get_exchange_status()
        ack = await client.orders.submit(
            client.orders.build_order(ticker="KXBTC-25", side="yes",
                                      action="buy", count=1, price=40)
        )
"""

import logging
from typing import Any, Dict, Optional

import httpx

from .config import GatewayConfig, configure_logging
from .credentials import Credentials
from .dispatcher import RequestDispatcher
from .markets import MarketData
from .orders import OrderManager
from .portfolio import Portfolio
from .rate_limiter import GatewayRateLimiter, RetryPolicy
from .session import Session
from .stream import ConnectFn, StreamSubscriber

logger = logging.getLogger("kalshi_gateway.client")


class KalshiClient:
    """Kalshi API client with REST + WebSocket support.

    All components share one Session and one pooled HTTP client, so a
    single instance can serve many concurrent strategy tasks.
    """

    def __init__(
        self,
        credentials: Credentials,
        endpoint_override: Optional[str] = None,
        rate: float = 10.0,
        burst: int = 20,
        timeout: float = 15.0,
        retry_policy: Optional[RetryPolicy] = None,
        ws_reconnect_base: float = 1.0,
        ws_reconnect_max: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            credentials: Loaded credential material; selects the environment.
            endpoint_override: Demo-only REST base URL override for testing.
            rate: Sustained requests per second.
            burst: Burst capacity for rapid order placement.
            timeout: Per-request timeout in seconds.
            retry_policy: Retry bounds for idempotent reads.
            ws_reconnect_base: First WS reconnect delay in seconds.
            ws_reconnect_max: Cap on WS reconnect delay in seconds.
            transport: Optional httpx transport (tests).
        """
        self._session = Session(credentials, endpoint_override=endpoint_override)
        self._dispatcher = RequestDispatcher(
            self._session,
            limiter=GatewayRateLimiter(rate=rate, burst=burst),
            retry_policy=retry_policy,
            timeout=timeout,
            transport=transport,
        )
        self._ws_reconnect_base = ws_reconnect_base
        self._ws_reconnect_max = ws_reconnect_max

        self.orders = OrderManager(self._dispatcher)
        self.markets = MarketData(self._dispatcher)
        self.portfolio = Portfolio(self._dispatcher)

        self._streams: list = []

    @classmethod
    def from_config(cls, config: GatewayConfig, **kwargs: Any) -> "KalshiClient":
        """Build a client from validated configuration."""
        configure_logging(config)
        credentials = Credentials.from_config(config)
        retry_policy = kwargs.pop("retry_policy", None) or RetryPolicy(
            max_transient_retries=config.MAX_GET_RETRIES
        )
        return cls(
            credentials,
            endpoint_override=config.KALSHI_ENDPOINT_OVERRIDE,
            rate=config.RATE_LIMIT,
            burst=config.RATE_BURST,
            timeout=config.REQUEST_TIMEOUT,
            retry_policy=retry_policy,
            ws_reconnect_base=config.WS_RECONNECT_BASE,
            ws_reconnect_max=config.WS_RECONNECT_MAX,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> "KalshiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        """Close streams and pooled HTTP connections."""
        for stream in self._streams:
            await stream.close()
        self._streams.clear()
        await self._dispatcher.aclose()
        logger.info("KalshiClient closed")

    @property
    def session(self) -> Session:
        return self._session

    @property
    def dispatcher(self) -> RequestDispatcher:
        return self._dispatcher

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def stream(self, connect_fn: Optional[ConnectFn] = None, **kwargs: Any) -> StreamSubscriber:
        """Create a StreamSubscriber authenticated through this client's session.

        Register subscriptions, then iterate:

            sub = client.stream()
            await sub.subscribe("orderbook_delta", {"market_tickers": ["T1"]})
            async for message in sub:
                ...
        """
        kwargs.setdefault("reconnect_base", self._ws_reconnect_base)
        kwargs.setdefault("reconnect_max", self._ws_reconnect_max)
        stream = StreamSubscriber(self._session, connect_fn=connect_fn, **kwargs)
        self._streams.append(stream)
        return stream

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def get_health(self) -> Dict[str, Any]:
        """Consolidated health check."""
        health: Dict[str, Any] = {
            "environment": self._session.environment.value,
            "rest": self._dispatcher.get_health(),
            "open_orders": len(self.orders.tracker.open_orders()),
        }
        if self._streams:
            health["streams"] = [s.get_health() for s in self._streams]
        return health
