"""kalshi_gateway - async client for the Kalshi trading API.

Public exports:
    KalshiClient: Main client class (REST + WS)
    GatewayConfig: Environment-driven configuration
    Credentials / Environment: Credential material and target deployment
    Signer: RSA-PSS request signer
    Session: Environment-aware header factory
    RequestDispatcher: Signed, classified, rate-limited REST calls
    OrderManager: Order submission, cancellation, batches
    MarketData / Portfolio: Read-only endpoints
    StreamSubscriber: Self-healing WebSocket subscriptions

Error hierarchy:
    KalshiError (base, tagged with ErrorKind)
    ConfigurationError
    SigningError
    AuthenticationError
    RateLimitedError
    TransientError
    InvalidRequestError
        NotFoundError
        OrderValidationError
    NotCancelableError

Models (Pydantic v2):
    OrderRequest, Order, OrderAck, BatchResult, Market, Event, etc.
"""

from .auth import Signer, canonical_message
from .client import KalshiClient
from .config import GatewayConfig, configure_logging
from .credentials import Credentials, Environment
from .dispatcher import RequestDispatcher
from .errors import (
    AuthenticationError,
    ConfigurationError,
    ErrorKind,
    InvalidRequestError,
    KalshiError,
    NotCancelableError,
    NotFoundError,
    OrderValidationError,
    RateLimitedError,
    SigningError,
    TransientError,
)
from .markets import MarketData
from .models import (
    Action,
    BatchEntry,
    BatchOutcome,
    BatchResult,
    Order,
    OrderAck,
    OrderRequest,
    OrderType,
    Side,
    StreamMessage,
    TimeInForce,
)
from .order_state import OrderState, OrderTracker
from .orders import OrderManager
from .portfolio import Portfolio
from .rate_limiter import GatewayRateLimiter, RetryPolicy
from .session import Session, SessionState
from .stream import ConnectionState, StreamSubscriber, Subscription

__version__ = "0.1.0"

__all__ = [
    "KalshiClient",
    "GatewayConfig",
    "configure_logging",
    "Credentials",
    "Environment",
    "Signer",
    "canonical_message",
    "Session",
    "SessionState",
    "RequestDispatcher",
    "GatewayRateLimiter",
    "RetryPolicy",
    "OrderManager",
    "OrderState",
    "OrderTracker",
    "MarketData",
    "Portfolio",
    "StreamSubscriber",
    "Subscription",
    "ConnectionState",
    "OrderRequest",
    "Order",
    "OrderAck",
    "BatchEntry",
    "BatchOutcome",
    "BatchResult",
    "StreamMessage",
    "Side",
    "Action",
    "OrderType",
    "TimeInForce",
    "ErrorKind",
    "KalshiError",
    "ConfigurationError",
    "SigningError",
    "AuthenticationError",
    "RateLimitedError",
    "TransientError",
    "InvalidRequestError",
    "NotFoundError",
    "OrderValidationError",
    "NotCancelableError",
]
