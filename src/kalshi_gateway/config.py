"""
Configuration management for kalshi_gateway.

Loads environment variables (and a local .env file) and provides a typed
configuration object consumed by KalshiClient. Values are read once at
construction and validated; invalid values raise ConfigurationError before
any network call is made.
"""

import logging
import os
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigurationError

VALID_ENVIRONMENTS = ("demo", "production")


class GatewayConfig:
    """Configuration for the Kalshi gateway."""

    def __init__(
        self,
        environment: Optional[str] = None,
        api_key_id: Optional[str] = None,
        private_key_path: Optional[str] = None,
        private_key_content: Optional[str] = None,
        endpoint_override: Optional[str] = None,
        rate_limit: float = 10.0,
        rate_burst: int = 20,
        request_timeout: float = 15.0,
        max_get_retries: int = 3,
        ws_reconnect_base: float = 1.0,
        ws_reconnect_max: float = 60.0,
        log_level: str = "INFO",
        log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    ):
        self.ENVIRONMENT = (environment or "").strip().lower()
        self.KALSHI_API_KEY_ID = api_key_id
        self.KALSHI_PRIVATE_KEY_PATH = private_key_path
        self.KALSHI_PRIVATE_KEY_CONTENT = private_key_content
        self.KALSHI_ENDPOINT_OVERRIDE = endpoint_override or None

        # Request pipeline
        self.RATE_LIMIT = rate_limit
        self.RATE_BURST = rate_burst
        self.REQUEST_TIMEOUT = request_timeout
        self.MAX_GET_RETRIES = max_get_retries

        # Streaming
        self.WS_RECONNECT_BASE = ws_reconnect_base
        self.WS_RECONNECT_MAX = ws_reconnect_max

        # Logging
        self.LOG_LEVEL = log_level.upper()
        self.LOG_FORMAT = log_format

        self._validate_config()

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "GatewayConfig":
        """Build configuration from environment variables.

        Loads ``dotenv_path`` (or a .env in the working directory) first;
        variables already set in the process environment take precedence.
        """
        load_dotenv(dotenv_path)

        try:
            return cls(
                environment=os.getenv("KALSHI_ENVIRONMENT"),
                api_key_id=os.getenv("KALSHI_API_KEY_ID"),
                private_key_path=os.getenv("KALSHI_PRIVATE_KEY_PATH"),
                private_key_content=os.getenv("KALSHI_PRIVATE_KEY_CONTENT"),
                endpoint_override=os.getenv("KALSHI_ENDPOINT_OVERRIDE"),
                rate_limit=float(os.getenv("KALSHI_RATE_LIMIT", "10.0")),
                rate_burst=int(os.getenv("KALSHI_RATE_BURST", "20")),
                request_timeout=float(os.getenv("KALSHI_REQUEST_TIMEOUT", "15.0")),
                max_get_retries=int(os.getenv("KALSHI_MAX_GET_RETRIES", "3")),
                ws_reconnect_base=float(os.getenv("KALSHI_WS_RECONNECT_BASE", "1.0")),
                ws_reconnect_max=float(os.getenv("KALSHI_WS_RECONNECT_MAX", "60.0")),
                log_level=os.getenv("KALSHI_LOG_LEVEL", "INFO"),
                log_format=os.getenv(
                    "KALSHI_LOG_FORMAT",
                    "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                ),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric configuration value: {e}")

    def _validate_config(self) -> None:
        """Validate configuration values."""
        if not self.ENVIRONMENT:
            raise ConfigurationError("KALSHI_ENVIRONMENT is not set (expected 'demo' or 'production')")

        if self.ENVIRONMENT not in VALID_ENVIRONMENTS:
            raise ConfigurationError(
                f"Unrecognized KALSHI_ENVIRONMENT: {self.ENVIRONMENT!r} "
                f"(expected one of {', '.join(VALID_ENVIRONMENTS)})"
            )

        if not self.KALSHI_API_KEY_ID:
            raise ConfigurationError("KALSHI_API_KEY_ID is required")

        if not self.KALSHI_PRIVATE_KEY_PATH and not self.KALSHI_PRIVATE_KEY_CONTENT:
            raise ConfigurationError(
                "KALSHI_PRIVATE_KEY_PATH or KALSHI_PRIVATE_KEY_CONTENT is required"
            )

        if self.KALSHI_ENDPOINT_OVERRIDE and self.ENVIRONMENT == "production":
            raise ConfigurationError("KALSHI_ENDPOINT_OVERRIDE is only allowed for the demo environment")

        if self.RATE_LIMIT <= 0:
            raise ConfigurationError("KALSHI_RATE_LIMIT must be positive")

        if self.RATE_BURST < 1:
            raise ConfigurationError("KALSHI_RATE_BURST must be >= 1")

        if self.REQUEST_TIMEOUT <= 0:
            raise ConfigurationError("KALSHI_REQUEST_TIMEOUT must be positive")

        if self.MAX_GET_RETRIES < 0:
            raise ConfigurationError("KALSHI_MAX_GET_RETRIES must be >= 0")

        if self.WS_RECONNECT_BASE <= 0 or self.WS_RECONNECT_MAX < self.WS_RECONNECT_BASE:
            raise ConfigurationError("WebSocket reconnect delays must satisfy 0 < base <= max")

        if not isinstance(logging.getLevelName(self.LOG_LEVEL), int):
            raise ConfigurationError(f"Unknown KALSHI_LOG_LEVEL: {self.LOG_LEVEL}")

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    def __repr__(self) -> str:
        return (
            f"GatewayConfig(environment={self.ENVIRONMENT!r}, "
            f"api_key_id={self.KALSHI_API_KEY_ID!r}, "
            f"private_key={'<path>' if self.KALSHI_PRIVATE_KEY_PATH else '<content>'})"
        )


def configure_logging(config: GatewayConfig) -> None:
    """Apply the configured log level and format to the package logger."""
    package_logger = logging.getLogger("kalshi_gateway")
    package_logger.setLevel(config.LOG_LEVEL)

    if not package_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(config.LOG_FORMAT))
        package_logger.addHandler(handler)
