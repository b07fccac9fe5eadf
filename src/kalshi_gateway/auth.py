"""
RSA signature authentication for the Kalshi API.

Every REST call and every WebSocket handshake carries a signature over the
canonical string ``timestamp_ms + METHOD + path``. There is no separator
between the three parts and the path never includes the query string.
"""

import base64
import logging

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding

from .credentials import Credentials
from .errors import SigningError

logger = logging.getLogger("kalshi_gateway.auth")

# Kalshi signs with RSA-PSS, MGF1(SHA-256), salt length equal to the digest length
_PSS_PADDING = padding.PSS(
    mgf=padding.MGF1(hashes.SHA256()),
    salt_length=padding.PSS.DIGEST_LENGTH,
)


def canonical_message(method: str, path: str, timestamp_ms: int) -> bytes:
    """Build the exact byte string the exchange expects to be signed.

    Args:
        method: HTTP method, any case (normalized to upper case).
        path: Full request path including the API prefix, e.g.
              "/trade-api/v2/portfolio/orders". Query strings are dropped.
        timestamp_ms: Milliseconds since the Unix epoch.
    """
    if not method:
        raise SigningError("Cannot sign a request without an HTTP method")
    if not path.startswith("/"):
        raise SigningError(f"Path must be absolute, got: {path!r}")

    base_path = path.split("?")[0]
    return f"{int(timestamp_ms)}{method.upper()}{base_path}".encode("utf-8")


class Signer:
    """Produces request signatures from loaded credential material.

    Stateless apart from the credentials it wraps; safe to share across
    concurrent callers.
    """

    def __init__(self, credentials: Credentials):
        self._credentials = credentials

    @property
    def key_id(self) -> str:
        return self._credentials.key_id

    def sign(self, method: str, path: str, timestamp_ms: int) -> bytes:
        """Sign a request and return the raw signature bytes.

        Raises:
            SigningError: If the message cannot be built or the primitive fails.
        """
        message = canonical_message(method, path, timestamp_ms)
        try:
            return self._credentials.private_key.sign(message, _PSS_PADDING, hashes.SHA256())
        except (ValueError, TypeError) as e:
            raise SigningError(f"Failed to sign {method} {path}: {e}")

    def sign_b64(self, method: str, path: str, timestamp_ms: int) -> str:
        """Sign a request and return the base64 form used in headers."""
        signature = self.sign(method, path, timestamp_ms)
        return base64.b64encode(signature).decode("utf-8")

    def verify(self, signature: bytes, method: str, path: str, timestamp_ms: int) -> bool:
        """Check a signature against the canonical string for the given inputs."""
        message = canonical_message(method, path, timestamp_ms)
        public_key = self._credentials.private_key.public_key()
        try:
            public_key.verify(signature, message, _PSS_PADDING, hashes.SHA256())
        except InvalidSignature:
            return False
        return True

    def self_test(self) -> None:
        """Sign and verify a fixed test message.

        Called at session construction so a broken key fails before any
        request is attempted.
        """
        signature = self.sign("GET", "/trade-api/v2/exchange/status", 0)
        if not self.verify(signature, "GET", "/trade-api/v2/exchange/status", 0):
            raise SigningError("Signer self-test failed: signature does not verify")
        logger.debug(f"Signer self-test passed for key id {self.key_id}")
