"""
Pytest configuration and shared fixtures for kalshi_gateway tests.
"""

import itertools
from types import SimpleNamespace

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from kalshi_gateway.credentials import Credentials, Environment
from kalshi_gateway.dispatcher import RequestDispatcher
from kalshi_gateway.rate_limiter import GatewayRateLimiter, RetryPolicy
from kalshi_gateway.session import Session


@pytest.fixture(scope="session")
def rsa_private_key():
    """Throwaway RSA key shared by the whole test session."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def pem_bytes(rsa_private_key):
    return rsa_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


@pytest.fixture
def temp_key_file(tmp_path, pem_bytes):
    """RSA private key written to a temporary .pem file."""
    path = tmp_path / "kalshi_test_key.pem"
    path.write_bytes(pem_bytes)
    return path


@pytest.fixture
def demo_credentials(rsa_private_key):
    return Credentials(key_id="test-key-id", private_key=rsa_private_key, environment=Environment.DEMO)


@pytest.fixture
def production_credentials(rsa_private_key):
    return Credentials(key_id="prod-key-id", private_key=rsa_private_key, environment=Environment.PRODUCTION)


@pytest.fixture
def fixed_clock():
    """Monotonic fake clock in epoch milliseconds (+1000 per call)."""
    counter = itertools.count(start=1_703_123_456_789, step=1000)
    return lambda: next(counter)


@pytest.fixture
def demo_session(demo_credentials, fixed_clock):
    return Session(demo_credentials, clock=fixed_clock)


@pytest.fixture
def make_dispatcher(demo_session):
    """Build a RequestDispatcher over httpx.MockTransport.

    Returns a namespace with the dispatcher, the list of requests the
    transport saw, and the list of backoff delays requested.
    """
    def _make(handler, session=None, retry_policy=None):
        calls = []
        sleeps = []

        def recording(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return handler(request)

        async def fake_sleep(delay: float) -> None:
            sleeps.append(delay)

        dispatcher = RequestDispatcher(
            session or demo_session,
            limiter=GatewayRateLimiter(rate=1000.0, burst=1000),
            retry_policy=retry_policy or RetryPolicy(),
            transport=httpx.MockTransport(recording),
            sleep=fake_sleep,
        )
        return SimpleNamespace(dispatcher=dispatcher, calls=calls, sleeps=sleeps)

    return _make
