"""
Integration-style tests for KalshiClient wiring over a mock transport.
"""

import json

import httpx
import pytest

from kalshi_gateway import KalshiClient, OrderState
from kalshi_gateway.config import GatewayConfig
from kalshi_gateway.credentials import Environment
from kalshi_gateway.rate_limiter import RetryPolicy
from kalshi_gateway.stream import StreamSubscriber


def exchange(request):
    path = request.url.path
    if path.endswith("/exchange/status"):
        return httpx.Response(200, json={"exchange_active": True, "trading_active": True})
    if path.endswith("/portfolio/balance"):
        return httpx.Response(200, json={"balance": 5000})
    if path.endswith("/portfolio/orders") and request.method == "POST":
        body = json.loads(request.content)
        return httpx.Response(201, json={"order": {
            "order_id": "ord-1",
            "client_order_id": body["client_order_id"],
            "ticker": body["ticker"],
            "status": "resting",
        }})
    return httpx.Response(404, json={"error": {"code": "not_found"}})


class TestKalshiClient:

    @pytest.mark.asyncio
    async def test_components_share_one_session(self, demo_credentials):
        async with KalshiClient(demo_credentials, transport=httpx.MockTransport(exchange)) as client:
            status = await client.markets.get_exchange_status()
            balance = await client.portfolio.get_balance()

            assert status.trading_active
            assert balance.balance == 5000
            assert client.session.base_url.startswith("https://demo-api.kalshi.co")
            assert client.dispatcher.get_health()["requests_sent"] == 2

    @pytest.mark.asyncio
    async def test_submit_tracked_in_health(self, demo_credentials):
        async with KalshiClient(demo_credentials, transport=httpx.MockTransport(exchange)) as client:
            order = client.orders.build_order(ticker="KXBTC-25", side="yes", action="buy", count=1, price=40)
            ack = await client.orders.submit(order)

            assert client.orders.tracker.get(ack.client_order_id).state is OrderState.RESTING
            health = client.get_health()
            assert health["environment"] == "demo"
            assert health["open_orders"] == 1
            assert health["rest"]["session_state"] == "authenticated"

    @pytest.mark.asyncio
    async def test_from_config(self, pem_bytes):
        config = GatewayConfig(
            environment="production",
            api_key_id="cfg-key",
            private_key_content=pem_bytes.decode("utf-8"),
            max_get_retries=1,
            ws_reconnect_base=2.0,
        )
        client = KalshiClient.from_config(config, retry_policy=RetryPolicy(max_transient_retries=0))

        assert client.session.environment is Environment.PRODUCTION
        assert client.session.base_url == "https://api.elections.kalshi.com/trade-api/v2"
        stream = client.stream()
        assert isinstance(stream, StreamSubscriber)
        assert stream.backoff_delay(1) == 2.0
        assert client.get_health()["streams"][0]["state"] == "disconnected"
        await client.close()
        assert stream.state.value == "closed"
