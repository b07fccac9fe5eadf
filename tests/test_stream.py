"""
Tests for StreamSubscriber: connection state machine, resubscription on
reconnect, handshake auth and frame decoding.
"""

import asyncio
import base64
import json
from unittest.mock import AsyncMock, patch

import pytest
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosedError, InvalidStatus
from websockets.http11 import Response

from kalshi_gateway.errors import AuthenticationError, TransientError
from kalshi_gateway.session import HEADER_SIGNATURE, HEADER_TIMESTAMP, SessionState
from kalshi_gateway.stream import (
    ConnectionState,
    StreamEvent,
    StreamSubscriber,
)


def frame(channel, sid=1, seq=1, **msg):
    return json.dumps({"type": channel, "sid": sid, "seq": seq, "msg": msg})


class FakeWebSocket:
    """Scripted connection: each recv() returns (or raises) the next item.

    Every send and delivered frame is appended to a shared event log so
    tests can assert ordering across connections.
    """

    def __init__(self, name, script, log):
        self.name = name
        self.script = list(script)
        self.log = log
        self.sent = []
        self.closed = False

    async def send(self, data):
        payload = json.loads(data)
        self.sent.append(payload)
        channels = payload["params"].get("channels") or payload["params"].get("sids")
        self.log.append((self.name, payload["cmd"], tuple(channels)))

    async def recv(self):
        if not self.script:
            # Idle connection; tests close the subscriber before getting here
            await asyncio.Event().wait()
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        self.log.append((self.name, "recv", item))
        return item

    async def close(self):
        self.closed = True


class FakeConnector:
    """connect_fn double that hands out scripted connections in order."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.log = []
        self.handshakes = []
        self.connections = []

    async def __call__(self, url, headers):
        self.handshakes.append((url, dict(headers)))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        name = f"ws{len(self.handshakes)}"
        self.log.append((name, "connect"))
        ws = FakeWebSocket(name, outcome, self.log)
        self.connections.append(ws)
        return ws


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_stream(demo_session, sleeps):
    async def fake_sleep(delay):
        sleeps.append(delay)

    def _make(connector, **kwargs):
        return StreamSubscriber(demo_session, connect_fn=connector, sleep=fake_sleep, **kwargs)

    return _make


class TestStateMachine:

    def test_transitions(self, make_stream):
        stream = make_stream(FakeConnector())
        assert stream.state is ConnectionState.DISCONNECTED

        stream._dispatch(StreamEvent.CONNECT_REQUESTED)
        stream._dispatch(StreamEvent.CONNECT_SUCCEEDED)
        assert stream.state is ConnectionState.CONNECTED

        stream._dispatch(StreamEvent.CONNECTION_LOST)
        assert stream.state is ConnectionState.RECONNECTING
        assert stream.reconnect_attempt == 1

        stream._dispatch(StreamEvent.CLOSE_REQUESTED)
        assert stream.state is ConnectionState.CLOSED

    def test_invalid_event_ignored(self, make_stream):
        stream = make_stream(FakeConnector())
        assert stream._dispatch(StreamEvent.CONNECTION_LOST) is ConnectionState.DISCONNECTED

    def test_backoff_is_capped(self, make_stream):
        stream = make_stream(FakeConnector(), reconnect_base=1.0, reconnect_max=5.0)
        assert [stream.backoff_delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


class TestReconnect:

    @pytest.mark.asyncio
    async def test_resubscribes_in_order_before_delivery(self, make_stream, sleeps):
        connector = FakeConnector(
            [frame("orderbook_delta", seq=1, price=40), ConnectionClosedError(None, None)],
            [frame("fill", sid=2, seq=1, order_id="o1")],
        )
        stream = make_stream(connector)
        await stream.subscribe("orderbook_delta", {"market_tickers": ["T1"]})
        await stream.subscribe("fill")

        received = []
        async for message in stream:
            received.append(message)
            if len(received) == 2:
                await stream.close()

        assert [m.type for m in received] == ["orderbook_delta", "fill"]
        assert [m.epoch for m in received] == [1, 2]
        assert sleeps == [1.0]
        assert connector.log == [
            ("ws1", "connect"),
            ("ws1", "subscribe", ("orderbook_delta",)),
            ("ws1", "subscribe", ("fill",)),
            ("ws1", "recv", frame("orderbook_delta", seq=1, price=40)),
            ("ws2", "connect"),
            ("ws2", "subscribe", ("orderbook_delta",)),
            ("ws2", "subscribe", ("fill",)),
            ("ws2", "recv", frame("fill", sid=2, seq=1, order_id="o1")),
        ]
        assert stream.state is ConnectionState.CLOSED
        assert stream.get_health()["reconnect_count"] == 1

    @pytest.mark.asyncio
    async def test_replayed_params_unchanged(self, make_stream):
        connector = FakeConnector([ConnectionClosedError(None, None)], [frame("ticker")])
        stream = make_stream(connector)
        await stream.subscribe("orderbook_delta", {"market_tickers": ["T1", "T2"]})

        async for _ in stream:
            await stream.close()

        first, second = connector.connections
        assert first.sent[0]["params"] == second.sent[0]["params"] == {
            "channels": ["orderbook_delta"],
            "market_tickers": ["T1", "T2"],
        }
        assert second.sent[0]["id"] > first.sent[0]["id"]

    @pytest.mark.asyncio
    async def test_dropped_socket_closed_before_reconnect(self, make_stream):
        connector = FakeConnector([OSError("reset by peer")], [frame("ticker")])
        stream = make_stream(connector)

        async for _ in stream:
            first, second = connector.connections
            assert first.closed
            assert not second.closed
            await stream.close()

        assert second.closed

    @pytest.mark.asyncio
    async def test_close_error_on_dead_socket_does_not_block_reconnect(self, make_stream):
        connector = FakeConnector([ConnectionClosedError(None, None)], [frame("ticker")])
        stream = make_stream(connector)
        await stream.connect()
        connector.connections[0].close = AsyncMock(side_effect=OSError("broken pipe"))

        async for message in stream:
            await stream.close()

        assert message.type == "ticker"
        connector.connections[0].close.assert_awaited_once()
        assert len(connector.handshakes) == 2

    @pytest.mark.asyncio
    async def test_fresh_signature_per_handshake(self, make_stream, demo_session):
        connector = FakeConnector([ConnectionClosedError(None, None)], [frame("ticker")])
        stream = make_stream(connector)

        async for _ in stream:
            await stream.close()

        (url1, h1), (url2, h2) = connector.handshakes
        assert url1 == url2 == "wss://demo-api.kalshi.co/trade-api/ws/v2"
        assert h1[HEADER_TIMESTAMP] != h2[HEADER_TIMESTAMP]
        for headers in (h1, h2):
            signature = base64.b64decode(headers[HEADER_SIGNATURE])
            assert demo_session.signer.verify(
                signature, "GET", "/trade-api/ws/v2", int(headers[HEADER_TIMESTAMP])
            )

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, make_stream, sleeps):
        connector = FakeConnector(OSError("refused"), OSError("refused"), OSError("refused"))
        stream = make_stream(connector, max_reconnect_attempts=2)

        with pytest.raises(TransientError, match="abandoned after 2 attempts"):
            await stream.connect()

        assert sleeps == [1.0, 2.0]
        assert len(connector.handshakes) == 3
        assert stream.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_handshake_rejected_is_auth_error(self, make_stream, demo_session):
        rejected = InvalidStatus(Response(401, "Unauthorized", Headers()))
        connector = FakeConnector(rejected)
        stream = make_stream(connector)

        with pytest.raises(AuthenticationError) as exc_info:
            await stream.connect()

        assert exc_info.value.status_code == 401
        assert demo_session.state is SessionState.EXPIRED
        assert len(connector.handshakes) == 1

    @pytest.mark.asyncio
    async def test_default_connector_uses_websockets(self, demo_session):
        fake_ws = FakeWebSocket("ws1", [], [])
        with patch("kalshi_gateway.stream._websockets_connect", new=AsyncMock(return_value=fake_ws)) as connect:
            stream = StreamSubscriber(demo_session, ping_interval=5.0, ping_timeout=2.0)
            await stream.connect()

        url, headers = connect.call_args.args
        assert url == "wss://demo-api.kalshi.co/trade-api/ws/v2"
        assert set(headers) == {"KALSHI-ACCESS-KEY", "KALSHI-ACCESS-TIMESTAMP", "KALSHI-ACCESS-SIGNATURE"}
        assert connect.call_args.kwargs == {"ping_interval": 5.0, "ping_timeout": 2.0}
        await stream.close()
        assert fake_ws.closed

    @pytest.mark.asyncio
    async def test_server_error_handshake_is_retried(self, make_stream, sleeps):
        connector = FakeConnector(InvalidStatus(Response(503, "Service Unavailable", Headers())), [])
        stream = make_stream(connector)

        await stream.connect()

        assert stream.is_connected
        assert sleeps == [1.0]
        await stream.close()


class TestFrames:

    @pytest.mark.asyncio
    async def test_non_json_frames_skipped(self, make_stream):
        connector = FakeConnector(["not json", b"[1, 2]", frame("ticker", price=55)])
        stream = make_stream(connector)

        async for message in stream:
            await stream.close()

        assert message.type == "ticker"
        assert message.msg == {"price": 55}

    @pytest.mark.asyncio
    async def test_subscribed_ack_records_sid_for_unsubscribe(self, make_stream):
        ack = json.dumps({"id": 1, "type": "subscribed", "msg": {"channel": "fill", "sid": 7}})
        connector = FakeConnector([ack])
        stream = make_stream(connector)
        subscription = await stream.subscribe("fill")

        async for message in stream:
            assert message.type == "subscribed"
            break
        assert subscription.sid == 7

        await stream.unsubscribe(subscription)
        assert connector.log[-1] == ("ws1", "unsubscribe", (7,))
        assert stream.subscriptions == []
        await stream.close()

    @pytest.mark.asyncio
    async def test_unsubscribe_by_channel_before_connect(self, make_stream):
        connector = FakeConnector([])
        stream = make_stream(connector)
        await stream.subscribe("ticker", {"market_tickers": ["T1"]})
        await stream.subscribe("fill")
        await stream.unsubscribe("ticker")

        await stream.connect()

        assert [s.channel for s in stream.subscriptions] == ["fill"]
        assert connector.log == [("ws1", "connect"), ("ws1", "subscribe", ("fill",))]
        await stream.close()

    @pytest.mark.asyncio
    async def test_subscribe_while_connected_sends_immediately(self, make_stream):
        connector = FakeConnector([])
        stream = make_stream(connector)
        await stream.connect()

        await stream.subscribe("ticker", {"market_tickers": ["T1"]})

        assert connector.log[-1] == ("ws1", "subscribe", ("ticker",))
        await stream.close()
        assert stream.state is ConnectionState.CLOSED
