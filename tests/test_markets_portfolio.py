"""
Tests for the read-only market data and portfolio endpoints.
"""

import httpx
import pytest

from kalshi_gateway.errors import NotFoundError
from kalshi_gateway.markets import MarketData
from kalshi_gateway.portfolio import Portfolio


def routes(table):
    """Handler answering by URL path (without the /trade-api/v2 prefix)."""
    def handler(request):
        path = request.url.path[len("/trade-api/v2"):]
        if path not in table:
            return httpx.Response(404, json={"error": {"code": "not_found", "message": path}})
        return httpx.Response(200, json=table[path])
    return handler


class TestExchange:

    @pytest.mark.asyncio
    async def test_status(self, make_dispatcher):
        harness = make_dispatcher(routes({
            "/exchange/status": {"exchange_active": True, "trading_active": False},
        }))
        status = await MarketData(harness.dispatcher).get_exchange_status()
        assert status.exchange_active
        assert not status.trading_active

    @pytest.mark.asyncio
    async def test_schedule(self, make_dispatcher):
        harness = make_dispatcher(routes({
            "/exchange/schedule": {"schedule": {
                "standard_hours": [{
                    "start_time": "2024-01-01T00:00:00Z",
                    "end_time": "2025-01-01T00:00:00Z",
                    "monday": [{"open_time": "08:00", "close_time": "03:00"}],
                }],
                "maintenance_windows": [
                    {"start_datetime": "2024-06-01T08:00:00Z", "end_datetime": "2024-06-01T10:00:00Z"},
                ],
            }},
        }))
        schedule = await MarketData(harness.dispatcher).get_exchange_schedule()
        assert schedule.standard_hours[0].monday[0].open_time == "08:00"
        assert schedule.standard_hours[0].sunday == []
        assert len(schedule.maintenance_windows) == 1


class TestMarkets:

    @pytest.mark.asyncio
    async def test_get_markets_joins_tickers(self, make_dispatcher):
        harness = make_dispatcher(routes({
            "/markets": {"markets": [{"ticker": "T1", "yes_bid": 40}, {"ticker": "T2"}], "cursor": "next"},
        }))

        cursor, markets = await MarketData(harness.dispatcher).get_markets(tickers=["T1", "T2"], limit=2)

        assert cursor == "next"
        assert [m.ticker for m in markets] == ["T1", "T2"]
        assert markets[0].yes_bid == 40
        assert dict(harness.calls[0].url.params) == {"tickers": "T1,T2", "limit": "2"}

    @pytest.mark.asyncio
    async def test_get_market_unwraps(self, make_dispatcher):
        harness = make_dispatcher(routes({
            "/markets/KXBTC": {"market": {"ticker": "KXBTC", "status": "open", "new_field": 1}},
        }))
        market = await MarketData(harness.dispatcher).get_market("KXBTC")
        assert market.status == "open"

    @pytest.mark.asyncio
    async def test_unknown_market(self, make_dispatcher):
        harness = make_dispatcher(routes({}))
        with pytest.raises(NotFoundError):
            await MarketData(harness.dispatcher).get_market("NOPE")

    @pytest.mark.asyncio
    async def test_orderbook_null_side(self, make_dispatcher):
        harness = make_dispatcher(routes({
            "/markets/T1/orderbook": {"orderbook": {"yes": [[40, 10], [41, 5]], "no": None}},
        }))

        book = await MarketData(harness.dispatcher).get_orderbook("T1", depth=5)

        assert book.yes == [[40, 10], [41, 5]]
        assert book.no == []
        assert harness.calls[0].url.params["depth"] == "5"

    @pytest.mark.asyncio
    async def test_trades(self, make_dispatcher):
        harness = make_dispatcher(routes({
            "/markets/trades": {"trades": [{"trade_id": "t1", "ticker": "T1", "count": 3}], "cursor": ""},
        }))
        cursor, trades = await MarketData(harness.dispatcher).get_trades(ticker="T1")
        assert cursor is None
        assert trades[0].count == 3

    @pytest.mark.asyncio
    async def test_candlesticks(self, make_dispatcher):
        harness = make_dispatcher(routes({
            "/series/KXBTC/markets/KXBTC-1/candlesticks": {
                "candlesticks": [{"end_period_ts": 1700000060, "volume": 12, "open_interest": 4}],
            },
        }))
        candles = await MarketData(harness.dispatcher).get_market_candlesticks(
            "KXBTC", "KXBTC-1", start_ts=1700000000, end_ts=1700003600, period_interval=1
        )
        assert candles[0].volume == 12


class TestEventsAndSeries:

    @pytest.mark.asyncio
    async def test_event_with_top_level_markets(self, make_dispatcher):
        harness = make_dispatcher(routes({
            "/events/EV1": {"event": {"event_ticker": "EV1", "markets": None}, "markets": [{"ticker": "T1"}]},
        }))
        event = await MarketData(harness.dispatcher).get_event("EV1", with_nested_markets=True)
        assert [m.ticker for m in event.markets] == ["T1"]

    @pytest.mark.asyncio
    async def test_events_list(self, make_dispatcher):
        harness = make_dispatcher(routes({
            "/events": {"events": [{"event_ticker": "EV1"}, {"event_ticker": "EV2", "markets": None}]},
        }))
        cursor, events = await MarketData(harness.dispatcher).get_events(status="open")
        assert cursor is None
        assert events[1].markets == []

    @pytest.mark.asyncio
    async def test_null_series_list_is_empty(self, make_dispatcher):
        harness = make_dispatcher(routes({"/series": {"series": None, "cursor": None}}))
        cursor, series = await MarketData(harness.dispatcher).get_series_list()
        assert cursor is None
        assert series == []

    @pytest.mark.asyncio
    async def test_series_null_lists(self, make_dispatcher):
        harness = make_dispatcher(routes({
            "/series/KXBTC": {"series": {"ticker": "KXBTC", "tags": None, "settlement_sources": None}},
        }))
        series = await MarketData(harness.dispatcher).get_series("KXBTC")
        assert series.tags == []
        assert series.settlement_sources == []


class TestPortfolio:

    @pytest.mark.asyncio
    async def test_balance(self, make_dispatcher):
        harness = make_dispatcher(routes({"/portfolio/balance": {"balance": 150000}}))
        balance = await Portfolio(harness.dispatcher).get_balance()
        assert balance.balance == 150000

    @pytest.mark.asyncio
    async def test_positions(self, make_dispatcher):
        harness = make_dispatcher(routes({
            "/portfolio/positions": {
                "market_positions": [{"ticker": "T1", "position": -4}],
                "event_positions": [],
                "cursor": "c2",
            },
        }))
        cursor, positions = await Portfolio(harness.dispatcher).get_positions()
        assert cursor == "c2"
        assert positions[0].position == -4

    @pytest.mark.asyncio
    async def test_fills(self, make_dispatcher):
        harness = make_dispatcher(routes({
            "/portfolio/fills": {"fills": [{"trade_id": "f1", "order_id": "o1", "count": 2, "is_taker": True}]},
        }))
        _, fills = await Portfolio(harness.dispatcher).get_fills(order_id="o1")
        assert fills[0].is_taker
        assert harness.calls[0].url.params["order_id"] == "o1"

    @pytest.mark.asyncio
    async def test_settlements_follow_cursor(self, make_dispatcher):
        pages = [
            {"settlements": [{"ticker": "T1", "revenue": 100}], "cursor": "p2"},
            {"settlements": [{"ticker": "T2", "revenue": 0}], "cursor": None},
        ]
        harness = make_dispatcher(lambda r: httpx.Response(200, json=pages.pop(0)))

        settlements = await Portfolio(harness.dispatcher).get_settlements(limit=10)

        assert [s.ticker for s in settlements] == ["T1", "T2"]
        assert harness.calls[1].url.params["cursor"] == "p2"
