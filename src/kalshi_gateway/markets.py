"""Read-only exchange and market-data endpoints.

Thin typed wrappers over signed GET requests. List endpoints are
cursor-paginated and return ``(next_cursor, items)``.
"""

import logging
from typing import List, Optional, Tuple

from .dispatcher import RequestDispatcher
from .models import (
    Candlestick,
    Event,
    ExchangeSchedule,
    ExchangeStatus,
    Market,
    Orderbook,
    Series,
    Trade,
)

logger = logging.getLogger("kalshi_gateway.markets")


class MarketData:
    """Exchange, event, market, orderbook, trade and series reads."""

    def __init__(self, dispatcher: RequestDispatcher):
        self._dispatcher = dispatcher

    # ------------------------------------------------------------------
    # Exchange
    # ------------------------------------------------------------------

    async def get_exchange_status(self) -> ExchangeStatus:
        """GET /exchange/status."""
        data = await self._dispatcher.execute("GET", "/exchange/status")
        return ExchangeStatus.model_validate(data)

    async def get_exchange_schedule(self) -> ExchangeSchedule:
        """GET /exchange/schedule."""
        data = await self._dispatcher.execute("GET", "/exchange/schedule")
        return ExchangeSchedule.model_validate(data.get("schedule", data))

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def get_events(
        self,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
        status: Optional[str] = None,
        series_ticker: Optional[str] = None,
        with_nested_markets: Optional[bool] = None,
    ) -> Tuple[Optional[str], List[Event]]:
        """GET /events with filters."""
        params = {
            "limit": limit,
            "cursor": cursor,
            "status": status,
            "series_ticker": series_ticker,
            "with_nested_markets": with_nested_markets,
        }
        data = await self._dispatcher.execute("GET", "/events", params=params)
        events = [Event.model_validate(e) for e in data.get("events", []) or []]
        return data.get("cursor") or None, events

    async def get_event(self, event_ticker: str, with_nested_markets: bool = False) -> Event:
        """GET /events/{event_ticker}."""
        params = {"with_nested_markets": True} if with_nested_markets else None
        data = await self._dispatcher.execute("GET", f"/events/{event_ticker}", params=params)
        event_data = dict(data.get("event", data))
        if data.get("markets") and not event_data.get("markets"):
            event_data["markets"] = data["markets"]
        return Event.model_validate(event_data)

    # ------------------------------------------------------------------
    # Markets
    # ------------------------------------------------------------------

    async def get_markets(
        self,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
        event_ticker: Optional[str] = None,
        series_ticker: Optional[str] = None,
        status: Optional[str] = None,
        tickers: Optional[List[str]] = None,
        min_close_ts: Optional[int] = None,
        max_close_ts: Optional[int] = None,
    ) -> Tuple[Optional[str], List[Market]]:
        """GET /markets with filters."""
        params = {
            "limit": limit,
            "cursor": cursor,
            "event_ticker": event_ticker,
            "series_ticker": series_ticker,
            "status": status,
            "tickers": ",".join(tickers) if tickers else None,
            "min_close_ts": min_close_ts,
            "max_close_ts": max_close_ts,
        }
        data = await self._dispatcher.execute("GET", "/markets", params=params)
        markets = [Market.model_validate(m) for m in data.get("markets", []) or []]
        return data.get("cursor") or None, markets

    async def get_market(self, ticker: str) -> Market:
        """GET /markets/{ticker}."""
        data = await self._dispatcher.execute("GET", f"/markets/{ticker}")
        return Market.model_validate(data.get("market", data))

    async def get_orderbook(self, ticker: str, depth: Optional[int] = None) -> Orderbook:
        """GET /markets/{ticker}/orderbook. ``depth=None`` returns the full book."""
        params = {"depth": depth} if depth else None
        data = await self._dispatcher.execute("GET", f"/markets/{ticker}/orderbook", params=params)
        return Orderbook.model_validate(data.get("orderbook", data) or {})

    async def get_trades(
        self,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
        ticker: Optional[str] = None,
        min_ts: Optional[int] = None,
        max_ts: Optional[int] = None,
    ) -> Tuple[Optional[str], List[Trade]]:
        """GET /markets/trades."""
        params = {"limit": limit, "cursor": cursor, "ticker": ticker, "min_ts": min_ts, "max_ts": max_ts}
        data = await self._dispatcher.execute("GET", "/markets/trades", params=params)
        trades = [Trade.model_validate(t) for t in data.get("trades", []) or []]
        return data.get("cursor") or None, trades

    async def get_market_candlesticks(
        self,
        series_ticker: str,
        ticker: str,
        start_ts: Optional[int] = None,
        end_ts: Optional[int] = None,
        period_interval: Optional[int] = None,
    ) -> List[Candlestick]:
        """GET /series/{series_ticker}/markets/{ticker}/candlesticks."""
        params = {"start_ts": start_ts, "end_ts": end_ts, "period_interval": period_interval}
        data = await self._dispatcher.execute(
            "GET", f"/series/{series_ticker}/markets/{ticker}/candlesticks", params=params
        )
        return [Candlestick.model_validate(c) for c in data.get("candlesticks", []) or []]

    # ------------------------------------------------------------------
    # Series
    # ------------------------------------------------------------------

    async def get_series_list(
        self,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
        category: Optional[str] = None,
        tags: Optional[str] = None,
    ) -> Tuple[Optional[str], List[Series]]:
        """GET /series. A null ``series`` field is treated as empty."""
        params = {"limit": limit, "cursor": cursor, "category": category, "tags": tags}
        data = await self._dispatcher.execute("GET", "/series", params=params)
        series = [Series.model_validate(s) for s in data.get("series") or []]
        return data.get("cursor") or None, series

    async def get_series(self, series_ticker: str) -> Series:
        """GET /series/{series_ticker}."""
        data = await self._dispatcher.execute("GET", f"/series/{series_ticker}")
        return Series.model_validate(data.get("series", data))
