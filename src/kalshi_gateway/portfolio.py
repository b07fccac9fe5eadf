"""Portfolio reads: balance, positions, fills, settlements."""

import logging
from typing import List, Optional, Tuple

from .dispatcher import RequestDispatcher
from .models import Balance, Fill, Position, Settlement

logger = logging.getLogger("kalshi_gateway.portfolio")


class Portfolio:
    """Account-level GET endpoints."""

    def __init__(self, dispatcher: RequestDispatcher):
        self._dispatcher = dispatcher

    async def get_balance(self) -> Balance:
        """GET /portfolio/balance."""
        data = await self._dispatcher.execute("GET", "/portfolio/balance")
        return Balance.model_validate(data)

    async def get_positions(
        self,
        ticker: Optional[str] = None,
        event_ticker: Optional[str] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> Tuple[Optional[str], List[Position]]:
        """GET /portfolio/positions."""
        params = {"ticker": ticker, "event_ticker": event_ticker, "limit": limit, "cursor": cursor}
        data = await self._dispatcher.execute("GET", "/portfolio/positions", params=params)
        raw = data.get("market_positions", data.get("positions", [])) or []
        return data.get("cursor") or None, [Position.model_validate(p) for p in raw]

    async def get_fills(
        self,
        ticker: Optional[str] = None,
        order_id: Optional[str] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> Tuple[Optional[str], List[Fill]]:
        """GET /portfolio/fills."""
        params = {"ticker": ticker, "order_id": order_id, "limit": limit, "cursor": cursor}
        data = await self._dispatcher.execute("GET", "/portfolio/fills", params=params)
        fills = [Fill.model_validate(f) for f in data.get("fills", []) or []]
        return data.get("cursor") or None, fills

    async def get_settlements(self, limit: int = 200) -> List[Settlement]:
        """GET /portfolio/settlements, following the cursor up to ``limit`` rows."""
        all_settlements = []
        cursor = None

        while len(all_settlements) < limit:
            params = {"limit": min(200, limit - len(all_settlements)), "cursor": cursor}
            data = await self._dispatcher.execute("GET", "/portfolio/settlements", params=params)

            batch = data.get("settlements", []) or []
            all_settlements.extend(batch)

            cursor = data.get("cursor")
            if not cursor or not batch:
                break

        logger.debug(f"Fetched {len(all_settlements)} settlements")
        return [Settlement.model_validate(s) for s in all_settlements]
