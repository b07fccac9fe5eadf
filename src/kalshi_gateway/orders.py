"""Order submission, cancellation and batch handling.

Orders carry a client-generated UUID (client_order_id) that the exchange
deduplicates on, so a resubmission after a timeout or restart cannot create
a second resting order. Nothing here retries a mutating call: failures are
raised to the caller, who reconciles with a status read before deciding to
resubmit.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from .dispatcher import RequestDispatcher
from .errors import (
    InvalidRequestError,
    KalshiError,
    NotCancelableError,
    NotFoundError,
    OrderValidationError,
)
from .models import (
    BatchEntry,
    BatchOutcome,
    BatchResult,
    Order,
    OrderAck,
    OrderRequest,
)
from .order_state import OrderState, OrderTracker, TrackedOrder

logger = logging.getLogger("kalshi_gateway.orders")

# Maximum orders per POST /portfolio/orders/batched
MAX_BATCH_SIZE = 20

# Error codes meaning the order is already terminal on the exchange
NOT_CANCELABLE_CODES = frozenset({
    "not_found",
    "order_not_found",
    "order_already_canceled",
    "order_already_cancelled",
    "order_already_executed",
    "order_already_filled",
    "order_not_cancelable",
    "invalid_order_status",
})

OrderInput = Union[OrderRequest, Mapping[str, Any]]


def _validation_message(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'order'}: {err['msg']}"
        for err in error.errors()
    )


def _is_not_cancelable(error: InvalidRequestError) -> bool:
    if isinstance(error, NotFoundError):
        return True
    if error.status_code == 409:
        return True
    return error.error_code in NOT_CANCELABLE_CODES


class OrderManager:
    """Builds, validates, submits and cancels orders.

    Safe for concurrent use from multiple tasks. Operations on different
    client_order_ids need no coordination; concurrent operations on the
    same order race at the exchange and must be reconciled via get_order().
    """

    def __init__(self, dispatcher: RequestDispatcher, tracker: Optional[OrderTracker] = None):
        self._dispatcher = dispatcher
        self._tracker = tracker or OrderTracker()

    @property
    def tracker(self) -> OrderTracker:
        return self._tracker

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def build_order(**fields: Any) -> OrderRequest:
        """Construct an OrderRequest, raising OrderValidationError on bad input.

        Example:
            om.build_order(ticker="KXBTC-25", side="yes", action="buy",
                           count=10, price=42)
        """
        try:
            return OrderRequest(**fields)
        except ValidationError as e:
            raise OrderValidationError(f"Invalid order: {_validation_message(e)}")

    @staticmethod
    def validate(order: OrderInput) -> OrderRequest:
        """Validate an order locally.

        Re-runs model validation even for OrderRequest instances so objects
        built with model_construct() cannot bypass the price and count checks.

        Raises:
            OrderValidationError: count <= 0, limit price outside 1-99 cents,
                missing price on a limit order, or missing client_order_id.
        """
        if isinstance(order, OrderRequest):
            data = dict(order.__dict__)
        elif isinstance(order, Mapping):
            data = dict(order)
        else:
            raise OrderValidationError(f"Unsupported order type: {type(order).__name__}")

        if "client_order_id" in data and not data["client_order_id"]:
            raise OrderValidationError("client_order_id is required")

        try:
            return OrderRequest.model_validate(data)
        except ValidationError as e:
            raise OrderValidationError(f"Invalid order: {_validation_message(e)}")

    # ------------------------------------------------------------------
    # Single orders
    # ------------------------------------------------------------------

    async def submit(self, order: OrderInput) -> OrderAck:
        """POST /portfolio/orders. Place a single order.

        Validation failures raise before any network call. Transport and
        5xx failures raise TransientError and leave the order PENDING: the
        order may or may not exist remotely, so call reconcile() before
        resubmitting with the same client_order_id.
        """
        request = self.validate(order)
        cid = str(request.client_order_id)
        self._tracker.track_pending(cid, request.ticker)

        logger.info(
            f"Submitting order {cid}: {request.action.value} {request.count} "
            f"{request.side.value} {request.ticker} "
            f"{'@ ' + str(request.price) + 'c' if request.price is not None else 'market'}"
        )

        try:
            data = await self._dispatcher.execute("POST", "/portfolio/orders", body=request.to_payload())
        except InvalidRequestError as e:
            self._tracker.mark(cid, OrderState.REJECTED)
            logger.error(f"Order {cid} rejected: {e}")
            raise
        except KalshiError as e:
            logger.error(f"Order {cid} outcome unknown ({e.kind.value if e.kind else 'error'}): {e}")
            raise

        ack = OrderAck(order=Order.model_validate(data.get("order", {})), client_order_id=cid)
        self._tracker.apply(ack.order, client_order_id=cid)
        logger.info(f"Order {cid} acknowledged: {ack.order_id} ({ack.order.status})")
        return ack

    async def cancel(self, order_id: str) -> Order:
        """DELETE /portfolio/orders/{order_id}.

        Raises:
            NotCancelableError: The order is already cancelled, filled, expired
                or unknown. Treat as a terminal no-op.
        """
        tracked = self._tracker.get_by_order_id(order_id)
        if tracked is not None and tracked.confirmed and tracked.state.is_terminal:
            raise NotCancelableError(f"Order {order_id} is already {tracked.state.value}")

        logger.info(f"Cancelling order {order_id}")
        try:
            data = await self._dispatcher.execute("DELETE", f"/portfolio/orders/{order_id}")
        except InvalidRequestError as e:
            if _is_not_cancelable(e):
                raise NotCancelableError(
                    f"Order {order_id} is not cancelable: {e}",
                    status_code=e.status_code,
                    response_body=e.response_body,
                )
            raise

        order = Order.model_validate(data.get("order", {}))
        if not order.order_id:
            order.order_id = order_id
        if not order.status:
            order.status = "canceled"

        if tracked is not None:
            self._tracker.apply(order, client_order_id=tracked.client_order_id)
        else:
            self._tracker.apply(order)
        logger.info(f"Order {order_id} cancelled")
        return order

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def submit_batch(self, orders: Sequence[OrderInput]) -> BatchResult:
        """POST /portfolio/orders/batched.

        Returns one BatchEntry per input order, in input order. Locally
        invalid orders and repeated client_order_ids are rejected without
        being sent; the rest go out in chunks of MAX_BATCH_SIZE. The batch
        is not atomic: a rejected element never rolls back its siblings.
        """
        entries: List[Optional[BatchEntry]] = [None] * len(orders)
        to_send: List[Tuple[int, OrderRequest]] = []
        seen: set = set()

        for index, raw in enumerate(orders):
            try:
                request = self.validate(raw)
            except OrderValidationError as e:
                ref = str(raw.get("client_order_id", "")) if isinstance(raw, Mapping) else ""
                entries[index] = self._rejected(ref, str(e), "invalid_order", e.kind.value)
                continue

            cid = str(request.client_order_id)
            if cid in seen:
                entries[index] = self._rejected(
                    cid,
                    f"Duplicate client_order_id {cid} within batch",
                    "duplicate_client_order_id",
                    "invalid_request",
                )
                continue

            seen.add(cid)
            self._tracker.track_pending(cid, request.ticker)
            to_send.append((index, request))

        for start in range(0, len(to_send), MAX_BATCH_SIZE):
            chunk = to_send[start:start + MAX_BATCH_SIZE]
            for index, entry in await self._submit_chunk(chunk):
                entries[index] = entry

        result = BatchResult(entries=[e for e in entries if e is not None])
        logger.info(
            f"Batch submit: {len(result.accepted)} accepted, {len(result.rejected)} rejected "
            f"of {len(orders)}"
        )
        return result

    async def _submit_chunk(
        self, chunk: List[Tuple[int, OrderRequest]]
    ) -> List[Tuple[int, BatchEntry]]:
        body = {"orders": [request.to_payload() for _, request in chunk]}
        try:
            data = await self._dispatcher.execute("POST", "/portfolio/orders/batched", body=body)
        except KalshiError as e:
            # Whole chunk failed; earlier chunks keep their outcomes
            logger.error(f"Batch chunk of {len(chunk)} failed: {e}")
            kind = e.kind.value if e.kind else "error"
            code = getattr(e, "error_code", "") or kind
            return [
                (index, self._rejected(str(request.client_order_id), str(e), code, kind))
                for index, request in chunk
            ]

        results = data.get("orders", []) or []
        by_cid = {
            str(item.get("client_order_id")): item
            for item in results
            if isinstance(item, dict) and item.get("client_order_id")
        }

        out: List[Tuple[int, BatchEntry]] = []
        for position, (index, request) in enumerate(chunk):
            cid = str(request.client_order_id)
            item = by_cid.get(cid)
            if item is None and position < len(results):
                item = results[position]
            out.append((index, self._entry_from_item(cid, item)))
        return out

    def _entry_from_item(self, cid: str, item: Optional[Dict[str, Any]]) -> BatchEntry:
        if not item:
            # No per-element result: outcome unknown, order stays PENDING
            return BatchEntry(
                ref=cid,
                outcome=BatchOutcome.REJECTED,
                reason="No result returned for order; reconcile before resubmitting",
                error_code="missing_result",
                error_kind="transient",
            )

        error = item.get("error")
        order_data = item.get("order")
        if error or not order_data:
            error = error if isinstance(error, dict) else {"message": str(error or "rejected")}
            self._tracker.mark(cid, OrderState.REJECTED)
            return self._rejected(
                cid,
                error.get("message", "") or "rejected",
                error.get("code", "") or "rejected",
                "invalid_request",
            )

        order = Order.model_validate(order_data)
        self._tracker.apply(order, client_order_id=cid)
        return BatchEntry(ref=cid, outcome=BatchOutcome.ACCEPTED, order=order)

    async def batch_cancel(self, order_ids: Sequence[str]) -> BatchResult:
        """DELETE /portfolio/orders/batched. Per-order cancel outcomes.

        Orders already terminal (locally known or reported by the exchange)
        come back REJECTED with error_kind "not_cancelable".
        """
        entries: Dict[int, BatchEntry] = {}
        to_send: List[Tuple[int, str]] = []

        for index, order_id in enumerate(order_ids):
            tracked = self._tracker.get_by_order_id(order_id)
            if tracked is not None and tracked.confirmed and tracked.state.is_terminal:
                entries[index] = self._rejected(
                    order_id, f"Order already {tracked.state.value}", "not_cancelable", "not_cancelable"
                )
            else:
                to_send.append((index, order_id))

        for start in range(0, len(to_send), MAX_BATCH_SIZE):
            chunk = to_send[start:start + MAX_BATCH_SIZE]
            body = {"ids": [order_id for _, order_id in chunk]}
            try:
                data = await self._dispatcher.execute("DELETE", "/portfolio/orders/batched", body=body)
            except KalshiError as e:
                logger.error(f"Batch cancel chunk of {len(chunk)} failed: {e}")
                kind = e.kind.value if e.kind else "error"
                for index, order_id in chunk:
                    entries[index] = self._rejected(order_id, str(e), kind, kind)
                continue

            by_id = {
                str(item.get("order_id") or (item.get("order") or {}).get("order_id")): item
                for item in data.get("orders", []) or []
                if isinstance(item, dict)
            }
            for index, order_id in chunk:
                entries[index] = self._cancel_entry(order_id, by_id.get(order_id))

        result = BatchResult(entries=[entries[i] for i in sorted(entries)])
        logger.info(
            f"Batch cancel: {len(result.accepted)} cancelled, {len(result.rejected)} not cancelled "
            f"of {len(order_ids)}"
        )
        return result

    def _cancel_entry(self, order_id: str, item: Optional[Dict[str, Any]]) -> BatchEntry:
        if not item:
            return self._rejected(order_id, "No result returned for order", "missing_result", "transient")

        error = item.get("error")
        if error:
            error = error if isinstance(error, dict) else {"message": str(error)}
            code = error.get("code", "") or "rejected"
            kind = "not_cancelable" if code in NOT_CANCELABLE_CODES else "invalid_request"
            return self._rejected(order_id, error.get("message", "") or code, code, kind)

        order = Order.model_validate(item.get("order") or {"order_id": order_id, "status": "canceled"})
        if not order.order_id:
            order.order_id = order_id
        self._tracker.apply(order)
        return BatchEntry(ref=order_id, outcome=BatchOutcome.ACCEPTED, order=order)

    @staticmethod
    def _rejected(ref: str, reason: str, code: str, kind: Optional[str]) -> BatchEntry:
        return BatchEntry(
            ref=ref,
            outcome=BatchOutcome.REJECTED,
            reason=reason,
            error_code=code,
            error_kind=kind,
        )

    # ------------------------------------------------------------------
    # Status reads
    # ------------------------------------------------------------------

    async def get_order(self, order_id: str) -> Order:
        """GET /portfolio/orders/{order_id}. Updates the local mirror."""
        data = await self._dispatcher.execute("GET", f"/portfolio/orders/{order_id}")
        order = Order.model_validate(data.get("order", data))
        self._tracker.apply(order)
        return order

    async def list_orders(
        self,
        ticker: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
        cursor: Optional[str] = None,
    ) -> Tuple[Optional[str], List[Order]]:
        """GET /portfolio/orders. Returns (next_cursor, orders)."""
        params = {"ticker": ticker, "status": status, "limit": limit, "cursor": cursor}
        data = await self._dispatcher.execute("GET", "/portfolio/orders", params=params)
        orders = [Order.model_validate(o) for o in data.get("orders", []) or []]
        for order in orders:
            self._tracker.apply(order)
        return data.get("cursor") or None, orders

    async def reconcile(self, client_order_id: str) -> Optional[TrackedOrder]:
        """Refresh the mirror for one order from the exchange.

        Used after an abandoned or failed submit to learn whether the order
        actually reached the book. Returns None if the exchange has no order
        with that client_order_id.
        """
        tracked = self._tracker.get(client_order_id)
        if tracked is not None and tracked.order_id:
            await self.get_order(tracked.order_id)
            return self._tracker.get(client_order_id)

        ticker = tracked.ticker if tracked is not None else None
        cursor: Optional[str] = None
        while True:
            cursor, orders = await self.list_orders(ticker=ticker, cursor=cursor)
            if any(o.client_order_id == client_order_id for o in orders):
                return self._tracker.get(client_order_id)
            if not cursor:
                break

        logger.info(f"Order {client_order_id} not found on exchange")
        return None
