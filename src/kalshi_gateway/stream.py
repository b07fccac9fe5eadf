"""WebSocket stream subscriber for kalshi_gateway.

One authenticated connection carrying any number of channel subscriptions,
consumed as an async iterator of decoded frames. On an unexpected drop the
subscriber reconnects with capped exponential backoff, re-signs the
handshake, and replays every active subscription in its original order
before yielding anything else.

Kalshi WS protocol:
- Auth via HTTP headers on connect (signature over GET /trade-api/ws/v2)
- Subscribe: {"id": N, "cmd": "subscribe", "params": {"channels": [...], ...}}
- Unsubscribe: {"id": N, "cmd": "unsubscribe", "params": {"sids": [...]}}
- Messages: {"type": "<channel>", "sid": N, "seq": N, "msg": {...}}

Connection lifecycle is an explicit state machine:

    DISCONNECTED -> CONNECTING -> CONNECTED -> RECONNECTING -> CONNECTING ...
    any -> CLOSED
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus

from .errors import AuthenticationError, TransientError
from .models import StreamMessage
from .session import Session

logger = logging.getLogger("kalshi_gateway.stream")

ConnectFn = Callable[[str, Dict[str, str]], Awaitable[Any]]


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class StreamEvent(Enum):
    """Inputs that drive the connection state machine."""
    CONNECT_REQUESTED = "connect_requested"
    CONNECT_SUCCEEDED = "connect_succeeded"
    CONNECT_FAILED = "connect_failed"
    CONNECTION_LOST = "connection_lost"
    CLOSE_REQUESTED = "close_requested"


TRANSITIONS: Dict[ConnectionState, Dict[StreamEvent, ConnectionState]] = {
    ConnectionState.DISCONNECTED: {
        StreamEvent.CONNECT_REQUESTED: ConnectionState.CONNECTING,
        StreamEvent.CLOSE_REQUESTED: ConnectionState.CLOSED,
    },
    ConnectionState.CONNECTING: {
        StreamEvent.CONNECT_SUCCEEDED: ConnectionState.CONNECTED,
        StreamEvent.CONNECT_FAILED: ConnectionState.RECONNECTING,
        StreamEvent.CLOSE_REQUESTED: ConnectionState.CLOSED,
    },
    ConnectionState.CONNECTED: {
        StreamEvent.CONNECTION_LOST: ConnectionState.RECONNECTING,
        StreamEvent.CLOSE_REQUESTED: ConnectionState.CLOSED,
    },
    ConnectionState.RECONNECTING: {
        StreamEvent.CONNECT_REQUESTED: ConnectionState.CONNECTING,
        StreamEvent.CLOSE_REQUESTED: ConnectionState.CLOSED,
    },
    ConnectionState.CLOSED: {},
}


@dataclass(eq=False)
class Subscription:
    """A channel subscription, replayed verbatim after reconnects."""
    channel: str
    params: Dict[str, Any] = field(default_factory=dict)
    sid: Optional[int] = None

    def command_params(self) -> Dict[str, Any]:
        return {"channels": [self.channel], **self.params}


async def _websockets_connect(url: str, headers: Dict[str, str], **kwargs) -> Any:
    return await websockets.connect(url, additional_headers=headers, **kwargs)


class StreamSubscriber:
    """Authenticated, self-healing WebSocket subscription stream.

    Features:
    - Fresh signature on every (re)connect
    - Subscription replay in original order before delivery resumes
    - Exponential backoff reconnect (1s base, 60s max by default)
    - Health monitoring (connection epoch, reconnect count, message count)

    Delivery is ordered within one connection epoch. Across a reconnect,
    frames may be missing; callers detect gaps from ``seq`` and ``epoch``.
    """

    def __init__(
        self,
        session: Session,
        connect_fn: Optional[ConnectFn] = None,
        reconnect_base: float = 1.0,
        reconnect_max: float = 60.0,
        max_reconnect_attempts: Optional[int] = None,
        connect_timeout: float = 10.0,
        ping_interval: float = 20.0,
        ping_timeout: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            session: Session used to sign the WS handshake.
            connect_fn: ``async (url, headers) -> connection``; defaults to
                websockets.connect. The connection must provide send(),
                recv() and close().
            reconnect_base: First reconnect delay in seconds.
            reconnect_max: Cap on the reconnect delay.
            max_reconnect_attempts: Give up after this many consecutive
                failed attempts (None = retry forever).
            connect_timeout: Seconds to wait for the handshake.
            ping_interval: Seconds between ping frames (default connector).
            ping_timeout: Seconds to wait for pong (default connector).
            sleep: Awaitable used for backoff delays.
        """
        self._session = session
        if connect_fn is None:
            async def connect_fn(url, headers):
                return await _websockets_connect(
                    url, headers, ping_interval=ping_interval, ping_timeout=ping_timeout
                )
        self._connect_fn = connect_fn
        self._reconnect_base = reconnect_base
        self._reconnect_max = reconnect_max
        self._max_reconnect_attempts = max_reconnect_attempts
        self._connect_timeout = connect_timeout
        self._sleep = sleep

        self._state = ConnectionState.DISCONNECTED
        self._attempt = 0
        self._ws: Optional[Any] = None
        self._subscriptions: List[Subscription] = []
        self._pending_commands: Dict[int, Subscription] = {}
        self._message_id = 0

        # Health metrics
        self._epoch = 0
        self._reconnect_count = 0
        self._messages_received = 0
        self._last_message_time: Optional[float] = None
        self._connected_at: Optional[float] = None

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_attempt(self) -> int:
        """Consecutive failed attempts in the current RECONNECTING episode."""
        return self._attempt

    @property
    def epoch(self) -> int:
        """Number of successful connections so far."""
        return self._epoch

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def subscriptions(self) -> List[Subscription]:
        return list(self._subscriptions)

    def _dispatch(self, event: StreamEvent) -> ConnectionState:
        """Apply an event to the connection state machine."""
        target = TRANSITIONS[self._state].get(event)
        if target is None:
            logger.debug(f"Ignoring {event.value} in state {self._state.value}")
            return self._state

        if event is StreamEvent.CONNECT_SUCCEEDED:
            self._attempt = 0
        elif event in (StreamEvent.CONNECT_FAILED, StreamEvent.CONNECTION_LOST):
            self._attempt += 1

        logger.debug(f"WS state {self._state.value} -> {target.value} on {event.value}")
        self._state = target
        return target

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt ``attempt`` (1-based)."""
        return min(self._reconnect_base * (2 ** (attempt - 1)), self._reconnect_max)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def connect(self) -> "StreamSubscriber":
        """Open the connection and send any subscriptions registered so far."""
        if self._state is ConnectionState.CLOSED:
            raise TransientError("Stream subscriber is closed")
        if self._ws is None:
            await self._establish()
        return self

    async def subscribe(self, channel: str, params: Optional[Dict[str, Any]] = None) -> Subscription:
        """Add a subscription.

        Sent immediately when connected; otherwise sent on the next connect.
        Either way it is replayed after every reconnect.
        """
        subscription = Subscription(channel=channel, params=dict(params or {}))
        self._subscriptions.append(subscription)
        if self._ws is not None:
            await self._send_subscribe(subscription)
        return subscription

    async def unsubscribe(self, target: Union[Subscription, str]) -> None:
        """Remove a subscription, or every subscription on a channel name,
        so it is no longer replayed."""
        if isinstance(target, Subscription):
            removed = [s for s in self._subscriptions if s is target]
        else:
            removed = [s for s in self._subscriptions if s.channel == target]

        for subscription in removed:
            self._subscriptions.remove(subscription)
            if self._ws is None:
                continue
            if subscription.sid is not None:
                params: Dict[str, Any] = {"sids": [subscription.sid]}
            else:
                params = subscription.command_params()
            await self._send_command("unsubscribe", params)
            logger.debug(f"Unsubscribed {subscription.channel}")

    async def close(self) -> None:
        """Close the connection; the message iterator ends."""
        self._dispatch(StreamEvent.CLOSE_REQUESTED)
        await self._discard_connection()
        logger.info("StreamSubscriber closed")

    async def __aenter__(self) -> "StreamSubscriber":
        return await self.connect()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def __aiter__(self) -> AsyncIterator[StreamMessage]:
        return self.messages()

    async def messages(self) -> AsyncIterator[StreamMessage]:
        """Yield decoded frames until close() is called.

        Reconnects transparently. Raises AuthenticationError if the handshake
        is rejected and TransientError once max_reconnect_attempts is spent.
        """
        while self._state is not ConnectionState.CLOSED:
            if self._ws is None:
                await self._establish()
                if self._ws is None:
                    return

            try:
                raw = await self._ws.recv()
            except (ConnectionClosed, OSError) as e:
                if self._state is ConnectionState.CLOSED:
                    return
                await self._discard_connection()
                self._reconnect_count += 1
                self._dispatch(StreamEvent.CONNECTION_LOST)
                logger.warning(f"WS disconnected (reconnect #{self._reconnect_count}): {e}")
                continue

            message = self._decode(raw)
            if message is not None:
                yield message

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def _establish(self) -> None:
        """Drive the state machine until CONNECTED (or CLOSED)."""
        while self._state in (ConnectionState.DISCONNECTED, ConnectionState.RECONNECTING):
            if self._state is ConnectionState.RECONNECTING:
                if (
                    self._max_reconnect_attempts is not None
                    and self._attempt > self._max_reconnect_attempts
                ):
                    self._state = ConnectionState.DISCONNECTED
                    raise TransientError(
                        f"WS reconnect abandoned after {self._max_reconnect_attempts} attempts"
                    )
                delay = self.backoff_delay(self._attempt)
                logger.info(f"Reconnecting in {delay:.1f}s (attempt {self._attempt})")
                await self._sleep(delay)
                if self._state is ConnectionState.CLOSED:
                    return

            self._dispatch(StreamEvent.CONNECT_REQUESTED)
            try:
                ws = await self._open()
                self._ws = ws
                await self._replay_subscriptions()
            except AuthenticationError:
                await self._discard_connection()
                self._state = ConnectionState.DISCONNECTED
                raise
            except (ConnectionClosed, InvalidHandshake, OSError, asyncio.TimeoutError) as e:
                await self._discard_connection()
                self._dispatch(StreamEvent.CONNECT_FAILED)
                logger.warning(f"WS connect failed: {e!r}")
                continue

            self._dispatch(StreamEvent.CONNECT_SUCCEEDED)
            self._epoch += 1
            self._connected_at = time.time()
            logger.info(
                f"WS connected (epoch {self._epoch}), "
                f"{len(self._subscriptions)} subscriptions active"
            )

    async def _discard_connection(self) -> None:
        """Detach the current socket and close it, ignoring errors from a dead peer."""
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except (ConnectionClosed, OSError) as e:
            logger.debug(f"Error closing WS: {e}")

    async def _open(self) -> Any:
        # Signatures are never reused across connects: timestamps would be stale
        headers = self._session.authorize_ws()
        try:
            return await asyncio.wait_for(
                self._connect_fn(self._session.ws_url, headers),
                timeout=self._connect_timeout,
            )
        except InvalidStatus as e:
            status = e.response.status_code
            if status in (401, 403):
                self._session.mark_expired(f"WS handshake rejected with {status}")
                raise AuthenticationError(f"WS handshake rejected: {status}", status_code=status)
            raise

    async def _replay_subscriptions(self) -> None:
        self._pending_commands.clear()
        for subscription in self._subscriptions:
            subscription.sid = None
            await self._send_subscribe(subscription)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _next_id(self) -> int:
        self._message_id += 1
        return self._message_id

    async def _send_command(self, cmd: str, params: Dict[str, Any]) -> int:
        command_id = self._next_id()
        frame = {"id": command_id, "cmd": cmd, "params": params}
        await self._ws.send(json.dumps(frame))
        return command_id

    async def _send_subscribe(self, subscription: Subscription) -> None:
        command_id = await self._send_command("subscribe", subscription.command_params())
        self._pending_commands[command_id] = subscription
        logger.debug(f"Subscribed {subscription.channel} (cmd {command_id})")

    # ------------------------------------------------------------------
    # Inbound frames
    # ------------------------------------------------------------------

    def _decode(self, raw: Any) -> Optional[StreamMessage]:
        """Parse a frame; non-JSON frames are skipped."""
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        try:
            data = json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            logger.debug(f"Non-JSON WS message: {str(raw)[:100]}")
            return None
        if not isinstance(data, dict):
            logger.debug(f"Unexpected WS frame: {str(raw)[:100]}")
            return None

        self._last_message_time = time.time()
        self._messages_received += 1

        try:
            message = StreamMessage.model_validate(data)
        except ValidationError:
            logger.debug(f"Malformed WS frame: {str(raw)[:100]}")
            return None
        message.epoch = self._epoch

        if message.type == "subscribed" and message.id is not None:
            subscription = self._pending_commands.pop(message.id, None)
            sid = message.msg.get("sid", message.sid)
            if subscription is not None and sid is not None:
                subscription.sid = int(sid)
        elif message.type == "error":
            logger.error(f"WS error frame: {message.msg}")
        return message

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def get_health(self) -> Dict[str, Any]:
        """Health metrics for monitoring."""
        return {
            "state": self._state.value,
            "epoch": self._epoch,
            "reconnect_count": self._reconnect_count,
            "messages_received": self._messages_received,
            "last_message_time": self._last_message_time,
            "connected_at": self._connected_at,
            "subscriptions": [s.channel for s in self._subscriptions],
        }
