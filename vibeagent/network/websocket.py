"""
Transport multiplexer — one authenticated WebSocket per (identity, app) session
carrying every live collection subscription.

    CLOSED -> CONNECTING -> OPEN -> CLOSED

Subscriptions made before the socket is OPEN wait in a pending set and are
flushed (one `subscribe` frame each) as soon as it opens. A close or error
drops every active and pending subscription; there is no automatic reconnect.

Depends on: config, errors, models, schemas, network/merge
"""

import asyncio
import inspect
import json
import sys
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from vibeagent.config import WS_CONNECT_TIMEOUT
from vibeagent.errors import NetworkError
from vibeagent.models import ReadResult, TransportState
from vibeagent.network.merge import MergePolicy
from vibeagent.schemas import ErrorFrame, StatusFrame, UpdateFrame, parse_frame

Callback = Callable[[ReadResult], Any]
Connect = Callable[[str], Awaitable[Any]]


@dataclass
class Subscription:
    collection: str
    callback: Callback
    filter: Optional[dict] = None


async def deliver(callback: Callback, result: ReadResult) -> None:
    """Invoke a subscriber callback that may be sync or async."""
    out = callback(result)
    if inspect.isawaitable(out):
        await out


class TransportMultiplexer:
    """Owns the socket, the subscription registry, and the pending queue."""

    def __init__(self, url: str, merge_policy: MergePolicy,
                 connect: Optional[Connect] = None,
                 connect_timeout: float = WS_CONNECT_TIMEOUT):
        self._url = url
        self._policy = merge_policy
        self._connect = connect or websockets.connect
        self._connect_timeout = connect_timeout
        self._ws = None
        self._state = TransportState.CLOSED
        self._subscriptions: dict[str, Subscription] = {}
        self._pending: dict[str, Subscription] = {}
        self._connect_lock = asyncio.Lock()
        self._reader: Optional[asyncio.Task] = None

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def subscriptions(self) -> list[str]:
        return list(self._subscriptions)

    @property
    def pending(self) -> list[str]:
        return list(self._pending)

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def connect(self) -> None:
        """Open the socket if needed. Concurrent callers queue on one lock, first come first served."""
        if self._state is TransportState.OPEN:
            return
        async with self._connect_lock:
            if self._state is TransportState.OPEN:
                return
            self._state = TransportState.CONNECTING
            try:
                ws = await asyncio.wait_for(self._open(), self._connect_timeout)
            except (OSError, WebSocketException, asyncio.TimeoutError) as e:
                self._handle_close(f"connect failed: {e}")
                raise NetworkError(f"WebSocket connection failed: {e}") from e

            self._ws = ws
            self._state = TransportState.OPEN
            print("[VibeAgent] WebSocket open", file=sys.stderr)
            await self._flush_pending()
            self._reader = asyncio.create_task(self._read_loop(ws))

    async def _open(self):
        return await self._connect(self._url)

    async def _flush_pending(self) -> None:
        pending, self._pending = self._pending, {}
        for collection, sub in pending.items():
            self._subscriptions[collection] = sub
            await self._send({"action": "subscribe", "collection": collection})

    async def close(self) -> None:
        ws, reader = self._ws, self._reader
        self._reader = None
        self._handle_close("closed by client")
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        if ws is not None:
            try:
                await ws.close()
            except (OSError, WebSocketException) as e:
                print(f"[VibeAgent] WebSocket close failed: {e}", file=sys.stderr)

    def _handle_close(self, reason: str) -> None:
        was_open = self._state is not TransportState.CLOSED
        self._ws = None
        self._state = TransportState.CLOSED
        self._subscriptions.clear()
        self._pending.clear()
        self._policy.reset()
        if was_open:
            print(f"[VibeAgent] WebSocket {reason}; subscriptions cleared", file=sys.stderr)

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def subscribe(self, collection: str, callback: Callback,
                        filter: Optional[dict] = None) -> None:
        """Register a subscriber. Raises NetworkError if the socket cannot be opened."""
        sub = Subscription(collection=collection, callback=callback, filter=filter)
        if self._state is TransportState.OPEN:
            self._subscriptions[collection] = sub
            await self._send({"action": "subscribe", "collection": collection})
            return
        self._pending[collection] = sub
        await self.connect()

    async def unsubscribe(self, collection: str) -> None:
        """Drop the local registration and tell the server, if the socket is open."""
        self._subscriptions.pop(collection, None)
        self._pending.pop(collection, None)
        self._policy.forget(collection)
        if self._state is TransportState.OPEN:
            try:
                await self._send({"action": "unsubscribe", "collection": collection})
            except NetworkError as e:
                print(f"[VibeAgent] Unsubscribe for '{collection}' not sent: {e}", file=sys.stderr)

    def seed(self, collection: str, result: ReadResult) -> None:
        self._policy.seed(collection, result)

    async def _send(self, message: dict) -> None:
        ws = self._ws
        if ws is None:
            raise NetworkError("WebSocket is not open")
        try:
            await ws.send(json.dumps(message))
        except (ConnectionClosed, OSError) as e:
            self._handle_close(f"send failed: {e}")
            raise NetworkError(f"WebSocket send failed: {e}") from e

    # =========================================================================
    # Incoming frames
    # =========================================================================

    async def _read_loop(self, ws) -> None:
        reason = "closed"
        try:
            async for raw in ws:
                await self._handle_message(raw)
        except ConnectionClosed as e:
            reason = f"closed ({e})"
        except (OSError, WebSocketException) as e:
            reason = f"error: {e}"
        finally:
            if self._ws is ws:
                self._handle_close(reason)

    async def _handle_message(self, raw) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            print("[VibeAgent] Ignoring non-JSON WebSocket frame", file=sys.stderr)
            return

        frame = parse_frame(message)
        if isinstance(frame, UpdateFrame):
            sub = self._subscriptions.get(frame.collection)
            if sub is None:
                return
            try:
                result = await self._policy.apply(frame.collection, frame.data, sub.filter)
                await deliver(sub.callback, result)
            except Exception as e:
                print(f"[VibeAgent] Update for '{frame.collection}' failed: {e}", file=sys.stderr)
        elif isinstance(frame, StatusFrame):
            detail = f" ({frame.reason})" if frame.reason else ""
            print(f"[VibeAgent] Subscription {frame.status}: {frame.collection}{detail}", file=sys.stderr)
        elif isinstance(frame, ErrorFrame):
            print(f"[VibeAgent] WebSocket error from server: {frame.error}", file=sys.stderr)
        else:
            print("[VibeAgent] Ignoring unknown WebSocket frame", file=sys.stderr)
