"""Shared gateway machinery: HTTP client, listener registry, WebSocket
connection state machine and inbound dispatch.

Each exchange gateway subclasses ``BaseGateway`` and supplies request
signing, payload normalization and frame translation. Everything here runs
on one asyncio loop; no locking beyond the init lock is needed.

Connection states::

    disconnected -> connecting -> connected -> reconnect-scheduled -> connecting
    any state    -> disconnected   (destroy)
"""
from __future__ import annotations
import asyncio
import inspect
import logging
from contextlib import contextmanager, suppress
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

import aiohttp
import orjson
import websockets
from websockets.exceptions import WebSocketException

from core.config import RECONNECT_DELAY_S, REQUEST_TIMEOUT_S
from core.errors import GatewayError, ParseError, TransportError, UpstreamRejection
from core.types import Kline

log = logging.getLogger(__name__)

Listener = Callable[[Any], Any]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECT_SCHEDULED = "reconnect-scheduled"


class EventKind(str, Enum):
    ACCOUNT = "account"
    ORDERS = "orders"
    DEPTH = "depth"
    TICKER = "ticker"
    KLINES = "klines"


# (kind, symbol, interval, canonical payload)
Frame = Tuple[EventKind, Optional[str], Optional[str], Any]

KLINE_HISTORY = 500


def listener_key(kind: EventKind, symbol: Optional[str] = None,
                 interval: Optional[str] = None) -> str:
    """Registry key: global for account/orders, per symbol for depth/ticker,
    per symbol+interval for klines."""
    if kind in (EventKind.ACCOUNT, EventKind.ORDERS):
        return kind.value
    if not symbol:
        raise ValueError(f"{kind.value} listeners need a symbol")
    if kind == EventKind.KLINES:
        if not interval:
            raise ValueError("klines listeners need an interval")
        return f"{kind.value}:{symbol}_{interval}"
    return f"{kind.value}:{symbol}"


class ListenerRegistry:
    """Event key -> ordered set of callbacks. Owned by a single gateway."""

    def __init__(self) -> None:
        self._listeners: Dict[str, Dict[Listener, None]] = {}

    def add(self, key: str, callback: Listener) -> bool:
        """Register; returns False when the callback was already present."""
        bucket = self._listeners.setdefault(key, {})
        if callback in bucket:
            return False
        bucket[callback] = None
        return True

    def remove(self, key: str, callback: Listener) -> bool:
        bucket = self._listeners.get(key)
        if not bucket or callback not in bucket:
            return False
        del bucket[callback]
        if not bucket:
            del self._listeners[key]
        return True

    def contains(self, key: str, callback: Listener) -> bool:
        return callback in self._listeners.get(key, {})

    def get(self, key: str) -> List[Listener]:
        # snapshot, so listeners may (un)subscribe while being called
        return list(self._listeners.get(key, ()))

    def keys(self) -> List[str]:
        return list(self._listeners)

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return sum(len(b) for b in self._listeners.values())


@dataclass(frozen=True)
class Subscription:
    """Registration token returned by ``on_*``/``subscribe_*``."""
    key: str
    callback: Listener
    _registry: ListenerRegistry = field(repr=False, compare=False)

    @property
    def active(self) -> bool:
        return self._registry.contains(self.key, self.callback)

    def unsubscribe(self) -> bool:
        return self._registry.remove(self.key, self.callback)


@dataclass(slots=True)
class HttpReply:
    status: int
    payload: Any
    headers: Dict[str, str] = field(default_factory=dict)
    cookies: Dict[str, str] = field(default_factory=dict)


class BaseGateway:
    """Owns the HTTP client, the WebSocket handle, the reconnect timer and the
    listener registry for one exchange."""

    name = "Gateway"
    exchange = ""

    def __init__(
        self,
        base_url: str,
        ws_url: str,
        *,
        request_timeout_s: float = REQUEST_TIMEOUT_S,
        reconnect_delay_s: float = RECONNECT_DELAY_S,
    ):
        self.base_url = base_url.rstrip("/")
        self.ws_url = ws_url
        self.timeout = aiohttp.ClientTimeout(total=request_timeout_s)
        self.headers = {"Content-Type": "application/json"}
        self.reconnect_delay_s = reconnect_delay_s

        self._session: Optional[aiohttp.ClientSession] = None
        self._ws = None
        self._ws_task: Optional[asyncio.Task] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._state = ConnectionState.DISCONNECTED
        self._initialized = False
        self._destroyed = False
        self._init_lock = asyncio.Lock()
        self._listeners = ListenerRegistry()
        self._callback_tasks: set = set()
        self._klines: Dict[Tuple[str, str], List[Kline]] = {}

    # --- State ---

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    # --- HTTP ---

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout, headers=self.headers)
        return self._session

    async def _send(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        body: Any = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> HttpReply:
        """Perform one HTTP call. Transport failures become ``TransportError``;
        the status code is not checked here."""
        if self._destroyed:
            raise TransportError(f"{method} {path}: gateway destroyed",
                                 exchange=self.exchange, operation=operation)
        session = await self._get_session()
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        data = orjson.dumps(body) if body is not None else None
        try:
            async with session.request(method, url, params=params, data=data,
                                       headers=headers) as resp:
                raw = await resp.read()
                status = resp.status
                resp_headers = {k.lower(): v for k, v in resp.headers.items()}
                cookies = {k: m.value for k, m in resp.cookies.items()}
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"{method} {path} timed out after {self.timeout.total}s",
                exchange=self.exchange, operation=operation,
            ) from e
        except aiohttp.ClientError as e:
            raise TransportError(
                f"{method} {path}: {e}", exchange=self.exchange, operation=operation,
            ) from e

        try:
            payload = orjson.loads(raw) if raw else None
        except orjson.JSONDecodeError:
            payload = raw.decode(errors="replace")
        return HttpReply(status=status, payload=payload, headers=resp_headers, cookies=cookies)

    async def _request(self, method: str, path: str, operation: str, **kwargs) -> Any:
        reply = await self._send(method, path, operation, **kwargs)
        if reply.status >= 400:
            code, message = self._error_details(reply.payload)
            raise UpstreamRejection(
                f"HTTP {reply.status}: {message}",
                exchange=self.exchange, operation=operation,
                status=reply.status, code=code,
            )
        self._check_payload(reply.payload, operation)
        return reply.payload

    def _error_details(self, payload: Any) -> Tuple[Optional[int], str]:
        """Extract (code, message) from an error body."""
        if isinstance(payload, dict):
            code = payload.get("code")
            msg = payload.get("msg") or payload.get("message") or payload.get("error")
            return (code if isinstance(code, int) else None), str(msg or payload)
        return None, str(payload)

    def _check_payload(self, payload: Any, operation: str) -> None:
        """Raise ``UpstreamRejection`` for error envelopes sent with HTTP 200."""

    @contextmanager
    def _operation(self, operation: str) -> Iterator[None]:
        try:
            yield
        except Exception as e:
            log.error("[%s] %s failed: %s", self.name, operation, e)
            raise

    async def close_http(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    # --- Readiness ---

    async def get_account_info(self):
        raise NotImplementedError

    async def ensure_initialized(self, symbol: Optional[str] = None) -> None:
        """One account fetch as connectivity+auth probe; no-op once ready.

        On failure the error propagates and the gateway stays not-ready.
        """
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            try:
                await self.get_account_info()
            except Exception as e:
                log.error("[%s] Initialization failed: %s", self.name, e)
                raise
            self._initialized = True
            log.info("[%s] Initialized successfully for %s", self.name, symbol)

    # --- Listener registration ---

    def _register(self, kind: EventKind, callback: Listener,
                  symbol: Optional[str] = None, interval: Optional[str] = None) -> Subscription:
        key = listener_key(kind, symbol, interval)
        is_new_key = key not in self._listeners.keys()
        if is_new_key:
            self._validate_stream(kind, symbol, interval)
        self._listeners.add(key, callback)
        if is_new_key:
            self._on_new_key(kind, symbol, interval)
        self._ensure_connection()
        return Subscription(key, callback, self._listeners)

    def _validate_stream(self, kind: EventKind, symbol: Optional[str],
                         interval: Optional[str]) -> None:
        """Raise ``ValueError`` if the exchange cannot stream this key."""

    def on_account(self, callback: Listener) -> Subscription:
        """Listener receives a normalized ``AccountSnapshot`` per update."""
        return self._register(EventKind.ACCOUNT, callback)

    def on_orders(self, callback: Listener) -> Subscription:
        """Listener receives the full list of open ``Order`` objects."""
        return self._register(EventKind.ORDERS, callback)

    def on_depth(self, symbol: str, callback: Listener) -> Subscription:
        """Listener receives a normalized ``Depth``, not the raw frame."""
        return self._register(EventKind.DEPTH, callback, symbol)

    def on_ticker(self, symbol: str, callback: Listener) -> Subscription:
        """Listener receives a normalized ``Ticker``."""
        return self._register(EventKind.TICKER, callback, symbol)

    def on_klines(self, symbol: str, interval: str, callback: Listener) -> Subscription:
        """Listener receives the bounded ``Kline`` series for (symbol, interval),
        oldest first. Unsupported intervals raise ``ValueError`` here."""
        return self._register(EventKind.KLINES, callback, symbol, interval)

    def _registered_streams(self) -> List[Tuple[EventKind, Optional[str], Optional[str]]]:
        """Decode registry keys back into (kind, symbol, interval)."""
        streams = []
        for key in self._listeners.keys():
            kind_s, _, rest = key.partition(":")
            kind = EventKind(kind_s)
            if kind == EventKind.KLINES:
                symbol, _, interval = rest.rpartition("_")
                streams.append((kind, symbol, interval))
            else:
                streams.append((kind, rest or None, None))
        return streams

    # --- WebSocket lifecycle ---

    async def connect(self) -> None:
        """Open the WebSocket if it is not already open or pending."""
        if self._destroyed or self._state != ConnectionState.DISCONNECTED:
            return
        self._connect()

    def _ensure_connection(self) -> None:
        if self._destroyed or self._state != ConnectionState.DISCONNECTED:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            log.debug("[%s] No running loop; WebSocket deferred until connect()", self.name)
            return
        self._connect()

    def _connect(self) -> None:
        if self._destroyed:
            return
        self._state = ConnectionState.CONNECTING
        self._ws_task = asyncio.get_running_loop().create_task(self._run_socket())

    async def _run_socket(self) -> None:
        try:
            url = await self._socket_url()
            async with websockets.connect(
                url,
                ping_interval=20,
                ping_timeout=10,
                max_size=10 * 1024 * 1024,
                **self._socket_options(),
            ) as ws:
                self._ws = ws
                self._handle_open()
                await self._send_subscriptions(ws)
                async for raw in ws:
                    self._handle_message(raw)
            log.info("[%s] WebSocket disconnected", self.name)
        except (WebSocketException, OSError, asyncio.TimeoutError, GatewayError) as e:
            log.error("[%s] WebSocket error: %s", self.name, e)
        except Exception:
            log.exception("[%s] WebSocket task failed", self.name)
        finally:
            self._ws = None
        self._schedule_reconnect()

    async def _socket_url(self) -> str:
        return self.ws_url

    def _socket_options(self) -> Dict[str, Any]:
        return {}

    def _handle_open(self) -> None:
        self._state = ConnectionState.CONNECTED
        if not self._initialized:
            self._initialized = True
        log.info("[%s] WebSocket connected", self.name)

    async def _send_subscriptions(self, ws) -> None:
        for kind, symbol, interval in self._registered_streams():
            msg = self._subscription_message(kind, symbol, interval)
            if msg is not None:
                await ws.send(orjson.dumps(msg).decode())

    def _subscription_message(self, kind: EventKind, symbol: Optional[str],
                              interval: Optional[str]) -> Optional[dict]:
        """Exchange-specific subscribe request for one key, or None."""
        return None

    def _on_new_key(self, kind: EventKind, symbol: Optional[str], interval: Optional[str]) -> None:
        if self._ws is None or self._state != ConnectionState.CONNECTED:
            return
        msg = self._subscription_message(kind, symbol, interval)
        if msg is None:
            return
        task = asyncio.get_running_loop().create_task(self._ws.send(orjson.dumps(msg).decode()))
        self._track(task)

    def _schedule_reconnect(self) -> None:
        if self._destroyed:
            self._state = ConnectionState.DISCONNECTED
            return
        if self._reconnect_handle is not None:
            return
        self._state = ConnectionState.RECONNECT_SCHEDULED
        log.info("[%s] Reconnecting in %ss", self.name, self.reconnect_delay_s)
        self._reconnect_handle = asyncio.get_running_loop().call_later(
            self.reconnect_delay_s, self._on_reconnect_due,
        )

    def _on_reconnect_due(self) -> None:
        self._reconnect_handle = None
        if self._destroyed:
            return
        self._connect()

    # --- Inbound dispatch ---

    def _decode_frame(self, raw) -> Any:
        try:
            return orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            raise ParseError(f"malformed frame: {e}", exchange=self.exchange,
                             operation="ws") from e

    def _handle_message(self, raw) -> None:
        if self._destroyed:
            return
        try:
            message = self._decode_frame(raw)
            frames = self._translate(message)
        except ParseError as e:
            log.warning("[%s] Failed to parse WebSocket message: %s", self.name, e)
            return
        except Exception:
            log.exception("[%s] Dropping unreadable WebSocket message", self.name)
            return
        for kind, symbol, interval, data in frames:
            self._dispatch(kind, data, symbol, interval)

    def _translate(self, message: Any) -> List[Frame]:
        """Turn one decoded exchange frame into canonical frames."""
        raise NotImplementedError

    def _merge_kline(self, kline: Kline) -> List[Kline]:
        """Update the bounded series for (symbol, interval); returns a copy."""
        series = self._klines.setdefault((kline.symbol, kline.interval), [])
        if series and series[-1].open_time == kline.open_time:
            series[-1] = kline
        elif not series or kline.open_time > series[-1].open_time:
            series.append(kline)
            del series[:-KLINE_HISTORY]
        return list(series)

    def _dispatch(self, kind: EventKind, data: Any, symbol: Optional[str] = None,
                  interval: Optional[str] = None) -> None:
        if self._destroyed:
            return
        try:
            key = listener_key(kind, symbol, interval)
        except ValueError as e:
            log.warning("[%s] Dropping %s frame: %s", self.name, kind.value, e)
            return
        for callback in self._listeners.get(key):
            try:
                result = callback(data)
                if inspect.isawaitable(result):
                    self._track(asyncio.ensure_future(result))
            except Exception:
                log.exception("[%s] %s callback error", self.name, kind.value.capitalize())

    def _track(self, task: asyncio.Future) -> None:
        self._callback_tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Future) -> None:
        self._callback_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("[%s] Background task failed: %s", self.name, task.exception())

    # --- Teardown ---

    async def _on_destroy(self) -> None:
        """Release exchange-specific resources."""

    async def destroy(self) -> None:
        """Idempotent teardown: cancel the reconnect timer, close the socket
        and HTTP session, clear readiness. Permanent for this instance."""
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
        already = self._destroyed
        self._destroyed = True
        self._initialized = False
        self._state = ConnectionState.DISCONNECTED

        ws, self._ws = self._ws, None
        task, self._ws_task = self._ws_task, None
        if ws is not None:
            await ws.close()
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        for pending in list(self._callback_tasks):
            pending.cancel()
        await self._on_destroy()
        await self.close_http()
        if not already:
            log.info("[%s] Destroyed", self.name)
