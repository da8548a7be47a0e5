"""AsterDex perpetual futures gateway (Binance-futures-compatible API).

Key points:
- Auth: X-MBX-APIKEY header + HMAC-SHA256 signature as query param
- Cancel: DELETE method; batch cancel takes a JSON-encoded id list
- WS: one connection; with credentials it is the listenKey user stream,
  market streams are added on top with SUBSCRIBE messages
- listenKey refreshed every 30 min via REST
"""
from __future__ import annotations
import asyncio
import hashlib
import hmac
import logging
import time
import urllib.parse
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import orjson

from core.errors import ConfigurationError, UpstreamRejection
from core.types import (
    AccountSnapshot, CreateOrderParams, ExchangeId, Order, OrderStatus,
    OrderType, TimeInForce,
)
from core.utils import as_int, enum_value, fmt_decimal
from exchanges.base import GatewayAdapter
from exchanges.gateway import BaseGateway, EventKind, Frame
from exchanges.normalize import (
    account_from_dict, depth_from_dict, kline_from_dict, merge_account_update,
    order_from_dict, order_from_stream, ticker_from_dict,
)
from exchanges.symbol_map import to_aster_stream

log = logging.getLogger(__name__)

BASE_URL = "https://fapi.asterdex.com"
WS_URL = "wss://fstream.asterdex.com/ws"
RECV_WINDOW = 5000
LISTEN_KEY_REFRESH_S = 30 * 60  # 30 minutes
DEPTH_LEVELS = 10

_TERMINAL_STATUSES = {
    OrderStatus.FILLED.value,
    OrderStatus.CANCELED.value,
    OrderStatus.REJECTED.value,
    OrderStatus.EXPIRED.value,
}

_PRICED_TYPES = {OrderType.LIMIT.value, OrderType.STOP.value, OrderType.TAKE_PROFIT.value}


@dataclass(frozen=True)
class AsterCredentials:
    api_key: Optional[str] = None
    api_secret: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "AsterCredentials":
        data = data or {}
        return cls(
            api_key=data.get("api_key") or data.get("apiKey"),
            api_secret=data.get("api_secret") or data.get("apiSecret"),
        )


def build_order_params(params: CreateOrderParams) -> Dict[str, str]:
    """Canonical order request -> Aster query parameters."""
    order_type = enum_value(params.type)
    out: Dict[str, str] = {
        "symbol": params.symbol,
        "side": enum_value(params.side),
        "type": order_type,
    }
    optional = {
        "quantity": fmt_decimal(params.quantity),
        "price": fmt_decimal(params.price),
        "stopPrice": fmt_decimal(params.stop_price),
        "activationPrice": fmt_decimal(params.activation_price),
        "callbackRate": fmt_decimal(params.callback_rate),
        "newClientOrderId": params.client_order_id or None,
    }
    out.update({k: v for k, v in optional.items() if v is not None})
    tif = enum_value(params.time_in_force)
    if tif is None and order_type in _PRICED_TYPES:
        tif = TimeInForce.GTC.value
    if tif is not None:
        out["timeInForce"] = tif
    if params.reduce_only:
        out["reduceOnly"] = "true"
    if params.close_position:
        out["closePosition"] = "true"
        out.pop("quantity", None)
    return out


class AsterGateway(BaseGateway):
    name = "AsterGateway"
    exchange = ExchangeId.ASTER.value

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        *,
        base_url: str = BASE_URL,
        ws_url: str = WS_URL,
        **kwargs,
    ):
        super().__init__(base_url, ws_url, **kwargs)
        self.api_key = api_key
        self.api_secret = api_secret
        self._listen_key = ""
        self._keepalive_task: Optional[asyncio.Task] = None
        self._request_id = 0
        self._account: Optional[AccountSnapshot] = None
        self._open_orders: Dict[str, Order] = {}

    # --- Authentication ---

    def _require_credentials(self, operation: str) -> None:
        if not self.api_key or not self.api_secret:
            raise ConfigurationError(
                "API key and secret required for signed requests",
                exchange=self.exchange, operation=operation,
            )

    def _sign(self, params: dict) -> str:
        """HMAC-SHA256 signature over query string."""
        query = urllib.parse.urlencode(params)
        return hmac.new(
            self.api_secret.encode(),
            query.encode(),
            hashlib.sha256,
        ).hexdigest()

    def _auth_headers(self) -> Dict[str, str]:
        return {"X-MBX-APIKEY": self.api_key or ""}

    def _signed_params(self, params: dict) -> dict:
        """Add timestamp and signature to params."""
        params["timestamp"] = str(int(time.time() * 1000))
        params["recvWindow"] = str(RECV_WINDOW)
        params["signature"] = self._sign(params)
        return params

    async def _signed_request(self, method: str, path: str, operation: str,
                              params: Optional[dict] = None) -> Any:
        self._require_credentials(operation)
        signed = self._signed_params(dict(params or {}))
        return await self._request(method, path, operation, params=signed,
                                   headers=self._auth_headers())

    def _check_payload(self, payload: Any, operation: str) -> None:
        if not isinstance(payload, dict):
            return
        code = payload.get("code")
        if isinstance(code, int) and code != 200 and "msg" in payload:
            raise UpstreamRejection(
                str(payload["msg"]), exchange=self.exchange, operation=operation, code=code,
            )

    # --- REST ---

    async def get_account_info(self) -> AccountSnapshot:
        with self._operation("get_account_info"):
            data = await self._signed_request("GET", "/fapi/v2/account", "get_account_info")
            self._account = account_from_dict(data)
            return self._account

    async def get_open_orders(self, symbol: str) -> List[Order]:
        with self._operation("get_open_orders"):
            data = await self._signed_request("GET", "/fapi/v1/openOrders", "get_open_orders",
                                              {"symbol": symbol})
            orders = [order_from_dict(o) for o in data or []]
            for stale in [k for k, o in self._open_orders.items() if o.symbol == symbol]:
                del self._open_orders[stale]
            self._open_orders.update({o.order_id: o for o in orders})
            return orders

    async def create_order(self, params: CreateOrderParams) -> Order:
        with self._operation("create_order"):
            query = build_order_params(params)
            data = await self._signed_request("POST", "/fapi/v1/order", "create_order", query)
            order = order_from_dict(data or {})
            log.info("[%s] Order placed: %s %s %s qty=%s px=%s -> %s", self.name,
                     order.side, order.symbol, order.type, order.orig_qty, order.price,
                     order.order_id)
            return order

    async def cancel_order(self, symbol: str, order_id: Union[int, str]) -> None:
        with self._operation("cancel_order"):
            await self._signed_request("DELETE", "/fapi/v1/order", "cancel_order",
                                       {"symbol": symbol, "orderId": str(order_id)})
            log.info("[%s] Order cancelled: %s", self.name, order_id)

    async def cancel_orders(self, symbol: str, order_id_list: Sequence[Union[int, str]]) -> None:
        with self._operation("cancel_orders"):
            ids = [as_int(i, 0) if str(i).isdigit() else i for i in order_id_list]
            data = await self._signed_request(
                "DELETE", "/fapi/v1/batchOrders", "cancel_orders",
                {"symbol": symbol, "orderIdList": orjson.dumps(ids).decode()},
            )
            # batch endpoint reports per-order failures inline
            for item in data or []:
                if isinstance(item, dict) and item.get("code") not in (None, 200):
                    log.warning("[%s] Batch cancel item rejected: %s", self.name, item.get("msg"))

    async def cancel_all_orders(self, symbol: str) -> None:
        with self._operation("cancel_all_orders"):
            await self._signed_request("DELETE", "/fapi/v1/allOpenOrders", "cancel_all_orders",
                                       {"symbol": symbol})

    # --- User data stream ---

    async def _create_listen_key(self) -> str:
        self._require_credentials("listen_key")
        data = await self._request("POST", "/fapi/v1/listenKey", "listen_key",
                                   headers=self._auth_headers())
        return (data or {}).get("listenKey", "")

    async def _key_refresh_loop(self) -> None:
        """Keep the listenKey alive via PUT every 30 minutes."""
        while not self.is_destroyed:
            await asyncio.sleep(LISTEN_KEY_REFRESH_S)
            try:
                await self._request("PUT", "/fapi/v1/listenKey", "listen_key",
                                    headers=self._auth_headers())
                log.debug("[%s] listenKey refreshed", self.name)
            except Exception as e:
                log.warning("[%s] listenKey refresh failed: %s", self.name, e)

    async def _socket_url(self) -> str:
        if not (self.api_key and self.api_secret):
            return self.ws_url
        self._listen_key = await self._create_listen_key()
        if self._keepalive_task is None or self._keepalive_task.done():
            self._keepalive_task = asyncio.get_running_loop().create_task(self._key_refresh_loop())
        return f"{self.ws_url}/{self._listen_key}"

    async def _on_destroy(self) -> None:
        task, self._keepalive_task = self._keepalive_task, None
        if task is not None and not task.done():
            task.cancel()

    # --- WebSocket ---

    def _stream_name(self, kind: EventKind, symbol: Optional[str],
                     interval: Optional[str]) -> Optional[str]:
        if kind == EventKind.DEPTH:
            return f"{to_aster_stream(symbol)}@depth{DEPTH_LEVELS}@100ms"
        if kind == EventKind.TICKER:
            return f"{to_aster_stream(symbol)}@ticker"
        if kind == EventKind.KLINES:
            return f"{to_aster_stream(symbol)}@kline_{interval}"
        return None  # account/orders arrive on the listenKey stream

    def _subscription_message(self, kind: EventKind, symbol: Optional[str],
                              interval: Optional[str]) -> Optional[dict]:
        stream = self._stream_name(kind, symbol, interval)
        if stream is None:
            return None
        self._request_id += 1
        return {"method": "SUBSCRIBE", "params": [stream], "id": self._request_id}

    def _translate(self, message: Any) -> List[Frame]:
        if not isinstance(message, dict):
            return []
        if "stream" in message and isinstance(message.get("data"), dict):
            message = message["data"]
        event = message.get("e")
        if event is None:
            return []  # subscription ack {"result": null, "id": n}
        event_time = as_int(message.get("E"))

        if event == "depthUpdate":
            depth = depth_from_dict(message)
            return [(EventKind.DEPTH, depth.symbol, None, depth)]

        if event == "24hrTicker":
            ticker = ticker_from_dict(message)
            return [(EventKind.TICKER, ticker.symbol, None, ticker)]

        if event == "kline":
            k = message.get("k") or {}
            kline = kline_from_dict(k, message.get("s", ""))
            series = self._merge_kline(kline)
            return [(EventKind.KLINES, kline.symbol, kline.interval, series)]

        if event == "ACCOUNT_UPDATE":
            snapshot = self._account or AccountSnapshot(update_time=event_time)
            self._account = merge_account_update(snapshot, message.get("a") or {}, event_time)
            return [(EventKind.ACCOUNT, None, None, self._account)]

        if event == "ORDER_TRADE_UPDATE":
            order = order_from_stream(message.get("o") or {}, event_time)
            if order.status in _TERMINAL_STATUSES:
                self._open_orders.pop(order.order_id, None)
            else:
                self._open_orders[order.order_id] = order
            return [(EventKind.ORDERS, None, None, list(self._open_orders.values()))]

        if event == "listenKeyExpired":
            log.warning("[%s] listenKey expired; forcing reconnect", self.name)
            if self._ws is not None:
                self._track(asyncio.get_running_loop().create_task(self._ws.close()))
            return []

        log.debug("[%s] Ignoring event %r", self.name, event)
        return []


class AsterExchangeAdapter(GatewayAdapter):
    id = ExchangeId.ASTER.value

    def __init__(self, symbol: str, credentials: Optional[AsterCredentials] = None,
                 **gateway_options):
        credentials = credentials or AsterCredentials()
        gateway = AsterGateway(
            api_key=credentials.api_key,
            api_secret=credentials.api_secret,
            **gateway_options,
        )
        super().__init__(gateway, symbol)
