"""GRVT perpetual futures gateway.

Hybrid auth:
- Session: API key login on the edge host returns the ``gravity`` cookie and
  the ``X-Grvt-Account-Id`` header; both ride on every private REST call and
  on the WebSocket handshake.
- Orders: EIP-712 signature (``Order``/``OrderLeg``) from the signing key,
  embedded in the order payload. Cancels are session-authenticated.

Symbol format: BTC_USDT_Perp. Timestamps are unix nanoseconds.
"""
from __future__ import annotations
import logging
import re
import secrets
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from eth_account import Account
from eth_account.messages import encode_typed_data

from core.errors import ConfigurationError, UpstreamRejection
from core.types import (
    AccountSnapshot, Asset, CreateOrderParams, Depth, DepthLevel, ExchangeId, Kline,
    Order, OrderSide, OrderStatus, OrderType, Position, Ticker, TimeInForce,
)
from core.utils import as_bool, as_int, as_str, enum_value, fmt_decimal, time_now_ms
from exchanges.base import GatewayAdapter
from exchanges.gateway import BaseGateway, EventKind, Frame
from exchanges.symbol_map import from_grvt, to_grvt

log = logging.getLogger(__name__)

ENVIRONMENTS: Dict[str, Dict[str, Any]] = {
    "prod": {
        "edge": "https://edge.grvt.io",
        "trades": "https://trades.grvt.io",
        "market_data": "https://market-data.grvt.io",
        "ws": "wss://trades.grvt.io/ws/full",
        "chain_id": 325,
    },
    "testnet": {
        "edge": "https://edge.testnet.grvt.io",
        "trades": "https://trades.testnet.grvt.io",
        "market_data": "https://market-data.testnet.grvt.io",
        "ws": "wss://trades.testnet.grvt.io/ws/full",
        "chain_id": 326,
    },
}

PRICE_MULTIPLIER = 10 ** 9
ORDER_EXPIRY_S = 24 * 3600
SESSION_COOKIE = "gravity"
ACCOUNT_HEADER = "X-Grvt-Account-Id"

_STATUS_MAP = {
    "PENDING": OrderStatus.NEW.value,
    "OPEN": OrderStatus.NEW.value,
    "FILLED": OrderStatus.FILLED.value,
    "REJECTED": OrderStatus.REJECTED.value,
    "CANCELLED": OrderStatus.CANCELED.value,
}

_TIF_TO_GRVT = {
    TimeInForce.GTC.value: "GOOD_TILL_TIME",
    TimeInForce.GTX.value: "GOOD_TILL_TIME",
    TimeInForce.IOC.value: "IMMEDIATE_OR_CANCEL",
    TimeInForce.FOK.value: "FILL_OR_KILL",
}
_TIF_FROM_GRVT = {
    "GOOD_TILL_TIME": TimeInForce.GTC.value,
    "IMMEDIATE_OR_CANCEL": TimeInForce.IOC.value,
    "FILL_OR_KILL": TimeInForce.FOK.value,
}
# EIP-712 uint8 codes
_TIF_CODES = {
    "GOOD_TILL_TIME": 1,
    "ALL_OR_NONE": 2,
    "IMMEDIATE_OR_CANCEL": 3,
    "FILL_OR_KILL": 4,
}

EIP712_TYPES = {
    "Order": [
        {"name": "subAccountID", "type": "uint64"},
        {"name": "isMarket", "type": "bool"},
        {"name": "timeInForce", "type": "uint8"},
        {"name": "postOnly", "type": "bool"},
        {"name": "reduceOnly", "type": "bool"},
        {"name": "legs", "type": "OrderLeg[]"},
        {"name": "nonce", "type": "uint32"},
        {"name": "expiration", "type": "int64"},
    ],
    "OrderLeg": [
        {"name": "assetID", "type": "uint256"},
        {"name": "contractSize", "type": "uint64"},
        {"name": "limitPrice", "type": "uint64"},
        {"name": "isBuyingContract", "type": "bool"},
    ],
}

_INTERVAL = re.compile(r"^(\d+)([mhdw])$")
_CANDLE = re.compile(r"^CI_(\d+)_([MHDW])$")


def to_grvt_interval(interval: str) -> str:
    """1m -> CI_1_M, 4h -> CI_4_H"""
    m = _INTERVAL.match(interval)
    if not m:
        raise ValueError(f"unsupported kline interval: {interval!r}")
    return f"CI_{m.group(1)}_{m.group(2).upper()}"


def from_grvt_interval(code: str) -> str:
    """CI_1_M -> 1m"""
    m = _CANDLE.match(code)
    if not m:
        return code
    return f"{m.group(1)}{m.group(2).lower()}"


def ns_to_ms(value: Any) -> int:
    return as_int(value) // 1_000_000


@dataclass(frozen=True)
class GrvtCredentials:
    api_key: Optional[str] = field(default=None, repr=False)
    api_secret: Optional[str] = field(default=None, repr=False)
    sub_account_id: Optional[str] = None
    env: str = "prod"

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "GrvtCredentials":
        data = data or {}
        sub = data.get("sub_account_id") or data.get("subAccountId")
        return cls(
            api_key=data.get("api_key") or data.get("apiKey"),
            api_secret=data.get("api_secret") or data.get("apiSecret"),
            sub_account_id=str(sub) if sub is not None else None,
            env=(data.get("env") or "prod").lower(),
        )


# ── Normalization ─────────────────────────────────────────────────────

def order_from_grvt(o: Mapping[str, Any]) -> Order:
    leg = (o.get("legs") or [{}])[0]
    state = o.get("state") or {}
    metadata = o.get("metadata") or {}
    traded = as_str((state.get("traded_size") or ["0"])[0])
    avg = as_str((state.get("avg_fill_price") or ["0"])[0])
    order_type = OrderType.MARKET.value if as_bool(o.get("is_market")) else OrderType.LIMIT.value
    status = _STATUS_MAP.get(state.get("status"), as_str(state.get("status"), OrderStatus.NEW.value))
    if status == OrderStatus.NEW.value and Decimal(traded) > 0:
        status = OrderStatus.PARTIALLY_FILLED.value
    tif = _TIF_FROM_GRVT.get(o.get("time_in_force"))
    if as_bool(o.get("post_only")):
        tif = TimeInForce.GTX.value
    return Order(
        order_id=as_str(o.get("order_id"), ""),
        client_order_id=as_str(metadata.get("client_order_id"), ""),
        symbol=from_grvt(as_str(leg.get("instrument"), "")),
        side=OrderSide.BUY.value if as_bool(leg.get("is_buying_asset")) else OrderSide.SELL.value,
        type=order_type,
        status=status,
        price=as_str(leg.get("limit_price")),
        orig_qty=as_str(leg.get("size")),
        executed_qty=traded,
        avg_price=avg,
        time=ns_to_ms(metadata.get("create_time")),
        update_time=ns_to_ms(state.get("update_time")),
        reduce_only=as_bool(o.get("reduce_only")),
        time_in_force=tif,
        orig_type=order_type,
        working_type=order_type,
    )


def position_from_grvt(p: Mapping[str, Any]) -> Position:
    return Position(
        symbol=from_grvt(as_str(p.get("instrument"), "")),
        position_amt=as_str(p.get("size")),
        entry_price=as_str(p.get("entry_price")),
        mark_price=as_str(p.get("mark_price")),
        unrealized_profit=as_str(p.get("unrealized_pnl")),
        leverage=as_str(p.get("leverage")),
        update_time=ns_to_ms(p.get("event_time")),
    )


def account_from_grvt(summary: Mapping[str, Any], now: Optional[int] = None) -> AccountSnapshot:
    """account_summary -> AccountSnapshot. Cross margin only; GRVT does not
    gate deposits/withdrawals per API key, so the flags stay permissive."""
    equity = as_str(summary.get("total_equity"))
    unrealized = as_str(summary.get("unrealized_pnl"))
    available = as_str(summary.get("available_balance"))
    update_time = ns_to_ms(summary.get("event_time")) or (now if now is not None else time_now_ms())
    return AccountSnapshot(
        update_time=update_time,
        total_wallet_balance=as_str(summary.get("settle_balance") or summary.get("total_equity")),
        total_unrealized_profit=unrealized,
        total_margin_balance=equity,
        total_initial_margin=as_str(summary.get("initial_margin")),
        total_maint_margin=as_str(summary.get("maintenance_margin")),
        total_position_initial_margin=as_str(summary.get("initial_margin")),
        total_cross_wallet_balance=equity,
        total_cross_un_pnl=unrealized,
        available_balance=available,
        max_withdraw_amount=available,
        positions=[position_from_grvt(p) for p in summary.get("positions") or []],
        assets=[
            Asset(
                asset=as_str(b.get("currency"), ""),
                wallet_balance=as_str(b.get("balance")),
                available_balance=as_str(b.get("balance")),
                update_time=update_time,
            )
            for b in summary.get("spot_balances") or []
        ],
    )


def depth_from_grvt(feed: Mapping[str, Any]) -> Depth:
    def levels(rows):
        return [DepthLevel(as_str(r.get("price")), as_str(r.get("size"))) for r in rows or []]
    return Depth(
        symbol=from_grvt(as_str(feed.get("instrument"), "")),
        bids=levels(feed.get("bids")),
        asks=levels(feed.get("asks")),
        event_time=ns_to_ms(feed.get("event_time")),
    )


def ticker_from_grvt(feed: Mapping[str, Any]) -> Ticker:
    last = Decimal(as_str(feed.get("last_price")))
    open_ = Decimal(as_str(feed.get("open_price")))
    change = last - open_ if open_ else Decimal(0)
    pct = (change / open_ * 100) if open_ else Decimal(0)
    volume = Decimal(as_str(feed.get("buy_volume_24h_b"))) + Decimal(as_str(feed.get("sell_volume_24h_b")))
    quote = Decimal(as_str(feed.get("buy_volume_24h_q"))) + Decimal(as_str(feed.get("sell_volume_24h_q")))
    return Ticker(
        symbol=from_grvt(as_str(feed.get("instrument"), "")),
        last_price=as_str(feed.get("last_price")),
        open_price=as_str(feed.get("open_price")),
        high_price=as_str(feed.get("high_price")),
        low_price=as_str(feed.get("low_price")),
        volume=fmt_decimal(volume),
        quote_volume=fmt_decimal(quote),
        price_change=fmt_decimal(change),
        price_change_percent=fmt_decimal(pct.quantize(Decimal("0.001"))),
        event_time=ns_to_ms(feed.get("event_time")),
    )


def kline_from_grvt(feed: Mapping[str, Any], interval: str) -> Kline:
    close_time = ns_to_ms(feed.get("close_time"))
    return Kline(
        symbol=from_grvt(as_str(feed.get("instrument"), "")),
        interval=interval,
        open_time=ns_to_ms(feed.get("open_time")),
        close_time=close_time,
        open=as_str(feed.get("open")),
        high=as_str(feed.get("high")),
        low=as_str(feed.get("low")),
        close=as_str(feed.get("close")),
        volume=as_str(feed.get("volume_b")),
        quote_volume=as_str(feed.get("volume_q")),
        trades=as_int(feed.get("trades")),
        is_closed=0 < close_time <= time_now_ms(),
    )


# ── Gateway ───────────────────────────────────────────────────────────

class GrvtGateway(BaseGateway):
    name = "GrvtGateway"
    exchange = ExchangeId.GRVT.value

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        sub_account_id: Optional[str] = None,
        env: str = "prod",
        *,
        base_url: Optional[str] = None,
        ws_url: Optional[str] = None,
        **kwargs,
    ):
        if env not in ENVIRONMENTS:
            raise ConfigurationError(f"unknown GRVT env {env!r}", exchange=self.exchange,
                                     operation="init")
        self.urls = ENVIRONMENTS[env]
        super().__init__(base_url or self.urls["trades"], ws_url or self.urls["ws"], **kwargs)
        self.env = env
        self.api_key = api_key
        self.sub_account_id = sub_account_id
        self.signer = None
        if api_secret:
            try:
                self.signer = Account.from_key(api_secret)
            except Exception as e:
                raise ConfigurationError(
                    "invalid signing key", exchange=self.exchange, operation="init",
                ) from e
        self._cookie: Optional[str] = None
        self._account_id: Optional[str] = None
        self._instruments: Dict[str, Dict[str, Any]] = {}
        self._request_id = 0
        self._account: Optional[AccountSnapshot] = None
        self._open_orders: Dict[str, Order] = {}

    # --- Session ---

    def _require(self, operation: str, *, signer: bool = False) -> None:
        if not self.api_key:
            raise ConfigurationError("API key required", exchange=self.exchange,
                                     operation=operation)
        if not self.sub_account_id:
            raise ConfigurationError("sub account id required", exchange=self.exchange,
                                     operation=operation)
        if signer and self.signer is None:
            raise ConfigurationError("signing key required", exchange=self.exchange,
                                     operation=operation)

    async def _login(self) -> None:
        if self._cookie:
            return
        reply = await self._send("POST", f"{self.urls['edge']}/auth/api_key/login", "login",
                                 body={"api_key": self.api_key})
        if reply.status >= 400:
            code, message = self._error_details(reply.payload)
            raise UpstreamRejection(f"login failed: {message}", exchange=self.exchange,
                                    operation="login", status=reply.status, code=code)
        cookie = reply.cookies.get(SESSION_COOKIE)
        if not cookie:
            raise UpstreamRejection("login returned no session cookie",
                                    exchange=self.exchange, operation="login",
                                    status=reply.status)
        self._cookie = cookie
        self._account_id = reply.headers.get(ACCOUNT_HEADER.lower())
        log.info("[%s] Session established", self.name)

    def _auth_headers(self) -> Dict[str, str]:
        headers = {"Cookie": f"{SESSION_COOKIE}={self._cookie}"}
        if self._account_id:
            headers[ACCOUNT_HEADER] = self._account_id
        return headers

    async def _private(self, path: str, body: Dict[str, Any], operation: str) -> Any:
        await self._login()
        try:
            data = await self._request("POST", path, operation, body=body,
                                       headers=self._auth_headers())
        except UpstreamRejection as e:
            if e.status == 401:
                self._cookie = None  # expired session; next call logs in again
            raise
        return data.get("result") if isinstance(data, dict) else data

    def _check_payload(self, payload: Any, operation: str) -> None:
        if isinstance(payload, dict) and "result" not in payload and isinstance(payload.get("code"), int):
            raise UpstreamRejection(
                str(payload.get("message", payload)),
                exchange=self.exchange, operation=operation,
                status=as_int(payload.get("status")), code=payload["code"],
            )

    def _instrument_filter(self, symbol: str) -> Dict[str, Any]:
        parts = to_grvt(symbol).split("_")
        if len(parts) != 3:
            raise ValueError(f"cannot map {symbol!r} to a GRVT perpetual")
        return {"kind": ["PERPETUAL"], "base": [parts[0]], "quote": [parts[1]]}

    async def _instrument(self, symbol: str) -> Dict[str, Any]:
        name = to_grvt(symbol)
        if name not in self._instruments:
            data = await self._request("POST", f"{self.urls['market_data']}/full/v1/instrument",
                                       "instrument", body={"instrument": name})
            result = (data or {}).get("result") or {}
            if not result.get("instrument_hash"):
                raise UpstreamRejection(f"unknown instrument {name}", exchange=self.exchange,
                                        operation="instrument")
            self._instruments[name] = result
        return self._instruments[name]

    # --- Signing ---

    def sign_order(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """EIP-712 signature over an ``Order`` message."""
        if self.signer is None:
            raise ConfigurationError("signing key required", exchange=self.exchange,
                                     operation="sign")
        domain = {"name": "GRVT Exchange", "version": "0", "chainId": self.urls["chain_id"]}
        signable = encode_typed_data(domain_data=domain, message_types=EIP712_TYPES,
                                     message_data=message)
        signed = self.signer.sign_message(signable)
        return {
            "signer": self.signer.address,
            "r": f"0x{signed.r:064x}",
            "s": f"0x{signed.s:064x}",
            "v": signed.v,
            "expiration": str(message["expiration"]),
            "nonce": message["nonce"],
        }

    def build_order(self, params: CreateOrderParams, instrument: Mapping[str, Any]) -> Dict[str, Any]:
        order_type = enum_value(params.type)
        if order_type not in (OrderType.LIMIT.value, OrderType.MARKET.value):
            raise ValueError(f"GRVT supports LIMIT and MARKET orders, got {order_type}")
        is_market = order_type == OrderType.MARKET.value
        tif_in = enum_value(params.time_in_force) or (
            TimeInForce.IOC.value if is_market else TimeInForce.GTC.value)
        tif = _TIF_TO_GRVT.get(tif_in, "GOOD_TILL_TIME")
        post_only = tif_in == TimeInForce.GTX.value
        size = fmt_decimal(params.quantity) or "0"
        price = fmt_decimal(params.price) or "0"
        is_buy = enum_value(params.side) == OrderSide.BUY.value
        base_decimals = as_int(instrument.get("base_decimals"), 9)

        nonce = secrets.randbits(32)
        expiration = time.time_ns() + ORDER_EXPIRY_S * 1_000_000_000
        message = {
            "subAccountID": int(self.sub_account_id),
            "isMarket": is_market,
            "timeInForce": _TIF_CODES[tif],
            "postOnly": post_only,
            "reduceOnly": params.reduce_only,
            "legs": [{
                "assetID": int(instrument["instrument_hash"], 16),
                "contractSize": int(Decimal(size) * 10 ** base_decimals),
                "limitPrice": int(Decimal(price) * PRICE_MULTIPLIER),
                "isBuyingContract": is_buy,
            }],
            "nonce": nonce,
            "expiration": expiration,
        }
        client_order_id = params.client_order_id or str(secrets.randbits(63))
        return {
            "sub_account_id": str(self.sub_account_id),
            "is_market": is_market,
            "time_in_force": tif,
            "post_only": post_only,
            "reduce_only": params.reduce_only,
            "legs": [{
                "instrument": to_grvt(params.symbol),
                "size": size,
                "limit_price": None if is_market else price,
                "is_buying_asset": is_buy,
            }],
            "signature": self.sign_order(message),
            "metadata": {"client_order_id": client_order_id},
        }

    # --- REST ---

    async def get_account_info(self) -> AccountSnapshot:
        with self._operation("get_account_info"):
            self._require("get_account_info")
            result = await self._private("/full/v1/account_summary",
                                         {"sub_account_id": str(self.sub_account_id)},
                                         "get_account_info")
            self._account = account_from_grvt(result or {})
            return self._account

    async def get_open_orders(self, symbol: str) -> List[Order]:
        with self._operation("get_open_orders"):
            self._require("get_open_orders")
            body = {"sub_account_id": str(self.sub_account_id), **self._instrument_filter(symbol)}
            result = await self._private("/full/v1/open_orders", body, "get_open_orders")
            orders = [order_from_grvt(o) for o in result or []]
            for stale in [k for k, o in self._open_orders.items() if o.symbol == symbol]:
                del self._open_orders[stale]
            self._open_orders.update({o.order_id: o for o in orders})
            return orders

    async def create_order(self, params: CreateOrderParams) -> Order:
        with self._operation("create_order"):
            self._require("create_order", signer=True)
            instrument = await self._instrument(params.symbol)
            order = self.build_order(params, instrument)
            result = await self._private("/full/v1/create_order", {"order": order}, "create_order")
            created = order_from_grvt(result or order)
            log.info("[%s] Order placed: %s %s %s qty=%s px=%s -> %s", self.name,
                     created.side, created.symbol, created.type, created.orig_qty,
                     created.price, created.order_id)
            return created

    async def cancel_order(self, symbol: str, order_id: Union[int, str]) -> None:
        with self._operation("cancel_order"):
            self._require("cancel_order", signer=True)
            await self._private("/full/v1/cancel_order",
                                {"sub_account_id": str(self.sub_account_id),
                                 "order_id": str(order_id)},
                                "cancel_order")
            log.info("[%s] Order cancelled: %s", self.name, order_id)

    async def cancel_orders(self, symbol: str, order_id_list: Sequence[Union[int, str]]) -> None:
        # no batch endpoint; stop at the first failure
        with self._operation("cancel_orders"):
            self._require("cancel_orders", signer=True)
            for order_id in order_id_list:
                await self._private("/full/v1/cancel_order",
                                    {"sub_account_id": str(self.sub_account_id),
                                     "order_id": str(order_id)},
                                    "cancel_orders")

    async def cancel_all_orders(self, symbol: str) -> None:
        with self._operation("cancel_all_orders"):
            self._require("cancel_all_orders", signer=True)
            body = {"sub_account_id": str(self.sub_account_id), **self._instrument_filter(symbol)}
            await self._private("/full/v1/cancel_all_orders", body, "cancel_all_orders")

    # --- WebSocket ---

    async def _socket_url(self) -> str:
        if self.api_key:
            await self._login()
        return self.ws_url

    def _socket_options(self) -> Dict[str, Any]:
        if not self._cookie:
            return {}
        return {"additional_headers": self._auth_headers()}

    def _stream(self, kind: EventKind, symbol: Optional[str], interval: Optional[str]):
        if kind == EventKind.DEPTH:
            return "v1.book.s", f"{to_grvt(symbol)}@500-10"
        if kind == EventKind.TICKER:
            return "v1.ticker.s", f"{to_grvt(symbol)}@500"
        if kind == EventKind.KLINES:
            return "v1.candle", f"{to_grvt(symbol)}@{to_grvt_interval(interval)}-TRADE"
        if not self.sub_account_id:
            return None
        if kind == EventKind.ORDERS:
            return "v1.order", str(self.sub_account_id)
        return "v1.position", str(self.sub_account_id)

    def _validate_stream(self, kind: EventKind, symbol: Optional[str],
                         interval: Optional[str]) -> None:
        self._stream(kind, symbol, interval)

    def _subscription_message(self, kind: EventKind, symbol: Optional[str],
                              interval: Optional[str]) -> Optional[dict]:
        stream = self._stream(kind, symbol, interval)
        if stream is None:
            return None
        self._request_id += 1
        name, selector = stream
        return {"request_id": self._request_id, "stream": name, "feed": [selector],
                "method": "subscribe", "is_full": True}

    def _translate(self, message: Any) -> List[Frame]:
        if not isinstance(message, dict) or "feed" not in message:
            return []  # subscribe ack or error reply
        stream = message.get("stream")
        feed = message["feed"]
        if not isinstance(feed, dict):
            return []

        if stream == "v1.book.s":
            depth = depth_from_grvt(feed)
            return [(EventKind.DEPTH, depth.symbol, None, depth)]

        if stream == "v1.ticker.s":
            ticker = ticker_from_grvt(feed)
            return [(EventKind.TICKER, ticker.symbol, None, ticker)]

        if stream == "v1.candle":
            selector = as_str(message.get("selector"), "")
            code = selector.split("@", 1)[-1].rsplit("-", 1)[0]
            kline = kline_from_grvt(feed, from_grvt_interval(code))
            series = self._merge_kline(kline)
            return [(EventKind.KLINES, kline.symbol, kline.interval, series)]

        if stream == "v1.order":
            order = order_from_grvt(feed)
            if order.is_active:
                self._open_orders[order.order_id] = order
            else:
                self._open_orders.pop(order.order_id, None)
            return [(EventKind.ORDERS, None, None, list(self._open_orders.values()))]

        if stream == "v1.position":
            position = position_from_grvt(feed)
            snapshot = self._account or AccountSnapshot(update_time=time_now_ms())
            snapshot.positions = [p for p in snapshot.positions if p.symbol != position.symbol]
            snapshot.positions.append(position)
            snapshot.update_time = position.update_time or time_now_ms()
            self._account = snapshot
            return [(EventKind.ACCOUNT, None, None, snapshot)]

        log.debug("[%s] Ignoring stream %r", self.name, stream)
        return []


class GrvtExchangeAdapter(GatewayAdapter):
    id = ExchangeId.GRVT.value

    def __init__(self, symbol: str, credentials: Optional[GrvtCredentials] = None,
                 **gateway_options):
        credentials = credentials or GrvtCredentials()
        gateway = GrvtGateway(
            api_key=credentials.api_key,
            api_secret=credentials.api_secret,
            sub_account_id=credentials.sub_account_id,
            env=gateway_options.pop("env", None) or credentials.env,
            **gateway_options,
        )
        super().__init__(gateway, symbol)
