"""Hyperliquid gateway and adapter.

REST: JSON over HTTPS; every write is signed with the wallet key (EIP-191
personal-sign over the compact JSON body) and the signature is appended to
the body as ``signature``.
WS: one connection; inbound frames are ``{type, symbol?, interval?, data}``
with ``data`` in the Binance-style field layout handled by ``normalize``.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import orjson
from eth_account import Account
from eth_account.messages import encode_defunct

from core.errors import ConfigurationError, UpstreamRejection
from core.types import (
    AccountSnapshot, CreateOrderParams, ExchangeId, Order, OrderStatus,
)
from core.utils import enum_value, fmt_decimal, time_now_ms
from exchanges.base import GatewayAdapter
from exchanges.gateway import BaseGateway, EventKind, Frame
from exchanges.normalize import (
    account_from_dict, depth_from_dict, klines_from_list, kline_from_dict,
    order_from_dict, ticker_from_dict,
)

log = logging.getLogger(__name__)

BASE_URL = "https://api.hyperliquid.xyz"
WS_URL = "wss://api.hyperliquid.xyz/ws"


@dataclass(frozen=True)
class HyperliquidCredentials:
    wallet_address: Optional[str] = None
    private_key: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "HyperliquidCredentials":
        data = data or {}
        return cls(
            wallet_address=data.get("wallet_address") or data.get("walletAddress"),
            private_key=data.get("private_key") or data.get("privateKey"),
        )


def canonical_json(data: Mapping[str, Any]) -> str:
    """Compact, insertion-ordered JSON with ``None`` fields dropped."""
    return orjson.dumps({k: v for k, v in data.items() if v is not None}).decode()


class HyperliquidGateway(BaseGateway):
    name = "HyperliquidGateway"
    exchange = ExchangeId.HYPERLIQUID.value

    def __init__(
        self,
        wallet_address: Optional[str] = None,
        private_key: Optional[str] = None,
        *,
        base_url: str = BASE_URL,
        ws_url: str = WS_URL,
        **kwargs,
    ):
        super().__init__(base_url, ws_url, **kwargs)
        self.wallet = None
        if private_key:
            try:
                self.wallet = Account.from_key(private_key)
            except Exception as e:
                raise ConfigurationError(
                    "invalid private key", exchange=self.exchange, operation="init",
                ) from e
        self._wallet_address = wallet_address

    @property
    def wallet_address(self) -> Optional[str]:
        if self._wallet_address:
            return self._wallet_address
        return self.wallet.address if self.wallet is not None else None

    # --- Signing ---

    def sign_request(self, data: Mapping[str, Any], operation: str = "sign") -> str:
        if self.wallet is None:
            raise ConfigurationError(
                "Wallet not initialized - private key required for signing",
                exchange=self.exchange, operation=operation,
            )
        signed = self.wallet.sign_message(encode_defunct(text=canonical_json(data)))
        return "0x" + bytes(signed.signature).hex()

    async def _signed_post(self, path: str, data: Dict[str, Any], operation: str) -> Any:
        payload = {k: v for k, v in data.items() if v is not None}
        signature = self.sign_request(payload, operation)
        return await self._request("POST", path, operation, body={**payload, "signature": signature})

    def _check_payload(self, payload: Any, operation: str) -> None:
        if isinstance(payload, dict) and payload.get("status") == "err":
            raise UpstreamRejection(
                str(payload.get("response") or payload),
                exchange=self.exchange, operation=operation,
            )

    # --- REST ---

    async def get_account_info(self) -> AccountSnapshot:
        with self._operation("get_account_info"):
            params = {"user": self.wallet_address} if self.wallet_address else None
            data = await self._request("GET", "/info", "get_account_info", params=params)
            return account_from_dict(data if isinstance(data, dict) else {}, now=time_now_ms())

    async def get_open_orders(self, symbol: str) -> List[Order]:
        with self._operation("get_open_orders"):
            data = await self._request("GET", "/orders", "get_open_orders",
                                       params={"symbol": symbol})
            return [order_from_dict(o) for o in data or []]

    async def create_order(self, params: CreateOrderParams) -> Order:
        with self._operation("create_order"):
            order_type = enum_value(params.type)
            order_data = {
                "symbol": params.symbol,
                "side": enum_value(params.side),
                "type": order_type,
                "quantity": fmt_decimal(params.quantity),
                "price": fmt_decimal(params.price),
                "stopPrice": fmt_decimal(params.stop_price),
                "activationPrice": fmt_decimal(params.activation_price),
                "callbackRate": fmt_decimal(params.callback_rate),
                "timeInForce": enum_value(params.time_in_force),
                "reduceOnly": params.reduce_only,
                "closePosition": params.close_position,
                "clientOrderId": params.client_order_id or None,
            }
            response = await self._signed_post("/order", order_data, "create_order")
            if not isinstance(response, dict):
                response = {}
            now = time_now_ms()
            order = Order(
                order_id=str(response.get("orderId") or response.get("id") or ""),
                client_order_id=str(response.get("clientOrderId") or params.client_order_id or ""),
                symbol=params.symbol,
                side=order_data["side"],
                type=order_type,
                status=str(response.get("status") or OrderStatus.NEW.value),
                price=order_data["price"] or "0",
                orig_qty=order_data["quantity"] or "0",
                executed_qty="0",
                stop_price=order_data["stopPrice"] or "0",
                time=now,
                update_time=now,
                reduce_only=params.reduce_only,
                close_position=params.close_position,
                time_in_force=order_data["timeInForce"],
                orig_type=order_type,
                working_type=order_type,
                activation_price=order_data["activationPrice"],
                price_rate=order_data["callbackRate"],
            )
            log.info("[%s] Order placed: %s %s %s qty=%s px=%s -> %s", self.name,
                     order.side, order.symbol, order_type, order.orig_qty, order.price,
                     order.order_id)
            return order

    async def cancel_order(self, symbol: str, order_id: Union[int, str]) -> None:
        with self._operation("cancel_order"):
            await self._signed_post("/cancel-order", {"symbol": symbol, "orderId": order_id},
                                    "cancel_order")
            log.info("[%s] Order cancelled: %s", self.name, order_id)

    async def cancel_orders(self, symbol: str, order_id_list: Sequence[Union[int, str]]) -> None:
        with self._operation("cancel_orders"):
            await self._signed_post("/cancel-orders",
                                    {"symbol": symbol, "orderIdList": list(order_id_list)},
                                    "cancel_orders")

    async def cancel_all_orders(self, symbol: str) -> None:
        with self._operation("cancel_all_orders"):
            await self._signed_post("/cancel-all-orders", {"symbol": symbol}, "cancel_all_orders")

    # --- WebSocket ---

    def _subscription_message(self, kind: EventKind, symbol: Optional[str],
                              interval: Optional[str]) -> Optional[dict]:
        sub: Dict[str, Any] = {"type": kind.value}
        if kind in (EventKind.ACCOUNT, EventKind.ORDERS):
            if not self.wallet_address:
                return None
            sub["user"] = self.wallet_address
        if symbol:
            sub["symbol"] = symbol
        if interval:
            sub["interval"] = interval
        return {"method": "subscribe", "subscription": sub}

    def _translate(self, message: Any) -> List[Frame]:
        if not isinstance(message, dict):
            return []
        kind = message.get("type")
        data = message.get("data")
        symbol = message.get("symbol")
        interval = message.get("interval")
        if kind == EventKind.ACCOUNT.value:
            return [(EventKind.ACCOUNT, None, None, account_from_dict(data))]
        if kind == EventKind.ORDERS.value:
            return [(EventKind.ORDERS, None, None, [order_from_dict(o) for o in data or []])]
        if kind == EventKind.DEPTH.value:
            return [(EventKind.DEPTH, symbol, None, depth_from_dict(data or {}, symbol or ""))]
        if kind == EventKind.TICKER.value:
            return [(EventKind.TICKER, symbol, None, ticker_from_dict(data or {}, symbol or ""))]
        if kind == EventKind.KLINES.value:
            if isinstance(data, dict):
                klines = [kline_from_dict(data, symbol or "", interval or "")]
            else:
                klines = klines_from_list(data or [], symbol or "", interval or "")
            return [(EventKind.KLINES, symbol, interval, klines)]
        log.debug("[%s] Ignoring frame type %r", self.name, kind)
        return []


class HyperliquidExchangeAdapter(GatewayAdapter):
    id = ExchangeId.HYPERLIQUID.value

    def __init__(self, symbol: str, credentials: Optional[HyperliquidCredentials] = None,
                 **gateway_options):
        credentials = credentials or HyperliquidCredentials()
        gateway = HyperliquidGateway(
            wallet_address=credentials.wallet_address,
            private_key=credentials.private_key,
            **gateway_options,
        )
        super().__init__(gateway, symbol)
