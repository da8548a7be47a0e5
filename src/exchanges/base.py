"""Abstract base class for exchange adapters.

Defines the capability set every exchange implementation (Aster, GRVT,
Hyperliquid) exposes. Consumers import ``ExchangeAdapter`` and the canonical
types from ``core.types`` so they remain exchange-agnostic.
"""
from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional, Sequence, Union

from core.types import AccountSnapshot, CreateOrderParams, Depth, Kline, Order, Ticker
from exchanges.gateway import BaseGateway, Subscription

OrderId = Union[int, str]


class ExchangeAdapter(ABC):
    """Exchange-neutral trading handle returned by the factory."""

    id: str = ""

    @property
    @abstractmethod
    def display_name(self) -> str: ...

    @property
    @abstractmethod
    def symbol(self) -> str: ...

    @abstractmethod
    async def initialize(self) -> None: ...

    @abstractmethod
    async def get_account(self) -> AccountSnapshot: ...

    @abstractmethod
    async def get_open_orders(self, symbol: Optional[str] = None) -> List[Order]: ...

    @abstractmethod
    async def create_order(self, params: CreateOrderParams) -> Order: ...

    @abstractmethod
    async def cancel_order(self, order_id: OrderId, symbol: Optional[str] = None) -> None: ...

    @abstractmethod
    async def cancel_orders(self, order_ids: Sequence[OrderId], symbol: Optional[str] = None) -> None: ...

    @abstractmethod
    async def cancel_all_orders(self, symbol: Optional[str] = None) -> None: ...

    @abstractmethod
    def subscribe_account(self, callback: Callable[[AccountSnapshot], Any]) -> Subscription: ...

    @abstractmethod
    def subscribe_orders(self, callback: Callable[[List[Order]], Any]) -> Subscription: ...

    @abstractmethod
    def subscribe_depth(self, symbol: str, callback: Callable[[Depth], Any]) -> Subscription: ...

    @abstractmethod
    def subscribe_ticker(self, symbol: str, callback: Callable[[Ticker], Any]) -> Subscription: ...

    @abstractmethod
    def subscribe_klines(self, symbol: str, interval: str,
                         callback: Callable[[List[Kline]], Any]) -> Subscription: ...

    @abstractmethod
    async def close(self) -> None: ...


class GatewayAdapter(ExchangeAdapter):
    """Thin adapter that delegates every operation to its gateway."""

    def __init__(self, gateway: BaseGateway, symbol: str):
        self._gateway = gateway
        self._symbol = symbol

    @property
    def gateway(self) -> BaseGateway:
        return self._gateway

    @property
    def symbol(self) -> str:
        return self._symbol

    @property
    def display_name(self) -> str:
        from exchanges.factory import get_exchange_display_name
        return get_exchange_display_name(self.id)

    async def initialize(self) -> None:
        await self._gateway.ensure_initialized(self._symbol)

    async def get_account(self) -> AccountSnapshot:
        return await self._gateway.get_account_info()

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[Order]:
        return await self._gateway.get_open_orders(symbol or self._symbol)

    async def create_order(self, params: CreateOrderParams) -> Order:
        return await self._gateway.create_order(params)

    async def cancel_order(self, order_id: OrderId, symbol: Optional[str] = None) -> None:
        await self._gateway.cancel_order(symbol or self._symbol, order_id)

    async def cancel_orders(self, order_ids: Sequence[OrderId], symbol: Optional[str] = None) -> None:
        await self._gateway.cancel_orders(symbol or self._symbol, list(order_ids))

    async def cancel_all_orders(self, symbol: Optional[str] = None) -> None:
        await self._gateway.cancel_all_orders(symbol or self._symbol)

    def subscribe_account(self, callback: Callable[[AccountSnapshot], Any]) -> Subscription:
        return self._gateway.on_account(callback)

    def subscribe_orders(self, callback: Callable[[List[Order]], Any]) -> Subscription:
        return self._gateway.on_orders(callback)

    def subscribe_depth(self, symbol: str, callback: Callable[[Depth], Any]) -> Subscription:
        return self._gateway.on_depth(symbol, callback)

    def subscribe_ticker(self, symbol: str, callback: Callable[[Ticker], Any]) -> Subscription:
        return self._gateway.on_ticker(symbol, callback)

    def subscribe_klines(self, symbol: str, interval: str,
                         callback: Callable[[List[Kline]], Any]) -> Subscription:
        return self._gateway.on_klines(symbol, interval, callback)

    async def close(self) -> None:
        await self._gateway.destroy()
