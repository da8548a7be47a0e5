from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Union

Number = Union[str, int, float, Decimal]


class ExchangeId(str, Enum):
    ASTER = "aster"
    GRVT = "grvt"
    HYPERLIQUID = "hyperliquid"


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    LIMIT = "LIMIT"
    MARKET = "MARKET"
    STOP = "STOP"
    STOP_MARKET = "STOP_MARKET"
    TAKE_PROFIT = "TAKE_PROFIT"
    TAKE_PROFIT_MARKET = "TAKE_PROFIT_MARKET"
    TRAILING_STOP_MARKET = "TRAILING_STOP_MARKET"


class TimeInForce(str, Enum):
    GTC = "GTC"
    IOC = "IOC"
    FOK = "FOK"
    GTX = "GTX"  # post-only


class OrderStatus(str, Enum):
    NEW = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELED = "CANCELED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


@dataclass(slots=True)
class Position:
    symbol: str
    position_amt: str = "0"
    entry_price: str = "0"
    mark_price: str = "0"
    unrealized_profit: str = "0"
    leverage: str = "0"
    position_side: str = "BOTH"
    isolated: bool = False
    update_time: int = 0


@dataclass(slots=True)
class Asset:
    asset: str
    wallet_balance: str = "0"
    unrealized_profit: str = "0"
    margin_balance: str = "0"
    available_balance: str = "0"
    update_time: int = 0


@dataclass(slots=True)
class AccountSnapshot:
    """Exchange-neutral account state. Numeric fields are decimal strings."""
    can_trade: bool = True
    can_deposit: bool = True
    can_withdraw: bool = True
    update_time: int = 0
    total_wallet_balance: str = "0"
    total_unrealized_profit: str = "0"
    total_margin_balance: str = "0"
    total_initial_margin: str = "0"
    total_maint_margin: str = "0"
    total_position_initial_margin: str = "0"
    total_open_order_initial_margin: str = "0"
    total_cross_wallet_balance: str = "0"
    total_cross_un_pnl: str = "0"
    available_balance: str = "0"
    max_withdraw_amount: str = "0"
    positions: List[Position] = field(default_factory=list)
    assets: List[Asset] = field(default_factory=list)

    def position(self, symbol: str) -> Optional[Position]:
        for p in self.positions:
            if p.symbol == symbol:
                return p
        return None


@dataclass(slots=True)
class Order:
    order_id: str
    symbol: str
    side: str
    type: str
    status: str = OrderStatus.NEW.value
    client_order_id: str = ""
    price: str = "0"
    orig_qty: str = "0"
    executed_qty: str = "0"
    avg_price: str = "0"
    cum_quote: str = "0"
    stop_price: str = "0"
    time: int = 0
    update_time: int = 0
    reduce_only: bool = False
    close_position: bool = False
    time_in_force: Optional[str] = None
    position_side: str = "BOTH"
    orig_type: str = ""
    working_type: str = ""
    activation_price: Optional[str] = None
    price_rate: Optional[str] = None
    price_protect: bool = False

    @property
    def is_active(self) -> bool:
        return self.status in (OrderStatus.NEW.value, OrderStatus.PARTIALLY_FILLED.value)


@dataclass(slots=True)
class DepthLevel:
    price: str
    quantity: str


@dataclass(slots=True)
class Depth:
    symbol: str
    bids: List[DepthLevel] = field(default_factory=list)
    asks: List[DepthLevel] = field(default_factory=list)
    event_time: int = 0
    last_update_id: int = 0

    @property
    def best_bid(self) -> Optional[DepthLevel]:
        return self.bids[0] if self.bids else None

    @property
    def best_ask(self) -> Optional[DepthLevel]:
        return self.asks[0] if self.asks else None


@dataclass(slots=True)
class Ticker:
    symbol: str
    last_price: str = "0"
    open_price: str = "0"
    high_price: str = "0"
    low_price: str = "0"
    volume: str = "0"
    quote_volume: str = "0"
    price_change: str = "0"
    price_change_percent: str = "0"
    event_time: int = 0


@dataclass(slots=True)
class Kline:
    symbol: str
    interval: str
    open_time: int = 0
    close_time: int = 0
    open: str = "0"
    high: str = "0"
    low: str = "0"
    close: str = "0"
    volume: str = "0"
    quote_volume: str = "0"
    trades: int = 0
    is_closed: bool = False


@dataclass(slots=True)
class CreateOrderParams:
    """Canonical order request. Numeric fields accept str, int, float or Decimal."""
    symbol: str
    side: OrderSide
    type: OrderType
    quantity: Optional[Number] = None
    price: Optional[Number] = None
    stop_price: Optional[Number] = None
    activation_price: Optional[Number] = None
    callback_rate: Optional[Number] = None
    time_in_force: Optional[TimeInForce] = None
    reduce_only: bool = False
    close_position: bool = False
    client_order_id: str = ""
