"""Field mapping from Binance-style camelCase payloads to canonical types.

Aster speaks this dialect natively and the Hyperliquid gateway's frames use
the same field names. Absent numeric fields become "0"; trading permission
flags default to True.

    account:  canTrade, canDeposit, canWithdraw, updateTime,
              totalWalletBalance, totalUnrealizedProfit, totalMarginBalance,
              totalInitialMargin, totalMaintMargin, totalPositionInitialMargin,
              totalOpenOrderInitialMargin, totalCrossWalletBalance,
              totalCrossUnPnl, availableBalance, maxWithdrawAmount,
              positions[], assets[]
    position: symbol, positionAmt, entryPrice, markPrice,
              unrealizedProfit | unRealizedProfit, leverage, positionSide,
              isolated, updateTime
    order:    orderId, clientOrderId, symbol, side, type, status, price,
              origQty, executedQty, avgPrice, cumQuote, stopPrice, time,
              updateTime, reduceOnly, closePosition, timeInForce,
              positionSide, origType, workingType, activatePrice, priceRate,
              priceProtect
    depth:    s | symbol, b | bids, a | asks, E | T | eventTime,
              u | lastUpdateId
    ticker:   s | symbol, c | lastPrice, o, h, l, v, q, p, P, E
    kline:    t, T, o, h, l, c, v, q, n, x  (stream "k" object or REST dict)
"""
from __future__ import annotations
from typing import Any, Dict, List, Mapping, Optional, Sequence

from core.types import (
    AccountSnapshot, Asset, Depth, DepthLevel, Kline, Order, Position, Ticker,
)
from core.utils import as_bool, as_int, as_str, time_now_ms

_ACCOUNT_STR_FIELDS = {
    "totalWalletBalance": "total_wallet_balance",
    "totalUnrealizedProfit": "total_unrealized_profit",
    "totalMarginBalance": "total_margin_balance",
    "totalInitialMargin": "total_initial_margin",
    "totalMaintMargin": "total_maint_margin",
    "totalPositionInitialMargin": "total_position_initial_margin",
    "totalOpenOrderInitialMargin": "total_open_order_initial_margin",
    "totalCrossWalletBalance": "total_cross_wallet_balance",
    "totalCrossUnPnl": "total_cross_un_pnl",
    "availableBalance": "available_balance",
    "maxWithdrawAmount": "max_withdraw_amount",
}


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for k in keys:
        v = data.get(k)
        if v is not None and v != "":
            return v
    return None


def position_from_dict(data: Mapping[str, Any]) -> Position:
    return Position(
        symbol=as_str(_first(data, "symbol", "s"), ""),
        position_amt=as_str(_first(data, "positionAmt", "pa")),
        entry_price=as_str(_first(data, "entryPrice", "ep")),
        mark_price=as_str(data.get("markPrice")),
        unrealized_profit=as_str(_first(data, "unrealizedProfit", "unRealizedProfit", "up")),
        leverage=as_str(data.get("leverage")),
        position_side=as_str(_first(data, "positionSide", "ps"), "BOTH"),
        isolated=as_bool(data.get("isolated")),
        update_time=as_int(data.get("updateTime")),
    )


def asset_from_dict(data: Mapping[str, Any]) -> Asset:
    return Asset(
        asset=as_str(_first(data, "asset", "a"), ""),
        wallet_balance=as_str(_first(data, "walletBalance", "wb")),
        unrealized_profit=as_str(data.get("unrealizedProfit")),
        margin_balance=as_str(data.get("marginBalance")),
        available_balance=as_str(data.get("availableBalance")),
        update_time=as_int(data.get("updateTime")),
    )


def account_from_dict(data: Optional[Mapping[str, Any]], now: Optional[int] = None) -> AccountSnapshot:
    data = data or {}
    snap = AccountSnapshot(
        can_trade=as_bool(data.get("canTrade"), True),
        can_deposit=as_bool(data.get("canDeposit"), True),
        can_withdraw=as_bool(data.get("canWithdraw"), True),
        update_time=as_int(data.get("updateTime")) or (now if now is not None else time_now_ms()),
        positions=[position_from_dict(p) for p in data.get("positions") or []],
        assets=[asset_from_dict(a) for a in data.get("assets") or []],
    )
    for src, dst in _ACCOUNT_STR_FIELDS.items():
        setattr(snap, dst, as_str(data.get(src)))
    return snap


def order_from_dict(data: Mapping[str, Any]) -> Order:
    order_type = as_str(data.get("type"), "")
    return Order(
        order_id=as_str(_first(data, "orderId", "id"), ""),
        client_order_id=as_str(data.get("clientOrderId"), ""),
        symbol=as_str(data.get("symbol"), ""),
        side=as_str(data.get("side"), ""),
        type=order_type,
        status=as_str(data.get("status"), "NEW"),
        price=as_str(data.get("price")),
        orig_qty=as_str(data.get("origQty")),
        executed_qty=as_str(data.get("executedQty")),
        avg_price=as_str(data.get("avgPrice")),
        cum_quote=as_str(data.get("cumQuote")),
        stop_price=as_str(data.get("stopPrice")),
        time=as_int(data.get("time")),
        update_time=as_int(data.get("updateTime")),
        reduce_only=as_bool(data.get("reduceOnly")),
        close_position=as_bool(data.get("closePosition")),
        time_in_force=data.get("timeInForce"),
        position_side=as_str(data.get("positionSide"), "BOTH"),
        orig_type=as_str(data.get("origType"), order_type),
        working_type=as_str(data.get("workingType"), ""),
        activation_price=_first(data, "activatePrice", "activationPrice"),
        price_rate=data.get("priceRate"),
        price_protect=as_bool(data.get("priceProtect")),
    )


def order_from_stream(o: Mapping[str, Any], event_time: int = 0) -> Order:
    """ORDER_TRADE_UPDATE ``o`` object (single-letter keys)."""
    order_type = as_str(o.get("o"), "")
    return Order(
        order_id=as_str(o.get("i"), ""),
        client_order_id=as_str(o.get("c"), ""),
        symbol=as_str(o.get("s"), ""),
        side=as_str(o.get("S"), ""),
        type=order_type,
        status=as_str(o.get("X"), "NEW"),
        price=as_str(o.get("p")),
        orig_qty=as_str(o.get("q")),
        executed_qty=as_str(o.get("z")),
        avg_price=as_str(o.get("ap")),
        stop_price=as_str(o.get("sp")),
        time=as_int(o.get("T"), event_time),
        update_time=as_int(o.get("T"), event_time),
        reduce_only=as_bool(o.get("R")),
        close_position=as_bool(o.get("cp")),
        time_in_force=o.get("f"),
        position_side=as_str(o.get("ps"), "BOTH"),
        orig_type=as_str(o.get("ot"), order_type),
        working_type=as_str(o.get("wt"), ""),
        activation_price=o.get("AP"),
        price_rate=o.get("cr"),
        price_protect=as_bool(o.get("pP")),
    )


def _levels(rows: Optional[Sequence[Any]]) -> List[DepthLevel]:
    levels = []
    for row in rows or []:
        if isinstance(row, Mapping):
            levels.append(DepthLevel(as_str(row.get("price")), as_str(_first(row, "quantity", "qty", "size"))))
        else:
            levels.append(DepthLevel(as_str(row[0]), as_str(row[1])))
    return levels


def depth_from_dict(data: Mapping[str, Any], symbol: str = "") -> Depth:
    return Depth(
        symbol=as_str(_first(data, "s", "symbol"), symbol),
        bids=_levels(_first(data, "b", "bids")),
        asks=_levels(_first(data, "a", "asks")),
        event_time=as_int(_first(data, "E", "T", "eventTime")),
        last_update_id=as_int(_first(data, "u", "lastUpdateId")),
    )


def ticker_from_dict(data: Mapping[str, Any], symbol: str = "") -> Ticker:
    return Ticker(
        symbol=as_str(_first(data, "s", "symbol"), symbol),
        last_price=as_str(_first(data, "c", "lastPrice")),
        open_price=as_str(_first(data, "o", "openPrice")),
        high_price=as_str(_first(data, "h", "highPrice")),
        low_price=as_str(_first(data, "l", "lowPrice")),
        volume=as_str(_first(data, "v", "volume")),
        quote_volume=as_str(_first(data, "q", "quoteVolume")),
        price_change=as_str(_first(data, "p", "priceChange")),
        price_change_percent=as_str(_first(data, "P", "priceChangePercent")),
        event_time=as_int(_first(data, "E", "closeTime", "eventTime")),
    )


def kline_from_dict(data: Mapping[str, Any], symbol: str = "", interval: str = "") -> Kline:
    return Kline(
        symbol=as_str(_first(data, "s", "symbol"), symbol),
        interval=as_str(_first(data, "i", "interval"), interval),
        open_time=as_int(_first(data, "t", "openTime")),
        close_time=as_int(_first(data, "T", "closeTime")),
        open=as_str(_first(data, "o", "open")),
        high=as_str(_first(data, "h", "high")),
        low=as_str(_first(data, "l", "low")),
        close=as_str(_first(data, "c", "close")),
        volume=as_str(_first(data, "v", "volume")),
        quote_volume=as_str(_first(data, "q", "quoteVolume")),
        trades=as_int(_first(data, "n", "numberOfTrades", "trades")),
        is_closed=as_bool(_first(data, "x", "isClosed")),
    )


def klines_from_list(rows: Sequence[Any], symbol: str, interval: str) -> List[Kline]:
    out = []
    for row in rows or []:
        if isinstance(row, Mapping):
            out.append(kline_from_dict(row, symbol, interval))
        else:
            # REST array form: [openTime, o, h, l, c, v, closeTime, quoteVolume, trades, ...]
            out.append(Kline(
                symbol=symbol, interval=interval,
                open_time=as_int(row[0]), open=as_str(row[1]), high=as_str(row[2]),
                low=as_str(row[3]), close=as_str(row[4]), volume=as_str(row[5]),
                close_time=as_int(row[6]), quote_volume=as_str(row[7]),
                trades=as_int(row[8]), is_closed=True,
            ))
    return out


def merge_account_update(snapshot: AccountSnapshot, update: Mapping[str, Any],
                         event_time: int) -> AccountSnapshot:
    """Apply an ACCOUNT_UPDATE ``a`` object (balances B[], positions P[])."""
    assets: Dict[str, Asset] = {a.asset: a for a in snapshot.assets}
    for b in update.get("B") or []:
        name = as_str(b.get("a"), "")
        asset = assets.get(name) or Asset(asset=name)
        asset.wallet_balance = as_str(b.get("wb"), asset.wallet_balance)
        asset.update_time = event_time
        assets[name] = asset
    positions: Dict[tuple, Position] = {(p.symbol, p.position_side): p for p in snapshot.positions}
    for p in update.get("P") or []:
        pos = position_from_dict(p)
        existing = positions.get((pos.symbol, pos.position_side))
        if existing is not None:
            existing.position_amt = pos.position_amt
            existing.entry_price = pos.entry_price
            existing.unrealized_profit = pos.unrealized_profit
            pos = existing
        pos.update_time = event_time
        positions[(pos.symbol, pos.position_side)] = pos
    snapshot.assets = list(assets.values())
    snapshot.positions = list(positions.values())
    snapshot.update_time = event_time
    return snapshot
