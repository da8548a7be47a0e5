"""Symbol format conversion between internal format and exchange-specific formats.

Internal format: BTCUSDT (no separator)
Aster:           BTCUSDT (same as internal; lowercase in stream names)
GRVT perpetual:  BTC_USDT_Perp

Conversions happen at the gateway boundary; callers always use the
internal format.
"""
from __future__ import annotations

import re

_QUOTE = re.compile(r"(USDT|USDC|USD)$")

# ── Aster ─────────────────────────────────────────────────────────────


def to_aster_stream(symbol: str) -> str:
    """BTCUSDT -> btcusdt"""
    return symbol.lower()


# ── GRVT ──────────────────────────────────────────────────────────────

_GRVT_SUFFIX = "_Perp"


def to_grvt(symbol: str) -> str:
    """Convert internal symbol to a GRVT perpetual instrument.

    BTCUSDT -> BTC_USDT_Perp
    """
    if symbol.endswith(_GRVT_SUFFIX):
        return symbol
    m = _QUOTE.search(symbol)
    if m:
        return f"{symbol[: m.start()]}_{m.group(1)}{_GRVT_SUFFIX}"
    return symbol


def from_grvt(instrument: str) -> str:
    """Convert a GRVT instrument to internal format.

    BTC_USDT_Perp -> BTCUSDT
    """
    if instrument.endswith(_GRVT_SUFFIX):
        instrument = instrument[: -len(_GRVT_SUFFIX)]
    return instrument.replace("_", "")
