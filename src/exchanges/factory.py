"""Factory functions for resolving the target exchange and creating adapters."""
from __future__ import annotations
import logging
import os
from typing import Any, Dict, Mapping, Optional, Union

from core.config import ENV_EXCHANGE, ENV_TRADE_EXCHANGE, gateway_settings
from core.types import ExchangeId
from exchanges.base import ExchangeAdapter

log = logging.getLogger(__name__)

DEFAULT_EXCHANGE = ExchangeId.ASTER.value

_DISPLAY_NAMES = {
    ExchangeId.ASTER.value: "AsterDex",
    ExchangeId.GRVT.value: "GRVT",
    ExchangeId.HYPERLIQUID.value: "Hyperliquid",
}

# settings a gateway constructor accepts; anything else in the config is ignored
_GATEWAY_OPTIONS = ("base_url", "ws_url", "request_timeout_s", "reconnect_delay_s")


def resolve_exchange_id(value: Optional[str] = None) -> str:
    """Pick the exchange id.

    Precedence: ``value``, ``$EXCHANGE``, ``$TRADE_EXCHANGE``, ``aster``.
    The environment is only read when ``value`` is None, so ``""`` means
    ``aster``. Input is trimmed and lower-cased. An unknown id falls back to ``aster``
    with a warning.
    """
    if value is None:
        value = os.environ.get(ENV_EXCHANGE) or os.environ.get(ENV_TRADE_EXCHANGE) or ""
    exchange = value.strip().lower()
    if not exchange:
        return DEFAULT_EXCHANGE
    if exchange not in _DISPLAY_NAMES:
        log.warning("Unknown exchange %r, falling back to %s", value, DEFAULT_EXCHANGE)
        return DEFAULT_EXCHANGE
    return exchange


def get_exchange_display_name(exchange: str) -> str:
    """Human-readable exchange name; unknown ids are returned unchanged."""
    return _DISPLAY_NAMES.get(str(exchange).lower(), exchange)


def _credentials(cls, value: Union[None, Mapping[str, Any], Any], **defaults):
    if isinstance(value, cls):
        return value
    return cls.from_mapping({**defaults, **(value or {})})


def create_exchange_adapter(
    symbol: str,
    exchange: Optional[str] = None,
    *,
    aster: Union[None, Mapping[str, Any], Any] = None,
    grvt: Union[None, Mapping[str, Any], Any] = None,
    hyperliquid: Union[None, Mapping[str, Any], Any] = None,
    config: Optional[Mapping[str, Any]] = None,
) -> ExchangeAdapter:
    """Create the adapter for the resolved exchange.

    Only the matching credential bag is handed to the adapter. Credentials are
    not validated here; a missing key surfaces as ``ConfigurationError`` on
    the first operation that needs it.

    Args:
        symbol: Trading symbol in internal format (BTCUSDT)
        exchange: Exchange id; see ``resolve_exchange_id``
        aster / grvt / hyperliquid: Credential dataclass or mapping
        config: Loaded config dict (``core.config.load_config``)
    """
    exchange = resolve_exchange_id(exchange)
    settings = gateway_settings(config, exchange)
    options = {k: settings[k] for k in _GATEWAY_OPTIONS if settings.get(k) is not None}

    if exchange == ExchangeId.GRVT.value:
        from exchanges.grvt import GrvtCredentials, GrvtExchangeAdapter
        defaults: Dict[str, Any] = {"env": settings["env"]} if settings.get("env") else {}
        return GrvtExchangeAdapter(symbol, _credentials(GrvtCredentials, grvt, **defaults), **options)
    elif exchange == ExchangeId.HYPERLIQUID.value:
        from exchanges.hyperliquid import HyperliquidCredentials, HyperliquidExchangeAdapter
        return HyperliquidExchangeAdapter(
            symbol, _credentials(HyperliquidCredentials, hyperliquid), **options,
        )
    else:
        from exchanges.aster import AsterCredentials, AsterExchangeAdapter
        return AsterExchangeAdapter(symbol, _credentials(AsterCredentials, aster), **options)
