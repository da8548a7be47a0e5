"""Exchange adapter package.

Re-exports the adapter interface and the factory so consumers can write::

    from exchanges import ExchangeAdapter, create_exchange_adapter
"""
from exchanges.base import ExchangeAdapter, GatewayAdapter
from exchanges.factory import (
    create_exchange_adapter,
    get_exchange_display_name,
    resolve_exchange_id,
)
from exchanges.gateway import BaseGateway, ConnectionState, EventKind, Subscription

__all__ = [
    "ExchangeAdapter",
    "GatewayAdapter",
    "BaseGateway",
    "ConnectionState",
    "EventKind",
    "Subscription",
    "create_exchange_adapter",
    "get_exchange_display_name",
    "resolve_exchange_id",
]
