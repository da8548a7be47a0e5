"""Error taxonomy shared by every gateway.

REST paths raise these to the caller after logging. The WebSocket path
recovers ``ParseError`` locally so one bad frame never stops the stream.
"""
from __future__ import annotations
from typing import Optional


class GatewayError(Exception):
    """Base class for gateway failures. Carries exchange and operation context."""

    def __init__(self, message: str, *, exchange: str = "", operation: str = ""):
        super().__init__(message)
        self.exchange = exchange
        self.operation = operation

    def __str__(self) -> str:
        msg = super().__str__()
        ctx = "/".join(p for p in (self.exchange, self.operation) if p)
        return f"[{ctx}] {msg}" if ctx else msg


class ConfigurationError(GatewayError):
    """Required credential or signing identity is missing or invalid."""


class TransportError(GatewayError):
    """HTTP or WebSocket failure, including request timeouts."""


class UpstreamRejection(GatewayError):
    """The exchange answered with a well-formed error response."""

    def __init__(
        self,
        message: str,
        *,
        exchange: str = "",
        operation: str = "",
        status: int = 0,
        code: Optional[int] = None,
    ):
        super().__init__(message, exchange=exchange, operation=operation)
        self.status = status
        self.code = code


class ParseError(GatewayError):
    """Inbound WebSocket frame could not be decoded."""
