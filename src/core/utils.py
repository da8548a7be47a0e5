import time
from enum import Enum
from decimal import Decimal, InvalidOperation
from typing import Any, Optional


def time_now_ms() -> int:
    return int(time.time() * 1000)


def fmt_decimal(value: Any) -> Optional[str]:
    """Format a number as a plain decimal string: no scientific notation,
    no trailing zeros. ``None`` stays ``None``; strings are trimmed and
    passed through unchanged.
    """
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, bool):
        raise TypeError(f"not a number: {value!r}")
    if isinstance(value, float):
        value = Decimal(repr(value))
    try:
        d = Decimal(value)
    except (InvalidOperation, TypeError) as e:
        raise TypeError(f"not a number: {value!r}") from e
    text = format(d, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def as_str(value: Any, default: str = "0") -> str:
    """Stringify an exchange field, falling back to ``default`` when absent."""
    if value is None or value == "":
        return default
    return str(value)


def as_int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def enum_value(value: Any) -> Any:
    """Plain value of an Enum member; other values pass through."""
    return value.value if isinstance(value, Enum) else value
