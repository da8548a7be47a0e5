"""Configuration loading: dotenv + YAML, environment credentials, logging."""
from __future__ import annotations
import logging
import os
import sys
from typing import Any, Dict, Mapping, Optional

import yaml
from dotenv import load_dotenv

ENV_EXCHANGE = "EXCHANGE"
ENV_TRADE_EXCHANGE = "TRADE_EXCHANGE"
ENV_CONFIG_PATH = "TRADEGATE_CONFIG"

DEFAULT_CONFIG_PATH = os.path.join(
    os.path.dirname(__file__), "..", "..", "config", "default.yaml",
)

REQUEST_TIMEOUT_S = 10.0
RECONNECT_DELAY_S = 5.0

# exchange id -> {credential field: environment variable}
_CREDENTIAL_ENV: Dict[str, Dict[str, str]] = {
    "aster": {
        "api_key": "ASTER_API_KEY",
        "api_secret": "ASTER_API_SECRET",
    },
    "grvt": {
        "api_key": "GRVT_API_KEY",
        "api_secret": "GRVT_API_SECRET",
        "sub_account_id": "GRVT_SUB_ACCOUNT_ID",
        "env": "GRVT_ENV",
    },
    "hyperliquid": {
        "wallet_address": "HYPERLIQUID_WALLET_ADDRESS",
        "private_key": "HYPERLIQUID_PRIVATE_KEY",
    },
}


def setup_logging(level: str = "INFO") -> None:
    fmt = "%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=fmt,
        datefmt="%H:%M:%S",
        stream=sys.stdout,
    )


def load_config(path: Optional[str] = None) -> dict:
    """Load ``.env`` then the YAML config.

    Lookup order: ``path``, ``$TRADEGATE_CONFIG``, bundled default. A missing
    file yields an empty dict so every setting falls back to module defaults.
    """
    load_dotenv()
    path = path or os.environ.get(ENV_CONFIG_PATH) or DEFAULT_CONFIG_PATH
    if not os.path.exists(path):
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def gateway_settings(config: Optional[Mapping[str, Any]], exchange: str) -> Dict[str, Any]:
    """Flatten the shared ``gateway`` section and one ``exchanges.<id>`` section."""
    config = config or {}
    settings: Dict[str, Any] = {
        "request_timeout_s": REQUEST_TIMEOUT_S,
        "reconnect_delay_s": RECONNECT_DELAY_S,
    }
    settings.update(config.get("gateway") or {})
    settings.update((config.get("exchanges") or {}).get(exchange) or {})
    return settings


def credentials_from_env(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Dict[str, str]]:
    """Collect per-exchange credential dicts from the environment.

    Only variables that are set and non-empty are included.
    """
    environ = os.environ if environ is None else environ
    result: Dict[str, Dict[str, str]] = {}
    for exchange, fields in _CREDENTIAL_ENV.items():
        creds = {
            name: environ[var].strip()
            for name, var in fields.items()
            if environ.get(var, "").strip()
        }
        if creds:
            result[exchange] = creds
    return result
