"""Configuration helpers for the KIS edge service."""

from __future__ import annotations

import os
from dotenv import load_dotenv
from datetime import timedelta, timezone
from typing import Final, Optional

DEFAULT_BASE_URL: Final[str] = "https://openapi.koreainvestment.com:9443"
DEFAULT_CUSTTYPE: Final[str] = "P"
DEFAULT_HTTP_TIMEOUT: Final[float] = 10.0
DEFAULT_TOKEN_SAFETY_MARGIN: Final[float] = 60.0
DEFAULT_TOKEN_TTL: Final[float] = 9 * 60.0

# Exchange-local reference time; Korea does not observe DST.
KST: Final[timezone] = timezone(timedelta(hours=9), "KST")

DEFAULT_PATHS: Final[dict] = {
    "TOKEN": "/oauth2/tokenP",
    "PRICE": "/uapi/domestic-stock/v1/quotations/inquire-price",
    "INVEST": "/uapi/domestic-stock/v1/quotations/investor-trade-by-stock-daily",
    "BALANCE": "/uapi/domestic-stock/v1/trading/inquire-balance",
}

DEFAULT_TR_IDS: Final[dict] = {
    "PRICE": "FHKST01010100",
    "INVEST": "FHPTJ04160001",
    "BALANCE": "VTTC8434R",
    "INVESTOR_DAILY": "FHKST03010200",
}


load_dotenv(override=True)


def _normalise_base_url(value: str | None, *, default: str = DEFAULT_BASE_URL) -> str:
    value = (value or "").strip()
    if not value:
        return default
    return value.rstrip("/")


def _derive_base_url() -> str:
    kis_env = os.environ.get("KIS_BASE")
    legacy_env = os.environ.get("KIS_BASE_URL")

    if kis_env:
        resolved = _normalise_base_url(kis_env)
    elif legacy_env:
        resolved = _normalise_base_url(legacy_env)
        os.environ["KIS_BASE"] = resolved
    else:
        resolved = DEFAULT_BASE_URL
        os.environ["KIS_BASE"] = resolved

    return resolved


def env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or "").strip() or default


def env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def upstream_path(name: str) -> str:
    """Resolve an upstream path, honouring ``KIS_<NAME>_PATH`` overrides."""
    override = env_str(f"KIS_{name}_PATH")
    if override:
        return override if override.startswith("/") else f"/{override}"
    return DEFAULT_PATHS[name]


def tr_id(name: str) -> str:
    return env_str(f"KIS_TR_ID_{name}", DEFAULT_TR_IDS[name])


def app_credentials() -> tuple[str, str]:
    return env_str("KIS_APP_KEY"), env_str("KIS_APP_SECRET")


def gateway_key() -> Optional[str]:
    for env_var in ("PROXY_API_KEY", "CLIENT_TOKEN"):
        value = env_str(env_var)
        if value:
            return value
    return None


KIS_BASE: Final[str] = _derive_base_url()
KIS_CUSTTYPE: Final[str] = env_str("KIS_CUSTTYPE", DEFAULT_CUSTTYPE)
KIS_HTTP_TIMEOUT: Final[float] = env_float("KIS_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT)

__all__ = [
    "DEFAULT_BASE_URL",
    "DEFAULT_PATHS",
    "DEFAULT_TR_IDS",
    "KIS_BASE",
    "KIS_CUSTTYPE",
    "KIS_HTTP_TIMEOUT",
    "KST",
    "app_credentials",
    "env_float",
    "env_int",
    "env_str",
    "gateway_key",
    "tr_id",
    "upstream_path",
]
