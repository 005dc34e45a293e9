"""Supplementary routes for readiness and dynamic OpenAPI metadata."""

from __future__ import annotations

from copy import deepcopy
from typing import Dict, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from .token import TokenCache

router = APIRouter()


def _app_module():
    from . import app as edge_app  # Local import avoids circular dependency at module load time.

    return edge_app


def _token_state(token_cache: Optional[TokenCache]) -> Dict[str, bool]:
    if token_cache is None:
        return {"cached": False, "fresh": False, "refreshing": False}
    cached = token_cache.cached
    return {
        "cached": cached is not None,
        "fresh": token_cache.is_fresh(cached),
        "refreshing": token_cache.refreshing,
    }


@router.get("/readyz", include_in_schema=False)
def readyz(request: Request) -> dict:
    """Gateway-protected readiness: credentials, upstream base and token state."""
    edge_app = _app_module()
    edge_app._require_gateway_key_from_request(request)
    credentials_ok = edge_app._kis_credentials_present()
    base_url = edge_app._resolved_api_base_url()
    token_cache = getattr(edge_app.app.state, "token_cache", None)
    return {
        "ok": credentials_ok and bool(base_url) and token_cache is not None,
        "env": {
            "kis_credentials": credentials_ok,
            "kis_base_url": base_url,
        },
        "token": _token_state(token_cache),
    }


@router.get("/.well-known/openapi.json", include_in_schema=False)
def well_known_openapi(request: Request) -> JSONResponse:
    edge_app = _app_module()
    base_schema = deepcopy(edge_app._build_openapi_schema(edge_app.app.routes))
    base_schema["servers"] = [{"url": str(request.base_url).rstrip("/")}]
    return JSONResponse(base_schema)


__all__ = ["router"]
