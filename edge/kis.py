"""Authenticated pass-through calls to the KIS REST API."""

from __future__ import annotations

from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from config import KIS_CUSTTYPE, app_credentials

from .http import EdgeHttpClient
from .token import CachedToken, TokenCache


class KisClient:
    """Forward GET requests with the bearer token and KIS report headers.

    The status and body come back exactly as the upstream sent them; callers
    decide what a non-2xx means for their route.
    """

    def __init__(
        self,
        http_client: EdgeHttpClient,
        token_cache: TokenCache,
        *,
        credentials: Callable[[], Tuple[str, str]] = app_credentials,
        custtype: str = KIS_CUSTTYPE,
    ) -> None:
        self._http = http_client
        self._tokens = token_cache
        self._credentials = credentials
        self._custtype = custtype

    @property
    def token_cache(self) -> TokenCache:
        return self._tokens

    async def issue_token(self) -> CachedToken:
        return await self._tokens.get_cached_token()

    async def _headers(self, tr_id: str) -> Dict[str, str]:
        token = await self._tokens.get_token()
        app_key, app_secret = self._credentials()
        return {
            "content-type": "application/json; charset=utf-8",
            "accept": "application/json",
            "authorization": f"Bearer {token}",
            "appkey": app_key,
            "appsecret": app_secret,
            "tr_id": tr_id,
            "custtype": self._custtype,
        }

    async def get(
        self,
        path: str,
        tr_id: str,
        params: Optional[Mapping[str, Any]] = None,
    ) -> tuple[int, Dict[str, str], str]:
        headers = await self._headers(tr_id)
        query = {str(k): "" if v is None else str(v) for k, v in (params or {}).items()}
        return await self._http.request("GET", path, headers=headers, params=query or None)


__all__ = ["KisClient"]
