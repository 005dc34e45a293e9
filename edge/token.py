"""Process-wide OAuth bearer token cache with single-flight refresh."""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Tuple

import aiohttp

from config import DEFAULT_PATHS, DEFAULT_TOKEN_SAFETY_MARGIN, DEFAULT_TOKEN_TTL, KST, app_credentials

from .errors import TokenIssuanceError
from .http import EdgeHttpClient
from .logging import log_error, log_event, log_upstream_failure, redact

EXPIRY_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(frozen=True)
class CachedToken:
    value: str
    expires_at: float

    def preview(self) -> str:
        return self.value[:10] + "..."


def parse_expiry(raw: object, now: float, default_ttl: float) -> float:
    """Epoch seconds for ``access_token_token_expired``, or ``now + default_ttl``."""
    if isinstance(raw, str) and raw.strip():
        try:
            expires = datetime.strptime(raw.strip(), EXPIRY_FORMAT).replace(tzinfo=KST)
        except ValueError:
            return now + default_ttl
        return expires.timestamp()
    return now + default_ttl


def _mark_outcome_read(task: "asyncio.Future[CachedToken]") -> None:
    # Every waiter may have been cancelled before a failure lands.
    if not task.cancelled():
        task.exception()


class TokenCache:
    """Hands out a valid bearer token, issuing at most one upstream request at a time.

    A cached token is reused until ``safety_margin`` seconds before it expires.
    Callers arriving while a refresh is running await the same task, so they all
    observe the same token or the same :class:`TokenIssuanceError`. Issuance is
    never retried here; a failure reaches every waiter and nothing is cached.
    """

    def __init__(
        self,
        http_client: EdgeHttpClient,
        *,
        credentials: Callable[[], Tuple[str, str]] = app_credentials,
        path: str = DEFAULT_PATHS["TOKEN"],
        safety_margin: float = DEFAULT_TOKEN_SAFETY_MARGIN,
        default_ttl: float = DEFAULT_TOKEN_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._http = http_client
        self._credentials = credentials
        self._path = path
        self._safety_margin = safety_margin
        self._default_ttl = default_ttl
        self._clock = clock
        self._token: Optional[CachedToken] = None
        self._pending: Optional[asyncio.Future] = None

    @property
    def cached(self) -> Optional[CachedToken]:
        return self._token

    @property
    def refreshing(self) -> bool:
        return self._pending is not None

    def is_fresh(self, token: Optional[CachedToken]) -> bool:
        if token is None:
            return False
        return self._clock() < token.expires_at - self._safety_margin

    def invalidate(self) -> None:
        self._token = None

    async def get_token(self) -> str:
        token = await self.get_cached_token()
        return token.value

    async def get_cached_token(self) -> CachedToken:
        token = self._token
        if self.is_fresh(token):
            return token
        if self._pending is None:
            self._pending = asyncio.ensure_future(self._issue())
            self._pending.add_done_callback(_mark_outcome_read)
        # A cancelled caller must not cancel the refresh other callers wait on.
        return await asyncio.shield(self._pending)

    async def _issue(self) -> CachedToken:
        try:
            app_key, app_secret = self._credentials()
            if not app_key or not app_secret:
                log_error("token_issue_failed", status=0, reason="missing_credentials")
                raise TokenIssuanceError(0, "KIS_APP_KEY / KIS_APP_SECRET are not configured")

            payload = {
                "grant_type": "client_credentials",
                "appkey": app_key,
                "appsecret": app_secret,
            }
            try:
                status, _, body = await self._http.request(
                    "POST",
                    self._path,
                    headers={"content-type": "application/json; charset=utf-8"},
                    json=payload,
                )
            except aiohttp.ClientError as exc:
                log_error("token_issue_failed", status=0, error=redact(str(exc)))
                raise TokenIssuanceError(0, str(exc)) from exc

            try:
                data = json.loads(body) if body else {}
            except ValueError:
                data = {}
            access_token = data.get("access_token") if isinstance(data, dict) else None
            if not 200 <= status < 300 or not access_token:
                log_upstream_failure("token_issue_failed", status, body)
                raise TokenIssuanceError(status, body)

            now = self._clock()
            expires_at = parse_expiry(data.get("access_token_token_expired"), now, self._default_ttl)
            token = CachedToken(value=str(access_token), expires_at=expires_at)
            self._token = token
            log_event("token_issued", expires_in_s=round(expires_at - now, 1))
            return token
        finally:
            self._pending = None


__all__ = ["CachedToken", "TokenCache", "parse_expiry"]
