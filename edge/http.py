"""HTTP client abstractions for upstream KIS calls."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, Optional

import aiohttp

from config import DEFAULT_BASE_URL, DEFAULT_HTTP_TIMEOUT

from .errors import UpstreamTimeout
from .logging import get_correlation_id, log_error, log_request


class EdgeHttpClient:
    """Wrapper around aiohttp that enforces a deadline and logs requests."""

    def __init__(self, base_url: Optional[str] = None, *, timeout: float = DEFAULT_HTTP_TIMEOUT) -> None:
        resolved_base = (base_url or DEFAULT_BASE_URL).strip() or DEFAULT_BASE_URL
        self._base_url = resolved_base.rstrip('/')
        self._timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def startup(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def shutdown(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def timeout(self) -> float:
        return self._timeout

    async def request(
        self,
        method: str,
        path: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> tuple[int, Dict[str, str], str]:
        if self._session is None:
            raise RuntimeError("HTTP client has not been started")

        url = f"{self._base_url}{path}"
        request_headers: Dict[str, str] = {"accept": "application/json"}
        if headers:
            request_headers.update(headers)
        correlation_id = get_correlation_id()
        if correlation_id:
            request_headers.setdefault("X-Correlation-ID", correlation_id)

        start = time.perf_counter()
        try:
            response = await self._session.request(
                method.upper(), url, headers=request_headers, **kwargs
            )
            body = await response.text()
            elapsed = time.perf_counter() - start
            log_request(method.upper(), url, response.status, elapsed)
            response_headers = {k: v for k, v in response.headers.items()}
            await response.release()
            return response.status, response_headers, body
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError as exc:
            log_error("http_timeout", method=method.upper(), url=url, timeout_s=self._timeout)
            raise UpstreamTimeout(url, self._timeout) from exc
        except Exception as exc:
            log_error("http_error", method=method.upper(), url=url, error=str(exc))
            raise
