import asyncio
import json
import os
import re
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from textwrap import dedent
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4
from urllib.parse import urlparse, urlunparse

import aiohttp
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel

import config
from config import DEFAULT_TOKEN_SAFETY_MARGIN, DEFAULT_TOKEN_TTL, KIS_BASE, KIS_HTTP_TIMEOUT

from .errors import EdgeError, UpstreamHttpError, UpstreamTimeout
from .http import EdgeHttpClient
from .kis import KisClient
from .logging import (
    configure_logging,
    log_duration,
    log_error,
    log_event,
    log_upstream_failure,
    redact,
    reset_correlation_id,
    set_correlation_id,
)
from .series import FETCH_MODES, PER_DATE, SeriesFetcher, SeriesOptions, SeriesPoint, parse_date, resolve_field, to_number
from .token import TokenCache

SERVICE_NAME = "KIS proxy (paper, readonly)"
PRODUCTION_SERVER_URL = "https://kis-edge.vercel.app"
API_BASE_URL = (os.getenv("KIS_BASE") or KIS_BASE).strip().rstrip("/") or config.DEFAULT_BASE_URL
PROXY_API_KEY = config.gateway_key()

SYMBOL_RE = re.compile(r"^\d{6}$")
ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
MAX_SLIM_BYTES = 20_000

configure_logging()


@asynccontextmanager
async def _app_lifespan(application: FastAPI):
    http_client = EdgeHttpClient(API_BASE_URL, timeout=KIS_HTTP_TIMEOUT)
    await http_client.startup()
    token_cache = TokenCache(
        http_client,
        path=config.upstream_path("TOKEN"),
        safety_margin=config.env_float("KIS_TOKEN_SAFETY_MARGIN", DEFAULT_TOKEN_SAFETY_MARGIN),
        default_ttl=config.env_float("KIS_TOKEN_DEFAULT_TTL", DEFAULT_TOKEN_TTL),
    )
    kis_client = KisClient(http_client, token_cache)
    application.state.http_client = http_client
    application.state.token_cache = token_cache
    application.state.kis_client = kis_client
    application.state.series_fetcher = SeriesFetcher(
        kis_client.get,
        path=config.upstream_path("INVEST"),
        tr_id=config.tr_id("INVEST"),
        concurrency=config.env_int("EDGE_SERIES_CONCURRENCY", 4),
    )
    log_event("startup_complete", base_url=API_BASE_URL)
    try:
        yield
    finally:
        try:
            await http_client.shutdown()
        finally:
            for attr in ("http_client", "token_cache", "kis_client", "series_fetcher"):
                setattr(application.state, attr, None)
        log_event("shutdown_complete")


app = FastAPI(title="KIS Edge", version="1.0.0", lifespan=_app_lifespan)


@app.exception_handler(EdgeError)
async def edge_error_handler(_: Request, exc: EdgeError) -> JSONResponse:
    return JSONResponse(exc.problem(), status_code=exc.status, media_type="application/problem+json")

from .extras import router as extras_router
app.include_router(extras_router)


class RateLimiter:
    """Fixed-window request counter keyed by client address."""

    def __init__(self, max_hits: int = 30, window_s: float = 10.0, clock=time.monotonic) -> None:
        self.max_hits = max_hits
        self.window_s = window_s
        self._clock = clock
        self._hits: Dict[str, Tuple[int, float]] = {}

    def allow(self, client: str) -> bool:
        now = self._clock()
        count, started = self._hits.get(client, (0, now))
        if now - started > self.window_s:
            count, started = 0, now
        count += 1
        self._hits[client] = (count, started)
        if len(self._hits) > 10_000:
            self._prune(now)
        return count <= self.max_hits

    def _prune(self, now: float) -> None:
        stale = [key for key, (_, started) in self._hits.items() if now - started > self.window_s]
        for key in stale:
            self._hits.pop(key, None)


rate_limiter = RateLimiter(
    max_hits=config.env_int("EDGE_RATE_LIMIT_MAX_HITS", 30),
    window_s=config.env_float("EDGE_RATE_LIMIT_WINDOW_S", 10.0),
)


def _client_address(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client is not None:
        return request.client.host
    return "0"


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    if not rate_limiter.allow(_client_address(request)):
        log_event("rate_limited", path=str(request.url.path))
        return JSONResponse({"ok": False, "error": "rate_limited"}, status_code=429)
    return await call_next(request)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    return response


@app.middleware("http")
async def correlation_middleware(request: Request, call_next):
    correlation_id = request.headers.get("X-Correlation-ID") or str(uuid4())
    token = set_correlation_id(correlation_id)
    start_time = time.perf_counter()
    try:
        log_event("incoming_request", method=request.method, path=str(request.url.path))
        api_key_header = _gateway_header_value(request)
        log_event("gateway_key_header", present=bool(api_key_header), length=len(api_key_header or ""))
        response = await call_next(request)
        response.headers.setdefault("X-Correlation-ID", correlation_id)
        log_duration("request_complete", start_time, status=response.status_code)
        return response
    finally:
        reset_correlation_id(token)


def _max_retry_attempts() -> int:
    try:
        value = int(os.getenv("KIS_HTTP_MAX_RETRIES", "3"))
    except ValueError:
        value = 3
    return max(1, value)


def _retry_delay(retry_after: Optional[str]) -> float:
    if not retry_after:
        return 1.0
    try:
        return max(float(retry_after), 0.0)
    except ValueError:
        return 1.0


def _is_rate_limited(status: int, body: str) -> bool:
    # KIS reports "transactions per second exceeded" as a 500 carrying EGW00201.
    return status == 429 or (status >= 500 and "EGW00201" in (body or ""))


async def _request_with_retry(
    kis_client: KisClient, path: str, tr_id: str, params: Optional[Dict[str, Any]] = None
) -> tuple[int, Dict[str, str], str]:
    attempts = 0
    max_attempts = _max_retry_attempts()

    while True:
        status, headers, body = await kis_client.get(path, tr_id, params)
        if not _is_rate_limited(status, body):
            return status, headers, body

        attempts += 1
        if attempts >= max_attempts:
            log_error("retry_exhausted", path=path, tr_id=tr_id, status=status)
            raise HTTPException(status_code=429, detail=redact(body) or "rate limited")

        await asyncio.sleep(_retry_delay(headers.get("Retry-After")))


def _gateway_key() -> Optional[str]:
    env_value = config.gateway_key()
    if env_value is not None:
        return env_value
    attr_value = PROXY_API_KEY
    if isinstance(attr_value, str):
        attr_value = attr_value.strip() or None
    return attr_value


def _require_gateway_key(header_key: Optional[str]) -> None:
    expected_key = _gateway_key()
    provided_key = (header_key or "").strip()
    if not expected_key or provided_key != expected_key:
        raise HTTPException(status_code=401, detail="Unauthorized")


def _gateway_header_value(request: Request) -> Optional[str]:
    header_value = request.headers.get("x-api-key")
    if header_value is None:
        header_value = request.headers.get("x-client-token")
    return header_value


def _require_gateway_key_from_request(request: Request) -> None:
    _require_gateway_key(_gateway_header_value(request))


def _kis_credentials_present() -> bool:
    app_key, app_secret = config.app_credentials()
    return bool(app_key and app_secret)


def _require_kis_credentials() -> None:
    if not _kis_credentials_present():
        raise HTTPException(status_code=503, detail="KIS credentials are not configured")


def _resolved_api_base_url() -> str:
    configured = os.getenv("KIS_BASE", "").strip()
    if not configured:
        configured = config.DEFAULT_BASE_URL
    return configured.rstrip("/")


def _normalise_server_url(url: str) -> str:
    parsed = urlparse((url or "").strip() or PRODUCTION_SERVER_URL)
    if not parsed.scheme:
        parsed = parsed._replace(scheme="https")
    if not parsed.netloc:
        parsed = urlparse(PRODUCTION_SERVER_URL)
    normalised_path = parsed.path.rstrip("/") or ""
    return urlunparse(parsed._replace(path=normalised_path))


def _default_server_url() -> str:
    for env_var in ("SERVER_URL", "PUBLIC_BASE_URL", "VERCEL_URL"):
        configured = os.getenv(env_var, "").strip()
        if configured:
            return _normalise_server_url(configured)
    return PRODUCTION_SERVER_URL


def _get_kis_client() -> KisClient:
    client = getattr(app.state, "kis_client", None)
    if client is None:
        raise HTTPException(status_code=500, detail="KIS client is unavailable")
    return client


def _get_series_fetcher() -> SeriesFetcher:
    fetcher = getattr(app.state, "series_fetcher", None)
    if fetcher is None:
        raise HTTPException(status_code=500, detail="Series fetcher is unavailable")
    return fetcher


def _decode_json(body: str) -> Any:
    if not body:
        return {}
    try:
        return json.loads(body)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=502, detail="Invalid JSON from upstream") from exc


def _passthrough_json(status: int, headers: Dict[str, str], body: str) -> Response:
    if status >= 400:
        raise UpstreamHttpError(status, body)
    response = Response(content=body or "", media_type="application/json", status_code=status)
    for name, value in headers.items():
        lower = name.lower()
        if lower in {"content-length", "content-type", "content-encoding", "transfer-encoding", "connection"}:
            continue
        response.headers.setdefault(name, value)
    return response


def _require_symbol(symbol: str) -> str:
    symbol = (symbol or "").strip()
    if not SYMBOL_RE.match(symbol):
        raise HTTPException(
            status_code=400,
            detail={"ok": False, "error": "invalid_symbol", "hint": "use 6-digit KRX code, e.g., 005930"},
        )
    return symbol


def _require_iso_date(value: str) -> str:
    value = (value or "").strip()
    valid = bool(ISO_DATE_RE.match(value))
    if valid:
        try:
            datetime.strptime(value, "%Y-%m-%d")
        except ValueError:
            valid = False
    if not valid:
        raise HTTPException(status_code=400, detail={"ok": False, "error": "invalid_date", "hint": "use YYYY-MM-DD"})
    return value


def _pick(data: Dict[str, Any], keys: List[str]) -> Dict[str, Any]:
    return {key: data[key] for key in keys if key in data}


@app.get("/")
def root():
    return {"ok": True, "service": SERVICE_NAME}


@app.get("/healthz")
def healthz():
    dependencies = {
        "http_client": isinstance(getattr(app.state, "http_client", None), EdgeHttpClient),
        "kis_credentials": _kis_credentials_present(),
        "kis_base_url": bool(API_BASE_URL),
        "gateway_key": bool(_gateway_key()),
    }
    return {
        "ok": all(dependencies.values()),
        "dependencies": dependencies,
    }


@app.get("/api/health", response_class=PlainTextResponse)
def api_health() -> str:
    return "ok"


# -- Token
@app.get("/kis/token")
async def token_preview(request: Request):
    """Issue (or reuse) the bearer token and return a short preview of it."""
    _require_gateway_key_from_request(request)
    _require_kis_credentials()
    token = await _get_kis_client().issue_token()
    return {
        "ok": True,
        "access_token_preview": token.preview(),
        "expires_at": datetime.fromtimestamp(token.expires_at, tz=timezone.utc).isoformat(),
    }


# -- Quotes
@app.get("/api/price")
async def price_passthrough(request: Request, code: str = "", mkt: str = "J"):
    _require_gateway_key_from_request(request)
    _require_kis_credentials()
    status, headers, body = await _request_with_retry(
        _get_kis_client(),
        config.upstream_path("PRICE"),
        config.tr_id("PRICE"),
        {"FID_COND_MRKT_DIV_CODE": mkt, "FID_INPUT_ISCD": code},
    )
    return _passthrough_json(status, headers, body)


@app.get("/kis/price")
async def price_slim(
    request: Request,
    symbol: str = "",
    fields: str = "",
    full: str = "",
):
    """Current quote reduced to the handful of numbers agents actually read.

    `fields=code,price,changeRate` narrows the payload, `full=1` returns the
    upstream `output` block unchanged.
    """
    _require_gateway_key_from_request(request)
    symbol = _require_symbol(symbol)
    _require_kis_credentials()
    status, _, body = await _request_with_retry(
        _get_kis_client(),
        config.upstream_path("PRICE"),
        config.tr_id("PRICE"),
        {"FID_COND_MRKT_DIV_CODE": "J", "FID_INPUT_ISCD": symbol},
    )
    try:
        data = json.loads(body) if body else {}
    except json.JSONDecodeError:
        data = {}
    if not 200 <= status < 300 or not isinstance(data, dict) or data.get("rt_cd") == "1":
        log_upstream_failure("quote_failed", status, body, symbol=symbol)
        raise HTTPException(status_code=502, detail={"ok": False, "error": "quote_failed"})

    output = data.get("output") if isinstance(data.get("output"), dict) else {}
    if full == "1":
        return {"ok": True, "data": output if output.get("stck_shrn_iscd") else data}

    slim = {
        "code": output.get("stck_shrn_iscd"),
        "price": to_number(output.get("stck_prpr")),
        "change": to_number(output.get("prdy_vrss")),
        "changeRate": to_number(output.get("prdy_ctrt")),
        "open": to_number(output.get("stck_oprc")),
        "high": to_number(output.get("stck_hgpr")),
        "low": to_number(output.get("stck_lwpr")),
        "volume": to_number(output.get("acml_vol")),
        "amount": to_number(output.get("acml_tr_pbmn")),
        "foreignerRate": to_number(output.get("hts_frgn_ehrt")),
        "market": output.get("rprs_mrkt_kor_name"),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    payload: Dict[str, Any] = {"ok": True, "data": slim}
    if fields.strip():
        keys = [key.strip() for key in fields.split(",") if key.strip()]
        payload["data"] = _pick(slim, keys or ["code", "price", "changeRate"])
    if len(json.dumps(payload, ensure_ascii=False).encode("utf-8")) > MAX_SLIM_BYTES:
        payload = {"ok": True, "data": _pick(slim, ["code", "price", "changeRate", "volume"]), "truncated": True}
    return JSONResponse(payload, headers={"Cache-Control": "no-store"})


# -- Investor flow
@app.get("/api/investor")
async def investor_passthrough(request: Request, code: str = "", date: str = ""):
    _require_gateway_key_from_request(request)
    _require_kis_credentials()
    status, headers, body = await _request_with_retry(
        _get_kis_client(),
        config.upstream_path("INVEST"),
        config.tr_id("INVEST"),
        {
            "FID_COND_MRKT_DIV_CODE": "J",
            "FID_INPUT_ISCD": code,
            "FID_INPUT_DATE_1": date,
            "FID_ORG_ADJ_PRC": "",
            "FID_ETC_CLS_CODE": "",
        },
    )
    return _passthrough_json(status, headers, body)


class SeriesResponse(BaseModel):
    code: str
    field: str
    days: int
    mode: str
    series: List[SeriesPoint]


@app.get("/api/series", response_model=SeriesResponse)
async def series(
    request: Request,
    code: str = "",
    field: str = "frgn_shnu_vol",
    days: int = Query(5, description="Number of calendar days, clamped to 1..60."),
    date: Optional[str] = Query(None, description="Anchor date (YYYYMMDD or YYYY-MM-DD); defaults to today in KST."),
    mode: str = Query(PER_DATE, description="per_date walks back per day; slice sorts one block locally."),
    raw: bool = Query(False, description="Keep non-numeric values as strings instead of null."),
) -> SeriesResponse:
    """Extract one field of the investor-by-day report across recent days.

    `field` accepts the short aliases fb/fs/fnb/ob/os/onb. Days without data
    are retried up to seven calendar days back; a day that never resolves
    comes back with `value: null` and the last upstream status.
    """
    _require_gateway_key_from_request(request)
    code = re.sub(r"\D", "", code or "")
    if not code or code.strip("0") == "":
        raise HTTPException(status_code=400, detail="code is required")
    code = code.zfill(6)
    if mode not in FETCH_MODES:
        raise HTTPException(status_code=400, detail=f"mode must be one of {', '.join(FETCH_MODES)}")
    if date:
        try:
            parse_date(date)
        except ValueError:
            raise HTTPException(status_code=400, detail="date must be YYYYMMDD or YYYY-MM-DD")
    _require_kis_credentials()

    fetcher = _get_series_fetcher()
    options = SeriesOptions(anchor=date or None, mode=mode, keep_raw=raw)
    points = await fetcher.fetch_series(code, field, days, options)
    return SeriesResponse(
        code=code,
        field=resolve_field(field, fetcher.schema.aliases),
        days=len(points),
        mode=mode,
        series=points,
    )


FLOW_CANDIDATE_PATHS: Tuple[str, ...] = (
    "/uapi/domestic-stock/v1/quotations/inquire-investor",
    "/uapi/domestic-stock/v1/quotations/investor-trade-by-stock-daily",
    "/uapi/domestic-stock/v1/quotations/inquire-investor-volume",
    "/uapi/domestic-stock/v1/quotations/inquire-investor-trend",
)

FOREIGN_VOLUME_KEYS = ["frgn_ntby_qty", "frgn_net_buy_qty", "frgn_nt", "frgn_sm_netb_qty", "frgn_bsop_netqty"]
FOREIGN_VALUE_KEYS = ["frgn_ntby_tr_amt", "frgn_ntby_tr_pbmn", "frgn_net_buy_amt", "frgn_sm_netb_tr_am", "frgn_bsop_netamt"]
INSTITUTION_VOLUME_KEYS = ["orgn_ntby_qty", "inst_sum_ntby_qty", "org_ntby_qty", "inst_net_buy_qty"]
INSTITUTION_VALUE_KEYS = ["orgn_ntby_tr_amt", "orgn_ntby_tr_pbmn", "inst_sum_ntby_tr_amt", "org_ntby_tr_amt", "inst_net_buy_amt"]


def _flow_paths() -> List[str]:
    paths: List[str] = []
    override = config.env_str("KIS_FLOW_PATH")
    if override:
        paths.append(override if override.startswith("/") else f"/{override}")
    paths.extend(path for path in FLOW_CANDIDATE_PATHS if path not in paths)
    return paths


def _flow_params(symbol: str, ymd: str) -> List[Dict[str, str]]:
    return [
        {"FID_COND_MRKT_DIV_CODE": "J", "FID_INPUT_ISCD": symbol, "FID_INPUT_DATE_1": ymd},
        {"FID_COND_MRKT_DIV_CODE": "J", "FID_INPUT_ISCD": symbol, "FID_INPUT_DATE": ymd},
        {"FID_INPUT_ISCD": symbol, "FID_INPUT_YYYYMMDD": ymd},
    ]


def _pick_number(data: Any, keys: List[str]) -> float:
    if not isinstance(data, dict):
        return 0
    for key in keys:
        value = to_number(data.get(key))
        if value:
            return value
    return 0


def _flow_row(data: Dict[str, Any]) -> Dict[str, Any]:
    for key in ("output", "output2", "output1", "data", "result"):
        node = data.get(key)
        if isinstance(node, list) and node and isinstance(node[0], dict):
            return node[0]
        if isinstance(node, dict) and node:
            return node
    return data


@app.get("/kis/flow")
async def investor_flow(request: Request, symbol: str = "", date: str = ""):
    """Foreign and institutional net buying for one symbol on one day.

    The configured `KIS_FLOW_PATH` is tried first, then the known report paths,
    each with the query shapes different report versions accept.
    """
    _require_gateway_key_from_request(request)
    symbol = _require_symbol(symbol)
    date = _require_iso_date(date)
    _require_kis_credentials()
    ymd = date.replace("-", "")
    kis_client = _get_kis_client()
    trade_tr_id = config.tr_id("INVESTOR_DAILY")

    last_error: Optional[str] = None
    for path in _flow_paths():
        for params in _flow_params(symbol, ymd):
            try:
                status, _, body = await kis_client.get(path, trade_tr_id, params)
            except (UpstreamTimeout, aiohttp.ClientError) as exc:
                last_error = f"fetch_err @ {path}: {exc}"
                continue
            if not 200 <= status < 300:
                last_error = f"HTTP {status} @ {path}"
                continue
            try:
                data = json.loads(body) if body else None
            except json.JSONDecodeError:
                data = None
            if not isinstance(data, dict) or not (data.get("rt_cd") == "0" or data.get("output") or data.get("output2")):
                last_error = f"unexpected_body @ {path}"
                continue
            row = _flow_row(data)
            return {
                "ok": True,
                "symbol": symbol,
                "date": date,
                "foreign": {
                    "netBuyVolume": _pick_number(row, FOREIGN_VOLUME_KEYS),
                    "netBuyValue": _pick_number(row, FOREIGN_VALUE_KEYS),
                },
                "institution": {
                    "netBuyVolume": _pick_number(row, INSTITUTION_VOLUME_KEYS),
                    "netBuyValue": _pick_number(row, INSTITUTION_VALUE_KEYS),
                },
            }

    log_error("upstream_no_flow_data", symbol=symbol, date=date, detail=redact(last_error))
    return JSONResponse(
        {"ok": False, "error": "upstream_no_flow_data", "detail": redact(last_error)},
        status_code=502,
    )


# -- Balance
@app.get("/api/balance")
async def balance_passthrough(
    request: Request,
    cano: str = "",
    prdt: str = "",
    afhr: str = "N",
    inqr: str = "02",
    unpr: str = "01",
    fund: str = "N",
    auto: str = "N",
    prcs: str = "00",
    fk: str = "",
    nk: str = "",
):
    _require_gateway_key_from_request(request)
    _require_kis_credentials()
    params = {
        "CANO": cano or config.env_str("KIS_CANO"),
        "ACNT_PRDT_CD": prdt or config.env_str("KIS_ACNT_PRDT_CD"),
        "AFHR_FLPR_YN": afhr,
        "OFL_YN": "",
        "INQR_DVSN": inqr,
        "UNPR_DVSN": unpr,
        "FUND_STTL_ICLD_YN": fund,
        "FNCG_AMT_AUTO_RDPT_YN": auto,
        "PRCS_DVSN": prcs,
        "CTX_AREA_FK100": fk,
        "CTX_AREA_NK100": nk,
    }
    status, headers, body = await _request_with_retry(
        _get_kis_client(), config.upstream_path("BALANCE"), config.tr_id("BALANCE"), params
    )
    return _passthrough_json(status, headers, body)


def _simplify_balance(data: Dict[str, Any]) -> Dict[str, Any]:
    holdings = [
        {
            "name": entry.get("prdt_name"),
            "code": entry.get("pdno"),
            "qty": to_number(entry.get("hldg_qty")),
            "price": to_number(entry.get("prpr")),
        }
        for entry in (data.get("output1") or [])
        if isinstance(entry, dict)
    ]
    summary_rows = data.get("output2") or []
    summary = summary_rows[0] if isinstance(summary_rows, list) and summary_rows else {}
    if not isinstance(summary, dict):
        summary = {}
    return {
        "ok": True,
        "holdings": holdings,
        "summary": {
            "eval_amount": to_number(summary.get("scts_evlu_amt")),
            "eval_profit": to_number(summary.get("evlu_pfls_smtl_amt")),
            "total_eval": to_number(summary.get("tot_evlu_amt")),
        },
    }


@app.get("/kis/balance")
async def balance_summary(request: Request):
    """Holdings and account totals for the configured account."""
    _require_gateway_key_from_request(request)
    _require_kis_credentials()
    params = {
        "CANO": config.env_str("KIS_CANO"),
        "ACNT_PRDT_CD": config.env_str("KIS_ACNT_PRDT_CD"),
        "AFHR_FLPR_YN": "N",
        "OFL_YN": "N",
        "INQR_DVSN": "02",
        "UNPR_DVSN": "01",
        "FUND_STTL_ICLD_YN": "N",
        "FNCG_AMT_AUTO_RDPT_YN": "N",
        "PRCS_DVSN": "01",
        "CTX_AREA_FK100": "",
        "CTX_AREA_NK100": "",
    }
    status, _, body = await _request_with_retry(
        _get_kis_client(), config.upstream_path("BALANCE"), config.tr_id("BALANCE"), params
    )
    if status >= 400:
        raise UpstreamHttpError(status, body)
    data = _decode_json(body)
    if not isinstance(data, dict):
        raise HTTPException(status_code=502, detail="Unexpected balance payload")
    return _simplify_balance(data)


# -- Orders
@app.api_route("/kis/order", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
async def orders_disabled(request: Request):
    _require_gateway_key_from_request(request)
    return JSONResponse({"ok": False, "error": "orders_disabled"}, status_code=403)


cors_origins_env = os.getenv("EDGE_CORS_ALLOW_ORIGINS", "")
allowed_origins = [origin.strip() for origin in cors_origins_env.split(",") if origin.strip()]

app.add_middleware(GZipMiddleware, minimum_size=500)
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins or ["*"],
    allow_methods=["GET", "OPTIONS"],
    allow_headers=["*"],
)


def _build_openapi_schema(routes) -> Dict[str, Any]:
    schema = get_openapi(
        title="KIS Edge",
        version=app.version,
        routes=routes,
    )

    components = schema.setdefault("components", {})
    security_schemes = components.setdefault("securitySchemes", {})
    security_schemes["EdgeApiKey"] = {"type": "apiKey", "in": "header", "name": "X-API-Key"}
    schema["security"] = [{"EdgeApiKey": []}]

    info = schema.setdefault("info", {})
    info["description"] = dedent("""
        Read-only proxy for the KIS Open API. Every route except `/`, `/healthz`
        and `/api/health` requires the `X-API-Key` (or `X-Client-Token`) header.
        Upstream failures are reported as `application/problem+json` with the
        upstream body redacted and truncated. Order placement is disabled.
    """).strip()

    paths = schema.setdefault("paths", {})
    for path in ("/", "/healthz", "/api/health"):
        for operation in paths.get(path, {}).values():
            if isinstance(operation, dict):
                operation["security"] = []
    return schema


def _custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema

    schema = _build_openapi_schema(app.routes)
    schema["servers"] = [{"url": _default_server_url()}]

    app.openapi_schema = schema
    return app.openapi_schema


app.openapi = _custom_openapi  # type: ignore[method-assign]
