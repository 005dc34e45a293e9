"""Per-day field series over the KIS investor-trade-by-day report.

The upstream answers a date query with a block of daily rows, an empty
envelope on non-trading days, or an error envelope. ``SeriesFetcher`` turns
that into exactly one :class:`SeriesPoint` per requested calendar date.
"""

from __future__ import annotations

import asyncio
import json
import math
import re
from dataclasses import dataclass, field as dataclass_field
from datetime import date, datetime, timedelta
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union

import aiohttp
from pydantic import BaseModel, ConfigDict

from config import DEFAULT_PATHS, DEFAULT_TR_IDS, KST

from .errors import FieldNotFound, UpstreamTimeout
from .logging import log_error, log_event

MIN_DAYS = 1
MAX_DAYS = 60
MAX_STEP_BACK = 7
DEFAULT_FIELD = "fb"

PER_DATE = "per_date"
SLICE = "slice"
FETCH_MODES = (PER_DATE, SLICE)

FIELD_ALIASES: Mapping[str, str] = MappingProxyType({
    "fb": "frgn_shnu_vol",
    "fs": "frgn_seln_vol",
    "fnb": "frgn_ntby_tr_pbmn",
    "ob": "orgn_shnu_vol",
    "os": "orgn_seln_vol",
    "onb": "orgn_ntby_tr_pbmn",
})

# Priority order; output2 holds the daily rows of the investor-by-day report.
CONTAINER_KEYS: Tuple[str, ...] = ("output2", "output", "output1", "data", "result", "items", "records")
REPORT_DATE_FIELD = "stck_bsop_date"

_MISSING = object()
_NUMBER_NOISE = re.compile(r"[,\s]+")

KisGet = Callable[[str, str, Mapping[str, Any]], Awaitable[Tuple[int, Dict[str, str], str]]]


class SeriesPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    date: str
    status: int
    value: Optional[Union[int, float, str]] = None
    source_date: Optional[str] = None


def is_empty_day(payload: Any, schema: "UpstreamSchema") -> bool:
    """True when ``payload`` carries no report data.

    That is a non-object body, an error envelope (``rt_cd`` other than "0"),
    or an envelope in which none of the container keys holds anything.
    """
    if not isinstance(payload, dict):
        return True
    rt_cd = payload.get("rt_cd")
    if rt_cd is not None and str(rt_cd).strip() != "0":
        return True
    for key in schema.containers:
        value = get_ci(payload, key)
        if isinstance(value, (list, dict)) and value:
            return False
    return True


@dataclass(frozen=True)
class UpstreamSchema:
    """Shape of the report being searched: aliases, containers, date column, emptiness rule."""

    aliases: Mapping[str, str] = dataclass_field(default_factory=lambda: FIELD_ALIASES)
    containers: Tuple[str, ...] = CONTAINER_KEYS
    date_field: str = REPORT_DATE_FIELD
    is_empty: Callable[[Any, "UpstreamSchema"], bool] = is_empty_day


DEFAULT_SCHEMA = UpstreamSchema()


@dataclass(frozen=True)
class SeriesOptions:
    anchor: Optional[Union[date, str]] = None
    mode: str = PER_DATE
    keep_raw: bool = False
    market: str = "J"
    max_step_back: int = MAX_STEP_BACK


def clamp_days(days: Any) -> int:
    try:
        value = int(days)
    except (TypeError, ValueError):
        return MIN_DAYS
    return max(MIN_DAYS, min(MAX_DAYS, value))


def resolve_field(field: Optional[str], aliases: Mapping[str, str] = FIELD_ALIASES) -> str:
    name = (field or DEFAULT_FIELD).strip()
    return aliases.get(name.lower(), name)


def parse_date(value: Union[date, str]) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    for fmt in ("%Y%m%d", "%Y-%m-%d"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Unrecognised date: {value!r}")


def format_date(value: date) -> str:
    return value.strftime("%Y%m%d")


def today_kst() -> date:
    return datetime.now(KST).date()


def requested_dates(
    days: int,
    anchor: Optional[Union[date, str]] = None,
    *,
    today: Callable[[], date] = today_kst,
) -> List[str]:
    start = parse_date(anchor) if anchor else today()
    return [format_date(start - timedelta(days=offset)) for offset in range(clamp_days(days))]


def get_ci(obj: Mapping[str, Any], key: str, default: Any = None) -> Any:
    if key in obj:
        return obj[key]
    target = key.lower()
    for name, value in obj.items():
        if str(name).lower() == target:
            return value
    return default


def find_field(obj: Any, key: str, default: Any = None) -> Any:
    """Depth-first, case-insensitive search for ``key``; first match wins.

    Nodes are tracked by identity so self-referential structures terminate.
    """
    target = (key or "").lower()
    seen: set[int] = set()

    def visit(node: Any) -> Any:
        if not isinstance(node, (dict, list)):
            return _MISSING
        if id(node) in seen:
            return _MISSING
        seen.add(id(node))

        if isinstance(node, dict):
            for name, value in node.items():
                if str(name).lower() == target:
                    return value
            children = node.values()
        else:
            children = node
        for child in children:
            found = visit(child)
            if found is not _MISSING:
                return found
        return _MISSING

    found = visit(obj)
    return default if found is _MISSING else found


def extract_field(
    payload: Any,
    key: str,
    containers: Tuple[str, ...] = CONTAINER_KEYS,
    default: Any = None,
) -> Any:
    if isinstance(payload, dict):
        for container in containers:
            node = get_ci(payload, container, _MISSING)
            if node is _MISSING:
                continue
            found = find_field(node, key, _MISSING)
            if found is not _MISSING:
                return found
    return find_field(payload, key, default)


def to_number(value: Any) -> Optional[Union[int, float]]:
    """Parse ``value`` as a finite number, tolerating commas and whitespace."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if not isinstance(value, str):
        return None
    text = _NUMBER_NOISE.sub("", value)
    if not text or "_" in text:
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def normalise_value(raw: Any, *, keep_raw: bool = False) -> Optional[Union[int, float, str]]:
    number = to_number(raw)
    if number is not None:
        return number
    if keep_raw and isinstance(raw, str):
        return raw
    return None


def _is_blank(value: Any) -> bool:
    return value is _MISSING or value is None or (isinstance(value, str) and not value.strip())


def row_date(row: Any, date_field: str) -> Optional[str]:
    if not isinstance(row, dict):
        return None
    raw = get_ci(row, date_field)
    if raw is None:
        return None
    text = str(raw).replace("-", "").strip()
    return text or None


def payload_rows(payload: Any, schema: UpstreamSchema = DEFAULT_SCHEMA) -> List[Dict[str, Any]]:
    """Rows of the first container that holds any, in upstream order."""
    if not isinstance(payload, dict):
        return []
    for key in schema.containers:
        node = get_ci(payload, key)
        if isinstance(node, list):
            rows = [row for row in node if isinstance(row, dict) and row]
            if rows:
                return rows
        elif isinstance(node, dict) and node:
            return [node]
    return []


def value_for_date(payload: Any, field: str, day: str, schema: UpstreamSchema = DEFAULT_SCHEMA) -> Any:
    """Raw value of ``field`` reported for ``day``, or ``_MISSING`` when there is none.

    When the rows carry a report date, only the row for ``day`` counts; a block
    that starts on an earlier trading day means ``day`` itself had no session.
    """
    if schema.is_empty(payload, schema):
        return _MISSING
    dated = [row for row in payload_rows(payload, schema) if row_date(row, schema.date_field)]
    if dated:
        matching = [row for row in dated if row_date(row, schema.date_field) == day]
        if not matching:
            return _MISSING
        # Sibling rows belong to other sessions; only the matching row counts.
        raw = find_field(matching[0], field, _MISSING)
    else:
        raw = extract_field(payload, field, schema.containers, _MISSING)
    return _MISSING if _is_blank(raw) else raw


class SeriesFetcher:
    """Build a field series for one security from the investor-by-day report."""

    def __init__(
        self,
        kis_get: KisGet,
        *,
        path: str = DEFAULT_PATHS["INVEST"],
        tr_id: str = DEFAULT_TR_IDS["INVEST"],
        schema: UpstreamSchema = DEFAULT_SCHEMA,
        concurrency: int = 4,
        today: Callable[[], date] = today_kst,
    ) -> None:
        self._get = kis_get
        self._path = path
        self._tr_id = tr_id
        self._schema = schema
        self._concurrency = max(1, concurrency)
        self._today = today

    @property
    def schema(self) -> UpstreamSchema:
        return self._schema

    async def fetch_series(
        self,
        code: str,
        field: Optional[str],
        days: Any,
        options: Optional[SeriesOptions] = None,
    ) -> List[SeriesPoint]:
        options = options or SeriesOptions()
        if options.mode not in FETCH_MODES:
            raise ValueError(f"Unknown fetch mode: {options.mode!r}")
        canonical = resolve_field(field, self._schema.aliases)
        dates = requested_dates(clamp_days(days), options.anchor, today=self._today)

        if options.mode == SLICE:
            return await self._fetch_sliced(code, canonical, dates, options)

        semaphore = asyncio.Semaphore(self._concurrency)

        async def resolve(day: str) -> SeriesPoint:
            async with semaphore:
                try:
                    return await self._resolve_date(code, canonical, day, options)
                except FieldNotFound as exc:
                    log_event(
                        "series_exhausted",
                        code=code,
                        field=canonical,
                        date=day,
                        attempts=exc.attempts,
                        status=exc.last_status,
                    )
                    return SeriesPoint(date=day, status=exc.last_status, value=None)

        return list(await asyncio.gather(*(resolve(day) for day in dates)))

    async def _query(self, code: str, day: str, market: str) -> Tuple[Optional[int], Any]:
        params = {
            "FID_COND_MRKT_DIV_CODE": market,
            "FID_INPUT_ISCD": code,
            "FID_INPUT_DATE_1": day,
            "FID_ORG_ADJ_PRC": "",
            "FID_ETC_CLS_CODE": "",
        }
        try:
            status, _, body = await self._get(self._path, self._tr_id, params)
        except (UpstreamTimeout, aiohttp.ClientError) as exc:
            log_error("series_upstream_error", code=code, date=day, error=str(exc))
            return None, None
        if not 200 <= status < 300:
            return status, None
        try:
            return status, json.loads(body) if body else None
        except ValueError:
            return status, None

    async def _resolve_date(self, code: str, field: str, day: str, options: SeriesOptions) -> SeriesPoint:
        status = 0
        attempt = parse_date(day)
        attempts = options.max_step_back + 1
        for _ in range(attempts):
            attempt_day = format_date(attempt)
            observed, payload = await self._query(code, attempt_day, options.market)
            if observed is not None:
                status = observed
            raw = _MISSING if payload is None else value_for_date(payload, field, attempt_day, self._schema)
            log_event(
                "series_attempt",
                code=code,
                field=field,
                date=day,
                attempt=attempt_day,
                status=observed,
                found=raw is not _MISSING,
            )
            if raw is not _MISSING:
                return SeriesPoint(
                    date=day,
                    status=status,
                    value=normalise_value(raw, keep_raw=options.keep_raw),
                    source_date=attempt_day,
                )
            attempt -= timedelta(days=1)
        raise FieldNotFound(field, day, attempts, status)

    async def _fetch_sliced(
        self, code: str, field: str, dates: List[str], options: SeriesOptions
    ) -> List[SeriesPoint]:
        observed, payload = await self._query(code, dates[0], options.market)
        status = observed or 0
        rows: List[Dict[str, Any]] = []
        if payload is not None and not self._schema.is_empty(payload, self._schema):
            rows = [row for row in payload_rows(payload, self._schema) if row_date(row, self._schema.date_field)]
        rows.sort(key=lambda row: row_date(row, self._schema.date_field) or "", reverse=True)

        points: List[SeriesPoint] = []
        for row in rows[: len(dates)]:
            day = row_date(row, self._schema.date_field)
            raw = find_field(row, field, _MISSING)
            value = None if _is_blank(raw) else normalise_value(raw, keep_raw=options.keep_raw)
            points.append(SeriesPoint(date=day, status=status, value=value, source_date=day))

        # Short upstream blocks are padded so callers always get len(dates) points.
        cursor = parse_date(points[-1].date) if points else parse_date(dates[0]) + timedelta(days=1)
        while len(points) < len(dates):
            cursor -= timedelta(days=1)
            points.append(SeriesPoint(date=format_date(cursor), status=status, value=None))
        log_event("series_sliced", code=code, field=field, rows=len(rows), days=len(dates), status=status)
        return points


__all__ = [
    "CONTAINER_KEYS",
    "DEFAULT_SCHEMA",
    "FETCH_MODES",
    "FIELD_ALIASES",
    "MAX_DAYS",
    "MAX_STEP_BACK",
    "PER_DATE",
    "SLICE",
    "SeriesFetcher",
    "SeriesOptions",
    "SeriesPoint",
    "UpstreamSchema",
    "clamp_days",
    "extract_field",
    "find_field",
    "format_date",
    "is_empty_day",
    "normalise_value",
    "parse_date",
    "requested_dates",
    "resolve_field",
    "to_number",
    "value_for_date",
]
