import json
from datetime import date
from typing import Any, Callable, Dict, List

import aiohttp
import pytest

from edge.errors import TokenIssuanceError, UpstreamTimeout
from edge.series import (
    _MISSING,
    DEFAULT_SCHEMA,
    SLICE,
    SeriesFetcher,
    SeriesOptions,
    UpstreamSchema,
    clamp_days,
    extract_field,
    find_field,
    is_empty_day,
    normalise_value,
    requested_dates,
    resolve_field,
    to_number,
    value_for_date,
)

TODAY = date(2025, 9, 10)

# Upstream answer for a non-trading day: the three-key envelope and nothing else.
EMPTY_DAY = {"rt_cd": "0", "msg_cd": "MCA00000", "msg1": "정상처리 되었습니다."}


def day_payload(*days: str, value: Any = "1,234") -> Dict[str, Any]:
    return {
        "rt_cd": "0",
        "msg_cd": "MCA00000",
        "output1": {"stck_prpr": "70,000", "prdy_vrss": "-500"},
        "output2": [
            {"stck_bsop_date": day, "frgn_shnu_vol": value, "frgn_seln_vol": "10", "orgn_shnu_vol": "7"}
            for day in days
        ],
    }


class FakeUpstream:
    def __init__(self, handler: Callable[[str], Any]) -> None:
        self.handler = handler
        self.calls: List[Dict[str, str]] = []

    async def __call__(self, path, tr_id, params):
        self.calls.append({"path": path, "tr_id": tr_id, **params})
        result = self.handler(params["FID_INPUT_DATE_1"])
        if isinstance(result, BaseException):
            raise result
        status, payload = result
        body = payload if isinstance(payload, str) else json.dumps(payload)
        return status, {"Content-Type": "application/json"}, body

    def dates(self) -> List[str]:
        return [call["FID_INPUT_DATE_1"] for call in self.calls]


def make_fetcher(handler, **kwargs):
    upstream = FakeUpstream(handler)
    return SeriesFetcher(upstream, today=lambda: TODAY, **kwargs), upstream


@pytest.mark.asyncio
async def test_three_days_of_foreign_buying():
    fetcher, upstream = make_fetcher(lambda day: (200, day_payload(day)))

    points = await fetcher.fetch_series("005930", "fb", 3)

    assert [point.date for point in points] == ["20250910", "20250909", "20250908"]
    assert [point.value for point in points] == [1234, 1234, 1234]
    assert all(point.status == 200 for point in points)
    assert [point.source_date for point in points] == ["20250910", "20250909", "20250908"]
    assert upstream.calls[0]["FID_INPUT_ISCD"] == "005930"
    assert upstream.calls[0]["FID_COND_MRKT_DIV_CODE"] == "J"
    assert upstream.calls[0]["tr_id"] == "FHPTJ04160001"


@pytest.mark.asyncio
@pytest.mark.parametrize("days", [1, 2, 7, 31, 60])
async def test_series_has_one_point_per_requested_day(days):
    fetcher, _ = make_fetcher(lambda day: (200, day_payload(day)))

    points = await fetcher.fetch_series("005930", "fb", days)

    assert len(points) == days
    assert [point.date for point in points] == requested_dates(days, TODAY)


@pytest.mark.parametrize("raw,expected", [(0, 1), (-4, 1), (100, 60), ("abc", 1), ("12", 12), (None, 1)])
def test_clamp_days(raw, expected):
    assert clamp_days(raw) == expected


@pytest.mark.asyncio
async def test_alias_and_canonical_field_query_the_same_column():
    fetcher, _ = make_fetcher(lambda day: (200, day_payload(day, value="42")))

    by_alias = await fetcher.fetch_series("005930", "FB", 2)
    by_name = await fetcher.fetch_series("005930", "frgn_shnu_vol", 2)

    assert [p.value for p in by_alias] == [p.value for p in by_name] == [42, 42]
    assert resolve_field("fb") == resolve_field("frgn_shnu_vol") == "frgn_shnu_vol"
    assert resolve_field("onb") == "orgn_ntby_tr_pbmn"
    assert resolve_field("custom_Field") == "custom_Field"
    assert resolve_field(None) == "frgn_shnu_vol"


@pytest.mark.asyncio
async def test_exhausted_scan_makes_exactly_eight_attempts():
    fetcher, upstream = make_fetcher(lambda day: (200, EMPTY_DAY))

    points = await fetcher.fetch_series("005930", "fb", 1)

    assert upstream.dates() == [
        "20250910", "20250909", "20250908", "20250907",
        "20250906", "20250905", "20250904", "20250903",
    ]
    assert points[0].value is None
    assert points[0].status == 200
    assert points[0].source_date is None


@pytest.mark.asyncio
async def test_each_requested_day_gets_its_own_bounded_scan():
    fetcher, upstream = make_fetcher(lambda day: (200, EMPTY_DAY))

    points = await fetcher.fetch_series("005930", "fb", 2)

    assert len(upstream.calls) == 16
    assert [p.date for p in points] == ["20250910", "20250909"]
    assert all(p.value is None for p in points)


@pytest.mark.asyncio
async def test_weekend_steps_back_to_last_session():
    # Asked for a weekend day, the report starts at the preceding Friday.
    fetcher, upstream = make_fetcher(lambda day: (200, day_payload("20250905", "20250904")))

    points = await fetcher.fetch_series("005930", "fb", 1, SeriesOptions(anchor="2025-09-07"))

    assert upstream.dates() == ["20250907", "20250906", "20250905"]
    assert points[0].date == "20250907"
    assert points[0].source_date == "20250905"
    assert points[0].value == 1234


@pytest.mark.asyncio
async def test_timeouts_become_null_with_zero_status():
    fetcher, upstream = make_fetcher(lambda day: UpstreamTimeout("https://kis/invest", 10))

    points = await fetcher.fetch_series("005930", "fb", 1)

    assert len(upstream.calls) == 8
    assert points[0].value is None
    assert points[0].status == 0


@pytest.mark.asyncio
async def test_http_errors_record_last_status():
    fetcher, _ = make_fetcher(lambda day: (500, {"rt_cd": "1", "msg1": "server error"}))

    points = await fetcher.fetch_series("005930", "fb", 1)

    assert points[0].value is None
    assert points[0].status == 500


@pytest.mark.asyncio
async def test_status_is_last_observed_even_after_transport_failures():
    def handler(day):
        if day == "20250910":
            return 200, EMPTY_DAY
        return aiohttp.ClientConnectionError("reset")

    fetcher, upstream = make_fetcher(handler)

    points = await fetcher.fetch_series("005930", "fb", 1)

    assert len(upstream.calls) == 8
    assert points[0].status == 200
    assert points[0].value is None


@pytest.mark.asyncio
async def test_unreachable_first_day_does_not_abort_the_rest():
    def handler(day):
        if day == "20250910":
            return UpstreamTimeout("https://kis/invest", 10)
        return 200, day_payload(day)

    fetcher, _ = make_fetcher(handler)

    points = await fetcher.fetch_series("005930", "fb", 3)

    assert points[0].date == "20250910"
    assert points[0].value == 1234
    assert points[0].source_date == "20250909"
    assert [p.value for p in points[1:]] == [1234, 1234]


@pytest.mark.asyncio
async def test_first_day_always_failing_still_yields_other_days():
    def handler(day):
        if day == "20250910":
            return UpstreamTimeout("https://kis/invest", 10)
        return 200, day_payload(day)

    fetcher, _ = make_fetcher(handler)

    points = await fetcher.fetch_series("005930", "fb", 2, SeriesOptions(max_step_back=0))

    assert points[0].value is None
    assert points[0].status == 0
    assert points[1].value == 1234


@pytest.mark.asyncio
async def test_token_failure_propagates():
    fetcher, _ = make_fetcher(lambda day: TokenIssuanceError(400, "bad credentials"))

    with pytest.raises(TokenIssuanceError):
        await fetcher.fetch_series("005930", "fb", 3)


@pytest.mark.asyncio
async def test_malformed_json_counts_as_no_data():
    def handler(day):
        if day == "20250910":
            return 200, "<html>gateway error"
        return 200, day_payload(day)

    fetcher, upstream = make_fetcher(handler)

    points = await fetcher.fetch_series("005930", "fb", 1)

    assert upstream.dates() == ["20250910", "20250909"]
    assert points[0].value == 1234


@pytest.mark.asyncio
async def test_blank_field_counts_as_no_data():
    def handler(day):
        if day == "20250910":
            return 200, day_payload(day, value="  ")
        return 200, day_payload(day, value="9")

    fetcher, upstream = make_fetcher(handler)

    points = await fetcher.fetch_series("005930", "fb", 1)

    assert len(upstream.calls) == 2
    assert points[0].value == 9


@pytest.mark.asyncio
async def test_non_numeric_value_is_null_unless_raw_requested():
    fetcher, upstream = make_fetcher(lambda day: (200, day_payload(day, value="N/A")))

    default_points = await fetcher.fetch_series("005930", "fb", 1)
    raw_points = await fetcher.fetch_series("005930", "fb", 1, SeriesOptions(keep_raw=True))

    assert len(upstream.calls) == 2
    assert default_points[0].value is None
    assert default_points[0].source_date == "20250910"
    assert raw_points[0].value == "N/A"


def test_number_normalisation():
    assert to_number("1,234 ") == 1234
    assert to_number(" 12,345,678\t") == 12345678
    assert to_number("-3.5") == -3.5
    assert to_number(77) == 77
    assert to_number("N/A") is None
    assert to_number("") is None
    assert to_number(True) is None
    assert to_number(float("nan")) is None
    assert to_number("inf") is None
    assert to_number({"v": 1}) is None
    assert to_number("1_000") is None
    assert to_number("1_0.5") is None
    assert normalise_value("N/A") is None
    assert normalise_value("N/A", keep_raw=True) == "N/A"


def test_find_field_terminates_on_cycles():
    node: Dict[str, Any] = {"a": 1}
    node["self"] = node
    looped: List[Any] = []
    looped.append(looped)
    mixed: Dict[str, Any] = {"rows": [{"x": 1}]}
    mixed["rows"].append(mixed)

    assert find_field(node, "missing") is None
    assert find_field(looped, "missing") is None
    assert find_field(mixed, "missing") is None
    assert find_field(node, "A") == 1


def test_find_field_is_case_insensitive_and_recursive():
    payload = {"Output": [{"meta": {}}, {"nested": {"FRGN_SHNU_VOL": "5"}}]}

    assert find_field(payload, "frgn_shnu_vol") == "5"
    assert find_field(payload, "absent", default="fallback") == "fallback"
    assert find_field("not a container", "x") is None


def test_extract_field_prefers_container_order():
    payload = {"output1": {"frgn_shnu_vol": "1"}, "output2": [{"frgn_shnu_vol": "2"}]}
    reversed_order = UpstreamSchema(containers=("output1", "output2"))

    assert extract_field(payload, "frgn_shnu_vol") == "2"
    assert extract_field(payload, "frgn_shnu_vol", reversed_order.containers) == "1"
    assert extract_field({"elsewhere": {"frgn_shnu_vol": "3"}}, "frgn_shnu_vol") == "3"


def test_empty_day_detection():
    assert is_empty_day(EMPTY_DAY, DEFAULT_SCHEMA)
    assert is_empty_day({"rt_cd": "1", "output2": [{"frgn_shnu_vol": "1"}]}, DEFAULT_SCHEMA)
    assert is_empty_day([{"frgn_shnu_vol": "1"}], DEFAULT_SCHEMA)
    assert is_empty_day({"rt_cd": "0", "output2": []}, DEFAULT_SCHEMA)
    assert not is_empty_day(day_payload("20250910"), DEFAULT_SCHEMA)


def test_matching_row_without_the_field_is_not_filled_from_siblings():
    payload = {
        "rt_cd": "0",
        "output1": {"frgn_shnu_vol": "555"},
        "output2": [
            {"stck_bsop_date": "20250910", "frgn_seln_vol": "10"},
            {"stck_bsop_date": "20250909", "frgn_shnu_vol": "999"},
        ],
    }

    assert value_for_date(payload, "frgn_shnu_vol", "20250910") is _MISSING
    assert value_for_date(payload, "frgn_shnu_vol", "20250909") == "999"
    assert value_for_date(day_payload("20250910"), "stck_prpr", "20250910") is _MISSING
    assert value_for_date({"rt_cd": "0", "output1": {"stck_prpr": "70,000"}}, "stck_prpr", "20250910") == "70,000"


@pytest.mark.asyncio
async def test_missing_field_on_the_day_steps_back():
    def handler(day):
        return 200, {
            "rt_cd": "0",
            "output2": [
                {"stck_bsop_date": "20250910", "frgn_seln_vol": "10"},
                {"stck_bsop_date": "20250909", "frgn_shnu_vol": "999"},
            ] if day == "20250910" else [{"stck_bsop_date": day, "frgn_shnu_vol": "42"}],
        }

    fetcher, upstream = make_fetcher(handler)

    points = await fetcher.fetch_series("005930", "fb", 1)

    assert upstream.dates() == ["20250910", "20250909"]
    assert points[0].date == "20250910"
    assert points[0].value == 42
    assert points[0].source_date == "20250909"


@pytest.mark.asyncio
async def test_alternate_schema_can_be_substituted():
    schema = UpstreamSchema(aliases={"vol": "acml_vol"}, containers=("rows",), date_field="date")

    def handler(day):
        iso = f"{day[:4]}-{day[4:6]}-{day[6:]}"
        return 200, {"rows": [{"date": iso, "acml_vol": "3,000"}]}

    fetcher, _ = make_fetcher(handler, schema=schema)

    points = await fetcher.fetch_series("005930", "vol", 2)

    assert [p.value for p in points] == [3000, 3000]


@pytest.mark.asyncio
async def test_slice_mode_sorts_and_slices_one_block():
    block = day_payload("20250908", "20250910", "20250909", "20250905")
    block["output2"][1]["frgn_shnu_vol"] = "30"
    block["output2"][2]["frgn_shnu_vol"] = "20"
    fetcher, upstream = make_fetcher(lambda day: (200, block))

    points = await fetcher.fetch_series("005930", "fb", 3, SeriesOptions(mode=SLICE))

    assert len(upstream.calls) == 1
    assert upstream.dates() == ["20250910"]
    assert [p.date for p in points] == ["20250910", "20250909", "20250908"]
    assert [p.value for p in points] == [30, 20, 1234]


@pytest.mark.asyncio
async def test_slice_mode_pads_short_blocks():
    fetcher, _ = make_fetcher(lambda day: (200, day_payload("20250910", "20250909")))

    points = await fetcher.fetch_series("005930", "fb", 4, SeriesOptions(mode=SLICE))

    assert [p.date for p in points] == ["20250910", "20250909", "20250908", "20250907"]
    assert [p.value for p in points] == [1234, 1234, None, None]


@pytest.mark.asyncio
async def test_slice_mode_failure_returns_requested_days():
    fetcher, _ = make_fetcher(lambda day: UpstreamTimeout("https://kis/invest", 10))

    points = await fetcher.fetch_series("005930", "fb", 3, SeriesOptions(mode=SLICE))

    assert [p.date for p in points] == ["20250910", "20250909", "20250908"]
    assert all(p.value is None and p.status == 0 for p in points)


@pytest.mark.asyncio
async def test_unknown_mode_is_rejected():
    fetcher, _ = make_fetcher(lambda day: (200, EMPTY_DAY))

    with pytest.raises(ValueError):
        await fetcher.fetch_series("005930", "fb", 1, SeriesOptions(mode="sideways"))


def test_requested_dates_accepts_both_date_spellings():
    assert requested_dates(3, "2025-03-02") == ["20250302", "20250301", "20250228"]
    assert requested_dates(2, "20240301") == ["20240301", "20240229"]
    assert requested_dates(1, today=lambda: TODAY) == ["20250910"]
    with pytest.raises(ValueError):
        requested_dates(1, "03/02/2025")
