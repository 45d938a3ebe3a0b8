from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from backend.app.market_data import (
    ESTIMATED_TOTAL_RETURN,
    CacheKey,
    ReturnMode,
    build_series,
    normalize_return_mode,
    normalize_rows,
    series_age_seconds,
    series_from_payload,
    series_to_payload,
)


class TestNormalizeRows:
    def test_sorted_and_deduplicated_last_wins(self):
        rows = normalize_rows(
            [
                ["2020-01-03", 12.0],
                ["2020-01-02", 10.0],
                ["2020-01-03", 13.0],
                {"date": "2020-01-01", "close": 9.5},
            ]
        )
        assert rows == [
            (date(2020, 1, 1), 9.5),
            (date(2020, 1, 2), 10.0),
            (date(2020, 1, 3), 13.0),
        ]

    def test_drops_invalid_rows(self):
        rows = normalize_rows(
            [
                ["1984-12-31", 10.0],
                ["2020-01-02", 0],
                ["2020-01-03", -4],
                ["2020-01-06", "nan"],
                ["2020-01-07", "inf"],
                ["not-a-date", 5],
                ["2020-01-08"],
                None,
                ["2020-01-09", "11.5"],
            ]
        )
        assert rows == [(date(2020, 1, 9), 11.5)]

    def test_empty_input(self):
        assert normalize_rows([]) == []
        assert normalize_rows(None) == []


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("price", ReturnMode.PRICE),
        (" PRICE ", ReturnMode.PRICE),
        ("total_return", ReturnMode.TOTAL_RETURN),
        ("anything", ReturnMode.TOTAL_RETURN),
        (None, ReturnMode.TOTAL_RETURN),
        (ReturnMode.PRICE, ReturnMode.PRICE),
    ],
)
def test_normalize_return_mode(raw, expected):
    assert normalize_return_mode(raw) is expected


def test_cache_key_string():
    assert str(CacheKey("sp500", ReturnMode.TOTAL_RETURN)) == "sp500:total_return"


def test_build_series_rejects_empty_history():
    with pytest.raises(ValueError):
        build_series("sp500", "S&P 500", [["1970-01-01", 1.0]], requested_mode=ReturnMode.PRICE)


def test_payload_keeps_kind_and_rounds_closes():
    series = build_series(
        "sp500",
        "S&P 500",
        [["2020-01-02", 100.1234567], ["2020-01-03", 101.0]],
        requested_mode=ReturnMode.TOTAL_RETURN,
        kind=ESTIMATED_TOTAL_RETURN,
        provider="FRED + DividendModel",
        fetched_at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
    )
    payload = series_to_payload(series)
    assert payload["fetchedAt"] == "2024-05-01T12:00:00Z"
    assert payload["isEstimated"] is True
    assert payload["rows"][0] == ["2020-01-02", 100.123457]

    restored = series_from_payload(payload, asset_id="sp500", asset_name="S&P 500", fallback_mode=ReturnMode.PRICE)
    assert restored.kind == ESTIMATED_TOTAL_RETURN
    assert restored.requested_mode is ReturnMode.TOTAL_RETURN
    assert restored.fetched_at == series.fetched_at
    assert abs(restored.rows[0][1] - 100.1234567) < 1e-6


def test_missing_fetch_time_is_treated_as_very_old():
    restored = series_from_payload(
        {"rows": [["2020-01-02", 1.0]]},
        asset_id="sp500",
        asset_name="S&P 500",
        fallback_mode=ReturnMode.PRICE,
    )
    assert restored.requested_mode is ReturnMode.PRICE
    assert series_age_seconds(restored) > 10 * 365 * 24 * 3600
