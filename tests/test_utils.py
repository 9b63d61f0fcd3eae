import pytest

from grafana_query_mcp.utils import (
    default_time_range,
    normalize_time_range,
    parse_duration_to_seconds,
    parse_interval,
    ref_id_for_index,
    truncate,
)


@pytest.mark.parametrize("text,expected", [("30s", 30_000), ("5m", 300_000), ("2h", 7_200_000), ("1d", 86_400_000)])
def test_parse_interval(text, expected):
    assert parse_interval(text) == expected


@pytest.mark.parametrize("text", ["invalid", "", None, "0m", "10w", "5 m"])
def test_parse_interval_fallback(text):
    assert parse_interval(text) == 10_000


@pytest.mark.parametrize("text,expected", [("500ms", 0.5), ("15s", 15.0), ("2m", 120.0), ("1h", 3600.0), ("42", 42.0)])
def test_parse_duration_to_seconds(text, expected):
    assert parse_duration_to_seconds(text) == expected


def test_parse_duration_to_seconds_default():
    assert parse_duration_to_seconds(None) == 30.0
    assert parse_duration_to_seconds("abc", default=5.0) == 5.0


@pytest.mark.parametrize("index,expected", [(0, "A"), (1, "B"), (25, "Z"), (26, "AA"), (27, "AB"), (51, "AZ"), (52, "BA")])
def test_ref_id_for_index(index, expected):
    assert ref_id_for_index(index) == expected


def test_default_time_range_is_one_hour():
    tr = default_time_range(end_ms=1_609_459_200_000)
    assert tr == {"from": "1609455600000", "to": "1609459200000"}


def test_normalize_time_range():
    assert normalize_time_range({"from": 1, "to": 2}) == {"from": "1", "to": "2"}
    tr = normalize_time_range(None)
    assert int(tr["to"]) - int(tr["from"]) == 3_600_000


def test_truncate():
    assert truncate(None) == ""
    assert truncate("short") == "short"
    assert truncate("x" * 10, limit=4) == "xxxx..."
