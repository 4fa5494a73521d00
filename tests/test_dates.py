"""Tests for timestamp resolution."""

from datetime import UTC, date, datetime, timedelta, timezone

import pytest

from hae_server.dates import parse_date


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("2024-01-15", datetime(2024, 1, 15, tzinfo=UTC)),
        ("2024/01/15", datetime(2024, 1, 15, tzinfo=UTC)),
        ("2024-01-15 08:30:00", datetime(2024, 1, 15, 8, 30, tzinfo=UTC)),
        ("2024/01/15 08:30:00", datetime(2024, 1, 15, 8, 30, tzinfo=UTC)),
        ("2024-01-15T08:30:00Z", datetime(2024, 1, 15, 8, 30, tzinfo=UTC)),
        (1705300000000, datetime(2024, 1, 15, 6, 26, 40, tzinfo=UTC)),
        ("1705300000000", datetime(2024, 1, 15, 6, 26, 40, tzinfo=UTC)),
    ],
)
def test_accepted_formats(raw, expected):
    assert parse_date(raw) == expected


def test_health_auto_export_offset_form():
    """'YYYY-MM-DD HH:MM:SS +HHMM' is resolved to the same UTC instant."""
    parsed = parse_date("2022-06-12 23:59:00 +0400")

    assert parsed == datetime(2022, 6, 12, 19, 59, tzinfo=UTC)
    assert parsed.tzinfo is UTC


def test_offsets_resolve_to_equal_instants():
    assert parse_date("2024-01-15T10:00:00+02:00") == parse_date("2024-01-15 08:00:00 +0000")


@pytest.mark.parametrize(
    "raw",
    ["not-a-date", "", "   ", "yesterday", "2024/13/45", None, True, float("nan"), 1e30, []],
)
def test_unparseable_values_return_none(raw):
    assert parse_date(raw) is None


def test_naive_datetime_is_taken_as_utc():
    assert parse_date(datetime(2024, 1, 15, 8, 0)) == datetime(2024, 1, 15, 8, 0, tzinfo=UTC)


def test_aware_datetime_is_converted_to_utc():
    aware = datetime(2024, 1, 15, 10, 0, tzinfo=timezone(timedelta(hours=2)))

    assert parse_date(aware) == datetime(2024, 1, 15, 8, 0, tzinfo=UTC)


def test_date_becomes_midnight_utc():
    assert parse_date(date(2024, 1, 15)) == datetime(2024, 1, 15, tzinfo=UTC)


@pytest.mark.parametrize("raw", [10**400, -(10**400)])
def test_integer_too_large_for_float_returns_none(raw):
    assert parse_date(raw) is None
