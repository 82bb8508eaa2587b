"""Tests for inbound date helpers in parse_utils."""

from datetime import date, datetime

import pytest

from fulfillment.parse_utils import coerce_date, parse_date


# ---------------------------------------------------------------------------
# parse_date
# ---------------------------------------------------------------------------

def test_parse_date_dd_mm_yyyy():
    d = parse_date("03/02/2026")
    assert d is not None
    assert d.day == 3
    assert d.month == 2
    assert d.year == 2026


def test_parse_date_iso_is_not_day_first():
    assert parse_date("2020-11-03") == date(2020, 11, 3)


def test_parse_date_dotted():
    assert parse_date("13.11.2020") == date(2020, 11, 13)


def test_parse_date_none():
    assert parse_date(None) is None


def test_parse_date_blank():
    assert parse_date("   ") is None


def test_parse_date_garbage():
    assert parse_date("not a date") is None


# ---------------------------------------------------------------------------
# coerce_date
# ---------------------------------------------------------------------------

def test_coerce_date_passes_dates_through():
    assert coerce_date(date(2020, 11, 13)) == date(2020, 11, 13)


def test_coerce_date_truncates_datetimes():
    assert coerce_date(datetime(2020, 11, 13, 8, 30)) == date(2020, 11, 13)


def test_coerce_date_rejects_unparseable_string():
    with pytest.raises(ValueError):
        coerce_date("nope")


def test_coerce_date_leaves_other_types_for_pydantic():
    assert coerce_date(20201113) == 20201113
