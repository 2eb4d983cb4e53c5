"""Tests for the spoken amount / date / phone parsers."""

from datetime import datetime

from app.utils.parsing import (
    default_when,
    detect_property_type,
    extract_amounts,
    extract_phone,
    parse_amount,
    parse_when,
)
from tests.conftest import FIXED_NOW, TZ


def test_parse_amount_units():
    assert parse_amount("15 lakh") == 1_500_000.0
    assert parse_amount("2 crore") == 20_000_000.0
    assert parse_amount("1.2 cr") == 12_000_000.0
    assert parse_amount("₹ 1,50,000") == 150_000.0
    assert parse_amount("no money here") is None
    assert parse_amount("") is None


def test_extract_amounts_range_shares_unit():
    assert extract_amounts("budget is 50 to 80 lakh") == [5_000_000.0, 8_000_000.0]


def test_extract_amounts_ignores_bare_numbers():
    assert extract_amounts("3 bedrooms, visit at 4 pm") == []
    assert extract_amounts("between 1 crore and 1.5 crore") == [10_000_000.0, 15_000_000.0]


def test_parse_when_tomorrow_with_time():
    # FIXED_NOW is Wednesday 4 March 2026, 09:30 local
    when = parse_when("tomorrow at 4pm", FIXED_NOW)
    assert when == datetime(2026, 3, 5, 16, 0, tzinfo=TZ)


def test_parse_when_bare_at_hour_means_afternoon():
    assert parse_when("tomorrow at 4", FIXED_NOW).hour == 16


def test_parse_when_day_without_time_defaults_to_ten():
    when = parse_when("friday", FIXED_NOW)
    assert when == datetime(2026, 3, 6, 10, 0, tzinfo=TZ)


def test_parse_when_tonight():
    assert parse_when("tonight", FIXED_NOW) == datetime(2026, 3, 4, 19, 0, tzinfo=TZ)


def test_parse_when_same_weekday_is_next_week():
    assert parse_when("wednesday", FIXED_NOW).date() == datetime(2026, 3, 11).date()


def test_parse_when_month_day_rolls_to_next_year():
    assert parse_when("2nd of january", FIXED_NOW).date() == datetime(2027, 1, 2).date()


def test_parse_when_unrecognised():
    assert parse_when("sometime soon", FIXED_NOW) is None


def test_default_when_is_tomorrow_morning():
    assert default_when(FIXED_NOW) == datetime(2026, 3, 5, 10, 0, tzinfo=TZ)


def test_extract_phone():
    assert extract_phone("call him on 98765 43210 today") == "9876543210"
    assert extract_phone("+91-98765-43210") == "+919876543210"
    assert extract_phone("flat 1203") is None


def test_detect_property_type():
    assert detect_property_type("a 3 BHK flat in Bandra") == "apartment"
    assert detect_property_type("the Sunset Villa") == "villa"
    assert detect_property_type("nothing specific") is None
