"""
Tests for the field-level cleansing rules.
"""

from datetime import date

import numpy as np
import pytest

from warehouse_pipeline.cleansing import (
    GENDERS,
    MARITAL_STATUSES,
    PRODUCT_LINES,
    UNKNOWN,
    clean_text,
    is_missing,
    map_country,
    map_crm_gender,
    map_erp_gender,
    map_marital_status,
    map_product_line,
    normalize_category_id,
    parse_date,
    parse_yyyymmdd,
    remove_dashes,
    strip_nas_prefix,
    to_integer_id,
    to_number,
)


class TestIntegerDates:
    """YYYYMMDD integers from the sales extract."""

    @pytest.mark.parametrize("raw, expected", [
        (20240229, date(2024, 2, 29)),
        ("20101229", date(2010, 12, 29)),
        (20101229.0, date(2010, 12, 29)),
        (" 20110105 ", date(2011, 1, 5)),
    ])
    def test_valid_dates(self, raw, expected):
        assert parse_yyyymmdd(raw) == expected

    @pytest.mark.parametrize("raw", [
        20240230,      # Feb 30
        20230229,      # not a leap year
        0,
        2010122,       # seven digits
        201012290,     # nine digits
        "2010-12-29",
        None,
        np.nan,
        20101229.5,
    ])
    def test_invalid_dates_are_absent(self, raw):
        assert parse_yyyymmdd(raw) is None

    def test_parse_date_accepts_datetime_text(self):
        assert parse_date("2023-07-01 00:00:00") == date(2023, 7, 1)
        assert parse_date("not a date") is None
        assert parse_date("  ") is None

    @pytest.mark.parametrize("raw, expected", [
        ("9999-12-31", date(9999, 12, 31)),
        ("1600-01-01", date(1600, 1, 1)),
        ("9999-12-31 00:00:00", date(9999, 12, 31)),
    ])
    def test_parse_date_outside_timestamp_range(self, raw, expected):
        assert parse_date(raw) == expected


class TestNumbers:
    def test_to_number(self):
        assert to_number("12") == 12.0
        assert to_number(" 3.5 ") == 3.5
        assert to_number("abc") is None
        assert to_number(None) is None
        assert to_number(True) is None

    def test_to_integer_id(self):
        assert to_integer_id("11000") == 11000
        assert to_integer_id(11000.0) == 11000
        assert to_integer_id("11000.5") is None
        assert to_integer_id("abc") is None
        assert to_integer_id(np.nan) is None

    def test_is_missing(self):
        assert is_missing(None)
        assert is_missing(np.nan)
        assert not is_missing("")
        assert not is_missing(0)


class TestVocabularies:
    """Every mapping is total and lands in its canonical set."""

    @pytest.mark.parametrize("raw, expected", [
        ("S", "Single"), (" m ", "Married"), ("s", "Single"),
        ("X", UNKNOWN), (None, UNKNOWN), ("", UNKNOWN),
    ])
    def test_marital_status(self, raw, expected):
        assert map_marital_status(raw) == expected

    @pytest.mark.parametrize("raw, expected", [
        ("F", "Female"), ("m", "Male"), ("f ", "Female"),
        ("Female", UNKNOWN), (None, UNKNOWN),
    ])
    def test_crm_gender(self, raw, expected):
        assert map_crm_gender(raw) == expected

    @pytest.mark.parametrize("raw, expected", [
        ("F", "Female"), ("female", "Female"), (" Female\r\n", "Female"),
        ("M", "Male"), ("MALE", "Male"), ("", UNKNOWN), (None, UNKNOWN), ("x", UNKNOWN),
    ])
    def test_erp_gender(self, raw, expected):
        assert map_erp_gender(raw) == expected

    @pytest.mark.parametrize("raw, expected", [
        ("M", "Mountain"), ("r ", "Road"), ("S", "Sports"), ("t", "Touring"),
        ("Z", UNKNOWN), (None, UNKNOWN),
    ])
    def test_product_line(self, raw, expected):
        assert map_product_line(raw) == expected

    @pytest.mark.parametrize("raw, expected", [
        (" de \r\n", "Germany"),
        ("US", "United States"),
        ("usa", "United States"),
        ("", UNKNOWN),
        ("  \r\n", UNKNOWN),
        (None, UNKNOWN),
        ("  Australia\r", "Australia"),
        ("France", "France"),
    ])
    def test_country(self, raw, expected):
        assert map_country(raw) == expected

    def test_mappings_are_closed(self):
        junk = ["", " ", "?", "N/A", None, "\r\n", "married", "FEMALE", 7]
        assert {map_marital_status(v) for v in junk} <= MARITAL_STATUSES
        assert {map_crm_gender(v) for v in junk} <= GENDERS
        assert {map_erp_gender(v) for v in junk} <= GENDERS
        assert {map_product_line(v) for v in junk} <= PRODUCT_LINES


class TestIdentifiers:
    def test_strip_nas_prefix(self):
        assert strip_nas_prefix("NAS000123") == "000123"
        assert strip_nas_prefix("AW00011000") == "AW00011000"
        assert strip_nas_prefix(" NASAW00011000") == "AW00011000"
        assert strip_nas_prefix(None) is None

    def test_remove_dashes(self):
        assert remove_dashes("AW-00011000") == "AW00011000"
        assert remove_dashes("A-B-C") == "ABC"

    def test_normalize_category_id(self):
        assert normalize_category_id("CO_RF") == "CO-RF"
        assert normalize_category_id("CO-RF") == "CO-RF"

    def test_clean_text(self):
        assert clean_text("  Jon ") == "Jon"
        assert clean_text(None) is None
