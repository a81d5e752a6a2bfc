"""Tests for the source registry: missing-value predicate, path lookup, normalizers."""
from __future__ import annotations

from datetime import UTC, datetime

import pytest

from dealflow.sources import (
    REGISTRY,
    get_nested_value,
    is_missing,
    normalize_employee_count,
    normalize_founding_year,
    normalize_text,
    providers_for,
)


class TestIsMissing:
    @pytest.mark.parametrize("value", ["", "Not Found", "  not listed  ", None, "   ", "NOT FOUND"])
    def test_missing_values(self, value):
        assert is_missing(value) is True

    @pytest.mark.parametrize("value", [0, "0", False, 0.0, "n/a", [], {}])
    def test_present_values(self, value):
        assert is_missing(value) is False


class TestGetNestedValue:
    def test_top_level(self):
        assert get_nested_value({"a": 1}, "a") == 1

    def test_nested(self):
        assert get_nested_value({"a": {"b": {"c": "x"}}}, "a.b.c") == "x"

    def test_missing_segment(self):
        assert get_nested_value({"a": {}}, "a.b.c") is None

    def test_intermediate_not_mapping(self):
        assert get_nested_value({"a": "text"}, "a.b") is None
        assert get_nested_value({"a": [1, 2]}, "a.0") is None

    def test_none_object(self):
        assert get_nested_value(None, "a") is None

    def test_falsy_leaf_is_returned(self):
        assert get_nested_value({"a": {"b": 0}}, "a.b") == 0

    def test_non_string_path_raises(self):
        with pytest.raises(TypeError):
            get_nested_value({"a": 1}, ["a"])  # type: ignore[arg-type]


class TestEmployeeCount:
    def test_number_passthrough(self):
        assert normalize_employee_count(42) == 42
        assert normalize_employee_count(12.5) == 12.5

    def test_numeric_string(self):
        assert normalize_employee_count("250") == 250

    def test_range_takes_first_integer(self):
        assert normalize_employee_count("11-50") == 11
        assert normalize_employee_count("1,001-5,000 employees") == 1

    def test_unparseable_is_zero(self):
        assert normalize_employee_count("abc") == 0
        assert is_missing(normalize_employee_count("abc")) is False

    def test_missing_stays_missing(self):
        assert normalize_employee_count(None) is None
        assert normalize_employee_count("Not Found") is None


class TestFoundingYear:
    def test_year_number(self):
        assert normalize_founding_year(2015) == 2015

    def test_float_year(self):
        assert normalize_founding_year(2015.0) == 2015

    def test_iso_date(self):
        assert normalize_founding_year("2019-03-01") == 2019

    def test_iso_datetime_with_zulu(self):
        assert normalize_founding_year("2019-03-01T00:00:00Z") == 2019

    def test_datetime_object(self):
        assert normalize_founding_year(datetime(2012, 5, 1, tzinfo=UTC)) == 2012

    def test_loose_text_with_year(self):
        assert normalize_founding_year("Founded in March 2011") == 2011

    def test_garbage_is_miss(self):
        assert normalize_founding_year("sometime ago") is None
        assert normalize_founding_year(float("nan")) is None
        assert normalize_founding_year(True) is None

    def test_infinite_float_is_miss(self):
        assert normalize_founding_year(float("inf")) is None
        assert normalize_founding_year(float("-inf")) is None


class TestText:
    def test_string(self):
        assert normalize_text("  B2B SaaS ") == "B2B SaaS"

    def test_non_string_is_miss(self):
        assert normalize_text(42) is None
        assert normalize_text({"model": "saas"}) is None

    def test_placeholder_is_miss(self):
        assert normalize_text("not listed") is None


class TestRegistry:
    def test_known_facts(self):
        assert set(REGISTRY) == {"employee_count", "founding_year", "business_model"}

    def test_employee_count_order(self):
        labels = [c.label for c in REGISTRY["employee_count"].candidates]
        assert labels == ["LinkedIn Export", "Crunchbase", "LinkedIn Export (Stored)", "Crunchbase (Stored)"]
        assert [c.confidence for c in REGISTRY["employee_count"].candidates] == ["high", "medium", "medium", "medium"]

    def test_founding_year_confidence(self):
        assert all(c.confidence == "high" for c in REGISTRY["founding_year"].candidates)

    def test_providers_for_dedupes(self):
        assert providers_for("employee_count") == ["linkedin_export", "crunchbase_export", "vc_datapoints"]

    def test_fallback_messages(self):
        assert REGISTRY["employee_count"].fallback_message == "Require more information. Add LinkedIn or Crunchbase"
        assert "market research" in REGISTRY["business_model"].fallback_message
