"""Tests for the built-in column transformations."""

from datetime import datetime

import pytest

from databridge.client.exceptions import TransformationError
from databridge.migration.catalog import ColumnMapping
from databridge.migration.stages.transform import transform_value
from databridge.migration.transformations import TRANSFORMATIONS, apply_transformation


class TestTextTransformations:
    @pytest.mark.parametrize(
        "transformation_id,value,expected",
        [
            ("uppercase", "ada", "ADA"),
            ("lowercase", "ADA", "ada"),
            ("trim", "  ada ", "ada"),
            ("uppercase", None, None),
        ],
    )
    def test_case_and_whitespace(self, transformation_id, value, expected):
        assert apply_transformation(transformation_id, value) == expected

    def test_replace(self):
        assert apply_transformation("replace", "a-b-c", {"find": "-", "replace": "/"}) == "a/b/c"

    def test_replace_requires_find(self):
        with pytest.raises(TransformationError):
            apply_transformation("replace", "abc", {})

    def test_substring(self):
        assert apply_transformation("substring", "abcdef", {"start": 1, "length": 3}) == "bcd"
        assert apply_transformation("substring", "abcdef", {"start": 4}) == "ef"


class TestConversions:
    @pytest.mark.parametrize("value,expected", [("1", True), ("0", False), ("yes", True), (0, False)])
    def test_bit_to_boolean(self, value, expected):
        assert apply_transformation("bit-to-boolean", value) is expected

    def test_bit_to_boolean_rejects_text(self):
        with pytest.raises(TransformationError):
            apply_transformation("bit-to-boolean", "maybe")

    def test_date_format_iso(self):
        assert apply_transformation("date-format-iso", "2024-03-05") == "2024-03-05T00:00:00"
        assert (
            apply_transformation("date-format-iso", "05/03/2024", {"sourceFormat": "%d/%m/%Y"})
            == "2024-03-05T00:00:00"
        )

    def test_invalid_date(self):
        with pytest.raises(TransformationError, match="date-format-iso failed"):
            apply_transformation("date-format-iso", "not a date")

    def test_numbers(self):
        assert apply_transformation("to-integer", "42.0") == 42
        assert apply_transformation("to-decimal", "3.14159", {"scale": 2}) == "3.14"
        assert apply_transformation("to-integer", "") is None

    def test_unknown_transformation(self):
        with pytest.raises(TransformationError, match="Unknown transformation"):
            apply_transformation("rot13", "abc")

    def test_registry_lists_builtins(self):
        assert {"uppercase", "default-value", "to-decimal", "round", "add-timezone"} <= set(
            TRANSFORMATIONS
        )


class TestNumericTransformations:
    @pytest.mark.parametrize(
        "config,expected", [({}, "2.68"), ({"decimals": 0}, "3"), ({"decimals": 1}, "2.7")]
    )
    def test_round(self, config, expected):
        assert apply_transformation("round", "2.675", config) == expected

    def test_round_half_away_from_zero(self):
        assert apply_transformation("round", "-0.125") == "-0.13"

    @pytest.mark.parametrize(
        "transformation_id,value,expected",
        [
            ("floor", "2.7", 2),
            ("floor", -2.1, -3),
            ("ceil", "2.1", 3),
            ("ceil", -2.7, -2),
            ("abs", "-4.5", "4.5"),
            ("abs", 3, "3"),
        ],
    )
    def test_integral_and_abs(self, transformation_id, value, expected):
        assert apply_transformation(transformation_id, value) == expected

    def test_multiply_and_divide(self):
        assert apply_transformation("multiply", "10.50", {"multiplier": 2}) == "21.00"
        assert apply_transformation("divide", "10", {"divisor": "4"}) == "2.5"

    def test_empty_values_pass_through(self):
        assert apply_transformation("multiply", None, {"multiplier": 2}) is None
        assert apply_transformation("floor", "") is None

    def test_divide_by_zero(self):
        with pytest.raises(TransformationError, match="non-zero"):
            apply_transformation("divide", "10", {"divisor": 0})

    def test_missing_parameter(self):
        with pytest.raises(TransformationError, match="multiply requires 'multiplier'"):
            apply_transformation("multiply", "10")

    def test_not_a_number(self):
        with pytest.raises(TransformationError, match="ceil failed"):
            apply_transformation("ceil", "ten")


class TestAddTimezone:
    def test_naive_timestamp_defaults_to_utc(self):
        assert apply_transformation("add-timezone", "2024-03-05T10:00:00") == (
            "2024-03-05T10:00:00+00:00"
        )

    def test_naive_timestamp_in_named_zone(self):
        assert apply_transformation(
            "add-timezone", datetime(2024, 1, 15, 9, 30), {"timezone": "Asia/Tokyo"}
        ) == "2024-01-15T09:30:00+09:00"

    def test_aware_timestamp_is_converted(self):
        assert apply_transformation(
            "add-timezone", "2024-07-01T12:00:00+00:00", {"timezone": "America/New_York"}
        ) == "2024-07-01T08:00:00-04:00"

    def test_unknown_zone(self):
        with pytest.raises(TransformationError, match="unknown timezone"):
            apply_transformation("add-timezone", "2024-03-05", {"timezone": "Mars/Olympus"})


class TestTransformValue:
    def test_default_applies_to_empty_result(self):
        column = ColumnMapping(source_column="tier", target_column="tier", default_value="standard")

        assert transform_value(column, None) == "standard"
        assert transform_value(column, "gold") == "gold"

    def test_transformation_then_default(self):
        column = ColumnMapping(
            source_column="code",
            target_column="code",
            transformation_id="to-integer",
            default_value="0",
        )

        assert transform_value(column, "") == "0"
        assert transform_value(column, "7") == 7
