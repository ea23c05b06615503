"""Tests for RuleConditions parsing and canonical rendering."""

from datetime import time
from decimal import Decimal

import pytest

from billing_kernel.domain.rules import AmountRange, RuleConditions, TimeWindow
from billing_kernel.exceptions import InvalidRuleConditionsError, ValidationError


class TestFromDict:
    def test_none_is_wildcard(self):
        assert RuleConditions.from_dict(None).is_wildcard

    def test_full_document(self):
        parsed = RuleConditions.from_dict({
            "category": ["food", "drinks"],
            "amount": {"min": 10, "max": "99.50"},
            "time": {"start": "18:00", "end": "23:30"},
            "dayOfWeek": [5, 6],
            "metadata": {"room": "101"},
        })
        assert parsed.category == ("food", "drinks")
        assert parsed.amount == AmountRange(Decimal("10"), Decimal("99.50"))
        assert parsed.time == TimeWindow(time(18, 0), time(23, 30))
        assert parsed.day_of_week == frozenset({5, 6})
        assert dict(parsed.metadata) == {"room": "101"}

    def test_snake_case_day_of_week(self):
        assert RuleConditions.from_dict({"day_of_week": [0]}).day_of_week == frozenset({0})

    def test_scalar_metadata_values_held_as_text(self):
        parsed = RuleConditions.from_dict({"metadata": {"floor": 3, "vip": True, "rate": 1.5}})
        assert dict(parsed.metadata) == {"floor": "3", "vip": "true", "rate": "1.5"}
        assert parsed.to_dict() == {"metadata": {"floor": "3", "vip": "true", "rate": "1.5"}}

    def test_blank_time_bounds_are_open(self):
        parsed = RuleConditions.from_dict({"time": {"start": "", "end": "10:00"}})
        assert parsed.time.start is None
        assert parsed.time.end == time(10, 0)

    @pytest.mark.parametrize("raw,field", [
        ({"unknown": 1}, "unknown"),
        ({"category": "food"}, "category"),
        ({"category": [1, 2]}, "category"),
        ({"amount": 5}, "amount"),
        ({"amount": {"min": -1}}, "amount.min"),
        ({"amount": {"max": "lots"}}, "amount.max"),
        ({"amount": {"min": True}}, "amount.min"),
        ({"amount": {"min": 10, "max": 5}}, "amount"),
        ({"amount": {"avg": 5}}, "amount"),
        ({"time": {"start": "9:00"}}, "time.start"),
        ({"time": {"end": 900}}, "time.end"),
        ({"dayOfWeek": [7]}, "dayOfWeek"),
        ({"dayOfWeek": [True]}, "dayOfWeek"),
        ({"metadata": {"room": [101]}}, "metadata"),
        ({"metadata": {"room": None}}, "metadata"),
        ({"metadata": {"rate": float("nan")}}, "metadata"),
    ])
    def test_malformed_input_rejected(self, raw, field):
        with pytest.raises(InvalidRuleConditionsError) as exc_info:
            RuleConditions.from_dict(raw)
        assert exc_info.value.field == field

    def test_invalid_conditions_is_a_validation_error(self):
        with pytest.raises(ValidationError):
            RuleConditions.from_dict(["not", "a", "mapping"])


class TestToDict:
    def test_canonical_camel_case(self):
        parsed = RuleConditions.from_dict({
            "day_of_week": [6, 0],
            "amount": {"min": "5"},
            "time": {"start": "07:05"},
        })
        assert parsed.to_dict() == {
            "amount": {"min": "5"},
            "time": {"start": "07:05"},
            "dayOfWeek": [0, 6],
        }

    def test_reparse_gives_equal_conditions(self):
        original = RuleConditions.from_dict({
            "category": ["bar"],
            "amount": {"min": "1.50", "max": "20"},
            "metadata": {"vip": "yes"},
        })
        assert RuleConditions.from_dict(original.to_dict()) == original


class TestTimeWindow:
    def test_wraps_midnight(self):
        assert TimeWindow(time(22, 0), time(2, 0)).wraps_midnight
        assert not TimeWindow(time(2, 0), time(22, 0)).wraps_midnight
        assert not TimeWindow(time(22, 0), None).wraps_midnight
