"""
Tests for the rule condition evaluator.

Covers:
- Wildcards (absent or empty conditions)
- Category, amount, time-of-day, day-of-week and metadata checks
- Time windows spanning midnight
- Fail-closed handling of malformed raw conditions
"""

from datetime import datetime
from decimal import Decimal
from types import MappingProxyType
from zoneinfo import ZoneInfo

import pytest

from billing_engines.conditions import matches, weekday_sunday_zero
from billing_kernel.domain.dtos import LineItemSnapshot
from billing_kernel.domain.rules import RuleConditions
from tests.conftest import log_messages

# Wednesday
NOON = datetime(2024, 1, 3, 12, 0)


def snapshot(total="25.00", category=None, metadata=None) -> LineItemSnapshot:
    return LineItemSnapshot(
        line_item_id="li-1",
        tab_id="tab-1",
        description="Item",
        total_price=Decimal(total),
        category=category,
        metadata=MappingProxyType(metadata or {}),
    )


class TestWildcards:
    def test_none_matches_everything(self):
        assert matches(snapshot(), None, NOON)

    def test_empty_dict_matches_everything(self):
        assert matches(snapshot(), {}, NOON)

    def test_empty_struct_matches_everything(self):
        assert matches(snapshot(), RuleConditions(), NOON)

    def test_empty_category_list_is_wildcard(self):
        assert matches(snapshot(category="food"), {"category": []}, NOON)


class TestCategory:
    def test_in_list(self):
        assert matches(snapshot(category="food"), {"category": ["food", "drinks"]}, NOON)

    def test_not_in_list(self):
        assert not matches(snapshot(category="spa"), {"category": ["food"]}, NOON)

    def test_missing_category_does_not_match(self):
        assert not matches(snapshot(), {"category": ["food"]}, NOON)

    def test_category_falls_back_to_metadata(self):
        item = snapshot(metadata={"category": "drinks"})
        assert matches(item, {"category": ["drinks"]}, NOON)


class TestAmount:
    @pytest.mark.parametrize("total,expected", [
        ("9.99", False),
        ("10.00", True),
        ("50.00", True),
        ("50.01", False),
    ])
    def test_inclusive_bounds(self, total, expected):
        conditions = {"amount": {"min": "10.00", "max": "50.00"}}
        assert matches(snapshot(total=total), conditions, NOON) is expected

    def test_open_upper_bound(self):
        assert matches(snapshot(total="1000000.00"), {"amount": {"min": 100}}, NOON)

    def test_open_lower_bound(self):
        assert matches(snapshot(total="0.00"), {"amount": {"max": 5}}, NOON)


class TestTimeWindow:
    def test_inside_window(self):
        assert matches(snapshot(), {"time": {"start": "11:00", "end": "13:00"}}, NOON)

    def test_bounds_are_inclusive(self):
        window = {"time": {"start": "12:00", "end": "12:00"}}
        assert matches(snapshot(), window, NOON)

    def test_outside_window(self):
        assert not matches(snapshot(), {"time": {"start": "17:00", "end": "23:00"}}, NOON)

    @pytest.mark.parametrize("hour,minute,expected", [
        (23, 15, True),
        (1, 30, True),
        (22, 0, True),
        (2, 0, True),
        (12, 0, False),
        (2, 1, False),
    ])
    def test_window_spanning_midnight(self, hour, minute, expected):
        conditions = {"time": {"start": "22:00", "end": "02:00"}}
        moment = datetime(2024, 1, 3, hour, minute)
        assert matches(snapshot(), conditions, moment) is expected

    def test_evaluated_in_the_zone_of_now(self):
        # 14:00 UTC is 09:00 in New York
        moment = datetime(2024, 1, 3, 14, 0, tzinfo=ZoneInfo("UTC")).astimezone(
            ZoneInfo("America/New_York")
        )
        assert matches(snapshot(), {"time": {"start": "08:00", "end": "10:00"}}, moment)


class TestDayOfWeek:
    def test_sunday_is_zero(self):
        assert weekday_sunday_zero(datetime(2024, 1, 7)) == 0
        assert weekday_sunday_zero(datetime(2024, 1, 6)) == 6

    def test_matching_day(self):
        assert matches(snapshot(), {"dayOfWeek": [3]}, NOON)

    def test_other_day(self):
        assert not matches(snapshot(), {"dayOfWeek": [0, 6]}, NOON)

    def test_snake_case_key_accepted(self):
        assert matches(snapshot(), {"day_of_week": [1, 2, 3]}, NOON)


class TestMetadata:
    def test_all_pairs_must_match(self):
        item = snapshot(metadata={"room": "101", "guest": "vip"})
        assert matches(item, {"metadata": {"room": "101", "guest": "vip"}}, NOON)
        assert not matches(item, {"metadata": {"room": "101", "guest": "regular"}}, NOON)

    def test_missing_key_does_not_match(self):
        assert not matches(snapshot(), {"metadata": {"room": "101"}}, NOON)

    def test_values_compared_as_strings(self):
        item = snapshot(metadata={"room": 101})
        assert matches(item, {"metadata": {"room": "101"}}, NOON)

    def test_scalar_condition_values(self):
        item = snapshot(metadata={"floor": "3", "vip": True})
        assert matches(item, {"metadata": {"floor": 3, "vip": True}}, NOON)
        assert not matches(item, {"metadata": {"floor": 4}}, NOON)
        assert not matches(item, {"metadata": {"vip": False}}, NOON)


class TestCombined:
    def test_conditions_are_anded(self):
        conditions = {
            "category": ["food"],
            "amount": {"min": "20"},
            "dayOfWeek": [3],
        }
        assert matches(snapshot(category="food", total="25.00"), conditions, NOON)
        assert not matches(snapshot(category="food", total="15.00"), conditions, NOON)


class TestMalformedConditions:
    @pytest.mark.parametrize("conditions", [
        {"amount": {"min": "abc"}},
        {"amount": {"min": "50", "max": "10"}},
        {"time": {"start": "25:00"}},
        {"dayOfWeek": [7]},
        {"category": "food"},
        {"colour": ["red"]},
    ])
    def test_fails_closed(self, conditions):
        assert matches(snapshot(category="food"), conditions, NOON) is False

    def test_malformed_conditions_are_logged(self, captured_logs):
        matches(snapshot(), {"amount": {"min": "abc"}}, NOON)
        assert "rule_conditions_malformed" in log_messages(captured_logs())
