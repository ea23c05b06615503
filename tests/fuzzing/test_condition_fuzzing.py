"""
Property-based fuzzing of rule conditions.

Boundaries fuzzed here:
- Arbitrary JSON-shaped condition payloads: the evaluator never raises
- Canonical rendering: to_dict output is accepted by from_dict unchanged
- Time windows spanning midnight: complement of the excluded gap
"""

from datetime import datetime, time
from decimal import Decimal

from hypothesis import given, settings
from hypothesis import strategies as st

from billing_engines.conditions import matches
from billing_kernel.domain.dtos import LineItemSnapshot
from billing_kernel.domain.rules import RuleConditions, TimeWindow

json_scalars = st.one_of(
    st.none(),
    st.booleans(),
    st.integers(min_value=-1000, max_value=1000),
    st.floats(allow_nan=True, allow_infinity=True),
    st.text(max_size=8),
)
json_values = st.recursive(
    json_scalars,
    lambda children: st.one_of(
        st.lists(children, max_size=4),
        st.dictionaries(st.text(max_size=6), children, max_size=4),
    ),
    max_leaves=12,
)
condition_keys = st.sampled_from(
    ["category", "amount", "time", "dayOfWeek", "day_of_week", "metadata", "colour"]
)
raw_conditions = st.dictionaries(condition_keys, json_values, max_size=4)

clock_times = st.times().map(lambda t: t.replace(second=0, microsecond=0))
hhmm = st.builds(lambda h, m: f"{h:02d}:{m:02d}",
                 st.integers(min_value=0, max_value=23), st.integers(min_value=0, max_value=59))

valid_conditions = st.fixed_dictionaries({}, optional={
    "category": st.lists(st.text(min_size=1, max_size=6), max_size=3),
    "amount": st.fixed_dictionaries({}, optional={
        "max": st.decimals(min_value=0, max_value=1000, places=2).map(str),
    }),
    "time": st.fixed_dictionaries({}, optional={"start": hhmm, "end": hhmm}),
    "dayOfWeek": st.lists(st.integers(min_value=0, max_value=6), unique=True, max_size=7),
    "metadata": st.dictionaries(st.text(min_size=1, max_size=4), st.text(max_size=4), max_size=3),
})

ITEM = LineItemSnapshot(
    line_item_id="li-fuzz",
    tab_id="tab-fuzz",
    description="Fuzz",
    total_price=Decimal("42.50"),
    category="food",
)
NOW = datetime(2024, 1, 6, 21, 30)


class TestEvaluatorNeverRaises:
    @settings(max_examples=300, deadline=None)
    @given(conditions=raw_conditions)
    def test_arbitrary_payload(self, conditions):
        assert matches(ITEM, conditions, NOW) in (True, False)

    @settings(max_examples=100, deadline=None)
    @given(conditions=json_values)
    def test_non_mapping_payload(self, conditions):
        if conditions is not None and not isinstance(conditions, dict):
            assert matches(ITEM, conditions, NOW) is False


class TestCanonicalForm:
    @settings(max_examples=200, deadline=None)
    @given(raw=valid_conditions)
    def test_to_dict_is_stable(self, raw):
        parsed = RuleConditions.from_dict(raw)
        canonical = parsed.to_dict()
        assert RuleConditions.from_dict(canonical) == parsed
        assert RuleConditions.from_dict(canonical).to_dict() == canonical


class TestMidnightWindows:
    @settings(max_examples=300, deadline=None)
    @given(start=clock_times, end=clock_times, moment=clock_times)
    def test_wrapping_window_excludes_only_the_gap(self, start, end, moment):
        window = TimeWindow(start=start, end=end)
        at = datetime.combine(datetime(2024, 1, 3).date(), moment)
        if end < start:
            assert window.contains(at) == (not end < moment < start)
        else:
            assert window.contains(at) == (start <= moment <= end)

    def test_full_day_window(self):
        window = TimeWindow(start=time(0, 0), end=time(23, 59))
        assert window.contains(datetime(2024, 1, 3, 23, 59))
