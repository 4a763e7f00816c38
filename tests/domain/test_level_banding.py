"""
Severity level banding.

Covers:
- Band boundaries 19/20, 199/200, 1000/1001
- Monotonicity in the amount
- Recurrence forces level 4
- The stored level never drops below the submitted one
"""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from caisse_kernel.domain.level import (
    LEVEL_MAX,
    LEVEL_MIN,
    banded_level,
    computed_level,
    resolve_level,
)

amounts = st.integers(min_value=0, max_value=10_000_000)
levels = st.integers(min_value=LEVEL_MIN, max_value=LEVEL_MAX)


class TestBandBoundaries:
    @pytest.mark.parametrize(
        "amount,expected",
        [
            (0, 1),
            (19, 1),
            (20, 2),
            (199, 2),
            (200, 3),
            (1000, 3),
            (1001, 4),
            (1500, 4),
        ],
    )
    def test_boundaries(self, amount, expected):
        assert banded_level(amount) == expected

    def test_recurrence_forces_four(self):
        assert computed_level(5, recurrence=True) == 4
        assert computed_level(5, recurrence=False) == 1


class TestLevelProperties:
    @given(a=amounts, b=amounts)
    def test_monotone(self, a, b):
        low, high = sorted((a, b))
        assert banded_level(low) <= banded_level(high)

    @given(amount=amounts)
    def test_within_range(self, amount):
        assert LEVEL_MIN <= banded_level(amount) <= LEVEL_MAX

    @given(submitted=levels, amount=amounts, recurrence=st.booleans())
    def test_resolved_level_never_below_either_source(self, submitted, amount, recurrence):
        resolved = resolve_level(submitted, amount, recurrence)
        assert resolved >= submitted
        assert resolved >= computed_level(amount, recurrence)
        assert resolved in (submitted, computed_level(amount, recurrence))

    def test_reference_scenario(self):
        # 1500 DT, no recurrence, submitted as level 1
        assert resolve_level(1, 1500, False) == 4
