"""Unit tests for the split calculator"""

import pytest
from expense_engine.domain.models import SplitParticipant, SplitAmount
from expense_engine.domain.splits import calculate_splits, validate_split_sum
from expense_engine.domain.exceptions import ConfigurationError, InvariantViolationError


def _people(*ids, percents=None):
    percents = percents or {}
    return [SplitParticipant(participant_id=pid, percent=percents.get(pid)) for pid in ids]


def test_equal_split_exact():
    """Test $120 across 3 participants is $40 each"""
    splits = calculate_splits(12000, _people("a", "b", "c"))

    assert [s.amount_cents for s in splits] == [4000, 4000, 4000]


def test_equal_split_rounding():
    """Test last participant absorbs remainder"""
    splits = calculate_splits(10000, _people("a", "b", "c"))

    assert [s.amount_cents for s in splits] == [3333, 3333, 3334]
    assert sum(s.amount_cents for s in splits) == 10000


@pytest.mark.parametrize("total", [0, 1, 99, 10000, 12345, 99999])
@pytest.mark.parametrize("count", [1, 2, 3, 4, 7])
def test_split_sum_invariant(total, count):
    """Test shares always add up to the total exactly"""
    splits = calculate_splits(total, _people(*[f"p{i}" for i in range(count)]))

    assert len(splits) == count
    assert sum(s.amount_cents for s in splits) == total
    assert max(s.amount_cents for s in splits) - min(s.amount_cents for s in splits) < count


def test_percentage_then_equal_remainder():
    """Test fixed percentage first, remaining amount shared equally"""
    splits = calculate_splits(10001, _people("a", "b", "c", percents={"a": 50.0}))

    assert splits[0].amount_cents == 5001  # 5000.5 rounds half up
    assert splits[0].percent == 50.0
    assert splits[1].amount_cents == 2500
    assert splits[2].amount_cents == 2500


def test_override_used_verbatim():
    """Test override amounts win over percentages and equal shares"""
    splits = calculate_splits(10000, _people("a", "b", "c", percents={"a": 90.0}), overrides={"a": 2000})

    assert [s.amount_cents for s in splits] == [2000, 4000, 4000]


def test_no_participants_returns_empty():
    assert calculate_splits(5000, []) == []


def test_override_for_unknown_participant():
    with pytest.raises(ConfigurationError):
        calculate_splits(1000, _people("a"), overrides={"zz": 100})


def test_percentages_over_100():
    with pytest.raises(ConfigurationError):
        calculate_splits(1000, _people("a", "b", percents={"a": 60.0, "b": 50.0}))


def test_fixed_shares_exceed_total():
    """Test overrides larger than the bill leave nothing for equal-share participants"""
    with pytest.raises(ConfigurationError):
        calculate_splits(10000, _people("a", "b"), overrides={"a": 15000})


def test_validate_split_sum_mismatch():
    splits = [SplitAmount("a", 500), SplitAmount("b", 400)]

    with pytest.raises(InvariantViolationError):
        validate_split_sum(1000, splits)


def test_validate_split_sum_negative_share():
    splits = [SplitAmount("a", 1200), SplitAmount("b", -200)]

    with pytest.raises(InvariantViolationError):
        validate_split_sum(1000, splits)
