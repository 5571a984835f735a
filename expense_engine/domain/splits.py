"""Split calculator - divides a bill amount across cost-sharing participants"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Mapping, Optional, Sequence
from expense_engine.domain.models import SplitParticipant, SplitAmount
from expense_engine.domain.exceptions import ConfigurationError, InvariantViolationError


def _percent_of(total_cents: int, percent: float) -> int:
    amount = Decimal(total_cents) * Decimal(str(percent)) / Decimal(100)
    return int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def calculate_splits(
    total_cents: int,
    participants: Sequence[SplitParticipant],
    overrides: Optional[Mapping[str, int]] = None,
) -> List[SplitAmount]:
    """
    Compute each participant's share of a bill.

    Requirements:
    - Override amounts are used verbatim
    - Participants with a fixed percentage get total * percent / 100
    - Everyone else shares the remaining amount equally
    - Last participant absorbs the rounding remainder so the shares sum to the total exactly

    Args:
        total_cents: Bill amount to split
        participants: Participants in iteration order
        overrides: Optional participant_id -> amount_cents

    Returns:
        One SplitAmount per participant, or [] when there are no participants

    Example:
        $100.00 across 3 equal participants → [$33.33, $33.33, $33.34]

    Raises:
        ConfigurationError: Invalid percentages, overrides for unknown participants,
            or fixed shares exceeding the total
    """
    if not participants:
        return []

    overrides = dict(overrides or {})
    participant_ids = {p.participant_id for p in participants}
    unknown = set(overrides) - participant_ids
    if unknown:
        raise ConfigurationError(f"Override for unknown participant(s): {sorted(unknown)}")

    percent_total = 0.0
    for p in participants:
        if p.percent is None or p.participant_id in overrides:
            continue
        if p.percent < 0 or p.percent > 100:
            raise ConfigurationError(f"Split percentage out of range for {p.participant_id}: {p.percent}")
        percent_total += p.percent
    if percent_total > 100.0 + 1e-9:
        raise ConfigurationError(f"Split percentages add up to {percent_total:.2f}%")

    # First pass: fixed shares (overrides and percentages)
    fixed: Dict[str, int] = {}
    for p in participants:
        if p.participant_id in overrides:
            fixed[p.participant_id] = int(overrides[p.participant_id])
        elif p.percent is not None:
            fixed[p.participant_id] = _percent_of(total_cents, p.percent)

    remaining = total_cents - sum(fixed.values())
    equal_ids = [p.participant_id for p in participants if p.participant_id not in fixed]
    if remaining < 0 and equal_ids:
        raise ConfigurationError(
            f"Fixed shares ({total_cents - remaining} cents) exceed bill total ({total_cents} cents)"
        )

    base_share = remaining // len(equal_ids) if equal_ids else 0

    splits = [
        SplitAmount(
            participant_id=p.participant_id,
            amount_cents=fixed.get(p.participant_id, base_share),
            percent=p.percent,
        )
        for p in participants
    ]

    # Last participant absorbs rounding remainder to ensure exact total
    splits[-1].amount_cents += total_cents - sum(s.amount_cents for s in splits)

    return splits


def validate_split_sum(total_cents: int, splits: Sequence[SplitAmount]) -> None:
    """
    Check the split-sum invariant before persisting.

    Raises:
        InvariantViolationError: Shares do not add up to the bill total
    """
    if not splits:
        return
    split_total = sum(s.amount_cents for s in splits)
    if split_total != total_cents:
        raise InvariantViolationError(
            f"Split total {split_total} does not match bill amount {total_cents}"
        )
    if any(s.amount_cents < 0 for s in splits):
        raise InvariantViolationError("Split amounts must not be negative")
