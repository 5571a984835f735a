"""Heuristics correlating ledger transactions and proposed bills with bill instances"""

import re
from dataclasses import dataclass
from datetime import date
from typing import Any, Iterable, Optional

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def normalize_vendor(text: Optional[str]) -> str:
    """Lower-cased, alphanumeric-only vendor text"""
    return _NON_ALNUM.sub("", (text or "").lower())


def definition_key(vendor: str, vendor_category: Optional[str]) -> str:
    """Identity used to detect duplicate recurring-bill definitions"""
    return f"{normalize_vendor(vendor)}:{vendor_category or ''}"


def vendor_matches(vendor: str, *texts: Optional[str]) -> bool:
    """True when the normalized vendor appears in any of the normalized texts"""
    needle = normalize_vendor(vendor)
    if not needle:
        return False
    return any(needle in normalize_vendor(text) for text in texts if text)


@dataclass
class InstanceMatch:
    instance: Any
    confidence: int


def score_instance_match(
    amount_cents: int,
    transacted_on: date,
    instance_amount_cents: int,
    due_date: Optional[date],
    amount_tolerance_percent: float,
    date_window_days: int,
) -> Optional[int]:
    """
    Confidence (0-100) that a payment settles a bill instance, or None if it can't.

    Requirements:
    - Amount within tolerance of the instance amount (magnitudes compared)
    - Payment date within the window around the due date
    - Instances without a known amount match on date alone at reduced confidence
    """
    if due_date is None:
        return None
    days_off = abs((transacted_on - due_date).days)
    if days_off > date_window_days:
        return None

    date_score = 20 - int(20 * days_off / max(date_window_days, 1))
    magnitude = abs(amount_cents)

    if instance_amount_cents <= 0:
        return 50 + date_score // 2

    diff_pct = abs(magnitude - instance_amount_cents) * 100.0 / instance_amount_cents
    if diff_pct > amount_tolerance_percent:
        return None

    amount_score = 20 - int(20 * diff_pct / max(amount_tolerance_percent, 1e-9))
    return min(100, 60 + amount_score + date_score)


def best_instance_match(
    amount_cents: int,
    transacted_on: date,
    description: Optional[str],
    merchant_name: Optional[str],
    candidates: Iterable[Any],
    amount_tolerance_percent: float,
    date_window_days: int,
) -> Optional[InstanceMatch]:
    """
    Pick the open bill instance a payment most likely settles.

    Candidates need `vendor`, `amount_cents` and `due_date` attributes. Ties go to
    the earliest due date.
    """
    best: Optional[InstanceMatch] = None
    for instance in candidates:
        if not vendor_matches(instance.vendor, description, merchant_name):
            continue
        confidence = score_instance_match(
            amount_cents,
            transacted_on,
            instance.amount_cents,
            instance.due_date,
            amount_tolerance_percent,
            date_window_days,
        )
        if confidence is None:
            continue
        if (
            best is None
            or confidence > best.confidence
            or (confidence == best.confidence and instance.due_date < best.instance.due_date)
        ):
            best = InstanceMatch(instance=instance, confidence=confidence)
    return best
