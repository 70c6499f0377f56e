"""ROSCA rotation rules: roster ordering, next recipient, swaps"""

import random
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional, Sequence

from chama_engine.domain.exceptions import CycleExhaustedError, InvalidInputError, SlotAlreadyPaidError
from chama_engine.domain.models import Frequency, RosterMethod, SlotState
from chama_engine.utils.date_utils import add_months

MIN_MEMBERS = 2
HIGH_TRUST = 80
LOW_TRUST = 60
DEFAULT_TRUST = 50


def build_roster(
    member_ids: Sequence[str],
    method: RosterMethod = RosterMethod.RANDOM,
    manual_order: Optional[Sequence[str]] = None,
    trust_scores: Optional[Dict[str, int]] = None,
    rng: Optional[random.Random] = None,
) -> List[str]:
    """
    Order participating members into payout positions (index 0 -> position 1).

    Methods:
    - RANDOM: uniform shuffle
    - MANUAL: exactly the given order, which must contain every member once
    - TRUST:  score >= 80 first, 60-79 next, < 60 last; shuffled within each tier
    """
    members = list(member_ids)
    if len(members) < MIN_MEMBERS:
        raise InvalidInputError(f"A rotation needs at least {MIN_MEMBERS} members")
    if len(set(members)) != len(members):
        raise InvalidInputError("Duplicate member in rotation")

    rng = rng or random.Random()
    method = RosterMethod(method)

    if method is RosterMethod.MANUAL:
        order = list(manual_order or [])
        if sorted(order) != sorted(members):
            raise InvalidInputError("Manual roster must list every participating member exactly once")
        return order

    if method is RosterMethod.TRUST:
        scores = trust_scores or {}
        high = [m for m in members if scores.get(m, DEFAULT_TRUST) >= HIGH_TRUST]
        mid = [m for m in members if LOW_TRUST <= scores.get(m, DEFAULT_TRUST) < HIGH_TRUST]
        low = [m for m in members if scores.get(m, DEFAULT_TRUST) < LOW_TRUST]
        for tier in (high, mid, low):
            rng.shuffle(tier)
        return high + mid + low

    rng.shuffle(members)
    return members


def ensure_contiguous_positions(positions: Iterable[int]) -> None:
    """Positions must be exactly 1..N with no gaps or duplicates"""
    ordered = sorted(positions)
    if ordered != list(range(1, len(ordered) + 1)):
        raise InvalidInputError(f"Rotation positions are not a contiguous 1..N permutation: {ordered}")


def next_eligible_slot(slots: Iterable[SlotState]) -> SlotState:
    """Lowest position without a payout"""
    unpaid = [slot for slot in slots if not slot.paid]
    if not unpaid:
        raise CycleExhaustedError("Every slot in this cycle has been paid out")
    return min(unpaid, key=lambda slot: slot.position)


def expected_payout_cents(amount_per_member_cents: int, member_count: int) -> int:
    """Every participant contributes once per round, recipient included"""
    return amount_per_member_cents * member_count


def ensure_swappable(requester: SlotState, target: SlotState) -> None:
    if requester.position == target.position:
        raise InvalidInputError("Cannot swap a position with itself")
    if requester.paid or target.paid:
        raise SlotAlreadyPaidError("Cannot swap positions that have already been paid out")


def scheduled_payout_date(start: date, frequency: Frequency, position: int) -> date:
    """Date the given position is due to receive its payout"""
    offset = position - 1
    frequency = Frequency(frequency)
    if frequency is Frequency.WEEKLY:
        return start + timedelta(weeks=offset)
    if frequency is Frequency.BIWEEKLY:
        return start + timedelta(weeks=2 * offset)
    return add_months(start, offset)
