"""Unit tests for ROSCA rotation rules"""

import pytest
import random
from datetime import date
from chama_engine.domain.exceptions import CycleExhaustedError, InvalidInputError, SlotAlreadyPaidError
from chama_engine.domain.models import Frequency, RosterMethod, SlotState
from chama_engine.domain.rotation import (
    build_roster,
    ensure_contiguous_positions,
    ensure_swappable,
    expected_payout_cents,
    next_eligible_slot,
    scheduled_payout_date,
)

MEMBERS = ["m1", "m2", "m3", "m4", "m5"]


def test_manual_roster_keeps_given_order():
    order = ["m3", "m1", "m2", "m5", "m4"]
    assert build_roster(MEMBERS, RosterMethod.MANUAL, manual_order=order) == order


def test_manual_roster_must_cover_every_member():
    with pytest.raises(InvalidInputError):
        build_roster(MEMBERS, RosterMethod.MANUAL, manual_order=["m1", "m2"])


def test_random_roster_is_a_permutation():
    order = build_roster(MEMBERS, RosterMethod.RANDOM, rng=random.Random(7))
    assert sorted(order) == MEMBERS


def test_trust_roster_orders_by_tier():
    scores = {"m1": 40, "m2": 85, "m3": 70, "m4": 90, "m5": 65}

    order = build_roster(MEMBERS, RosterMethod.TRUST, trust_scores=scores, rng=random.Random(1))

    assert set(order[:2]) == {"m2", "m4"}
    assert set(order[2:4]) == {"m3", "m5"}
    assert order[4] == "m1"


def test_roster_needs_two_distinct_members():
    with pytest.raises(InvalidInputError):
        build_roster(["m1"])
    with pytest.raises(InvalidInputError):
        build_roster(["m1", "m1"])


def test_contiguous_positions():
    ensure_contiguous_positions([3, 1, 2])
    with pytest.raises(InvalidInputError):
        ensure_contiguous_positions([1, 2, 4])
    with pytest.raises(InvalidInputError):
        ensure_contiguous_positions([1, 2, 2])


def test_next_eligible_is_lowest_unpaid_position():
    slots = [
        SlotState("s1", "m1", 1, True),
        SlotState("s3", "m3", 3, False),
        SlotState("s2", "m2", 2, False),
    ]
    assert next_eligible_slot(slots).member_id == "m2"


def test_exhausted_cycle():
    slots = [SlotState("s1", "m1", 1, True), SlotState("s2", "m2", 2, True)]
    with pytest.raises(CycleExhaustedError):
        next_eligible_slot(slots)


def test_expected_payout_counts_every_member():
    assert expected_payout_cents(100_000, 5) == 500_000


def test_swap_guards():
    unpaid = SlotState("s3", "m3", 3, False)
    paid = SlotState("s1", "m1", 1, True)
    ensure_swappable(unpaid, SlotState("s5", "m5", 5, False))
    with pytest.raises(SlotAlreadyPaidError):
        ensure_swappable(unpaid, paid)
    with pytest.raises(InvalidInputError):
        ensure_swappable(unpaid, unpaid)


@pytest.mark.parametrize(
    "frequency,position,expected",
    [
        (Frequency.WEEKLY, 1, date(2026, 1, 31)),
        (Frequency.WEEKLY, 3, date(2026, 2, 14)),
        (Frequency.BIWEEKLY, 2, date(2026, 2, 14)),
        (Frequency.MONTHLY, 2, date(2026, 2, 28)),  # Clamped to month end
        (Frequency.MONTHLY, 4, date(2026, 4, 30)),
    ],
)
def test_scheduled_payout_date(frequency, position, expected):
    assert scheduled_payout_date(date(2026, 1, 31), frequency, position) == expected
