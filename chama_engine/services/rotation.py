"""ROSCA cycle orchestration: roster creation, payouts and position swaps"""

import logging
import random
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from chama_engine.domain.exceptions import (
    DuplicateRequestError,
    InvalidInputError,
    InvalidTransitionError,
    NotFoundError,
    NotificationError,
    NotPermittedError,
)
from chama_engine.domain.models import (
    EventType,
    Frequency,
    PayoutStatus,
    RosterMethod,
    ScheduledPayout,
    SlotState,
    SwapStatus,
)
from chama_engine.domain.money import Money, require_cents
from chama_engine.domain.rotation import (
    build_roster,
    ensure_contiguous_positions,
    ensure_swappable,
    expected_payout_cents,
    next_eligible_slot,
    scheduled_payout_date,
)
from chama_engine.infrastructure.clients.notifier import LoggingNotifier, Notifier
from chama_engine.infrastructure.database.models import Payout, RotationCycle, RotationSlot, SwapRequest
from chama_engine.infrastructure.database.repositories import RotationRepository
from chama_engine.infrastructure.database.transaction import retry_on_conflict, transaction
from chama_engine.infrastructure.observability.logging import log_payout
from chama_engine.infrastructure.observability.metrics import payout_counter, swap_counter
from chama_engine.utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

# Parked position while two slots trade places; real positions start at 1
_SWAP_PARKING_POSITION = 0


def _slot_states(slots: Sequence[RotationSlot], paid_ids: set) -> List[SlotState]:
    return [SlotState(str(slot.id), slot.member_id, slot.position, slot.id in paid_ids) for slot in slots]


def _cycle_event(cycle: RotationCycle, **extra: Any) -> Dict[str, Any]:
    payload = {
        "cycle_id": str(cycle.id),
        "chama_id": cycle.chama_id,
        "currency": cycle.currency,
        "is_active": cycle.is_active,
    }
    payload.update(extra)
    return payload


class RotationService:
    """
    Engine operations for rotating savings cycles.

    The cycle row is the aggregate root: it is locked and its version bumped by
    every write, so payouts and swaps on one cycle are strictly serialized.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Optional[Clock] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.notifier = notifier or LoggingNotifier()

    def _publish(self, event_type: EventType, payload: Dict[str, Any]) -> None:
        try:
            self.notifier.publish(event_type, payload)
        except NotificationError as e:
            logger.error("Event publish failed", extra={"event_type": event_type.value, "error": str(e)})

    def create_cycle(
        self,
        chama_id: str,
        name: str,
        amount_per_member: Money,
        frequency: Frequency,
        start_date: date,
        member_ids: Sequence[str],
        roster_method: RosterMethod = RosterMethod.RANDOM,
        manual_order: Optional[Sequence[str]] = None,
        trust_scores: Optional[Dict[str, int]] = None,
        rng: Optional[random.Random] = None,
    ) -> RotationCycle:
        """Create a cycle with one slot per member, positions 1..N in roster order"""
        if not chama_id or not name:
            raise InvalidInputError("chama_id and name are required")
        require_cents(amount_per_member.amount_cents, "amount_per_member")
        frequency = Frequency(frequency)
        order = build_roster(member_ids, roster_method, manual_order, trust_scores, rng)
        ensure_contiguous_positions(range(1, len(order) + 1))
        now = self.clock.now()

        with transaction(self.session_factory) as db:
            cycle = RotationCycle(
                chama_id=chama_id,
                name=name,
                currency=amount_per_member.currency,
                amount_per_member_cents=amount_per_member.amount_cents,
                frequency=frequency.value,
                start_date=start_date,
                is_active=True,
                created_at=now,
                updated_at=now,
            )
            for position, member_id in enumerate(order, start=1):
                cycle.slots.append(RotationSlot(member_id=member_id, position=position))
            RotationRepository(db).add_cycle(cycle)

        logger.info(
            "Rotation cycle created",
            extra={
                "cycle_id": str(cycle.id),
                "chama_id": chama_id,
                "members": len(order),
                "roster_method": RosterMethod(roster_method).value,
            },
        )
        return cycle

    def get_next_recipient(self, cycle_id: str) -> RotationSlot:
        """
        Lowest-position slot without a payout.

        Raises:
            CycleExhaustedError: every slot has been paid
        """
        with transaction(self.session_factory) as db:
            repo = RotationRepository(db)
            cycle = repo.get_cycle(cycle_id)
            slots = repo.list_slots(cycle.id)
            state = next_eligible_slot(_slot_states(slots, repo.paid_slot_ids(cycle.id)))
            return next(slot for slot in slots if str(slot.id) == state.slot_id)

    @retry_on_conflict("process_payout")
    def process_payout(self, cycle_id: str, idempotency_key: str) -> Payout:
        """
        Pay the collective pot to the next eligible slot.

        The unpaid-slot set is read under the cycle lock in the same transaction
        as the Payout insert; the unique slot constraint backs it up. A repeated
        idempotency key returns the original payout.
        """
        if not isinstance(idempotency_key, str) or not idempotency_key.strip():
            raise InvalidInputError("idempotency_key is required")
        now = self.clock.now()

        with transaction(self.session_factory) as db:
            repo = RotationRepository(db)
            cycle = repo.get_cycle_for_update(cycle_id)

            previous = repo.get_payout_by_idempotency_key(cycle.id, idempotency_key)
            if previous is not None:
                log_payout(str(cycle.id), previous.recipient_member_id, previous.position, previous.amount_cents, replayed=True)
                return previous

            slots = repo.list_slots(cycle.id)
            paid_ids = repo.paid_slot_ids(cycle.id)
            state = next_eligible_slot(_slot_states(slots, paid_ids))
            slot = next(s for s in slots if str(s.id) == state.slot_id)

            payout = repo.add_payout(
                Payout(
                    cycle_id=cycle.id,
                    slot_id=slot.id,
                    recipient_member_id=state.member_id,
                    position=state.position,
                    amount_cents=expected_payout_cents(cycle.amount_per_member_cents, len(slots)),
                    idempotency_key=idempotency_key,
                    payout_date=self.clock.today(),
                    status=PayoutStatus.COMPLETED.value,
                    created_at=now,
                )
            )

            if len(paid_ids) + 1 == len(slots):
                cycle.is_active = False
                cycle.completed_at = now
            cycle.updated_at = now

            event = _cycle_event(
                cycle,
                payout_id=str(payout.id),
                recipient_member_id=payout.recipient_member_id,
                position=payout.position,
                amount_cents=payout.amount_cents,
                payout_date=payout.payout_date.isoformat(),
            )

        payout_counter.inc()
        log_payout(str(cycle.id), payout.recipient_member_id, payout.position, payout.amount_cents, replayed=False)
        self._publish(EventType.PAYOUT_PROCESSED, event)
        return payout

    @retry_on_conflict("request_swap")
    def request_swap(self, cycle_id: str, requester_id: str, target_position: int, reason: Optional[str] = None) -> SwapRequest:
        """Ask the member holding target_position to trade places"""
        if isinstance(target_position, bool) or not isinstance(target_position, int) or target_position < 1:
            raise InvalidInputError("target_position must be a positive integer")
        now = self.clock.now()

        with transaction(self.session_factory) as db:
            repo = RotationRepository(db)
            cycle = repo.get_cycle_for_update(cycle_id)

            requester = repo.get_slot_by_member(cycle.id, requester_id)
            if requester is None:
                raise NotPermittedError(f"Member {requester_id} is not part of this cycle")
            target = repo.get_slot_by_position(cycle.id, target_position)
            if target is None:
                raise NotFoundError(f"No slot at position {target_position}")

            paid_ids = repo.paid_slot_ids(cycle.id)
            ensure_swappable(
                SlotState(str(requester.id), requester.member_id, requester.position, requester.id in paid_ids),
                SlotState(str(target.id), target.member_id, target.position, target.id in paid_ids),
            )
            if repo.pending_swap_between(cycle.id, requester.position, target.position) is not None:
                raise DuplicateRequestError(
                    f"A swap between positions {requester.position} and {target.position} is already pending"
                )

            swap = repo.add_swap(
                SwapRequest(
                    cycle_id=cycle.id,
                    requester_id=requester_id,
                    requester_position=requester.position,
                    target_position=target.position,
                    target_member_id=target.member_id,
                    reason=reason,
                    status=SwapStatus.PENDING.value,
                    created_at=now,
                )
            )
            cycle.updated_at = now
            event = _cycle_event(
                cycle,
                swap_id=str(swap.id),
                requester_id=requester_id,
                requester_position=swap.requester_position,
                target_position=swap.target_position,
                target_member_id=swap.target_member_id,
            )

        self._publish(EventType.SWAP_REQUESTED, event)
        return swap

    @retry_on_conflict("respond_swap")
    def respond_swap(self, swap_id: str, responder_id: str, decision: SwapStatus) -> SwapRequest:
        """
        Approve or reject a pending swap; only the target member may answer.

        On approval both slots are re-checked for payouts and their positions are
        exchanged within the same transaction.
        """
        decision = SwapStatus(decision)
        if decision is SwapStatus.PENDING:
            raise InvalidInputError("Swap decision must be APPROVED or REJECTED")
        now = self.clock.now()

        with transaction(self.session_factory) as db:
            repo = RotationRepository(db)
            swap = repo.get_swap(swap_id)
            cycle = repo.get_cycle_for_update(swap.cycle_id)
            db.refresh(swap)

            if SwapStatus(swap.status) is not SwapStatus.PENDING:
                raise InvalidTransitionError(f"Swap request already {swap.status}")
            if responder_id != swap.target_member_id:
                raise NotPermittedError("Only the member at the target position may answer this swap")

            if decision is SwapStatus.APPROVED:
                requester = repo.get_slot_by_member(cycle.id, swap.requester_id)
                target = repo.get_slot_by_position(cycle.id, swap.target_position)
                if (
                    requester is None
                    or target is None
                    or requester.position != swap.requester_position
                    or target.member_id != swap.target_member_id
                ):
                    raise InvalidTransitionError("Positions changed since this swap was requested")

                paid_ids = repo.paid_slot_ids(cycle.id)
                ensure_swappable(
                    SlotState(str(requester.id), requester.member_id, requester.position, requester.id in paid_ids),
                    SlotState(str(target.id), target.member_id, target.position, target.id in paid_ids),
                )

                # (cycle_id, position) is unique, so park one slot while the other moves
                requester_position, target_position = requester.position, target.position
                requester.position = _SWAP_PARKING_POSITION
                db.flush()
                target.position = requester_position
                db.flush()
                requester.position = target_position
                db.flush()
                ensure_contiguous_positions(slot.position for slot in repo.list_slots(cycle.id))

            swap.status = decision.value
            swap.responded_at = now
            cycle.updated_at = now
            event = _cycle_event(
                cycle,
                swap_id=str(swap.id),
                status=swap.status,
                requester_id=swap.requester_id,
                requester_position=swap.requester_position,
                target_position=swap.target_position,
                target_member_id=swap.target_member_id,
            )

        swap_counter.labels(outcome=decision.value.lower()).inc()
        logger.info(
            "Swap request resolved",
            extra={"cycle_id": event["cycle_id"], "swap_id": event["swap_id"], "status": event["status"]},
        )
        self._publish(EventType.SWAP_RESOLVED, event)
        return swap

    def get_rotation_schedule(self, cycle_id: str) -> List[ScheduledPayout]:
        """Payout calendar: every position with its scheduled date and paid state"""
        with transaction(self.session_factory) as db:
            repo = RotationRepository(db)
            cycle = repo.get_cycle(cycle_id)
            slots = repo.list_slots(cycle.id)
            payouts = {payout.slot_id: payout for payout in repo.list_payouts(cycle.id)}
            amount = expected_payout_cents(cycle.amount_per_member_cents, len(slots))
            return [
                ScheduledPayout(
                    position=slot.position,
                    member_id=slot.member_id,
                    scheduled_date=scheduled_payout_date(cycle.start_date, Frequency(cycle.frequency), slot.position),
                    amount_cents=amount,
                    paid=slot.id in payouts,
                    payout_date=payouts[slot.id].payout_date if slot.id in payouts else None,
                )
                for slot in slots
            ]
