from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Callable

from deskbook.conflict import new_id
from deskbook.domain import BlockEntry, BookingEntry, TimeWindow
from deskbook.ledger import Ledger, utcnow
from deskbook.notifier import NotificationKind, Notifier
from deskbook.policy import Policy

logger = logging.getLogger(__name__)


@dataclass
class PromotionResult:
    promoted: list[BookingEntry] = field(default_factory=list)
    failed_notifications: list[str] = field(default_factory=list)

    def extend(self, other: PromotionResult) -> None:
        self.promoted.extend(other.promoted)
        self.failed_notifications.extend(other.failed_notifications)


class CapacityPromoter:
    """Moves waitlisted parties into confirmed bookings when capacity frees up.

    The cascade runs in the caller's per-resource exclusion scope, right
    after the release that triggered it. Each party is promoted with a
    single ledger write; a failed notification never undoes that write.
    """

    def __init__(
        self,
        notifier: Notifier | None = None,
        *,
        clock: Callable[[], dt.datetime] = utcnow,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        self._notifier = notifier
        self._clock = clock
        self._id_factory = id_factory

    def free_slots(self, ledger: Ledger, window: TimeWindow, policy: Policy) -> int:
        if ledger.blocks_overlapping(window):
            return 0
        return max(policy.ceiling - len(ledger.confirmed_overlapping(window)), 0)

    def promote(self, ledger: Ledger, window: TimeWindow, policy: Policy, *, actor: str) -> PromotionResult:
        result = PromotionResult()
        if not policy.capacity_bounded:
            return result

        free_slots = self.free_slots(ledger, window, policy)
        # Ends when free_slots reaches 0 or the window's queue is empty.
        while free_slots > 0:
            party = ledger.dequeue_next(window, actor=actor)
            if party is None:
                break

            booking = BookingEntry(
                id=self._id_factory(),
                resource_id=ledger.resource_id,
                owner_id=party.party_id,
                window=window,
                created_by=actor,
                created_at=self._clock(),
            )
            ledger.add_booking(booking, actor=actor, max_concurrent=policy.ceiling)
            free_slots -= 1
            result.promoted.append(booking)
            logger.info(
                "Promoted %s from waitlist to booking %s on %s at %s",
                party.party_id,
                booking.id,
                ledger.resource_id,
                window,
            )

            if not self._announce(party.party_id, booking, contact=party.contact):
                result.failed_notifications.append(party.party_id)

        return result

    def promote_after_unblock(
        self,
        ledger: Ledger,
        block: BlockEntry,
        policy: Policy,
        *,
        actor: str,
    ) -> PromotionResult:
        result = PromotionResult()
        if not policy.capacity_bounded:
            return result

        windows: list[TimeWindow] = []
        for entry in ledger.waitlist():
            if entry.window.overlaps(block.window) and entry.window not in windows:
                windows.append(entry.window)

        for window in windows:
            result.extend(self.promote(ledger, window, policy, actor=actor))
        return result

    def _announce(self, party_id: str, booking: BookingEntry, *, contact: str) -> bool:
        if self._notifier is None:
            return True
        try:
            self._notifier.notify(
                party_id,
                NotificationKind.PROMOTED,
                {
                    "resource_id": booking.resource_id,
                    "booking_id": booking.id,
                    "window": str(booking.window),
                    "contact": contact,
                },
            )
        except Exception as e:
            logger.warning(
                "Promotion of %s committed but notification failed (%s: %s)",
                party_id,
                type(e).__name__,
                e,
            )
            return False
        return True
