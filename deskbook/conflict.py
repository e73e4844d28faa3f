from __future__ import annotations

import datetime as dt
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from deskbook.domain import BlockEntry, BookingEntry, InvalidWindow, TimeWindow, WaitlistEntry
from deskbook.ledger import Ledger, utcnow
from deskbook.policy import ROOM, Policy

logger = logging.getLogger(__name__)


class DecisionKind(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WAITLISTED = "waitlisted"


class RejectReason(str, Enum):
    BLOCKED = "blocked"
    SCHEDULE_CONFLICT = "schedule_conflict"
    FULL = "full"
    DUPLICATE = "duplicate"
    DURATION = "duration"
    ADVANCE_NOTICE = "advance_notice"


@dataclass(frozen=True)
class Decision:
    """Outcome of evaluating a window against a ledger.

    Rejections are normal business outcomes and travel as values.
    conflicts holds the entries that caused a rejection; free_slots is the
    remaining capacity for the window at decision time.
    """

    kind: DecisionKind
    window: TimeWindow
    reason: RejectReason | None = None
    conflicts: tuple[BookingEntry | BlockEntry, ...] = ()
    free_slots: int = 0

    @classmethod
    def accept(cls, window: TimeWindow, free_slots: int) -> Decision:
        return cls(kind=DecisionKind.ACCEPTED, window=window, free_slots=free_slots)

    @classmethod
    def reject(
        cls,
        window: TimeWindow,
        reason: RejectReason,
        conflicts: tuple[BookingEntry | BlockEntry, ...] = (),
    ) -> Decision:
        return cls(kind=DecisionKind.REJECTED, window=window, reason=reason, conflicts=conflicts)

    @classmethod
    def waitlist(cls, window: TimeWindow, conflicts: tuple[BookingEntry, ...] = ()) -> Decision:
        return cls(kind=DecisionKind.WAITLISTED, window=window, conflicts=conflicts)

    @property
    def accepted(self) -> bool:
        return self.kind is DecisionKind.ACCEPTED

    @property
    def rejected(self) -> bool:
        return self.kind is DecisionKind.REJECTED

    @property
    def waitlisted(self) -> bool:
        return self.kind is DecisionKind.WAITLISTED


@dataclass(frozen=True)
class Outcome:
    decision: Decision
    booking: BookingEntry | None = None
    waitlist_entry: WaitlistEntry | None = None
    block: BlockEntry | None = None


def new_id() -> str:
    return uuid.uuid4().hex


class ConflictEngine:
    """Decides whether a window may be granted and writes the result to the ledger.

    The engine is not thread-safe. Callers must serialize every request, block
    and cancellation for the same resource (see BookingService).
    """

    def __init__(
        self,
        *,
        clock: Callable[[], dt.datetime] = utcnow,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        self._clock = clock
        self._id_factory = id_factory

    def evaluate(self, ledger: Ledger, window: TimeWindow, policy: Policy) -> Decision:
        if not window.is_valid():
            raise InvalidWindow(f"Invalid window {window}: start must be before end")

        if not policy.duration_allowed(window.duration_minutes):
            return Decision.reject(window, RejectReason.DURATION)
        if not policy.advance_allowed(self._hours_ahead(window)):
            return Decision.reject(window, RejectReason.ADVANCE_NOTICE)

        blocks = ledger.blocks_overlapping(window)
        if blocks:
            return Decision.reject(window, RejectReason.BLOCKED, tuple(blocks))

        confirmed = tuple(ledger.confirmed_overlapping(window))

        if not policy.capacity_bounded:
            if confirmed:
                return Decision.reject(window, RejectReason.SCHEDULE_CONFLICT, confirmed)
            return Decision.accept(window, free_slots=1)

        # At exactly max_concurrent the request is never accepted.
        count = len(confirmed)
        if count < policy.max_concurrent:
            return Decision.accept(window, free_slots=policy.max_concurrent - count)
        if policy.allow_waitlist:
            return Decision.waitlist(window, confirmed)
        return Decision.reject(window, RejectReason.FULL, confirmed)

    def evaluate_block(self, ledger: Ledger, window: TimeWindow) -> Decision:
        # A block is checked like an exclusive booking: it may not cover any
        # confirmed booking, whatever the resource's capacity.
        return self.evaluate(ledger, window, ROOM)

    def request(
        self,
        ledger: Ledger,
        *,
        window: TimeWindow,
        owner_id: str,
        policy: Policy,
        actor: str,
        name: str = "",
        contact: str = "",
    ) -> Outcome:
        decision = self.evaluate(ledger, window, policy)

        if policy.capacity_bounded and not decision.rejected:
            duplicate = self._find_duplicate(ledger, window, owner_id)
            if duplicate is not None:
                decision = Decision.reject(window, RejectReason.DUPLICATE, duplicate)

        if decision.accepted:
            booking = BookingEntry(
                id=self._id_factory(),
                resource_id=ledger.resource_id,
                owner_id=owner_id,
                window=window,
                created_by=actor,
                created_at=self._clock(),
            )
            ledger.add_booking(booking, actor=actor, max_concurrent=policy.ceiling)
            logger.info("Accepted booking %s for %s on %s at %s", booking.id, owner_id, ledger.resource_id, window)
            return Outcome(decision=decision, booking=booking)

        if decision.waitlisted:
            entry = WaitlistEntry(
                party_id=owner_id,
                window=window,
                joined_at=self._clock(),
                name=name,
                contact=contact,
            )
            ledger.enqueue_waitlist(entry, actor=actor)
            logger.info(
                "Waitlisted %s on %s at %s (position %d)",
                owner_id,
                ledger.resource_id,
                window,
                len(ledger.waitlist(window)),
            )
            return Outcome(decision=decision, waitlist_entry=entry)

        logger.info(
            "Rejected %s on %s at %s (%s)",
            owner_id,
            ledger.resource_id,
            window,
            decision.reason.value if decision.reason else "unknown",
        )
        return Outcome(decision=decision)

    def block(self, ledger: Ledger, *, window: TimeWindow, reason: str, actor: str) -> Outcome:
        decision = self.evaluate_block(ledger, window)
        if not decision.accepted:
            logger.info("Refused block on %s at %s (%s)", ledger.resource_id, window, decision.reason.value)
            return Outcome(decision=decision)

        block = BlockEntry(
            id=self._id_factory(),
            resource_id=ledger.resource_id,
            window=window,
            reason=reason,
            created_by=actor,
            created_at=self._clock(),
        )
        ledger.add_block(block, actor=actor)
        logger.info("Blocked %s at %s by %s (%s)", ledger.resource_id, window, actor, reason)
        return Outcome(decision=decision, block=block)

    def _hours_ahead(self, window: TimeWindow) -> float:
        # Window times are read in the clock's timezone.
        now = self._clock()
        starts_at = dt.datetime.combine(window.date, window.start, tzinfo=now.tzinfo)
        return (starts_at - now).total_seconds() / 3600

    @staticmethod
    def _find_duplicate(ledger: Ledger, window: TimeWindow, owner_id: str) -> tuple[BookingEntry, ...] | None:
        held = tuple(b for b in ledger.confirmed_overlapping(window) if b.owner_id == owner_id)
        if held:
            return held
        if ledger.is_waitlisted(owner_id, window):
            return ()
        return None
