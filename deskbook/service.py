from __future__ import annotations

import datetime as dt
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterator

from deskbook.conflict import ConflictEngine, Outcome, new_id
from deskbook.domain import BlockEntry, BookingEntry, InvariantViolation, TimeWindow, WaitlistEntry
from deskbook.ledger import Ledger, utcnow
from deskbook.notifier import LogNotifier, NotificationKind, Notifier, Outbox
from deskbook.policy import PolicySource
from deskbook.promoter import CapacityPromoter, PromotionResult
from deskbook.state_file import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Release:
    """A cancelled booking or removed block, with the promotions it triggered."""

    entry: BookingEntry | BlockEntry
    promotion: PromotionResult = field(default_factory=PromotionResult)


class BookingService:
    """Runs every mutating operation as load -> decide -> commit -> notify.

    Mutations of one resource are serialized by a per-resource lock, since
    the ledger checks are check-then-act. Notifications are held in an outbox
    and delivered only after the store commit succeeded.
    """

    def __init__(
        self,
        store: Store,
        policies: PolicySource,
        notifier: Notifier | None = None,
        *,
        default_actor: str = "system",
        clock: Callable[[], dt.datetime] = utcnow,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        self._store = store
        self._policies = policies
        self._notifier = notifier or LogNotifier()
        self._default_actor = default_actor
        self._clock = clock
        self._id_factory = id_factory
        self._engine = ConflictEngine(clock=clock, id_factory=id_factory)

        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, resource_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(resource_id)
            if lock is None:
                lock = self._locks[resource_id] = threading.Lock()
            return lock

    @contextmanager
    def _exclusive(self, resource_id: str) -> Iterator[tuple[Ledger, Outbox]]:
        outbox = Outbox()
        with self._lock_for(resource_id):
            ledger = self._store.load_ledger(resource_id)
            try:
                yield ledger, outbox
                self._commit(resource_id, ledger)
            except InvariantViolation:
                outbox.discard()
                logger.critical(
                    "Ledger invariant violated on resource %s; writes to it are not serialized",
                    resource_id,
                    exc_info=True,
                )
                raise
            except Exception:
                outbox.discard()
                raise

        failed = outbox.flush(self._notifier)
        if failed:
            logger.warning("%d notification(s) failed for resource %s", len(failed), resource_id)

    def _commit(self, resource_id: str, ledger: Ledger) -> None:
        mutations = ledger.drain_mutations()
        if not mutations:
            return
        try:
            self._store.commit(resource_id, mutations)
        except Exception as e:
            logger.error("Commit failed for resource %s (%s: %s)", resource_id, type(e).__name__, e)
            raise
        logger.info("Committed %d mutation(s) for resource %s", len(mutations), resource_id)

    def _promoter(self, outbox: Outbox) -> CapacityPromoter:
        return CapacityPromoter(outbox, clock=self._clock, id_factory=self._id_factory)

    @staticmethod
    def _undelivered_promotions(outbox: Outbox, promotion: PromotionResult) -> None:
        promotion.failed_notifications.extend(
            n.party_id for n in outbox.failed if n.kind is NotificationKind.PROMOTED
        )

    # ------------------------------------------------------------------
    # Mutating operations
    # ------------------------------------------------------------------

    def request_booking(
        self,
        resource_id: str,
        window: TimeWindow,
        owner_id: str,
        *,
        name: str = "",
        contact: str = "",
        actor: str | None = None,
    ) -> Outcome:
        actor = actor or self._default_actor
        policy = self._policies.policy_for(resource_id)

        with self._exclusive(resource_id) as (ledger, outbox):
            outcome = self._engine.request(
                ledger,
                window=window,
                owner_id=owner_id,
                policy=policy,
                actor=actor,
                name=name,
                contact=contact,
            )

            context: dict[str, object] = {"resource_id": resource_id, "window": str(window), "contact": contact}
            decision = outcome.decision
            if decision.accepted:
                context["booking_id"] = outcome.booking.id
                outbox.notify(owner_id, NotificationKind.ACCEPTED, context)
            elif decision.waitlisted:
                context["position"] = len(ledger.waitlist(window))
                outbox.notify(owner_id, NotificationKind.WAITLISTED, context)
            else:
                context["reason"] = decision.reason.value
                outbox.notify(owner_id, NotificationKind.REJECTED, context)

        return outcome

    def cancel_booking(self, resource_id: str, booking_id: str, *, actor: str | None = None) -> Release:
        actor = actor or self._default_actor
        policy = self._policies.policy_for(resource_id)

        with self._exclusive(resource_id) as (ledger, outbox):
            cancelled = ledger.cancel_booking(booking_id, actor=actor)
            logger.info("Cancelled booking %s on %s by %s", booking_id, resource_id, actor)
            promotion = self._promoter(outbox).promote(ledger, cancelled.window, policy, actor=actor)

        self._undelivered_promotions(outbox, promotion)
        return Release(entry=cancelled, promotion=promotion)

    def add_block(self, resource_id: str, window: TimeWindow, reason: str, *, actor: str | None = None) -> Outcome:
        actor = actor or self._default_actor
        with self._exclusive(resource_id) as (ledger, _outbox):
            return self._engine.block(ledger, window=window, reason=reason, actor=actor)

    def remove_block(self, resource_id: str, block_id: str, *, actor: str | None = None) -> Release:
        actor = actor or self._default_actor
        policy = self._policies.policy_for(resource_id)

        with self._exclusive(resource_id) as (ledger, outbox):
            block = ledger.remove_block(block_id, actor=actor)
            logger.info("Removed block %s on %s by %s", block_id, resource_id, actor)
            promotion = self._promoter(outbox).promote_after_unblock(ledger, block, policy, actor=actor)

        self._undelivered_promotions(outbox, promotion)
        return Release(entry=block, promotion=promotion)

    def withdraw(
        self,
        resource_id: str,
        party_id: str,
        window: TimeWindow | None = None,
        *,
        actor: str | None = None,
    ) -> WaitlistEntry:
        actor = actor or self._default_actor
        with self._exclusive(resource_id) as (ledger, _outbox):
            entry = ledger.remove_from_waitlist(party_id, window, actor=actor)
            logger.info("Party %s left the waitlist of %s", party_id, resource_id)
            return entry

    # ------------------------------------------------------------------
    # Snapshot reads
    # ------------------------------------------------------------------

    def bookings_on(self, resource_id: str, date: dt.date) -> list[BookingEntry]:
        return self._store.load_ledger(resource_id).confirmed_bookings_on(date)

    def blocks_on(self, resource_id: str, date: dt.date) -> list[BlockEntry]:
        return self._store.load_ledger(resource_id).blocks_on(date)

    def waitlist(self, resource_id: str, window: TimeWindow | None = None) -> list[WaitlistEntry]:
        return self._store.load_ledger(resource_id).waitlist(window)

    def free_windows(
        self,
        resource_id: str,
        date: dt.date,
        *,
        opens: dt.time = dt.time(8, 0),
        closes: dt.time = dt.time(20, 0),
    ) -> list[TimeWindow]:
        """Bookable windows of one day within opening hours, shorter ones dropped per policy."""
        policy = self._policies.policy_for(resource_id)
        windows = self._store.load_ledger(resource_id).free_windows(
            date, opens=opens, closes=closes, ceiling=policy.ceiling
        )
        shortest = policy.min_duration_minutes or 0
        return [w for w in windows if w.duration_minutes >= shortest]
