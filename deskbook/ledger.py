from __future__ import annotations

import datetime as dt
import logging
from dataclasses import replace
from typing import Any, Callable, Iterable

from deskbook.domain import (
    AlreadyCancelled,
    AlreadyWaitlisted,
    BlockEntry,
    BookingEntry,
    BookingState,
    InvariantViolation,
    Mutation,
    MutationKind,
    NotFound,
    TimeWindow,
    WaitlistEntry,
)

logger = logging.getLogger(__name__)


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class Ledger:
    """Authoritative state of one resource: bookings, blocks and the waitlist.

    Every public mutator validates, records a Mutation and applies it. The
    recorded mutations are what a Store commits; apply() replays them without
    validation.
    """

    def __init__(self, resource_id: str, *, clock: Callable[[], dt.datetime] = utcnow) -> None:
        self.resource_id = resource_id
        self._clock = clock
        self._bookings: dict[str, BookingEntry] = {}
        self._blocks: dict[str, BlockEntry] = {}
        self._waitlist: list[WaitlistEntry] = []
        self._pending: list[Mutation] = []

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def confirmed_bookings_on(self, date: dt.date) -> list[BookingEntry]:
        found = [b for b in self._bookings.values() if b.is_confirmed and b.window.date == date]
        return sorted(found, key=lambda b: (b.window.start, b.window.end, b.id))

    def confirmed_overlapping(self, window: TimeWindow) -> list[BookingEntry]:
        return [b for b in self.confirmed_bookings_on(window.date) if b.window.overlaps(window)]

    def blocks_on(self, date: dt.date) -> list[BlockEntry]:
        found = [b for b in self._blocks.values() if b.window.date == date]
        return sorted(found, key=lambda b: (b.window.start, b.window.end, b.id))

    def blocks_overlapping(self, window: TimeWindow) -> list[BlockEntry]:
        return [b for b in self.blocks_on(window.date) if b.window.overlaps(window)]

    def get_booking(self, booking_id: str) -> BookingEntry:
        try:
            return self._bookings[booking_id]
        except KeyError:
            raise NotFound(f"Booking {booking_id} not found on resource {self.resource_id}") from None

    def get_block(self, block_id: str) -> BlockEntry:
        try:
            return self._blocks[block_id]
        except KeyError:
            raise NotFound(f"Block {block_id} not found on resource {self.resource_id}") from None

    def waitlist(self, window: TimeWindow | None = None) -> list[WaitlistEntry]:
        if window is None:
            return list(self._waitlist)
        return [w for w in self._waitlist if w.window == window]

    def is_waitlisted(self, party_id: str, window: TimeWindow) -> bool:
        return any(w.party_id == party_id for w in self.waitlist(window))

    def free_windows(
        self,
        date: dt.date,
        *,
        opens: dt.time,
        closes: dt.time,
        ceiling: int = 1,
    ) -> list[TimeWindow]:
        """Windows between opens and closes that a new booking could take.

        Each returned window is unblocked and overlaps fewer than ceiling
        confirmed bookings. Neighbouring windows are merged only while the
        merged window still satisfies that.
        """
        if not opens < closes:
            return []

        bookings = self.confirmed_bookings_on(date)
        blocks = self.blocks_on(date)
        edges = {opens, closes}
        for window in [b.window for b in bookings] + [b.window for b in blocks]:
            edges.update(t for t in (window.start, window.end) if opens < t < closes)
        points = sorted(edges)

        def _fits(candidate: TimeWindow) -> bool:
            if any(b.window.overlaps(candidate) for b in blocks):
                return False
            return sum(1 for b in bookings if b.window.overlaps(candidate)) < ceiling

        free: list[TimeWindow] = []
        for start, end in zip(points, points[1:]):
            segment = TimeWindow(date=date, start=start, end=end)
            if not _fits(segment):
                continue
            if free and free[-1].end == start:
                merged = TimeWindow(date=date, start=free[-1].start, end=end)
                if _fits(merged):
                    free[-1] = merged
                    continue
            free.append(segment)
        return free

    # ------------------------------------------------------------------
    # Bookings
    # ------------------------------------------------------------------

    def add_booking(self, entry: BookingEntry, *, actor: str, max_concurrent: int = 1) -> Mutation:
        if entry.resource_id != self.resource_id:
            raise InvariantViolation(f"Booking {entry.id} belongs to resource {entry.resource_id}, not {self.resource_id}")
        if not entry.is_confirmed:
            raise InvariantViolation(f"Booking {entry.id} must be confirmed to be added")
        if entry.id in self._bookings:
            raise InvariantViolation(f"Booking id {entry.id} already exists")
        if not entry.window.is_valid():
            raise InvariantViolation(f"Booking {entry.id} has an invalid window {entry.window}")
        if self.blocks_overlapping(entry.window):
            raise InvariantViolation(f"Booking {entry.id} overlaps a block at {entry.window}")
        overlapping = self.confirmed_overlapping(entry.window)
        if len(overlapping) >= max_concurrent:
            raise InvariantViolation(
                f"Booking {entry.id} at {entry.window} would exceed capacity {max_concurrent} "
                f"({len(overlapping)} confirmed already overlap)"
            )
        return self._record(MutationKind.BOOKING_ADDED, actor, entry)

    def cancel_booking(self, booking_id: str, *, actor: str) -> BookingEntry:
        current = self.get_booking(booking_id)
        if current.state is BookingState.CANCELLED:
            raise AlreadyCancelled(f"Booking {booking_id} is already cancelled")

        cancelled = replace(
            current,
            state=BookingState.CANCELLED,
            cancelled_by=actor,
            cancelled_at=self._clock(),
        )
        self._record(MutationKind.BOOKING_CANCELLED, actor, cancelled)
        return cancelled

    # ------------------------------------------------------------------
    # Blocks
    # ------------------------------------------------------------------

    def add_block(self, entry: BlockEntry, *, actor: str) -> Mutation:
        if entry.resource_id != self.resource_id:
            raise InvariantViolation(f"Block {entry.id} belongs to resource {entry.resource_id}, not {self.resource_id}")
        if entry.id in self._blocks:
            raise InvariantViolation(f"Block id {entry.id} already exists")
        if not entry.window.is_valid():
            raise InvariantViolation(f"Block {entry.id} has an invalid window {entry.window}")
        if self.confirmed_overlapping(entry.window):
            raise InvariantViolation(f"Block {entry.id} overlaps a confirmed booking at {entry.window}")
        return self._record(MutationKind.BLOCK_ADDED, actor, entry)

    def remove_block(self, block_id: str, *, actor: str) -> BlockEntry:
        block = self.get_block(block_id)
        self._record(MutationKind.BLOCK_REMOVED, actor, block)
        return block

    # ------------------------------------------------------------------
    # Waitlist
    # ------------------------------------------------------------------

    def enqueue_waitlist(self, entry: WaitlistEntry, *, actor: str) -> Mutation:
        if self.is_waitlisted(entry.party_id, entry.window):
            raise AlreadyWaitlisted(f"Party {entry.party_id} is already waitlisted for {entry.window}")
        return self._record(MutationKind.WAITLIST_JOINED, actor, entry)

    def dequeue_next(self, window: TimeWindow | None = None, *, actor: str) -> WaitlistEntry | None:
        queue = self.waitlist(window)
        if not queue:
            return None
        head = queue[0]
        self._record(MutationKind.WAITLIST_LEFT, actor, head, note="promoted")
        return head

    def remove_from_waitlist(self, party_id: str, window: TimeWindow | None = None, *, actor: str) -> WaitlistEntry:
        for entry in self.waitlist(window):
            if entry.party_id == party_id:
                self._record(MutationKind.WAITLIST_LEFT, actor, entry, note="withdrawn")
                return entry
        raise NotFound(f"Party {party_id} is not on the waitlist of resource {self.resource_id}")

    # ------------------------------------------------------------------
    # Mutation log
    # ------------------------------------------------------------------

    @property
    def pending_mutations(self) -> tuple[Mutation, ...]:
        return tuple(self._pending)

    def drain_mutations(self) -> list[Mutation]:
        drained, self._pending = self._pending, []
        return drained

    def apply(self, mutation: Mutation) -> None:
        if mutation.resource_id != self.resource_id:
            raise InvariantViolation(
                f"Mutation for resource {mutation.resource_id} applied to ledger {self.resource_id}"
            )

        payload = mutation.payload
        kind = mutation.kind
        if kind in (MutationKind.BOOKING_ADDED, MutationKind.BOOKING_CANCELLED):
            self._bookings[payload.id] = payload
        elif kind is MutationKind.BLOCK_ADDED:
            self._blocks[payload.id] = payload
        elif kind is MutationKind.BLOCK_REMOVED:
            self._blocks.pop(payload.id, None)
        elif kind is MutationKind.WAITLIST_JOINED:
            self._waitlist.append(payload)
        elif kind is MutationKind.WAITLIST_LEFT:
            for i, entry in enumerate(self._waitlist):
                if entry.party_id == payload.party_id and entry.window == payload.window:
                    del self._waitlist[i]
                    break
        else:
            raise InvariantViolation(f"Unknown mutation kind: {kind!r}")

    def apply_all(self, mutations: Iterable[Mutation]) -> None:
        for m in mutations:
            self.apply(m)

    def _record(self, kind: MutationKind, actor: str, payload: Any, note: str = "") -> Mutation:
        mutation = Mutation(
            kind=kind,
            resource_id=self.resource_id,
            actor=actor,
            at=self._clock(),
            payload=payload,
            note=note,
        )
        self.apply(mutation)
        self._pending.append(mutation)
        logger.debug("Ledger %s: %s by %s", self.resource_id, kind.value, actor)
        return mutation

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "bookings": [_booking_to_dict(b) for b in self._bookings.values()],
            "blocks": [_block_to_dict(b) for b in self._blocks.values()],
            "waitlist": [_waitlist_to_dict(w) for w in self._waitlist],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any], *, clock: Callable[[], dt.datetime] = utcnow) -> Ledger:
        ledger = cls(str(raw["resource_id"]), clock=clock)
        for item in raw.get("bookings", []):
            booking = _booking_from_dict(item)
            ledger._bookings[booking.id] = booking
        for item in raw.get("blocks", []):
            block = _block_from_dict(item)
            ledger._blocks[block.id] = block
        for item in raw.get("waitlist", []):
            ledger._waitlist.append(_waitlist_from_dict(item))
        return ledger


def _dt_to_str(value: dt.datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _dt_from_str(value: str | None) -> dt.datetime | None:
    return dt.datetime.fromisoformat(value) if value else None


def _booking_to_dict(b: BookingEntry) -> dict[str, Any]:
    return {
        "id": b.id,
        "resource_id": b.resource_id,
        "owner_id": b.owner_id,
        "window": b.window.to_dict(),
        "state": b.state.value,
        "created_by": b.created_by,
        "created_at": _dt_to_str(b.created_at),
        "cancelled_by": b.cancelled_by,
        "cancelled_at": _dt_to_str(b.cancelled_at),
    }


def _booking_from_dict(raw: dict[str, Any]) -> BookingEntry:
    return BookingEntry(
        id=str(raw["id"]),
        resource_id=str(raw["resource_id"]),
        owner_id=str(raw["owner_id"]),
        window=TimeWindow.from_dict(raw["window"]),
        state=BookingState(raw.get("state", BookingState.CONFIRMED.value)),
        created_by=str(raw.get("created_by") or ""),
        created_at=_dt_from_str(raw.get("created_at")),
        cancelled_by=raw.get("cancelled_by"),
        cancelled_at=_dt_from_str(raw.get("cancelled_at")),
    )


def _block_to_dict(b: BlockEntry) -> dict[str, Any]:
    return {
        "id": b.id,
        "resource_id": b.resource_id,
        "window": b.window.to_dict(),
        "reason": b.reason,
        "created_by": b.created_by,
        "created_at": _dt_to_str(b.created_at),
    }


def _block_from_dict(raw: dict[str, Any]) -> BlockEntry:
    return BlockEntry(
        id=str(raw["id"]),
        resource_id=str(raw["resource_id"]),
        window=TimeWindow.from_dict(raw["window"]),
        reason=str(raw.get("reason") or ""),
        created_by=str(raw.get("created_by") or ""),
        created_at=_dt_from_str(raw.get("created_at")),
    )


def _waitlist_to_dict(w: WaitlistEntry) -> dict[str, Any]:
    return {
        "party_id": w.party_id,
        "name": w.name,
        "contact": w.contact,
        "joined_at": w.joined_at.isoformat(),
        "window": w.window.to_dict(),
    }


def _waitlist_from_dict(raw: dict[str, Any]) -> WaitlistEntry:
    return WaitlistEntry(
        party_id=str(raw["party_id"]),
        name=str(raw.get("name") or ""),
        contact=str(raw.get("contact") or ""),
        joined_at=dt.datetime.fromisoformat(raw["joined_at"]),
        window=TimeWindow.from_dict(raw["window"]),
    )
