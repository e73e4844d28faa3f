from __future__ import annotations

import datetime as dt
import itertools
from typing import Any, Mapping

from deskbook.conflict import ConflictEngine
from deskbook.domain import BlockEntry, MutationKind, TimeWindow
from deskbook.ledger import Ledger
from deskbook.notifier import NotificationKind
from deskbook.policy import ROOM, Policy
from deskbook.promoter import CapacityPromoter

WINDOW = TimeWindow.parse("2025-03-10", "18:00", "20:00")
EVENT = Policy(capacity_bounded=True, allow_waitlist=True, max_concurrent=2)


class _RecordingNotifier:
    def __init__(self, *, fail: bool = False) -> None:
        self.calls: list[tuple[str, NotificationKind, dict[str, Any]]] = []
        self.fail = fail

    def notify(self, party_id: str, kind: NotificationKind, context: Mapping[str, Any]) -> None:
        self.calls.append((party_id, kind, dict(context)))
        if self.fail:
            raise RuntimeError("smtp down")


def _ids():
    counter = itertools.count(1)
    return lambda: f"id-{next(counter)}"


def _full_event(parties: tuple[str, ...], policy: Policy = EVENT) -> Ledger:
    engine = ConflictEngine(id_factory=_ids())
    ledger = Ledger("event-1")
    for p in parties:
        engine.request(ledger, window=WINDOW, owner_id=p, policy=policy, actor=p)
    return ledger


def test_single_freed_slot_promotes_first_in_line() -> None:
    ledger = _full_event(("a1", "a2", "p1", "p2", "p3"))
    notifier = _RecordingNotifier()
    promoter = CapacityPromoter(notifier, id_factory=_ids())

    a1 = [b for b in ledger.confirmed_overlapping(WINDOW) if b.owner_id == "a1"][0]
    ledger.cancel_booking(a1.id, actor="a1")
    result = promoter.promote(ledger, WINDOW, EVENT, actor="a1")

    assert [b.owner_id for b in result.promoted] == ["p1"]
    assert [w.party_id for w in ledger.waitlist(WINDOW)] == ["p2", "p3"]
    assert notifier.calls[0][0] == "p1"
    assert notifier.calls[0][1] is NotificationKind.PROMOTED
    assert notifier.calls[0][2]["booking_id"] == result.promoted[0].id


def test_promotion_order_does_not_depend_on_which_seat_is_released() -> None:
    for released in ("a1", "a2"):
        ledger = _full_event(("a1", "a2", "p1", "p2", "p3"))
        promoter = CapacityPromoter(id_factory=_ids())
        booking = [b for b in ledger.confirmed_overlapping(WINDOW) if b.owner_id == released][0]

        ledger.cancel_booking(booking.id, actor=released)
        result = promoter.promote(ledger, WINDOW, EVENT, actor=released)

        assert [b.owner_id for b in result.promoted] == ["p1"]


def test_cascade_fills_every_free_slot_then_stops() -> None:
    ledger = _full_event(("a1", "a2", "p1", "p2", "p3"))
    promoter = CapacityPromoter(id_factory=_ids())
    for booking in ledger.confirmed_overlapping(WINDOW):
        ledger.cancel_booking(booking.id, actor="admin")

    result = promoter.promote(ledger, WINDOW, EVENT, actor="admin")

    assert [b.owner_id for b in result.promoted] == ["p1", "p2"]
    assert len(ledger.confirmed_overlapping(WINDOW)) == 2
    assert [w.party_id for w in ledger.waitlist(WINDOW)] == ["p3"]


def test_cascade_stops_when_waitlist_is_empty() -> None:
    ledger = _full_event(("a1", "a2", "p1"))
    promoter = CapacityPromoter(id_factory=_ids())
    for booking in ledger.confirmed_overlapping(WINDOW):
        ledger.cancel_booking(booking.id, actor="admin")

    result = promoter.promote(ledger, WINDOW, EVENT, actor="admin")

    assert [b.owner_id for b in result.promoted] == ["p1"]
    assert ledger.waitlist() == []


def test_no_free_slot_promotes_nobody() -> None:
    ledger = _full_event(("a1", "a2", "p1"))
    promoter = CapacityPromoter(id_factory=_ids())

    result = promoter.promote(ledger, WINDOW, EVENT, actor="admin")

    assert result.promoted == []
    assert [w.party_id for w in ledger.waitlist()] == ["p1"]


def test_notification_failure_keeps_the_promotion() -> None:
    ledger = _full_event(("a1", "a2", "p1"))
    notifier = _RecordingNotifier(fail=True)
    promoter = CapacityPromoter(notifier, id_factory=_ids())
    ledger.drain_mutations()

    a1 = [b for b in ledger.confirmed_overlapping(WINDOW) if b.owner_id == "a1"][0]
    ledger.cancel_booking(a1.id, actor="a1")
    result = promoter.promote(ledger, WINDOW, EVENT, actor="a1")

    assert [b.owner_id for b in result.promoted] == ["p1"]
    assert result.failed_notifications == ["p1"]
    assert "p1" in [b.owner_id for b in ledger.confirmed_overlapping(WINDOW)]
    assert [m.kind for m in ledger.pending_mutations] == [
        MutationKind.BOOKING_CANCELLED,
        MutationKind.WAITLIST_LEFT,
        MutationKind.BOOKING_ADDED,
    ]


def test_exclusive_resources_never_promote() -> None:
    ledger = Ledger("room-1")
    promoter = CapacityPromoter(id_factory=_ids())

    assert promoter.promote(ledger, WINDOW, ROOM, actor="admin").promoted == []


def test_blocked_window_has_no_free_slots() -> None:
    ledger = _full_event(("a1", "a2", "p1"))
    for booking in ledger.confirmed_overlapping(WINDOW):
        ledger.cancel_booking(booking.id, actor="admin")
    block = BlockEntry(id="blk", resource_id="event-1", window=WINDOW, reason="venue closed", created_by="admin")
    ledger.add_block(block, actor="admin")
    promoter = CapacityPromoter(id_factory=_ids())

    assert promoter.free_slots(ledger, WINDOW, EVENT) == 0
    assert promoter.promote(ledger, WINDOW, EVENT, actor="admin").promoted == []

    ledger.remove_block("blk", actor="admin")
    result = promoter.promote_after_unblock(ledger, block, EVENT, actor="admin")

    assert [b.owner_id for b in result.promoted] == ["p1"]
