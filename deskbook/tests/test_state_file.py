from __future__ import annotations

import datetime as dt
import json

import pytest

from deskbook.conflict import ConflictEngine
from deskbook.domain import BookingState, TimeWindow
from deskbook.ledger import Ledger
from deskbook.policy import ROOM, Policy
from deskbook.state_file import JsonFileStore, MemoryStore

DAY = dt.date(2025, 3, 10)
EVENT = Policy(capacity_bounded=True, allow_waitlist=True, max_concurrent=1)


def _w(start: str, end: str) -> TimeWindow:
    return TimeWindow.parse("2025-03-10", start, end)


def test_missing_file_yields_empty_ledger(tmp_path) -> None:
    store = JsonFileStore(str(tmp_path / "state"))

    ledger = store.load_ledger("room-1")

    assert ledger.resource_id == "room-1"
    assert ledger.confirmed_bookings_on(DAY) == []


def test_evaluate_persist_reload_reproduces_bookings(tmp_path) -> None:
    store = JsonFileStore(str(tmp_path / "state"))
    engine = ConflictEngine()

    ledger = store.load_ledger("room-1")
    for start, end in [("14:00", "15:00"), ("09:00", "10:00"), ("09:30", "10:30"), ("10:00", "11:00")]:
        engine.request(ledger, window=_w(start, end), owner_id="u1", policy=ROOM, actor="u1")
    store.commit("room-1", ledger.drain_mutations())

    reloaded = store.load_ledger("room-1")

    assert reloaded.confirmed_bookings_on(DAY) == ledger.confirmed_bookings_on(DAY)
    assert [str(b.window) for b in reloaded.confirmed_bookings_on(DAY)] == [
        "2025-03-10 09:00-10:00",
        "2025-03-10 10:00-11:00",
        "2025-03-10 14:00-15:00",
    ]


def test_commits_accumulate_across_snapshots(tmp_path) -> None:
    store = JsonFileStore(str(tmp_path))
    engine = ConflictEngine()

    first = store.load_ledger("event-1")
    accepted = engine.request(first, window=_w("18:00", "20:00"), owner_id="p1", policy=EVENT, actor="p1")
    store.commit("event-1", first.drain_mutations())

    second = store.load_ledger("event-1")
    engine.request(second, window=_w("18:00", "20:00"), owner_id="p2", policy=EVENT, actor="p2")
    second.cancel_booking(accepted.booking.id, actor="p1")
    store.commit("event-1", second.drain_mutations())

    final = store.load_ledger("event-1")
    assert final.get_booking(accepted.booking.id).state is BookingState.CANCELLED
    assert [w.party_id for w in final.waitlist()] == ["p2"]


def test_file_layout_is_one_json_document_per_resource(tmp_path) -> None:
    store = JsonFileStore(str(tmp_path))
    ledger = store.load_ledger("room-1")
    ConflictEngine().request(ledger, window=_w("10:00", "11:00"), owner_id="u1", policy=ROOM, actor="u1")
    store.commit("room-1", ledger.drain_mutations())

    raw = json.loads((tmp_path / "room-1.json").read_text(encoding="utf-8"))

    assert raw["resource_id"] == "room-1"
    assert raw["bookings"][0]["window"] == {"date": "2025-03-10", "start": "10:00", "end": "11:00"}
    assert raw["bookings"][0]["state"] == "confirmed"
    assert raw["blocks"] == []
    assert raw["waitlist"] == []
    assert not list(tmp_path.glob("*.tmp"))


def test_empty_commit_does_not_create_a_file(tmp_path) -> None:
    store = JsonFileStore(str(tmp_path))

    store.commit("room-1", [])

    assert not (tmp_path / "room-1.json").exists()


def test_corrupted_ledger_file_is_an_error(tmp_path) -> None:
    (tmp_path / "room-1.json").write_text("{not json", encoding="utf-8")
    store = JsonFileStore(str(tmp_path))

    with pytest.raises(RuntimeError, match=r"Corrupted ledger file"):
        store.load_ledger("room-1")


def test_resource_id_must_be_a_safe_file_name(tmp_path) -> None:
    store = JsonFileStore(str(tmp_path))

    with pytest.raises(ValueError):
        store.load_ledger("../etc/passwd")


def test_memory_store_hands_out_independent_snapshots() -> None:
    store = MemoryStore()
    engine = ConflictEngine()

    ledger = store.load_ledger("room-1")
    engine.request(ledger, window=_w("10:00", "11:00"), owner_id="u1", policy=ROOM, actor="u1")

    # nothing committed yet
    assert store.load_ledger("room-1").confirmed_bookings_on(DAY) == []

    store.commit("room-1", ledger.drain_mutations())
    snapshot = store.load_ledger("room-1")
    engine.request(snapshot, window=_w("12:00", "13:00"), owner_id="u2", policy=ROOM, actor="u2")

    assert len(store.load_ledger("room-1").confirmed_bookings_on(DAY)) == 1
    assert isinstance(snapshot, Ledger)


def test_sub_minute_windows_survive_a_reload(tmp_path) -> None:
    store = JsonFileStore(str(tmp_path))
    window = _w("10:00:30", "11:00")
    ledger = store.load_ledger("room-1")
    ConflictEngine().request(ledger, window=window, owner_id="u1", policy=ROOM, actor="u1")
    store.commit("room-1", ledger.drain_mutations())

    raw = json.loads((tmp_path / "room-1.json").read_text(encoding="utf-8"))
    assert raw["bookings"][0]["window"]["start"] == "10:00:30"

    reloaded = store.load_ledger("room-1")
    assert [b.window for b in reloaded.confirmed_bookings_on(DAY)] == [window]
    decision = ConflictEngine().evaluate(reloaded, _w("09:00", "10:00:15"), ROOM)
    assert decision.accepted
