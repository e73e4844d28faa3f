from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


def parse_date(raw: str) -> dt.date:
    try:
        return dt.date.fromisoformat(raw.strip())
    except ValueError as e:
        raise InvalidWindow(f"Invalid date value: {raw!r}. Expected YYYY-MM-DD.") from e


def parse_time(raw: str) -> dt.time:
    try:
        return dt.time.fromisoformat(raw.strip())
    except ValueError as e:
        raise InvalidWindow(f"Invalid time value: {raw!r}. Expected HH:MM.") from e


def _format_time(value: dt.time) -> str:
    if value.second or value.microsecond:
        return value.isoformat()
    return value.isoformat(timespec="minutes")


@dataclass(frozen=True, order=True)
class TimeWindow:
    """A half-open interval [start, end) on a single calendar date.

    Invalid windows (start >= end) can be constructed so they can be reported
    back to the caller; the engine refuses them via is_valid().
    """

    date: dt.date
    start: dt.time
    end: dt.time

    @classmethod
    def parse(cls, date_iso: str, start: str, end: str) -> TimeWindow:
        return cls(date=parse_date(date_iso), start=parse_time(start), end=parse_time(end))

    def is_valid(self) -> bool:
        return self.start < self.end

    def overlaps(self, other: TimeWindow) -> bool:
        # Windows touching at an endpoint do not overlap.
        return self.date == other.date and self.start < other.end and other.start < self.end

    def contains(self, point: dt.time | dt.datetime) -> bool:
        if isinstance(point, dt.datetime):
            if point.date() != self.date:
                return False
            point = point.time()
        return self.start <= point < self.end

    def is_adjacent(self, other: TimeWindow) -> bool:
        return self.date == other.date and (self.end == other.start or other.end == self.start)

    @property
    def duration_minutes(self) -> int:
        start = dt.datetime.combine(self.date, self.start)
        end = dt.datetime.combine(self.date, self.end)
        return int((end - start).total_seconds() // 60)

    def to_dict(self) -> dict[str, str]:
        return {
            "date": self.date.isoformat(),
            "start": _format_time(self.start),
            "end": _format_time(self.end),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> TimeWindow:
        return cls.parse(str(raw["date"]), str(raw["start"]), str(raw["end"]))

    def __str__(self) -> str:
        return f"{self.date.isoformat()} {_format_time(self.start)}-{_format_time(self.end)}"


class BookingState(str, Enum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class BookingEntry:
    id: str
    resource_id: str
    owner_id: str
    window: TimeWindow
    state: BookingState = BookingState.CONFIRMED
    created_by: str = ""
    created_at: dt.datetime | None = None
    cancelled_by: str | None = None
    cancelled_at: dt.datetime | None = None

    @property
    def is_confirmed(self) -> bool:
        return self.state is BookingState.CONFIRMED


@dataclass(frozen=True)
class BlockEntry:
    id: str
    resource_id: str
    window: TimeWindow
    reason: str
    created_by: str
    created_at: dt.datetime | None = None


@dataclass(frozen=True)
class WaitlistEntry:
    party_id: str
    window: TimeWindow
    joined_at: dt.datetime
    name: str = ""
    contact: str = ""


class MutationKind(str, Enum):
    BOOKING_ADDED = "booking_added"
    BOOKING_CANCELLED = "booking_cancelled"
    BLOCK_ADDED = "block_added"
    BLOCK_REMOVED = "block_removed"
    WAITLIST_JOINED = "waitlist_joined"
    WAITLIST_LEFT = "waitlist_left"


@dataclass(frozen=True)
class Mutation:
    """One state transition of a ledger, as handed to the store.

    payload is the entry after the transition (the cancelled booking, the
    removed block, the waitlist entry that joined or left).
    """

    kind: MutationKind
    resource_id: str
    actor: str
    at: dt.datetime
    payload: BookingEntry | BlockEntry | WaitlistEntry
    note: str = field(default="", compare=False)


class BookingError(Exception):
    """Base class for errors raised by the booking engine."""


class InvalidWindow(BookingError, ValueError):
    """Malformed time window supplied by the caller."""


class NotFound(BookingError, LookupError):
    pass


class AlreadyCancelled(BookingError):
    pass


class AlreadyWaitlisted(BookingError):
    pass


class InvariantViolation(BookingError):
    """A write would break a ledger invariant.

    Never an expected outcome: it means some caller mutated the ledger without
    going through the per-resource serialization in BookingService.
    """
