from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Policy:
    """Booking policy of one resource.

    Exclusive resources (rooms) ignore max_concurrent: one booking at a time.
    Capacity-bounded resources (event occurrences) admit max_concurrent
    overlapping bookings.

    The optional booking rules limit how long a window may be and how far
    ahead of its start it may be requested. None means no limit.
    """

    capacity_bounded: bool = False
    allow_waitlist: bool = False
    max_concurrent: int = 1
    min_duration_minutes: int | None = None
    max_duration_minutes: int | None = None
    min_advance_hours: float | None = None
    max_advance_days: float | None = None

    def __post_init__(self) -> None:
        if self.max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {self.max_concurrent}")
        for name in ("min_duration_minutes", "max_duration_minutes", "min_advance_hours", "max_advance_days"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} must be >= 0, got {value}")
        if (
            self.min_duration_minutes is not None
            and self.max_duration_minutes is not None
            and self.min_duration_minutes > self.max_duration_minutes
        ):
            raise ValueError("min_duration_minutes must not exceed max_duration_minutes")

    @property
    def ceiling(self) -> int:
        return self.max_concurrent if self.capacity_bounded else 1

    def duration_allowed(self, minutes: int) -> bool:
        if self.min_duration_minutes is not None and minutes < self.min_duration_minutes:
            return False
        if self.max_duration_minutes is not None and minutes > self.max_duration_minutes:
            return False
        return True

    def advance_allowed(self, hours_ahead: float) -> bool:
        if self.min_advance_hours is not None and hours_ahead < self.min_advance_hours:
            return False
        if self.max_advance_days is not None and hours_ahead > self.max_advance_days * 24:
            return False
        return True

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> Policy:
        if not isinstance(raw, Mapping):
            raise TypeError(f"policy must be an object, got {type(raw).__name__}")
        return cls(
            capacity_bounded=_bool(raw, "capacity_bounded", False),
            allow_waitlist=_bool(raw, "allow_waitlist", False),
            max_concurrent=_int(raw, "max_concurrent", 1),
            min_duration_minutes=_optional_int(raw, "min_duration_minutes"),
            max_duration_minutes=_optional_int(raw, "max_duration_minutes"),
            min_advance_hours=_optional_number(raw, "min_advance_hours"),
            max_advance_days=_optional_number(raw, "max_advance_days"),
        )


def _bool(raw: Mapping[str, Any], key: str, default: bool) -> bool:
    value = raw.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"{key} must be true or false, got {value!r}")
    return value


def _int(raw: Mapping[str, Any], key: str, default: int) -> int:
    value = raw.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer, got {value!r}")
    return value


def _optional_int(raw: Mapping[str, Any], key: str) -> int | None:
    if raw.get(key) is None:
        return None
    return _int(raw, key, 0)


def _optional_number(raw: Mapping[str, Any], key: str) -> float | None:
    value = raw.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number, got {value!r}")
    return float(value)


ROOM = Policy()


class PolicySource(Protocol):
    def policy_for(self, resource_id: str) -> Policy: ...


class StaticPolicySource:
    def __init__(self, policies: Mapping[str, Policy] | None = None, default: Policy = ROOM) -> None:
        self._policies = dict(policies or {})
        self._default = default

    def policy_for(self, resource_id: str) -> Policy:
        return self._policies.get(resource_id, self._default)


def load_policies(path: str) -> StaticPolicySource:
    """Read resource policies from a JSON file.

    Layout: {"default": {...}, "resources": {"<resource id>": {...}}}.
    A missing file means every resource is an exclusive room.
    """
    if not os.path.exists(path):
        logger.info("Policy file %s not found, treating all resources as rooms", path)
        return StaticPolicySource()

    with open(path, "r", encoding="utf-8") as f:
        try:
            raw = json.load(f)
        except json.JSONDecodeError as e:
            raise RuntimeError(f"Invalid policy file {path}: {e}") from e

    if not isinstance(raw, dict) or not isinstance(raw.get("resources", {}), dict):
        raise RuntimeError(f"Invalid policy file {path}: expected an object with a \"resources\" object")

    try:
        default = Policy.from_dict(raw.get("default", {}))
        policies = {str(rid): Policy.from_dict(item) for rid, item in raw.get("resources", {}).items()}
    except (TypeError, ValueError) as e:
        raise RuntimeError(f"Invalid policy in {path}: {e}") from e

    return StaticPolicySource(policies, default=default)
