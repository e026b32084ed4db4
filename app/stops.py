from __future__ import annotations

import datetime
from collections import Counter
from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, Iterable, List, Tuple

from errors import ValidationError

KEY_SEPARATOR = "|"
DEFAULT_STOP_TIME = "09:00"
STOP_TIME_STEP_MINUTES = 5


@dataclass(frozen=True)
class RouteStop:
    """One employee visiting one branch at a time of day inside a template.

    Display names are copied in when the stop is written so a template stays
    readable after the employee, client or branch is renamed or removed.
    """

    branch_id: int
    employee_id: int
    client_id: int
    time: str
    employee_name: str = ""
    client_name: str = ""
    branch_name: str = ""
    branch_address: str = ""

    @property
    def key(self) -> str:
        return stop_key(self)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "RouteStop":
        return cls(
            branch_id=int(payload["branch_id"]),
            employee_id=int(payload["employee_id"]),
            client_id=int(payload["client_id"]),
            time=normalize_time(payload["time"]),
            employee_name=str(payload.get("employee_name") or ""),
            client_name=str(payload.get("client_name") or ""),
            branch_name=str(payload.get("branch_name") or ""),
            branch_address=str(payload.get("branch_address") or ""),
        )

    def with_changes(self, **changes: Any) -> "RouteStop":
        return replace(self, **changes)


def stop_key(stop: RouteStop) -> str:
    return f"{stop.branch_id}{KEY_SEPARATOR}{stop.time}{KEY_SEPARATOR}{stop.employee_id}"


def normalize_time(value: str | datetime.time) -> str:
    """Return ``HH:MM`` for a time of day given as text or ``datetime.time``."""
    if isinstance(value, datetime.time):
        return value.strftime("%H:%M")
    text = str(value or "").strip()
    parts = text.split(":")
    if len(parts) not in (2, 3):
        raise ValidationError(f"Invalid time of day '{text}'; expected HH:MM.")
    try:
        hour, minute = int(parts[0]), int(parts[1])
        second = int(parts[2]) if len(parts) == 3 else 0
    except ValueError:
        raise ValidationError(f"Invalid time of day '{text}'; expected HH:MM.")
    if not (0 <= hour < 24 and 0 <= minute < 60 and 0 <= second < 60):
        raise ValidationError(f"Invalid time of day '{text}'; expected HH:MM.")
    return f"{hour:02d}:{minute:02d}"


def time_of_day(value: str) -> datetime.time:
    hour, minute = normalize_time(value).split(":")
    return datetime.time(int(hour), int(minute))


def advance_time(value: str, minutes: int = STOP_TIME_STEP_MINUTES) -> str:
    """Move a time of day forward, wrapping around midnight."""
    hour, minute = (int(part) for part in normalize_time(value).split(":"))
    total = (hour * 60 + minute + minutes) % (24 * 60)
    return f"{total // 60:02d}:{total % 60:02d}"


def sort_stops(stops: Iterable[RouteStop]) -> Tuple[RouteStop, ...]:
    return tuple(sorted(stops, key=lambda stop: stop.time))


def stop_keys(stops: Iterable[RouteStop]) -> set[str]:
    return {stop_key(stop) for stop in stops}


def duplicate_keys(stops: Iterable[RouteStop]) -> List[str]:
    counts = Counter(stop_key(stop) for stop in stops)
    return sorted(key for key, count in counts.items() if count > 1)


def stops_from_payload(payload: Iterable[Dict[str, Any]]) -> Tuple[RouteStop, ...]:
    return tuple(RouteStop.from_dict(item) for item in payload)


def stops_to_payload(stops: Iterable[RouteStop]) -> List[Dict[str, Any]]:
    return [stop.to_dict() for stop in stops]


def stop_matches(stop: RouteStop, term: str) -> bool:
    needle = (term or "").strip().lower()
    if not needle:
        return True
    haystack = (stop.employee_name, stop.client_name, stop.branch_name, stop.branch_address)
    return any(needle in (value or "").lower() for value in haystack)
