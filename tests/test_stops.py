from __future__ import annotations

import datetime
import sys
from pathlib import Path

import pytest

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from errors import ValidationError  # noqa: E402
from stops import (  # noqa: E402
    RouteStop,
    advance_time,
    duplicate_keys,
    normalize_time,
    sort_stops,
    stop_key,
    stop_matches,
    stops_from_payload,
    time_of_day,
)


def _stop(branch_id: int, time: str, employee_id: int, **extra) -> RouteStop:
    return RouteStop(branch_id=branch_id, employee_id=employee_id, client_id=1, time=time, **extra)


def test_stop_key_joins_branch_time_and_employee():
    stop = _stop(5, "09:00", 12, employee_name="Dana")
    assert stop_key(stop) == "5|09:00|12"
    assert stop.key == "5|09:00|12"


def test_stop_key_ignores_display_fields():
    first = _stop(5, "09:00", 12, branch_name="Main St")
    renamed = _stop(5, "09:00", 12, branch_name="Main Street (renamed)")
    assert stop_key(first) == stop_key(renamed)


@pytest.mark.parametrize(
    "raw, expected",
    [("9:05", "09:05"), ("09:05", "09:05"), ("23:59:30", "23:59"), (datetime.time(7, 30), "07:30")],
)
def test_normalize_time_accepts_common_forms(raw, expected):
    assert normalize_time(raw) == expected


@pytest.mark.parametrize("raw", ["", "nine", "24:00", "12:60", "1:2:3:4"])
def test_normalize_time_rejects_garbage(raw):
    with pytest.raises(ValidationError):
        normalize_time(raw)


def test_advance_time_wraps_past_midnight():
    assert advance_time("09:00") == "09:05"
    assert advance_time("23:58", 5) == "00:03"
    assert time_of_day("07:45") == datetime.time(7, 45)


def test_sort_stops_is_stable_for_equal_times():
    early = _stop(1, "08:00", 1)
    late_a = _stop(2, "10:00", 1)
    late_b = _stop(3, "10:00", 2)
    ordered = sort_stops([late_a, early, late_b])
    assert [stop.branch_id for stop in ordered] == [1, 2, 3]


def test_duplicate_keys_reports_each_repeated_key_once():
    stops = [_stop(1, "08:00", 1), _stop(1, "08:00", 1), _stop(1, "08:00", 2)]
    assert duplicate_keys(stops) == ["1|08:00|1"]
    assert duplicate_keys(stops[1:]) == []


def test_stops_from_payload_normalizes_stored_rows():
    stored = [{"branch_id": "4", "employee_id": 2, "client_id": 3, "time": "8:15", "branch_name": "Harbor"}]
    (stop,) = stops_from_payload(stored)
    assert stop.branch_id == 4
    assert stop.time == "08:15"
    assert stop.client_name == ""
    assert RouteStop.from_dict(stop.to_dict()) == stop


def test_stop_matches_searches_display_fields():
    stop = _stop(1, "08:00", 1, employee_name="Dana Reyes", client_name="Acme", branch_address="1 Main Street")
    assert stop_matches(stop, "dana")
    assert stop_matches(stop, "MAIN")
    assert stop_matches(stop, "")
    assert not stop_matches(stop, "globex")
