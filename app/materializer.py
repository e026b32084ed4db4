"""Materialize work route templates onto calendar dates as job records.

A date is either unassigned or assigned to one template slot. Assigning
validates the template against the branches that still exist *before*
anything is deleted, then clears the date's jobs, inserts one pending job per
surviving stop and upserts the assignment record in a single transaction.
"""

from __future__ import annotations

import calendar
import datetime
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError

from database import (
    Job,
    WorkRouteAssignment,
    delete_jobs_for_day,
    existing_branch_ids,
    get_assignments,
    record_audit_log,
    upsert_assignment,
)
from errors import StoreError, ValidationError
from notifications import change_feed
from stops import RouteStop, time_of_day
from template_store import TemplateStore

logger = logging.getLogger(__name__)


@dataclass
class AssignmentResult:
    date: datetime.date
    template_index: int
    jobs_created: int
    jobs_deleted: int
    dropped_stops: List[RouteStop] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "date": self.date.isoformat(),
            "template_index": self.template_index,
            "jobs_created": self.jobs_created,
            "jobs_deleted": self.jobs_deleted,
            "dropped_stops": [stop.to_dict() for stop in self.dropped_stops],
            "warnings": list(self.warnings),
        }


def _coerce_date(value: datetime.date | str) -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    try:
        return datetime.date.fromisoformat(str(value))
    except ValueError:
        raise ValidationError("Date must be YYYY-MM-DD.")


class AssignmentMaterializer:
    def __init__(self, store: TemplateStore, session_factory: Callable) -> None:
        self.store = store
        self.session_factory = session_factory
        self._assignments: Dict[datetime.date, int] = {}

    @property
    def assignments(self) -> Dict[datetime.date, int]:
        return dict(self._assignments)

    def load(self) -> Dict[datetime.date, int]:
        try:
            with self.session_factory() as session:
                rows = get_assignments(session)
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not load assignments: {exc}") from exc
        self._assignments = {row.date: row.template_index for row in rows}
        return self.assignments

    def assign(self, day: datetime.date | str, template_index: int, *, actor: str = "system") -> AssignmentResult:
        day = _coerce_date(day)
        slot = self.store.slot(template_index)
        if not slot.stops:
            raise ValidationError(f"{slot.name} has no stops.")

        session = self.session_factory()
        try:
            surviving, dropped = self._validate_branches(session, slot.stops)
            if not surviving:
                raise ValidationError(f"No valid branches were found in {slot.name}.")
            deleted = delete_jobs_for_day(session, day)
            for stop in surviving:
                session.add(
                    Job(
                        branch_id=stop.branch_id,
                        employee_id=stop.employee_id,
                        scheduled_date=datetime.datetime.combine(day, time_of_day(stop.time)),
                        status="pending",
                    )
                )
            upsert_assignment(session, day, template_index, surviving[0].employee_id)
            result = AssignmentResult(
                date=day,
                template_index=template_index,
                jobs_created=len(surviving),
                jobs_deleted=deleted,
                dropped_stops=list(dropped),
                warnings=[
                    f"Skipped {stop.branch_name or 'branch'} ({stop.branch_id}) at {stop.time}: branch no longer exists."
                    for stop in dropped
                ],
            )
            record_audit_log(
                session,
                user_id=actor,
                action="ROUTE_ASSIGN",
                target_type="WorkRouteAssignment",
                payload=result.to_dict(),
                commit=False,
            )
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StoreError(f"Could not assign {slot.name} to {day.isoformat()}: {exc}") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        self._assignments[day] = template_index
        logger.info(
            "Assigned %s to %s: %d job(s) created, %d replaced, %d stop(s) skipped",
            slot.name,
            day.isoformat(),
            result.jobs_created,
            result.jobs_deleted,
            len(dropped),
        )
        change_feed.publish("jobs")
        change_feed.publish("work_route_assignments")
        return result

    def unassign(self, day: datetime.date | str, *, actor: str = "system") -> int:
        """Clear a date's jobs and assignment; returns the number of jobs removed."""
        day = _coerce_date(day)
        session = self.session_factory()
        try:
            deleted = delete_jobs_for_day(session, day)
            removed = session.execute(delete(WorkRouteAssignment).where(WorkRouteAssignment.date == day))
            changed = bool(deleted or removed.rowcount)
            if changed:
                record_audit_log(
                    session,
                    user_id=actor,
                    action="ROUTE_UNASSIGN",
                    target_type="WorkRouteAssignment",
                    payload={"date": day.isoformat(), "jobs_deleted": deleted},
                    commit=False,
                )
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StoreError(f"Could not clear {day.isoformat()}: {exc}") from exc
        finally:
            session.close()
        self._assignments.pop(day, None)
        if changed:
            change_feed.publish("jobs")
            change_feed.publish("work_route_assignments")
        return deleted

    def month_calendar(self, year: int, month: int) -> List[List[Optional[Dict[str, object]]]]:
        """Return Sunday-first week rows; padding days are ``None``."""
        cal = calendar.Calendar(firstweekday=calendar.SUNDAY)
        weeks: List[List[Optional[Dict[str, object]]]] = []
        for week in cal.monthdatescalendar(year, month):
            row: List[Optional[Dict[str, object]]] = []
            for day in week:
                if day.month != month:
                    row.append(None)
                    continue
                index = self._assignments.get(day)
                name = None
                if index is not None and 0 <= index < self.store.slot_count:
                    name = self.store.slot(index).name
                row.append({"date": day.isoformat(), "template_index": index, "template_name": name})
            weeks.append(row)
        return weeks

    def _validate_branches(self, session, stops: Tuple[RouteStop, ...]) -> Tuple[List[RouteStop], List[RouteStop]]:
        known = existing_branch_ids(session, {stop.branch_id for stop in stops})
        surviving: List[RouteStop] = []
        dropped: List[RouteStop] = []
        for stop in stops:
            if stop.branch_id in known:
                surviving.append(stop)
            else:
                logger.warning("Branch not found: %s (stop at %s for employee %s)", stop.branch_id, stop.time, stop.employee_id)
                dropped.append(stop)
        return surviving, dropped
